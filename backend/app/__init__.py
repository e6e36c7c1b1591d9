"""
Noise Monitor Dashboard Backend
===============================

This is the Python package for the backend API.

HOW IT'S ORGANIZED:
------------------
- models/    = Data structures (what does a monitor or a reading look like?)
- services/  = Workers (talk to the Sonitus API, cache readings, run the sync)
- routers/   = API endpoints (the doors into our app)
- utils/     = Monitor id and table name helpers
- main.py    = Puts it all together and starts the server

Author: Noise Monitor Dashboard Team
"""
