"""
Routers Package
===============

Routers are like the reception desk - they direct incoming requests
to the right place.
"""

from .monitors import router as monitors_router, set_orchestrator, get_orchestrator
from .proxy import router as proxy_router

__all__ = [
    "monitors_router",
    "proxy_router",
    "set_orchestrator",
    "get_orchestrator",
]
