"""
Service Errors
==============

Everything the core can fail with. The FastAPI app maps each one to an
HTTP status in main.py:

    InvalidRequest      -> 400  (bad window, too many monitors, bad body)
    MonitorNotFound     -> 404
    UpstreamUnavailable -> 502  (Sonitus API down and nothing cached)
    PersistenceError    -> 500  (a whole batch failed to commit)
"""


class NoiseMonitorError(Exception):
    """Base class for all service errors."""

    status_code = 500


class InvalidRequest(NoiseMonitorError):
    status_code = 400


class MonitorNotFound(NoiseMonitorError):
    status_code = 404

    def __init__(self, monitor_id: str):
        super().__init__(f"Monitor not found: {monitor_id}")
        self.monitor_id = monitor_id


class UpstreamUnavailable(NoiseMonitorError):
    status_code = 502


class PersistenceError(NoiseMonitorError):
    status_code = 500
