"""
Process uptime, measured from application startup.
"""

import time

_started_at: float | None = None


def set_start_time() -> None:
    """Mark application startup. Called from the lifespan handler."""
    global _started_at
    _started_at = time.monotonic()


def get_uptime() -> float:
    """Seconds since set_start_time, or 0.0 before startup."""
    if _started_at is None:
        return 0.0
    return time.monotonic() - _started_at
