"""
Utility modules for the memory engine.
"""

from memory_engine.utils.latency import LatencyTracker, latency_tracked, track_latency
from memory_engine.utils.logging import LogContext, setup_logging
from memory_engine.utils.uptime import get_uptime

__all__ = [
    "LatencyTracker",
    "LogContext",
    "latency_tracked",
    "track_latency",
    "setup_logging",
    "get_uptime",
]
