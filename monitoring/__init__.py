"""
Error tracking, alert delivery and pipeline health.
"""

__all__ = [
    "ErrorTracker",
    "AlertDispatcher",
    "SyncMonitor",
]
