"""Reconciliation between the local item store and the server.

Provides the optimistic mutation path, event stream merging with echo
suppression, and the batch resync driver with its scheduler.
"""

from .engine import SyncEngine
from .inflight import InFlightTracker, KeyState
from .resync import ResyncDriver, ResyncOutcome, ResyncResult
from .scheduler import SyncScheduler
from .session import EventStreamSession, StreamOutcome

__all__ = [
    "EventStreamSession",
    "InFlightTracker",
    "KeyState",
    "ResyncDriver",
    "ResyncOutcome",
    "ResyncResult",
    "StreamOutcome",
    "SyncEngine",
    "SyncScheduler",
]
