"""Per-key tracking of locally initiated operations.

While a key holds a lease, change notifications for it are treated as the
echo of our own write and ignored. A lease stays active for a short
settling window after the remote call so that a late echo is absorbed too.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class KeyState(Enum):
    UNTRACKED = "untracked"
    IN_FLIGHT = "in_flight"
    SETTLING = "settling"


@dataclass(eq=False)
class Lease:
    """One operation's claim on a key."""

    key: str
    settling: bool = False


class InFlightTracker:
    """Owned by one engine instance and shared with its merge handlers.

    Leases are counted per key, so two overlapping operations on the same
    key keep it guarded until the later one has settled.
    """

    def __init__(self, settle_delay: float = 0.5):
        """Initialize the tracker.

        Args:
            settle_delay: Seconds a lease stays active after its operation
                finished.
        """
        self.settle_delay = settle_delay
        self._leases: dict[str, list[Lease]] = {}

    def __contains__(self, key: str) -> bool:
        return bool(self._leases.get(key))

    def __len__(self) -> int:
        return len(self._leases)

    def keys(self) -> list[str]:
        return list(self._leases)

    def state(self, key: str) -> KeyState:
        leases = self._leases.get(key)
        if not leases:
            return KeyState.UNTRACKED
        if any(not lease.settling for lease in leases):
            return KeyState.IN_FLIGHT
        return KeyState.SETTLING

    def acquire(self, key: str) -> Lease:
        lease = Lease(key)
        self._leases.setdefault(key, []).append(lease)
        return lease

    def release(self, lease: Lease) -> None:
        leases = self._leases.get(lease.key)
        if not leases:
            return
        try:
            leases.remove(lease)
        except ValueError:
            return
        if not leases:
            del self._leases[lease.key]

    @asynccontextmanager
    async def lease(self, key: str) -> AsyncIterator[Lease]:
        """Hold a key for the body of the block plus the settling window."""
        lease = self.acquire(key)
        try:
            yield lease
        finally:
            lease.settling = True
            try:
                await asyncio.sleep(self.settle_delay)
            finally:
                self.release(lease)
                logger.debug(f"Released in-flight lease for {key}")
