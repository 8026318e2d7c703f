"""Batch resync of items the server has not confirmed yet."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from ..models import SyncStatus

if TYPE_CHECKING:
    from .engine import SyncEngine

logger = logging.getLogger(__name__)


class ResyncOutcome(Enum):
    """Result reported to the scheduler."""

    SUCCESS = "success"
    RETRY = "retry"  # Some items synced, some failed
    FAILURE = "failure"  # Nothing synced


@dataclass
class ResyncResult:
    """Result of a resync pass."""

    outcome: ResyncOutcome
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    error: str | None = None
    timestamp: datetime | None = None


class ResyncDriver:
    """Replays every pending item against the server.

    Each item is dispatched on its status: PendingCreate is created,
    PendingUpdate is updated, PendingDelete is deleted and purged. One
    item's failure does not stop the batch.
    """

    def __init__(self, engine: "SyncEngine"):
        self.engine = engine
        self._last_result: ResyncResult | None = None

    @property
    def last_result(self) -> ResyncResult | None:
        return self._last_result

    async def run_resync(self) -> ResyncResult:
        """Run one pass over all pending items."""
        logger.debug("Resync: starting pass")

        try:
            pending = await self.engine.get_pending()
        except Exception as e:
            logger.error(f"Resync: could not read pending items: {e}", exc_info=True)
            result = ResyncResult(
                outcome=ResyncOutcome.RETRY,
                error=str(e),
                timestamp=datetime.now(),
            )
            self._last_result = result
            return result

        logger.debug(f"Resync: found {len(pending)} unsynced items")

        succeeded = 0
        failed = 0
        skipped = 0

        for item in pending:
            if item.id in self.engine.in_flight:
                # The mutation in progress makes its own remote call
                logger.debug(f"Resync: skipping in-flight item {item.id}")
                skipped += 1
                continue

            try:
                if item.sync_status is SyncStatus.PENDING_CREATE:
                    await self.engine.sync_create(item)
                elif item.sync_status is SyncStatus.PENDING_UPDATE:
                    await self.engine.sync_update(item)
                elif item.sync_status is SyncStatus.PENDING_DELETE:
                    await self.engine.sync_delete(item.id)
                else:
                    continue
                succeeded += 1
            except Exception as e:
                logger.error(f"Resync: failed to sync item {item.id}: {e}")
                failed += 1

        if failed == 0:
            outcome = ResyncOutcome.SUCCESS
        elif succeeded > 0:
            outcome = ResyncOutcome.RETRY
        else:
            outcome = ResyncOutcome.FAILURE

        logger.info(
            f"Resync: pass completed. Success: {succeeded}, "
            f"Failed: {failed}, Skipped: {skipped} -> {outcome.value}"
        )

        result = ResyncResult(
            outcome=outcome,
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            timestamp=datetime.now(),
        )
        self._last_result = result
        return result
