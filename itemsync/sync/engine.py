"""Reconciliation engine between the local item store and the server.

Local writes happen first and always; the remote call follows and its
failure only leaves the item in a pending state for the resync driver.
Change notifications from the event stream are merged into the store
unless they would overwrite a local write that the server has not
confirmed yet.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Coroutine
from typing import Any

from ..auth import Credentials
from ..errors import LocalStoreError, RemoteRejected
from ..models import ChangeKind, ChangeNotification, Item, SyncStatus
from ..remote.event_client import ItemEventClient
from ..remote.item_service import ItemService
from ..store.item_store import ItemStore
from .inflight import InFlightTracker
from .session import EventStreamSession

logger = logging.getLogger(__name__)

# Local statuses a remote push must not overwrite. PendingDelete is
# included so a remote update cannot revive a row deleted locally but not
# yet confirmed by the server.
_PROTECTED_STATUSES = (SyncStatus.PENDING_UPDATE, SyncStatus.PENDING_DELETE)


class SyncEngine:
    """Applies item mutations optimistically and merges remote changes.

    The engine is the only writer of the store. The event stream session
    and the resync driver go through its public methods.
    """

    def __init__(
        self,
        store: ItemStore,
        service: ItemService,
        event_client: ItemEventClient | None = None,
        credentials: Credentials | None = None,
        settle_delay: float = 0.5,
        event_queue_size: int = 256,
    ):
        """Initialize the engine.

        Args:
            store: Local item store.
            service: Remote item API client.
            event_client: Change stream client, if the stream is used.
            credentials: Bearer credential; defaults to the service's.
            settle_delay: Seconds a key stays guarded after its remote call.
            event_queue_size: Buffer size of event stream sessions.
        """
        self.store = store
        self.service = service
        self.event_client = event_client
        self.credentials = credentials or service.credentials
        self.in_flight = InFlightTracker(settle_delay)
        self.event_queue_size = event_queue_size
        self._tasks: set[asyncio.Task] = set()
        self._session: EventStreamSession | None = None

    # ==================== Queries ====================

    def items(self) -> AsyncIterator[list[Item]]:
        """Live list of active items, re-emitted after every change."""
        return self.store.watch()

    async def get_pending(self) -> list[Item]:
        """Items the server has not confirmed yet."""
        return await self.store.get_pending()

    # ==================== Mutations ====================

    async def _run_to_completion(self, coro: Coroutine[Any, Any, Any]) -> Any:
        """Run a mutation as its own task so cancelling the caller does not
        interrupt the remote call or the settling window."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return await asyncio.shield(task)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"Mutation task ended with {task.exception()!r}")

    async def drain(self) -> None:
        """Wait for every outstanding mutation to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def save(self, item: Item) -> Item:
        """Create an item locally, then on the server.

        Returns:
            The item as Synced if the server accepted it, otherwise the
            local PendingCreate item.

        Raises:
            LocalStoreError: If the local write fails.
        """
        return await self._run_to_completion(self._save(item))

    async def _save(self, item: Item) -> Item:
        logger.debug(f"save {item.id}...")

        async with self.in_flight.lease(item.id):
            local = item.with_status(SyncStatus.PENDING_CREATE)
            await self.store.upsert(local)

            try:
                await self.service.create(local)
            except Exception as e:
                logger.warning(f"Server save failed for {item.id}, will sync later: {e}")
                return local

            if await self.store.update_status(
                item.id, SyncStatus.SYNCED, expected=SyncStatus.PENDING_CREATE
            ):
                logger.debug(f"save succeeded on server for {item.id}")
                return local.with_status(SyncStatus.SYNCED)

            # A later local write owns the row now
            return await self.store.get(item.id) or local

    async def update(self, item: Item) -> Item:
        """Update an item locally, then on the server.

        Returns:
            The item as Synced if the server accepted it, otherwise the
            local PendingUpdate item.

        Raises:
            LocalStoreError: If the local write fails.
        """
        return await self._run_to_completion(self._update(item))

    async def _update(self, item: Item) -> Item:
        logger.debug(f"update {item.id}...")

        async with self.in_flight.lease(item.id):
            local = item.with_status(SyncStatus.PENDING_UPDATE)
            await self.store.upsert(local)

            try:
                await self.service.update(item.id, local)
            except Exception as e:
                logger.warning(f"Server update failed for {item.id}, will sync later: {e}")
                return local

            if await self.store.update_status(
                item.id, SyncStatus.SYNCED, expected=SyncStatus.PENDING_UPDATE
            ):
                logger.debug(f"update succeeded on server for {item.id}")
                return local.with_status(SyncStatus.SYNCED)

            return await self.store.get(item.id) or local

    async def delete(self, key: str) -> bool:
        """Soft-delete an item locally, then delete it on the server.

        Returns:
            True if the item was purged, False if it stays PendingDelete.

        Raises:
            LocalStoreError: If the local write fails.
        """
        return await self._run_to_completion(self._delete(key))

    async def _delete(self, key: str) -> bool:
        logger.debug(f"delete {key}...")

        async with self.in_flight.lease(key):
            if not await self.store.update_status(key, SyncStatus.PENDING_DELETE):
                logger.debug(f"delete: {key} not present locally")

            try:
                await self.service.delete(key)
            except RemoteRejected as e:
                if e.status_code != 404:
                    logger.warning(f"Server delete failed for {key}, will sync later: {e}")
                    return False
                logger.debug(f"{key} already gone on server")
            except Exception as e:
                logger.warning(f"Server delete failed for {key}, will sync later: {e}")
                return False

            await self.store.delete_by_key_if_status(key, SyncStatus.PENDING_DELETE)
            logger.debug(f"delete succeeded on server for {key}")
            return True

    # ==================== Resync primitives ====================
    # These raise on remote failure; the resync driver counts them.

    async def sync_create(self, item: Item) -> None:
        logger.debug(f"Resync create {item.id}")
        await self.service.create(item)
        await self.store.update_status(
            item.id, SyncStatus.SYNCED, expected=SyncStatus.PENDING_CREATE
        )

    async def sync_update(self, item: Item) -> None:
        logger.debug(f"Resync update {item.id}")
        try:
            await self.service.update(item.id, item)
        except RemoteRejected as e:
            if e.status_code != 404:
                raise
            # The create never reached the server
            logger.info(f"{item.id} unknown on server, creating it instead")
            await self.service.create(item)
        await self.store.update_status(
            item.id, SyncStatus.SYNCED, expected=SyncStatus.PENDING_UPDATE
        )

    async def sync_delete(self, key: str) -> None:
        logger.debug(f"Resync delete {key}")
        try:
            await self.service.delete(key)
        except RemoteRejected as e:
            if e.status_code != 404:
                raise
        await self.store.delete_by_key_if_status(key, SyncStatus.PENDING_DELETE)

    # ==================== Full refresh ====================

    async def refresh(self) -> bool:
        """Replace the synced part of the store with the server's list.

        Pending rows and keys in flight are left alone.

        Returns:
            True if the server list was applied.
        """
        logger.debug("refresh started")
        try:
            items = await self.service.list_items()
        except Exception as e:
            logger.warning(f"refresh failed: {e}")
            return False

        written = await self.store.replace_synced(items, skip_keys=self.in_flight.keys())
        logger.info(f"refresh succeeded, {written} items from server")
        return True

    async def delete_all(self) -> None:
        """Drop every local item (used on logout)."""
        await self.store.delete_all()

    def set_token(self, token: str | None) -> None:
        """Swap the bearer token for remote calls and stream reconnects."""
        self.credentials.set_token(token)
        if self.event_client:
            self.event_client.authorize(token)

    # ==================== Event merge ====================

    async def handle_notification(self, notification: ChangeNotification) -> bool:
        """Merge one remote change into the store.

        Returns:
            True if the store was touched, False if the change was ignored.
        """
        if notification.kind is ChangeKind.DELETED:
            return await self._handle_item_deleted(notification.item)
        return await self._handle_item_changed(notification)

    async def _handle_item_changed(self, notification: ChangeNotification) -> bool:
        item = notification.item
        logger.debug(f"Remote {notification.kind.value} for {item.id}")

        if item.id in self.in_flight:
            logger.debug(f"Ignoring {notification.kind.value} echo for in-flight item {item.id}")
            return False

        local = await self.store.get(item.id)
        if local is not None and local.sync_status in _PROTECTED_STATUSES:
            logger.debug(
                f"Local item {item.id} is {local.sync_status.value}, ignoring remote change"
            )
            return False

        await self.store.upsert(item.with_status(SyncStatus.SYNCED))
        return True

    async def _handle_item_deleted(self, item: Item) -> bool:
        logger.debug(f"Remote deleted for {item.id}")

        if item.id in self.in_flight:
            logger.debug(f"Ignoring delete echo for in-flight item {item.id}")
            return False

        await self.store.delete_by_key(item.id)
        return True

    # ==================== Event stream ====================

    def create_session(self) -> EventStreamSession:
        if self.event_client is None:
            raise RuntimeError("No event client configured")
        return EventStreamSession(self.event_client, queue_size=self.event_queue_size)

    async def open_event_stream(self, session: EventStreamSession | None = None) -> None:
        """Consume the event stream until it closes or fails."""
        if self._session is not None:
            logger.debug("Event stream already open")
            return

        session = session or self.create_session()
        self._session = session
        logger.info("Opening event stream")

        try:
            async with session:
                async for outcome in session:
                    if not outcome.is_success:
                        logger.warning(f"Event stream ended: {outcome.error}")
                        break
                    try:
                        await self.handle_notification(outcome.notification)
                    except LocalStoreError as e:
                        logger.error(
                            f"Failed to merge {outcome.notification.kind.value} "
                            f"for {outcome.notification.key}: {e}"
                        )
        finally:
            self._session = None
            logger.info("Event stream closed")

    def close_event_stream(self) -> None:
        """Close the current event stream session, if any."""
        if self._session is not None:
            self._session.close()

    @property
    def event_stream_open(self) -> bool:
        return self._session is not None
