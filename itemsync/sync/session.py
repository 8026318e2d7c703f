"""Event stream session: a callback client exposed as an async channel."""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from ..models import ChangeNotification
from ..remote.event_client import ItemEventClient

logger = logging.getLogger(__name__)

# Marks the end of the stream in the queue
_END = object()


@dataclass
class StreamOutcome:
    """One element of the stream: a notification or the error that ended it."""

    notification: ChangeNotification | None = None
    error: Exception | None = None

    @property
    def is_success(self) -> bool:
        return self.error is None


class EventStreamSession:
    """Holds at most one open subscription.

    The client pushes into a bounded queue from its own thread; the session
    is consumed with ``async for``. A stream failure yields a single failed
    outcome and ends the iteration. Use as an async context manager so the
    connection is released when the consumer goes away, whether or not the
    stream was ever opened.
    """

    def __init__(self, client: ItemEventClient, queue_size: int = 256):
        self.client = client
        self.queue_size = queue_size
        self._queue: asyncio.Queue | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._open = False
        self._ended = False
        self._dropped = 0

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def dropped(self) -> int:
        """Notifications discarded because the queue was full."""
        return self._dropped

    def open(self) -> None:
        """Connect the client and start buffering notifications."""
        if self._open:
            return

        self._loop = asyncio.get_running_loop()
        # Two spare slots so the final outcome and end marker always fit
        self._queue = asyncio.Queue(maxsize=self.queue_size + 2)
        self._ended = False
        self._open = True

        try:
            self.client.open(
                on_event=self._on_event,
                on_closed=self._on_closed,
                on_failure=self._on_failure,
            )
        except Exception as e:
            logger.error(f"Failed to open event stream: {e}")
            self._end(StreamOutcome(error=e))
            self._open = False

    def close(self) -> None:
        """Release the connection and end the stream. Idempotent."""
        was_open = self._open
        self._open = False
        self.client.close()
        if self._queue is not None:
            self._end(None)
        else:
            self._ended = True
        if was_open:
            logger.info("Event stream session closed")

    async def __aenter__(self) -> "EventStreamSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __aiter__(self) -> AsyncIterator[StreamOutcome]:
        return self.events()

    async def events(self) -> AsyncIterator[StreamOutcome]:
        """Yield outcomes until the stream closes or fails."""
        if self._queue is None:
            if self._ended:
                return
            self.open()
        queue = self._queue

        while True:
            item = await queue.get()
            if item is _END:
                return
            yield item
            if not item.is_success:
                return

    # Client callbacks, invoked on the client's thread

    def _on_event(self, notification: ChangeNotification) -> None:
        self._post(StreamOutcome(notification=notification))

    def _on_closed(self) -> None:
        self._post(None)

    def _on_failure(self, error: Exception) -> None:
        self._post(StreamOutcome(error=error))

    def _post(self, outcome: StreamOutcome | None) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        if outcome is None or not outcome.is_success:
            loop.call_soon_threadsafe(self._end, outcome)
        else:
            loop.call_soon_threadsafe(self._offer, outcome)

    # Queue operations, run on the event loop

    def _offer(self, outcome: StreamOutcome) -> None:
        if self._ended:
            return
        if self._queue.qsize() >= self.queue_size:
            self._dropped += 1
            logger.warning(
                f"Event queue full, dropped notification for {outcome.notification.key}"
            )
            return
        self._queue.put_nowait(outcome)

    def _end(self, outcome: StreamOutcome | None) -> None:
        """Append the final outcome (if any) and the end marker."""
        if self._ended:
            return
        self._ended = True
        self._open = False
        if outcome is not None:
            self._queue.put_nowait(outcome)
        self._queue.put_nowait(_END)
