"""Error types raised by the sync layer."""


class ItemSyncError(Exception):
    """Base class for all itemsync errors."""


class TransportError(ItemSyncError):
    """Network unreachable, connection reset or timeout."""


class RemoteRejected(ItemSyncError):
    """The server answered with an application error (4xx/5xx)."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")


class MalformedNotification(ItemSyncError):
    """An event stream payload could not be decoded."""


class LocalStoreError(ItemSyncError):
    """The local database rejected a read or write."""
