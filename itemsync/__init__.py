"""Local-first item synchronization.

Items are read and written against a local SQLite store; a background
engine reconciles them with the server over HTTP and an MQTT change stream.
"""

from .auth import Credentials
from .config import Config, load_config
from .errors import (
    ItemSyncError,
    LocalStoreError,
    MalformedNotification,
    RemoteRejected,
    TransportError,
)
from .models import ChangeKind, ChangeNotification, Item, SyncStatus

__version__ = "0.1.0"

__all__ = [
    "ChangeKind",
    "ChangeNotification",
    "Config",
    "Credentials",
    "Item",
    "ItemSyncError",
    "LocalStoreError",
    "MalformedNotification",
    "RemoteRejected",
    "SyncStatus",
    "TransportError",
    "load_config",
]
