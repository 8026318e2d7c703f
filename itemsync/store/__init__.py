"""On-device item storage.

A single SQLite table of items carrying their sync status, with a live
query that re-emits the active item list after every write.
"""

from .item_store import ItemStore

__all__ = ["ItemStore"]
