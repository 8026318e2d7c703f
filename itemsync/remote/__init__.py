"""Clients for the item server: REST API and change stream."""

from .event_client import ItemEventClient
from .item_service import ItemService

__all__ = ["ItemEventClient", "ItemService"]
