"""Data model for synchronized items and change notifications."""

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .errors import MalformedNotification


class SyncStatus(Enum):
    """Local sync state of an item. Never sent to the server."""

    SYNCED = "synced"
    PENDING_CREATE = "pending_create"
    PENDING_UPDATE = "pending_update"
    PENDING_DELETE = "pending_delete"

    @property
    def is_pending(self) -> bool:
        return self is not SyncStatus.SYNCED


class ChangeKind(Enum):
    """Kind of change reported by the event stream."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


def _parse_due_date(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        # fromisoformat() before 3.11 does not accept a trailing "Z"
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        return datetime.fromisoformat(value)
    raise ValueError(f"Unsupported dueDate value: {value!r}")


def _parse_key(value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int)) or value == "":
        raise ValueError(f"Invalid _id: {value!r}")
    return str(value)


def _parse_completed(value: Any) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValueError(f"isCompleted must be a boolean, got {value!r}")
    return value


@dataclass
class Item:
    """A to-do item shared between the local store and the server.

    The id is generated on the client so the same key identifies the item
    locally and remotely from the moment it is created.
    """

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    text: str = ""
    description: str = ""
    due_date: datetime | None = None
    priority: int = 0
    is_completed: bool = False
    sync_status: SyncStatus = SyncStatus.PENDING_CREATE

    def with_status(self, status: SyncStatus) -> "Item":
        """Return a copy carrying a different sync status."""
        return replace(self, sync_status=status)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the server's JSON representation (without sync status)."""
        return {
            "_id": self.id,
            "text": self.text,
            "description": self.description,
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "priority": self.priority,
            "isCompleted": self.is_completed,
        }

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], sync_status: SyncStatus = SyncStatus.SYNCED
    ) -> "Item":
        """Create from the server's JSON representation.

        Items coming from the server are synced by definition, so that is
        the default status.
        """
        return cls(
            id=_parse_key(data["_id"]),
            text=data.get("text") or "",
            description=data.get("description") or "",
            due_date=_parse_due_date(data.get("dueDate")),
            priority=int(data.get("priority") or 0),
            is_completed=_parse_completed(data.get("isCompleted")),
            sync_status=sync_status,
        )


@dataclass
class ChangeNotification:
    """A change pushed by the server over the event stream."""

    kind: ChangeKind
    item: Item

    @property
    def key(self) -> str:
        return self.item.id

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.kind.value, "payload": self.item.to_dict()}

    @classmethod
    def from_dict(cls, data: Any) -> "ChangeNotification":
        """Decode a notification, raising MalformedNotification on bad input."""
        if not isinstance(data, dict):
            raise MalformedNotification(f"Expected an object, got {type(data).__name__}")

        try:
            kind = ChangeKind(data.get("type"))
        except ValueError:
            raise MalformedNotification(f"Unknown event type: {data.get('type')!r}") from None

        payload = data.get("payload")
        if not isinstance(payload, dict) or "_id" not in payload:
            raise MalformedNotification("Event payload is missing an item id")

        try:
            item = Item.from_dict(payload)
        except (TypeError, ValueError) as e:
            raise MalformedNotification(f"Invalid item payload: {e}") from e

        return cls(kind=kind, item=item)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ChangeNotification":
        try:
            data = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedNotification(f"Payload is not valid JSON: {e}") from e
        return cls.from_dict(data)
