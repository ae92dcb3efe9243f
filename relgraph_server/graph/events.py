"""
Connection events consumed by the GraphEngine.

Events arrive from the log as JSON objects discriminated by "type":

    {"type": "register", "name": "alice", "created_at": "2024-01-01T00:00:00.000Z"}
    {"type": "referral", "referredBy": "alice", "user": "bob", "created_at": "..."}
    {"type": "addfriend", "user1_name": "alice", "user2_name": "bob", "created_at": "..."}
    {"type": "unfriend", "user1_name": "alice", "user2_name": "bob", "created_at": "..."}

The sequence number used for conflict resolution is never read from the
payload. It is assigned from the log offset and attached via SequencedEvent.

Invariants:
    - Unknown types parse into UnknownEvent instead of failing
    - Known types with missing fields raise EventParseError

How to change safely:
    - New event types need a parser entry and an engine handler
    - Keep accepting the old field names when renaming wire fields
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Union


class EventParseError(ValueError):
    """Payload could not be parsed into a ConnectionEvent."""

    pass


@dataclass(frozen=True)
class RegisterEvent:
    name: str
    created_at: str | None = None
    type: str = field(default="register", init=False)


@dataclass(frozen=True)
class ReferralEvent:
    referred_by: str
    user: str
    created_at: str | None = None
    type: str = field(default="referral", init=False)


@dataclass(frozen=True)
class AddFriendEvent:
    user1: str
    user2: str
    created_at: str | None = None
    type: str = field(default="addfriend", init=False)


@dataclass(frozen=True)
class UnfriendEvent:
    user1: str
    user2: str
    created_at: str | None = None
    type: str = field(default="unfriend", init=False)


@dataclass(frozen=True)
class UnknownEvent:
    """An event type this version does not understand."""

    type: str
    created_at: str | None = None


ConnectionEvent = Union[RegisterEvent, ReferralEvent, AddFriendEvent, UnfriendEvent, UnknownEvent]

EVENT_TYPES = ("register", "referral", "addfriend", "unfriend")


@dataclass(frozen=True)
class SequencedEvent:
    """A ConnectionEvent paired with its log-derived sequence number."""

    event: ConnectionEvent
    seq: int


def _require_str(data: dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    raise EventParseError(f"Missing required field {keys[0]!r} for {data.get('type')!r} event")


def event_from_dict(data: Any) -> ConnectionEvent:
    """Create a ConnectionEvent from its dictionary form.

    Args:
        data: Decoded JSON payload

    Returns:
        The matching event variant, or UnknownEvent for unrecognized types

    Raises:
        EventParseError: If the payload is not an object, has no type,
            or a known type lacks required fields
    """
    if not isinstance(data, dict):
        raise EventParseError(f"Event payload must be an object, got {type(data).__name__}")

    event_type = data.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise EventParseError("Event payload has no 'type'")

    created_at = data.get("created_at")
    if created_at is not None and not isinstance(created_at, str):
        created_at = str(created_at)

    if event_type == "register":
        return RegisterEvent(name=_require_str(data, "name"), created_at=created_at)
    if event_type == "referral":
        return ReferralEvent(
            referred_by=_require_str(data, "referredBy", "referred_by"),
            user=_require_str(data, "user"),
            created_at=created_at,
        )
    if event_type in ("addfriend", "unfriend"):
        cls = AddFriendEvent if event_type == "addfriend" else UnfriendEvent
        return cls(
            user1=_require_str(data, "user1_name", "user1"),
            user2=_require_str(data, "user2_name", "user2"),
            created_at=created_at,
        )
    return UnknownEvent(type=event_type, created_at=created_at)


def parse_event(raw: bytes | str) -> tuple[Any, ConnectionEvent]:
    """Decode a raw log payload.

    Returns:
        The decoded JSON payload and the event built from it

    Raises:
        EventParseError: If the payload is not valid JSON or not a valid event
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise EventParseError(f"Failed to parse event payload as JSON: {e}") from e
    return data, event_from_dict(data)
