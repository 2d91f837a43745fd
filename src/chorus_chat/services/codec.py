"""Decoding of persisted rows and change notifications into domain models."""

from __future__ import annotations

from collections.abc import Collection, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from chorus_chat.schemas.message import (
    MUTABLE_FIELDS,
    ChangeEvent,
    ChangeOperation,
    Message,
    MessageKind,
)
from chorus_chat.services.errors import MalformedEvent

REQUIRED_ROW_FIELDS = ("id", "sender_id", "message_type", "sent_at")
_KNOWN_KINDS = frozenset(kind.value for kind in MessageKind)


def _require_id(row: Mapping[str, Any]) -> int:
    raw = row.get("id")
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise MalformedEvent(f"Row id must be an integer, got {raw!r}")
    if raw <= 0:
        raise MalformedEvent(f"Canonical ids must be positive, got {raw}")
    return raw


def _check_kind(row: Mapping[str, Any]) -> None:
    kind = row.get("message_type")
    if kind not in _KNOWN_KINDS:
        raise MalformedEvent(f"Unrecognised message kind {kind!r}")


def message_from_row(row: Mapping[str, Any], channel_key: str) -> Message:
    """Decode a persisted row into a confirmed :class:`Message`.

    Raises:
        MalformedEvent: If required fields are missing or the kind is unknown.
    """
    missing = [name for name in REQUIRED_ROW_FIELDS if row.get(name) is None]
    if missing:
        raise MalformedEvent(f"Row is missing required fields: {', '.join(missing)}")
    _require_id(row)
    _check_kind(row)

    sent_at = row["sent_at"]
    if isinstance(sent_at, str):
        try:
            sent_at = datetime.fromisoformat(sent_at)
        except ValueError as exc:
            raise MalformedEvent(f"Invalid sent_at {sent_at!r}") from exc

    try:
        return Message(
            id=row["id"],
            channel_key=channel_key,
            sender_id=row["sender_id"],
            community_id=row.get("community_id"),
            receiver_id=row.get("receiver_id"),
            content=row.get("content") or "",
            message_type=row["message_type"],
            file_url=row.get("file_url"),
            sent_at=sent_at,
            is_read=bool(row.get("is_read", False)),
        )
    except ValidationError as exc:
        raise MalformedEvent(f"Invalid message row: {exc}") from exc


def decode_change(
    operation: Any,
    row: Mapping[str, Any] | None,
    channel_key: str,
    allowed_operations: Collection[str] = ("insert", "update"),
) -> ChangeEvent:
    """Decode a raw ``{operation, row}`` notification.

    Inserts must carry a complete row. Updates need only the id and keep just
    the mutable fields; when a kind is present it must still be recognised.

    Raises:
        MalformedEvent: For unknown operations, disallowed operations or bad rows.
    """
    try:
        op = ChangeOperation(operation)
    except ValueError as exc:
        raise MalformedEvent(f"Unrecognised event operation {operation!r}") from exc
    if op.value not in allowed_operations:
        raise MalformedEvent(f"Event operation {op.value!r} is not subscribed")
    if not isinstance(row, Mapping):
        raise MalformedEvent("Event carries no row")

    if op is ChangeOperation.INSERT:
        message = message_from_row(row, channel_key)
        return ChangeEvent(operation=op, message_id=message.id, message=message)

    message_id = _require_id(row)
    if "message_type" in row:
        _check_kind(row)
    changes: dict[str, Any] = {}
    for name in MUTABLE_FIELDS:
        if name in row:
            changes[name] = row[name]
    if "is_read" in changes and not isinstance(changes["is_read"], bool):
        raise MalformedEvent(f"is_read must be a boolean, got {changes['is_read']!r}")
    return ChangeEvent(operation=op, message_id=message_id, changes=changes)
