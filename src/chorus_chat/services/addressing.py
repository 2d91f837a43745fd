"""Channel addressing.

Maps a community id, or an unordered pair of participant ids, to one canonical
channel key so that sender/receiver order never yields two logical channels
for the same conversation.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

COMMUNITY_PREFIX = "community"
DIRECT_PREFIX = "dm"
_SEPARATOR = ":"


class ChannelKind(str, Enum):
    """Addressing mode of a channel."""

    COMMUNITY = "community"
    DIRECT = "direct"


@dataclass(frozen=True)
class ChannelKey:
    """Canonical channel identity.

    Build instances through :func:`resolve_community` / :func:`resolve_direct`
    so that direct participants are always stored in sorted order.
    """

    kind: ChannelKind
    community_id: int | None = None
    participants: tuple[str, str] | None = None

    def __str__(self) -> str:
        if self.kind is ChannelKind.COMMUNITY:
            return f"{COMMUNITY_PREFIX}{_SEPARATOR}{self.community_id}"
        low, high = self.participants  # type: ignore[misc]
        return _SEPARATOR.join((DIRECT_PREFIX, low, high))

    @property
    def is_direct(self) -> bool:
        return self.kind is ChannelKind.DIRECT

    def matches(self, row: Mapping[str, Any]) -> bool:
        """Return True if a persisted message row belongs to this channel."""
        if self.kind is ChannelKind.COMMUNITY:
            return row.get("community_id") == self.community_id
        if row.get("community_id") is not None:
            return False
        pair = (row.get("sender_id"), row.get("receiver_id"))
        low, high = self.participants  # type: ignore[misc]
        return pair in ((low, high), (high, low))

    def may_contain(self, operation: str, row: Mapping[str, Any]) -> bool:
        """Return True if a change notification can belong to this channel.

        Inserts carry full rows and must match. Update rows may be partial;
        they are refused only when the columns they do carry place them in
        another channel.
        """
        if operation != "update":
            return self.matches(row)
        if self.kind is ChannelKind.COMMUNITY:
            return "community_id" not in row or self.matches(row)
        if row.get("community_id") is not None:
            return False
        if "sender_id" in row and "receiver_id" in row:
            return self.matches(row)
        return True

    def counterpart(self, participant_id: str) -> str:
        """Return the other participant of a direct channel.

        Raises:
            ValueError: If the channel is not direct or ``participant_id`` is not a member.
        """
        if self.kind is not ChannelKind.DIRECT:
            raise ValueError(f"{self} is not a direct channel")
        low, high = self.participants  # type: ignore[misc]
        if participant_id == low:
            return high
        if participant_id == high:
            return low
        raise ValueError(f"{participant_id!r} is not a participant of {self}")


def resolve_community(community_id: int) -> ChannelKey:
    """Return the channel key of a community-wide conversation."""
    return ChannelKey(kind=ChannelKind.COMMUNITY, community_id=int(community_id))


def resolve_direct(peer_a: str, peer_b: str) -> ChannelKey:
    """Return the channel key of a two-party conversation.

    ``resolve_direct(a, b) == resolve_direct(b, a)`` for all inputs.
    """
    for peer in (peer_a, peer_b):
        if not peer or _SEPARATOR in peer:
            raise ValueError(f"Invalid participant id: {peer!r}")
    low, high = sorted((peer_a, peer_b))
    return ChannelKey(kind=ChannelKind.DIRECT, participants=(low, high))


def resolve(
    community_id: int | None = None,
    peers: tuple[str, str] | None = None,
) -> ChannelKey:
    """Resolve either a community id or a participant pair to a channel key."""
    if (community_id is None) == (peers is None):
        raise ValueError("Provide exactly one of community_id or peers")
    if community_id is not None:
        return resolve_community(community_id)
    peer_a, peer_b = peers  # type: ignore[misc]
    return resolve_direct(peer_a, peer_b)


def parse_channel_key(value: str | ChannelKey) -> ChannelKey:
    """Parse the string form produced by ``str(ChannelKey)``."""
    if isinstance(value, ChannelKey):
        return value
    parts = value.split(_SEPARATOR)
    if len(parts) == 2 and parts[0] == COMMUNITY_PREFIX:
        try:
            return resolve_community(int(parts[1]))
        except ValueError as exc:
            raise ValueError(f"Invalid community channel key: {value!r}") from exc
    if len(parts) == 3 and parts[0] == DIRECT_PREFIX:
        return resolve_direct(parts[1], parts[2])
    raise ValueError(f"Unrecognised channel key: {value!r}")
