from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Mapping

BROADCAST_MARKER = "@broadcast"
GROUP_SUFFIX = "@g.us"

# SDK field name -> ChatRecord attribute
_FIELDS = {
    "name": "name",
    "notify": "notify",
    "verifiedName": "verified_name",
    "unreadCount": "unread_count",
    "conversationTimestamp": "last_activity",
    "archived": "archived",
    "pinned": "pinned",
    "muteEndTime": "mute_until",
}
_INT_FIELDS = {"unread_count", "last_activity", "pinned", "mute_until"}


def is_broadcast(chat_id: str) -> bool:
    return BROADCAST_MARKER in chat_id


def is_group(chat_id: str) -> bool:
    return chat_id.endswith(GROUP_SUFFIX)


def local_part(chat_id: str) -> str:
    return chat_id.split("@", 1)[0]


def coerce_int(value: Any) -> int | None:
    """Normalise SDK numbers: ints, numeric strings and ``{low, high}`` longs."""

    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    if isinstance(value, Mapping) and "low" in value:
        low = coerce_int(value.get("low"))
        high = coerce_int(value.get("high", 0)) or 0
        if low is None:
            return None
        combined = (high << 32) | (low & 0xFFFFFFFF)
        if not value.get("unsigned") and combined >= 1 << 63:
            combined -= 1 << 64
        return combined
    return None


@dataclass
class ChatRecord:
    """Best-known state of one remote conversation."""

    id: str
    name: str | None = None
    notify: str | None = None
    verified_name: str | None = None
    unread_count: int = 0
    last_activity: int = 0
    archived: bool = False
    pinned: int = 0
    mute_until: int = 0
    is_group: bool = False
    display_name: str = ""

    def resolve_display_name(self) -> str:
        for candidate in (self.name, self.notify, self.verified_name):
            if candidate:
                return candidate
        return local_part(self.id)

    def to_json(self) -> Dict[str, Any]:
        return {
            "jid": self.id,
            "name": self.display_name,
            "unreadCount": self.unread_count,
            "conversationTimestamp": self.last_activity,
            "isGroup": self.is_group,
            "archived": self.archived,
            "pinned": self.pinned,
            "muteEndTime": self.mute_until,
        }


def _incoming_fields(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Pick the known fields that are present (not ``None``) in ``raw``."""

    fields: Dict[str, Any] = {}
    for sdk_name, attr in _FIELDS.items():
        value = raw.get(sdk_name)
        if value is None:
            continue
        if attr in _INT_FIELDS:
            value = coerce_int(value)
            if value is None:
                continue
            if attr == "unread_count":
                value = max(value, 0)
        elif attr == "archived":
            value = bool(value)
        else:
            value = str(value)
        fields[attr] = value
    return fields


def _record_id(raw: Any) -> str | None:
    if not isinstance(raw, Mapping):
        return None
    chat_id = raw.get("id")
    if not isinstance(chat_id, str) or not chat_id:
        return None
    return chat_id


class ChatCache:
    """In-memory chat/contact state reconciled from snapshot and delta events.

    Records are keyed by conversation id and kept in first-sighting order, which
    is the tie-breaker when two chats share a timestamp.
    """

    def __init__(self) -> None:
        self._records: Dict[str, ChatRecord] = {}

    def __len__(self) -> int:
        return len(self._records)

    def get(self, chat_id: str) -> ChatRecord | None:
        return self._records.get(chat_id)

    def apply_snapshot(self, records: Iterable[Mapping[str, Any]]) -> List[ChatRecord]:
        """Insert or fully replace each record, then return the visible list."""

        for raw in records:
            chat_id = _record_id(raw)
            if chat_id is None:
                continue
            record = ChatRecord(id=chat_id, is_group=is_group(chat_id), **_incoming_fields(raw))
            record.display_name = record.resolve_display_name()
            self._records[chat_id] = record
        return self.visible_list()

    def apply_delta(self, records: Iterable[Mapping[str, Any]]) -> int:
        """Merge present fields into existing records, creating unknown ones."""

        applied = 0
        for raw in records:
            chat_id = _record_id(raw)
            if chat_id is None:
                continue
            existing = self._records.get(chat_id)
            if existing is None:
                existing = ChatRecord(id=chat_id, is_group=is_group(chat_id))
            merged = replace(existing, **_incoming_fields(raw))
            merged.display_name = merged.resolve_display_name()
            self._records[chat_id] = merged
            applied += 1
        return applied

    def visible_list(self) -> List[ChatRecord]:
        visible = [record for record in self._records.values() if not is_broadcast(record.id)]
        return sorted(visible, key=lambda record: record.last_activity, reverse=True)

    def visible_json(self) -> List[Dict[str, Any]]:
        return [record.to_json() for record in self.visible_list()]
