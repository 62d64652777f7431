"""
Thread data model.

A thread is an open work item that carries across agent sessions. Records are
immutable snapshots: every mutation (touch, resolve, archive) goes through
`dataclasses.replace` and produces a new record that the store layer persists.

Persisted status is coarse (open/resolved/archived) and only moves forward.
The finer lifecycle status (emerging/active/cooling/dormant) is derived on
read by `threads.vitality.classify`.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

STATUS_OPEN = "open"
STATUS_RESOLVED = "resolved"
STATUS_ARCHIVED = "archived"
PERSISTED_STATUSES = (STATUS_OPEN, STATUS_RESOLVED, STATUS_ARCHIVED)
TERMINAL_STATUSES = frozenset({STATUS_RESOLVED, STATUS_ARCHIVED})

LIFECYCLE_EMERGING = "emerging"
LIFECYCLE_ACTIVE = "active"
LIFECYCLE_COOLING = "cooling"
LIFECYCLE_DORMANT = "dormant"

THREAD_CLASS_OPERATIONAL = "operational"
THREAD_CLASS_BACKLOG = "backlog"

_OPERATIONAL_KEYWORDS = (
    "deploy",
    "fix",
    "debug",
    "hotfix",
    "urgent",
    "broken",
    "failing",
    "revert",
    "rollback",
    "incident",
    "outage",
    "blocker",
    "unblock",
    "investigate",
)


class ThreadInputError(ValueError):
    """Raised at the tool boundary for requests that cannot be served."""


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def generate_thread_id() -> str:
    """Thread ids are "t-" followed by 8 hex chars."""
    return f"t-{uuid.uuid4().hex[:8]}"


def detect_thread_class(text: str) -> str:
    lowered = (text or "").lower()
    for keyword in _OPERATIONAL_KEYWORDS:
        if keyword in lowered:
            return THREAD_CLASS_OPERATIONAL
    return THREAD_CLASS_BACKLOG


def _coerce_embedding(raw: Any) -> Optional[Tuple[float, ...]]:
    # REST backends return vector columns as JSON strings.
    if raw is None:
        return None
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except (TypeError, ValueError):
            return None
    if not isinstance(raw, (list, tuple)) or not raw:
        return None
    try:
        return tuple(float(v) for v in raw)
    except (TypeError, ValueError):
        return None


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text_value = str(value).strip()
    return text_value or None


@dataclass(frozen=True)
class Thread:
    """One tracked work item. Treat instances as values."""

    id: str
    text: str
    status: str = STATUS_OPEN
    created_at: datetime = field(default_factory=utc_now)
    last_touched_at: Optional[datetime] = None
    touch_count: int = 1
    thread_class: str = THREAD_CLASS_BACKLOG
    resolved_at: Optional[datetime] = None
    resolution_note: Optional[str] = None
    resolved_by_session: Optional[str] = None
    source_session: Optional[str] = None
    linear_issue: Optional[str] = None
    dormant_since: Optional[datetime] = None
    embedding: Optional[Tuple[float, ...]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def touched_at(self) -> datetime:
        return self.last_touched_at or self.created_at

    def with_changes(self, **changes: Any) -> "Thread":
        return replace(self, **changes)

    def to_dict(self, *, include_embedding: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "text": self.text,
            "status": self.status,
            "created_at": format_timestamp(self.created_at),
            "touch_count": self.touch_count,
            "thread_class": self.thread_class,
        }
        for name in ("last_touched_at", "resolved_at", "dormant_since"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = format_timestamp(value)
        for name in (
            "resolution_note",
            "resolved_by_session",
            "source_session",
            "linear_issue",
        ):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        if include_embedding and self.embedding is not None:
            payload["embedding"] = list(self.embedding)
        return payload

    @classmethod
    def from_dict(
        cls,
        payload: Dict[str, Any],
        *,
        source_session: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Thread":
        """Build a thread from a well-formed mapping, tolerating missing fields."""
        created_at = parse_timestamp(payload.get("created_at")) or now or utc_now()
        text_value = str(payload.get("text") or "").strip()
        status = str(payload.get("status") or STATUS_OPEN).strip().lower()
        if status not in PERSISTED_STATUSES:
            # Lifecycle labels written by older versions all mean "still open".
            status = STATUS_OPEN
        try:
            touch_count = max(1, int(payload.get("touch_count") or 1))
        except (TypeError, ValueError):
            touch_count = 1
        thread_class = _optional_str(payload.get("thread_class")) or detect_thread_class(
            text_value
        )
        return cls(
            id=str(payload.get("id") or generate_thread_id()),
            text=text_value,
            status=status,
            created_at=created_at,
            last_touched_at=parse_timestamp(payload.get("last_touched_at")),
            touch_count=touch_count,
            thread_class=thread_class,
            resolved_at=parse_timestamp(payload.get("resolved_at")),
            resolution_note=_optional_str(payload.get("resolution_note")),
            resolved_by_session=_optional_str(payload.get("resolved_by_session")),
            source_session=_optional_str(payload.get("source_session")) or source_session,
            linear_issue=_optional_str(payload.get("linear_issue")),
            dormant_since=parse_timestamp(payload.get("dormant_since")),
            embedding=_coerce_embedding(payload.get("embedding")),
        )


def new_thread(
    text: str,
    *,
    source_session: Optional[str] = None,
    linear_issue: Optional[str] = None,
    embedding: Optional[Iterable[float]] = None,
    now: Optional[datetime] = None,
) -> Thread:
    created_at = now or utc_now()
    cleaned = (text or "").strip()
    return Thread(
        id=generate_thread_id(),
        text=cleaned,
        status=STATUS_OPEN,
        created_at=created_at,
        last_touched_at=created_at,
        touch_count=1,
        thread_class=detect_thread_class(cleaned),
        source_session=source_session,
        linear_issue=linear_issue,
        embedding=tuple(float(v) for v in embedding) if embedding else None,
    )


def count_by_status(threads: List[Thread]) -> Dict[str, int]:
    counts = {status: 0 for status in PERSISTED_STATUSES}
    for thread in threads:
        counts[thread.status] = counts.get(thread.status, 0) + 1
    return counts
