"""
Legacy thread encodings found inside historical session records.

Closed sessions embed an `open_threads` list whose entries come in several
historical shapes:

1. a thread object (or a mapping with id/text/status)
2. a JSON string holding {id, text, status, ...}
3. a JSON string holding {id, status, note} with no "text" - older writers
   stored the display text under "note"
4. a JSON string holding {item, context}
5. free-form text, or JSON that does not parse

Everything is normalized into `Thread` here; the mixed shapes never leave this
module.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .dedup import normalize_text
from .models import (
    STATUS_ARCHIVED,
    STATUS_OPEN,
    STATUS_RESOLVED,
    Thread,
    detect_thread_class,
    generate_thread_id,
    parse_timestamp,
    utc_now,
)

PROJECT_STATE_PREFIX = "PROJECT STATE:"


def _free_text_thread(
    text: str, source_session: Optional[str], now: datetime
) -> Thread:
    cleaned = text.strip()
    return Thread(
        id=generate_thread_id(),
        text=cleaned,
        status=STATUS_OPEN,
        created_at=now,
        thread_class=detect_thread_class(cleaned),
        source_session=source_session,
    )


def _parse_json_object(raw: str) -> Optional[Dict[str, Any]]:
    candidate = raw.strip()
    if not candidate.startswith("{"):
        return None
    try:
        loaded = json.loads(candidate)
    except (TypeError, ValueError):
        return None
    return loaded if isinstance(loaded, dict) else None


def _has_text(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _from_note_wrapper(
    payload: Mapping[str, Any], source_session: Optional[str], now: datetime
) -> Thread:
    promoted = {
        "id": payload.get("id"),
        "text": payload.get("note"),
        "status": payload.get("status"),
        "created_at": payload.get("created_at"),
        "resolved_at": payload.get("resolved_at"),
    }
    return Thread.from_dict(promoted, source_session=source_session, now=now)


def _from_mapping(
    payload: Mapping[str, Any],
    raw: Optional[str],
    source_session: Optional[str],
    now: datetime,
) -> Optional[Thread]:
    has_id = bool(payload.get("id"))
    has_status = bool(payload.get("status"))

    if has_id and has_status and _has_text(payload.get("text")):
        inner = _parse_json_object(str(payload["text"]))
        if inner is not None and inner.get("id") and (
            _has_text(inner.get("text")) or _has_text(inner.get("note"))
        ):
            # A wrapper whose text is itself a serialized thread.
            merged = dict(payload)
            merged.update(
                {
                    "id": inner["id"],
                    "text": inner.get("text") or inner.get("note"),
                    "status": inner.get("status") or payload.get("status"),
                    "created_at": inner.get("created_at") or payload.get("created_at"),
                    "resolved_at": inner.get("resolved_at") or payload.get("resolved_at"),
                }
            )
            return Thread.from_dict(merged, source_session=source_session, now=now)
        return Thread.from_dict(dict(payload), source_session=source_session, now=now)

    if has_id and has_status and _has_text(payload.get("note")):
        return _from_note_wrapper(payload, source_session, now)

    for key in ("item", "text", "note"):
        value = payload.get(key)
        if _has_text(value):
            return _free_text_thread(str(value), source_session, now)

    if raw is None:
        return None
    return _free_text_thread(raw, source_session, now)


def normalize_entry(
    entry: Any, source_session: Optional[str] = None, now: Optional[datetime] = None
) -> Optional[Thread]:
    """Normalize one legacy entry. Returns None only for empty entries."""
    now_value = now or utc_now()
    if entry is None:
        return None
    if isinstance(entry, Thread):
        return entry
    if isinstance(entry, Mapping):
        return _from_mapping(entry, None, source_session, now_value)
    raw = entry if isinstance(entry, str) else str(entry)
    if not raw.strip():
        return None
    parsed = _parse_json_object(raw)
    if parsed is None:
        return _free_text_thread(raw, source_session, now_value)
    return _from_mapping(parsed, raw, source_session, now_value)


def normalize(
    raw_thread_entries: Optional[Iterable[Any]],
    source_session: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[Thread]:
    now_value = now or utc_now()
    normalized: List[Thread] = []
    for entry in raw_thread_entries or []:
        thread = normalize_entry(entry, source_session, now_value)
        if thread is not None:
            normalized.append(thread)
    return normalized


# =============================================================================
# Session aggregation
# =============================================================================


@dataclass(frozen=True)
class SessionSnapshot:
    """The slice of a session record that carries embedded threads."""

    id: str
    session_date: Optional[date]
    open_threads: Sequence[Any] = field(default_factory=tuple)
    close_compliance: Optional[Mapping[str, Any]] = None

    @property
    def is_closed(self) -> bool:
        return self.close_compliance is not None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "SessionSnapshot":
        raw_date = payload.get("session_date")
        session_date: Optional[date]
        if isinstance(raw_date, datetime):
            session_date = raw_date.date()
        elif isinstance(raw_date, date):
            session_date = raw_date
        else:
            parsed = parse_timestamp(raw_date)
            if parsed is None and isinstance(raw_date, str):
                parsed = parse_timestamp(f"{raw_date.strip()}T00:00:00")
            session_date = parsed.date() if parsed is not None else None
        raw_threads = payload.get("open_threads")
        if isinstance(raw_threads, str):
            loaded = None
            try:
                loaded = json.loads(raw_threads)
            except (TypeError, ValueError):
                loaded = None
            raw_threads = loaded if isinstance(loaded, list) else [raw_threads]
        compliance = payload.get("close_compliance")
        return cls(
            id=str(payload.get("id") or ""),
            session_date=session_date,
            open_threads=tuple(raw_threads or ()),
            close_compliance=compliance if isinstance(compliance, Mapping) else None,
        )


@dataclass(frozen=True)
class AggregateResult:
    open: List[Thread]
    recently_resolved: List[Thread]

    @property
    def all(self) -> List[Thread]:
        return [*self.open, *self.recently_resolved]


def aggregate_threads(
    sessions: Iterable[SessionSnapshot],
    *,
    max_sessions: int = 5,
    max_age_days: int = 14,
    now: Optional[datetime] = None,
) -> AggregateResult:
    """
    Collect threads embedded in recent closed sessions, newest first.

    Sessions without close_compliance never closed cleanly and are ignored.
    Duplicates across sessions (same id or same normalized text) keep the
    first, i.e. most recent, copy.
    """
    now_value = now or utc_now()
    cutoff = (now_value - timedelta(days=max_age_days)).date()
    closed = [
        session
        for session in sessions
        if session.is_closed
        and session.session_date is not None
        and session.session_date >= cutoff
    ][: max(0, max_sessions)]

    seen_ids = set()
    seen_keys = set()
    open_threads: List[Thread] = []
    resolved: List[Thread] = []
    for session in closed:
        for thread in normalize(session.open_threads, session.id or None, now_value):
            if thread.text.startswith(PROJECT_STATE_PREFIX):
                continue
            key = normalize_text(thread.text)
            if not key or key in seen_keys or thread.id in seen_ids:
                continue
            seen_keys.add(key)
            seen_ids.add(thread.id)
            if thread.status == STATUS_RESOLVED:
                resolved.append(thread)
            elif thread.status != STATUS_ARCHIVED:
                open_threads.append(thread)
    return AggregateResult(open=open_threads, recently_resolved=resolved)
