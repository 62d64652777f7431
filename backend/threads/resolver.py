"""
Thread lookup and the open -> resolved transition.

Only the targeted thread is ever changed. A resolution note that mentions
another thread id ("duplicate of t-1234abcd") is stored verbatim and never
looked up.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Sequence

from .models import STATUS_OPEN, STATUS_RESOLVED, Thread, utc_now


def find_thread_by_id(threads: Iterable[Thread], thread_id: str) -> Optional[Thread]:
    wanted = (thread_id or "").strip()
    if not wanted:
        return None
    for thread in threads:
        if thread.id == wanted:
            return thread
    return None


def find_thread_by_text(threads: Iterable[Thread], query: str) -> Optional[Thread]:
    """Case-insensitive substring match; the first match wins."""
    needle = (query or "").strip().casefold()
    if not needle:
        return None
    for thread in threads:
        if needle in thread.text.casefold():
            return thread
    return None


def locate(
    threads: Sequence[Thread],
    *,
    thread_id: Optional[str] = None,
    text_match: Optional[str] = None,
) -> Optional[Thread]:
    match = find_thread_by_id(threads, thread_id) if thread_id else None
    if match is None and text_match:
        match = find_thread_by_text(threads, text_match)
    return match


def mark_resolved(
    thread: Thread,
    *,
    session_id: Optional[str] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Thread:
    """Resolve one open thread. Anything else is returned unchanged."""
    if thread.status != STATUS_OPEN:
        return thread
    changes = {
        "status": STATUS_RESOLVED,
        "resolved_at": now or utc_now(),
        "dormant_since": None,
    }
    if session_id:
        changes["resolved_by_session"] = session_id
    if note and note.strip():
        changes["resolution_note"] = note.strip()
    return thread.with_changes(**changes)


def resolve(
    threads: Sequence[Thread],
    *,
    thread_id: Optional[str] = None,
    text_match: Optional[str] = None,
    session_id: Optional[str] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[Thread]:
    """
    Find a thread by id (preferred) or text and resolve it.

    Returns None when nothing matches. An already resolved (or archived)
    thread is returned as the same object, untouched.
    """
    target = locate(threads, thread_id=thread_id, text_match=text_match)
    if target is None:
        return None
    return mark_resolved(target, session_id=session_id, note=note, now=now)


def replace_thread(threads: Iterable[Thread], updated: Thread) -> List[Thread]:
    """Swap in the new snapshot for `updated.id`; other records are kept as-is."""
    return [updated if thread.id == updated.id else thread for thread in threads]
