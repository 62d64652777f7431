"""
Reconciliation of thread state across sources.

Sources, in priority order:
1. the remote store
2. thread lists embedded in recent closed sessions, merged with the local cache
3. the local cache alone

`merge` is a one-way ratchet: a record can move from open to resolved or
archived while merging, never back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from .dedup import deduplicate_thread_list, normalize_text
from .legacy import SessionSnapshot, aggregate_threads
from .models import STATUS_OPEN, TERMINAL_STATUSES, Thread, utc_now

logger = logging.getLogger(__name__)

SOURCE_REMOTE = "remote"
SOURCE_AGGREGATION = "aggregation"
SOURCE_LOCAL = "local"

_FILLABLE_FIELDS = (
    "last_touched_at",
    "linear_issue",
    "source_session",
    "dormant_since",
    "embedding",
)
_RESOLUTION_FIELDS = ("resolved_at", "resolution_note", "resolved_by_session")


class ThreadSource(Protocol):
    async def list_threads(
        self, project: str, statuses: Optional[Sequence[str]] = None
    ) -> Optional[List[Thread]]:
        ...


class SessionSource(Protocol):
    async def list_recent_sessions(
        self, project: str, limit: int = 10
    ) -> Optional[List[SessionSnapshot]]:
        ...


class CacheSource(Protocol):
    async def load(self) -> List[Thread]:
        ...


def _advances(candidate: Thread, existing: Thread) -> bool:
    """True when `candidate` is further along the lifecycle than `existing`."""
    return existing.status == STATUS_OPEN and candidate.status in TERMINAL_STATUSES


def _collapse(primary: Thread, other: Thread) -> Thread:
    """Fold `other` into `primary`, keeping primary's id."""
    changes: Dict[str, Any] = {}
    if _advances(other, primary):
        changes["status"] = other.status
        for name in _RESOLUTION_FIELDS:
            changes[name] = getattr(other, name)
    for name in _FILLABLE_FIELDS:
        if getattr(primary, name) is None and getattr(other, name) is not None:
            changes[name] = getattr(other, name)
    if other.touch_count > primary.touch_count:
        changes["touch_count"] = other.touch_count
    if (
        primary.last_touched_at is not None
        and other.last_touched_at is not None
        and other.last_touched_at > primary.last_touched_at
    ):
        changes["last_touched_at"] = other.last_touched_at
    if other.created_at < primary.created_at:
        changes["created_at"] = other.created_at
    return primary.with_changes(**changes) if changes else primary


def merge(incoming: Iterable[Thread], current: Iterable[Thread]) -> List[Thread]:
    """
    Merge two thread lists into one record per semantic item.

    Pass 1 keys by id: new ids are added, an incoming resolved/archived copy
    replaces an open one. Pass 2 keys by normalized text and collapses items
    that received different ids in different sources, keeping the id seen
    first (current before incoming) and the most advanced status.
    """
    by_id: Dict[str, Thread] = {}
    for thread in current:
        existing = by_id.get(thread.id)
        if existing is None or _advances(thread, existing):
            by_id[thread.id] = thread

    for thread in incoming:
        existing = by_id.get(thread.id)
        if existing is None:
            by_id[thread.id] = thread
        elif _advances(thread, existing):
            by_id[thread.id] = thread

    by_key: Dict[str, Thread] = {}
    order: List[str] = []
    untexted: List[Thread] = []
    for thread in by_id.values():
        key = normalize_text(thread.text)
        if not key:
            untexted.append(thread)
            continue
        canonical = by_key.get(key)
        if canonical is None:
            by_key[key] = thread
            order.append(key)
        else:
            by_key[key] = _collapse(canonical, thread)

    return [by_key[key] for key in order] + untexted


def filter_by_status(
    threads: Iterable[Thread], status: Optional[str], include_resolved: bool
) -> List[Thread]:
    if include_resolved:
        return list(threads)
    wanted = status or STATUS_OPEN
    return [thread for thread in threads if thread.status == wanted]


@dataclass
class ReconcileResult:
    threads: List[Thread]
    source: str
    # Everything the chosen source returned, before status filtering.
    universe: List[Thread] = field(default_factory=list)
    degrade_reasons: List[str] = field(default_factory=list)


class Reconciler:
    def __init__(
        self,
        *,
        remote: Optional[ThreadSource],
        sessions: Optional[SessionSource],
        cache: CacheSource,
        aggregate_max_sessions: int = 5,
        aggregate_max_age_days: int = 14,
        aggregate_fetch_limit: int = 10,
    ) -> None:
        self._remote = remote
        self._sessions = sessions
        self._cache = cache
        self._aggregate_max_sessions = aggregate_max_sessions
        self._aggregate_max_age_days = aggregate_max_age_days
        self._aggregate_fetch_limit = aggregate_fetch_limit

    async def list_open(self, project: str, now: Optional[datetime] = None) -> List[Thread]:
        result = await self.list_all(project, include_resolved=False, now=now)
        return result.threads

    async def list_all(
        self,
        project: str,
        include_resolved: bool = False,
        *,
        status: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ReconcileResult:
        degrade_reasons: List[str] = []

        remote_threads = await self._load_remote(project, degrade_reasons)
        if remote_threads is not None:
            return ReconcileResult(
                threads=deduplicate_thread_list(
                    filter_by_status(remote_threads, status, include_resolved)
                ),
                source=SOURCE_REMOTE,
                universe=list(remote_threads),
                degrade_reasons=degrade_reasons,
            )

        universe = await self._load_aggregated(project, degrade_reasons, now)
        source = SOURCE_AGGREGATION
        if universe is None:
            universe = deduplicate_thread_list(await self._cache.load())
            source = SOURCE_LOCAL

        return ReconcileResult(
            threads=filter_by_status(universe, status, include_resolved),
            source=source,
            universe=universe,
            degrade_reasons=degrade_reasons,
        )

    async def _load_remote(
        self,
        project: str,
        degrade_reasons: List[str],
    ) -> Optional[List[Thread]]:
        if self._remote is None:
            degrade_reasons.append("remote_not_configured")
            return None
        threads = await self._remote.list_threads(project)
        if threads is None:
            degrade_reasons.append("remote_unavailable")
        return threads

    async def _load_aggregated(
        self,
        project: str,
        degrade_reasons: List[str],
        now: Optional[datetime],
    ) -> Optional[List[Thread]]:
        if self._sessions is None:
            return None
        try:
            sessions = await self._sessions.list_recent_sessions(
                project, limit=self._aggregate_fetch_limit
            )
        except Exception as exc:
            logger.warning("session aggregation failed for %s", project, exc_info=exc)
            degrade_reasons.append("aggregation_failed")
            return None
        if not sessions:
            if sessions is None:
                degrade_reasons.append("aggregation_failed")
            return None

        aggregated = aggregate_threads(
            sessions,
            max_sessions=self._aggregate_max_sessions,
            max_age_days=self._aggregate_max_age_days,
            now=now or utc_now(),
        )
        cached = await self._cache.load()
        if cached:
            return deduplicate_thread_list(merge(aggregated.all, cached))
        return deduplicate_thread_list(aggregated.all)
