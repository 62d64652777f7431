"""
Thread operations exposed to the tool and HTTP layers.

Every mutation is copy-on-write: records are loaded as immutable snapshots,
changed copies are produced by the pure components, and only those copies are
written back. The remote store is attempted first and the local cache is
written regardless of the remote outcome. Creates and resolves wait for the
remote write so the next read sees them; other mutations sync in the
background unless `wait_remote` is set.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence

from runtime_state import RemoteSyncTracker, WriteLaneCoordinator, runtime_state

from .config import ThreadSettings
from .dedup import DedupGate, normalize_text
from .embedding import EmbeddingClient, append_degrade_reason
from .legacy import SessionSnapshot, normalize
from .local_cache import LocalThreadCache
from .models import (
    PERSISTED_STATUSES,
    STATUS_OPEN,
    STATUS_RESOLVED,
    Thread,
    ThreadInputError,
    count_by_status,
    new_thread,
    utc_now,
)
from .reconcile import Reconciler, merge
from .resolver import find_thread_by_id, mark_resolved, resolve
from .triage import triage
from .vitality import classify, touch

logger = logging.getLogger(__name__)


class ThreadStore(Protocol):
    async def list_threads(
        self, project: str, statuses: Optional[Sequence[str]] = None
    ) -> Optional[List[Thread]]:
        ...

    async def list_recent_sessions(
        self, project: str, limit: int = 10
    ) -> Optional[List[SessionSnapshot]]:
        ...

    async def upsert_threads(self, project: str, threads: Sequence[Thread]) -> bool:
        ...

    async def record_session(self, **kwargs: Any) -> bool:
        ...


class Embedder(Protocol):
    async def embed(
        self, text: str, degrade_reasons: Optional[List[str]] = None
    ) -> Optional[List[float]]:
        ...


def present_thread(thread: Thread, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Public shape of a thread: persisted fields plus its current lifecycle."""
    payload = thread.to_dict()
    result = classify(thread, now)
    payload["lifecycle_status"] = result.lifecycle_status
    payload["vitality_score"] = (
        result.vitality.score if result.vitality is not None else None
    )
    return payload


def _unique(reasons: Iterable[str]) -> List[str]:
    seen: List[str] = []
    for reason in reasons:
        if reason and reason not in seen:
            seen.append(reason)
    return seen


class ThreadService:
    def __init__(
        self,
        settings: ThreadSettings,
        *,
        store: Optional[ThreadStore] = None,
        cache: Optional[LocalThreadCache] = None,
        embedder: Optional[Embedder] = None,
        write_lanes: Optional[WriteLaneCoordinator] = None,
        remote_sync: Optional[RemoteSyncTracker] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache or LocalThreadCache(
            settings.cache_path, lock_timeout_seconds=settings.cache_lock_timeout_sec
        )
        self.embedder = embedder or EmbeddingClient(settings)
        self.write_lanes = write_lanes or runtime_state.write_lanes
        self.remote_sync = remote_sync or runtime_state.remote_sync
        self.clock = clock
        self.gate = DedupGate(
            similarity_threshold=settings.dedup_threshold,
            token_overlap_enabled=settings.token_overlap_enabled,
            token_overlap_threshold=settings.token_overlap_threshold,
            issue_prefix_threshold=settings.issue_prefix_overlap_threshold,
        )
        self.reconciler = Reconciler(
            remote=store,
            sessions=store,
            cache=self.cache,
            aggregate_max_sessions=settings.aggregate_max_sessions,
            aggregate_max_age_days=settings.aggregate_max_age_days,
            aggregate_fetch_limit=settings.aggregate_fetch_limit,
        )

    def _project(self, project: Optional[str]) -> str:
        value = (project or "").strip()
        return value or self.settings.default_project

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(
        self,
        *,
        operation: str,
        project: str,
        threads: List[Thread],
        degrade_reasons: List[str],
        wait_remote: bool = False,
    ) -> None:
        if not threads:
            return
        if self.store is not None:
            store = self.store
            snapshot = list(threads)
            handle = self.remote_sync.schedule(
                operation=operation,
                thread_ids=[thread.id for thread in snapshot],
                write=lambda: store.upsert_threads(project, snapshot),
            )
            if wait_remote and not await handle:
                append_degrade_reason(degrade_reasons, "remote_write_failed")
        try:
            await self.cache.upsert_many(threads)
        except (RuntimeError, OSError) as exc:
            logger.warning("local thread cache write failed for %s", operation, exc_info=exc)
            append_degrade_reason(degrade_reasons, "local_write_failed")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_thread(
        self,
        text: str,
        *,
        linear_issue: Optional[str] = None,
        project: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        content = (text or "").strip()
        if not content:
            raise ThreadInputError("text must not be empty")
        project_name = self._project(project)

        async def _write() -> Dict[str, Any]:
            now = self.clock()
            degrade_reasons: List[str] = []
            embedding = await self.embedder.embed(content, degrade_reasons)
            reconciled = await self.reconciler.list_all(project_name, now=now)
            degrade_reasons.extend(reconciled.degrade_reasons)

            decision = self.gate.check(content, embedding, reconciled.threads)
            matched = (
                find_thread_by_id(reconciled.threads, decision.matched_thread_id)
                if decision.is_duplicate and decision.matched_thread_id
                else None
            )
            if matched is not None:
                thread = touch(matched, now)
                if thread.embedding is None and embedding:
                    thread = thread.with_changes(embedding=tuple(embedding))
                logger.info(
                    "create_thread deduplicated into %s via %s", matched.id, decision.method
                )
            else:
                thread = new_thread(
                    content,
                    source_session=session_id,
                    linear_issue=(linear_issue or "").strip() or None,
                    embedding=embedding,
                    now=now,
                )
                logger.info("create_thread created %s in %s", thread.id, project_name)

            await self._persist(
                operation="create_thread",
                project=project_name,
                threads=[thread],
                degrade_reasons=degrade_reasons,
                wait_remote=True,
            )
            return {
                "success": True,
                "thread": present_thread(thread, now),
                "deduplicated": matched is not None,
                "dedup_method": decision.method,
                "dedup_similarity": decision.similarity,
                "matched_thread_id": decision.matched_thread_id if matched else None,
                "degrade_reasons": _unique(degrade_reasons),
            }

        return await self.write_lanes.run_write(
            session_id=session_id, operation="create_thread", task=_write
        )

    async def list_threads(
        self,
        *,
        status: Optional[str] = None,
        include_resolved: bool = False,
        project: Optional[str] = None,
    ) -> Dict[str, Any]:
        wanted = (status or "").strip().lower() or None
        if wanted is not None and wanted not in PERSISTED_STATUSES:
            raise ThreadInputError(
                f"status must be one of {', '.join(PERSISTED_STATUSES)}"
            )
        now = self.clock()
        reconciled = await self.reconciler.list_all(
            self._project(project), include_resolved, status=wanted, now=now
        )
        counts = count_by_status(reconciled.universe)
        return {
            "threads": [present_thread(thread, now) for thread in reconciled.threads],
            "total_open": counts.get(STATUS_OPEN, 0),
            "total_resolved": counts.get(STATUS_RESOLVED, 0),
            "source": reconciled.source,
            "degrade_reasons": _unique(reconciled.degrade_reasons),
        }

    async def resolve_thread(
        self,
        *,
        thread_id: Optional[str] = None,
        text_match: Optional[str] = None,
        resolution_note: Optional[str] = None,
        session_id: Optional[str] = None,
        project: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not (thread_id or "").strip() and not (text_match or "").strip():
            raise ThreadInputError("thread_id or text_match is required")
        project_name = self._project(project)

        async def _write() -> Dict[str, Any]:
            now = self.clock()
            reconciled = await self.reconciler.list_all(
                project_name, include_resolved=True, now=now
            )
            degrade_reasons = list(reconciled.degrade_reasons)
            # Open threads are matched before resolved ones when searching by text.
            ordered = [t for t in reconciled.threads if t.status == STATUS_OPEN] + [
                t for t in reconciled.threads if t.status != STATUS_OPEN
            ]
            updated = resolve(
                ordered,
                thread_id=(thread_id or "").strip() or None,
                text_match=(text_match or "").strip() or None,
                session_id=session_id,
                note=resolution_note,
                now=now,
            )
            if updated is None:
                return {
                    "success": True,
                    "thread": None,
                    "changed": False,
                    "degrade_reasons": _unique(degrade_reasons),
                }

            changed = updated is not find_thread_by_id(ordered, updated.id)
            if changed:
                logger.info("resolve_thread resolved %s", updated.id)
                await self._persist(
                    operation="resolve_thread",
                    project=project_name,
                    threads=[updated],
                    degrade_reasons=degrade_reasons,
                    wait_remote=True,
                )
            return {
                "success": True,
                "thread": present_thread(updated, now),
                "changed": changed,
                "degrade_reasons": _unique(degrade_reasons),
            }

        return await self.write_lanes.run_write(
            session_id=session_id, operation="resolve_thread", task=_write
        )

    async def cleanup_threads(
        self,
        *,
        project: Optional[str] = None,
        auto_archive: bool = False,
        session_id: Optional[str] = None,
        wait_remote: bool = False,
    ) -> Dict[str, Any]:
        project_name = self._project(project)

        async def _write() -> Dict[str, Any]:
            now = self.clock()
            reconciled = await self.reconciler.list_all(project_name, now=now)
            degrade_reasons = list(reconciled.degrade_reasons)
            report = triage(
                reconciled.threads,
                now,
                auto_archive=auto_archive,
                archive_after=timedelta(days=self.settings.archive_after_days),
            )
            await self._persist(
                operation="cleanup_threads",
                project=project_name,
                threads=report.changed,
                degrade_reasons=degrade_reasons,
                wait_remote=wait_remote,
            )
            if report.archived_ids:
                logger.info(
                    "cleanup_threads archived %d threads in %s",
                    report.archived_count,
                    project_name,
                )
            payload = report.to_dict()
            payload["source"] = reconciled.source
            payload["degrade_reasons"] = _unique(degrade_reasons)
            return payload

        return await self.write_lanes.run_write(
            session_id=session_id, operation="cleanup_threads", task=_write
        )

    async def touch_threads(
        self,
        thread_ids: Sequence[str],
        *,
        project: Optional[str] = None,
        session_id: Optional[str] = None,
        wait_remote: bool = False,
    ) -> Dict[str, Any]:
        wanted = [value.strip() for value in thread_ids if value and value.strip()]
        project_name = self._project(project)

        async def _write() -> Dict[str, Any]:
            now = self.clock()
            reconciled = await self.reconciler.list_all(project_name, now=now)
            degrade_reasons = list(reconciled.degrade_reasons)
            touched: List[Thread] = []
            for thread_id in dict.fromkeys(wanted):
                current = find_thread_by_id(reconciled.threads, thread_id)
                if current is not None and not current.is_terminal:
                    touched.append(touch(current, now))
            await self._persist(
                operation="touch_threads",
                project=project_name,
                threads=touched,
                degrade_reasons=degrade_reasons,
                wait_remote=wait_remote,
            )
            return {
                "touched_ids": [thread.id for thread in touched],
                "missing_ids": [
                    thread_id
                    for thread_id in dict.fromkeys(wanted)
                    if thread_id not in {thread.id for thread in touched}
                ],
                "degrade_reasons": _unique(degrade_reasons),
            }

        return await self.write_lanes.run_write(
            session_id=session_id, operation="touch_threads", task=_write
        )

    async def sync_session_threads(
        self,
        raw_threads: Iterable[Any],
        *,
        session_id: str,
        project: Optional[str] = None,
        close_compliance: Optional[Dict[str, Any]] = None,
        wait_remote: bool = False,
    ) -> Dict[str, Any]:
        """
        Fold the thread list of a closing session into the store.

        Unknown threads are created unless an open thread has the same
        normalized text (that one is touched instead). Threads the session
        resolved are resolved; the rest are touched.
        """
        project_name = self._project(project)

        async def _write() -> Dict[str, Any]:
            now = self.clock()
            incoming = normalize(raw_threads, source_session=session_id, now=now)
            reconciled = await self.reconciler.list_all(
                project_name, include_resolved=True, now=now
            )
            degrade_reasons = list(reconciled.degrade_reasons)
            known = list(reconciled.threads)
            open_by_key = {
                normalize_text(thread.text): thread
                for thread in known
                if thread.status == STATUS_OPEN
            }

            created: List[Thread] = []
            changed: Dict[str, Thread] = {}
            resolved_ids: List[str] = []
            for item in incoming:
                existing = find_thread_by_id(known, item.id) or open_by_key.get(
                    normalize_text(item.text)
                )
                if existing is None:
                    created.append(item)
                    continue
                current = changed.get(existing.id, existing)
                if item.status == STATUS_RESOLVED and current.status == STATUS_OPEN:
                    updated = mark_resolved(
                        current,
                        session_id=item.resolved_by_session or session_id,
                        note=item.resolution_note,
                        now=item.resolved_at or now,
                    )
                    resolved_ids.append(current.id)
                else:
                    updated = touch(current, now)
                if updated is not current:
                    changed[current.id] = updated

            to_write = merge(created, list(changed.values()))
            written_ids = {thread.id for thread in to_write}
            await self._persist(
                operation="sync_session_threads",
                project=project_name,
                threads=to_write,
                degrade_reasons=degrade_reasons,
                wait_remote=wait_remote,
            )
            if self.store is not None:
                recorded = await self.store.record_session(
                    session_id=session_id,
                    project=project_name,
                    open_threads=incoming,
                    close_compliance=close_compliance,
                    created_at=now,
                )
                if not recorded:
                    append_degrade_reason(degrade_reasons, "remote_write_failed")
            return {
                "created_ids": [thread.id for thread in created if thread.id in written_ids],
                "touched_ids": [
                    thread_id for thread_id in changed if thread_id not in resolved_ids
                ],
                "resolved_ids": resolved_ids,
                "degrade_reasons": _unique(degrade_reasons),
            }

        return await self.write_lanes.run_write(
            session_id=session_id, operation="sync_session_threads", task=_write
        )

    async def sync_status(self, limit: int = 20) -> Dict[str, Any]:
        return {
            "remote_configured": self.store is not None,
            "summary": await self.remote_sync.summary(),
            "recent": await self.remote_sync.recent(limit),
            "write_lanes": await self.write_lanes.status(),
        }


# =============================================================================
# Global Singleton
# =============================================================================

_thread_service: Optional[ThreadService] = None


def get_thread_service() -> ThreadService:
    """Get the process-wide ThreadService, built from the environment."""
    global _thread_service
    if _thread_service is None:
        from db.thread_store import get_thread_store

        settings = ThreadSettings.from_env()
        _thread_service = ThreadService(settings, store=get_thread_store(settings))
    return _thread_service


def reset_thread_service() -> None:
    global _thread_service
    _thread_service = None
