from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import pytest

from runtime_state import RemoteSyncTracker, WriteLaneCoordinator
from threads.config import ThreadSettings
from threads.legacy import SessionSnapshot
from threads.models import Thread
from threads.service import ThreadService

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def days_ago(days: float) -> datetime:
    return NOW - timedelta(days=days)


def make_thread(
    thread_id: str,
    text: str,
    *,
    status: str = "open",
    created_days_ago: float = 5.0,
    touched_days_ago: Optional[float] = None,
    touch_count: int = 1,
    **extra,
) -> Thread:
    created_at = days_ago(created_days_ago)
    last_touched = days_ago(touched_days_ago) if touched_days_ago is not None else created_at
    return Thread(
        id=thread_id,
        text=text,
        status=status,
        created_at=created_at,
        last_touched_at=last_touched,
        touch_count=touch_count,
        **extra,
    )


class FakeStore:
    """In-memory stand-in for ThreadStoreClient."""

    def __init__(self, threads: Sequence[Thread] = (), *, reachable: bool = True) -> None:
        self.threads: Dict[str, Thread] = {thread.id: thread for thread in threads}
        self.sessions: List[SessionSnapshot] = []
        self.recorded: List[dict] = []
        self.reachable = reachable

    async def list_threads(self, project: str, statuses=None):
        if not self.reachable:
            return None
        items = list(self.threads.values())
        if statuses:
            items = [thread for thread in items if thread.status in statuses]
        return items

    async def list_recent_sessions(self, project: str, limit: int = 10):
        if not self.reachable:
            return None
        return self.sessions[:limit]

    async def upsert_threads(self, project: str, threads: Sequence[Thread]) -> bool:
        if not self.reachable:
            return False
        for thread in threads:
            self.threads[thread.id] = thread
        return True

    async def record_session(self, **kwargs) -> bool:
        if not self.reachable:
            return False
        self.recorded.append(kwargs)
        return True


class FakeEmbedder:
    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None) -> None:
        self.vectors = vectors or {}

    async def embed(self, text: str, degrade_reasons=None):
        vector = self.vectors.get(text)
        if vector is None and degrade_reasons is not None:
            degrade_reasons.append("embedding_unavailable")
        return vector


@pytest.fixture
def thread_settings(tmp_path: Path) -> ThreadSettings:
    return ThreadSettings(cache_dir=tmp_path / "cache", embedding_backend="none")


@pytest.fixture
def make_service(thread_settings: ThreadSettings):
    def _build(
        *,
        store=None,
        embedder=None,
        settings: Optional[ThreadSettings] = None,
        clock=lambda: NOW,
    ) -> ThreadService:
        return ThreadService(
            settings or thread_settings,
            store=store,
            embedder=embedder or FakeEmbedder(),
            write_lanes=WriteLaneCoordinator(global_concurrency=1),
            remote_sync=RemoteSyncTracker(max_events=50),
            clock=clock,
        )

    return _build
