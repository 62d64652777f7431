from typing import List

import pytest

from conftest import NOW, FakeStore, days_ago, make_thread
from threads.legacy import SessionSnapshot
from threads.models import Thread
from threads.reconcile import Reconciler, merge


class _Cache:
    def __init__(self, threads: List[Thread]) -> None:
        self.threads = threads

    async def load(self) -> List[Thread]:
        return list(self.threads)


class _BrokenSessions:
    async def list_recent_sessions(self, project: str, limit: int = 10):
        raise RuntimeError("session table gone")


def test_merge_ratchets_toward_resolved() -> None:
    open_copy = make_thread("t-merge001", "Fix auth timeout")
    resolved_copy = open_copy.with_changes(status="resolved", resolved_at=NOW)

    assert merge([resolved_copy], [open_copy]) == [resolved_copy]
    assert merge([open_copy], [resolved_copy]) == [resolved_copy]


def test_merge_adds_new_ids_and_keeps_current_order() -> None:
    a = make_thread("t-merge002", "Write docs")
    b = make_thread("t-merge003", "Plan roadmap")

    assert [thread.id for thread in merge([b], [a])] == ["t-merge002", "t-merge003"]


def test_merge_collapses_same_text_with_different_ids() -> None:
    current = make_thread("t-local001", "Fix auth timeout", linear_issue="OD-1")
    incoming = make_thread(
        "t-remote01",
        "fix the auth timeout.",
        status="resolved",
        resolved_at=NOW,
        resolution_note="patched",
        touch_count=4,
    )
    merged = merge([incoming], [current])

    assert len(merged) == 1
    assert merged[0].id == "t-local001"
    assert merged[0].status == "resolved"
    assert merged[0].resolution_note == "patched"
    assert merged[0].touch_count == 4
    assert merged[0].linear_issue == "OD-1"


@pytest.mark.asyncio
async def test_remote_source_wins_when_reachable() -> None:
    store = FakeStore(
        [
            make_thread("t-rem00001", "Remote open"),
            make_thread("t-rem00002", "Remote done", status="resolved"),
        ]
    )
    reconciler = Reconciler(remote=store, sessions=store, cache=_Cache([make_thread("t-loc00001", "Local only")]))

    result = await reconciler.list_all("default")
    assert result.source == "remote"
    assert [thread.id for thread in result.threads] == ["t-rem00001"]
    assert len(result.universe) == 2
    assert result.degrade_reasons == []

    everything = await reconciler.list_all("default", include_resolved=True)
    assert {thread.id for thread in everything.threads} == {"t-rem00001", "t-rem00002"}


@pytest.mark.asyncio
async def test_aggregation_merges_with_local_cache_when_remote_down() -> None:
    store = FakeStore(reachable=True)
    store.sessions = [
        SessionSnapshot.from_mapping(
            {
                "id": "s1",
                "session_date": days_ago(1).date().isoformat(),
                "open_threads": [
                    {"id": "t-agg00001", "status": "resolved", "text": "Fix auth timeout"},
                    "Ship release notes",
                ],
                "close_compliance": {"ok": True},
            }
        )
    ]

    class _DownRemote:
        async def list_threads(self, project, statuses=None):
            return None

    cache = _Cache([make_thread("t-agg00001", "Fix auth timeout"), make_thread("t-loc00002", "Local idea")])
    reconciler = Reconciler(remote=_DownRemote(), sessions=store, cache=cache)

    result = await reconciler.list_all("default", now=NOW)
    assert result.source == "aggregation"
    assert "remote_unavailable" in result.degrade_reasons
    assert sorted(thread.text for thread in result.threads) == ["Local idea", "Ship release notes"]

    everything = await reconciler.list_all("default", include_resolved=True, now=NOW)
    resolved = [thread for thread in everything.threads if thread.id == "t-agg00001"]
    assert len(resolved) == 1
    assert resolved[0].status == "resolved"


@pytest.mark.asyncio
async def test_local_cache_is_the_last_resort() -> None:
    cache = _Cache([make_thread("t-loc00003", "Local idea"), make_thread("t-loc00004", "local idea!")])
    reconciler = Reconciler(remote=None, sessions=_BrokenSessions(), cache=cache)

    result = await reconciler.list_all("default")
    assert result.source == "local"
    assert [thread.id for thread in result.threads] == ["t-loc00003"]
    assert result.degrade_reasons == ["remote_not_configured", "aggregation_failed"]


@pytest.mark.asyncio
async def test_status_filter_selects_archived() -> None:
    cache = _Cache(
        [
            make_thread("t-loc00005", "Still open"),
            make_thread("t-loc00006", "Put away", status="archived"),
        ]
    )
    reconciler = Reconciler(remote=None, sessions=None, cache=cache)

    result = await reconciler.list_all("default", status="archived")
    assert [thread.id for thread in result.threads] == ["t-loc00006"]
    assert await reconciler.list_open("default") == [cache.threads[0]]
