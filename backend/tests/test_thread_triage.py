from conftest import NOW, days_ago, make_thread
from threads.triage import triage


def _fixture_threads():
    return {
        "emerging": make_thread("t-tri00001", "Draft proposal", created_days_ago=1 / 24),
        "active": make_thread(
            "t-tri00002", "Plan roadmap review", created_days_ago=10, touched_days_ago=0, touch_count=5
        ),
        "cooling": make_thread("t-tri00003", "Write quarterly report", created_days_ago=21),
        "dormant": make_thread("t-tri00004", "Refresh onboarding guide", created_days_ago=60),
        "stale": make_thread(
            "t-tri00005",
            "Archive old wiki pages",
            created_days_ago=90,
            touch_count=2,
            dormant_since=days_ago(40),
        ),
        "resolved": make_thread("t-tri00006", "Shipped already", status="resolved"),
    }


def test_triage_buckets_by_lifecycle_without_archiving() -> None:
    threads = _fixture_threads()
    report = triage(threads.values(), NOW)

    assert [entry.thread_id for entry in report.buckets["emerging"]] == ["t-tri00001"]
    assert [entry.thread_id for entry in report.buckets["active"]] == ["t-tri00002"]
    assert [entry.thread_id for entry in report.buckets["cooling"]] == ["t-tri00003"]
    assert [entry.thread_id for entry in report.buckets["dormant"]] == ["t-tri00004", "t-tri00005"]
    assert report.archived_count == 0
    assert report.total_open == 5

    stamped = {thread.id: thread for thread in report.changed}
    assert stamped["t-tri00004"].dormant_since == NOW
    assert threads["dormant"].dormant_since is None

    stale_entry = report.buckets["dormant"][1]
    assert stale_entry.lifecycle_status == "archived"
    assert stale_entry.dormant_days == 40


def test_triage_auto_archive_moves_long_dormant_threads() -> None:
    threads = _fixture_threads()
    report = triage(threads.values(), NOW, auto_archive=True)

    assert report.archived_ids == ["t-tri00005"]
    assert [entry.thread_id for entry in report.buckets["dormant"]] == ["t-tri00004"]
    archived = [thread for thread in report.changed if thread.id == "t-tri00005"]
    assert archived[0].status == "archived"
    assert threads["stale"].status == "open"

    payload = report.to_dict()
    assert payload["archived_count"] == 1
    assert payload["summary"]["total_open"] == 4
    assert set(payload["buckets"]) == {"emerging", "active", "cooling", "dormant"}
