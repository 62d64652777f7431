from datetime import timedelta

from conftest import NOW, make_thread
from threads.resolver import find_thread_by_text, locate, replace_thread, resolve


def test_resolve_by_id_changes_only_the_target() -> None:
    target = make_thread("t-aaaa0001", "Fix auth timeout")
    other = make_thread("t-bbbb0002", "Auth timeout follow-up")
    threads = [target, other]

    resolved = resolve(
        threads,
        thread_id="t-aaaa0001",
        session_id="sess-9",
        note="duplicate of t-bbbb0002",
        now=NOW,
    )

    assert resolved is not None
    assert resolved.status == "resolved"
    assert resolved.resolved_at == NOW
    assert resolved.resolved_by_session == "sess-9"
    assert resolved.resolution_note == "duplicate of t-bbbb0002"
    assert target.status == "open"
    assert other.status == "open"
    assert replace_thread(threads, resolved) == [resolved, other]


def test_resolving_twice_is_a_no_op() -> None:
    thread = make_thread("t-aaaa0003", "Fix auth timeout")
    first = resolve([thread], thread_id=thread.id, now=NOW)
    assert first is not None

    second = resolve([first], thread_id=thread.id, note="again")
    assert second is first
    assert second.resolution_note is None


def test_text_match_is_case_insensitive_substring() -> None:
    threads = [make_thread("t-aaaa0004", "Write docs"), make_thread("t-aaaa0005", "Fix Auth Timeout")]
    assert find_thread_by_text(threads, "auth time").id == "t-aaaa0005"
    resolved = resolve(threads, text_match="AUTH", now=NOW)
    assert resolved is not None and resolved.id == "t-aaaa0005"


def test_unknown_id_falls_back_to_text_match() -> None:
    threads = [make_thread("t-aaaa0006", "Rotate keys")]
    assert locate(threads, thread_id="t-missing1", text_match="rotate").id == "t-aaaa0006"
    assert locate(threads, thread_id="t-missing1") is None


def test_nothing_matches_returns_none() -> None:
    assert resolve([make_thread("t-aaaa0007", "Rotate keys")], text_match="deploy") is None
    assert resolve([], thread_id="t-aaaa0007") is None


def test_archived_thread_is_not_resolved() -> None:
    archived = make_thread("t-aaaa0008", "Old idea", status="archived")
    assert resolve([archived], thread_id=archived.id, now=NOW) is archived


def test_note_referencing_resolved_or_missing_thread_leaves_it_alone() -> None:
    earlier = NOW - timedelta(days=3)
    already = make_thread(
        "t-aaa11111", "Fix auth timeout", status="resolved", resolved_at=earlier, resolution_note="first"
    )
    target = make_thread("t-bbb22222", "Fix the auth timeout again")
    threads = [already, target]

    resolved = resolve(threads, thread_id=target.id, note="Duplicate of t-aaa11111", now=NOW)
    dangling = resolve(
        [make_thread("t-ccc33333", "Rotate keys")],
        thread_id="t-ccc33333",
        note="Duplicate of t-zzz99999",
        now=NOW,
    )

    assert resolved is not None and resolved.id == "t-bbb22222"
    assert already.resolved_at == earlier
    assert already.resolution_note == "first"
    assert replace_thread(threads, resolved)[0] is already
    assert dangling is not None and dangling.id == "t-ccc33333"


def test_exact_id_wins_over_earlier_text_match() -> None:
    decoy = make_thread("t-aaaa0009", "Rotate keys for staging")
    target = make_thread("t-aaaa0010", "Audit key usage")

    resolved = resolve([decoy, target], thread_id=target.id, text_match="rotate keys", now=NOW)

    assert resolved is not None
    assert resolved.id == "t-aaaa0010"
    assert decoy.status == "open"
