import pytest

from conftest import make_thread
from threads.dedup import (
    DedupGate,
    cosine_similarity,
    deduplicate_thread_list,
    extract_issue_prefix,
    normalize_text,
)


def test_normalize_text_ignores_case_punctuation_and_filler() -> None:
    assert normalize_text("Fix auth timeout") == "fix auth timeout"
    assert normalize_text("fix the auth timeout.") == "fix auth timeout"
    assert normalize_text("   ") == ""


def test_normalize_text_keeps_negations() -> None:
    assert normalize_text("deploy blocked") != normalize_text("not deploy blocked")


def test_text_variant_is_duplicate_without_embeddings() -> None:
    existing = make_thread("t-auth0001", "Fix auth timeout")
    result = DedupGate().check("fix the auth timeout.", None, [existing])

    assert result.is_duplicate is True
    assert result.method == "text_normalization"
    assert result.matched_thread_id == "t-auth0001"
    assert result.matched_text == "Fix auth timeout"


def test_embedding_match_above_threshold() -> None:
    existing = make_thread("t-pipe0001", "Deploy pipeline is red", embedding=(1.0, 0.0))
    result = DedupGate().check("CI pipeline failing on main", [0.9, 0.1], [existing])

    assert result.is_duplicate is True
    assert result.method == "embedding"
    assert result.similarity == pytest.approx(0.9939, abs=1e-3)


def test_embedding_miss_reports_best_similarity() -> None:
    existing = make_thread("t-pipe0002", "Deploy pipeline is red", embedding=(1.0, 0.0))
    result = DedupGate().check("Write onboarding guide", [0.0, 1.0], [existing])

    assert result.is_duplicate is False
    assert result.method == "embedding"
    assert result.similarity == 0.0


def test_embedding_miss_still_catches_exact_text() -> None:
    existing = make_thread("t-pipe0003", "Fix auth timeout", embedding=(1.0, 0.0))
    result = DedupGate().check("Fix auth timeout!", [0.0, 1.0], [existing])

    assert result.is_duplicate is True
    assert result.method == "text_normalization"


def test_empty_candidate_set_or_blank_text_skips() -> None:
    existing = make_thread("t-skip0001", "Anything")
    assert DedupGate().check("Something", None, []).method == "skipped"
    assert DedupGate().check("  ", None, [existing]).method == "skipped"


def test_resolved_threads_are_not_candidates() -> None:
    resolved = make_thread("t-done0001", "Fix auth timeout", status="resolved")
    result = DedupGate().check("Fix auth timeout", None, [resolved])
    assert result.is_duplicate is False
    assert result.method == "skipped"


def test_token_overlap_is_opt_in() -> None:
    existing = make_thread("t-od6920001", "OD-692 login redirect broken")
    new_text = "OD-692 fix login redirect loop"

    assert DedupGate().check(new_text, None, [existing]).is_duplicate is False

    result = DedupGate(token_overlap_enabled=True).check(new_text, None, [existing])
    assert result.is_duplicate is True
    assert result.method == "token_overlap"
    assert result.similarity == pytest.approx(0.8)


def test_token_overlap_needs_enough_shared_words() -> None:
    existing = make_thread("t-bill0001", "billing report cleanup")
    result = DedupGate(token_overlap_enabled=True).check(
        "refactor billing export job", None, [existing]
    )
    assert result.is_duplicate is False


def test_issue_prefix_and_cosine_helpers() -> None:
    assert extract_issue_prefix("od-692 login") == "OD-692"
    assert extract_issue_prefix("no issue here") is None
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0], [1.0, 0.0]) == 0.0


def test_deduplicate_thread_list_keeps_first_seen() -> None:
    first = make_thread("t-list0001", "Fix auth")
    same_id = make_thread("t-list0001", "Another text")
    same_text = make_thread("t-list0002", "fix auth!")
    blank = make_thread("t-list0003", "")
    other = make_thread("t-list0004", "Write docs")

    assert deduplicate_thread_list([first, same_id, same_text, blank, other]) == [first, other]
