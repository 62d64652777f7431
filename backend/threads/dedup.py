"""
Duplicate detection for thread creation.

Strategy, in order:
1. Embedding cosine similarity against stored embeddings (> threshold).
2. Exact match of normalized text (case-folded, punctuation and filler words
   stripped, whitespace collapsed).
3. Optional token-overlap coefficient, looser for texts sharing an issue key.

All functions here are pure; embedding and store I/O live in the caller.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

from .models import Thread

METHOD_EMBEDDING = "embedding"
METHOD_TEXT = "text_normalization"
METHOD_TOKEN_OVERLAP = "token_overlap"
METHOD_SKIPPED = "skipped"

DEFAULT_SIMILARITY_THRESHOLD = 0.85
DEFAULT_TOKEN_OVERLAP_THRESHOLD = 0.6
DEFAULT_ISSUE_PREFIX_OVERLAP_THRESHOLD = 0.4

# No negations: "deploy blocked" and "not deploy blocked" must stay distinct.
_STOP_WORDS = frozenset(
    {
        "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for",
        "of", "with", "by", "from", "is", "it", "be", "as", "was", "are",
        "been", "being", "have", "has", "had", "do", "does", "did", "will",
        "that", "this", "so", "if", "its", "also", "into", "than", "then",
        "can", "just", "about", "up", "out", "still",
    }
)
_PUNCTUATION_PATTERN = re.compile(r"[^\w\s]+", re.UNICODE)
_WHITESPACE_PATTERN = re.compile(r"\s+")
_ISSUE_PREFIX_PATTERN = re.compile(r"^\s*([A-Za-z]+-\d+)")


def _words(text: str) -> List[str]:
    cleaned = _PUNCTUATION_PATTERN.sub(" ", (text or "").casefold())
    return [word for word in _WHITESPACE_PATTERN.split(cleaned) if word]


def normalize_text(text: str) -> str:
    """Canonical comparison key for thread text. Empty when text is blank."""
    words = _words(text)
    content = [word for word in words if word not in _STOP_WORDS]
    # Texts made only of filler words still need a stable key.
    return " ".join(content or words)


def tokenize(text: str) -> FrozenSet[str]:
    return frozenset(
        word for word in _words(text) if len(word) > 1 and word not in _STOP_WORDS
    )


def token_overlap(a: FrozenSet[str], b: FrozenSet[str]) -> float:
    """Overlap coefficient: |A & B| / min(|A|, |B|)."""
    if not a or not b:
        return 0.0
    return len(a & b) / min(len(a), len(b))


def extract_issue_prefix(text: str) -> Optional[str]:
    match = _ISSUE_PREFIX_PATTERN.match(text or "")
    return match.group(1).upper() if match else None


def cosine_similarity(v1: Sequence[float], v2: Sequence[float]) -> float:
    if not v1 or not v2 or len(v1) != len(v2):
        return 0.0
    dot = sum(a * b for a, b in zip(v1, v2))
    norm1 = math.sqrt(sum(a * a for a in v1))
    norm2 = math.sqrt(sum(b * b for b in v2))
    if norm1 <= 0 or norm2 <= 0:
        return 0.0
    return float(dot / (norm1 * norm2))


@dataclass(frozen=True)
class DedupResult:
    is_duplicate: bool
    method: str
    similarity: Optional[float] = None
    matched_thread_id: Optional[str] = None
    matched_text: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_duplicate": self.is_duplicate,
            "method": self.method,
            "similarity": self.similarity,
            "matched_thread_id": self.matched_thread_id,
            "matched_text": self.matched_text,
        }


def _duplicate_of(thread: Thread, method: str, similarity: Optional[float]) -> DedupResult:
    return DedupResult(
        is_duplicate=True,
        method=method,
        similarity=round(similarity, 4) if similarity is not None else None,
        matched_thread_id=thread.id,
        matched_text=thread.text,
    )


class DedupGate:
    """Decides whether new thread text duplicates an existing open thread."""

    def __init__(
        self,
        *,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        token_overlap_enabled: bool = False,
        token_overlap_threshold: float = DEFAULT_TOKEN_OVERLAP_THRESHOLD,
        issue_prefix_threshold: float = DEFAULT_ISSUE_PREFIX_OVERLAP_THRESHOLD,
    ) -> None:
        self.similarity_threshold = similarity_threshold
        self.token_overlap_enabled = token_overlap_enabled
        self.token_overlap_threshold = token_overlap_threshold
        self.issue_prefix_threshold = issue_prefix_threshold

    def check(
        self,
        new_text: str,
        new_embedding: Optional[Sequence[float]],
        existing_open: Iterable[Thread],
    ) -> DedupResult:
        text_value = (new_text or "").strip()
        candidates = [thread for thread in existing_open if not thread.is_terminal]
        if not text_value or not candidates:
            return DedupResult(is_duplicate=False, method=METHOD_SKIPPED)

        best_similarity: Optional[float] = None
        if new_embedding:
            best_thread: Optional[Thread] = None
            for thread in candidates:
                if not thread.embedding:
                    continue
                similarity = cosine_similarity(new_embedding, thread.embedding)
                if best_similarity is None or similarity > best_similarity:
                    best_similarity = similarity
                    best_thread = thread
            if (
                best_thread is not None
                and best_similarity is not None
                and best_similarity > self.similarity_threshold
            ):
                return _duplicate_of(best_thread, METHOD_EMBEDDING, best_similarity)

        key = normalize_text(text_value)
        for thread in candidates:
            if key and normalize_text(thread.text) == key:
                return _duplicate_of(thread, METHOD_TEXT, None)

        if self.token_overlap_enabled:
            overlap_match = self._best_token_overlap(text_value, candidates)
            if overlap_match is not None:
                return overlap_match

        if best_similarity is not None:
            return DedupResult(
                is_duplicate=False,
                method=METHOD_EMBEDDING,
                similarity=round(best_similarity, 4),
            )
        return DedupResult(is_duplicate=False, method=METHOD_TEXT)

    def _overlap_threshold(self, prefix: Optional[str], other_text: str) -> float:
        if prefix and prefix == extract_issue_prefix(other_text):
            return self.issue_prefix_threshold
        return self.token_overlap_threshold

    def _best_token_overlap(
        self, text_value: str, candidates: List[Thread]
    ) -> Optional[DedupResult]:
        tokens = tokenize(text_value)
        if not tokens:
            return None
        prefix = extract_issue_prefix(text_value)
        best: Optional[Thread] = None
        best_overlap = 0.0
        for thread in candidates:
            overlap = token_overlap(tokens, tokenize(thread.text))
            if overlap > self._overlap_threshold(prefix, thread.text) and overlap > best_overlap:
                best = thread
                best_overlap = overlap
        if best is None:
            return None
        return _duplicate_of(best, METHOD_TOKEN_OVERLAP, best_overlap)


def deduplicate_thread_list(threads: Iterable[Thread]) -> List[Thread]:
    """Drop blank, repeated-id and repeated-text threads. First seen wins."""
    seen_ids = set()
    seen_keys = set()
    result: List[Thread] = []
    for thread in threads:
        key = normalize_text(thread.text)
        if not key or thread.id in seen_ids or key in seen_keys:
            continue
        seen_ids.add(thread.id)
        seen_keys.add(key)
        result.append(thread)
    return result
