"""
Lifecycle triage: bucket open threads for review, optionally archiving the
ones that have been dormant long enough.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .models import (
    LIFECYCLE_ACTIVE,
    LIFECYCLE_COOLING,
    LIFECYCLE_DORMANT,
    LIFECYCLE_EMERGING,
    STATUS_ARCHIVED,
    Thread,
    utc_now,
)
from .vitality import (
    ARCHIVE_AFTER_DORMANT,
    apply_lifecycle_bookkeeping,
    classify,
)

BUCKETS = (LIFECYCLE_EMERGING, LIFECYCLE_ACTIVE, LIFECYCLE_COOLING, LIFECYCLE_DORMANT)


def _days(later: datetime, earlier: datetime) -> int:
    return int(round((later - earlier).total_seconds() / 86400.0))


@dataclass(frozen=True)
class TriageEntry:
    thread_id: str
    text: str
    lifecycle_status: str
    vitality_score: float
    thread_class: str
    days_since_touch: int
    dormant_days: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "thread_id": self.thread_id,
            "text": self.text,
            "lifecycle_status": self.lifecycle_status,
            "vitality_score": self.vitality_score,
            "thread_class": self.thread_class,
            "days_since_touch": self.days_since_touch,
        }
        if self.dormant_days is not None:
            payload["dormant_days"] = self.dormant_days
        return payload


@dataclass
class TriageReport:
    buckets: Dict[str, List[TriageEntry]] = field(
        default_factory=lambda: {name: [] for name in BUCKETS}
    )
    archived_ids: List[str] = field(default_factory=list)
    # Threads whose persisted fields changed (archived, dormant_since stamped
    # or cleared); the caller writes these back.
    changed: List[Thread] = field(default_factory=list)

    @property
    def archived_count(self) -> int:
        return len(self.archived_ids)

    @property
    def total_open(self) -> int:
        return sum(len(entries) for entries in self.buckets.values())

    def summary(self) -> Dict[str, int]:
        counts = {name: len(entries) for name, entries in self.buckets.items()}
        counts["total_open"] = self.total_open
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "buckets": {
                name: [entry.to_dict() for entry in entries]
                for name, entries in self.buckets.items()
            },
            "archived_count": self.archived_count,
            "archived_ids": list(self.archived_ids),
        }


def triage(
    threads: Iterable[Thread],
    now: Optional[datetime] = None,
    *,
    auto_archive: bool = False,
    archive_after: timedelta = ARCHIVE_AFTER_DORMANT,
) -> TriageReport:
    now_value = now or utc_now()
    report = TriageReport()

    for thread in threads:
        if thread.is_terminal:
            continue
        result = classify(thread, now_value, archive_after=archive_after)

        if result.lifecycle_status == STATUS_ARCHIVED and auto_archive:
            report.changed.append(thread.with_changes(status=STATUS_ARCHIVED))
            report.archived_ids.append(thread.id)
            continue

        updated = apply_lifecycle_bookkeeping(thread, result, now_value)
        if updated is not thread:
            report.changed.append(updated)

        # Without auto_archive, archival candidates are still reported as dormant.
        bucket = (
            LIFECYCLE_DORMANT
            if result.lifecycle_status == STATUS_ARCHIVED
            else result.lifecycle_status
        )
        dormant_days = (
            _days(now_value, updated.dormant_since)
            if bucket == LIFECYCLE_DORMANT and updated.dormant_since is not None
            else None
        )
        report.buckets[bucket].append(
            TriageEntry(
                thread_id=thread.id,
                text=thread.text,
                lifecycle_status=result.lifecycle_status,
                vitality_score=result.vitality_score,
                thread_class=thread.thread_class,
                days_since_touch=max(0, _days(now_value, thread.touched_at)),
                dormant_days=dormant_days,
            )
        )
    return report
