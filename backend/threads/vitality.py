"""
Thread vitality scoring and lifecycle classification.

Vitality combines two components:
- recency: 2 ** (-days_since_touch / half_life), half-life chosen by thread class
- frequency: min(1, ln(touch_count + 1) / ln(days_alive + 1)), saturating so an
  old burst of touches cannot keep a thread alive forever

    vitality = 0.55 * recency + 0.45 * frequency

Band boundaries are fixed: >= 0.5 active, 0.2..0.5 cooling, < 0.2 dormant.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from .models import (
    LIFECYCLE_ACTIVE,
    LIFECYCLE_COOLING,
    LIFECYCLE_DORMANT,
    LIFECYCLE_EMERGING,
    STATUS_ARCHIVED,
    THREAD_CLASS_BACKLOG,
    THREAD_CLASS_OPERATIONAL,
    Thread,
    utc_now,
)

RECENCY_WEIGHT = 0.55
FREQUENCY_WEIGHT = 0.45

HALF_LIFE_DAYS: Dict[str, float] = {
    THREAD_CLASS_OPERATIONAL: 3.0,
    THREAD_CLASS_BACKLOG: 21.0,
}

ACTIVE_THRESHOLD = 0.5
COOLING_THRESHOLD = 0.2

EMERGING_WINDOW = timedelta(hours=24)
ARCHIVE_AFTER_DORMANT = timedelta(days=30)

_MIN_DAYS_ALIVE = 0.01
_SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class VitalityBreakdown:
    score: float
    recency: float
    frequency: float


@dataclass(frozen=True)
class LifecycleResult:
    lifecycle_status: str
    vitality: Optional[VitalityBreakdown]
    # Bookkeeping hints for the caller; classification never mutates.
    mark_dormant: bool = False
    clear_dormant: bool = False

    @property
    def vitality_score(self) -> float:
        return self.vitality.score if self.vitality is not None else 0.0


def _days_between(later: datetime, earlier: datetime) -> float:
    return (later - earlier).total_seconds() / _SECONDS_PER_DAY


def half_life_for(thread_class: Optional[str]) -> float:
    return HALF_LIFE_DAYS.get(thread_class or "", HALF_LIFE_DAYS[THREAD_CLASS_BACKLOG])


def recency_component(thread_class: Optional[str], days_since_touch: float) -> float:
    days = max(0.0, float(days_since_touch))
    return math.pow(2.0, -days / half_life_for(thread_class))


def frequency_component(touch_count: int, days_alive: float) -> float:
    touches = max(0, int(touch_count))
    alive = max(_MIN_DAYS_ALIVE, float(days_alive))
    return min(1.0, math.log1p(touches) / math.log1p(alive))


def score_breakdown(
    thread_class: Optional[str],
    days_since_last_touch: float,
    touch_count: int,
    days_alive: Optional[float] = None,
) -> VitalityBreakdown:
    days_since = max(0.0, float(days_since_last_touch))
    # A thread is at least as old as its last touch.
    alive = days_since if days_alive is None else max(days_since, float(days_alive))
    recency = recency_component(thread_class, days_since)
    frequency = frequency_component(touch_count, alive)
    combined = RECENCY_WEIGHT * recency + FREQUENCY_WEIGHT * frequency
    return VitalityBreakdown(
        score=round(min(1.0, max(0.0, combined)), 4),
        recency=round(recency, 4),
        frequency=round(frequency, 4),
    )


def score(
    thread_class: Optional[str],
    days_since_last_touch: float,
    touch_count: int,
    days_alive: Optional[float] = None,
) -> float:
    """Vitality in [0, 1]. Pure and deterministic."""
    return score_breakdown(
        thread_class, days_since_last_touch, touch_count, days_alive
    ).score


def vitality_to_status(value: float) -> str:
    if value >= ACTIVE_THRESHOLD:
        return LIFECYCLE_ACTIVE
    if value >= COOLING_THRESHOLD:
        return LIFECYCLE_COOLING
    return LIFECYCLE_DORMANT


def thread_vitality(thread: Thread, now: Optional[datetime] = None) -> VitalityBreakdown:
    now_value = now or utc_now()
    return score_breakdown(
        thread.thread_class,
        _days_between(now_value, thread.touched_at),
        thread.touch_count,
        _days_between(now_value, thread.created_at),
    )


def classify(
    thread: Thread,
    now: Optional[datetime] = None,
    *,
    archive_after: timedelta = ARCHIVE_AFTER_DORMANT,
) -> LifecycleResult:
    """Map a thread to its lifecycle status at `now`."""
    if thread.is_terminal:
        return LifecycleResult(lifecycle_status=thread.status, vitality=None)

    now_value = now or utc_now()
    vitality = thread_vitality(thread, now_value)

    if now_value - thread.created_at < EMERGING_WINDOW:
        return LifecycleResult(
            lifecycle_status=LIFECYCLE_EMERGING,
            vitality=vitality,
            clear_dormant=thread.dormant_since is not None,
        )

    derived = vitality_to_status(vitality.score)
    if derived != LIFECYCLE_DORMANT:
        return LifecycleResult(
            lifecycle_status=derived,
            vitality=vitality,
            clear_dormant=thread.dormant_since is not None,
        )

    if thread.dormant_since is None:
        return LifecycleResult(
            lifecycle_status=LIFECYCLE_DORMANT,
            vitality=vitality,
            mark_dormant=True,
        )
    if now_value - thread.dormant_since >= archive_after:
        return LifecycleResult(lifecycle_status=STATUS_ARCHIVED, vitality=vitality)
    return LifecycleResult(lifecycle_status=LIFECYCLE_DORMANT, vitality=vitality)


def apply_lifecycle_bookkeeping(
    thread: Thread, result: LifecycleResult, now: Optional[datetime] = None
) -> Thread:
    """Stamp or clear `dormant_since` according to a classification."""
    if result.mark_dormant and thread.dormant_since is None:
        return thread.with_changes(dormant_since=now or utc_now())
    if result.clear_dormant and thread.dormant_since is not None:
        return thread.with_changes(dormant_since=None)
    return thread


def touch(thread: Thread, now: Optional[datetime] = None) -> Thread:
    """Record one more engagement with a thread. Terminal threads are returned as-is."""
    if thread.is_terminal:
        return thread
    now_value = now or utc_now()
    touched = thread.with_changes(
        last_touched_at=now_value,
        touch_count=max(0, thread.touch_count) + 1,
    )
    return apply_lifecycle_bookkeeping(touched, classify(touched, now_value), now_value)
