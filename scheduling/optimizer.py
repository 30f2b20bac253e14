"""
Schedule optimizer — packs scored queue items into human-paced slots.

Strategy:
  1. Sort items by priority score (highest first, ties keep input order)
  2. Start at the next business-hour slot (09:00–17:00 local)
  3. Space submissions a random 30–60 minutes apart
  4. Snap anything that falls outside business hours to the next morning

Time zones come from a fixed offset table with no daylight-saving rules;
unknown zones are treated as UTC. Everything here is pure: the clock and the
random source are parameters.
"""
from __future__ import annotations

import math
import random
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional, Sequence

import structlog

from models.schemas import CompletionEstimate, QueueItem, RUNNABLE_STATUSES, ScoredItem, utcnow

logger = structlog.get_logger()

BUSINESS_HOUR_START = 9
BUSINESS_HOUR_END = 17
MIN_GAP_MINUTES = 30
MAX_GAP_MINUTES = 60

# Used by the coarse completion estimate only.
ASSUMED_ITEMS_PER_HOUR = 8
WORKING_HOURS_PER_DAY = 8

TIMEZONE_OFFSETS: dict[str, int] = {
    "UTC": 0,
    "Europe/Moscow": 3,
    "Europe/London": 0,
    "America/New_York": -5,
}


def utc_offset(tz_name: str) -> timedelta:
    return timedelta(hours=TIMEZONE_OFFSETS.get(tz_name, 0))


def to_local(moment: datetime, tz_name: str) -> datetime:
    """Wall-clock time in `tz_name`, as a naive datetime."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment + utc_offset(tz_name)


def from_local(local: datetime, tz_name: str) -> datetime:
    return (local - utc_offset(tz_name)).replace(tzinfo=timezone.utc)


def in_business_hours(moment: datetime, tz_name: str,
                      start_hour: int = BUSINESS_HOUR_START,
                      end_hour: int = BUSINESS_HOUR_END) -> bool:
    return start_hour <= to_local(moment, tz_name).hour < end_hour


def next_business_hour(moment: datetime, tz_name: str,
                       start_hour: int = BUSINESS_HOUR_START,
                       end_hour: int = BUSINESS_HOUR_END) -> datetime:
    """
    Earliest business-hour instant at or after `moment`.
    Inside [start, end) → unchanged; at or after end → start next day;
    before start → start today.
    """
    local = to_local(moment, tz_name)
    if start_hour <= local.hour < end_hour:
        return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)

    opening = local.replace(hour=start_hour, minute=0, second=0, microsecond=0)
    if local.hour >= end_hour:
        opening += timedelta(days=1)
    return from_local(opening, tz_name)


def optimize_schedule(
    scored_items: Iterable[ScoredItem],
    user_id: str,
    tz_name: str = "Europe/Moscow",
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
    min_gap_minutes: int = MIN_GAP_MINUTES,
    max_gap_minutes: int = MAX_GAP_MINUTES,
    start_hour: int = BUSINESS_HOUR_START,
    end_hour: int = BUSINESS_HOUR_END,
) -> list[ScoredItem]:
    """
    Assign a scheduled_time to every item.

    Returns new ScoredItem objects in descending priority order. The sort is
    stable, so equal scores keep the order the caller supplied.
    """
    rng = rng or random.Random()
    now = now or utcnow()

    ranked = sorted(scored_items, key=lambda s: -s.priority_score)
    cursor = next_business_hour(now, tz_name, start_hour, end_hour)

    logger.info("optimizing_schedule",
                user_id=user_id, items=len(ranked), timezone=tz_name,
                start=cursor.isoformat())

    scheduled: list[ScoredItem] = []
    for scored in ranked:
        scheduled.append(scored.model_copy(update={"scheduled_time": cursor}))

        gap = timedelta(minutes=rng.randint(min_gap_minutes, max_gap_minutes))
        cursor = cursor + gap
        if not in_business_hours(cursor, tz_name, start_hour, end_hour):
            cursor = next_business_hour(cursor, tz_name, start_hour, end_hour)

    return scheduled


def estimate_completion(
    items: Sequence[QueueItem],
    tokens_available: float = 0,
    now: Optional[datetime] = None,
) -> CompletionEstimate:
    """
    Rough completion time assuming 8 submissions an hour.

    The real pacing is one submission per 30–60 minutes, so treat the result
    as an optimistic bound rather than a promise.
    """
    now = now or utcnow()
    runnable = [i for i in items if i.status in RUNNABLE_STATUSES]
    if not runnable:
        return CompletionEstimate(
            items_count=0, estimated_completion=now, tokens_available=tokens_available,
        )

    hours_needed = math.ceil(len(runnable) / ASSUMED_ITEMS_PER_HOUR)
    days_needed = math.ceil(hours_needed / WORKING_HOURS_PER_DAY)
    return CompletionEstimate(
        items_count=len(runnable),
        hours_needed=hours_needed,
        days_needed=days_needed,
        estimated_completion=now + timedelta(hours=hours_needed),
        tokens_available=tokens_available,
    )
