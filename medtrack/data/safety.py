"""Safety rules for a candidate dose: minimum interval and daily quota."""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any, TypedDict
from zoneinfo import ZoneInfo

from medtrack.data.profiles import TimingProfile, format_duration
from medtrack.data.schemas import SubstanceSettings, ensure_aware, parse_timestamp

logger = logging.getLogger(__name__)


class SafetyVerdict(TypedDict):
    """Outcome of a safety evaluation, with the figures shown in an override prompt."""

    has_time_restriction: bool
    has_quota_restriction: bool
    time_since_last_dose: float  # hours, inf when there is no prior dose
    doses_today: int
    required_interval: float  # hours
    recommended_wait_time: float  # hours, from the timing profile


def elapsed_hours(now: datetime, last_dose_time: datetime | None) -> float:
    """Hours between last_dose_time and now; inf when there is no previous dose."""
    if last_dose_time is None:
        return math.inf
    return (ensure_aware(now) - ensure_aware(last_dose_time)).total_seconds() / 3600


def _dose_times(doses: Iterable[Mapping[str, Any]]) -> list[datetime]:
    """Parse dose timestamps, skipping malformed entries."""
    times: list[datetime] = []
    for dose in doses:
        ts = parse_timestamp(dose.get("timestamp"))
        if ts is not None:
            times.append(ts)
    return times


def last_dose_time(doses: Iterable[Mapping[str, Any]]) -> datetime | None:
    """Most recent dose timestamp regardless of input order."""
    return max(_dose_times(doses), default=None)


def _doses_on_day(times: list[datetime], candidate: datetime, tz: ZoneInfo) -> int:
    """Count dose times on the same local calendar day as candidate."""
    local_date = candidate.astimezone(tz).date()
    return sum(1 for ts in times if ts.astimezone(tz).date() == local_date)


def required_interval_hours(settings: SubstanceSettings, profile: TimingProfile) -> float:
    """Profile hours when recommended timing is on, else the configured minimum."""
    if settings.get("useRecommendedTiming"):
        return profile.total_hours
    return float(settings.get("minTimeBetweenDoses") or 0)


def evaluate_safety(
    settings: SubstanceSettings,
    doses: Iterable[Mapping[str, Any]],
    candidate_time: datetime,
    profile: TimingProfile,
    timezone_str: str = "UTC",
) -> SafetyVerdict:
    """Evaluate a candidate dose against the interval and quota rules.

    - has_time_restriction: time_since_last_dose < required_interval
    - has_quota_restriction: doses_today >= maxDailyDoses (no limit when unset)
    Future candidate times are not rejected here.
    """
    tz = ZoneInfo(timezone_str)
    candidate = ensure_aware(candidate_time)
    times = _dose_times(doses)

    doses_today = _doses_on_day(times, candidate, tz)
    time_since_last = elapsed_hours(candidate, max(times, default=None))
    required = required_interval_hours(settings, profile)
    max_daily = settings.get("maxDailyDoses")

    verdict = SafetyVerdict(
        has_time_restriction=time_since_last < required,
        has_quota_restriction=max_daily is not None and doses_today >= int(max_daily),
        time_since_last_dose=time_since_last,
        doses_today=doses_today,
        required_interval=required,
        recommended_wait_time=profile.total_hours,
    )
    if verdict["has_time_restriction"] or verdict["has_quota_restriction"]:
        logger.info(
            "Safety restriction: %.2fh since last dose (need %.2fh), %d/%s doses today",
            time_since_last,
            required,
            doses_today,
            max_daily,
        )
    return verdict


def is_restricted(verdict: SafetyVerdict) -> bool:
    """True when either rule fires."""
    return verdict["has_time_restriction"] or verdict["has_quota_restriction"]


def describe_verdict(verdict: SafetyVerdict, max_daily_doses: int) -> list[str]:
    """Human-readable reasons for an override prompt."""
    reasons: list[str] = []
    if verdict["has_time_restriction"]:
        reasons.append(
            f"Time since last dose: {verdict['time_since_last_dose']:.1f} hours "
            f"(recommended: {format_duration(verdict['required_interval'] * 60)})"
        )
    if verdict["has_quota_restriction"]:
        reasons.append(f"Daily dose limit ({max_daily_doses}) reached")
    return reasons
