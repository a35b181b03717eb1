"""Record schemas for substances, doses, settings and override logs."""

from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, NotRequired, TypedDict

from medtrack.core.errors import ValidationError

logger = logging.getLogger(__name__)


class DoseStatus(StrEnum):
    """Status tag assigned to a dose when it is recorded."""

    NORMAL = "normal"
    EARLY = "early"  # less than half the interval elapsed
    WARNING = "warning"  # at least half, but not the full interval
    OVERRIDE = "override"  # logged despite a safety restriction


class SubstanceCategory(StrEnum):
    """Categories with a category-level timing profile."""

    STIMULANT = "stimulant"
    DEPRESSANT = "depressant"
    OPIOID = "opioid"
    BENZODIAZEPINE = "benzodiazepine"
    ANALGESIC = "analgesic"
    CANNABINOID = "cannabinoid"
    PSYCHEDELIC = "psychedelic"
    DISSOCIATIVE = "dissociative"
    ANTIHISTAMINE = "antihistamine"
    OTHER = "other"


class Dose(TypedDict):
    """One recorded administration event."""

    id: int  # epoch milliseconds
    timestamp: str  # ISO 8601
    dosage: float
    status: str  # DoseStatus value
    overrideReason: NotRequired[str]  # present iff status == override


class SubstanceSettings(TypedDict):
    """Per-substance dosing settings."""

    defaultDosage: float | str
    defaultDosageUnit: str
    maxDailyDoses: int
    minTimeBetweenDoses: float  # hours
    useRecommendedTiming: bool
    trackSupply: bool
    currentSupply: float | None  # None when untracked
    showTimeline: bool


class Substance(TypedDict):
    """A tracked medication with its settings and dose log."""

    id: str
    name: str
    category: str
    dosage: float | str
    dosageUnit: str
    warnings: NotRequired[str]
    doses: list[Dose]  # newest first
    settings: SubstanceSettings


class OverrideLogEntry(TypedDict):
    """Audit record written when a dose is logged despite a restriction."""

    timestamp: str  # ISO 8601, the dose time
    drugId: str
    drugName: str
    reason: str
    timeSinceLastDose: float | None  # hours, None when there was no prior dose
    dosesToday: int


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO 8601 timestamp into an aware datetime; None on failure.

    Naive timestamps are read as UTC.
    """
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.debug("Unparseable timestamp: %s", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_amount(raw: Any) -> float:
    """Parse a dose amount; must be a finite number greater than zero."""
    if raw is None or isinstance(raw, bool):
        msg = "Please enter a valid dosage"
        raise ValidationError(msg)
    try:
        amount = float(str(raw).strip()) if isinstance(raw, str) else float(raw)
    except (TypeError, ValueError):
        msg = f"Please enter a valid dosage (got {raw!r})"
        raise ValidationError(msg) from None
    if not math.isfinite(amount) or amount <= 0:
        msg = f"Dosage must be a positive number (got {raw!r})"
        raise ValidationError(msg)
    return amount


def ensure_aware(ts: datetime) -> datetime:
    """Attach UTC to a naive datetime, leave aware ones untouched."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts


def new_dose_id(existing: Iterable[Mapping[str, Any]], now: datetime | None = None) -> int:
    """Return an epoch-millisecond id strictly greater than any existing dose id."""
    candidate = int((now or datetime.now(UTC)).timestamp() * 1000)
    highest = max((d["id"] for d in existing if isinstance(d.get("id"), int)), default=-1)
    return max(candidate, highest + 1)


_EPOCH = datetime.min.replace(tzinfo=UTC)


def sort_doses(doses: Iterable[Dose]) -> list[Dose]:
    """Doses newest first by timestamp; unparseable timestamps sink to the end."""
    return sorted(doses, key=lambda d: parse_timestamp(d.get("timestamp")) or _EPOCH, reverse=True)


def make_dose(
    dose_id: int,
    dosage: float,
    timestamp: datetime,
    status: str = DoseStatus.NORMAL,
    override_reason: str | None = None,
) -> Dose:
    """Create a dose record. The override reason is kept only for override doses."""
    dose = Dose(
        id=dose_id,
        timestamp=ensure_aware(timestamp).isoformat(),
        dosage=dosage,
        status=status,
    )
    if status == DoseStatus.OVERRIDE:
        dose["overrideReason"] = override_reason or ""
    return dose


def make_substance_settings(
    default_dosage: float | str = "",
    default_dosage_unit: str = "mg",
    max_daily_doses: int = 4,
    min_time_between_doses: float = 4.0,
    use_recommended_timing: bool = True,
    track_supply: bool = False,
    current_supply: float | None = None,
    show_timeline: bool = True,
) -> SubstanceSettings:
    """Create a settings block with the defaults a new substance starts from."""
    return SubstanceSettings(
        defaultDosage=default_dosage,
        defaultDosageUnit=default_dosage_unit,
        maxDailyDoses=max_daily_doses,
        minTimeBetweenDoses=min_time_between_doses,
        useRecommendedTiming=use_recommended_timing,
        trackSupply=track_supply,
        currentSupply=current_supply if track_supply else None,
        showTimeline=show_timeline,
    )


def make_substance(
    name: str,
    category: str = SubstanceCategory.OTHER,
    dosage: float | str = "",
    dosage_unit: str = "mg",
    warnings: str = "",
    settings: SubstanceSettings | None = None,
    doses: list[Dose] | None = None,
    substance_id: str | None = None,
) -> Substance:
    """Create a substance record with an empty dose log."""
    substance = Substance(
        id=substance_id or uuid.uuid4().hex,
        name=name,
        category=category,
        dosage=dosage,
        dosageUnit=dosage_unit,
        doses=list(doses or []),
        settings=settings or make_substance_settings(default_dosage=dosage, default_dosage_unit=dosage_unit),
    )
    if warnings:
        substance["warnings"] = warnings
    return substance


def make_override_log_entry(
    substance: Substance,
    reason: str,
    time_since_last_dose: float,
    doses_today: int,
    timestamp: datetime,
) -> OverrideLogEntry:
    """Create an override audit entry. Infinite elapsed time is stored as None."""
    elapsed: float | None = time_since_last_dose
    if elapsed == float("inf"):
        elapsed = None
    return OverrideLogEntry(
        timestamp=ensure_aware(timestamp).isoformat(),
        drugId=substance["id"],
        drugName=substance["name"],
        reason=reason,
        timeSinceLastDose=elapsed,
        dosesToday=doses_today,
    )
