"""Day-grouped dose history for display."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterable, Iterator, Mapping
from datetime import UTC, date, datetime, timedelta
from itertools import groupby
from typing import Any, TypedDict
from zoneinfo import ZoneInfo

from medtrack.data.schemas import Dose, parse_timestamp

logger = logging.getLogger(__name__)

TODAY_LABEL = "Today"
YESTERDAY_LABEL = "Yesterday"


class HistoryEntry(TypedDict):
    """A dose row with its display labels."""

    dose: Dose
    amount_label: str  # e.g. "10 mg"
    time_label: str  # HH:MM local time


class HistoryGroup(TypedDict):
    """All doses of one local calendar day, newest first."""

    label: str  # Today, Yesterday or a locale date
    day: str  # ISO date
    entries: list[HistoryEntry]


def valid_doses(doses: object) -> list[tuple[datetime, Dose]]:
    """Pair each usable dose with its parsed timestamp.

    Never raises: a non-list input yields nothing, entries that are not
    mappings or have no parseable timestamp are dropped.
    """
    if not isinstance(doses, list | tuple):
        if doses is not None:
            logger.warning("Dose history is not a list: %r", type(doses).__name__)
        return []
    valid: list[tuple[datetime, Dose]] = []
    dropped = 0
    for dose in doses:
        if not isinstance(dose, Mapping):
            dropped += 1
            continue
        ts = parse_timestamp(dose.get("timestamp"))
        if ts is None:
            dropped += 1
            continue
        valid.append((ts, dose))  # type: ignore[arg-type]
    if dropped:
        logger.warning("Dropped %d malformed dose record(s) from history", dropped)
    return valid


def day_label(day: date, today: date) -> str:
    """Today, Yesterday or the locale date string."""
    if day == today:
        return TODAY_LABEL
    if day == today - timedelta(days=1):
        return YESTERDAY_LABEL
    return day.strftime("%x")


def _amount_label(dosage: Any, unit: str) -> str:
    amount: Any = dosage
    if not isinstance(dosage, int | float):
        with contextlib.suppress(TypeError, ValueError):
            amount = float(dosage)
    if isinstance(amount, float):
        return f"{amount:g} {unit}"
    return f"{amount} {unit}"


class DoseHistory:
    """Lazy, restartable view of a dose log grouped by local calendar day.

    Grouping and sorting run again on every iteration; "now" is fixed at
    construction so repeated iterations produce the same labels.
    """

    def __init__(
        self,
        doses: object,
        unit: str = "mg",
        now: datetime | None = None,
        timezone_str: str = "UTC",
    ) -> None:
        self._doses = doses
        self.unit = unit
        self.tz = ZoneInfo(timezone_str)
        self.now = now or datetime.now(UTC)

    def __iter__(self) -> Iterator[HistoryGroup]:
        return self._groups(valid_doses(self._doses))

    def _groups(self, valid: list[tuple[datetime, Dose]]) -> Iterator[HistoryGroup]:
        today = self.now.astimezone(self.tz).date()
        ordered = sorted(valid, key=lambda pair: pair[0], reverse=True)
        for day, pairs in groupby(ordered, key=lambda pair: pair[0].astimezone(self.tz).date()):
            entries = [
                HistoryEntry(
                    dose=dose,
                    amount_label=_amount_label(dose.get("dosage"), self.unit),
                    time_label=ts.astimezone(self.tz).strftime("%H:%M"),
                )
                for ts, dose in pairs
            ]
            yield HistoryGroup(label=day_label(day, today), day=day.isoformat(), entries=entries)


def aggregate_history(
    doses: object,
    unit: str = "mg",
    now: datetime | None = None,
    timezone_str: str = "UTC",
) -> DoseHistory:
    """Group doses by day, most recent day first and most recent dose first."""
    return DoseHistory(doses, unit=unit, now=now, timezone_str=timezone_str)


def flatten_history(groups: Iterable[HistoryGroup]) -> list[Dose]:
    """Doses back out of a grouped history, in display order."""
    return [entry["dose"] for group in groups for entry in group["entries"]]
