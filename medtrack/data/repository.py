"""Substance records on top of an injected key/value store.

All substances live under one key and are rewritten wholesale on every
mutation. Writes carry the version that was read so a concurrent change
surfaces as StaleWriteError.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from medtrack.core.errors import NotFoundError, ValidationError
from medtrack.data.audit import SUBSTANCES_KEY, override_log_key, read_override_log, write_audit_entry
from medtrack.data.profiles import recommended_interval_hours, resolve_timing_profile
from medtrack.data.safety import last_dose_time
from medtrack.data.schemas import (
    Dose,
    OverrideLogEntry,
    Substance,
    SubstanceSettings,
    make_dose,
    new_dose_id,
    parse_amount,
    sort_doses,
)
from medtrack.data.status import classify_dose_status
from medtrack.data.store import KeyValueStore
from medtrack.data.supply import apply_dose_to_supply

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

SETTINGS_FIELDS = frozenset(SubstanceSettings.__annotations__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _check_settings(changes: Mapping[str, Any]) -> None:
    supply = changes.get("currentSupply")
    if supply is not None and (not isinstance(supply, int | float) or not math.isfinite(supply) or supply < 0):
        msg = f"currentSupply must be a number >= 0 or null (got {supply!r})"
        raise ValidationError(msg)
    if "maxDailyDoses" in changes:
        max_daily = changes["maxDailyDoses"]
        if isinstance(max_daily, bool) or not isinstance(max_daily, int) or max_daily < 1:
            msg = f"maxDailyDoses must be an integer >= 1 (got {max_daily!r})"
            raise ValidationError(msg)


class SubstanceRepository:
    """Read-modify-write access to the substance collection."""

    def __init__(
        self,
        store: KeyValueStore,
        journal_path: Path | None = None,
        clock: Clock = _utcnow,
    ) -> None:
        self.store = store
        self.journal_path = journal_path
        self.clock = clock

    # -- reads ---------------------------------------------------------------

    def snapshot(self) -> tuple[list[Substance], int]:
        """All substances plus the version they were read at."""
        version = self.store.version(SUBSTANCES_KEY)
        substances = self.store.get(SUBSTANCES_KEY, [])
        if not isinstance(substances, list):
            logger.warning("Substance collection is not a list; treating as empty")
            substances = []
        return substances, version

    def list_substances(self) -> list[Substance]:
        return self.snapshot()[0]

    def get_substance(self, substance_id: str) -> Substance:
        for substance in self.list_substances():
            if substance.get("id") == substance_id:
                return substance
        raise NotFoundError(substance_id)

    def get_substance_versioned(self, substance_id: str) -> tuple[Substance, int]:
        """A substance plus the collection version it was read at."""
        substances, version = self.snapshot()
        return self._find(substances, substance_id), version

    def search_substances(self, query: str) -> list[Substance]:
        """Case-insensitive substring match on the substance name."""
        needle = query.strip().lower()
        return [s for s in self.list_substances() if needle in str(s.get("name", "")).lower()]

    def override_log(self, substance_id: str) -> list[OverrideLogEntry]:
        return read_override_log(self.store, substance_id)

    # -- writes --------------------------------------------------------------

    def _replace(
        self,
        substances: list[Substance],
        updated: Substance,
    ) -> list[Substance]:
        return [updated if s.get("id") == updated["id"] else s for s in substances]

    def _find(self, substances: list[Substance], substance_id: str) -> Substance:
        for substance in substances:
            if substance.get("id") == substance_id:
                return substance
        raise NotFoundError(substance_id)

    def _journal(self, action: str, substance_id: str, **fields: Any) -> None:
        if self.journal_path is None:
            return
        write_audit_entry(
            self.journal_path,
            {
                "timestamp": self.clock().isoformat(),
                "action": action,
                "substance_id": substance_id,
                **fields,
            },
        )

    def add_substance(self, substance: Substance) -> Substance:
        substances, version = self.snapshot()
        if any(s.get("id") == substance["id"] for s in substances):
            msg = f"Substance id already exists: {substance['id']}"
            raise ValidationError(msg)
        self.store.set(SUBSTANCES_KEY, [*substances, substance], expected_version=version)
        logger.info("Added substance %s (%s)", substance["name"], substance["id"])
        self._journal("add_substance", substance["id"], name=substance["name"])
        return substance

    def delete_substance(self, substance_id: str) -> None:
        """Remove a substance together with its override log."""
        substances, version = self.snapshot()
        self._find(substances, substance_id)
        remaining = [s for s in substances if s.get("id") != substance_id]
        self.store.set_many(
            {SUBSTANCES_KEY: remaining},
            {SUBSTANCES_KEY: version},
            deletes=[override_log_key(substance_id)],
        )
        logger.info("Deleted substance %s", substance_id)
        self._journal("delete_substance", substance_id)

    def update_settings(self, substance_id: str, changes: Mapping[str, Any]) -> Substance:
        """Merge settings changes into a substance.

        With useRecommendedTiming on, minTimeBetweenDoses is re-derived from the
        timing profile. With trackSupply off, currentSupply is cleared.
        """
        unknown = set(changes) - SETTINGS_FIELDS
        if unknown:
            msg = f"Unknown settings: {', '.join(sorted(unknown))}"
            raise ValidationError(msg)
        _check_settings(changes)

        substances, version = self.snapshot()
        substance = self._find(substances, substance_id)
        merged = SubstanceSettings(**{**substance["settings"], **changes})  # type: ignore[typeddict-item]
        if merged.get("useRecommendedTiming"):
            merged["minTimeBetweenDoses"] = recommended_interval_hours(substance["name"], substance.get("category"))
        if not merged.get("trackSupply"):
            merged["currentSupply"] = None
        elif merged.get("currentSupply") is None:
            merged["currentSupply"] = 0.0

        updated = Substance(**{**substance, "settings": merged})  # type: ignore[typeddict-item]
        self.store.set(SUBSTANCES_KEY, self._replace(substances, updated), expected_version=version)
        logger.info("Updated settings for %s: %s", substance_id, sorted(changes))
        self._journal("update_settings", substance_id, fields=sorted(changes))
        return updated

    def commit_dose(
        self,
        substance_id: str,
        dose: Dose,
        override_entry: OverrideLogEntry | None = None,
        expected_version: int | None = None,
        keep_sorted: bool = False,
    ) -> Substance:
        """Prepend a dose, take it out of supply and append any override entry.

        With keep_sorted the dose log is re-ordered newest first afterwards.
        The substance list and the override log are written in one store call.
        Raises NotFoundError before writing anything if the substance is gone.
        """
        substances, version = self.snapshot()
        substance = self._find(substances, substance_id)

        doses = [dose, *substance.get("doses", [])]
        if keep_sorted:
            doses = sort_doses(doses)
        updated = Substance(  # type: ignore[typeddict-item]
            **{
                **substance,
                "doses": doses,
                "settings": apply_dose_to_supply(substance["settings"], float(dose["dosage"])),
            }
        )
        values: dict[str, Any] = {SUBSTANCES_KEY: self._replace(substances, updated)}
        expected = {SUBSTANCES_KEY: version if expected_version is None else expected_version}
        if override_entry is not None:
            log_key = override_log_key(substance_id)
            expected[log_key] = self.store.version(log_key)
            values[log_key] = [*read_override_log(self.store, substance_id), override_entry]

        self.store.set_many(values, expected)
        logger.info(
            "Committed %s dose %s of %s for %s",
            dose["status"],
            dose["id"],
            dose["dosage"],
            substance_id,
        )
        self._journal(
            "commit_dose",
            substance_id,
            dose_id=dose["id"],
            status=dose["status"],
            dosage=dose["dosage"],
            supply=updated["settings"].get("currentSupply"),
        )
        return updated

    def record_dose(
        self,
        substance_id: str,
        amount: Any,
        dose_time: datetime | None = None,
    ) -> Dose:
        """Quick-log a dose, tagging it by the half-interval status rule."""
        amount = parse_amount(amount)
        when = dose_time or self.clock()
        substance = self.get_substance(substance_id)
        doses = substance.get("doses", [])
        status = classify_dose_status(
            when,
            last_dose_time(doses),
            float(substance["settings"].get("minTimeBetweenDoses") or 0),
        )
        dose = make_dose(new_dose_id(doses, self.clock()), amount, when, status=status)
        self.commit_dose(substance_id, dose, keep_sorted=True)
        return dose

    def reset_timer(self, substance_id: str) -> Dose | None:
        """Remove the most recently added dose (the head of the log).

        Supply and override logs are left as they are.
        """
        substances, version = self.snapshot()
        substance = self._find(substances, substance_id)
        doses = substance.get("doses", [])
        if not doses:
            return None

        latest, remaining = doses[0], doses[1:]
        updated = Substance(**{**substance, "doses": remaining})  # type: ignore[typeddict-item]
        self.store.set(SUBSTANCES_KEY, self._replace(substances, updated), expected_version=version)
        logger.info("Reset timer for %s: removed dose %s", substance_id, latest.get("id"))
        self._journal("reset_timer", substance_id, dose_id=latest.get("id"))
        return latest


def timing_summary(substance: Substance) -> dict[str, Any]:
    """Profile name and recommended interval for a substance."""
    profile = resolve_timing_profile(substance["name"], substance.get("category"))
    return {
        "profile": profile.name,
        "total_minutes": profile.total_minutes,
        "recommended_hours": profile.total_hours,
    }
