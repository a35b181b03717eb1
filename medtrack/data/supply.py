"""Supply ledger: remaining quantity of a tracked substance."""

from __future__ import annotations

from enum import StrEnum

from medtrack.data.schemas import SubstanceSettings


class SupplyLevel(StrEnum):
    """Display tier for the remaining supply."""

    UNTRACKED = "untracked"
    EMPTY = "empty"
    LOW = "low"
    OK = "ok"


def decrement_supply(current: float | None, amount: float) -> float:
    """Return max(0, current - amount). An unset supply counts as 0."""
    return max(0.0, float(current or 0) - amount)


def is_supply_exhausted(settings: SubstanceSettings) -> bool:
    """True when supply is tracked and nothing is left."""
    if not settings.get("trackSupply"):
        return False
    return float(settings.get("currentSupply") or 0) <= 0


def apply_dose_to_supply(settings: SubstanceSettings, amount: float) -> SubstanceSettings:
    """Return a copy of settings with the dose taken out of supply, if tracked."""
    updated = SubstanceSettings(**settings)
    if settings.get("trackSupply"):
        updated["currentSupply"] = decrement_supply(settings.get("currentSupply"), amount)
    return updated


def supply_level(settings: SubstanceSettings, low_threshold: float = 5.0) -> SupplyLevel:
    """Classify remaining supply as empty, low or ok."""
    if not settings.get("trackSupply"):
        return SupplyLevel.UNTRACKED
    current = float(settings.get("currentSupply") or 0)
    if current <= 0:
        return SupplyLevel.EMPTY
    if current <= low_threshold:
        return SupplyLevel.LOW
    return SupplyLevel.OK
