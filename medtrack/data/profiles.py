"""Timing profiles describing how long a substance's effect lasts."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from medtrack.data.schemas import SubstanceCategory

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimingProfile:
    """Effect curve split into phases, all in minutes."""

    name: str
    onset: int
    comeup: int
    peak: int
    offset: int

    @property
    def total_minutes(self) -> int:
        return self.onset + self.comeup + self.peak + self.offset

    @property
    def total_hours(self) -> float:
        return self.total_minutes / 60


DEFAULT_PROFILE = TimingProfile("default", onset=30, comeup=60, peak=120, offset=90)

TIMING_PROFILES: dict[str, TimingProfile] = {
    "caffeine": TimingProfile("caffeine", onset=10, comeup=35, peak=90, offset=165),
    "ibuprofen": TimingProfile("ibuprofen", onset=30, comeup=60, peak=120, offset=150),
    "paracetamol": TimingProfile("paracetamol", onset=30, comeup=30, peak=120, offset=60),
    "acetaminophen": TimingProfile("acetaminophen", onset=30, comeup=30, peak=120, offset=60),
    "methylphenidate": TimingProfile("methylphenidate", onset=20, comeup=40, peak=120, offset=60),
    "lisdexamfetamine": TimingProfile("lisdexamfetamine", onset=90, comeup=90, peak=360, offset=300),
    "amphetamine": TimingProfile("amphetamine", onset=30, comeup=60, peak=180, offset=120),
    "alprazolam": TimingProfile("alprazolam", onset=15, comeup=45, peak=120, offset=180),
    "diazepam": TimingProfile("diazepam", onset=15, comeup=45, peak=180, offset=360),
    "codeine": TimingProfile("codeine", onset=30, comeup=30, peak=120, offset=60),
    "tramadol": TimingProfile("tramadol", onset=45, comeup=75, peak=120, offset=120),
    "diphenhydramine": TimingProfile("diphenhydramine", onset=30, comeup=60, peak=180, offset=90),
    "melatonin": TimingProfile("melatonin", onset=30, comeup=30, peak=120, offset=120),
}

CATEGORY_PROFILES: dict[str, TimingProfile] = {
    SubstanceCategory.STIMULANT: TimingProfile("stimulant", onset=30, comeup=60, peak=180, offset=120),
    SubstanceCategory.DEPRESSANT: TimingProfile("depressant", onset=20, comeup=40, peak=120, offset=120),
    SubstanceCategory.OPIOID: TimingProfile("opioid", onset=30, comeup=30, peak=120, offset=60),
    SubstanceCategory.BENZODIAZEPINE: TimingProfile("benzodiazepine", onset=20, comeup=40, peak=150, offset=150),
    SubstanceCategory.ANALGESIC: TimingProfile("analgesic", onset=30, comeup=30, peak=120, offset=60),
    SubstanceCategory.CANNABINOID: TimingProfile("cannabinoid", onset=10, comeup=20, peak=60, offset=90),
    SubstanceCategory.PSYCHEDELIC: TimingProfile("psychedelic", onset=45, comeup=75, peak=240, offset=180),
    SubstanceCategory.DISSOCIATIVE: TimingProfile("dissociative", onset=15, comeup=30, peak=60, offset=60),
    SubstanceCategory.ANTIHISTAMINE: TimingProfile("antihistamine", onset=30, comeup=60, peak=180, offset=90),
}


def resolve_timing_profile(name: str, category: str | None = None) -> TimingProfile:
    """Return the profile for a substance: exact name, then category, then default."""
    profile = TIMING_PROFILES.get(name.strip().lower())
    if profile is not None:
        return profile
    if category:
        profile = CATEGORY_PROFILES.get(category.strip().lower())
        if profile is not None:
            return profile
    logger.debug("No timing profile for %s (%s), using default", name, category)
    return DEFAULT_PROFILE


def recommended_interval_hours(name: str, category: str | None = None) -> float:
    """Hours between doses recommended by the resolved profile."""
    return resolve_timing_profile(name, category).total_hours


def format_duration(minutes: float) -> str:
    """Render minutes as '45m', '4h' or '4h 30m'."""
    hours = int(minutes // 60)
    remaining = round(minutes % 60)
    if remaining == 60:
        hours += 1
        remaining = 0
    if hours == 0:
        return f"{remaining}m"
    if remaining == 0:
        return f"{hours}h"
    return f"{hours}h {remaining}m"
