"""Status tagging for newly recorded doses."""

from __future__ import annotations

from datetime import datetime

from medtrack.data.safety import elapsed_hours
from medtrack.data.schemas import DoseStatus


def classify_dose_status(
    candidate_time: datetime,
    previous_time: datetime | None,
    interval_hours: float,
) -> DoseStatus:
    """Label a dose by how much of the minimum interval has elapsed.

    early: elapsed < interval / 2
    warning: interval / 2 <= elapsed < interval
    normal: otherwise, or when there is no previous dose
    """
    if previous_time is None:
        return DoseStatus.NORMAL
    hours = elapsed_hours(candidate_time, previous_time)
    if hours < interval_hours / 2:
        return DoseStatus.EARLY
    if hours < interval_hours:
        return DoseStatus.WARNING
    return DoseStatus.NORMAL
