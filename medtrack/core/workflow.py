"""Dose logging workflow: safety check, then direct commit or override with a reason."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from medtrack.core.errors import InvalidTransitionError, MedtrackError, ValidationError
from medtrack.data.profiles import resolve_timing_profile
from medtrack.data.repository import Clock, SubstanceRepository
from medtrack.data.safety import SafetyVerdict, describe_verdict, evaluate_safety, is_restricted
from medtrack.data.schemas import (
    Dose,
    DoseStatus,
    Substance,
    ensure_aware,
    make_dose,
    make_override_log_entry,
    new_dose_id,
    parse_amount,
)
from medtrack.data.supply import is_supply_exhausted

logger = logging.getLogger(__name__)


class WorkflowState(StrEnum):
    """Where a dose request currently stands."""

    IDLE = "idle"
    PENDING_INPUT = "pending_input"
    SAFETY_CHECKED = "safety_checked"
    OVERRIDE_PENDING = "override_pending"
    REASON_ENTERED = "reason_entered"
    COMMITTED = "committed"
    CANCELLED = "cancelled"


class Outcome(StrEnum):
    """What a workflow call produced."""

    PENDING_INPUT = "pending_input"
    SUPPLY_EXHAUSTED = "supply_exhausted"
    OVERRIDE_REQUIRED = "override_required"
    COMMITTED = "committed"
    CANCELLED = "cancelled"


@dataclass
class DoseDraft:
    """Pending input for a dose request."""

    amount: Any
    unit: str
    dose_time: datetime | None = None  # None means "now" at submit time


@dataclass
class WorkflowResult:
    """Returned by every transition."""

    outcome: Outcome
    state: WorkflowState
    draft: DoseDraft | None = None
    verdict: SafetyVerdict | None = None
    reasons: list[str] = field(default_factory=list)
    dose: Dose | None = None
    substance: Substance | None = None


def _utcnow() -> datetime:
    return datetime.now(UTC)


def default_dose_amount(substance: Substance) -> Any:
    """Standard dose: settings default (plain or {amount, unit}), then substance dosage."""
    default = substance.get("settings", {}).get("defaultDosage")
    if isinstance(default, dict):
        default = default.get("amount")
    return default or substance.get("dosage") or ""


class DoseWorkflow:
    """State machine for logging one dose of one substance at a time.

    idle -> pending_input -> safety_checked -> committed
                                            -> override_pending -> reason_entered -> committed
    Any state but committed may be cancelled back to idle.
    """

    def __init__(
        self,
        repository: SubstanceRepository,
        substance_id: str,
        clock: Clock = _utcnow,
        timezone_str: str = "UTC",
    ) -> None:
        self.repository = repository
        self.substance_id = substance_id
        self.clock = clock
        self.timezone_str = timezone_str
        self.state = WorkflowState.IDLE
        self.draft: DoseDraft | None = None
        self._amount: float | None = None
        self._dose_time: datetime | None = None
        self._verdict: SafetyVerdict | None = None
        self._expected_version: int | None = None

    def _transition(self, new_state: WorkflowState) -> None:
        logger.debug("Workflow %s: %s -> %s", self.substance_id, self.state, new_state)
        self.state = new_state

    def _require(self, *allowed: WorkflowState) -> None:
        if self.state not in allowed:
            logger.warning("Refused workflow call in state %s for %s", self.state, self.substance_id)
            msg = f"Not allowed in state '{self.state}'"
            raise InvalidTransitionError(msg)

    def _reset(self) -> None:
        self.draft = None
        self._amount = None
        self._dose_time = None
        self._verdict = None
        self._expected_version = None
        self._transition(WorkflowState.IDLE)

    def request_dose(self) -> WorkflowResult:
        """Open a dose request pre-filled with the standard dose and "now"."""
        self._require(WorkflowState.IDLE)
        substance = self.repository.get_substance(self.substance_id)
        if is_supply_exhausted(substance["settings"]):
            logger.info("Dose request refused for %s: supply exhausted", self.substance_id)
            return WorkflowResult(
                outcome=Outcome.SUPPLY_EXHAUSTED,
                state=self.state,
                substance=substance,
            )

        self.draft = DoseDraft(amount=default_dose_amount(substance), unit=substance.get("dosageUnit", ""))
        self._transition(WorkflowState.PENDING_INPUT)
        return WorkflowResult(
            outcome=Outcome.PENDING_INPUT,
            state=self.state,
            draft=self.draft,
            substance=substance,
        )

    def submit(self, amount: Any = None, dose_time: datetime | None = None) -> WorkflowResult:
        """Validate the amount, run the safety check, commit or ask for an override.

        A rejected amount raises ValidationError and leaves the request pending.
        """
        self._require(WorkflowState.PENDING_INPUT)
        assert self.draft is not None
        raw = self.draft.amount if amount is None else amount
        parsed = parse_amount(raw)

        self.draft.amount = raw
        self.draft.dose_time = dose_time
        candidate = ensure_aware(dose_time) if dose_time is not None else self.clock()
        substance, version = self.repository.get_substance_versioned(self.substance_id)
        profile = resolve_timing_profile(substance["name"], substance.get("category"))
        verdict = evaluate_safety(
            substance["settings"],
            substance.get("doses", []),
            candidate,
            profile,
            timezone_str=self.timezone_str,
        )

        self._amount = parsed
        self._dose_time = candidate
        self._verdict = verdict
        self._expected_version = version
        self._transition(WorkflowState.SAFETY_CHECKED)

        if is_restricted(verdict):
            self._transition(WorkflowState.OVERRIDE_PENDING)
            return WorkflowResult(
                outcome=Outcome.OVERRIDE_REQUIRED,
                state=self.state,
                draft=self.draft,
                verdict=verdict,
                reasons=describe_verdict(verdict, int(substance["settings"].get("maxDailyDoses") or 0)),
                substance=substance,
            )

        dose = make_dose(new_dose_id(substance.get("doses", []), self.clock()), parsed, candidate)
        return self._commit(dose, substance, override=False)

    def confirm_override(self, reason: str) -> WorkflowResult:
        """Commit an override dose. A blank reason is refused and the override stays pending."""
        self._require(WorkflowState.OVERRIDE_PENDING)
        trimmed = (reason or "").strip()
        if not trimmed:
            logger.warning("Override refused for %s: blank reason", self.substance_id)
            msg = "An override reason is required"
            raise ValidationError(msg)

        self._transition(WorkflowState.REASON_ENTERED)
        assert self._amount is not None and self._dose_time is not None
        try:
            substance = self.repository.get_substance(self.substance_id)
        except MedtrackError:
            self._reset()
            raise
        dose = make_dose(
            new_dose_id(substance.get("doses", []), self.clock()),
            self._amount,
            self._dose_time,
            status=DoseStatus.OVERRIDE,
            override_reason=trimmed,
        )
        return self._commit(dose, substance, override=True, reason=trimmed)

    def cancel(self) -> WorkflowResult:
        """Discard pending input. Nothing persisted is touched."""
        self._require(
            WorkflowState.IDLE,
            WorkflowState.PENDING_INPUT,
            WorkflowState.SAFETY_CHECKED,
            WorkflowState.OVERRIDE_PENDING,
            WorkflowState.REASON_ENTERED,
        )
        self._transition(WorkflowState.CANCELLED)
        logger.info("Dose request cancelled for %s", self.substance_id)
        self._reset()
        return WorkflowResult(outcome=Outcome.CANCELLED, state=self.state)

    def _commit(
        self,
        dose: Dose,
        substance: Substance,
        override: bool,
        reason: str = "",
    ) -> WorkflowResult:
        assert self._verdict is not None and self._dose_time is not None
        verdict = self._verdict
        entry = None
        if override:
            entry = make_override_log_entry(
                substance,
                reason=reason,
                time_since_last_dose=verdict["time_since_last_dose"],
                doses_today=verdict["doses_today"],
                timestamp=self._dose_time,
            )
        try:
            updated = self.repository.commit_dose(
                self.substance_id,
                dose,
                override_entry=entry,
                expected_version=self._expected_version,
            )
        except Exception:
            logger.warning("Commit failed for %s; request discarded", self.substance_id)
            self._reset()
            raise

        self._transition(WorkflowState.COMMITTED)
        self._reset()
        return WorkflowResult(
            outcome=Outcome.COMMITTED,
            state=self.state,
            verdict=verdict,
            dose=dose,
            substance=updated,
        )
