"""Exception taxonomy for the dose engine."""

from __future__ import annotations


class MedtrackError(Exception):
    """Base class for engine errors."""


class ValidationError(MedtrackError):
    """Input rejected before anything is persisted (bad amount, blank reason)."""


class NotFoundError(MedtrackError):
    """Substance id absent from the store."""

    def __init__(self, substance_id: str) -> None:
        super().__init__(f"Substance not found: {substance_id}")
        self.substance_id = substance_id


class InvalidTransitionError(MedtrackError):
    """Workflow operation called from a state that does not allow it."""


class StaleWriteError(MedtrackError):
    """Store key changed between read and write."""

    def __init__(self, key: str, expected: int, actual: int) -> None:
        super().__init__(f"Stale write on '{key}': expected version {expected}, found {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual
