"""FastAPI surface for the dose engine, consumed by the presentation layer."""

from __future__ import annotations

import logging
import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from medtrack.core.config import settings
from medtrack.core.errors import InvalidTransitionError, NotFoundError, StaleWriteError, ValidationError
from medtrack.core.workflow import DoseWorkflow, WorkflowResult
from medtrack.data.history import aggregate_history
from medtrack.data.repository import SubstanceRepository, timing_summary
from medtrack.data.safety import elapsed_hours, last_dose_time
from medtrack.data.schemas import Substance, make_substance, make_substance_settings
from medtrack.data.store import build_store
from medtrack.data.supply import supply_level

logger = logging.getLogger(__name__)

_repository: SubstanceRepository | None = None
_workflows: dict[str, DoseWorkflow] = {}


def set_repository(repository: SubstanceRepository | None) -> None:
    """Install the repository used by the endpoints (app startup, tests)."""
    global _repository  # noqa: PLW0603
    _repository = repository
    _workflows.clear()


def get_repository() -> SubstanceRepository:
    """Repository in use, built from settings on first access."""
    global _repository  # noqa: PLW0603
    if _repository is None:
        _repository = SubstanceRepository(
            build_store(settings),
            journal_path=settings.data_audit_path / "doses.jsonl",
        )
    return _repository


def _workflow(substance_id: str) -> DoseWorkflow:
    workflow = _workflows.get(substance_id)
    if workflow is None:
        workflow = DoseWorkflow(get_repository(), substance_id, timezone_str=settings.timezone)
        _workflows[substance_id] = workflow
    return workflow


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Configure logging and open the store."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    repository = get_repository()
    logger.info("Store ready: %s backend, %d substance(s)", settings.store_backend, len(repository.list_substances()))
    yield
    _workflows.clear()


app = FastAPI(title="Medtrack", version="0.1.0", lifespan=lifespan)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@app.exception_handler(NotFoundError)
async def _not_found(_request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def _invalid(_request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(InvalidTransitionError)
async def _bad_transition(_request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StaleWriteError)
async def _stale(_request: Request, exc: StaleWriteError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Bodies
# ---------------------------------------------------------------------------


class HealthResponse(BaseModel):
    """Response for the /health endpoint."""

    status: str


class SubstanceCreate(BaseModel):
    """Body for creating a substance."""

    name: str = Field(min_length=1)
    category: str = "other"
    dosage: float | str = ""
    dosage_unit: str = "mg"
    warnings: str = ""
    max_daily_doses: int = Field(default=settings.default_max_daily_doses, ge=1)
    min_time_between_doses: float = Field(default=4.0, ge=0)
    use_recommended_timing: bool = True
    track_supply: bool = False
    current_supply: float | None = Field(default=None, ge=0)
    show_timeline: bool = True


class SettingsUpdate(BaseModel):
    """Body for a partial settings update."""

    default_dosage: float | str | None = None
    default_dosage_unit: str | None = None
    max_daily_doses: int | None = Field(default=None, ge=1)
    min_time_between_doses: float | None = Field(default=None, ge=0)
    use_recommended_timing: bool | None = None
    track_supply: bool | None = None
    current_supply: float | None = Field(default=None, ge=0)
    show_timeline: bool | None = None


_SETTINGS_FIELDS = {
    "default_dosage": "defaultDosage",
    "default_dosage_unit": "defaultDosageUnit",
    "max_daily_doses": "maxDailyDoses",
    "min_time_between_doses": "minTimeBetweenDoses",
    "use_recommended_timing": "useRecommendedTiming",
    "track_supply": "trackSupply",
    "current_supply": "currentSupply",
    "show_timeline": "showTimeline",
}


class DoseSubmit(BaseModel):
    """Body for submitting a pending dose request."""

    amount: float | str | None = None
    dose_time: datetime | None = None


class OverrideConfirm(BaseModel):
    """Body for confirming an override."""

    reason: str


class WorkflowResponse(BaseModel):
    """Workflow transition result."""

    outcome: str
    state: str
    amount: Any = None
    unit: str | None = None
    verdict: dict[str, Any] | None = None
    reasons: list[str] = []
    dose: dict[str, Any] | None = None
    current_supply: float | None = None


def _finite_or_none(value: float) -> float | None:
    return value if math.isfinite(value) else None


def _to_response(result: WorkflowResult) -> WorkflowResponse:
    verdict: dict[str, Any] | None = None
    if result.verdict is not None:
        verdict = dict(result.verdict)
        verdict["time_since_last_dose"] = _finite_or_none(result.verdict["time_since_last_dose"])
    return WorkflowResponse(
        outcome=result.outcome,
        state=result.state,
        amount=result.draft.amount if result.draft else None,
        unit=result.draft.unit if result.draft else None,
        verdict=verdict,
        reasons=result.reasons,
        dose=dict(result.dose) if result.dose else None,
        current_supply=result.substance["settings"].get("currentSupply") if result.substance else None,
    )


def _describe(substance: Substance) -> dict[str, Any]:
    return {
        **substance,
        "supply_level": supply_level(substance["settings"], settings.low_supply_threshold),
        "timing": timing_summary(substance),
    }


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok")


@app.get("/substances")
async def list_substances(q: str = "") -> list[dict[str, Any]]:
    """All substances, optionally filtered by a name query."""
    repository = get_repository()
    found = repository.search_substances(q) if q else repository.list_substances()
    return [_describe(s) for s in found]


@app.post("/substances", status_code=201)
async def create_substance(body: SubstanceCreate) -> dict[str, Any]:
    """Add a substance with its initial settings."""
    substance = make_substance(
        name=body.name,
        category=body.category,
        dosage=body.dosage,
        dosage_unit=body.dosage_unit,
        warnings=body.warnings,
        settings=make_substance_settings(
            default_dosage=body.dosage,
            default_dosage_unit=body.dosage_unit,
            max_daily_doses=body.max_daily_doses,
            min_time_between_doses=body.min_time_between_doses,
            use_recommended_timing=body.use_recommended_timing,
            track_supply=body.track_supply,
            current_supply=body.current_supply,
            show_timeline=body.show_timeline,
        ),
    )
    repository = get_repository()
    repository.add_substance(substance)
    if body.use_recommended_timing:
        substance = repository.update_settings(substance["id"], {})
    return _describe(substance)


@app.get("/substances/{substance_id}")
async def get_substance(substance_id: str) -> dict[str, Any]:
    return _describe(get_repository().get_substance(substance_id))


@app.delete("/substances/{substance_id}", status_code=204)
async def delete_substance(substance_id: str) -> None:
    get_repository().delete_substance(substance_id)
    _workflows.pop(substance_id, None)


@app.patch("/substances/{substance_id}/settings")
async def update_settings(substance_id: str, body: SettingsUpdate) -> dict[str, Any]:
    """Partial settings update; only fields present in the body change."""
    changes = {_SETTINGS_FIELDS[k]: v for k, v in body.model_dump(exclude_unset=True).items()}
    return _describe(get_repository().update_settings(substance_id, changes))


@app.post("/substances/{substance_id}/doses/request", response_model=WorkflowResponse)
async def request_dose(substance_id: str) -> WorkflowResponse:
    return _to_response(_workflow(substance_id).request_dose())


@app.post("/substances/{substance_id}/doses/submit", response_model=WorkflowResponse)
async def submit_dose(substance_id: str, body: DoseSubmit) -> WorkflowResponse:
    return _to_response(_workflow(substance_id).submit(amount=body.amount, dose_time=body.dose_time))


@app.post("/substances/{substance_id}/doses/override", response_model=WorkflowResponse)
async def confirm_override(substance_id: str, body: OverrideConfirm) -> WorkflowResponse:
    return _to_response(_workflow(substance_id).confirm_override(body.reason))


@app.post("/substances/{substance_id}/doses/cancel", response_model=WorkflowResponse)
async def cancel_dose(substance_id: str) -> WorkflowResponse:
    return _to_response(_workflow(substance_id).cancel())


@app.post("/substances/{substance_id}/reset-timer")
async def reset_timer(substance_id: str) -> dict[str, Any]:
    """Undo the most recently added dose."""
    removed = get_repository().reset_timer(substance_id)
    return {"removed": removed}


@app.get("/substances/{substance_id}/history")
async def history(substance_id: str) -> list[dict[str, Any]]:
    """Dose history grouped by day, newest first."""
    substance = get_repository().get_substance(substance_id)
    unit = substance["settings"].get("defaultDosageUnit") or substance.get("dosageUnit") or "mg"
    groups = aggregate_history(substance.get("doses", []), unit=unit, timezone_str=settings.timezone)
    return [dict(group) for group in groups]


@app.get("/substances/{substance_id}/overrides")
async def overrides(substance_id: str) -> list[dict[str, Any]]:
    repository = get_repository()
    repository.get_substance(substance_id)
    return [dict(entry) for entry in repository.override_log(substance_id)]


@app.get("/substances/{substance_id}/elapsed")
async def elapsed(substance_id: str) -> dict[str, Any]:
    """Hours since the last dose, for the live timer display."""
    substance = get_repository().get_substance(substance_id)
    last = last_dose_time(substance.get("doses", []))
    if last is None:
        return {"hours": None, "last_dose": None}
    return {"hours": elapsed_hours(datetime.now(last.tzinfo), last), "last_dose": last.isoformat()}
