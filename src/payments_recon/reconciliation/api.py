"""API endpoints for reconciliation and scheduling operations."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db, ReconciliationRunRepository, ScheduledReconciliationRepository
from ..auth import verify_api_key, limiter
from ..errors import ErrorKind, ReconciliationError
from ..timeutils import to_naive_utc
from .models import ReconciliationRequest
from .schedule import ScheduleConfig, next_run
from .service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])
schedules_router = APIRouter(prefix="/schedules", tags=["schedules"])


class DiffRequestBody(BaseModel):
    """Request body for computing a diff."""
    payment_channel_id: str = Field(..., min_length=1, description="Payment channel to reconcile")
    organization_id: Optional[str] = Field(None, description="Owning organization")
    start_time: datetime = Field(..., description="Start of time range to reconcile")
    end_time: datetime = Field(..., description="End of time range to reconcile")
    provider: str = Field(default="clicpago", description="Remote ledger provider name")


class JobRequestBody(DiffRequestBody):
    """Request body for starting a reconciliation job."""
    apply: bool = Field(default=False, description="Apply the differences to the local ledger")
    batch_size: Optional[int] = Field(default=None, ge=1, description="Apply in batches of this size")


class DiffResponse(BaseModel):
    """Diff summary plus the records behind it."""
    payment_channel_id: str
    total_missing: int
    total_mismatched: int
    total_matched: int
    total_amount: str
    missing: List[Dict[str, Any]]
    mismatched: List[Dict[str, Any]]
    matched: List[str]


RECURRENCE_FIELDS = {"frequency", "day_of_week", "day_of_month", "hour", "minute"}


def _schedule_config(fields: Dict[str, Any]) -> ScheduleConfig:
    try:
        return ScheduleConfig(**fields)
    except ValidationError as e:
        raise ReconciliationError(
            ErrorKind.VALIDATION,
            "Invalid schedule configuration",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)},
        ) from e


class RecurrenceBody(BaseModel):
    """Recurrence fields; checked by ``ScheduleConfig`` so bad input maps to 400."""
    frequency: str
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    hour: int = 0
    minute: int = 0

    def to_config(self) -> ScheduleConfig:
        return _schedule_config(self.model_dump(include=RECURRENCE_FIELDS))


class NextRunBody(RecurrenceBody):
    """Schedule configuration plus an optional reference instant."""
    now: Optional[datetime] = Field(None, description="Reference instant; defaults to now")


class ScheduleCreateBody(RecurrenceBody):
    """Request body for creating a scheduled reconciliation."""
    name: str = Field(..., min_length=1)
    organization_id: str = Field(..., min_length=1)
    payment_channel_id: str = Field(..., min_length=1)
    days_to_include: int = Field(default=7, ge=1, le=365)


class ScheduleUpdateBody(BaseModel):
    """Partial update of a scheduled reconciliation; omitted fields are kept."""
    name: Optional[str] = Field(None, min_length=1)
    frequency: Optional[str] = None
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    hour: Optional[int] = None
    minute: Optional[int] = None
    days_to_include: Optional[int] = Field(None, ge=1, le=365)
    is_active: Optional[bool] = None


async def _get_schedule(repo: ScheduledReconciliationRepository, schedule_id: str):
    schedule = await repo.get_by_id(schedule_id)
    if schedule is None:
        raise ReconciliationError(
            ErrorKind.NOT_FOUND,
            f"Scheduled reconciliation {schedule_id} not found",
        )
    return schedule


def _check_window(body: DiffRequestBody) -> None:
    start_time = to_naive_utc(body.start_time)
    end_time = to_naive_utc(body.end_time)
    if start_time > end_time:
        raise ReconciliationError(
            ErrorKind.VALIDATION,
            "start_time must be before end_time",
            details={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
        )


@router.post("/diff", response_model=DiffResponse)
async def compute_diff(
    body: DiffRequestBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """
    Compare the local ledger with the processor for a time range.

    Nothing is written; the response lists the missing, mismatched and
    matched transactions.
    """
    _check_window(body)
    service = ReconciliationService(db)
    result = await service.compute_diff(ReconciliationRequest(**body.model_dump()))

    return DiffResponse(
        payment_channel_id=body.payment_channel_id,
        total_missing=len(result.missing),
        total_mismatched=len(result.mismatched),
        total_matched=len(result.matched),
        total_amount=str(result.total_amount),
        missing=[r.model_dump(mode="json") for r in result.missing],
        mismatched=[m.model_dump(mode="json") for m in result.mismatched],
        matched=result.matched,
    )


@router.post("/jobs")
@limiter.limit("10/minute")
async def create_reconciliation_job(
    request: Request,
    body: JobRequestBody,
    include_details: bool = Query(default=False, description="Include the diff and apply outcomes"),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """
    Run a reconciliation job.

    With ``apply`` the differences are written to the local ledger, in
    batches when ``batch_size`` is given. The run is recorded either way.
    """
    _check_window(body)
    service = ReconciliationService(db, use_channel_locks=True)

    logger.info(
        f"Starting reconciliation job for channel {body.payment_channel_id} "
        f"from {body.start_time} to {body.end_time} (apply={body.apply})"
    )

    report = await service.run_reconciliation(ReconciliationRequest(**body.model_dump()))
    return report.to_full_dict() if include_details else report.to_summary_dict()


@router.get("/runs")
async def list_reconciliation_runs(
    payment_channel_id: str = Query(..., min_length=1),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """List recorded runs for a channel, newest first."""
    runs = await ReconciliationRunRepository(db).list_by_channel(payment_channel_id, limit=limit)
    return {"runs": [run.to_dict() for run in runs]}


@router.get("/health")
async def reconciliation_health():
    """Health check endpoint for reconciliation service."""
    return {"status": "healthy", "service": "reconciliation"}


@schedules_router.post("/next-run")
async def compute_next_run(
    body: NextRunBody,
    api_key: str = Depends(verify_api_key),
):
    """Compute when a schedule with this configuration runs next."""
    config = body.to_config()
    return {"next_run": next_run(config, body.now).isoformat()}


@schedules_router.post("", status_code=201)
async def create_schedule(
    body: ScheduleCreateBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Create a scheduled reconciliation; its first run is computed from now."""
    config = body.to_config()
    schedule = await ScheduledReconciliationRepository(db).create(
        name=body.name,
        organization_id=body.organization_id,
        payment_channel_id=body.payment_channel_id,
        frequency=config.frequency.value,
        day_of_week=config.day_of_week,
        day_of_month=config.day_of_month,
        hour=config.hour,
        minute=config.minute,
        days_to_include=body.days_to_include,
        next_run=next_run(config),
    )
    return schedule.to_dict()


@schedules_router.get("")
async def list_schedules(
    organization_id: Optional[str] = Query(None),
    payment_channel_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """List scheduled reconciliations, newest first."""
    schedules = await ScheduledReconciliationRepository(db).list(
        organization_id=organization_id,
        payment_channel_id=payment_channel_id,
    )
    return {"schedules": [schedule.to_dict() for schedule in schedules]}


@schedules_router.put("/{schedule_id}")
async def update_schedule(
    schedule_id: str,
    body: ScheduleUpdateBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """
    Update a scheduled reconciliation.

    Omitted fields keep their stored values. When the recurrence changes the
    merged configuration is validated and the next run is recomputed from now.
    """
    repo = ScheduledReconciliationRepository(db)
    schedule = await _get_schedule(repo, schedule_id)

    changes = body.model_dump(exclude_unset=True)
    updates = {
        name: value for name, value in changes.items()
        if name not in RECURRENCE_FIELDS and value is not None
    }

    if RECURRENCE_FIELDS & changes.keys():
        merged = {name: getattr(schedule, name) for name in RECURRENCE_FIELDS}
        merged.update((name, changes[name]) for name in RECURRENCE_FIELDS & changes.keys())
        config = _schedule_config(merged)
        updates.update(
            frequency=config.frequency.value,
            day_of_week=config.day_of_week,
            day_of_month=config.day_of_month,
            hour=config.hour,
            minute=config.minute,
            next_run=next_run(config),
        )

    schedule = await repo.update(schedule, **updates)
    return schedule.to_dict()


@schedules_router.delete("/{schedule_id}")
async def delete_schedule(
    schedule_id: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Delete a scheduled reconciliation; its recorded runs are kept."""
    repo = ScheduledReconciliationRepository(db)
    schedule = await _get_schedule(repo, schedule_id)
    await repo.delete(schedule)
    return {"id": schedule_id, "deleted": True}


@schedules_router.post("/{schedule_id}/run")
async def run_schedule(
    schedule_id: str,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Run a scheduled reconciliation now and advance its next run."""
    service = ReconciliationService(db, use_channel_locks=True)
    report = await service.run_scheduled(schedule_id)
    return report.to_summary_dict()
