"""
Royalty endpoints: runs, statements, disputes and earnings
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.dependencies import AdminUser, CurrentCreator, CurrentUser
from iplicensing.database import get_db
from iplicensing.jobs.queue import EnqueueJobRequest, enqueue_job
from iplicensing.models.royalty import RoyaltyLineType, RoyaltyRunStatus, RoyaltyStatementStatus
from iplicensing.services.royalty_service import RoyaltyService

router = APIRouter(prefix="/royalties", tags=["royalties"])


# ============================================================================
# Schemas
# ============================================================================


class RunCreateRequest(BaseModel):
    period_start: datetime
    period_end: datetime
    notes: str | None = None


class RunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    period_start: datetime
    period_end: datetime
    status: RoyaltyRunStatus
    total_revenue_cents: int
    total_royalties_cents: int
    notes: str | None
    error: str | None
    processed_at: datetime | None
    locked_at: datetime | None
    created_at: datetime


class StatementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    royalty_run_id: str
    creator_id: str
    total_earnings_cents: int
    status: RoyaltyStatementStatus
    below_threshold: bool
    reviewed_at: datetime | None
    disputed_at: datetime | None
    dispute_reason: str | None
    resolution: str | None
    paid_at: datetime | None
    payment_reference: str | None
    created_at: datetime


class LineResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    line_type: RoyaltyLineType
    license_id: str | None
    ip_asset_id: str | None
    revenue_cents: int
    share_bps: int
    calculated_royalty_cents: int
    period_start: datetime | None
    period_end: datetime | None
    description: str | None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")


class StatementDetailResponse(BaseModel):
    statement: StatementResponse
    lines: list[LineResponse]


class AdjustmentRequest(BaseModel):
    amount_cents: int
    reason: str = Field(min_length=1)
    adjustment_type: str = Field(default="CREDIT", pattern="^(CREDIT|DEBIT)$")


class DisputeRequest(BaseModel):
    reason: str


class ResolveRequest(BaseModel):
    resolution: str
    adjustment_cents: int = 0


# ============================================================================
# Runs
# ============================================================================


@router.post("/runs", response_model=RunResponse, status_code=status.HTTP_201_CREATED)
async def create_run(
    request: RunCreateRequest,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> RunResponse:
    run = await RoyaltyService(db).create_run(admin, request.period_start, request.period_end, request.notes)
    return RunResponse.model_validate(run)


@router.get("/runs", response_model=list[RunResponse])
async def list_runs(
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
    run_status: RoyaltyRunStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[RunResponse]:
    runs = await RoyaltyService(db).list_runs(run_status, limit)
    return [RunResponse.model_validate(r) for r in runs]


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(
    run_id: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> RunResponse:
    return RunResponse.model_validate(await RoyaltyService(db).get_run(run_id))


@router.post("/runs/{run_id}/calculate", response_model=RunResponse)
async def calculate_run(
    run_id: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
    background: bool = False,
):
    """
    Calculate a run's statements.

    With `background=true` the calculation is queued on the royalty
    calculation queue and 202 is returned with the job id.
    """
    if background:
        service = RoyaltyService(db)
        await service.get_run(run_id)
        job_id = await enqueue_job(
            db,
            EnqueueJobRequest(
                job_type="royalty.calculate_run",
                payload={"run_id": run_id},
                idempotency_key=f"royalty-run:{run_id}",
            ),
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"job_id": job_id, "run_id": run_id})

    run = await RoyaltyService(db).calculate_run(run_id)
    return RunResponse.model_validate(run)


@router.post("/runs/{run_id}/lock", response_model=RunResponse)
async def lock_run(
    run_id: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> RunResponse:
    run = await RoyaltyService(db).lock_run(run_id)
    return RunResponse.model_validate(run)


# ============================================================================
# Statements
# ============================================================================


@router.get("/statements", response_model=list[StatementResponse])
async def list_statements(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    creator_id: str | None = None,
    run_id: str | None = None,
    statement_status: RoyaltyStatementStatus | None = Query(default=None, alias="status"),
) -> list[StatementResponse]:
    statements = await RoyaltyService(db).list_statements(
        current_user, creator_id=creator_id, run_id=run_id, status=statement_status
    )
    return [StatementResponse.model_validate(s) for s in statements]


@router.get("/statements/{statement_id}", response_model=StatementDetailResponse)
async def get_statement(
    statement_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> StatementDetailResponse:
    statement, lines = await RoyaltyService(db).get_statement(current_user, statement_id)
    return StatementDetailResponse(
        statement=StatementResponse.model_validate(statement),
        lines=[LineResponse.model_validate(line) for line in lines],
    )


@router.post("/statements/{statement_id}/review", response_model=StatementResponse)
async def review_statement(
    statement_id: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> StatementResponse:
    statement = await RoyaltyService(db).review_statement(statement_id)
    return StatementResponse.model_validate(statement)


@router.post("/statements/{statement_id}/dispute", response_model=StatementResponse)
async def dispute_statement(
    statement_id: str,
    request: DisputeRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> StatementResponse:
    statement = await RoyaltyService(db).dispute_statement(current_user, statement_id, request.reason)
    return StatementResponse.model_validate(statement)


@router.post("/statements/{statement_id}/resolve", response_model=StatementResponse)
async def resolve_dispute(
    statement_id: str,
    request: ResolveRequest,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> StatementResponse:
    statement = await RoyaltyService(db).resolve_dispute(
        admin, statement_id, request.resolution, request.adjustment_cents
    )
    return StatementResponse.model_validate(statement)


@router.post("/statements/{statement_id}/adjustments", response_model=StatementResponse)
async def apply_adjustment(
    statement_id: str,
    request: AdjustmentRequest,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> StatementResponse:
    statement = await RoyaltyService(db).apply_adjustment(
        admin, statement_id, request.amount_cents, request.reason, request.adjustment_type
    )
    return StatementResponse.model_validate(statement)


# ============================================================================
# Earnings
# ============================================================================


@router.get("/earnings/me")
async def my_earnings(
    creator: CurrentCreator,
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await RoyaltyService(db).creator_earnings_summary(creator.id)


@router.get("/earnings/{creator_id}")
async def creator_earnings(
    creator_id: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await RoyaltyService(db).creator_earnings_summary(creator_id)
