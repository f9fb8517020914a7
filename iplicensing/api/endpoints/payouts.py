"""
Creator payout endpoints: Stripe Connect onboarding and royalty payouts
"""
from datetime import datetime

import stripe
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.dependencies import AdminUser, CurrentCreator, CurrentUser
from iplicensing.database import get_db
from iplicensing.jobs.queue import EnqueueJobRequest, enqueue_job
from iplicensing.models.payout import PayoutStatus
from iplicensing.services.connect_service import ConnectService
from iplicensing.services.payout_service import PayoutService

logger = structlog.get_logger()

router = APIRouter(prefix="/payouts", tags=["payouts"])


# ============================================================================
# Schemas
# ============================================================================


class OnboardingResponse(BaseModel):
    url: str


class AccountStatusResponse(BaseModel):
    has_account: bool
    onboarding_status: str | None
    charges_enabled: bool
    payouts_enabled: bool
    requires_action: bool
    currently_due: list[str]
    errors: list[str]


class PayoutRequest(BaseModel):
    creator_id: str | None = None
    background: bool = False


class PayoutResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    creator_id: str
    amount_cents: int
    currency: str
    status: PayoutStatus
    stripe_transfer_id: str | None
    statement_ids: list[str]
    failed_reason: str | None
    retry_count: int
    processed_at: datetime | None
    created_at: datetime


def _stripe_unavailable(e: stripe.StripeError) -> HTTPException:
    logger.error("stripe_request_failed", error=str(e))
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Stripe error: {e.user_message or str(e)}",
    )


# ============================================================================
# Stripe Connect
# ============================================================================


@router.post("/connect/onboarding", response_model=OnboardingResponse)
async def start_onboarding(
    creator: CurrentCreator,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> OnboardingResponse:
    """
    Create the creator's Express account if needed and return an onboarding link.
    """
    try:
        url = await ConnectService(db).get_onboarding_link(creator, current_user.email)
    except stripe.StripeError as e:
        raise _stripe_unavailable(e)
    return OnboardingResponse(url=url)


@router.get("/connect/status", response_model=AccountStatusResponse)
async def get_account_status(
    creator: CurrentCreator,
    db: AsyncSession = Depends(get_db),
) -> AccountStatusResponse:
    try:
        return AccountStatusResponse(**await ConnectService(db).get_account_status(creator))
    except stripe.StripeError as e:
        raise _stripe_unavailable(e)


@router.post("/connect/sync")
async def sync_account(
    creator: CurrentCreator,
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        synced = await ConnectService(db).sync_account_status(creator)
    except stripe.StripeError as e:
        # The FAILED onboarding status is kept
        await db.commit()
        raise _stripe_unavailable(e)
    return {"onboarding_status": synced.onboarding_status.value if synced.onboarding_status else None}


@router.delete("/connect", status_code=status.HTTP_204_NO_CONTENT)
async def delete_account(
    creator: CurrentCreator,
    db: AsyncSession = Depends(get_db),
) -> None:
    try:
        await ConnectService(db).delete_account(creator)
    except stripe.StripeError as e:
        raise _stripe_unavailable(e)


# ============================================================================
# Payouts
# ============================================================================


@router.post("", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED)
async def create_payout(
    request: PayoutRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
):
    """
    Pay out every unpaid statement of a creator in one transfer.

    Creators pay themselves out; admins pass `creator_id`. With
    `background=true` the payout is queued and 202 is returned.
    """
    connect = ConnectService(db)
    if current_user.is_admin and request.creator_id:
        creator = await connect.get_creator(request.creator_id)
    else:
        creator = await connect.get_creator_for_user(current_user)
        if request.creator_id and request.creator_id != creator.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")

    if request.background:
        job_id = await enqueue_job(
            db,
            EnqueueJobRequest(job_type="payout.process", payload={"creator_id": creator.id}),
        )
        return JSONResponse(status_code=status.HTTP_202_ACCEPTED, content={"job_id": job_id, "creator_id": creator.id})

    payout = await PayoutService(db).process_payout(creator.id)
    return PayoutResponse.model_validate(payout)


@router.get("", response_model=list[PayoutResponse])
async def list_payouts(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    creator_id: str | None = None,
    payout_status: PayoutStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
) -> list[PayoutResponse]:
    if not current_user.is_admin:
        creator_id = (await ConnectService(db).get_creator_for_user(current_user)).id
    payouts = await PayoutService(db).list_payouts(creator_id, payout_status, limit)
    return [PayoutResponse.model_validate(p) for p in payouts]


@router.get("/{payout_id}", response_model=PayoutResponse)
async def get_payout(
    payout_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> PayoutResponse:
    payout = await PayoutService(db).get_payout(payout_id)
    if not current_user.is_admin:
        creator = await ConnectService(db).get_creator_for_user(current_user)
        if payout.creator_id != creator.id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot view another creator's payout")
    return PayoutResponse.model_validate(payout)


@router.post("/{payout_id}/retry", response_model=PayoutResponse)
async def retry_payout(
    payout_id: str,
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> PayoutResponse:
    payout = await PayoutService(db).retry_payout(payout_id)
    return PayoutResponse.model_validate(payout)
