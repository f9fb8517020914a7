"""
License endpoints: lifecycle, pricing, conflicts and usage reporting
"""
from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.auth.dependencies import AdminUser, CurrentUser
from iplicensing.database import get_db
from iplicensing.models.license import BillingFrequency, LicenseStatus, LicenseType
from iplicensing.services.license_service import LicenseListFilters, LicenseService
from iplicensing.services.usage_service import UsageService

router = APIRouter(prefix="/licenses", tags=["licenses"])


# ============================================================================
# Schemas
# ============================================================================


class LicenseCreateRequest(BaseModel):
    ip_asset_id: str
    brand_id: str
    license_type: LicenseType
    start_date: datetime
    end_date: datetime
    fee_cents: int = Field(ge=0)
    rev_share_bps: int = Field(default=0, ge=0, le=10000)
    scope: dict[str, Any] | None = None
    payment_terms: str | None = None
    billing_frequency: BillingFrequency | None = None
    auto_renew: bool = False
    project_id: str | None = None
    metadata: dict[str, Any] | None = None


class LicenseUpdateRequest(BaseModel):
    start_date: datetime | None = None
    end_date: datetime | None = None
    fee_cents: int | None = Field(default=None, ge=0)
    rev_share_bps: int | None = Field(default=None, ge=0, le=10000)
    scope: dict[str, Any] | None = None
    payment_terms: str | None = None
    billing_frequency: BillingFrequency | None = None
    auto_renew: bool | None = None
    metadata: dict[str, Any] | None = None


class LicenseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    ip_asset_id: str
    brand_id: str
    project_id: str | None
    license_type: LicenseType
    status: LicenseStatus
    start_date: datetime
    end_date: datetime
    signed_at: datetime | None
    auto_renew: bool
    fee_cents: int
    rev_share_bps: int
    payment_terms: str | None
    billing_frequency: BillingFrequency | None
    scope: dict[str, Any]
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_")
    parent_license_id: str | None
    created_at: datetime
    updated_at: datetime


class LicenseListResponse(BaseModel):
    items: list[LicenseResponse]
    page: int
    page_size: int
    total: int
    total_pages: int


class TerminateRequest(BaseModel):
    reason: str = Field(min_length=1)


class StatusChangeRequest(BaseModel):
    status: LicenseStatus
    reason: str | None = None


class RenewalRequest(BaseModel):
    duration_days: int | None = Field(default=None, ge=1)
    fee_adjustment_percent: float = 0
    rev_share_adjustment_bps: int = 0


class ConflictCheckRequest(BaseModel):
    ip_asset_id: str
    license_type: LicenseType
    start_date: datetime
    end_date: datetime
    territories: list[str] | None = None
    brand_id: str | None = None
    exclusivity: dict[str, Any] | None = None
    exclude_license_id: str | None = None


class FeeEstimateRequest(BaseModel):
    ip_asset_id: str
    license_type: LicenseType
    scope: dict[str, Any] = Field(default_factory=dict)
    duration_days: int = Field(ge=1)
    brand_id: str | None = None


class RevenueShareRequest(BaseModel):
    ip_asset_id: str
    fee_cents: int = Field(ge=0)
    rev_share_bps: int


class UsageRequest(BaseModel):
    occurred_at: datetime
    revenue_cents: int = Field(ge=0)
    usage_type: str = "sale"
    quantity: int = Field(default=1, ge=1)


class UsageEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    license_id: str
    occurred_at: datetime
    usage_type: str
    quantity: int
    revenue_cents: int
    reported_by: str | None


# ============================================================================
# Endpoints
# ============================================================================


@router.post("", response_model=LicenseResponse, status_code=status.HTTP_201_CREATED)
async def create_license(
    request: LicenseCreateRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    """
    Create a DRAFT license for an asset.

    Rejected with 409 when it conflicts with an existing exclusive or
    overlapping license.
    """
    license = await LicenseService(db).create_license(current_user, **request.model_dump())
    return LicenseResponse.model_validate(license)


@router.get("", response_model=LicenseListResponse)
async def list_licenses(
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    license_status: LicenseStatus | None = Query(default=None, alias="status"),
    ip_asset_id: str | None = None,
    brand_id: str | None = None,
    license_type: LicenseType | None = None,
    expiring_within_days: int | None = Query(default=None, ge=0),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
) -> LicenseListResponse:
    filters = LicenseListFilters(
        status=license_status,
        ip_asset_id=ip_asset_id,
        brand_id=brand_id,
        license_type=license_type,
        expiring_within_days=expiring_within_days,
    )
    licenses, meta = await LicenseService(db).list_licenses(current_user, filters, page, page_size)
    return LicenseListResponse(items=[LicenseResponse.model_validate(lic) for lic in licenses], **meta)


@router.get("/stats")
async def get_license_stats(
    admin: AdminUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    return await LicenseService(db).get_stats()


@router.post("/conflicts")
async def check_conflicts(
    request: ConflictCheckRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    conflicts = await LicenseService(db).check_conflicts(**request.model_dump())
    return {
        "has_conflicts": bool(conflicts),
        "conflicts": [asdict(c) for c in conflicts],
    }


@router.post("/estimate-fee")
async def estimate_fee(
    request: FeeEstimateRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    calculation = await LicenseService(db).estimate_fee(**request.model_dump())
    return asdict(calculation)


@router.post("/validate-revenue-share")
async def validate_revenue_share(
    request: RevenueShareRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> dict:
    validation = await LicenseService(db).validate_revenue_share(
        request.ip_asset_id, request.fee_cents, request.rev_share_bps
    )
    return asdict(validation)


@router.get("/{license_id}", response_model=LicenseResponse)
async def get_license(
    license_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    license = await LicenseService(db).get_license(current_user, license_id)
    return LicenseResponse.model_validate(license)


@router.patch("/{license_id}", response_model=LicenseResponse)
async def update_license(
    license_id: str,
    request: LicenseUpdateRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    license = await LicenseService(db).update_license(
        current_user, license_id, **request.model_dump(exclude_none=True)
    )
    return LicenseResponse.model_validate(license)


@router.delete("/{license_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_license(
    license_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> None:
    await LicenseService(db).delete_license(current_user, license_id)


@router.post("/{license_id}/status", response_model=LicenseResponse)
async def change_status(
    license_id: str,
    request: StatusChangeRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    license = await LicenseService(db).transition_status(
        current_user, license_id, request.status, request.reason
    )
    return LicenseResponse.model_validate(license)


@router.post("/{license_id}/approve", response_model=LicenseResponse)
async def approve_license(
    license_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    license = await LicenseService(db).approve(current_user, license_id)
    return LicenseResponse.model_validate(license)


@router.post("/{license_id}/sign", response_model=LicenseResponse)
async def sign_license(
    license_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    license = await LicenseService(db).sign(current_user, license_id)
    return LicenseResponse.model_validate(license)


@router.post("/{license_id}/terminate", response_model=LicenseResponse)
async def terminate_license(
    license_id: str,
    request: TerminateRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    license = await LicenseService(db).terminate(current_user, license_id, request.reason)
    return LicenseResponse.model_validate(license)


@router.post("/{license_id}/renew", response_model=LicenseResponse, status_code=status.HTTP_201_CREATED)
async def generate_renewal(
    license_id: str,
    request: RenewalRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> LicenseResponse:
    renewal = await LicenseService(db).generate_renewal(
        current_user,
        license_id,
        duration_days=request.duration_days,
        fee_adjustment_percent=request.fee_adjustment_percent,
        rev_share_adjustment_bps=request.rev_share_adjustment_bps,
    )
    return LicenseResponse.model_validate(renewal)


# ============================================================================
# Usage reporting
# ============================================================================


@router.post("/{license_id}/usage", response_model=UsageEventResponse, status_code=status.HTTP_201_CREATED)
async def record_usage(
    license_id: str,
    request: UsageRequest,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
) -> UsageEventResponse:
    """Report revenue-bearing usage of a licensed asset."""
    event = await UsageService(db).record_usage(
        current_user,
        license_id,
        occurred_at=request.occurred_at,
        revenue_cents=request.revenue_cents,
        usage_type=request.usage_type,
        quantity=request.quantity,
    )
    return UsageEventResponse.model_validate(event)


@router.get("/{license_id}/usage")
async def get_usage_summary(
    license_id: str,
    current_user: CurrentUser,
    db: AsyncSession = Depends(get_db),
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict:
    # Visibility check; raises for licenses the caller cannot see
    await LicenseService(db).get_license(current_user, license_id)
    return await UsageService(db).usage_summary(license_id, start, end)
