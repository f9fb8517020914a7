"""
Royalty run calculation and statement workflow

A run covers one period. Calculating it turns every license that was live
during the period into per-owner EARNING lines, groups them into one
statement per creator and carries forward balances that were held below
the payout minimum in earlier runs.
"""
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from iplicensing.config import settings
from iplicensing.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from iplicensing.models.ip_asset import IpOwnership
from iplicensing.models.license import License, LicenseStatus
from iplicensing.models.notification import NotificationPriority, NotificationType
from iplicensing.models.royalty import (
    RoyaltyLine,
    RoyaltyLineType,
    RoyaltyRun,
    RoyaltyRunStatus,
    RoyaltyStatement,
    RoyaltyStatementStatus,
)
from iplicensing.models.user import Creator, User
from iplicensing.services.notification_service import NotificationService
from iplicensing.services.usage_service import UsageService
from iplicensing.utils.financial import (
    calculate_accumulated_balance,
    format_cents_to_dollars,
    prorate_revenue,
    split_amount_accurately,
    validate_ownership_split,
)
from iplicensing.utils.periods import (
    overlap_days,
    period_days,
    period_display_name,
    periods_overlap,
    validate_period_dates,
)
from iplicensing.utils.time import to_naive_utc, utc_now

logger = structlog.get_logger()

EARNING_LICENSE_STATUSES = (
    LicenseStatus.ACTIVE,
    LicenseStatus.EXPIRING_SOON,
    LicenseStatus.EXPIRED,
)
DISPUTABLE_STATUSES = (RoyaltyStatementStatus.PENDING, RoyaltyStatementStatus.REVIEWED)
MIN_DISPUTE_REASON_LENGTH = 10
# Below-threshold statements in these states carry into the next run
HELD_STATUSES = (RoyaltyStatementStatus.REVIEWED, RoyaltyStatementStatus.RESOLVED)


@dataclass
class EarningLine:
    creator_id: str
    license_id: str
    ip_asset_id: str
    revenue_cents: int
    share_bps: int
    royalty_cents: int


class RoyaltyService:
    """Service for royalty runs and creator statements."""

    def __init__(self, db: AsyncSession, notifications: NotificationService | None = None):
        self.db = db
        self.notifications = notifications or NotificationService(db)

    # Lookups

    async def get_run(self, run_id: str) -> RoyaltyRun:
        run = await self.db.get(RoyaltyRun, run_id)
        if not run:
            raise NotFoundError(f"Royalty run {run_id} not found", code="royalty_run.not_found")
        return run

    async def list_runs(self, status: RoyaltyRunStatus | None = None, limit: int = 50) -> list[RoyaltyRun]:
        stmt = select(RoyaltyRun).order_by(RoyaltyRun.period_start.desc()).limit(limit)
        if status:
            stmt = stmt.where(RoyaltyRun.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def _get_statement(self, statement_id: str) -> RoyaltyStatement:
        statement = await self.db.get(RoyaltyStatement, statement_id)
        if not statement:
            raise NotFoundError(f"Statement {statement_id} not found", code="statement.not_found")
        return statement

    @staticmethod
    def _ensure_not_carried(statement: RoyaltyStatement) -> None:
        if statement.carried_into_statement_id:
            raise ConflictError(
                "Statement balance was carried into a later statement; change that statement instead",
                code="statement.carried",
                meta={"carried_into_statement_id": statement.carried_into_statement_id},
            )

    async def _creator_id_for(self, user: User) -> str | None:
        return await self.db.scalar(select(Creator.id).where(Creator.user_id == user.id))

    async def _notify_creator(
        self,
        creator_id: str,
        title: str,
        message: str,
        statement_id: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
    ) -> None:
        user_id = await self.db.scalar(select(Creator.user_id).where(Creator.id == creator_id))
        if not user_id:
            return
        await self.notifications.create(
            user_id=user_id,
            type=NotificationType.ROYALTY,
            title=title,
            message=message,
            priority=priority,
            action_url=f"/royalties/statements/{statement_id}",
            metadata={"statement_id": statement_id},
        )

    # Runs

    async def create_run(
        self,
        user: User,
        period_start: datetime,
        period_end: datetime,
        notes: str | None = None,
    ) -> RoyaltyRun:
        period_start, period_end = to_naive_utc(period_start), to_naive_utc(period_end)
        try:
            validate_period_dates(period_start, period_end)
        except ValueError as e:
            raise ValidationError(str(e))

        result = await self.db.execute(
            select(RoyaltyRun).where(RoyaltyRun.status != RoyaltyRunStatus.FAILED)
        )
        for existing in result.scalars().all():
            if periods_overlap(existing.period_start, existing.period_end, period_start, period_end):
                raise ConflictError(
                    f"Period overlaps royalty run {existing.id}",
                    code="royalty_run.overlap",
                    meta={"run_id": existing.id},
                )

        run = RoyaltyRun(
            period_start=period_start,
            period_end=period_end,
            status=RoyaltyRunStatus.DRAFT,
            notes=notes,
            created_by=user.id,
        )
        self.db.add(run)
        await self.db.flush()

        logger.info(
            "royalty_run_created",
            run_id=run.id,
            period=period_display_name(period_start, period_end),
        )
        return run

    async def _ownership_shares(self, asset_id: str, run: RoyaltyRun) -> list[IpOwnership]:
        result = await self.db.execute(
            select(IpOwnership)
            .where(
                IpOwnership.ip_asset_id == asset_id,
                IpOwnership.start_date <= run.period_end,
                or_(IpOwnership.end_date.is_(None), IpOwnership.end_date >= run.period_start),
            )
            .order_by(IpOwnership.share_bps.desc(), IpOwnership.created_at)
        )
        return list(result.scalars().all())

    async def _license_revenue(self, license: License, run: RoyaltyRun, usage: UsageService) -> int:
        """Fee prorated over the days the license overlaps the run, plus usage revenue reported in the run."""
        active_days = overlap_days(run.period_start, run.period_end, license.start_date, license.end_date)
        fee_revenue = prorate_revenue(
            license.fee_cents,
            active_days,
            period_days(license.start_date, license.end_date),
        )
        usage_revenue = await usage.revenue_in_period(license.id, run.period_start, run.period_end)
        return fee_revenue + usage_revenue

    async def _collect_earnings(self, run: RoyaltyRun) -> tuple[list[EarningLine], int]:
        result = await self.db.execute(
            select(License).where(
                License.status.in_(EARNING_LICENSE_STATUSES),
                License.deleted_at.is_(None),
                License.start_date <= run.period_end,
                License.end_date >= run.period_start,
            )
        )
        usage = UsageService(self.db)
        lines: list[EarningLine] = []
        total_revenue = 0

        for license in result.scalars().all():
            revenue = await self._license_revenue(license, run, usage)
            if revenue <= 0:
                continue

            ownerships = await self._ownership_shares(license.ip_asset_id, run)
            shares = [o.share_bps for o in ownerships]
            if not ownerships or not validate_ownership_split(shares):
                raise ValidationError(
                    f"Ownership of asset {license.ip_asset_id} sums to {sum(shares)} bps, expected 10000",
                    code="royalty.invalid_ownership",
                )

            total_revenue += revenue
            for ownership, amount in zip(ownerships, split_amount_accurately(revenue, shares)):
                lines.append(EarningLine(
                    creator_id=ownership.creator_id,
                    license_id=license.id,
                    ip_asset_id=license.ip_asset_id,
                    revenue_cents=revenue,
                    share_bps=ownership.share_bps,
                    royalty_cents=amount,
                ))
        return lines, total_revenue

    async def _held_statements(self, creator_id: str, run_id: str) -> list[RoyaltyStatement]:
        result = await self.db.execute(
            select(RoyaltyStatement).where(
                RoyaltyStatement.creator_id == creator_id,
                RoyaltyStatement.royalty_run_id != run_id,
                RoyaltyStatement.status.in_(HELD_STATUSES),
                RoyaltyStatement.below_threshold.is_(True),
                RoyaltyStatement.carried_into_statement_id.is_(None),
            )
        )
        return list(result.scalars().all())

    async def _build_statement(self, run: RoyaltyRun, creator_id: str, lines: list[EarningLine]) -> RoyaltyStatement:
        earnings = sum(line.royalty_cents for line in lines)
        held = await self._held_statements(creator_id, run.id)
        carried = sum(s.total_earnings_cents for s in held)
        balance = calculate_accumulated_balance(carried, earnings, settings.minimum_payout_cents)

        statement = RoyaltyStatement(
            royalty_run_id=run.id,
            creator_id=creator_id,
            total_earnings_cents=balance.total_balance_cents,
            status=RoyaltyStatementStatus.PENDING if balance.should_pay_out else RoyaltyStatementStatus.REVIEWED,
            below_threshold=not balance.should_pay_out,
        )
        self.db.add(statement)
        await self.db.flush()

        for line in lines:
            self.db.add(RoyaltyLine(
                royalty_statement_id=statement.id,
                line_type=RoyaltyLineType.EARNING,
                license_id=line.license_id,
                ip_asset_id=line.ip_asset_id,
                revenue_cents=line.revenue_cents,
                share_bps=line.share_bps,
                calculated_royalty_cents=line.royalty_cents,
                period_start=run.period_start,
                period_end=run.period_end,
            ))

        if carried > 0:
            self.db.add(RoyaltyLine(
                royalty_statement_id=statement.id,
                line_type=RoyaltyLineType.CARRYOVER,
                calculated_royalty_cents=carried,
                description=f"Carried over from {len(held)} earlier statement(s)",
                metadata_={"statement_ids": [s.id for s in held]},
            ))
            for previous in held:
                previous.carried_into_statement_id = statement.id

        if not balance.should_pay_out:
            self.db.add(RoyaltyLine(
                royalty_statement_id=statement.id,
                line_type=RoyaltyLineType.THRESHOLD_NOTE,
                calculated_royalty_cents=0,
                description=(
                    f"Balance {format_cents_to_dollars(balance.total_balance_cents)} is below the "
                    f"{format_cents_to_dollars(settings.minimum_payout_cents)} payout minimum "
                    "and carries into the next run"
                ),
            ))

        await self.db.flush()
        return statement

    async def calculate_run(self, run_id: str) -> RoyaltyRun:
        """
        Calculate a DRAFT run.

        On failure the partial work is rolled back, the run is committed as
        FAILED with the error text and the exception is re-raised.
        """
        run = await self.get_run(run_id)
        if run.status != RoyaltyRunStatus.DRAFT:
            raise ConflictError(
                f"Run in status {run.status.value} cannot be calculated",
                code="royalty_run.invalid_status",
            )

        run.status = RoyaltyRunStatus.CALCULATING
        await self.db.flush()
        logger.info("royalty_run_calculating", run_id=run.id)

        try:
            earning_lines, total_revenue = await self._collect_earnings(run)

            by_creator: dict[str, list[EarningLine]] = defaultdict(list)
            for line in earning_lines:
                by_creator[line.creator_id].append(line)

            statements = []
            for creator_id, lines in by_creator.items():
                statements.append(await self._build_statement(run, creator_id, lines))

            run.total_revenue_cents = total_revenue
            run.total_royalties_cents = sum(line.royalty_cents for line in earning_lines)
            run.status = RoyaltyRunStatus.CALCULATED
            run.processed_at = utc_now()
            run.error = None
            await self.db.flush()
        except Exception as e:
            await self.db.rollback()
            run = await self.get_run(run_id)
            run.status = RoyaltyRunStatus.FAILED
            run.error = str(e)
            await self.db.commit()
            logger.error("royalty_run_failed", run_id=run_id, error=str(e))
            raise

        for statement in statements:
            await self._notify_creator(
                statement.creator_id,
                "Royalty statement ready",
                f"Your statement for {period_display_name(run.period_start, run.period_end)} "
                f"totals {format_cents_to_dollars(statement.total_earnings_cents)}",
                statement.id,
            )

        logger.info(
            "royalty_run_calculated",
            run_id=run.id,
            statements=len(statements),
            total_revenue_cents=run.total_revenue_cents,
            total_royalties_cents=run.total_royalties_cents,
        )
        return run

    async def lock_run(self, run_id: str) -> RoyaltyRun:
        run = await self.get_run(run_id)
        if run.status != RoyaltyRunStatus.CALCULATED:
            raise ConflictError(
                f"Run in status {run.status.value} cannot be locked",
                code="royalty_run.invalid_status",
            )

        disputed = await self.db.scalar(
            select(func.count())
            .select_from(RoyaltyStatement)
            .where(
                RoyaltyStatement.royalty_run_id == run_id,
                RoyaltyStatement.status == RoyaltyStatementStatus.DISPUTED,
            )
        )
        if disputed:
            raise ConflictError(
                f"Run has {disputed} disputed statement(s)",
                code="royalty_run.has_disputes",
            )

        run.status = RoyaltyRunStatus.LOCKED
        run.locked_at = utc_now()
        await self.db.flush()
        logger.info("royalty_run_locked", run_id=run_id)
        return run

    async def apply_adjustment(
        self,
        user: User,
        statement_id: str,
        amount_cents: int,
        reason: str,
        adjustment_type: str = "CREDIT",
    ) -> RoyaltyStatement:
        if adjustment_type not in ("CREDIT", "DEBIT"):
            raise ValidationError("Adjustment type must be CREDIT or DEBIT")
        if amount_cents == 0:
            raise ValidationError("Adjustment amount must be non-zero")
        if not reason or not reason.strip():
            raise ValidationError("An adjustment reason is required")

        statement = await self._get_statement(statement_id)
        run = await self.get_run(statement.royalty_run_id)
        if run.status == RoyaltyRunStatus.LOCKED:
            raise ConflictError("Cannot adjust a statement in a locked run", code="royalty_run.locked")
        if statement.status == RoyaltyStatementStatus.PAID:
            raise ConflictError("Cannot adjust a paid statement", code="statement.paid")
        self._ensure_not_carried(statement)

        signed_amount = abs(amount_cents) if adjustment_type == "CREDIT" else -abs(amount_cents)
        if statement.total_earnings_cents + signed_amount < 0:
            raise ValidationError("Adjustment would make the statement negative")

        self.db.add(RoyaltyLine(
            royalty_statement_id=statement.id,
            line_type=RoyaltyLineType.MANUAL_ADJUSTMENT,
            calculated_royalty_cents=signed_amount,
            description=reason,
            metadata_={"adjusted_by": user.id, "type": adjustment_type},
        ))
        statement.total_earnings_cents += signed_amount
        run.total_royalties_cents += signed_amount
        await self.db.flush()

        logger.info(
            "royalty_adjustment_applied",
            statement_id=statement.id,
            amount_cents=signed_amount,
            user_id=user.id,
        )
        return statement

    # Statements

    async def list_statements(
        self,
        user: User,
        creator_id: str | None = None,
        run_id: str | None = None,
        status: RoyaltyStatementStatus | None = None,
    ) -> list[RoyaltyStatement]:
        if not user.is_admin:
            own_creator_id = await self._creator_id_for(user)
            if not own_creator_id:
                return []
            if creator_id and creator_id != own_creator_id:
                raise PermissionDeniedError("Cannot view another creator's statements")
            creator_id = own_creator_id

        stmt = select(RoyaltyStatement).order_by(RoyaltyStatement.created_at.desc())
        if creator_id:
            stmt = stmt.where(RoyaltyStatement.creator_id == creator_id)
        if run_id:
            stmt = stmt.where(RoyaltyStatement.royalty_run_id == run_id)
        if status:
            stmt = stmt.where(RoyaltyStatement.status == status)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_statement(self, user: User, statement_id: str) -> tuple[RoyaltyStatement, list[RoyaltyLine]]:
        statement = await self._get_statement(statement_id)
        if not user.is_admin and statement.creator_id != await self._creator_id_for(user):
            raise PermissionDeniedError("Cannot view another creator's statement", code="statement.access_denied")

        result = await self.db.execute(
            select(RoyaltyLine)
            .where(RoyaltyLine.royalty_statement_id == statement_id)
            .order_by(RoyaltyLine.line_type, RoyaltyLine.id)
        )
        return statement, list(result.scalars().all())

    async def review_statement(self, statement_id: str) -> RoyaltyStatement:
        statement = await self._get_statement(statement_id)
        if statement.status != RoyaltyStatementStatus.PENDING:
            raise ConflictError(
                f"Statement in status {statement.status.value} cannot be reviewed",
                code="statement.invalid_status",
            )
        statement.status = RoyaltyStatementStatus.REVIEWED
        statement.reviewed_at = utc_now()
        await self.db.flush()

        await self._notify_creator(
            statement.creator_id,
            "Royalty statement reviewed",
            "Your royalty statement has been reviewed",
            statement.id,
        )
        return statement

    async def dispute_statement(self, user: User, statement_id: str, reason: str) -> RoyaltyStatement:
        if not reason or len(reason.strip()) < MIN_DISPUTE_REASON_LENGTH:
            raise ValidationError(f"Dispute reason must be at least {MIN_DISPUTE_REASON_LENGTH} characters")

        statement = await self._get_statement(statement_id)
        if not user.is_admin and statement.creator_id != await self._creator_id_for(user):
            raise PermissionDeniedError("Cannot dispute another creator's statement")
        self._ensure_not_carried(statement)
        if statement.status not in DISPUTABLE_STATUSES:
            raise ConflictError(
                f"Statement in status {statement.status.value} cannot be disputed",
                code="statement.invalid_status",
            )

        statement.status = RoyaltyStatementStatus.DISPUTED
        statement.disputed_at = utc_now()
        statement.dispute_reason = reason.strip()
        await self.db.flush()

        logger.info("royalty_statement_disputed", statement_id=statement.id, user_id=user.id)
        await self._notify_creator(
            statement.creator_id,
            "Dispute received",
            "Your dispute has been submitted and will be reviewed",
            statement.id,
            priority=NotificationPriority.HIGH,
        )
        return statement

    async def resolve_dispute(
        self,
        user: User,
        statement_id: str,
        resolution: str,
        adjustment_cents: int = 0,
    ) -> RoyaltyStatement:
        if not resolution or not resolution.strip():
            raise ValidationError("A resolution is required")

        statement = await self._get_statement(statement_id)
        if statement.status != RoyaltyStatementStatus.DISPUTED:
            raise ConflictError("Only disputed statements can be resolved", code="statement.invalid_status")
        self._ensure_not_carried(statement)
        if statement.total_earnings_cents + adjustment_cents < 0:
            raise ValidationError("Adjustment would make the statement negative")

        self.db.add(RoyaltyLine(
            royalty_statement_id=statement.id,
            line_type=RoyaltyLineType.DISPUTE_RESOLUTION,
            calculated_royalty_cents=adjustment_cents,
            description=resolution.strip(),
            metadata_={"resolved_by": user.id},
        ))
        statement.total_earnings_cents += adjustment_cents
        statement.status = RoyaltyStatementStatus.RESOLVED
        statement.resolution = resolution.strip()
        if adjustment_cents:
            run = await self.get_run(statement.royalty_run_id)
            run.total_royalties_cents += adjustment_cents
        await self.db.flush()

        logger.info(
            "royalty_dispute_resolved",
            statement_id=statement.id,
            adjustment_cents=adjustment_cents,
        )
        await self._notify_creator(
            statement.creator_id,
            "Dispute resolved",
            resolution.strip(),
            statement.id,
            priority=NotificationPriority.HIGH,
        )
        return statement

    async def creator_earnings_summary(self, creator_id: str) -> dict[str, Any]:
        result = await self.db.execute(
            select(RoyaltyStatement, RoyaltyRun)
            .join(RoyaltyRun, RoyaltyRun.id == RoyaltyStatement.royalty_run_id)
            .where(RoyaltyStatement.creator_id == creator_id)
            .order_by(RoyaltyRun.period_start.desc())
        )
        rows = result.all()

        lifetime = paid = 0
        by_run = []
        for statement, run in rows:
            by_run.append({
                "run_id": run.id,
                "period": period_display_name(run.period_start, run.period_end),
                "statement_id": statement.id,
                "status": statement.status.value,
                "total_earnings_cents": statement.total_earnings_cents,
            })
            # Carried balances are counted in the statement that absorbed them
            if statement.carried_into_statement_id:
                continue
            lifetime += statement.total_earnings_cents
            if statement.status == RoyaltyStatementStatus.PAID:
                paid += statement.total_earnings_cents

        return {
            "creator_id": creator_id,
            "lifetime_earnings_cents": lifetime,
            "paid_cents": paid,
            "pending_cents": lifetime - paid,
            "by_run": by_run,
        }
