"""
Organization budget checks backed by organization_billing.

Admission locks the billing row, checks committed spend (actual + pending
reservations) plus the new estimate against the daily then monthly limit,
and reserves the estimate in the same transaction. Reservations move to
actual spend as items complete and are released when items are cancelled or
dead-lettered.
"""

from typing import Optional

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from engine_orchestrator.models.tables import OrganizationBilling
from engine_orchestrator.schemas.batches import BudgetCheck

logger = structlog.get_logger(__name__)


async def get_billing(
    session: AsyncSession,
    organization_id: str,
    lock: bool = False,
) -> Optional[OrganizationBilling]:
    stmt = select(OrganizationBilling).where(OrganizationBilling.organization_id == organization_id)
    if lock:
        stmt = stmt.with_for_update()
    return (await session.execute(stmt)).scalar_one_or_none()


def _percentage(usage: float, limit: float) -> float:
    return round(usage / limit * 100, 2) if limit else 100.0


async def check_budget(
    session: AsyncSession,
    organization_id: Optional[str],
    estimated_cost: float,
    lock: bool = True,
) -> BudgetCheck:
    """Would `estimated_cost` more spend stay within the organization's limits?"""
    if organization_id is None:
        return BudgetCheck(allowed=True)

    billing = await get_billing(session, organization_id, lock=lock)
    if billing is None:
        return BudgetCheck(allowed=True)

    committed_day = billing.current_day_cost + billing.pending_cost
    if billing.daily_cost_limit is not None and committed_day + estimated_cost > billing.daily_cost_limit:
        return BudgetCheck(
            allowed=False,
            reason="Daily budget limit exceeded",
            current_usage=round(committed_day, 6),
            limit=billing.daily_cost_limit,
            usage_percentage=_percentage(committed_day, billing.daily_cost_limit),
        )

    committed_month = billing.current_month_cost + billing.pending_cost
    if billing.monthly_cost_limit is not None and committed_month + estimated_cost > billing.monthly_cost_limit:
        return BudgetCheck(
            allowed=False,
            reason="Monthly budget limit exceeded",
            current_usage=round(committed_month, 6),
            limit=billing.monthly_cost_limit,
            usage_percentage=_percentage(committed_month, billing.monthly_cost_limit),
        )

    return BudgetCheck(
        allowed=True,
        current_usage=round(committed_month, 6),
        limit=billing.monthly_cost_limit,
        usage_percentage=(
            _percentage(committed_month, billing.monthly_cost_limit) if billing.monthly_cost_limit else 0.0
        ),
    )


async def reserve_budget(session: AsyncSession, organization_id: Optional[str], amount: float) -> None:
    if organization_id is None or amount <= 0:
        return
    await session.execute(
        update(OrganizationBilling)
        .where(OrganizationBilling.organization_id == organization_id)
        .values(pending_cost=OrganizationBilling.pending_cost + amount)
    )


async def release_reservation(session: AsyncSession, organization_id: Optional[str], amount: float) -> None:
    if organization_id is None or amount <= 0:
        return
    remaining = OrganizationBilling.pending_cost - amount
    await session.execute(
        update(OrganizationBilling)
        .where(OrganizationBilling.organization_id == organization_id)
        .values(pending_cost=case((remaining < 0, 0), else_=remaining))
    )


async def record_spend(session: AsyncSession, organization_id: Optional[str], amount: float) -> None:
    """Move a completed item's reserved cost into actual spend."""
    if organization_id is None:
        return
    remaining = OrganizationBilling.pending_cost - amount
    await session.execute(
        update(OrganizationBilling)
        .where(OrganizationBilling.organization_id == organization_id)
        .values(
            pending_cost=case((remaining < 0, 0), else_=remaining),
            current_day_cost=OrganizationBilling.current_day_cost + amount,
            current_month_cost=OrganizationBilling.current_month_cost + amount,
            current_month_jobs=OrganizationBilling.current_month_jobs + 1,
        )
    )
