"""Subscription plan registry."""
import uuid
from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from payment_systems.database.models import Subscription, SubscriptionPlan

from .enums import BillingInterval, PlanStatus
from .exceptions import ConflictError, NotFoundError, PaymentValidationError
from .types import CreatePlanRequest, UpdatePlanRequest
from .validation import check_amount, check_currency

logger = structlog.get_logger(__name__)


class PlanRegistry:
    """
    Catalogue of subscription plans.

    Amount, currency and cadence are fixed once a plan exists so that
    subscriptions already billing against it never change price.
    """

    async def create_plan(self, request: CreatePlanRequest, db: AsyncSession) -> SubscriptionPlan:
        """
        Create a plan.

        Raises:
            PaymentValidationError: If pricing or cadence is invalid
            ConflictError: If a plan with the same name exists
        """
        amount = check_amount(request.amount).require()
        check_currency(request.currency).require()
        if request.billing_interval_count < 1:
            raise PaymentValidationError("Billing interval count must be at least 1")
        if request.trial_period_days is not None and request.trial_period_days < 0:
            raise PaymentValidationError("Trial period cannot be negative")
        if request.max_billing_cycles is not None and request.max_billing_cycles < 1:
            raise PaymentValidationError("Max billing cycles must be at least 1")
        if request.setup_fee is not None and request.setup_fee < 0:
            raise PaymentValidationError("Setup fee cannot be negative")

        if await self.get_plan_by_name(request.name, db) is not None:
            raise ConflictError(f"Plan with name '{request.name}' already exists")

        plan = SubscriptionPlan(
            id=uuid.uuid4(),
            name=request.name,
            description=request.description,
            amount=amount,
            currency=request.currency.upper(),
            billing_interval=BillingInterval(request.billing_interval),
            billing_interval_count=request.billing_interval_count,
            trial_period_days=request.trial_period_days or None,
            max_billing_cycles=request.max_billing_cycles,
            setup_fee=request.setup_fee,
            status=PlanStatus.ACTIVE,
            is_active=True,
            metadata_json=dict(request.metadata) or None,
        )
        db.add(plan)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            raise ConflictError(f"Plan with name '{request.name}' already exists")

        logger.info(
            "plan_created",
            plan_id=str(plan.id),
            name=plan.name,
            amount=str(plan.amount),
            billing_interval=plan.billing_interval.value,
        )
        return plan

    async def list_plans(
        self,
        db: AsyncSession,
        active_only: bool = False,
        status: Optional[PlanStatus] = None,
    ) -> List[SubscriptionPlan]:
        stmt = select(SubscriptionPlan).order_by(SubscriptionPlan.created_at)
        if active_only:
            stmt = stmt.where(SubscriptionPlan.is_active.is_(True))
        if status is not None:
            stmt = stmt.where(SubscriptionPlan.status == status)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def get_plan(self, plan_id: uuid.UUID, db: AsyncSession) -> SubscriptionPlan:
        plan = await db.get(SubscriptionPlan, plan_id)
        if plan is None:
            raise NotFoundError(f"Subscription plan {plan_id} not found")
        return plan

    async def get_plan_by_name(self, name: str, db: AsyncSession) -> Optional[SubscriptionPlan]:
        result = await db.execute(select(SubscriptionPlan).where(SubscriptionPlan.name == name))
        return result.scalar_one_or_none()

    async def update_plan(
        self, plan_id: uuid.UUID, request: UpdatePlanRequest, db: AsyncSession
    ) -> SubscriptionPlan:
        """Update descriptive fields. Metadata is merged into the existing mapping."""
        plan = await self.get_plan(plan_id, db)
        if request.description is not None:
            plan.description = request.description
        if request.metadata is not None:
            plan.metadata_json = {**(plan.metadata_json or {}), **request.metadata}
        await db.commit()
        logger.info("plan_updated", plan_id=str(plan.id))
        return plan

    async def deactivate_plan(self, plan_id: uuid.UUID, db: AsyncSession) -> SubscriptionPlan:
        """Stop offering a plan. Existing subscriptions keep billing."""
        return await self._set_status(plan_id, PlanStatus.INACTIVE, db)

    async def archive_plan(self, plan_id: uuid.UUID, db: AsyncSession) -> SubscriptionPlan:
        return await self._set_status(plan_id, PlanStatus.ARCHIVED, db)

    async def delete_plan(self, plan_id: uuid.UUID, db: AsyncSession) -> None:
        """
        Delete a plan that no subscription references.

        Raises:
            NotFoundError: If the plan does not exist
            ConflictError: If any subscription references the plan
        """
        plan = await self.get_plan(plan_id, db)
        in_use = await db.scalar(
            select(func.count()).select_from(Subscription).where(Subscription.plan_id == plan_id)
        )
        if in_use:
            raise ConflictError(
                f"Plan {plan_id} is referenced by {in_use} subscription(s); archive it instead"
            )
        await db.delete(plan)
        await db.commit()
        logger.info("plan_deleted", plan_id=str(plan_id))

    @staticmethod
    def is_plan_available(plan: SubscriptionPlan) -> bool:
        """Whether new subscriptions may be created on this plan."""
        return plan.is_active and plan.status == PlanStatus.ACTIVE

    async def _set_status(
        self, plan_id: uuid.UUID, status: PlanStatus, db: AsyncSession
    ) -> SubscriptionPlan:
        plan = await self.get_plan(plan_id, db)
        plan.status = status
        plan.is_active = False
        await db.commit()
        logger.info("plan_status_changed", plan_id=str(plan.id), status=status.value)
        return plan
