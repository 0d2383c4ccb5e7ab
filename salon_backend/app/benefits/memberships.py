"""Membership lifecycle: sell, freeze, unfreeze, cancel and expiry."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Optional
from uuid import uuid4

from .exceptions import (
    FREEZE_LIMIT_EXCEEDED,
    INVALID_DATE_RANGE,
    MEMBERSHIP_EXISTS,
    MEMBERSHIP_NOT_FOUND,
    NO_ACTIVE_FREEZE,
    PLAN_NOT_FOUND,
    BadRequestError,
    NotFoundError,
)
from .lifecycle import MembershipAction, advance_membership, can_transition_membership
from .models import (
    BenefitAuditEvent,
    BenefitAuditEventType,
    CustomerMembership,
    FreezeResult,
    FreezeStatus,
    MembershipDetail,
    MembershipFreeze,
    MembershipStatus,
    PaginatedResult,
    UnfreezeResult,
    to_money,
)
from .numbering import DEFAULT_TENANT_CODE, NumberedEntity, allocate_number
from .periods import add_validity, apply_refund_policy, days_between, inclusive_days, prorated_refund
from .policy import PolicyStore
from .sales import price_sale, require_branch, require_customer, resolve_tenant_code
from .store import BenefitCatalog, BenefitEventLogger, BenefitRepository, Clock, current_time, run_in_transaction

logger = logging.getLogger(__name__)

OPEN_MEMBERSHIP_STATUSES = (MembershipStatus.ACTIVE, MembershipStatus.FROZEN)


def _not_found() -> NotFoundError:
    return NotFoundError(code=MEMBERSHIP_NOT_FOUND, message="Membership not found")


def _close_freeze(freeze: MembershipFreeze, status: FreezeStatus, today: date) -> MembershipFreeze:
    """Settle ``freeze`` as of ``today``; a freeze that never started records no end date."""

    elapsed = days_between(today, freeze.freeze_start_date) + 1
    actual = min(max(elapsed, 0), freeze.freeze_days)
    return freeze.model_copy(
        update={
            "status": status,
            "actual_end_date": min(today, freeze.freeze_end_date) if actual else None,
            "actual_freeze_days": actual,
        }
    )


@dataclass
class MembershipLifecycleService:
    """Coordinates membership sales and status changes against the store."""

    repository: BenefitRepository
    catalog: BenefitCatalog
    policy: PolicyStore
    event_logger: BenefitEventLogger
    clock: Optional[Clock] = None
    transaction_attempts: int = 2
    default_tenant_code: str = DEFAULT_TENANT_CODE

    def _emit(
        self,
        event_type: BenefitAuditEventType,
        membership: CustomerMembership,
        *,
        actor_id: Optional[str] = None,
        **metadata: object,
    ) -> None:
        self.event_logger.log(
            BenefitAuditEvent(
                event_type=event_type,
                tenant_id=membership.tenant_id,
                subject_id=membership.id,
                actor_id=actor_id,
                metadata={key: str(value) for key, value in metadata.items() if value is not None},
                occurred_at=current_time(self.clock),
            )
        )

    def sell_membership(
        self,
        tenant_id: str,
        *,
        customer_id: str,
        plan_id: str,
        branch_id: str,
        activation_date: Optional[date] = None,
        staff_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> CustomerMembership:
        require_customer(self.catalog, tenant_id, customer_id)
        plan = self.catalog.get_plan(tenant_id, plan_id)
        if plan is None:
            raise NotFoundError(code=PLAN_NOT_FOUND, message="Membership plan not found or inactive")
        require_branch(plan, branch_id, label="membership plan")

        now = current_time(self.clock)
        activation = activation_date or now.date()
        expiry = add_validity(activation, plan.validity)
        amounts = price_sale(plan, staff_id)
        code = resolve_tenant_code(self.catalog, tenant_id, self.default_tenant_code)

        def work(tx: BenefitRepository) -> CustomerMembership:
            if tx.find_open_membership(tenant_id, customer_id, plan_id) is not None:
                raise BadRequestError(
                    code=MEMBERSHIP_EXISTS,
                    message="Customer already has an active membership for this plan",
                )
            number = allocate_number(
                tx,
                tenant_id=tenant_id,
                entity=NumberedEntity.MEMBERSHIP,
                code=code,
                when=now,
            )
            membership = CustomerMembership(
                id=uuid4().hex,
                tenant_id=tenant_id,
                customer_id=customer_id,
                plan_id=plan_id,
                membership_number=number,
                purchase_date=now.date(),
                purchase_branch_id=branch_id,
                price_paid=amounts.price_paid,
                gst_paid=amounts.gst_paid,
                total_paid=amounts.total_paid,
                activation_date=activation,
                original_expiry_date=expiry,
                current_expiry_date=expiry,
                status=MembershipStatus.ACTIVE,
                sale_commission_amount=amounts.commission,
                sale_commission_staff_id=staff_id if amounts.commission is not None else None,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            return tx.insert_membership(membership)

        membership = run_in_transaction(self.repository, work, attempts=self.transaction_attempts)
        logger.info("Sold membership %s to customer %s", membership.membership_number, customer_id)
        self._emit(
            BenefitAuditEventType.MEMBERSHIP_SOLD,
            membership,
            actor_id=created_by,
            plan_id=plan_id,
            membership_number=membership.membership_number,
            total_paid=membership.total_paid,
        )
        return membership

    def freeze_membership(
        self,
        tenant_id: str,
        membership_id: str,
        *,
        freeze_start_date: date,
        freeze_end_date: date,
        reason_code: str,
        reason_description: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> FreezeResult:
        if freeze_end_date < freeze_start_date:
            raise BadRequestError(
                code=INVALID_DATE_RANGE,
                message="Freeze end date must not be before the start date",
            )
        freeze_days = inclusive_days(freeze_start_date, freeze_end_date)
        max_freeze_days = self.policy.get_config(tenant_id).max_freeze_days_per_year
        now = current_time(self.clock)

        def work(tx: BenefitRepository) -> FreezeResult:
            membership = tx.get_membership(tenant_id, membership_id, for_update=True)
            if membership is None:
                raise _not_found()
            status = advance_membership(membership.status, MembershipAction.FREEZE)

            used = membership.total_freeze_days_used
            if used + freeze_days > max_freeze_days:
                raise BadRequestError(
                    code=FREEZE_LIMIT_EXCEEDED,
                    message=(
                        f"Freeze would exceed the yearly limit of {max_freeze_days} days. "
                        f"Already used: {used} days"
                    ),
                    detail={"remaining_freeze_days": max(0, max_freeze_days - used)},
                )

            freeze = tx.insert_freeze(
                MembershipFreeze(
                    id=uuid4().hex,
                    tenant_id=tenant_id,
                    membership_id=membership.id,
                    freeze_start_date=freeze_start_date,
                    freeze_end_date=freeze_end_date,
                    freeze_days=freeze_days,
                    reason_code=reason_code,
                    reason_description=reason_description,
                    status=FreezeStatus.ACTIVE,
                    requested_by=requested_by,
                    approved_at=now,
                    approved_by=requested_by,
                    created_at=now,
                )
            )
            updated = tx.update_membership(
                membership.model_copy(
                    update={
                        "status": status,
                        "total_freeze_days_used": used + freeze_days,
                        "current_expiry_date": membership.current_expiry_date + timedelta(days=freeze_days),
                        "updated_at": now,
                    }
                )
            )
            return FreezeResult(
                membership=updated,
                freeze=freeze,
                remaining_freeze_days=max_freeze_days - updated.total_freeze_days_used,
            )

        result = run_in_transaction(self.repository, work, attempts=self.transaction_attempts)
        self._emit(
            BenefitAuditEventType.MEMBERSHIP_FROZEN,
            result.membership,
            actor_id=requested_by,
            freeze_days=freeze_days,
            current_expiry_date=result.membership.current_expiry_date.isoformat(),
        )
        return result

    def unfreeze_membership(
        self,
        tenant_id: str,
        membership_id: str,
        *,
        actor_id: Optional[str] = None,
    ) -> UnfreezeResult:
        """End the active freeze early and hand back the days not yet consumed.

        Days are counted inclusively up to today and clamped to the planned
        window, so unfreezing before the window starts restores the full
        budget and unfreezing after it ends restores nothing.
        """

        now = current_time(self.clock)
        today = now.date()

        def work(tx: BenefitRepository) -> UnfreezeResult:
            membership = tx.get_membership(tenant_id, membership_id, for_update=True)
            if membership is None:
                raise _not_found()
            status = advance_membership(membership.status, MembershipAction.UNFREEZE)

            freeze = tx.get_active_freeze(tenant_id, membership.id)
            if freeze is None:
                raise BadRequestError(code=NO_ACTIVE_FREEZE, message="No active freeze found")

            completed = tx.update_freeze(_close_freeze(freeze, FreezeStatus.COMPLETED, today))
            actual = completed.actual_freeze_days
            unused = freeze.freeze_days - actual
            updated = tx.update_membership(
                membership.model_copy(
                    update={
                        "status": status,
                        "total_freeze_days_used": max(0, membership.total_freeze_days_used - unused),
                        "current_expiry_date": membership.current_expiry_date - timedelta(days=unused),
                        "updated_at": now,
                    }
                )
            )
            return UnfreezeResult(
                membership=updated,
                freeze=completed,
                actual_freeze_days=actual,
                unused_freeze_days=unused,
            )

        result = run_in_transaction(self.repository, work, attempts=self.transaction_attempts)
        self._emit(
            BenefitAuditEventType.MEMBERSHIP_UNFROZEN,
            result.membership,
            actor_id=actor_id,
            actual_freeze_days=result.actual_freeze_days,
            unused_freeze_days=result.unused_freeze_days,
        )
        return result

    def cancel_membership(
        self,
        tenant_id: str,
        membership_id: str,
        *,
        reason: Optional[str] = None,
        cancelled_by: Optional[str] = None,
    ) -> CustomerMembership:
        config = self.policy.get_config(tenant_id)
        now = current_time(self.clock)

        def work(tx: BenefitRepository) -> CustomerMembership:
            membership = tx.get_membership(tenant_id, membership_id, for_update=True)
            if membership is None:
                raise _not_found()
            status = advance_membership(membership.status, MembershipAction.CANCEL)

            gross = prorated_refund(
                membership.price_paid,
                membership.activation_date,
                membership.original_expiry_date,
                now.date(),
            )
            refund = apply_refund_policy(gross, config.refund_policy, config.cancellation_fee_percentage)
            refund = min(refund, to_money(membership.price_paid))
            freeze = tx.get_active_freeze(tenant_id, membership.id)
            if freeze is not None:
                tx.update_freeze(_close_freeze(freeze, FreezeStatus.CANCELLED, now.date()))
            return tx.update_membership(
                membership.model_copy(
                    update={
                        "status": status,
                        "cancelled_at": now,
                        "cancelled_by": cancelled_by,
                        "cancellation_reason": reason,
                        "refund_amount": refund,
                        "updated_at": now,
                    }
                )
            )

        membership = run_in_transaction(self.repository, work, attempts=self.transaction_attempts)
        logger.info("Cancelled membership %s with refund %s", membership.membership_number, membership.refund_amount)
        self._emit(
            BenefitAuditEventType.MEMBERSHIP_CANCELLED,
            membership,
            actor_id=cancelled_by,
            refund_amount=membership.refund_amount,
            reason=reason,
        )
        return membership

    def get_membership(self, tenant_id: str, membership_id: str) -> MembershipDetail:
        membership = self.repository.get_membership(tenant_id, membership_id)
        if membership is None:
            raise _not_found()
        _, usage_count = self.repository.list_usage(tenant_id, membership.id, limit=0)
        return MembershipDetail(
            membership=membership,
            plan=self.catalog.get_plan(tenant_id, membership.plan_id, active_only=False),
            freezes=list(reversed(self.repository.list_freezes(tenant_id, membership.id))),
            usage_count=usage_count,
        )

    def list_customer_memberships(self, tenant_id: str, customer_id: str) -> List[CustomerMembership]:
        """Active and frozen memberships, soonest expiry first."""

        return self.repository.list_memberships(tenant_id, customer_id, OPEN_MEMBERSHIP_STATUSES)

    def list_usage(
        self,
        tenant_id: str,
        membership_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> PaginatedResult:
        if self.repository.get_membership(tenant_id, membership_id) is None:
            raise _not_found()
        page = max(1, page)
        items, total = self.repository.list_usage(
            tenant_id,
            membership_id,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return PaginatedResult(items=items, page=page, limit=limit, total=total)

    def expire_lapsed(self, tenant_id: str) -> List[CustomerMembership]:
        """Move active or frozen memberships past their current expiry to ``expired``."""

        now = current_time(self.clock)
        today = now.date()

        def work(tx: BenefitRepository) -> List[CustomerMembership]:
            expired: List[CustomerMembership] = []
            for membership in tx.list_lapsed_memberships(tenant_id, today):
                locked = tx.get_membership(tenant_id, membership.id, for_update=True)
                if locked is None or locked.current_expiry_date >= today:
                    continue
                if not can_transition_membership(locked.status, MembershipAction.EXPIRE):
                    continue
                status = advance_membership(locked.status, MembershipAction.EXPIRE)
                freeze = tx.get_active_freeze(tenant_id, locked.id)
                if freeze is not None:
                    tx.update_freeze(_close_freeze(freeze, FreezeStatus.COMPLETED, today))
                expired.append(tx.update_membership(locked.model_copy(update={"status": status, "updated_at": now})))
            return expired

        expired = run_in_transaction(self.repository, work, attempts=self.transaction_attempts)
        for membership in expired:
            self._emit(BenefitAuditEventType.MEMBERSHIP_EXPIRED, membership)
        if expired:
            logger.info("Expired %s lapsed memberships for tenant %s", len(expired), tenant_id)
        return expired
