"""Redemption ledger: membership usage and package credit consumption."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict

from .exceptions import (
    CUSTOMER_PACKAGE_NOT_FOUND,
    INSUFFICIENT_CREDITS,
    INSUFFICIENT_VALUE,
    INVALID_DISCOUNT_AMOUNT,
    INVALID_REDEMPTION_AMOUNT,
    INVOICE_NOT_FOUND,
    MEMBERSHIP_NOT_FOUND,
    SERVICE_NOT_IN_PACKAGE,
    BadRequestError,
    NotFoundError,
)
from .lifecycle import PackageAction, advance_package
from .models import (
    BenefitAuditEvent,
    BenefitAuditEventType,
    BenefitType,
    CustomerPackage,
    MembershipStatus,
    MembershipUsage,
    PackageCredit,
    PackageRedemption,
    PackageStatus,
    to_money,
)
from .policy import PolicyStore
from .store import (
    BenefitCatalog,
    BenefitEventLogger,
    BenefitNotifier,
    BenefitRepository,
    Clock,
    current_time,
    run_in_transaction,
)

logger = logging.getLogger(__name__)

# Exhausted packages still reach the balance checks so callers get a
# credit error instead of a missing package.
_REDEEMABLE_STATUSES = frozenset({PackageStatus.ACTIVE, PackageStatus.EXHAUSTED})


class RedemptionResult(BaseModel):
    redemption: PackageRedemption
    customer_package: CustomerPackage
    locked_price: Decimal
    credit: Optional[PackageCredit] = None
    exhausted: bool = False

    model_config = ConfigDict(frozen=True)


@dataclass
class RedemptionLedger:
    """Applies resolved benefits to invoice lines as single atomic units."""

    repository: BenefitRepository
    catalog: BenefitCatalog
    policy: PolicyStore
    event_logger: BenefitEventLogger
    notifier: BenefitNotifier
    clock: Optional[Clock] = None
    transaction_attempts: int = 2

    def _invoice_branch(self, tenant_id: str, invoice_id: str) -> str:
        branch_id = self.catalog.get_invoice_branch(tenant_id, invoice_id)
        if branch_id is None:
            raise NotFoundError(code=INVOICE_NOT_FOUND, message="Invoice not found")
        return branch_id

    def apply_membership_discount(
        self,
        tenant_id: str,
        *,
        membership_id: str,
        invoice_id: str,
        service_name: str,
        original_amount: Decimal,
        discount_amount: Decimal,
        benefit_type: BenefitType,
        invoice_item_id: Optional[str] = None,
        service_id: Optional[str] = None,
        is_complimentary: bool = False,
        complimentary_benefit_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> MembershipUsage:
        original = to_money(original_amount)
        discount = to_money(discount_amount)
        if original < 0 or discount < 0 or discount > original:
            raise BadRequestError(
                code=INVALID_DISCOUNT_AMOUNT,
                message="Discount must be between zero and the original amount",
                detail={"original_amount": str(original), "discount_amount": str(discount)},
            )
        branch_id = self._invoice_branch(tenant_id, invoice_id)
        now = current_time(self.clock)
        today = now.date()

        def work(tx: BenefitRepository) -> MembershipUsage:
            membership = tx.get_membership(tenant_id, membership_id, for_update=True)
            if (
                membership is None
                or membership.status != MembershipStatus.ACTIVE
                or membership.current_expiry_date < today
            ):
                raise NotFoundError(code=MEMBERSHIP_NOT_FOUND, message="Active membership not found")

            usage = tx.insert_usage(
                MembershipUsage(
                    id=uuid4().hex,
                    tenant_id=tenant_id,
                    membership_id=membership.id,
                    usage_date=today,
                    usage_branch_id=branch_id,
                    invoice_id=invoice_id,
                    invoice_item_id=invoice_item_id,
                    service_id=service_id,
                    service_name=service_name,
                    benefit_type=benefit_type,
                    original_amount=original,
                    discount_amount=discount,
                    final_amount=original - discount,
                    is_complimentary=is_complimentary,
                    complimentary_benefit_id=complimentary_benefit_id,
                    created_by=created_by,
                    created_at=now,
                )
            )
            tx.update_membership(
                membership.model_copy(
                    update={
                        "total_visits": membership.total_visits + 1,
                        "total_discount_availed": to_money(membership.total_discount_availed + discount),
                        "last_visit_date": today,
                        "last_visit_branch_id": branch_id,
                        "updated_at": now,
                    }
                )
            )
            return usage

        usage = run_in_transaction(self.repository, work, attempts=self.transaction_attempts)
        self.event_logger.log(
            BenefitAuditEvent(
                event_type=BenefitAuditEventType.MEMBERSHIP_DISCOUNT_APPLIED,
                tenant_id=tenant_id,
                subject_id=membership_id,
                actor_id=created_by,
                metadata={
                    "invoice_id": invoice_id,
                    "benefit_type": benefit_type.value,
                    "discount_amount": str(discount),
                },
                occurred_at=now,
            )
        )
        return usage

    def redeem_package_credits(
        self,
        tenant_id: str,
        *,
        customer_package_id: str,
        invoice_id: str,
        service_id: str,
        service_name: str,
        invoice_item_id: Optional[str] = None,
        credits_to_use: Optional[int] = None,
        value_to_use: Optional[Decimal] = None,
        stylist_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> RedemptionResult:
        """Consume value or service credits from a customer package.

        The ledger row, the balance decrement and any exhaustion flip commit
        together or not at all.
        """

        credits_requested = 1 if credits_to_use is None else credits_to_use
        if credits_requested < 1:
            raise BadRequestError(code=INVALID_REDEMPTION_AMOUNT, message="Credits to use must be at least 1")
        value_requested = to_money(value_to_use) if value_to_use is not None else None
        if value_requested is not None and value_requested <= 0:
            raise BadRequestError(code=INVALID_REDEMPTION_AMOUNT, message="Value to use must be positive")

        branch_id = self._invoice_branch(tenant_id, invoice_id)
        threshold = self.policy.get_config(tenant_id).low_balance_threshold
        now = current_time(self.clock)
        today = now.date()

        def work(tx: BenefitRepository) -> RedemptionResult:
            customer_package = tx.get_customer_package(tenant_id, customer_package_id, for_update=True)
            if (
                customer_package is None
                or customer_package.status not in _REDEEMABLE_STATUSES
                or customer_package.expiry_date < today
            ):
                raise NotFoundError(code=CUSTOMER_PACKAGE_NOT_FOUND, message="Active customer package not found")

            base = {
                "id": uuid4().hex,
                "tenant_id": tenant_id,
                "customer_package_id": customer_package.id,
                "redemption_date": today,
                "redemption_branch_id": branch_id,
                "invoice_id": invoice_id,
                "invoice_item_id": invoice_item_id,
                "service_id": service_id,
                "service_name": service_name,
                "stylist_id": stylist_id,
                "created_by": created_by,
                "created_at": now,
            }
            counters = {
                "total_redemptions": customer_package.total_redemptions + 1,
                "last_redemption_date": today,
                "last_redemption_branch_id": branch_id,
                "updated_at": now,
            }

            if customer_package.is_value_package:
                return self._redeem_value(tx, customer_package, value_requested, base, counters)
            return self._redeem_credits(tx, customer_package, service_id, credits_requested, base, counters)

        result = run_in_transaction(self.repository, work, attempts=self.transaction_attempts)
        customer_package = result.customer_package
        self.event_logger.log(
            BenefitAuditEvent(
                event_type=BenefitAuditEventType.PACKAGE_CREDITS_REDEEMED,
                tenant_id=tenant_id,
                subject_id=customer_package.id,
                actor_id=created_by,
                metadata={
                    "invoice_id": invoice_id,
                    "service_id": service_id,
                    "locked_price": str(result.locked_price),
                },
                occurred_at=now,
            )
        )
        if result.credit is not None and 0 < result.credit.remaining_credits <= threshold:
            self.notifier.notify_low_balance(customer_package, result.credit)
        if result.exhausted:
            logger.info("Package %s exhausted", customer_package.package_number)
            self.notifier.notify_package_exhausted(customer_package)
            self.event_logger.log(
                BenefitAuditEvent(
                    event_type=BenefitAuditEventType.PACKAGE_EXHAUSTED,
                    tenant_id=tenant_id,
                    subject_id=customer_package.id,
                    actor_id=created_by,
                    occurred_at=now,
                )
            )
        return result

    @staticmethod
    def _redeem_value(
        tx: BenefitRepository,
        customer_package: CustomerPackage,
        value_to_use: Optional[Decimal],
        base: dict,
        counters: dict,
    ) -> RedemptionResult:
        if value_to_use is None:
            raise BadRequestError(code=INVALID_REDEMPTION_AMOUNT, message="Value to use is required for value packages")
        remaining = to_money(customer_package.remaining_credit_value)
        if value_to_use > remaining:
            raise BadRequestError(
                code=INSUFFICIENT_VALUE,
                message=f"Insufficient package value. Available: {remaining}, Requested: {value_to_use}",
                detail={"available": str(remaining), "requested": str(value_to_use)},
            )

        redemption = tx.insert_redemption(
            PackageRedemption(**base, value_used=value_to_use, locked_price=value_to_use)
        )
        updated = tx.update_customer_package(
            customer_package.model_copy(
                update={
                    **counters,
                    "remaining_credit_value": remaining - value_to_use,
                    "total_redeemed_value": to_money(customer_package.total_redeemed_value + value_to_use),
                }
            )
        )
        return RedemptionResult(redemption=redemption, customer_package=updated, locked_price=value_to_use)

    @staticmethod
    def _redeem_credits(
        tx: BenefitRepository,
        customer_package: CustomerPackage,
        service_id: str,
        credits_to_use: int,
        base: dict,
        counters: dict,
    ) -> RedemptionResult:
        credits = tx.list_package_credits(customer_package.tenant_id, customer_package.id, for_update=True)
        credit = next((row for row in credits if row.service_id == service_id), None)
        if credit is None:
            raise BadRequestError(code=SERVICE_NOT_IN_PACKAGE, message="This service is not included in the package")
        if credit.remaining_credits < credits_to_use:
            raise BadRequestError(
                code=INSUFFICIENT_CREDITS,
                message=f"Insufficient credits. Available: {credit.remaining_credits}, Requested: {credits_to_use}",
                detail={"available": credit.remaining_credits, "requested": credits_to_use},
            )

        redemption = tx.insert_redemption(
            PackageRedemption(
                **base,
                package_credit_id=credit.id,
                credits_used=credits_to_use,
                locked_price=credit.locked_price,
            )
        )
        updated_credit = tx.update_package_credit(
            credit.model_copy(update={"remaining_credits": credit.remaining_credits - credits_to_use})
        )

        update = {
            **counters,
            "total_redeemed_value": to_money(
                customer_package.total_redeemed_value + credit.locked_price * credits_to_use
            ),
        }
        remaining_rows = tx.list_package_credits(customer_package.tenant_id, customer_package.id)
        exhausted = all(row.remaining_credits == 0 for row in remaining_rows)
        if exhausted:
            update["status"] = advance_package(customer_package.status, PackageAction.EXHAUST)
        updated = tx.update_customer_package(customer_package.model_copy(update=update))
        return RedemptionResult(
            redemption=redemption,
            customer_package=updated,
            locked_price=credit.locked_price,
            credit=updated_credit,
            exhausted=exhausted,
        )
