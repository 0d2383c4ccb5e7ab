"""Package lifecycle: sell, cancel, balances and expiry."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional
from uuid import uuid4

from .exceptions import (
    CUSTOMER_PACKAGE_NOT_FOUND,
    INVALID_PACKAGE_DEFINITION,
    PACKAGE_NOT_FOUND,
    BadRequestError,
    NotFoundError,
)
from .lifecycle import PACKAGE_TRANSITIONS, PackageAction, advance_package
from .models import (
    BenefitAuditEvent,
    BenefitAuditEventType,
    CreditBalance,
    CreditBalanceEntry,
    CustomerPackage,
    CustomerPackageDetail,
    Package,
    PackageCredit,
    PackageStatus,
    PaginatedResult,
    RefundPolicy,
    to_money,
)
from .numbering import DEFAULT_TENANT_CODE, NumberedEntity, allocate_number
from .periods import add_validity, apply_refund_policy, prorated_refund
from .policy import PolicyStore
from .sales import price_sale, require_branch, require_customer, resolve_tenant_code
from .store import BenefitCatalog, BenefitEventLogger, BenefitRepository, Clock, current_time, run_in_transaction

logger = logging.getLogger(__name__)

OPEN_PACKAGE_STATUSES = (PackageStatus.ACTIVE, PackageStatus.PENDING)


def _not_found() -> NotFoundError:
    return NotFoundError(code=CUSTOMER_PACKAGE_NOT_FOUND, message="Customer package not found")


def _validate_definition(package: Package) -> None:
    if package.is_value_package:
        if package.credit_value is None or package.credit_value <= 0:
            raise BadRequestError(
                code=INVALID_PACKAGE_DEFINITION,
                message="Value package must define a positive credit value",
            )
    elif not package.services:
        raise BadRequestError(
            code=INVALID_PACKAGE_DEFINITION,
            message="Service package must include at least one service",
        )


def cancellation_refund(
    customer_package: CustomerPackage,
    policy: RefundPolicy,
    cancellation_fee_percentage: Decimal,
    today: date,
) -> Decimal:
    """Refund owed when cancelling ``customer_package`` on ``today``.

    Value packages return their unspent balance. Service and combo packages
    are prorated by day over the validity window on the price paid.
    """

    if customer_package.is_value_package:
        ceiling = to_money(customer_package.remaining_credit_value or 0)
        gross = ceiling
    else:
        ceiling = to_money(customer_package.price_paid)
        gross = prorated_refund(
            customer_package.price_paid,
            customer_package.activation_date,
            customer_package.expiry_date,
            today,
        )
    refund = apply_refund_policy(gross, policy, cancellation_fee_percentage)
    return min(refund, ceiling)


@dataclass
class PackageLifecycleService:
    """Coordinates package sales, credit materialisation and cancellation."""

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
        customer_package: CustomerPackage,
        *,
        actor_id: Optional[str] = None,
        **metadata: object,
    ) -> None:
        self.event_logger.log(
            BenefitAuditEvent(
                event_type=event_type,
                tenant_id=customer_package.tenant_id,
                subject_id=customer_package.id,
                actor_id=actor_id,
                metadata={key: str(value) for key, value in metadata.items() if value is not None},
                occurred_at=current_time(self.clock),
            )
        )

    def sell_package(
        self,
        tenant_id: str,
        *,
        customer_id: str,
        package_id: str,
        branch_id: str,
        activation_date: Optional[date] = None,
        staff_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> CustomerPackageDetail:
        require_customer(self.catalog, tenant_id, customer_id)
        package = self.catalog.get_package(tenant_id, package_id)
        if package is None:
            raise NotFoundError(code=PACKAGE_NOT_FOUND, message="Package not found or inactive")
        require_branch(package, branch_id, label="package")
        _validate_definition(package)

        now = current_time(self.clock)
        activation = activation_date or now.date()
        expiry = add_validity(activation, package.validity)
        amounts = price_sale(package, staff_id)
        code = resolve_tenant_code(self.catalog, tenant_id, self.default_tenant_code)
        credit_value = to_money(package.credit_value) if package.is_value_package else None

        def work(tx: BenefitRepository) -> CustomerPackageDetail:
            number = allocate_number(
                tx,
                tenant_id=tenant_id,
                entity=NumberedEntity.PACKAGE,
                code=code,
                when=now,
            )
            customer_package = tx.insert_customer_package(
                CustomerPackage(
                    id=uuid4().hex,
                    tenant_id=tenant_id,
                    customer_id=customer_id,
                    package_id=package.id,
                    package_type=package.package_type,
                    package_number=number,
                    purchase_date=now.date(),
                    purchase_branch_id=branch_id,
                    price_paid=amounts.price_paid,
                    gst_paid=amounts.gst_paid,
                    total_paid=amounts.total_paid,
                    initial_credit_value=credit_value,
                    remaining_credit_value=credit_value,
                    activation_date=activation,
                    expiry_date=expiry,
                    status=PackageStatus.ACTIVE,
                    sale_commission_amount=amounts.commission,
                    sale_commission_staff_id=staff_id if amounts.commission is not None else None,
                    created_by=created_by,
                    created_at=now,
                    updated_at=now,
                )
            )
            credits: List[PackageCredit] = []
            if not package.is_value_package:
                # Prices are locked at sale time and never re-derived from the catalog.
                credits = tx.insert_package_credits(
                    [
                        PackageCredit(
                            id=uuid4().hex,
                            tenant_id=tenant_id,
                            customer_package_id=customer_package.id,
                            package_service_id=service.id,
                            service_id=service.service_id,
                            initial_credits=service.credit_count,
                            remaining_credits=service.credit_count,
                            locked_price=to_money(service.locked_price),
                        )
                        for service in package.services
                    ]
                )
            return CustomerPackageDetail(customer_package=customer_package, package=package, credits=credits)

        detail = run_in_transaction(self.repository, work, attempts=self.transaction_attempts)
        customer_package = detail.customer_package
        logger.info("Sold package %s to customer %s", customer_package.package_number, customer_id)
        self._emit(
            BenefitAuditEventType.PACKAGE_SOLD,
            customer_package,
            actor_id=created_by,
            package_id=package.id,
            package_number=customer_package.package_number,
            total_paid=customer_package.total_paid,
        )
        return detail

    def cancel_package(
        self,
        tenant_id: str,
        customer_package_id: str,
        *,
        reason: Optional[str] = None,
        cancelled_by: Optional[str] = None,
    ) -> CustomerPackage:
        config = self.policy.get_config(tenant_id)
        now = current_time(self.clock)

        def work(tx: BenefitRepository) -> CustomerPackage:
            customer_package = tx.get_customer_package(tenant_id, customer_package_id, for_update=True)
            if customer_package is None:
                raise _not_found()
            status = advance_package(customer_package.status, PackageAction.CANCEL)
            refund = cancellation_refund(
                customer_package,
                config.refund_policy,
                config.cancellation_fee_percentage,
                now.date(),
            )
            return tx.update_customer_package(
                customer_package.model_copy(
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

        customer_package = run_in_transaction(self.repository, work, attempts=self.transaction_attempts)
        logger.info(
            "Cancelled package %s with refund %s",
            customer_package.package_number,
            customer_package.refund_amount,
        )
        self._emit(
            BenefitAuditEventType.PACKAGE_CANCELLED,
            customer_package,
            actor_id=cancelled_by,
            refund_amount=customer_package.refund_amount,
            reason=reason,
        )
        return customer_package

    def get_customer_package(self, tenant_id: str, customer_package_id: str) -> CustomerPackageDetail:
        customer_package = self.repository.get_customer_package(tenant_id, customer_package_id)
        if customer_package is None:
            raise _not_found()
        _, redemption_count = self.repository.list_redemptions(tenant_id, customer_package.id, limit=0)
        return CustomerPackageDetail(
            customer_package=customer_package,
            package=self.catalog.get_package(tenant_id, customer_package.package_id, active_only=False),
            credits=self.repository.list_package_credits(tenant_id, customer_package.id),
            redemption_count=redemption_count,
        )

    def list_customer_packages(self, tenant_id: str, customer_id: str) -> List[CustomerPackage]:
        """Active and pending packages, soonest expiry first."""

        return self.repository.list_customer_packages(tenant_id, customer_id, OPEN_PACKAGE_STATUSES)

    def get_credit_balance(self, tenant_id: str, customer_package_id: str) -> CreditBalance:
        customer_package = self.repository.get_customer_package(tenant_id, customer_package_id)
        if customer_package is None:
            raise _not_found()

        if customer_package.is_value_package:
            initial = to_money(customer_package.initial_credit_value)
            remaining = to_money(customer_package.remaining_credit_value)
            return CreditBalance(
                customer_package_id=customer_package.id,
                package_type=customer_package.package_type,
                initial_value=initial,
                remaining_value=remaining,
                used_value=to_money(initial - remaining),
            )

        entries = [
            CreditBalanceEntry(
                service_id=credit.service_id,
                initial_credits=credit.initial_credits,
                remaining_credits=credit.remaining_credits,
                used_credits=credit.initial_credits - credit.remaining_credits,
                locked_price=credit.locked_price,
            )
            for credit in self.repository.list_package_credits(tenant_id, customer_package.id)
        ]
        return CreditBalance(
            customer_package_id=customer_package.id,
            package_type=customer_package.package_type,
            credits=entries,
            total_initial_credits=sum(entry.initial_credits for entry in entries),
            total_remaining_credits=sum(entry.remaining_credits for entry in entries),
        )

    def list_redemptions(
        self,
        tenant_id: str,
        customer_package_id: str,
        *,
        page: int = 1,
        limit: int = 20,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> PaginatedResult:
        if self.repository.get_customer_package(tenant_id, customer_package_id) is None:
            raise _not_found()
        page = max(1, page)
        items, total = self.repository.list_redemptions(
            tenant_id,
            customer_package_id,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            offset=(page - 1) * limit,
        )
        return PaginatedResult(items=items, page=page, limit=limit, total=total)

    def expire_lapsed(self, tenant_id: str) -> List[CustomerPackage]:
        """Move active packages past their expiry date to ``expired``."""

        now = current_time(self.clock)
        today = now.date()
        expirable, _ = PACKAGE_TRANSITIONS[PackageAction.EXPIRE]

        def work(tx: BenefitRepository) -> List[CustomerPackage]:
            expired: List[CustomerPackage] = []
            for customer_package in tx.list_lapsed_packages(tenant_id, today):
                locked = tx.get_customer_package(tenant_id, customer_package.id, for_update=True)
                if locked is None or locked.status not in expirable or locked.expiry_date >= today:
                    continue
                status = advance_package(locked.status, PackageAction.EXPIRE)
                expired.append(
                    tx.update_customer_package(locked.model_copy(update={"status": status, "updated_at": now}))
                )
            return expired

        expired = run_in_transaction(self.repository, work, attempts=self.transaction_attempts)
        for customer_package in expired:
            self._emit(BenefitAuditEventType.PACKAGE_EXPIRED, customer_package)
        if expired:
            logger.info("Expired %s lapsed packages for tenant %s", len(expired), tenant_id)
        return expired
