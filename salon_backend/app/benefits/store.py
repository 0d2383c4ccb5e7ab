"""Persistence and collaborator interfaces required by the benefit engine."""
from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Callable, ContextManager, List, Optional, Protocol, Sequence, Tuple, TypeVar

from .exceptions import TRANSACTION_CONFLICT, ConflictError, TransactionConflictError
from .models import (
    BenefitAuditEvent,
    Customer,
    CustomerMembership,
    CustomerPackage,
    MembershipConfig,
    MembershipFreeze,
    MembershipPlan,
    MembershipStatus,
    MembershipUsage,
    Package,
    PackageCredit,
    PackageRedemption,
    PackageStatus,
)
from .numbering import NumberedEntity

logger = logging.getLogger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]


def utc_clock() -> datetime:
    return datetime.now(timezone.utc)


def current_time(clock: Optional[Clock]) -> datetime:
    if clock is None:
        return utc_clock()
    value = clock()
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class BenefitCatalog(Protocol):
    """Read-only lookups owned by the catalog, customer and invoicing modules."""

    def get_customer(self, tenant_id: str, customer_id: str) -> Optional[Customer]:
        """Return the customer unless it is missing or soft-deleted."""

    def get_plan(self, tenant_id: str, plan_id: str, *, active_only: bool = True) -> Optional[MembershipPlan]:
        ...

    def get_package(self, tenant_id: str, package_id: str, *, active_only: bool = True) -> Optional[Package]:
        ...

    def get_invoice_branch(self, tenant_id: str, invoice_id: str) -> Optional[str]:
        ...

    def get_tenant_slug(self, tenant_id: str) -> Optional[str]:
        ...


class ConfigRepository(Protocol):
    def get_config(self, tenant_id: str) -> Optional[MembershipConfig]:
        ...

    def save_config(self, config: MembershipConfig) -> MembershipConfig:
        ...


class BenefitRepository(ConfigRepository, Protocol):
    """Storage for customer memberships, packages and their ledgers."""

    def transaction(self) -> ContextManager["BenefitRepository"]:
        """Yield a repository bound to one serializable store transaction."""

    def next_sequence(self, tenant_id: str, entity: NumberedEntity, prefix: str) -> int:
        ...

    def get_membership(
        self, tenant_id: str, membership_id: str, *, for_update: bool = False
    ) -> Optional[CustomerMembership]:
        ...

    def find_open_membership(self, tenant_id: str, customer_id: str, plan_id: str) -> Optional[CustomerMembership]:
        ...

    def list_memberships(
        self, tenant_id: str, customer_id: str, statuses: Sequence[MembershipStatus]
    ) -> List[CustomerMembership]:
        ...

    def list_lapsed_memberships(self, tenant_id: str, before: date) -> List[CustomerMembership]:
        ...

    def insert_membership(self, membership: CustomerMembership) -> CustomerMembership:
        ...

    def update_membership(self, membership: CustomerMembership) -> CustomerMembership:
        ...

    def get_active_freeze(self, tenant_id: str, membership_id: str) -> Optional[MembershipFreeze]:
        ...

    def list_freezes(self, tenant_id: str, membership_id: str) -> List[MembershipFreeze]:
        ...

    def insert_freeze(self, freeze: MembershipFreeze) -> MembershipFreeze:
        ...

    def update_freeze(self, freeze: MembershipFreeze) -> MembershipFreeze:
        ...

    def insert_usage(self, usage: MembershipUsage) -> MembershipUsage:
        ...

    def list_usage(
        self,
        tenant_id: str,
        membership_id: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[MembershipUsage], int]:
        ...

    def get_customer_package(
        self, tenant_id: str, customer_package_id: str, *, for_update: bool = False
    ) -> Optional[CustomerPackage]:
        ...

    def list_customer_packages(
        self, tenant_id: str, customer_id: str, statuses: Sequence[PackageStatus]
    ) -> List[CustomerPackage]:
        ...

    def list_lapsed_packages(self, tenant_id: str, before: date) -> List[CustomerPackage]:
        ...

    def insert_customer_package(self, customer_package: CustomerPackage) -> CustomerPackage:
        ...

    def update_customer_package(self, customer_package: CustomerPackage) -> CustomerPackage:
        ...

    def list_package_credits(
        self, tenant_id: str, customer_package_id: str, *, for_update: bool = False
    ) -> List[PackageCredit]:
        ...

    def insert_package_credits(self, credits: Sequence[PackageCredit]) -> List[PackageCredit]:
        ...

    def update_package_credit(self, credit: PackageCredit) -> PackageCredit:
        ...

    def insert_redemption(self, redemption: PackageRedemption) -> PackageRedemption:
        ...

    def list_redemptions(
        self,
        tenant_id: str,
        customer_package_id: str,
        *,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> Tuple[List[PackageRedemption], int]:
        ...


class BenefitEventLogger(Protocol):
    """Captures structured benefit audit events."""

    def log(self, event: BenefitAuditEvent) -> None:
        ...


class BenefitNotifier(Protocol):
    """Dispatches balance related notifications to customers or staff."""

    def notify_low_balance(self, customer_package: CustomerPackage, credit: PackageCredit) -> None:
        ...

    def notify_package_exhausted(self, customer_package: CustomerPackage) -> None:
        ...


def run_in_transaction(
    repository: BenefitRepository,
    work: Callable[[BenefitRepository], T],
    *,
    attempts: int = 2,
) -> T:
    """Run ``work`` inside a store transaction, retrying rejected transactions.

    ``work`` must perform its reads and checks before writing so a retry
    starts from freshly locked rows.
    """

    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            with repository.transaction() as tx:
                return work(tx)
        except TransactionConflictError as exc:
            if attempt >= attempts:
                raise ConflictError(
                    code=TRANSACTION_CONFLICT,
                    message="The request conflicted with a concurrent update, please retry",
                ) from exc
            logger.warning("Retrying benefit transaction after store conflict (attempt %s): %s", attempt, exc)
    raise AssertionError("unreachable")  # pragma: no cover
