"""In-memory implementations of the benefit stores."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import date
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, TypeVar

from .models import (
    Customer,
    CustomerMembership,
    CustomerPackage,
    FreezeStatus,
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

R = TypeVar("R")


@dataclass
class _Tables:
    configs: Dict[str, MembershipConfig] = field(default_factory=dict)
    memberships: Dict[str, CustomerMembership] = field(default_factory=dict)
    freezes: Dict[str, MembershipFreeze] = field(default_factory=dict)
    usage: Dict[str, MembershipUsage] = field(default_factory=dict)
    customer_packages: Dict[str, CustomerPackage] = field(default_factory=dict)
    credits: Dict[str, PackageCredit] = field(default_factory=dict)
    redemptions: Dict[str, PackageRedemption] = field(default_factory=dict)
    sequences: Dict[Tuple[str, str, str], int] = field(default_factory=dict)

    def snapshot(self) -> "_Tables":
        # Records are frozen models, so copying the containers is enough.
        return _Tables(**{item.name: dict(getattr(self, item.name)) for item in fields(self)})


def _paginate(records: List[R], limit: int, offset: int) -> Tuple[List[R], int]:
    return records[offset : offset + limit], len(records)


def _within(value: date, start_date: Optional[date], end_date: Optional[date]) -> bool:
    if start_date is not None and value < start_date:
        return False
    if end_date is not None and value > end_date:
        return False
    return True


class InMemoryBenefitStore:
    """Benefit repository held in process memory, suitable for tests and local development.

    Transactions serialize on a re-entrant lock and roll back to a snapshot
    when the block raises.
    """

    def __init__(self) -> None:
        self._tables = _Tables()
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator["InMemoryBenefitStore"]:
        with self._lock:
            snapshot = self._tables.snapshot()
            try:
                yield self
            except BaseException:
                self._tables = snapshot
                raise

    def next_sequence(self, tenant_id: str, entity: NumberedEntity, prefix: str) -> int:
        with self._lock:
            key = (tenant_id, entity.value, prefix)
            value = self._tables.sequences.get(key, 0) + 1
            self._tables.sequences[key] = value
            return value

    # Config ---------------------------------------------------------------

    def get_config(self, tenant_id: str) -> Optional[MembershipConfig]:
        return self._tables.configs.get(tenant_id)

    def save_config(self, config: MembershipConfig) -> MembershipConfig:
        with self._lock:
            self._tables.configs[config.tenant_id] = config
        return config

    # Memberships ----------------------------------------------------------

    def get_membership(
        self, tenant_id: str, membership_id: str, *, for_update: bool = False
    ) -> Optional[CustomerMembership]:
        membership = self._tables.memberships.get(membership_id)
        if membership is None or membership.tenant_id != tenant_id:
            return None
        return membership

    def find_open_membership(self, tenant_id: str, customer_id: str, plan_id: str) -> Optional[CustomerMembership]:
        open_statuses = {MembershipStatus.ACTIVE, MembershipStatus.FROZEN}
        with self._lock:
            for membership in self._tables.memberships.values():
                if (
                    membership.tenant_id == tenant_id
                    and membership.customer_id == customer_id
                    and membership.plan_id == plan_id
                    and membership.status in open_statuses
                ):
                    return membership
        return None

    def list_memberships(
        self, tenant_id: str, customer_id: str, statuses: Sequence[MembershipStatus]
    ) -> List[CustomerMembership]:
        wanted = set(statuses)
        with self._lock:
            matches = [
                membership
                for membership in self._tables.memberships.values()
                if membership.tenant_id == tenant_id
                and membership.customer_id == customer_id
                and membership.status in wanted
            ]
        return sorted(matches, key=lambda membership: (membership.current_expiry_date, membership.created_at))

    def list_lapsed_memberships(self, tenant_id: str, before: date) -> List[CustomerMembership]:
        with self._lock:
            return [
                membership
                for membership in self._tables.memberships.values()
                if membership.tenant_id == tenant_id
                and membership.status in (MembershipStatus.ACTIVE, MembershipStatus.FROZEN)
                and membership.current_expiry_date < before
            ]

    def insert_membership(self, membership: CustomerMembership) -> CustomerMembership:
        with self._lock:
            self._tables.memberships[membership.id] = membership
        return membership

    def update_membership(self, membership: CustomerMembership) -> CustomerMembership:
        return self.insert_membership(membership)

    def get_active_freeze(self, tenant_id: str, membership_id: str) -> Optional[MembershipFreeze]:
        with self._lock:
            for freeze in self._tables.freezes.values():
                if (
                    freeze.tenant_id == tenant_id
                    and freeze.membership_id == membership_id
                    and freeze.status == FreezeStatus.ACTIVE
                ):
                    return freeze
        return None

    def list_freezes(self, tenant_id: str, membership_id: str) -> List[MembershipFreeze]:
        with self._lock:
            matches = [
                freeze
                for freeze in self._tables.freezes.values()
                if freeze.tenant_id == tenant_id and freeze.membership_id == membership_id
            ]
        return sorted(matches, key=lambda freeze: freeze.created_at)

    def insert_freeze(self, freeze: MembershipFreeze) -> MembershipFreeze:
        with self._lock:
            self._tables.freezes[freeze.id] = freeze
        return freeze

    def update_freeze(self, freeze: MembershipFreeze) -> MembershipFreeze:
        return self.insert_freeze(freeze)

    def insert_usage(self, usage: MembershipUsage) -> MembershipUsage:
        with self._lock:
            self._tables.usage[usage.id] = usage
        return usage

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
        with self._lock:
            matches = [
                usage
                for usage in self._tables.usage.values()
                if usage.tenant_id == tenant_id
                and usage.membership_id == membership_id
                and _within(usage.usage_date, start_date, end_date)
            ]
        matches.sort(key=lambda usage: (usage.usage_date, usage.created_at), reverse=True)
        return _paginate(matches, limit, offset)

    # Packages -------------------------------------------------------------

    def get_customer_package(
        self, tenant_id: str, customer_package_id: str, *, for_update: bool = False
    ) -> Optional[CustomerPackage]:
        customer_package = self._tables.customer_packages.get(customer_package_id)
        if customer_package is None or customer_package.tenant_id != tenant_id:
            return None
        return customer_package

    def list_customer_packages(
        self, tenant_id: str, customer_id: str, statuses: Sequence[PackageStatus]
    ) -> List[CustomerPackage]:
        wanted = set(statuses)
        with self._lock:
            matches = [
                customer_package
                for customer_package in self._tables.customer_packages.values()
                if customer_package.tenant_id == tenant_id
                and customer_package.customer_id == customer_id
                and customer_package.status in wanted
            ]
        return sorted(matches, key=lambda item: (item.expiry_date, item.created_at))

    def list_lapsed_packages(self, tenant_id: str, before: date) -> List[CustomerPackage]:
        with self._lock:
            return [
                customer_package
                for customer_package in self._tables.customer_packages.values()
                if customer_package.tenant_id == tenant_id
                and customer_package.status == PackageStatus.ACTIVE
                and customer_package.expiry_date < before
            ]

    def insert_customer_package(self, customer_package: CustomerPackage) -> CustomerPackage:
        with self._lock:
            self._tables.customer_packages[customer_package.id] = customer_package
        return customer_package

    def update_customer_package(self, customer_package: CustomerPackage) -> CustomerPackage:
        return self.insert_customer_package(customer_package)

    def list_package_credits(
        self, tenant_id: str, customer_package_id: str, *, for_update: bool = False
    ) -> List[PackageCredit]:
        with self._lock:
            return [
                credit
                for credit in self._tables.credits.values()
                if credit.tenant_id == tenant_id and credit.customer_package_id == customer_package_id
            ]

    def insert_package_credits(self, credits: Sequence[PackageCredit]) -> List[PackageCredit]:
        with self._lock:
            for credit in credits:
                self._tables.credits[credit.id] = credit
        return list(credits)

    def update_package_credit(self, credit: PackageCredit) -> PackageCredit:
        with self._lock:
            self._tables.credits[credit.id] = credit
        return credit

    def insert_redemption(self, redemption: PackageRedemption) -> PackageRedemption:
        with self._lock:
            self._tables.redemptions[redemption.id] = redemption
        return redemption

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
        with self._lock:
            matches = [
                redemption
                for redemption in self._tables.redemptions.values()
                if redemption.tenant_id == tenant_id
                and redemption.customer_package_id == customer_package_id
                and _within(redemption.redemption_date, start_date, end_date)
            ]
        matches.sort(key=lambda redemption: (redemption.redemption_date, redemption.created_at), reverse=True)
        return _paginate(matches, limit, offset)


class InMemoryBenefitCatalog:
    """Catalog, customer and invoice lookups backed by plain dictionaries."""

    def __init__(self) -> None:
        self.customers: Dict[str, Customer] = {}
        self.plans: Dict[str, MembershipPlan] = {}
        self.packages: Dict[str, Package] = {}
        self.invoice_branches: Dict[Tuple[str, str], str] = {}
        self.tenant_slugs: Dict[str, str] = {}

    def add_customer(self, customer: Customer) -> Customer:
        self.customers[customer.id] = customer
        return customer

    def add_plan(self, plan: MembershipPlan) -> MembershipPlan:
        self.plans[plan.id] = plan
        return plan

    def add_package(self, package: Package) -> Package:
        self.packages[package.id] = package
        return package

    def add_invoice(self, tenant_id: str, invoice_id: str, branch_id: str) -> None:
        self.invoice_branches[(tenant_id, invoice_id)] = branch_id

    def get_customer(self, tenant_id: str, customer_id: str) -> Optional[Customer]:
        customer = self.customers.get(customer_id)
        if customer is None or customer.tenant_id != tenant_id or customer.deleted_at is not None:
            return None
        return customer

    def get_plan(self, tenant_id: str, plan_id: str, *, active_only: bool = True) -> Optional[MembershipPlan]:
        plan = self.plans.get(plan_id)
        if plan is None or plan.tenant_id != tenant_id:
            return None
        if active_only and not plan.is_active:
            return None
        return plan

    def get_package(self, tenant_id: str, package_id: str, *, active_only: bool = True) -> Optional[Package]:
        package = self.packages.get(package_id)
        if package is None or package.tenant_id != tenant_id:
            return None
        if active_only and not package.is_active:
            return None
        return package

    def get_invoice_branch(self, tenant_id: str, invoice_id: str) -> Optional[str]:
        return self.invoice_branches.get((tenant_id, invoice_id))

    def get_tenant_slug(self, tenant_id: str) -> Optional[str]:
        return self.tenant_slugs.get(tenant_id)
