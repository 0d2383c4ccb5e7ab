"""Read-only resolution of the benefits a customer can use for requested services."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel, ConfigDict, Field

from .models import (
    BenefitType,
    CustomerMembership,
    CustomerPackage,
    DiscountType,
    MembershipBenefit,
    MembershipPlan,
    MembershipStatus,
    Package,
    PackageCredit,
    PackageStatus,
    PackageType,
    Precedence,
    to_money,
)
from .policy import PolicyStore
from .store import BenefitCatalog, BenefitRepository, Clock, current_time

logger = logging.getLogger(__name__)

_SERVICE_SCOPED_TYPES = frozenset({BenefitType.SERVICE_DISCOUNT, BenefitType.COMPLIMENTARY_SERVICE})


class ServiceRequest(BaseModel):
    service_id: str
    variant_id: Optional[str] = None
    service_name: Optional[str] = None
    quantity: int = Field(default=1, ge=1)
    original_price: Decimal = Field(ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PackageCreditMatch(BaseModel):
    customer_package_id: str
    package_name: str
    package_type: PackageType
    package_credit_id: str
    credits_available: int
    locked_price: Decimal

    model_config = ConfigDict(frozen=True)


class ValuePackageMatch(BaseModel):
    customer_package_id: str
    package_name: str
    remaining_value: Decimal

    model_config = ConfigDict(frozen=True)


class MembershipDiscountMatch(BaseModel):
    membership_id: str
    plan_name: str
    benefit_id: str
    benefit_type: BenefitType
    discount_amount: Decimal
    final_price: Decimal
    is_complimentary: bool = False

    model_config = ConfigDict(frozen=True)


class ServiceBenefit(BaseModel):
    """Every benefit that could pay for one requested service."""

    service_id: str
    service_name: Optional[str] = None
    variant_id: Optional[str] = None
    quantity: int = 1
    original_price: Decimal
    package_credit: Optional[PackageCreditMatch] = None
    value_package: Optional[ValuePackageMatch] = None
    membership_discount: Optional[MembershipDiscountMatch] = None

    model_config = ConfigDict(frozen=True)


class ActiveMembershipSummary(BaseModel):
    id: str
    membership_number: str
    plan_name: str
    tier: Optional[str] = None
    expiry_date: date
    benefits_count: int = 0
    total_discount_availed: Decimal = Decimal("0.00")

    model_config = ConfigDict(frozen=True)


class PackageCreditSummary(BaseModel):
    service_id: str
    initial_credits: int
    remaining_credits: int
    locked_price: Decimal

    model_config = ConfigDict(frozen=True)


class ActivePackageSummary(BaseModel):
    id: str
    package_number: str
    package_name: str
    package_type: PackageType
    expiry_date: date
    remaining_value: Optional[Decimal] = None
    credits: Optional[List[PackageCreditSummary]] = None

    model_config = ConfigDict(frozen=True)


class BenefitResolution(BaseModel):
    customer_id: str
    branch_id: str
    services: List[ServiceBenefit]
    active_memberships: List[ActiveMembershipSummary]
    active_packages: List[ActivePackageSummary]
    precedence: Precedence

    model_config = ConfigDict(frozen=True)


class BenefitSummary(BaseModel):
    customer_id: str
    branch_id: str
    memberships: List[ActiveMembershipSummary]
    packages: List[ActivePackageSummary]
    has_benefits: bool

    model_config = ConfigDict(frozen=True)


@dataclass(frozen=True)
class _HeldMembership:
    membership: CustomerMembership
    plan: MembershipPlan
    benefits: Tuple[MembershipBenefit, ...]


@dataclass(frozen=True)
class _HeldPackage:
    customer_package: CustomerPackage
    package: Package
    credits: Tuple[PackageCredit, ...]


def find_applicable_benefit(benefits: Sequence[MembershipBenefit], service_id: str) -> Optional[MembershipBenefit]:
    """Service-scoped discounts win; otherwise the first flat discount applies.

    ``benefits`` must already be active and ordered by priority.
    """

    for benefit in benefits:
        if benefit.benefit_type in _SERVICE_SCOPED_TYPES and benefit.service_id == service_id:
            return benefit
    for benefit in benefits:
        if benefit.benefit_type == BenefitType.FLAT_DISCOUNT:
            return benefit
    return None


def membership_discount(benefit: MembershipBenefit, original_price: Decimal) -> Decimal:
    """Discount granted by ``benefit``; never more than ``original_price``."""

    price = Decimal(original_price)
    if benefit.benefit_type == BenefitType.COMPLIMENTARY_SERVICE:
        return to_money(price)
    if benefit.discount_type is None or not benefit.discount_value:
        return to_money(0)
    if benefit.discount_type == DiscountType.PERCENTAGE:
        discount = price * Decimal(benefit.discount_value) / 100
    else:
        discount = Decimal(benefit.discount_value)
    return to_money(min(discount, price))


@dataclass
class BenefitResolver:
    """Reports package credits and membership discounts usable at a branch.

    Resolution never mutates state and never applies precedence; callers
    decide what to redeem.
    """

    repository: BenefitRepository
    catalog: BenefitCatalog
    policy: PolicyStore
    clock: Optional[Clock] = None

    def resolve(
        self,
        tenant_id: str,
        *,
        customer_id: str,
        branch_id: str,
        services: Sequence[ServiceRequest],
    ) -> BenefitResolution:
        today = current_time(self.clock).date()
        memberships = self._held_memberships(tenant_id, customer_id, branch_id, today)
        packages = self._held_packages(tenant_id, customer_id, branch_id, today)
        precedence = self.policy.get_config(tenant_id).membership_package_precedence

        return BenefitResolution(
            customer_id=customer_id,
            branch_id=branch_id,
            services=[self._resolve_service(service, memberships, packages) for service in services],
            active_memberships=[self._membership_summary(held) for held in memberships],
            active_packages=[self._package_summary(held) for held in packages],
            precedence=precedence,
        )

    def summarize(self, tenant_id: str, *, customer_id: str, branch_id: str) -> BenefitSummary:
        today = current_time(self.clock).date()
        memberships = [
            self._membership_summary(held)
            for held in self._held_memberships(tenant_id, customer_id, branch_id, today)
        ]
        packages = [
            self._package_summary(held) for held in self._held_packages(tenant_id, customer_id, branch_id, today)
        ]
        return BenefitSummary(
            customer_id=customer_id,
            branch_id=branch_id,
            memberships=memberships,
            packages=packages,
            has_benefits=bool(memberships or packages),
        )

    def _held_memberships(
        self, tenant_id: str, customer_id: str, branch_id: str, today: date
    ) -> List[_HeldMembership]:
        plans: Dict[str, Optional[MembershipPlan]] = {}
        held: List[_HeldMembership] = []
        for membership in self.repository.list_memberships(tenant_id, customer_id, [MembershipStatus.ACTIVE]):
            if not membership.is_current(today):
                continue
            if membership.plan_id not in plans:
                plans[membership.plan_id] = self.catalog.get_plan(tenant_id, membership.plan_id, active_only=False)
            plan = plans[membership.plan_id]
            if plan is None:
                logger.warning("Membership %s references unknown plan %s", membership.id, membership.plan_id)
                continue
            if not plan.is_available_at(branch_id):
                continue
            held.append(_HeldMembership(membership=membership, plan=plan, benefits=tuple(plan.active_benefits())))
        return held

    def _held_packages(self, tenant_id: str, customer_id: str, branch_id: str, today: date) -> List[_HeldPackage]:
        catalog_packages: Dict[str, Optional[Package]] = {}
        held: List[_HeldPackage] = []
        for customer_package in self.repository.list_customer_packages(tenant_id, customer_id, [PackageStatus.ACTIVE]):
            if not customer_package.is_current(today):
                continue
            package_id = customer_package.package_id
            if package_id not in catalog_packages:
                catalog_packages[package_id] = self.catalog.get_package(tenant_id, package_id, active_only=False)
            package = catalog_packages[package_id]
            if package is None:
                logger.warning("Customer package %s references unknown package %s", customer_package.id, package_id)
                continue
            if not package.is_available_at(branch_id):
                continue
            credits: Tuple[PackageCredit, ...] = ()
            if not customer_package.is_value_package:
                credits = tuple(self.repository.list_package_credits(tenant_id, customer_package.id))
            held.append(_HeldPackage(customer_package=customer_package, package=package, credits=credits))
        return held

    def _resolve_service(
        self,
        service: ServiceRequest,
        memberships: Sequence[_HeldMembership],
        packages: Sequence[_HeldPackage],
    ) -> ServiceBenefit:
        package_credit: Optional[PackageCreditMatch] = None
        value_package: Optional[ValuePackageMatch] = None

        for held in packages:
            customer_package = held.customer_package
            if customer_package.is_value_package:
                remaining = customer_package.remaining_credit_value or Decimal("0")
                if value_package is None and remaining > 0:
                    value_package = ValuePackageMatch(
                        customer_package_id=customer_package.id,
                        package_name=held.package.name,
                        remaining_value=to_money(remaining),
                    )
                continue
            credit = next(
                (
                    row
                    for row in held.credits
                    if row.service_id == service.service_id and row.remaining_credits > 0
                ),
                None,
            )
            if credit is not None:
                package_credit = PackageCreditMatch(
                    customer_package_id=customer_package.id,
                    package_name=held.package.name,
                    package_type=customer_package.package_type,
                    package_credit_id=credit.id,
                    credits_available=credit.remaining_credits,
                    locked_price=credit.locked_price,
                )
                break

        membership_match: Optional[MembershipDiscountMatch] = None
        for held in memberships:
            benefit = find_applicable_benefit(held.benefits, service.service_id)
            if benefit is None:
                continue
            discount = membership_discount(benefit, service.original_price)
            membership_match = MembershipDiscountMatch(
                membership_id=held.membership.id,
                plan_name=held.plan.name,
                benefit_id=benefit.id,
                benefit_type=benefit.benefit_type,
                discount_amount=discount,
                final_price=to_money(Decimal(service.original_price) - discount),
                is_complimentary=benefit.benefit_type == BenefitType.COMPLIMENTARY_SERVICE,
            )
            break

        return ServiceBenefit(
            service_id=service.service_id,
            service_name=service.service_name,
            variant_id=service.variant_id,
            quantity=service.quantity,
            original_price=to_money(service.original_price),
            package_credit=package_credit,
            value_package=value_package,
            membership_discount=membership_match,
        )

    @staticmethod
    def _membership_summary(held: _HeldMembership) -> ActiveMembershipSummary:
        return ActiveMembershipSummary(
            id=held.membership.id,
            membership_number=held.membership.membership_number,
            plan_name=held.plan.name,
            tier=held.plan.tier,
            expiry_date=held.membership.current_expiry_date,
            benefits_count=len(held.benefits),
            total_discount_availed=to_money(held.membership.total_discount_availed),
        )

    @staticmethod
    def _package_summary(held: _HeldPackage) -> ActivePackageSummary:
        customer_package = held.customer_package
        if customer_package.is_value_package:
            return ActivePackageSummary(
                id=customer_package.id,
                package_number=customer_package.package_number,
                package_name=held.package.name,
                package_type=customer_package.package_type,
                expiry_date=customer_package.expiry_date,
                remaining_value=to_money(customer_package.remaining_credit_value),
            )
        return ActivePackageSummary(
            id=customer_package.id,
            package_number=customer_package.package_number,
            package_name=held.package.name,
            package_type=customer_package.package_type,
            expiry_date=customer_package.expiry_date,
            credits=[
                PackageCreditSummary(
                    service_id=credit.service_id,
                    initial_credits=credit.initial_credits,
                    remaining_credits=credit.remaining_credits,
                    locked_price=credit.locked_price,
                )
                for credit in held.credits
            ],
        )
