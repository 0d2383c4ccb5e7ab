"""Domain models for memberships, packages and their benefit ledgers."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

_CENT = Decimal("0.01")


def to_money(value: object) -> Decimal:
    """Normalize a numeric value to a two-place ``Decimal``."""

    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidityUnit(str, Enum):
    """Calendar unit used for validity periods."""

    DAYS = "days"
    MONTHS = "months"
    YEARS = "years"


class BranchScope(str, Enum):
    """Where a plan or package may be sold and redeemed."""

    ALL_BRANCHES = "all_branches"
    SPECIFIC_BRANCHES = "specific_branches"


class CommissionType(str, Enum):
    PERCENTAGE = "percentage"
    FLAT = "flat"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FLAT = "flat"


class BenefitType(str, Enum):
    """Benefit rule kinds attached to a membership plan."""

    FLAT_DISCOUNT = "flat_discount"
    SERVICE_DISCOUNT = "service_discount"
    PRODUCT_DISCOUNT = "product_discount"
    COMPLIMENTARY_SERVICE = "complimentary_service"
    PRIORITY_BOOKING = "priority_booking"
    VISIT_LIMIT = "visit_limit"
    COOLDOWN_PERIOD = "cooldown_period"
    BENEFIT_CAP = "benefit_cap"
    FALLBACK_DISCOUNT = "fallback_discount"


class PackageType(str, Enum):
    VALUE_PACKAGE = "value_package"
    SERVICE_PACKAGE = "service_package"
    COMBO_PACKAGE = "combo_package"


class MembershipStatus(str, Enum):
    """Lifecycle state for a customer membership."""

    PENDING = "pending"
    ACTIVE = "active"
    FROZEN = "frozen"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    TRANSFERRED = "transferred"


class PackageStatus(str, Enum):
    """Lifecycle state for a customer package."""

    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"
    TRANSFERRED = "transferred"


class FreezeStatus(str, Enum):
    REQUESTED = "requested"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RefundPolicy(str, Enum):
    REFUNDABLE = "refundable"
    NON_REFUNDABLE = "non_refundable"
    PARTIAL = "partial"


class Precedence(str, Enum):
    """Tenant rule for choosing between package credit and membership discount."""

    PACKAGE_FIRST = "package_first"
    MEMBERSHIP_ONLY = "membership_only"
    CUSTOMER_CHOICE = "customer_choice"


class Validity(BaseModel):
    """A validity period such as ``12 months``."""

    value: int = Field(ge=1)
    unit: ValidityUnit

    model_config = ConfigDict(frozen=True)


class Customer(BaseModel):
    id: str
    tenant_id: str
    name: str = ""
    deleted_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class MembershipBenefit(BaseModel):
    """A single benefit rule on a membership plan."""

    id: str
    benefit_type: BenefitType = Field(alias="type")
    service_id: Optional[str] = None
    category_id: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[Decimal] = None
    complimentary_count: Optional[int] = None
    complimentary_period: Optional[str] = None
    benefit_cap_amount: Optional[Decimal] = None
    benefit_cap_period: Optional[str] = None
    priority_level: int = 0
    is_active: bool = True

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class _BranchScoped(BaseModel):
    branch_scope: BranchScope = BranchScope.ALL_BRANCHES
    branch_ids: FrozenSet[str] = Field(default_factory=frozenset)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_available_at(self, branch_id: str) -> bool:
        """Return ``True`` when the item may be used at ``branch_id``."""

        if self.branch_scope == BranchScope.ALL_BRANCHES:
            return True
        return branch_id in self.branch_ids


class MembershipPlan(_BranchScoped):
    """Catalog definition of a membership plan."""

    id: str
    tenant_id: str
    name: str
    tier: Optional[str] = None
    price: Decimal = Field(ge=0)
    gst_rate: Decimal = Decimal("18")
    validity: Validity
    benefits: Tuple[MembershipBenefit, ...] = ()
    sale_commission_type: Optional[CommissionType] = None
    sale_commission_value: Optional[Decimal] = None
    is_active: bool = True

    def active_benefits(self) -> List[MembershipBenefit]:
        """Active benefits, highest priority first."""

        active = [benefit for benefit in self.benefits if benefit.is_active]
        return sorted(active, key=lambda benefit: benefit.priority_level, reverse=True)


class PackageService(BaseModel):
    """A service entry on a service or combo package."""

    id: str
    service_id: str
    variant_id: Optional[str] = None
    credit_count: int = Field(ge=1)
    locked_price: Decimal = Field(ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Package(_BranchScoped):
    """Catalog definition of a prepaid package."""

    id: str
    tenant_id: str
    name: str
    package_type: PackageType
    price: Decimal = Field(ge=0)
    gst_rate: Decimal = Decimal("18")
    credit_value: Optional[Decimal] = None
    validity: Validity
    services: Tuple[PackageService, ...] = ()
    sale_commission_type: Optional[CommissionType] = None
    sale_commission_value: Optional[Decimal] = None
    is_active: bool = True

    @property
    def is_value_package(self) -> bool:
        return self.package_type == PackageType.VALUE_PACKAGE


class MembershipConfig(BaseModel):
    """Tenant level membership and package policy."""

    tenant_id: str
    memberships_enabled: bool = True
    packages_enabled: bool = True
    default_validity_unit: ValidityUnit = ValidityUnit.MONTHS
    default_validity_value: int = Field(default=12, ge=1)
    refund_policy: RefundPolicy = RefundPolicy.PARTIAL
    cancellation_fee_percentage: Decimal = Field(default=Decimal("10"), ge=0, le=100)
    default_branch_scope: BranchScope = BranchScope.ALL_BRANCHES
    membership_package_precedence: Precedence = Precedence.PACKAGE_FIRST
    grace_period_days: int = Field(default=7, ge=0)
    max_freeze_days_per_year: int = Field(default=30, ge=0)
    expiry_reminder_days: int = Field(default=7, ge=1)
    low_balance_threshold: int = Field(default=2, ge=1)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CustomerMembership(BaseModel):
    """A membership sold to a customer."""

    id: str
    tenant_id: str
    customer_id: str
    plan_id: str
    membership_number: str
    purchase_date: date
    purchase_branch_id: str
    price_paid: Decimal
    gst_paid: Decimal
    total_paid: Decimal
    activation_date: date
    original_expiry_date: date
    current_expiry_date: date
    status: MembershipStatus = MembershipStatus.ACTIVE
    total_freeze_days_used: int = Field(default=0, ge=0)
    total_visits: int = Field(default=0, ge=0)
    total_discount_availed: Decimal = Decimal("0.00")
    last_visit_date: Optional[date] = None
    last_visit_branch_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    sale_commission_amount: Optional[Decimal] = None
    sale_commission_staff_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def is_current(self, today: date) -> bool:
        return self.status == MembershipStatus.ACTIVE and self.current_expiry_date >= today


class MembershipFreeze(BaseModel):
    id: str
    tenant_id: str
    membership_id: str
    freeze_start_date: date
    freeze_end_date: date
    freeze_days: int = Field(ge=1)
    reason_code: str
    reason_description: Optional[str] = None
    status: FreezeStatus = FreezeStatus.ACTIVE
    requested_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    actual_end_date: Optional[date] = None
    actual_freeze_days: Optional[int] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class MembershipUsage(BaseModel):
    """Append-only record of a membership benefit applied to an invoice line."""

    id: str
    tenant_id: str
    membership_id: str
    usage_date: date
    usage_branch_id: str
    invoice_id: str
    invoice_item_id: Optional[str] = None
    service_id: Optional[str] = None
    service_name: str
    benefit_type: BenefitType
    original_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal
    is_complimentary: bool = False
    complimentary_benefit_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class CustomerPackage(BaseModel):
    """A package sold to a customer."""

    id: str
    tenant_id: str
    customer_id: str
    package_id: str
    package_type: PackageType
    package_number: str
    purchase_date: date
    purchase_branch_id: str
    price_paid: Decimal
    gst_paid: Decimal
    total_paid: Decimal
    initial_credit_value: Optional[Decimal] = None
    remaining_credit_value: Optional[Decimal] = None
    activation_date: date
    expiry_date: date
    status: PackageStatus = PackageStatus.ACTIVE
    total_redemptions: int = Field(default=0, ge=0)
    total_redeemed_value: Decimal = Decimal("0.00")
    last_redemption_date: Optional[date] = None
    last_redemption_branch_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    sale_commission_amount: Optional[Decimal] = None
    sale_commission_staff_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("remaining_credit_value")
    @classmethod
    def _non_negative_value(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        if value is not None and value < 0:
            raise ValueError("remaining_credit_value cannot be negative")
        return value

    @property
    def is_value_package(self) -> bool:
        return self.package_type == PackageType.VALUE_PACKAGE

    def is_current(self, today: date) -> bool:
        return self.status == PackageStatus.ACTIVE and self.expiry_date >= today


class PackageCredit(BaseModel):
    """Per-service credit balance of a customer package."""

    id: str
    tenant_id: str
    customer_package_id: str
    package_service_id: str
    service_id: str
    initial_credits: int = Field(ge=0)
    remaining_credits: int = Field(ge=0)
    locked_price: Decimal

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("remaining_credits")
    @classmethod
    def _within_initial(cls, value: int, info) -> int:
        initial = info.data.get("initial_credits")
        if initial is not None and value > initial:
            raise ValueError("remaining_credits cannot exceed initial_credits")
        return value


class PackageRedemption(BaseModel):
    """Append-only record of package credit or value consumed on an invoice line."""

    id: str
    tenant_id: str
    customer_package_id: str
    package_credit_id: Optional[str] = None
    redemption_date: date
    redemption_branch_id: str
    invoice_id: str
    invoice_item_id: Optional[str] = None
    service_id: str
    service_name: str
    credits_used: Optional[int] = None
    value_used: Optional[Decimal] = None
    locked_price: Decimal
    stylist_id: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BenefitAuditEventType(str, Enum):
    """Audit event categories emitted by the benefit engine."""

    MEMBERSHIP_SOLD = "membership_sold"
    MEMBERSHIP_FROZEN = "membership_frozen"
    MEMBERSHIP_UNFROZEN = "membership_unfrozen"
    MEMBERSHIP_CANCELLED = "membership_cancelled"
    MEMBERSHIP_EXPIRED = "membership_expired"
    MEMBERSHIP_DISCOUNT_APPLIED = "membership_discount_applied"
    PACKAGE_SOLD = "package_sold"
    PACKAGE_CANCELLED = "package_cancelled"
    PACKAGE_EXPIRED = "package_expired"
    PACKAGE_CREDITS_REDEEMED = "package_credits_redeemed"
    PACKAGE_EXHAUSTED = "package_exhausted"


class BenefitAuditEvent(BaseModel):
    """Structured audit event for analytics and notifications."""

    event_type: BenefitAuditEventType
    tenant_id: str
    subject_id: str
    actor_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    occurred_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class PaginatedResult(BaseModel):
    items: list
    page: int
    limit: int
    total: int

    model_config = ConfigDict(frozen=True)

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit


class FreezeResult(BaseModel):
    membership: CustomerMembership
    freeze: MembershipFreeze
    remaining_freeze_days: int

    model_config = ConfigDict(frozen=True)


class UnfreezeResult(BaseModel):
    membership: CustomerMembership
    freeze: MembershipFreeze
    actual_freeze_days: int
    unused_freeze_days: int

    model_config = ConfigDict(frozen=True)


class MembershipDetail(BaseModel):
    """A membership with its plan, freeze history and usage count."""

    membership: CustomerMembership
    plan: Optional[MembershipPlan] = None
    freezes: List[MembershipFreeze] = Field(default_factory=list)
    usage_count: int = 0

    model_config = ConfigDict(frozen=True)


class CustomerPackageDetail(BaseModel):
    customer_package: CustomerPackage
    package: Optional[Package] = None
    credits: List[PackageCredit] = Field(default_factory=list)
    redemption_count: int = 0

    model_config = ConfigDict(frozen=True)


class CreditBalanceEntry(BaseModel):
    service_id: str
    initial_credits: int
    remaining_credits: int
    used_credits: int
    locked_price: Decimal

    model_config = ConfigDict(frozen=True)


class CreditBalance(BaseModel):
    """Remaining balance of a customer package.

    Value packages fill the ``*_value`` fields; service and combo packages list
    one entry per credit row.
    """

    customer_package_id: str
    package_type: PackageType
    initial_value: Optional[Decimal] = None
    remaining_value: Optional[Decimal] = None
    used_value: Optional[Decimal] = None
    credits: List[CreditBalanceEntry] = Field(default_factory=list)
    total_initial_credits: int = 0
    total_remaining_credits: int = 0

    model_config = ConfigDict(frozen=True)
