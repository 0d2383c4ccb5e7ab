"""API schemas for membership and package benefit endpoints."""
from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..benefits import (
    BenefitType,
    BranchScope,
    CreditBalance,
    CustomerMembership,
    CustomerPackage,
    CustomerPackageDetail,
    FreezeResult,
    MembershipDetail,
    MembershipFreeze,
    MembershipPlan,
    MembershipUsage,
    Package,
    PackageCredit,
    PackageRedemption,
    PaginatedResult,
    Precedence,
    RedemptionResult,
    RefundPolicy,
    ServiceRequest,
    UnfreezeResult,
    ValidityUnit,
)


class SellMembershipRequest(BaseModel):
    customer_id: str = Field(alias="customerId")
    plan_id: str = Field(alias="planId")
    branch_id: str = Field(alias="branchId")
    activation_date: Optional[date] = Field(alias="activationDate", default=None)
    staff_id: Optional[str] = Field(alias="staffId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class FreezeMembershipRequest(BaseModel):
    freeze_start_date: date = Field(alias="freezeStartDate")
    freeze_end_date: date = Field(alias="freezeEndDate")
    reason_code: str = Field(alias="reasonCode", min_length=1)
    reason_description: Optional[str] = Field(alias="reasonDescription", default=None)

    model_config = ConfigDict(populate_by_name=True)


class CancellationRequest(BaseModel):
    reason: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)


class SellPackageRequest(BaseModel):
    customer_id: str = Field(alias="customerId")
    package_id: str = Field(alias="packageId")
    branch_id: str = Field(alias="branchId")
    activation_date: Optional[date] = Field(alias="activationDate", default=None)
    staff_id: Optional[str] = Field(alias="staffId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class ServiceLine(BaseModel):
    service_id: str = Field(alias="serviceId")
    variant_id: Optional[str] = Field(alias="variantId", default=None)
    service_name: Optional[str] = Field(alias="serviceName", default=None)
    quantity: int = Field(default=1, ge=1)
    original_price: Decimal = Field(alias="originalPrice", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    def to_request(self) -> ServiceRequest:
        return ServiceRequest(
            service_id=self.service_id,
            variant_id=self.variant_id,
            service_name=self.service_name,
            quantity=self.quantity,
            original_price=self.original_price,
        )


class ResolveBenefitsRequest(BaseModel):
    customer_id: str = Field(alias="customerId")
    branch_id: str = Field(alias="branchId")
    services: List[ServiceLine] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class ApplyMembershipDiscountRequest(BaseModel):
    membership_id: str = Field(alias="membershipId")
    invoice_id: str = Field(alias="invoiceId")
    invoice_item_id: Optional[str] = Field(alias="invoiceItemId", default=None)
    service_id: Optional[str] = Field(alias="serviceId", default=None)
    service_name: str = Field(alias="serviceName")
    original_amount: Decimal = Field(alias="originalAmount")
    discount_amount: Decimal = Field(alias="discountAmount")
    benefit_type: BenefitType = Field(alias="benefitType")
    is_complimentary: bool = Field(alias="isComplimentary", default=False)
    complimentary_benefit_id: Optional[str] = Field(alias="complimentaryBenefitId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class RedeemPackageCreditsRequest(BaseModel):
    customer_package_id: str = Field(alias="customerPackageId")
    invoice_id: str = Field(alias="invoiceId")
    invoice_item_id: Optional[str] = Field(alias="invoiceItemId", default=None)
    service_id: str = Field(alias="serviceId")
    service_name: str = Field(alias="serviceName")
    credits_to_use: Optional[int] = Field(alias="creditsToUse", default=None)
    value_to_use: Optional[Decimal] = Field(alias="valueToUse", default=None)
    stylist_id: Optional[str] = Field(alias="stylistId", default=None)

    model_config = ConfigDict(populate_by_name=True)


class MembershipConfigUpdate(BaseModel):
    """Partial policy update; only fields present in the request are changed."""

    memberships_enabled: Optional[bool] = Field(alias="membershipsEnabled", default=None)
    packages_enabled: Optional[bool] = Field(alias="packagesEnabled", default=None)
    default_validity_unit: Optional[ValidityUnit] = Field(alias="defaultValidityUnit", default=None)
    default_validity_value: Optional[int] = Field(alias="defaultValidityValue", default=None)
    refund_policy: Optional[RefundPolicy] = Field(alias="refundPolicy", default=None)
    cancellation_fee_percentage: Optional[Decimal] = Field(alias="cancellationFeePercentage", default=None)
    default_branch_scope: Optional[BranchScope] = Field(alias="defaultBranchScope", default=None)
    membership_package_precedence: Optional[Precedence] = Field(alias="membershipPackagePrecedence", default=None)
    grace_period_days: Optional[int] = Field(alias="gracePeriodDays", default=None)
    max_freeze_days_per_year: Optional[int] = Field(alias="maxFreezeDaysPerYear", default=None)
    expiry_reminder_days: Optional[int] = Field(alias="expiryReminderDays", default=None)
    low_balance_threshold: Optional[int] = Field(alias="lowBalanceThreshold", default=None)

    model_config = ConfigDict(populate_by_name=True)

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class MembershipResponse(BaseModel):
    membership: CustomerMembership

    model_config = ConfigDict(populate_by_name=True)


class MembershipListResponse(BaseModel):
    memberships: List[CustomerMembership]

    model_config = ConfigDict(populate_by_name=True)


class MembershipDetailResponse(BaseModel):
    membership: CustomerMembership
    plan: Optional[MembershipPlan] = None
    freezes: List[MembershipFreeze] = Field(default_factory=list)
    usage_count: int = Field(alias="usageCount", default=0)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_detail(cls, detail: MembershipDetail) -> "MembershipDetailResponse":
        return cls(
            membership=detail.membership,
            plan=detail.plan,
            freezes=list(detail.freezes),
            usage_count=detail.usage_count,
        )


class FreezeResponse(BaseModel):
    membership: CustomerMembership
    freeze: MembershipFreeze
    remaining_freeze_days: int = Field(alias="remainingFreezeDays")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: FreezeResult) -> "FreezeResponse":
        return cls(
            membership=result.membership,
            freeze=result.freeze,
            remaining_freeze_days=result.remaining_freeze_days,
        )


class UnfreezeResponse(BaseModel):
    membership: CustomerMembership
    actual_freeze_days: int = Field(alias="actualFreezeDays")
    unused_freeze_days: int = Field(alias="unusedFreezeDays")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: UnfreezeResult) -> "UnfreezeResponse":
        return cls(
            membership=result.membership,
            actual_freeze_days=result.actual_freeze_days,
            unused_freeze_days=result.unused_freeze_days,
        )


class PaginationMeta(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int = Field(alias="totalPages")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: PaginatedResult) -> "PaginationMeta":
        return cls(page=result.page, limit=result.limit, total=result.total, total_pages=result.total_pages)


class MembershipUsageListResponse(BaseModel):
    items: List[MembershipUsage]
    pagination: PaginationMeta

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: PaginatedResult) -> "MembershipUsageListResponse":
        return cls(items=list(result.items), pagination=PaginationMeta.from_result(result))


class MembershipUsageResponse(BaseModel):
    usage: MembershipUsage

    model_config = ConfigDict(populate_by_name=True)


class CustomerPackageResponse(BaseModel):
    customer_package: CustomerPackage = Field(alias="customerPackage")
    package: Optional[Package] = None
    credits: List[PackageCredit] = Field(default_factory=list)
    redemption_count: int = Field(alias="redemptionCount", default=0)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_detail(cls, detail: CustomerPackageDetail) -> "CustomerPackageResponse":
        return cls(
            customer_package=detail.customer_package,
            package=detail.package,
            credits=list(detail.credits),
            redemption_count=detail.redemption_count,
        )


class CancelledPackageResponse(BaseModel):
    customer_package: CustomerPackage = Field(alias="customerPackage")

    model_config = ConfigDict(populate_by_name=True)


class CustomerPackageListResponse(BaseModel):
    packages: List[CustomerPackage]

    model_config = ConfigDict(populate_by_name=True)


class CreditBalanceResponse(BaseModel):
    balance: CreditBalance

    model_config = ConfigDict(populate_by_name=True)


class RedemptionListResponse(BaseModel):
    items: List[PackageRedemption]
    pagination: PaginationMeta

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: PaginatedResult) -> "RedemptionListResponse":
        return cls(items=list(result.items), pagination=PaginationMeta.from_result(result))


class RedemptionResponse(BaseModel):
    redemption: PackageRedemption
    customer_package: CustomerPackage = Field(alias="customerPackage")
    locked_price: Decimal = Field(alias="lockedPrice")
    remaining_credits: Optional[int] = Field(alias="remainingCredits", default=None)
    remaining_value: Optional[Decimal] = Field(alias="remainingValue", default=None)
    exhausted: bool = False

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_result(cls, result: RedemptionResult) -> "RedemptionResponse":
        return cls(
            redemption=result.redemption,
            customer_package=result.customer_package,
            locked_price=result.locked_price,
            remaining_credits=result.credit.remaining_credits if result.credit is not None else None,
            remaining_value=result.customer_package.remaining_credit_value,
            exhausted=result.exhausted,
        )


class ExpirySweepResponse(BaseModel):
    expired_membership_ids: List[str] = Field(alias="expiredMembershipIds", default_factory=list)
    expired_package_ids: List[str] = Field(alias="expiredPackageIds", default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_expired(
        cls,
        memberships: List[CustomerMembership],
        packages: List[CustomerPackage],
    ) -> "ExpirySweepResponse":
        return cls(
            expired_membership_ids=[membership.id for membership in memberships],
            expired_package_ids=[customer_package.id for customer_package in packages],
        )
