"""Membership and package benefit engine: lifecycles, resolution and redemption ledger."""

from .exceptions import BadRequestError, BenefitEngineError, ConflictError, NotFoundError, TransactionConflictError
from .ledger import RedemptionLedger, RedemptionResult
from .memberships import MembershipLifecycleService
from .models import (
    BenefitAuditEvent,
    BenefitAuditEventType,
    BenefitType,
    BranchScope,
    CreditBalance,
    Customer,
    CustomerMembership,
    CustomerPackage,
    CustomerPackageDetail,
    FreezeResult,
    MembershipBenefit,
    MembershipConfig,
    MembershipDetail,
    MembershipFreeze,
    MembershipPlan,
    MembershipStatus,
    MembershipUsage,
    Package,
    PackageCredit,
    PackageRedemption,
    PackageService,
    PackageStatus,
    PackageType,
    PaginatedResult,
    Precedence,
    RefundPolicy,
    UnfreezeResult,
    Validity,
    ValidityUnit,
)
from .packages import PackageLifecycleService
from .policy import PolicyStore
from .precedence import AppliedBenefit, BenefitSource, choose_benefit
from .resolver import BenefitResolution, BenefitResolver, BenefitSummary, ServiceBenefit, ServiceRequest
from .store import BenefitCatalog, BenefitEventLogger, BenefitNotifier, BenefitRepository, run_in_transaction

__all__ = [
    "AppliedBenefit",
    "BadRequestError",
    "BenefitAuditEvent",
    "BenefitAuditEventType",
    "BenefitCatalog",
    "BenefitEngineError",
    "BenefitEventLogger",
    "BenefitNotifier",
    "BenefitRepository",
    "BenefitResolution",
    "BenefitResolver",
    "BenefitSource",
    "BenefitSummary",
    "BenefitType",
    "BranchScope",
    "ConflictError",
    "CreditBalance",
    "Customer",
    "CustomerMembership",
    "CustomerPackage",
    "CustomerPackageDetail",
    "FreezeResult",
    "MembershipBenefit",
    "MembershipConfig",
    "MembershipDetail",
    "MembershipFreeze",
    "MembershipLifecycleService",
    "MembershipPlan",
    "MembershipStatus",
    "MembershipUsage",
    "NotFoundError",
    "Package",
    "PackageCredit",
    "PackageLifecycleService",
    "PackageRedemption",
    "PackageService",
    "PackageStatus",
    "PackageType",
    "PaginatedResult",
    "PolicyStore",
    "Precedence",
    "RedemptionLedger",
    "RedemptionResult",
    "RefundPolicy",
    "ServiceBenefit",
    "ServiceRequest",
    "TransactionConflictError",
    "UnfreezeResult",
    "Validity",
    "ValidityUnit",
    "choose_benefit",
    "run_in_transaction",
]
