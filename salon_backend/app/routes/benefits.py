"""API routes exposing memberships, packages and benefit redemption."""
from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Header, Query, status

from ..benefits import BenefitEngineError, BenefitResolution, BenefitSummary, MembershipConfig
from ..schemas.benefits import (
    ApplyMembershipDiscountRequest,
    CancellationRequest,
    CancelledPackageResponse,
    CreditBalanceResponse,
    CustomerPackageListResponse,
    CustomerPackageResponse,
    ExpirySweepResponse,
    FreezeMembershipRequest,
    FreezeResponse,
    MembershipConfigUpdate,
    MembershipDetailResponse,
    MembershipListResponse,
    MembershipResponse,
    MembershipUsageListResponse,
    MembershipUsageResponse,
    RedeemPackageCreditsRequest,
    RedemptionListResponse,
    RedemptionResponse,
    ResolveBenefitsRequest,
    SellMembershipRequest,
    SellPackageRequest,
    UnfreezeResponse,
)
from ..services import benefits as benefits_service

router = APIRouter(prefix="/api/benefits", tags=["benefits"])


# Memberships ---------------------------------------------------------------


@router.post("/memberships", response_model=MembershipResponse, status_code=status.HTTP_201_CREATED)
def sell_membership(
    payload: SellMembershipRequest,
    tenant_id: str = Header(alias="X-Tenant-ID"),
    user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> MembershipResponse:
    service = benefits_service.get_membership_service()
    try:
        membership = service.sell_membership(
            tenant_id,
            customer_id=payload.customer_id,
            plan_id=payload.plan_id,
            branch_id=payload.branch_id,
            activation_date=payload.activation_date,
            staff_id=payload.staff_id,
            created_by=user_id,
        )
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return MembershipResponse(membership=membership)


@router.get("/memberships/{membership_id}", response_model=MembershipDetailResponse)
def get_membership(
    membership_id: str,
    tenant_id: str = Header(alias="X-Tenant-ID"),
) -> MembershipDetailResponse:
    service = benefits_service.get_membership_service()
    try:
        detail = service.get_membership(tenant_id, membership_id)
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return MembershipDetailResponse.from_detail(detail)


@router.get("/customers/{customer_id}/memberships", response_model=MembershipListResponse)
def list_customer_memberships(
    customer_id: str,
    tenant_id: str = Header(alias="X-Tenant-ID"),
) -> MembershipListResponse:
    service = benefits_service.get_membership_service()
    return MembershipListResponse(memberships=service.list_customer_memberships(tenant_id, customer_id))


@router.post("/memberships/{membership_id}/freeze", response_model=FreezeResponse)
def freeze_membership(
    membership_id: str,
    payload: FreezeMembershipRequest,
    tenant_id: str = Header(alias="X-Tenant-ID"),
    user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> FreezeResponse:
    service = benefits_service.get_membership_service()
    try:
        result = service.freeze_membership(
            tenant_id,
            membership_id,
            freeze_start_date=payload.freeze_start_date,
            freeze_end_date=payload.freeze_end_date,
            reason_code=payload.reason_code,
            reason_description=payload.reason_description,
            requested_by=user_id,
        )
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return FreezeResponse.from_result(result)


@router.post("/memberships/{membership_id}/unfreeze", response_model=UnfreezeResponse)
def unfreeze_membership(
    membership_id: str,
    tenant_id: str = Header(alias="X-Tenant-ID"),
    user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> UnfreezeResponse:
    service = benefits_service.get_membership_service()
    try:
        result = service.unfreeze_membership(tenant_id, membership_id, actor_id=user_id)
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return UnfreezeResponse.from_result(result)


@router.post("/memberships/{membership_id}/cancel", response_model=MembershipResponse)
def cancel_membership(
    membership_id: str,
    payload: CancellationRequest,
    tenant_id: str = Header(alias="X-Tenant-ID"),
    user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> MembershipResponse:
    service = benefits_service.get_membership_service()
    try:
        membership = service.cancel_membership(
            tenant_id,
            membership_id,
            reason=payload.reason,
            cancelled_by=user_id,
        )
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return MembershipResponse(membership=membership)


@router.get("/memberships/{membership_id}/usage", response_model=MembershipUsageListResponse)
def list_membership_usage(
    membership_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    tenant_id: str = Header(alias="X-Tenant-ID"),
) -> MembershipUsageListResponse:
    service = benefits_service.get_membership_service()
    try:
        result = service.list_usage(
            tenant_id,
            membership_id,
            page=page,
            limit=limit,
            start_date=start_date,
            end_date=end_date,
        )
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return MembershipUsageListResponse.from_result(result)


# Packages ------------------------------------------------------------------


@router.post("/packages", response_model=CustomerPackageResponse, status_code=status.HTTP_201_CREATED)
def sell_package(
    payload: SellPackageRequest,
    tenant_id: str = Header(alias="X-Tenant-ID"),
    user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> CustomerPackageResponse:
    service = benefits_service.get_package_service()
    try:
        detail = service.sell_package(
            tenant_id,
            customer_id=payload.customer_id,
            package_id=payload.package_id,
            branch_id=payload.branch_id,
            activation_date=payload.activation_date,
            staff_id=payload.staff_id,
            created_by=user_id,
        )
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return CustomerPackageResponse.from_detail(detail)


@router.get("/packages/{customer_package_id}", response_model=CustomerPackageResponse)
def get_customer_package(
    customer_package_id: str,
    tenant_id: str = Header(alias="X-Tenant-ID"),
) -> CustomerPackageResponse:
    service = benefits_service.get_package_service()
    try:
        detail = service.get_customer_package(tenant_id, customer_package_id)
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return CustomerPackageResponse.from_detail(detail)


@router.get("/customers/{customer_id}/packages", response_model=CustomerPackageListResponse)
def list_customer_packages(
    customer_id: str,
    tenant_id: str = Header(alias="X-Tenant-ID"),
) -> CustomerPackageListResponse:
    service = benefits_service.get_package_service()
    return CustomerPackageListResponse(packages=service.list_customer_packages(tenant_id, customer_id))


@router.post("/packages/{customer_package_id}/cancel", response_model=CancelledPackageResponse)
def cancel_package(
    customer_package_id: str,
    payload: CancellationRequest,
    tenant_id: str = Header(alias="X-Tenant-ID"),
    user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> CancelledPackageResponse:
    service = benefits_service.get_package_service()
    try:
        customer_package = service.cancel_package(
            tenant_id,
            customer_package_id,
            reason=payload.reason,
            cancelled_by=user_id,
        )
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return CancelledPackageResponse(customer_package=customer_package)


@router.get("/packages/{customer_package_id}/balance", response_model=CreditBalanceResponse)
def get_credit_balance(
    customer_package_id: str,
    tenant_id: str = Header(alias="X-Tenant-ID"),
) -> CreditBalanceResponse:
    service = benefits_service.get_package_service()
    try:
        balance = service.get_credit_balance(tenant_id, customer_package_id)
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return CreditBalanceResponse(balance=balance)


@router.get("/packages/{customer_package_id}/redemptions", response_model=RedemptionListResponse)
def list_package_redemptions(
    customer_package_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    start_date: Optional[date] = Query(default=None, alias="startDate"),
    end_date: Optional[date] = Query(default=None, alias="endDate"),
    tenant_id: str = Header(alias="X-Tenant-ID"),
) -> RedemptionListResponse:
    service = benefits_service.get_package_service()
    try:
        result = service.list_redemptions(
            tenant_id,
            customer_package_id,
            page=page,
            limit=limit,
            start_date=start_date,
            end_date=end_date,
        )
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return RedemptionListResponse.from_result(result)


# Resolution and redemption -------------------------------------------------


@router.post("/resolve", response_model=BenefitResolution)
def resolve_benefits(
    payload: ResolveBenefitsRequest,
    tenant_id: str = Header(alias="X-Tenant-ID"),
) -> BenefitResolution:
    resolver = benefits_service.get_benefit_resolver()
    return resolver.resolve(
        tenant_id,
        customer_id=payload.customer_id,
        branch_id=payload.branch_id,
        services=[line.to_request() for line in payload.services],
    )


@router.get("/customers/{customer_id}/summary", response_model=BenefitSummary)
def get_benefit_summary(
    customer_id: str,
    branch_id: str = Query(alias="branchId"),
    tenant_id: str = Header(alias="X-Tenant-ID"),
) -> BenefitSummary:
    resolver = benefits_service.get_benefit_resolver()
    return resolver.summarize(tenant_id, customer_id=customer_id, branch_id=branch_id)


@router.post(
    "/redemptions/membership-discount",
    response_model=MembershipUsageResponse,
    status_code=status.HTTP_201_CREATED,
)
def apply_membership_discount(
    payload: ApplyMembershipDiscountRequest,
    tenant_id: str = Header(alias="X-Tenant-ID"),
    user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> MembershipUsageResponse:
    ledger = benefits_service.get_redemption_ledger()
    try:
        usage = ledger.apply_membership_discount(
            tenant_id,
            membership_id=payload.membership_id,
            invoice_id=payload.invoice_id,
            invoice_item_id=payload.invoice_item_id,
            service_id=payload.service_id,
            service_name=payload.service_name,
            original_amount=payload.original_amount,
            discount_amount=payload.discount_amount,
            benefit_type=payload.benefit_type,
            is_complimentary=payload.is_complimentary,
            complimentary_benefit_id=payload.complimentary_benefit_id,
            created_by=user_id,
        )
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return MembershipUsageResponse(usage=usage)


@router.post(
    "/redemptions/package-credits",
    response_model=RedemptionResponse,
    status_code=status.HTTP_201_CREATED,
)
def redeem_package_credits(
    payload: RedeemPackageCreditsRequest,
    tenant_id: str = Header(alias="X-Tenant-ID"),
    user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
) -> RedemptionResponse:
    ledger = benefits_service.get_redemption_ledger()
    try:
        result = ledger.redeem_package_credits(
            tenant_id,
            customer_package_id=payload.customer_package_id,
            invoice_id=payload.invoice_id,
            invoice_item_id=payload.invoice_item_id,
            service_id=payload.service_id,
            service_name=payload.service_name,
            credits_to_use=payload.credits_to_use,
            value_to_use=payload.value_to_use,
            stylist_id=payload.stylist_id,
            created_by=user_id,
        )
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return RedemptionResponse.from_result(result)


# Policy and maintenance ----------------------------------------------------


@router.get("/config", response_model=MembershipConfig)
def get_config(tenant_id: str = Header(alias="X-Tenant-ID")) -> MembershipConfig:
    return benefits_service.get_policy_store().get_config(tenant_id)


@router.patch("/config", response_model=MembershipConfig)
def update_config(
    payload: MembershipConfigUpdate,
    tenant_id: str = Header(alias="X-Tenant-ID"),
) -> MembershipConfig:
    policy = benefits_service.get_policy_store()
    try:
        return policy.update_config(tenant_id, payload.changes())
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc


@router.post("/config/reset", response_model=MembershipConfig)
def reset_config(tenant_id: str = Header(alias="X-Tenant-ID")) -> MembershipConfig:
    return benefits_service.get_policy_store().reset_config(tenant_id)


@router.post("/maintenance/expire", response_model=ExpirySweepResponse)
def expire_lapsed(tenant_id: str = Header(alias="X-Tenant-ID")) -> ExpirySweepResponse:
    try:
        memberships = benefits_service.get_membership_service().expire_lapsed(tenant_id)
        packages = benefits_service.get_package_service().expire_lapsed(tenant_id)
    except BenefitEngineError as exc:
        raise exc.to_http_exception() from exc
    return ExpirySweepResponse.from_expired(memberships, packages)
