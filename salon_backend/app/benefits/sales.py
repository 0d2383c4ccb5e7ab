"""Checks and amounts shared by membership and package sales."""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Union

from .exceptions import BRANCH_NOT_ELIGIBLE, CUSTOMER_NOT_FOUND, BadRequestError, NotFoundError
from .models import CommissionType, Customer, MembershipPlan, Package, to_money
from .numbering import DEFAULT_TENANT_CODE, tenant_code
from .store import BenefitCatalog

Sellable = Union[MembershipPlan, Package]


@dataclass(frozen=True)
class SaleAmounts:
    price_paid: Decimal
    gst_paid: Decimal
    total_paid: Decimal
    commission: Optional[Decimal] = None


def gst_amount(price: Decimal, rate: Decimal) -> Decimal:
    return to_money(Decimal(price) * Decimal(rate) / 100)


def commission_amount(
    price: Decimal,
    commission_type: Optional[CommissionType],
    commission_value: Optional[Decimal],
    staff_id: Optional[str],
) -> Optional[Decimal]:
    """Sale commission owed to ``staff_id``, or ``None`` when nobody earns one."""

    if not staff_id or commission_type is None or commission_value is None:
        return None
    if commission_type == CommissionType.PERCENTAGE:
        return to_money(Decimal(price) * Decimal(commission_value) / 100)
    return to_money(commission_value)


def price_sale(item: Sellable, staff_id: Optional[str]) -> SaleAmounts:
    price = to_money(item.price)
    gst = gst_amount(price, item.gst_rate)
    return SaleAmounts(
        price_paid=price,
        gst_paid=gst,
        total_paid=to_money(price + gst),
        commission=commission_amount(price, item.sale_commission_type, item.sale_commission_value, staff_id),
    )


def require_customer(catalog: BenefitCatalog, tenant_id: str, customer_id: str) -> Customer:
    customer = catalog.get_customer(tenant_id, customer_id)
    if customer is None or customer.deleted_at is not None:
        raise NotFoundError(code=CUSTOMER_NOT_FOUND, message="Customer not found")
    return customer


def require_branch(item: Sellable, branch_id: str, *, label: str) -> None:
    if not item.is_available_at(branch_id):
        raise BadRequestError(
            code=BRANCH_NOT_ELIGIBLE,
            message=f"This {label} is not available at the selected branch",
            detail={"branch_id": branch_id},
        )


def resolve_tenant_code(catalog: BenefitCatalog, tenant_id: str, default: str = DEFAULT_TENANT_CODE) -> str:
    return tenant_code(catalog.get_tenant_slug(tenant_id), default=default)
