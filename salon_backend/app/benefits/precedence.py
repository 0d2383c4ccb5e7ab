"""Caller-side precedence strategies over a resolved service benefit."""
from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from .models import Precedence, to_money
from .resolver import ServiceBenefit


class BenefitSource(str, Enum):
    PACKAGE_CREDIT = "package"
    VALUE_PACKAGE = "value_package"
    MEMBERSHIP = "membership"


class AppliedBenefit(BaseModel):
    """The benefit a caller should redeem for one service line."""

    source: BenefitSource
    service_id: str
    subject_id: str
    covered_amount: Decimal
    final_price: Decimal
    package_credit_id: Optional[str] = None
    is_complimentary: bool = False

    model_config = ConfigDict(frozen=True)


def _package_credit(benefit: ServiceBenefit) -> Optional[AppliedBenefit]:
    match = benefit.package_credit
    if match is None:
        return None
    return AppliedBenefit(
        source=BenefitSource.PACKAGE_CREDIT,
        service_id=benefit.service_id,
        subject_id=match.customer_package_id,
        covered_amount=to_money(benefit.original_price),
        final_price=to_money(0),
        package_credit_id=match.package_credit_id,
    )


def _value_package(benefit: ServiceBenefit) -> Optional[AppliedBenefit]:
    match = benefit.value_package
    if match is None:
        return None
    covered = to_money(min(match.remaining_value, benefit.original_price))
    return AppliedBenefit(
        source=BenefitSource.VALUE_PACKAGE,
        service_id=benefit.service_id,
        subject_id=match.customer_package_id,
        covered_amount=covered,
        final_price=to_money(benefit.original_price - covered),
    )


def _membership(benefit: ServiceBenefit) -> Optional[AppliedBenefit]:
    match = benefit.membership_discount
    if match is None:
        return None
    return AppliedBenefit(
        source=BenefitSource.MEMBERSHIP,
        service_id=benefit.service_id,
        subject_id=match.membership_id,
        covered_amount=match.discount_amount,
        final_price=match.final_price,
        is_complimentary=match.is_complimentary,
    )


_OPTIONS: Dict[BenefitSource, Callable[[ServiceBenefit], Optional[AppliedBenefit]]] = {
    BenefitSource.PACKAGE_CREDIT: _package_credit,
    BenefitSource.VALUE_PACKAGE: _value_package,
    BenefitSource.MEMBERSHIP: _membership,
}


def _package_first(benefit: ServiceBenefit, choice: Optional[BenefitSource]) -> Optional[AppliedBenefit]:
    return _package_credit(benefit) or _value_package(benefit) or _membership(benefit)


def _membership_only(benefit: ServiceBenefit, choice: Optional[BenefitSource]) -> Optional[AppliedBenefit]:
    return _membership(benefit)


def _customer_choice(benefit: ServiceBenefit, choice: Optional[BenefitSource]) -> Optional[AppliedBenefit]:
    if choice is None:
        return None
    return _OPTIONS[choice](benefit)


STRATEGIES: Dict[Precedence, Callable[[ServiceBenefit, Optional[BenefitSource]], Optional[AppliedBenefit]]] = {
    Precedence.PACKAGE_FIRST: _package_first,
    Precedence.MEMBERSHIP_ONLY: _membership_only,
    Precedence.CUSTOMER_CHOICE: _customer_choice,
}


def choose_benefit(
    benefit: ServiceBenefit,
    precedence: Precedence,
    *,
    customer_choice: Optional[BenefitSource] = None,
) -> Optional[AppliedBenefit]:
    """Pick the benefit to redeem under the tenant precedence rule.

    ``None`` means nothing applies, or under ``customer_choice`` that the
    customer still has to be asked.
    """

    return STRATEGIES[precedence](benefit, customer_choice)
