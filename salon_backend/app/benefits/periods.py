"""Calendar arithmetic for validity periods, freezes and prorated refunds."""
from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

from dateutil.relativedelta import relativedelta

from .models import RefundPolicy, Validity, ValidityUnit, to_money


def add_validity(start: date, validity: Validity) -> date:
    """Return the expiry date for a validity period starting on ``start``.

    Months and years follow the calendar (``Jan 31 + 1 month`` is ``Feb 28``)
    rather than fixed-length approximations.
    """

    if validity.unit == ValidityUnit.DAYS:
        return start + timedelta(days=validity.value)
    if validity.unit == ValidityUnit.YEARS:
        return start + relativedelta(years=validity.value)
    return start + relativedelta(months=validity.value)


def days_between(later: date, earlier: date) -> int:
    return (later - earlier).days


def inclusive_days(start: date, end: date) -> int:
    """Number of calendar days in ``[start, end]``."""

    return days_between(end, start) + 1


def prorated_refund(price_paid: Decimal, activation_date: date, expiry_date: date, today: date) -> Decimal:
    """Straight-line daily refund of ``price_paid`` for the unused days."""

    total_days = days_between(expiry_date, activation_date)
    if total_days <= 0:
        return Decimal("0")
    used_days = max(0, days_between(today, activation_date))
    remaining_days = max(0, total_days - used_days)
    return Decimal(price_paid) * remaining_days / total_days


def apply_refund_policy(
    gross_refund: Decimal,
    policy: RefundPolicy,
    cancellation_fee_percentage: Decimal,
) -> Decimal:
    """Apply the tenant refund policy and round the result to cents."""

    if policy == RefundPolicy.NON_REFUNDABLE:
        return to_money(0)
    refund = Decimal(gross_refund)
    if policy == RefundPolicy.PARTIAL and cancellation_fee_percentage:
        fee = refund * Decimal(cancellation_fee_percentage) / 100
        refund = max(Decimal("0"), refund - fee)
    return to_money(max(Decimal("0"), refund))
