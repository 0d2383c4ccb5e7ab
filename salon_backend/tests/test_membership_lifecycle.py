"""Tests for selling, freezing and cancelling memberships."""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import List

import pytest

from salon_backend.app.benefits import (
    BadRequestError,
    BenefitAuditEvent,
    BenefitAuditEventType,
    BenefitType,
    BranchScope,
    Customer,
    MembershipBenefit,
    MembershipLifecycleService,
    MembershipPlan,
    MembershipStatus,
    NotFoundError,
    PolicyStore,
    RedemptionLedger,
    RefundPolicy,
    Validity,
    ValidityUnit,
)
from salon_backend.app.benefits.memory import InMemoryBenefitCatalog, InMemoryBenefitStore
from salon_backend.app.benefits.store import BenefitEventLogger, BenefitNotifier

TENANT = "tenant-1"
BRANCH = "branch-1"
OTHER_BRANCH = "branch-2"


class FixedClock:
    def __init__(self, day: date) -> None:
        self.set(day)

    def set(self, day: date) -> None:
        self.moment = datetime.combine(day, time(10, 0), tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.moment


class FakeEventLogger(BenefitEventLogger):
    def __init__(self) -> None:
        self.events: List[BenefitAuditEvent] = []

    def log(self, event: BenefitAuditEvent) -> None:
        self.events.append(event)


class FakeNotifier(BenefitNotifier):
    def notify_low_balance(self, customer_package, credit) -> None:
        pass

    def notify_package_exhausted(self, customer_package) -> None:
        pass


def _gold_plan(**overrides) -> MembershipPlan:
    data = dict(
        id="plan-gold",
        tenant_id=TENANT,
        name="Gold",
        tier="gold",
        price=Decimal("1200"),
        gst_rate=Decimal("18"),
        validity=Validity(value=12, unit=ValidityUnit.MONTHS),
        benefits=(
            MembershipBenefit(
                id="benefit-flat",
                type=BenefitType.FLAT_DISCOUNT,
                discount_type="percentage",
                discount_value=Decimal("10"),
            ),
        ),
        sale_commission_type="percentage",
        sale_commission_value=Decimal("5"),
    )
    data.update(overrides)
    return MembershipPlan(**data)


@pytest.fixture
def membership_components():
    store = InMemoryBenefitStore()
    catalog = InMemoryBenefitCatalog()
    catalog.add_customer(Customer(id="cust-1", tenant_id=TENANT, name="Asha"))
    catalog.add_plan(_gold_plan())
    catalog.add_invoice(TENANT, "inv-1", BRANCH)
    catalog.tenant_slugs[TENANT] = "salon-one"
    clock = FixedClock(date(2025, 1, 15))
    events = FakeEventLogger()
    policy = PolicyStore(repository=store, clock=clock)
    service = MembershipLifecycleService(
        repository=store,
        catalog=catalog,
        policy=policy,
        event_logger=events,
        clock=clock,
    )
    return store, catalog, clock, events, policy, service


def test_sell_membership_prices_and_numbers_the_sale(membership_components):
    store, _, _, events, _, service = membership_components

    membership = service.sell_membership(
        TENANT,
        customer_id="cust-1",
        plan_id="plan-gold",
        branch_id=BRANCH,
        staff_id="staff-7",
        created_by="user-1",
    )

    assert membership.membership_number == "MEM-SALO-202501-0001"
    assert membership.status == MembershipStatus.ACTIVE
    assert membership.activation_date == date(2025, 1, 15)
    assert membership.original_expiry_date == date(2026, 1, 15)
    assert membership.current_expiry_date == date(2026, 1, 15)
    assert membership.price_paid == Decimal("1200.00")
    assert membership.gst_paid == Decimal("216.00")
    assert membership.total_paid == Decimal("1416.00")
    assert membership.sale_commission_amount == Decimal("60.00")
    assert membership.sale_commission_staff_id == "staff-7"
    assert store.get_membership(TENANT, membership.id) == membership
    assert events.events[-1].event_type == BenefitAuditEventType.MEMBERSHIP_SOLD
    assert events.events[-1].actor_id == "user-1"


def test_sell_membership_numbers_increase_within_the_month(membership_components):
    _, catalog, _, _, _, service = membership_components
    catalog.add_customer(Customer(id="cust-2", tenant_id=TENANT))

    first = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)
    second = service.sell_membership(TENANT, customer_id="cust-2", plan_id="plan-gold", branch_id=BRANCH)

    assert first.membership_number == "MEM-SALO-202501-0001"
    assert second.membership_number == "MEM-SALO-202501-0002"


def test_sell_membership_uses_default_code_without_tenant_slug(membership_components):
    _, catalog, _, _, _, service = membership_components
    catalog.tenant_slugs.clear()

    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    assert membership.membership_number == "MEM-SALN-202501-0001"


def test_commission_requires_staff(membership_components):
    *_, service = membership_components

    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    assert membership.sale_commission_amount is None
    assert membership.sale_commission_staff_id is None


def test_sell_membership_rejects_duplicate_open_membership(membership_components):
    *_, service = membership_components
    service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    with pytest.raises(BadRequestError) as excinfo:
        service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    assert excinfo.value.code == "MEMBERSHIP_EXISTS"


def test_sell_membership_rejects_ineligible_branch(membership_components):
    _, catalog, _, _, _, service = membership_components
    catalog.add_plan(
        _gold_plan(
            id="plan-local",
            branch_scope=BranchScope.SPECIFIC_BRANCHES,
            branch_ids=frozenset({BRANCH}),
        )
    )

    with pytest.raises(BadRequestError) as excinfo:
        service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-local", branch_id=OTHER_BRANCH)

    assert excinfo.value.code == "BRANCH_NOT_ELIGIBLE"
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-local", branch_id=BRANCH)
    assert membership.purchase_branch_id == BRANCH


def test_sell_membership_requires_known_customer_and_active_plan(membership_components):
    _, catalog, _, _, _, service = membership_components
    catalog.add_plan(_gold_plan(id="plan-retired", is_active=False))
    catalog.add_customer(
        Customer(id="cust-gone", tenant_id=TENANT, deleted_at=datetime(2024, 12, 1, tzinfo=timezone.utc))
    )

    with pytest.raises(NotFoundError) as missing_customer:
        service.sell_membership(TENANT, customer_id="cust-gone", plan_id="plan-gold", branch_id=BRANCH)
    with pytest.raises(NotFoundError) as inactive_plan:
        service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-retired", branch_id=BRANCH)
    with pytest.raises(NotFoundError) as other_tenant:
        service.sell_membership("tenant-2", customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    assert missing_customer.value.code == "CUSTOMER_NOT_FOUND"
    assert inactive_plan.value.code == "PLAN_NOT_FOUND"
    assert other_tenant.value.code == "CUSTOMER_NOT_FOUND"


def test_freeze_then_early_unfreeze_restores_unused_days(membership_components):
    _, _, clock, events, _, service = membership_components
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    clock.set(date(2025, 5, 20))
    frozen = service.freeze_membership(
        TENANT,
        membership.id,
        freeze_start_date=date(2025, 6, 1),
        freeze_end_date=date(2025, 6, 10),
        reason_code="travel",
        requested_by="user-1",
    )

    assert frozen.freeze.freeze_days == 10
    assert frozen.membership.status == MembershipStatus.FROZEN
    assert frozen.membership.current_expiry_date == date(2026, 1, 25)
    assert frozen.membership.total_freeze_days_used == 10
    assert frozen.remaining_freeze_days == 20

    clock.set(date(2025, 6, 5))
    result = service.unfreeze_membership(TENANT, membership.id, actor_id="user-1")

    assert result.actual_freeze_days == 5
    assert result.unused_freeze_days == 5
    assert result.membership.status == MembershipStatus.ACTIVE
    assert result.membership.current_expiry_date == date(2026, 1, 20)
    assert result.membership.total_freeze_days_used == 5
    assert result.membership.original_expiry_date == date(2026, 1, 15)
    assert result.freeze.status.value == "completed"
    assert result.freeze.actual_end_date == date(2025, 6, 5)
    assert [event.event_type for event in events.events][-2:] == [
        BenefitAuditEventType.MEMBERSHIP_FROZEN,
        BenefitAuditEventType.MEMBERSHIP_UNFROZEN,
    ]


def test_unfreeze_after_planned_end_keeps_full_extension(membership_components):
    _, _, clock, _, _, service = membership_components
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)
    service.freeze_membership(
        TENANT,
        membership.id,
        freeze_start_date=date(2025, 2, 1),
        freeze_end_date=date(2025, 2, 7),
        reason_code="medical",
    )

    clock.set(date(2025, 2, 20))
    result = service.unfreeze_membership(TENANT, membership.id)

    assert result.actual_freeze_days == 7
    assert result.unused_freeze_days == 0
    assert result.membership.current_expiry_date == date(2026, 1, 22)
    assert result.freeze.actual_end_date == date(2025, 2, 7)


def test_freeze_and_unfreeze_round_trip_restores_expiry(membership_components):
    _, _, clock, _, _, service = membership_components
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)
    service.freeze_membership(
        TENANT,
        membership.id,
        freeze_start_date=date(2025, 3, 1),
        freeze_end_date=date(2025, 3, 14),
        reason_code="travel",
    )

    result = service.unfreeze_membership(TENANT, membership.id)

    assert result.actual_freeze_days == 0
    assert result.membership.current_expiry_date == membership.current_expiry_date
    assert result.membership.total_freeze_days_used == 0
    assert result.freeze.actual_freeze_days == 0
    assert result.freeze.actual_end_date is None


def test_freeze_respects_yearly_limit(membership_components):
    store, _, _, _, policy, service = membership_components
    policy.update_config(TENANT, {"max_freeze_days_per_year": 12})
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    with pytest.raises(BadRequestError) as excinfo:
        service.freeze_membership(
            TENANT,
            membership.id,
            freeze_start_date=date(2025, 2, 1),
            freeze_end_date=date(2025, 2, 13),
            reason_code="travel",
        )

    assert excinfo.value.code == "FREEZE_LIMIT_EXCEEDED"
    assert excinfo.value.payload["remaining_freeze_days"] == 12
    unchanged = store.get_membership(TENANT, membership.id)
    assert unchanged.status == MembershipStatus.ACTIVE
    assert store.list_freezes(TENANT, membership.id) == []


def test_freeze_rejects_reversed_dates_and_frozen_membership(membership_components):
    *_, service = membership_components
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    with pytest.raises(BadRequestError) as reversed_range:
        service.freeze_membership(
            TENANT,
            membership.id,
            freeze_start_date=date(2025, 2, 10),
            freeze_end_date=date(2025, 2, 1),
            reason_code="travel",
        )
    assert reversed_range.value.code == "INVALID_DATE_RANGE"

    service.freeze_membership(
        TENANT,
        membership.id,
        freeze_start_date=date(2025, 2, 1),
        freeze_end_date=date(2025, 2, 3),
        reason_code="travel",
    )
    with pytest.raises(NotFoundError) as already_frozen:
        service.freeze_membership(
            TENANT,
            membership.id,
            freeze_start_date=date(2025, 3, 1),
            freeze_end_date=date(2025, 3, 3),
            reason_code="travel",
        )
    assert already_frozen.value.code == "MEMBERSHIP_NOT_FOUND"


def test_unfreeze_requires_frozen_membership_with_active_freeze(membership_components):
    store, _, _, _, _, service = membership_components
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    with pytest.raises(NotFoundError) as not_frozen:
        service.unfreeze_membership(TENANT, membership.id)
    assert not_frozen.value.message == "Frozen membership not found"

    store.update_membership(membership.model_copy(update={"status": MembershipStatus.FROZEN}))
    with pytest.raises(BadRequestError) as no_freeze:
        service.unfreeze_membership(TENANT, membership.id)
    assert no_freeze.value.code == "NO_ACTIVE_FREEZE"


def test_cancel_membership_prorates_refund_on_original_window(membership_components):
    _, _, clock, events, _, service = membership_components
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)
    service.freeze_membership(
        TENANT,
        membership.id,
        freeze_start_date=date(2025, 3, 1),
        freeze_end_date=date(2025, 3, 10),
        reason_code="travel",
    )

    clock.set(date(2025, 1, 15) + timedelta(days=100))
    cancelled = service.cancel_membership(TENANT, membership.id, reason="moving", cancelled_by="user-1")

    # 1200 / 365 * 265 = 871.23, less a 10% fee of 87.12.
    assert cancelled.refund_amount == Decimal("784.11")
    assert cancelled.status == MembershipStatus.CANCELLED
    assert cancelled.cancellation_reason == "moving"
    assert cancelled.cancelled_by == "user-1"
    assert events.events[-1].event_type == BenefitAuditEventType.MEMBERSHIP_CANCELLED

    with pytest.raises(NotFoundError):
        service.cancel_membership(TENANT, membership.id)


@pytest.mark.parametrize(
    "refund_policy, expected",
    [
        (RefundPolicy.NON_REFUNDABLE, Decimal("0.00")),
        (RefundPolicy.REFUNDABLE, Decimal("871.23")),
    ],
)
def test_cancel_membership_honours_refund_policy(membership_components, refund_policy, expected):
    _, _, clock, _, policy, service = membership_components
    policy.update_config(TENANT, {"refund_policy": refund_policy})
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    clock.set(date(2025, 4, 25))
    cancelled = service.cancel_membership(TENANT, membership.id)

    assert cancelled.refund_amount == expected


def test_cancel_after_expiry_window_refunds_nothing(membership_components):
    _, _, clock, _, _, service = membership_components
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    clock.set(date(2026, 1, 14))
    service.freeze_membership(
        TENANT,
        membership.id,
        freeze_start_date=date(2026, 1, 14),
        freeze_end_date=date(2026, 1, 20),
        reason_code="travel",
    )
    clock.set(date(2026, 1, 18))
    cancelled = service.cancel_membership(TENANT, membership.id)

    assert cancelled.refund_amount == Decimal("0.00")


def test_cancel_frozen_membership_closes_its_freeze(membership_components):
    store, _, clock, _, _, service = membership_components
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)
    service.freeze_membership(
        TENANT,
        membership.id,
        freeze_start_date=date(2025, 6, 1),
        freeze_end_date=date(2025, 6, 10),
        reason_code="travel",
    )

    clock.set(date(2025, 6, 4))
    service.cancel_membership(TENANT, membership.id, reason="moving")

    assert store.get_active_freeze(TENANT, membership.id) is None
    [freeze] = store.list_freezes(TENANT, membership.id)
    assert freeze.status.value == "cancelled"
    assert freeze.actual_freeze_days == 4
    assert freeze.actual_end_date == date(2025, 6, 4)


def test_expire_lapsed_completes_freeze_of_frozen_membership(membership_components):
    store, _, clock, _, _, service = membership_components
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)
    clock.set(date(2026, 1, 10))
    service.freeze_membership(
        TENANT,
        membership.id,
        freeze_start_date=date(2026, 1, 10),
        freeze_end_date=date(2026, 1, 16),
        reason_code="medical",
    )

    clock.set(date(2026, 1, 25))
    expired = service.expire_lapsed(TENANT)

    assert [item.id for item in expired] == [membership.id]
    assert expired[0].status == MembershipStatus.EXPIRED
    assert store.get_active_freeze(TENANT, membership.id) is None
    [freeze] = store.list_freezes(TENANT, membership.id)
    assert freeze.status.value == "completed"
    assert freeze.actual_freeze_days == 7
    assert freeze.actual_end_date == date(2026, 1, 16)


def test_expire_lapsed_moves_memberships_past_expiry(membership_components):
    store, catalog, clock, events, _, service = membership_components
    catalog.add_customer(Customer(id="cust-2", tenant_id=TENANT))
    lapsed = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)
    clock.set(date(2025, 6, 1))
    current = service.sell_membership(TENANT, customer_id="cust-2", plan_id="plan-gold", branch_id=BRANCH)

    clock.set(date(2026, 1, 16))
    expired = service.expire_lapsed(TENANT)

    assert [membership.id for membership in expired] == [lapsed.id]
    assert store.get_membership(TENANT, lapsed.id).status == MembershipStatus.EXPIRED
    assert store.get_membership(TENANT, current.id).status == MembershipStatus.ACTIVE
    assert events.events[-1].event_type == BenefitAuditEventType.MEMBERSHIP_EXPIRED
    assert service.expire_lapsed(TENANT) == []


def test_membership_on_last_day_is_not_expired(membership_components):
    store, _, clock, _, _, service = membership_components
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    clock.set(date(2026, 1, 15))

    assert service.expire_lapsed(TENANT) == []
    assert store.get_membership(TENANT, membership.id).status == MembershipStatus.ACTIVE


def test_get_membership_includes_plan_freezes_and_usage(membership_components):
    store, catalog, clock, events, policy, service = membership_components
    ledger = RedemptionLedger(
        repository=store,
        catalog=catalog,
        policy=policy,
        event_logger=events,
        notifier=FakeNotifier(),
        clock=clock,
    )
    membership = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)
    for start in (date(2025, 2, 1), date(2025, 3, 1)):
        clock.set(start)
        service.freeze_membership(
            TENANT,
            membership.id,
            freeze_start_date=start,
            freeze_end_date=start + timedelta(days=2),
            reason_code="travel",
        )
        clock.set(start + timedelta(days=2))
        service.unfreeze_membership(TENANT, membership.id)
    ledger.apply_membership_discount(
        TENANT,
        membership_id=membership.id,
        invoice_id="inv-1",
        service_name="Haircut",
        original_amount=Decimal("500"),
        discount_amount=Decimal("50"),
        benefit_type=BenefitType.FLAT_DISCOUNT,
    )

    detail = service.get_membership(TENANT, membership.id)

    assert detail.plan is not None and detail.plan.name == "Gold"
    assert [freeze.freeze_start_date for freeze in detail.freezes] == [date(2025, 3, 1), date(2025, 2, 1)]
    assert detail.usage_count == 1

    with pytest.raises(NotFoundError) as excinfo:
        service.get_membership("tenant-2", membership.id)
    assert excinfo.value.code == "MEMBERSHIP_NOT_FOUND"


def test_list_customer_memberships_returns_open_memberships_by_expiry(membership_components):
    _, catalog, clock, _, _, service = membership_components
    catalog.add_plan(_gold_plan(id="plan-silver", name="Silver", validity=Validity(value=3, unit=ValidityUnit.MONTHS)))
    catalog.add_plan(_gold_plan(id="plan-bronze", name="Bronze"))
    gold = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)
    silver = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-silver", branch_id=BRANCH)
    bronze = service.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-bronze", branch_id=BRANCH)
    service.cancel_membership(TENANT, bronze.id)

    listed = service.list_customer_memberships(TENANT, "cust-1")

    assert [membership.id for membership in listed] == [silver.id, gold.id]
