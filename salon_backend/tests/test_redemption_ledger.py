"""Tests for membership usage and package redemption bookkeeping."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import List, Tuple

import pytest

from salon_backend.app.benefits import (
    BadRequestError,
    BenefitAuditEvent,
    BenefitAuditEventType,
    BenefitEngineError,
    BenefitResolver,
    BenefitType,
    ConflictError,
    Customer,
    CustomerPackage,
    MembershipLifecycleService,
    MembershipPlan,
    MembershipStatus,
    NotFoundError,
    Package,
    PackageCredit,
    PackageLifecycleService,
    PackageService,
    PackageStatus,
    PackageType,
    PolicyStore,
    RedemptionLedger,
    ServiceRequest,
    TransactionConflictError,
    Validity,
    ValidityUnit,
)
from salon_backend.app.benefits.memory import InMemoryBenefitCatalog, InMemoryBenefitStore
from salon_backend.app.benefits.store import BenefitEventLogger, BenefitNotifier

TENANT = "tenant-1"
BRANCH = "branch-1"


class FixedClock:
    def __init__(self, day: date) -> None:
        self.set(day)

    def set(self, day: date) -> None:
        self.moment = datetime.combine(day, time(11, 0), tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.moment


class FakeEventLogger(BenefitEventLogger):
    def __init__(self) -> None:
        self.events: List[BenefitAuditEvent] = []

    def log(self, event: BenefitAuditEvent) -> None:
        self.events.append(event)

    def types(self) -> List[BenefitAuditEventType]:
        return [event.event_type for event in self.events]


class FakeNotifier(BenefitNotifier):
    def __init__(self) -> None:
        self.low_balance: List[Tuple[str, int]] = []
        self.exhausted: List[str] = []

    def notify_low_balance(self, customer_package: CustomerPackage, credit: PackageCredit) -> None:
        self.low_balance.append((customer_package.id, credit.remaining_credits))

    def notify_package_exhausted(self, customer_package: CustomerPackage) -> None:
        self.exhausted.append(customer_package.id)


class FlakyStore(InMemoryBenefitStore):
    """Rejects the next ``conflicts`` transactions at commit time."""

    def __init__(self) -> None:
        super().__init__()
        self.conflicts = 0
        self.attempts = 0

    @contextmanager
    def transaction(self):
        with super().transaction() as tx:
            self.attempts += 1
            yield tx
            if self.conflicts > 0:
                self.conflicts -= 1
                raise TransactionConflictError("could not serialize access due to concurrent update")


@pytest.fixture
def ledger_components():
    store = FlakyStore()
    catalog = InMemoryBenefitCatalog()
    catalog.add_customer(Customer(id="cust-1", tenant_id=TENANT))
    catalog.add_plan(
        MembershipPlan(
            id="plan-gold",
            tenant_id=TENANT,
            name="Gold",
            price=Decimal("1200"),
            validity=Validity(value=12, unit=ValidityUnit.MONTHS),
        )
    )
    catalog.add_package(
        Package(
            id="pkg-value",
            tenant_id=TENANT,
            name="Wallet 500",
            package_type=PackageType.VALUE_PACKAGE,
            price=Decimal("450"),
            credit_value=Decimal("500"),
            validity=Validity(value=6, unit=ValidityUnit.MONTHS),
        )
    )
    catalog.add_package(
        Package(
            id="pkg-cuts",
            tenant_id=TENANT,
            name="Three Cuts",
            package_type=PackageType.SERVICE_PACKAGE,
            price=Decimal("800"),
            validity=Validity(value=3, unit=ValidityUnit.MONTHS),
            services=(PackageService(id="ps-cut", service_id="svc-cut", credit_count=3, locked_price=Decimal("300")),),
        )
    )
    catalog.add_package(
        Package(
            id="pkg-single",
            tenant_id=TENANT,
            name="One Facial",
            package_type=PackageType.SERVICE_PACKAGE,
            price=Decimal("900"),
            validity=Validity(value=1, unit=ValidityUnit.MONTHS),
            services=(
                PackageService(id="ps-facial", service_id="svc-facial", credit_count=1, locked_price=Decimal("1000")),
            ),
        )
    )
    for number in range(1, 21):
        catalog.add_invoice(TENANT, f"inv-{number}", BRANCH)
    clock = FixedClock(date(2025, 1, 15))
    events = FakeEventLogger()
    notifier = FakeNotifier()
    policy = PolicyStore(repository=store, clock=clock)
    memberships = MembershipLifecycleService(
        repository=store, catalog=catalog, policy=policy, event_logger=events, clock=clock
    )
    packages = PackageLifecycleService(
        repository=store, catalog=catalog, policy=policy, event_logger=events, clock=clock
    )
    ledger = RedemptionLedger(
        repository=store,
        catalog=catalog,
        policy=policy,
        event_logger=events,
        notifier=notifier,
        clock=clock,
    )
    return store, catalog, clock, events, notifier, memberships, packages, ledger


def _sell(packages: PackageLifecycleService, package_id: str) -> CustomerPackage:
    return packages.sell_package(TENANT, customer_id="cust-1", package_id=package_id, branch_id=BRANCH).customer_package


def test_value_package_spends_down_to_zero(ledger_components):
    store, _, _, events, _, _, packages, ledger = ledger_components
    wallet = _sell(packages, "pkg-value")

    result = ledger.redeem_package_credits(
        TENANT,
        customer_package_id=wallet.id,
        invoice_id="inv-1",
        service_id="svc-cut",
        service_name="Haircut",
        value_to_use=Decimal("500"),
        stylist_id="stylist-1",
    )

    assert result.customer_package.remaining_credit_value == Decimal("0.00")
    assert result.customer_package.total_redeemed_value == Decimal("500.00")
    assert result.customer_package.total_redemptions == 1
    assert result.customer_package.status == PackageStatus.ACTIVE
    assert result.redemption.value_used == Decimal("500.00")
    assert result.redemption.locked_price == Decimal("500.00")
    assert result.redemption.redemption_branch_id == BRANCH
    assert result.exhausted is False
    assert events.types()[-1] == BenefitAuditEventType.PACKAGE_CREDITS_REDEEMED

    with pytest.raises(BadRequestError) as excinfo:
        ledger.redeem_package_credits(
            TENANT,
            customer_package_id=wallet.id,
            invoice_id="inv-2",
            service_id="svc-cut",
            service_name="Haircut",
            value_to_use=Decimal("0.01"),
        )
    assert excinfo.value.code == "INSUFFICIENT_VALUE"
    _, total = store.list_redemptions(TENANT, wallet.id, limit=0)
    assert total == 1


def test_value_redemption_requires_positive_amount(ledger_components):
    *_, packages, ledger = ledger_components
    wallet = _sell(packages, "pkg-value")

    for value in (None, Decimal("0"), Decimal("-5")):
        with pytest.raises(BadRequestError) as excinfo:
            ledger.redeem_package_credits(
                TENANT,
                customer_package_id=wallet.id,
                invoice_id="inv-1",
                service_id="svc-cut",
                service_name="Haircut",
                value_to_use=value,
            )
        assert excinfo.value.code == "INVALID_REDEMPTION_AMOUNT"


def test_service_credits_exhaust_package(ledger_components):
    store, _, _, events, notifier, _, packages, ledger = ledger_components
    cuts = _sell(packages, "pkg-cuts")

    results = [
        ledger.redeem_package_credits(
            TENANT,
            customer_package_id=cuts.id,
            invoice_id=f"inv-{number}",
            service_id="svc-cut",
            service_name="Haircut",
        )
        for number in (1, 2, 3)
    ]

    assert [result.credit.remaining_credits for result in results] == [2, 1, 0]
    assert [result.exhausted for result in results] == [False, False, True]
    assert all(result.locked_price == Decimal("300.00") for result in results)
    final = store.get_customer_package(TENANT, cuts.id)
    assert final.status == PackageStatus.EXHAUSTED
    assert final.total_redemptions == 3
    assert final.total_redeemed_value == Decimal("900.00")
    assert notifier.low_balance == [(cuts.id, 2), (cuts.id, 1)]
    assert notifier.exhausted == [cuts.id]
    assert events.types()[-1] == BenefitAuditEventType.PACKAGE_EXHAUSTED
    assert packages.list_customer_packages(TENANT, "cust-1") == []

    with pytest.raises(BadRequestError) as excinfo:
        ledger.redeem_package_credits(
            TENANT,
            customer_package_id=cuts.id,
            invoice_id="inv-4",
            service_id="svc-cut",
            service_name="Haircut",
        )
    assert excinfo.value.code == "INSUFFICIENT_CREDITS"


def test_insufficient_credits_leave_balance_untouched(ledger_components):
    store, _, _, _, notifier, _, packages, ledger = ledger_components
    cuts = _sell(packages, "pkg-cuts")

    with pytest.raises(BadRequestError) as excinfo:
        ledger.redeem_package_credits(
            TENANT,
            customer_package_id=cuts.id,
            invoice_id="inv-1",
            service_id="svc-cut",
            service_name="Haircut",
            credits_to_use=4,
        )

    assert excinfo.value.code == "INSUFFICIENT_CREDITS"
    assert excinfo.value.payload["available"] == 3
    assert store.list_package_credits(TENANT, cuts.id)[0].remaining_credits == 3
    assert store.list_redemptions(TENANT, cuts.id) == ([], 0)
    assert store.get_customer_package(TENANT, cuts.id).total_redemptions == 0
    assert notifier.low_balance == []


def test_redeeming_unlisted_service_is_rejected(ledger_components):
    *_, packages, ledger = ledger_components
    cuts = _sell(packages, "pkg-cuts")

    with pytest.raises(BadRequestError) as excinfo:
        ledger.redeem_package_credits(
            TENANT,
            customer_package_id=cuts.id,
            invoice_id="inv-1",
            service_id="svc-color",
            service_name="Colour",
        )
    with pytest.raises(BadRequestError) as zero_credits:
        ledger.redeem_package_credits(
            TENANT,
            customer_package_id=cuts.id,
            invoice_id="inv-1",
            service_id="svc-cut",
            service_name="Haircut",
            credits_to_use=0,
        )

    assert excinfo.value.code == "SERVICE_NOT_IN_PACKAGE"
    assert zero_credits.value.code == "INVALID_REDEMPTION_AMOUNT"


def test_redemption_uses_price_locked_at_sale(ledger_components):
    _, catalog, _, _, _, _, packages, ledger = ledger_components
    cuts = _sell(packages, "pkg-cuts")
    catalog.add_package(
        catalog.packages["pkg-cuts"].model_copy(
            update={
                "services": (
                    PackageService(id="ps-cut", service_id="svc-cut", credit_count=3, locked_price=Decimal("999")),
                )
            }
        )
    )

    result = ledger.redeem_package_credits(
        TENANT,
        customer_package_id=cuts.id,
        invoice_id="inv-1",
        service_id="svc-cut",
        service_name="Haircut",
        credits_to_use=2,
    )

    assert result.locked_price == Decimal("300.00")
    assert result.redemption.credits_used == 2
    assert result.customer_package.total_redeemed_value == Decimal("600.00")


def test_redemption_rejects_unknown_invoice_and_closed_packages(ledger_components):
    _, _, clock, _, _, _, packages, ledger = ledger_components
    wallet = _sell(packages, "pkg-value")
    cancelled = _sell(packages, "pkg-value")
    packages.cancel_package(TENANT, cancelled.id)

    with pytest.raises(NotFoundError) as missing_invoice:
        ledger.redeem_package_credits(
            TENANT,
            customer_package_id=wallet.id,
            invoice_id="inv-404",
            service_id="svc-cut",
            service_name="Haircut",
            value_to_use=Decimal("10"),
        )
    with pytest.raises(NotFoundError) as closed:
        ledger.redeem_package_credits(
            TENANT,
            customer_package_id=cancelled.id,
            invoice_id="inv-1",
            service_id="svc-cut",
            service_name="Haircut",
            value_to_use=Decimal("10"),
        )
    clock.set(date(2025, 7, 16))
    with pytest.raises(NotFoundError) as expired:
        ledger.redeem_package_credits(
            TENANT,
            customer_package_id=wallet.id,
            invoice_id="inv-1",
            service_id="svc-cut",
            service_name="Haircut",
            value_to_use=Decimal("10"),
        )

    assert missing_invoice.value.code == "INVOICE_NOT_FOUND"
    assert closed.value.code == "CUSTOMER_PACKAGE_NOT_FOUND"
    assert expired.value.code == "CUSTOMER_PACKAGE_NOT_FOUND"


def test_concurrent_redemptions_never_overdraw_last_credit(ledger_components):
    store, _, _, _, _, _, packages, ledger = ledger_components
    facial = _sell(packages, "pkg-single")
    barrier = threading.Barrier(6)
    successes: List[str] = []
    failures: List[str] = []

    def redeem(number: int) -> None:
        barrier.wait()
        try:
            result = ledger.redeem_package_credits(
                TENANT,
                customer_package_id=facial.id,
                invoice_id=f"inv-{number}",
                service_id="svc-facial",
                service_name="Facial",
            )
        except BenefitEngineError as exc:
            failures.append(exc.code)
        else:
            successes.append(result.redemption.id)

    threads = [threading.Thread(target=redeem, args=(number,)) for number in range(1, 7)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(successes) == 1
    assert failures == ["INSUFFICIENT_CREDITS"] * 5
    assert store.list_package_credits(TENANT, facial.id)[0].remaining_credits == 0
    assert store.list_redemptions(TENANT, facial.id)[1] == 1
    assert store.get_customer_package(TENANT, facial.id).status == PackageStatus.EXHAUSTED


def test_concurrent_value_redemptions_never_go_negative(ledger_components):
    store, _, _, _, _, _, packages, ledger = ledger_components
    wallet = _sell(packages, "pkg-value")
    barrier = threading.Barrier(8)
    failures: List[str] = []

    def redeem(number: int) -> None:
        barrier.wait()
        try:
            ledger.redeem_package_credits(
                TENANT,
                customer_package_id=wallet.id,
                invoice_id=f"inv-{number}",
                service_id="svc-cut",
                service_name="Haircut",
                value_to_use=Decimal("150"),
            )
        except BenefitEngineError as exc:
            failures.append(exc.code)

    threads = [threading.Thread(target=redeem, args=(number,)) for number in range(1, 9)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert failures == ["INSUFFICIENT_VALUE"] * 5
    final = store.get_customer_package(TENANT, wallet.id)
    assert final.remaining_credit_value == Decimal("50.00")
    assert final.total_redemptions == 3


def test_store_conflict_is_retried_once(ledger_components):
    store, _, _, _, _, _, packages, ledger = ledger_components
    cuts = _sell(packages, "pkg-cuts")
    store.conflicts = 1
    store.attempts = 0

    result = ledger.redeem_package_credits(
        TENANT,
        customer_package_id=cuts.id,
        invoice_id="inv-1",
        service_id="svc-cut",
        service_name="Haircut",
    )

    assert store.attempts == 2
    assert result.credit.remaining_credits == 2
    assert store.list_redemptions(TENANT, cuts.id)[1] == 1


def test_repeated_store_conflicts_surface_as_conflict_error(ledger_components):
    store, _, _, _, _, _, packages, ledger = ledger_components
    cuts = _sell(packages, "pkg-cuts")
    store.conflicts = 2

    with pytest.raises(ConflictError) as excinfo:
        ledger.redeem_package_credits(
            TENANT,
            customer_package_id=cuts.id,
            invoice_id="inv-1",
            service_id="svc-cut",
            service_name="Haircut",
        )

    assert excinfo.value.code == "TRANSACTION_CONFLICT"
    assert excinfo.value.status_code == 409
    assert store.list_package_credits(TENANT, cuts.id)[0].remaining_credits == 3
    assert store.list_redemptions(TENANT, cuts.id) == ([], 0)


def test_apply_membership_discount_records_usage(ledger_components):
    store, _, clock, events, _, memberships, _, ledger = ledger_components
    membership = memberships.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    clock.set(date(2025, 2, 3))
    usage = ledger.apply_membership_discount(
        TENANT,
        membership_id=membership.id,
        invoice_id="inv-1",
        invoice_item_id="item-1",
        service_id="svc-cut",
        service_name="Haircut",
        original_amount=Decimal("500"),
        discount_amount=Decimal("100"),
        benefit_type=BenefitType.SERVICE_DISCOUNT,
        created_by="user-1",
    )

    assert usage.final_amount == Decimal("400.00")
    assert usage.usage_branch_id == BRANCH
    assert usage.usage_date == date(2025, 2, 3)
    updated = store.get_membership(TENANT, membership.id)
    assert updated.total_visits == 1
    assert updated.total_discount_availed == Decimal("100.00")
    assert updated.last_visit_date == date(2025, 2, 3)
    assert updated.last_visit_branch_id == BRANCH
    assert events.types()[-1] == BenefitAuditEventType.MEMBERSHIP_DISCOUNT_APPLIED


def test_apply_membership_discount_validates_amounts_and_state(ledger_components):
    store, _, _, _, _, memberships, _, ledger = ledger_components
    membership = memberships.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)

    def apply(**overrides):
        arguments = dict(
            membership_id=membership.id,
            invoice_id="inv-1",
            service_name="Haircut",
            original_amount=Decimal("500"),
            discount_amount=Decimal("100"),
            benefit_type=BenefitType.FLAT_DISCOUNT,
        )
        arguments.update(overrides)
        return ledger.apply_membership_discount(TENANT, **arguments)

    with pytest.raises(BadRequestError) as too_large:
        apply(discount_amount=Decimal("500.01"))
    with pytest.raises(NotFoundError) as missing_invoice:
        apply(invoice_id="inv-404")
    store.update_membership(membership.model_copy(update={"status": MembershipStatus.FROZEN}))
    with pytest.raises(NotFoundError) as frozen:
        apply()

    assert too_large.value.code == "INVALID_DISCOUNT_AMOUNT"
    assert missing_invoice.value.code == "INVOICE_NOT_FOUND"
    assert frozen.value.code == "MEMBERSHIP_NOT_FOUND"
    assert store.list_usage(TENANT, membership.id, limit=0)[1] == 0


def test_complimentary_usage_and_paginated_history(ledger_components):
    _, _, clock, _, _, memberships, _, ledger = ledger_components
    membership = memberships.sell_membership(TENANT, customer_id="cust-1", plan_id="plan-gold", branch_id=BRANCH)
    for day in (1, 2, 3):
        clock.set(date(2025, 3, day))
        ledger.apply_membership_discount(
            TENANT,
            membership_id=membership.id,
            invoice_id=f"inv-{day}",
            service_id="svc-wash",
            service_name="Hair wash",
            original_amount=Decimal("250"),
            discount_amount=Decimal("250"),
            benefit_type=BenefitType.COMPLIMENTARY_SERVICE,
            is_complimentary=True,
            complimentary_benefit_id="b-wash",
        )

    page = memberships.list_usage(TENANT, membership.id, page=1, limit=2)
    march_second = memberships.list_usage(
        TENANT, membership.id, start_date=date(2025, 3, 2), end_date=date(2025, 3, 2)
    )

    assert page.total == 3
    assert page.total_pages == 2
    assert [item.invoice_id for item in page.items] == ["inv-3", "inv-2"]
    assert all(item.is_complimentary and item.final_amount == Decimal("0.00") for item in page.items)
    assert [item.invoice_id for item in march_second.items] == ["inv-2"]


def test_redeemed_credit_disappears_from_resolution(ledger_components):
    store, catalog, clock, _, _, _, packages, ledger = ledger_components
    facial = _sell(packages, "pkg-single")
    resolver = BenefitResolver(
        repository=store,
        catalog=catalog,
        policy=PolicyStore(repository=store, clock=clock),
        clock=clock,
    )
    request = ServiceRequest(service_id="svc-facial", original_price=Decimal("1200"))

    before = resolver.resolve(TENANT, customer_id="cust-1", branch_id=BRANCH, services=[request])
    ledger.redeem_package_credits(
        TENANT,
        customer_package_id=facial.id,
        invoice_id="inv-1",
        service_id="svc-facial",
        service_name="Facial",
    )
    after = resolver.resolve(TENANT, customer_id="cust-1", branch_id=BRANCH, services=[request])

    assert before.services[0].package_credit.locked_price == Decimal("1000.00")
    assert after.services[0].package_credit is None
