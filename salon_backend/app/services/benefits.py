"""Application wiring for the benefit engine services."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..benefits import (
    BenefitAuditEvent,
    BenefitEventLogger,
    BenefitNotifier,
    BenefitResolver,
    CustomerPackage,
    MembershipLifecycleService,
    PackageCredit,
    PackageLifecycleService,
    PolicyStore,
    RedemptionLedger,
)
from ..benefits.repository import PostgresBenefitCatalog, PostgresBenefitRepository

try:  # pragma: no cover - resolve settings when imported from FastAPI app
    from salon_backend.settings import EngineSettings, load_engine_settings
except ModuleNotFoundError as exc:  # pragma: no cover
    if exc.name != "salon_backend":
        raise
    from ...settings import EngineSettings, load_engine_settings  # type: ignore[no-redef]


logger = logging.getLogger("benefits")


class LoggingBenefitNotifier(BenefitNotifier):
    """Notifier that records balance notifications to the application logger."""

    def notify_low_balance(self, customer_package: CustomerPackage, credit: PackageCredit) -> None:
        logger.warning(
            "Low package balance package=%s customer=%s service=%s remaining=%s",
            customer_package.package_number,
            customer_package.customer_id,
            credit.service_id,
            credit.remaining_credits,
        )

    def notify_package_exhausted(self, customer_package: CustomerPackage) -> None:
        logger.warning(
            "Package exhausted package=%s customer=%s",
            customer_package.package_number,
            customer_package.customer_id,
        )


class LoggingBenefitEventLogger(BenefitEventLogger):
    """Simple event logger forwarding benefit audit events to logging."""

    def log(self, event: BenefitAuditEvent) -> None:
        logger.info(
            "Benefit event %s tenant=%s subject=%s actor=%s metadata=%s",
            event.event_type.value,
            event.tenant_id,
            event.subject_id,
            event.actor_id,
            event.metadata,
        )


@lru_cache(maxsize=1)
def get_engine_settings() -> EngineSettings:
    return load_engine_settings()


@lru_cache(maxsize=1)
def get_policy_store() -> PolicyStore:
    return PolicyStore(repository=PostgresBenefitRepository())


@lru_cache(maxsize=1)
def get_membership_service() -> MembershipLifecycleService:
    settings = get_engine_settings()
    return MembershipLifecycleService(
        repository=PostgresBenefitRepository(),
        catalog=PostgresBenefitCatalog(),
        policy=get_policy_store(),
        event_logger=LoggingBenefitEventLogger(),
        transaction_attempts=settings.transaction_attempts,
        default_tenant_code=settings.default_tenant_code,
    )


@lru_cache(maxsize=1)
def get_package_service() -> PackageLifecycleService:
    settings = get_engine_settings()
    return PackageLifecycleService(
        repository=PostgresBenefitRepository(),
        catalog=PostgresBenefitCatalog(),
        policy=get_policy_store(),
        event_logger=LoggingBenefitEventLogger(),
        transaction_attempts=settings.transaction_attempts,
        default_tenant_code=settings.default_tenant_code,
    )


@lru_cache(maxsize=1)
def get_benefit_resolver() -> BenefitResolver:
    return BenefitResolver(
        repository=PostgresBenefitRepository(),
        catalog=PostgresBenefitCatalog(),
        policy=get_policy_store(),
    )


@lru_cache(maxsize=1)
def get_redemption_ledger() -> RedemptionLedger:
    return RedemptionLedger(
        repository=PostgresBenefitRepository(),
        catalog=PostgresBenefitCatalog(),
        policy=get_policy_store(),
        event_logger=LoggingBenefitEventLogger(),
        notifier=LoggingBenefitNotifier(),
        transaction_attempts=get_engine_settings().transaction_attempts,
    )


__all__ = [
    "LoggingBenefitEventLogger",
    "LoggingBenefitNotifier",
    "get_benefit_resolver",
    "get_engine_settings",
    "get_membership_service",
    "get_package_service",
    "get_policy_store",
    "get_redemption_ledger",
]
