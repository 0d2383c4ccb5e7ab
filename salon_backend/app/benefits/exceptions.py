"""Error types surfaced by the benefit engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class BenefitEngineError(Exception):
    """A business rule failure carrying a stable code and a readable message."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=dict(self.payload))


@dataclass
class NotFoundError(BenefitEngineError):
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class BadRequestError(BenefitEngineError):
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class ConflictError(BenefitEngineError):
    status_code: int = status.HTTP_409_CONFLICT


class TransactionConflictError(Exception):
    """Raised by a store when it rejects a transaction that may be retried."""


CUSTOMER_NOT_FOUND = "CUSTOMER_NOT_FOUND"
PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
PACKAGE_NOT_FOUND = "PACKAGE_NOT_FOUND"
MEMBERSHIP_NOT_FOUND = "MEMBERSHIP_NOT_FOUND"
CUSTOMER_PACKAGE_NOT_FOUND = "CUSTOMER_PACKAGE_NOT_FOUND"
INVOICE_NOT_FOUND = "INVOICE_NOT_FOUND"

BRANCH_NOT_ELIGIBLE = "BRANCH_NOT_ELIGIBLE"
MEMBERSHIP_EXISTS = "MEMBERSHIP_EXISTS"
FREEZE_LIMIT_EXCEEDED = "FREEZE_LIMIT_EXCEEDED"
NO_ACTIVE_FREEZE = "NO_ACTIVE_FREEZE"
INSUFFICIENT_VALUE = "INSUFFICIENT_VALUE"
INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"
SERVICE_NOT_IN_PACKAGE = "SERVICE_NOT_IN_PACKAGE"
INVALID_DATE_RANGE = "INVALID_DATE_RANGE"
INVALID_PACKAGE_DEFINITION = "INVALID_PACKAGE_DEFINITION"
INVALID_DISCOUNT_AMOUNT = "INVALID_DISCOUNT_AMOUNT"
INVALID_REDEMPTION_AMOUNT = "INVALID_REDEMPTION_AMOUNT"
INVALID_CONFIG = "INVALID_CONFIG"

TRANSACTION_CONFLICT = "TRANSACTION_CONFLICT"
