"""Human-readable membership and package numbers."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

DEFAULT_TENANT_CODE = "SALN"


class NumberedEntity(str, Enum):
    MEMBERSHIP = "MEM"
    PACKAGE = "PKG"


class SequenceAllocator(Protocol):
    """Allocates the next per tenant, entity and month sequence value."""

    def next_sequence(self, tenant_id: str, entity: NumberedEntity, prefix: str) -> int:
        ...


def tenant_code(slug: Optional[str], *, default: str = DEFAULT_TENANT_CODE) -> str:
    """First four characters of the tenant slug, upper-cased."""

    code = (slug or "")[:4].upper()
    return code or default


def number_prefix(entity: NumberedEntity, code: str, when: datetime) -> str:
    return f"{entity.value}-{code}-{when:%Y%m}"


def format_number(prefix: str, sequence: int) -> str:
    return f"{prefix}-{sequence:04d}"


def allocate_number(
    allocator: SequenceAllocator,
    *,
    tenant_id: str,
    entity: NumberedEntity,
    code: str,
    when: datetime,
) -> str:
    prefix = number_prefix(entity, code, when)
    sequence = allocator.next_sequence(tenant_id, entity, prefix)
    return format_number(prefix, sequence)
