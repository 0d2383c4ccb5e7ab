"""Guarded status transitions for memberships and packages."""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Tuple

from .exceptions import CUSTOMER_PACKAGE_NOT_FOUND, MEMBERSHIP_NOT_FOUND, NotFoundError
from .models import MembershipStatus, PackageStatus


class MembershipAction(str, Enum):
    FREEZE = "freeze"
    UNFREEZE = "unfreeze"
    CANCEL = "cancel"
    EXPIRE = "expire"


class PackageAction(str, Enum):
    CANCEL = "cancel"
    EXHAUST = "exhaust"
    EXPIRE = "expire"


MEMBERSHIP_TRANSITIONS: Dict[MembershipAction, Tuple[FrozenSet[MembershipStatus], MembershipStatus]] = {
    MembershipAction.FREEZE: (frozenset({MembershipStatus.ACTIVE}), MembershipStatus.FROZEN),
    MembershipAction.UNFREEZE: (frozenset({MembershipStatus.FROZEN}), MembershipStatus.ACTIVE),
    MembershipAction.CANCEL: (
        frozenset({MembershipStatus.ACTIVE, MembershipStatus.FROZEN}),
        MembershipStatus.CANCELLED,
    ),
    MembershipAction.EXPIRE: (
        frozenset({MembershipStatus.ACTIVE, MembershipStatus.FROZEN}),
        MembershipStatus.EXPIRED,
    ),
}

PACKAGE_TRANSITIONS: Dict[PackageAction, Tuple[FrozenSet[PackageStatus], PackageStatus]] = {
    PackageAction.CANCEL: (
        frozenset({PackageStatus.ACTIVE, PackageStatus.PENDING}),
        PackageStatus.CANCELLED,
    ),
    PackageAction.EXHAUST: (frozenset({PackageStatus.ACTIVE}), PackageStatus.EXHAUSTED),
    PackageAction.EXPIRE: (frozenset({PackageStatus.ACTIVE}), PackageStatus.EXPIRED),
}

_MEMBERSHIP_MESSAGES = {
    MembershipAction.FREEZE: "Active membership not found",
    MembershipAction.UNFREEZE: "Frozen membership not found",
    MembershipAction.CANCEL: "Active membership not found",
    MembershipAction.EXPIRE: "Active membership not found",
}


class StatusTransitionError(NotFoundError):
    """The entity exists but is not in a state the action accepts."""


def can_transition_membership(current: MembershipStatus, action: MembershipAction) -> bool:
    sources, _ = MEMBERSHIP_TRANSITIONS[action]
    return current in sources


def advance_membership(current: MembershipStatus, action: MembershipAction) -> MembershipStatus:
    """Return the status reached by ``action`` or raise when ``current`` forbids it."""

    sources, target = MEMBERSHIP_TRANSITIONS[action]
    if current not in sources:
        raise StatusTransitionError(
            code=MEMBERSHIP_NOT_FOUND,
            message=_MEMBERSHIP_MESSAGES[action],
            detail={"status": current.value, "action": action.value},
        )
    return target


def advance_package(current: PackageStatus, action: PackageAction) -> PackageStatus:
    sources, target = PACKAGE_TRANSITIONS[action]
    if current not in sources:
        raise StatusTransitionError(
            code=CUSTOMER_PACKAGE_NOT_FOUND,
            message="Active customer package not found",
            detail={"status": current.value, "action": action.value},
        )
    return target
