"""Tenant scoped membership and package policy."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from pydantic import ValidationError

from .exceptions import INVALID_CONFIG, BadRequestError
from .models import MembershipConfig
from .store import Clock, ConfigRepository, current_time

logger = logging.getLogger(__name__)

_READ_ONLY_FIELDS = frozenset({"tenant_id", "created_at", "updated_at"})


@dataclass
class PolicyStore:
    """Reads and writes tenant policy, falling back to documented defaults."""

    repository: ConfigRepository
    clock: Optional[Clock] = None

    def get_config(self, tenant_id: str) -> MembershipConfig:
        """Return the tenant policy; an absent row yields the defaults and never errors."""

        config = self.repository.get_config(tenant_id)
        if config is None:
            return MembershipConfig(tenant_id=tenant_id)
        return config

    def update_config(self, tenant_id: str, updates: Mapping[str, Any]) -> MembershipConfig:
        unknown = sorted(set(updates) - (set(MembershipConfig.model_fields) - _READ_ONLY_FIELDS))
        if unknown:
            raise BadRequestError(
                code=INVALID_CONFIG,
                message="Unknown membership config fields",
                detail={"fields": unknown},
            )

        current = self.get_config(tenant_id)
        now = current_time(self.clock)
        payload = {
            **current.model_dump(),
            **updates,
            "tenant_id": tenant_id,
            "created_at": current.created_at or now,
            "updated_at": now,
        }
        try:
            config = MembershipConfig.model_validate(payload)
        except ValidationError as exc:
            raise BadRequestError(
                code=INVALID_CONFIG,
                message="Invalid membership config",
                detail={"errors": [error["msg"] for error in exc.errors()]},
            ) from exc

        logger.info("Updated membership config for tenant %s: %s", tenant_id, sorted(updates))
        return self.repository.save_config(config)

    def reset_config(self, tenant_id: str) -> MembershipConfig:
        current = self.repository.get_config(tenant_id)
        now = current_time(self.clock)
        defaults = MembershipConfig(
            tenant_id=tenant_id,
            created_at=current.created_at if current and current.created_at else now,
            updated_at=now,
        )
        logger.info("Reset membership config for tenant %s to defaults", tenant_id)
        return self.repository.save_config(defaults)
