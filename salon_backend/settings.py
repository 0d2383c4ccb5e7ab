"""Environment configuration for the benefit engine service."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class EngineSettings:
    """Database and engine tuning loaded from the environment."""

    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout: int
    transaction_attempts: int
    log_level: str
    default_tenant_code: str

    def db_config(self) -> Dict[str, Any]:
        return dict(
            host=self.db_host,
            port=self.db_port,
            dbname=self.db_name,
            user=self.db_user,
            password=self.db_password,
            connect_timeout=self.db_connect_timeout,
        )


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _parse_connect_timeout(raw_value: Optional[str]) -> int:
    if raw_value is None or raw_value == "":
        return 5
    try:
        timeout = float(raw_value)
    except ValueError as exc:
        raise ValueError("DB_CONNECT_TIMEOUT must be a number") from exc
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def load_engine_settings(env: Optional[Mapping[str, str]] = None) -> EngineSettings:
    """Load :class:`EngineSettings` from environment variables."""

    env_mapping = os.environ if env is None else env

    tenant_code = (env_mapping.get("BENEFITS_DEFAULT_TENANT_CODE") or "SALN").strip().upper()[:4] or "SALN"

    return EngineSettings(
        db_host=env_mapping.get("DB_HOST", "127.0.0.1"),
        db_port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        db_name=env_mapping.get("DB_NAME", "salon_db"),
        db_user=env_mapping.get("DB_USER", "salon_user"),
        db_password=env_mapping.get("DB_PASSWORD", "salon_pass"),
        db_connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
        transaction_attempts=max(1, _to_int(env_mapping.get("BENEFITS_TRANSACTION_ATTEMPTS"), default=2)),
        log_level=(env_mapping.get("BENEFITS_LOG_LEVEL") or "INFO").strip().upper(),
        default_tenant_code=tenant_code,
    )
