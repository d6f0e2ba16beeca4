"""Configuration management for the AWS operations gate."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

_config_logger = logging.getLogger(__name__)


class LoggingSettings(BaseModel):
    level: str = Field(default="INFO", description="Python logging level name")
    file: str | None = Field(default=None, description="Optional log file path")


class ExecutionSettings(BaseModel):
    sdk_timeout_seconds: int = Field(default=30, ge=1, le=300)
    max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries for a single step on retryable provider errors.",
    )
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0, le=30.0)


class StorageSettings(BaseModel):
    sqlite_path: str = Field(default="./data/aws_ops_gate.sqlite")
    sqlite_wal: bool = Field(default=True)


class BoundarySettings(BaseModel):
    path: str = Field(default="./boundary.yaml")


class ConnectionSettings(BaseModel):
    registry_path: str = Field(default="./connections.yaml")


class PlanSettings(BaseModel):
    ttl_seconds: int = Field(default=900, ge=30, le=86400)
    dsl_version: str = Field(default="1.0")
    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)


class ApprovalSettings(BaseModel):
    ttl_seconds: int = Field(default=300, ge=10, le=86400)
    signing_key: str | None = Field(
        default=None,
        description=(
            "HMAC key for approval tokens. When unset a per-process key is generated "
            "and tokens do not survive a restart."
        ),
    )
    require_simulation_for: tuple[str, ...] = Field(default=("high", "critical"))

    @field_validator("require_simulation_for")
    @classmethod
    def _validate_levels(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        allowed = {"low", "medium", "high", "critical"}
        unknown = [level for level in value if level not in allowed]
        if unknown:
            raise ValueError(f"Unknown risk levels: {', '.join(unknown)}")
        return value


class AuditSettings(BaseModel):
    anchor_interval: int = Field(default=100, ge=1, le=100_000)


class AWSSettings(BaseModel):
    default_region: str | None = Field(default=None)
    default_profile: str | None = Field(default=None)


class ServerSettings(BaseModel):
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8000, ge=1024, le=65535)
    admin_token: str | None = Field(
        default=None,
        description="Bearer token required for kill-switch changes.",
    )
    http_allowed_origins: tuple[str, ...] = Field(default=())
    http_enable_cors: bool = Field(default=False)
    http_trust_forwarded_headers: bool = Field(default=False)
    request_logging: bool = Field(default=True)


class Settings(BaseModel):
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    boundary: BoundarySettings = Field(default_factory=BoundarySettings)
    connections: ConnectionSettings = Field(default_factory=ConnectionSettings)
    plan: PlanSettings = Field(default_factory=PlanSettings)
    approval: ApprovalSettings = Field(default_factory=ApprovalSettings)
    audit: AuditSettings = Field(default_factory=AuditSettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)


ENV_KEYS = {
    "host": "OPS_GATE_HOST",
    "port": "OPS_GATE_PORT",
    "admin_token": "OPS_GATE_ADMIN_TOKEN",
    "log_level": "LOG_LEVEL",
    "log_file": "LOG_FILE",
    "sqlite_path": "SQLITE_PATH",
    "boundary_path": "BOUNDARY_PATH",
    "connections_path": "CONNECTIONS_PATH",
    "plan_ttl": "PLAN_TTL_SECONDS",
    "confidence_threshold": "INTENT_CONFIDENCE_THRESHOLD",
    "approval_ttl": "APPROVAL_TTL_SECONDS",
    "approval_signing_key": "APPROVAL_SIGNING_KEY",
    "require_simulation_for": "APPROVAL_REQUIRE_SIMULATION_FOR",
    "anchor_interval": "AUDIT_ANCHOR_INTERVAL",
    "aws_region": "AWS_DEFAULT_REGION",
    "aws_profile": "AWS_PROFILE",
    "max_retries": "OPS_GATE_MAX_RETRIES",
}

_TRUE_VALUES = frozenset({"1", "true", "yes"})


def _split_csv_preserve_case(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(path: str) -> str:
    candidate = Path(path)
    root = _project_root().resolve()
    if candidate.is_absolute():
        resolved = candidate.resolve()
    else:
        resolved = (root / candidate).resolve()
    if not resolved.is_relative_to(root):
        raise ValueError(f"Path traversal detected: '{path}' resolves outside project root")
    return str(resolved)


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        _config_logger.warning(
            "Invalid integer value for %s: %r, using default %d", key, value, default
        )
        return default


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        _config_logger.warning(
            "Invalid float value for %s: %r, using default %s", key, value, default
        )
        return default


def load_settings() -> Settings:
    """Load configuration and cache the result."""

    return _load_settings_cached()


@lru_cache(maxsize=1)
def _load_settings_cached() -> Settings:
    load_dotenv(dotenv_path=_project_root() / ".env")
    log_file_env = os.getenv(ENV_KEYS["log_file"])
    require_simulation_env = os.getenv(ENV_KEYS["require_simulation_for"])

    settings_data: dict[str, object] = {
        "server": {
            "host": os.getenv(ENV_KEYS["host"], ServerSettings().host),
            "port": _env_int(ENV_KEYS["port"], ServerSettings().port),
            "admin_token": os.getenv(ENV_KEYS["admin_token"]) or None,
            "http_allowed_origins": tuple(
                _split_csv_preserve_case(os.getenv("HTTP_ALLOWED_ORIGINS"))
            ),
            "http_enable_cors": _env_bool("HTTP_ENABLE_CORS", ServerSettings().http_enable_cors),
            "http_trust_forwarded_headers": _env_bool(
                "HTTP_TRUST_FORWARDED_HEADERS",
                ServerSettings().http_trust_forwarded_headers,
            ),
            "request_logging": _env_bool("HTTP_REQUEST_LOGGING", ServerSettings().request_logging),
        },
        "logging": {
            "level": os.getenv(ENV_KEYS["log_level"], LoggingSettings().level),
            "file": _resolve_path(log_file_env) if log_file_env else None,
        },
        "execution": {
            "sdk_timeout_seconds": _env_int(
                "SDK_TIMEOUT_SECONDS",
                ExecutionSettings().sdk_timeout_seconds,
            ),
            "max_retries": _env_int(ENV_KEYS["max_retries"], ExecutionSettings().max_retries),
            "retry_backoff_seconds": _env_float(
                "OPS_GATE_RETRY_BACKOFF_SECONDS",
                ExecutionSettings().retry_backoff_seconds,
            ),
        },
        "storage": {
            "sqlite_path": _resolve_path(
                os.getenv(ENV_KEYS["sqlite_path"], StorageSettings().sqlite_path)
            ),
            "sqlite_wal": _env_bool("SQLITE_WAL", StorageSettings().sqlite_wal),
        },
        "boundary": {
            "path": _resolve_path(os.getenv(ENV_KEYS["boundary_path"], BoundarySettings().path)),
        },
        "connections": {
            "registry_path": _resolve_path(
                os.getenv(ENV_KEYS["connections_path"], ConnectionSettings().registry_path)
            ),
        },
        "plan": {
            "ttl_seconds": _env_int(ENV_KEYS["plan_ttl"], PlanSettings().ttl_seconds),
            "dsl_version": os.getenv("PLAN_DSL_VERSION", PlanSettings().dsl_version),
            "confidence_threshold": _env_float(
                ENV_KEYS["confidence_threshold"],
                PlanSettings().confidence_threshold,
            ),
        },
        "approval": {
            "ttl_seconds": _env_int(ENV_KEYS["approval_ttl"], ApprovalSettings().ttl_seconds),
            "signing_key": os.getenv(ENV_KEYS["approval_signing_key"]) or None,
            "require_simulation_for": (
                tuple(level.lower() for level in _split_csv_preserve_case(require_simulation_env))
                if require_simulation_env is not None
                else ApprovalSettings().require_simulation_for
            ),
        },
        "audit": {
            "anchor_interval": _env_int(
                ENV_KEYS["anchor_interval"],
                AuditSettings().anchor_interval,
            ),
        },
        "aws": {
            "default_region": os.getenv("AWS_REGION") or os.getenv(ENV_KEYS["aws_region"]),
            "default_profile": os.getenv(ENV_KEYS["aws_profile"]),
        },
    }

    try:
        settings = Settings.model_validate(settings_data)
    except ValidationError as exc:
        raise RuntimeError(f"Invalid configuration: {exc}") from exc

    if settings.approval.ttl_seconds > settings.plan.ttl_seconds:
        _config_logger.warning(
            "APPROVAL_TTL_SECONDS (%d) exceeds PLAN_TTL_SECONDS (%d); "
            "tokens will be capped at plan expiry",
            settings.approval.ttl_seconds,
            settings.plan.ttl_seconds,
        )

    Path(settings.storage.sqlite_path).parent.mkdir(parents=True, exist_ok=True)

    return settings
