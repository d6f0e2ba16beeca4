"""Connection registry.

A connection is an externally provisioned IAM role in a customer account
plus the gate-side restrictions layered on top of it. Connections are
read from a YAML registry; creating and deleting them is done by the
provisioning tooling, not here.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from aws_ops_gate.domain.models import WireModel
from aws_ops_gate.errors import NotFoundError
from aws_ops_gate.policy.boundary import PermissionBoundary

logger = logging.getLogger(__name__)

_WILDCARD = "*"


class PermissionMode(str, Enum):
    READ_ONLY = "read-only"
    READ_WRITE = "read-write"
    CUSTOM = "custom"


class ExecutionMode(str, Enum):
    SIMULATION = "simulation"
    LIVE = "live"


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ERROR = "error"
    PENDING_VERIFICATION = "pending_verification"


class AllowedService(WireModel):
    service: str
    actions: list[str] = Field(default_factory=lambda: [_WILDCARD])
    regions: list[str] = Field(default_factory=list)

    @field_validator("service")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.strip().lower()


class Connection(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    connection_id: str = Field(alias="id")
    connection_name: str
    description: str = ""
    customer_id: str | None = None
    environment: str = "development"
    role_arn: str
    external_id: str | None = Field(default=None, exclude=True)
    permission_mode: PermissionMode = PermissionMode.READ_ONLY
    execution_mode: ExecutionMode = ExecutionMode.SIMULATION
    allowed_regions: list[str] = Field(default_factory=list)
    allowed_services: list[AllowedService] = Field(default_factory=list)
    status: ConnectionStatus = ConnectionStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE

    @property
    def account_id(self) -> str | None:
        parts = self.role_arn.split(":")
        return parts[4] if len(parts) > 5 and parts[4] else None

    @property
    def role_name(self) -> str:
        return self.role_arn.rsplit("/", 1)[-1]

    def _service_entry(self, service: str) -> AllowedService | None:
        for entry in self.allowed_services:
            if entry.service == service.lower():
                return entry
        return None

    def reaches_service(self, service: str) -> bool:
        if not self.allowed_services:
            return True
        return self._service_entry(service) is not None

    def reaches_region(self, region: str, service: str | None = None) -> bool:
        if self.allowed_regions and region not in self.allowed_regions:
            return False
        if service:
            entry = self._service_entry(service)
            if entry is not None and entry.regions and region not in entry.regions:
                return False
        return True

    def granted_permissions(self, boundary: PermissionBoundary) -> set[str]:
        """IAM actions (``service:Action``) this connection may perform.

        Read-only connections get the catalog's read-only-safe actions,
        read-write connections the whole non-banned catalog. Custom
        connections get exactly what their ``allowed_services`` list, with
        ``*`` standing for every catalog action of that service.
        """
        catalog = [
            action for action in boundary.config.actions if not boundary.is_banned(action.key)
        ]
        if self.permission_mode == PermissionMode.CUSTOM:
            granted: set[str] = set()
            for entry in self.allowed_services:
                for name in entry.actions:
                    if name == _WILDCARD:
                        granted.update(
                            a.key for a in catalog if a.operation.service == entry.service
                        )
                    else:
                        granted.add(f"{entry.service}:{name}")
            return granted

        if self.permission_mode == PermissionMode.READ_ONLY:
            candidates = [a for a in catalog if a.read_only_safe]
        else:
            candidates = catalog
        return {a.key for a in candidates if self.reaches_service(a.operation.service)}


class ConnectionRegistry:
    def __init__(self, connections: list[Connection] | None = None) -> None:
        self._lock = threading.Lock()
        self._connections: dict[str, Connection] = {}
        for connection in connections or []:
            self.register(connection)

    def register(self, connection: Connection) -> None:
        with self._lock:
            self._connections[connection.connection_id] = connection

    def find(self, connection_id: str) -> Connection | None:
        with self._lock:
            return self._connections.get(connection_id)

    def get(self, connection_id: str) -> Connection:
        connection = self.find(connection_id)
        if connection is None:
            raise NotFoundError(f"Connection {connection_id} not found")
        return connection

    def connections(self) -> list[Connection]:
        with self._lock:
            return sorted(self._connections.values(), key=lambda c: c.connection_id)

    def emergency_stop_instructions(self, connection_id: str) -> str:
        """Manual steps that cut the gate off from the account entirely.

        The kill switch only stops this process; revoking the role's trust
        policy stops every holder of the role.
        """
        connection = self.get(connection_id)
        account = connection.account_id or "<account-id>"
        role = connection.role_name
        lines = [
            f"Emergency stop for connection '{connection.connection_name}' "
            f"({connection.connection_id})",
            "",
            "1. Activate the connection kill switch so no further steps are started:",
            f"   POST /aws/kill-switch {{\"scope\": \"connection\", \"id\": "
            f"\"{connection.connection_id}\"}}",
            f"2. Sign in to AWS account {account} with an administrator identity.",
            f"3. Open IAM > Roles > {role} > Trust relationships and remove the statement",
            "   that allows this service to assume the role, or run:",
            f"   aws iam update-assume-role-policy --role-name {role} \\",
            "     --policy-document '{\"Version\":\"2012-10-17\",\"Statement\":[]}'",
            "4. Revoke sessions that were already issued:",
            f"   IAM > Roles > {role} > Revoke active sessions",
            "5. Review CloudTrail for actions taken by the role in the last 24 hours and",
            "   compare them with GET /aws/audit?connectionId="
            f"{connection.connection_id}",
        ]
        return "\n".join(lines)


def load_connections(path: str) -> ConnectionRegistry:
    registry_path = Path(path)
    if not registry_path.exists():
        raise FileNotFoundError(f"Connection registry not found: {registry_path}")
    with registry_path.open("r", encoding="utf-8") as handle:
        data: dict[str, Any] = yaml.safe_load(handle) or {}
    raw = data.get("connections") or []
    if not isinstance(raw, list):
        raise ValueError("'connections' must be a list")
    connections = [Connection.model_validate(item) for item in raw]
    logger.info("Loaded %d connection(s) from %s", len(connections), registry_path)
    return ConnectionRegistry(connections)
