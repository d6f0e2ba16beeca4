"""AWS client factory, action runner and state inspector."""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from aws_ops_gate.config import Settings
from aws_ops_gate.connections.registry import Connection
from aws_ops_gate.errors import ProviderError
from aws_ops_gate.policy.models import CatalogAction
from aws_ops_gate.utils.time import utc_now

logger = logging.getLogger(__name__)

ClientCacheKey = tuple[str, ...]

_CLIENT_CACHE: OrderedDict[ClientCacheKey, tuple[object, float]] = OrderedDict()
_CLIENT_CACHE_LOCK = threading.Lock()
_CLIENT_TTL_SECONDS = 3600  # 1 hour
_CLIENT_CACHE_MAX_SIZE = 256

_RETRYABLE_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "RequestThrottled",
    "TooManyRequestsException",
    "ServiceUnavailable",
}

SessionFactory = Callable[[Connection | None, str | None], boto3.Session]


def _get_cached_client(
    key: ClientCacheKey,
    build_client: Callable[[], object],
) -> object:
    now = time.monotonic()
    with _CLIENT_CACHE_LOCK:
        cached = _CLIENT_CACHE.get(key)
        if cached is not None:
            client, created_at = cached
            if now - created_at < _CLIENT_TTL_SECONDS:
                _CLIENT_CACHE.move_to_end(key)
                return client
            del _CLIENT_CACHE[key]
        client = build_client()
        _CLIENT_CACHE[key] = (client, now)
        while len(_CLIENT_CACHE) > _CLIENT_CACHE_MAX_SIZE:
            _CLIENT_CACHE.popitem(last=False)
        return client


def clear_client_cache() -> None:
    with _CLIENT_CACHE_LOCK:
        _CLIENT_CACHE.clear()


def _get_service_config(service: str, settings: Settings) -> Config:
    base: dict[str, object] = {
        "read_timeout": settings.execution.sdk_timeout_seconds,
        "connect_timeout": settings.execution.sdk_timeout_seconds,
        # The execution engine counts retries per step.
        "retries": {"max_attempts": 1, "mode": "standard"},
    }
    if service == "s3":
        base["request_checksum_calculation"] = "when_required"
        base["response_checksum_validation"] = "when_required"
    return Config(**base)


def _default_session(settings: Settings) -> SessionFactory:
    def build(connection: Connection | None, region: str | None) -> boto3.Session:
        return boto3.Session(
            profile_name=settings.aws.default_profile,
            region_name=region or settings.aws.default_region,
        )

    return build


def get_client(
    service: str,
    region: str | None,
    settings: Settings,
    connection: Connection | None = None,
    session_factory: SessionFactory | None = None,
):
    """Client for ``service`` in ``region``, cached per connection role.

    Assuming the connection's role is left to ``session_factory``; the
    default uses the process profile.
    """
    factory = session_factory or _default_session(settings)
    key: ClientCacheKey = (
        service,
        region or settings.aws.default_region or "",
        connection.role_arn if connection else "",
        settings.aws.default_profile or "",
        str(id(factory)) if session_factory else "",
    )

    def build() -> object:
        session = factory(connection, region)
        return session.client(service, config=_get_service_config(service, settings))

    return _get_cached_client(key, build)


def _snake_case(name: str) -> str:
    """Convert PascalCase to snake_case, handling acronyms correctly.

    Examples:
        DescribeDBInstances -> describe_db_instances
        StopDBInstance -> stop_db_instance
        PutBucketLifecycleConfiguration -> put_bucket_lifecycle_configuration
    """
    s1 = re.sub(r"(.)([A-Z][a-z]+)", r"\1_\2", name)
    return re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", s1).lower()


def is_retryable(exc: Exception) -> bool:
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code")
        return code in _RETRYABLE_CODES
    return isinstance(exc, BotoCoreError)


@dataclass
class ActionCall:
    action: CatalogAction
    resources: list[str]
    region: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    connection: Connection | None = None


class ActionRunner(Protocol):
    """Performs one catalog action. Raises botocore errors on failure."""

    def invoke(self, call: ActionCall) -> dict[str, Any]: ...


def build_request(call: ActionCall) -> dict[str, Any]:
    kwargs = dict(call.parameters)
    param = call.action.resource_param
    if param:
        if call.action.resource_param_is_list:
            kwargs[param] = list(call.resources)
        elif len(call.resources) == 1:
            kwargs[param] = call.resources[0]
        else:
            raise ValueError(
                f"{call.action.key} takes a single {param}, got {len(call.resources)}"
            )
    return kwargs


class Boto3ActionRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory

    def invoke(self, call: ActionCall) -> dict[str, Any]:
        operation = call.action.operation
        client = get_client(
            operation.service,
            call.region,
            self._settings,
            call.connection,
            self._session_factory,
        )
        method = getattr(client, _snake_case(operation.operation))
        response = method(**build_request(call))
        if not isinstance(response, dict):
            return {"result": response}
        response.pop("ResponseMetadata", None)
        return response


class StateInspector(Protocol):
    """Read-only view of current resource state."""

    def current_states(
        self,
        connection: Connection | None,
        action: CatalogAction,
        resources: list[str],
        region: str | None,
    ) -> dict[str, str]: ...


class Boto3StateInspector:
    """Describes resources through read-only API calls.

    Also resolves the resources an intent refers to when the operator named
    none, e.g. running instances launched more than ``idle_days`` ago.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory

    def _client(self, service: str, region: str | None, connection: Connection | None):
        return get_client(service, region, self._settings, connection, self._session_factory)

    def current_states(
        self,
        connection: Connection | None,
        action: CatalogAction,
        resources: list[str],
        region: str | None,
    ) -> dict[str, str]:
        if not resources:
            return {}
        try:
            if action.resource_kind == "ec2_instance":
                client = self._client("ec2", region, connection)
                states: dict[str, str] = {}
                paginator = client.get_paginator("describe_instances")
                for page in paginator.paginate(InstanceIds=list(resources)):
                    for reservation in page.get("Reservations", []):
                        for instance in reservation.get("Instances", []):
                            states[instance["InstanceId"]] = instance["State"]["Name"]
                return states
            if action.resource_kind == "ebs_volume":
                client = self._client("ec2", region, connection)
                response = client.describe_volumes(VolumeIds=list(resources))
                return {v["VolumeId"]: v["State"] for v in response.get("Volumes", [])}
            if action.resource_kind == "rds_instance":
                client = self._client("rds", region, connection)
                states = {}
                for identifier in resources:
                    response = client.describe_db_instances(DBInstanceIdentifier=identifier)
                    for db in response.get("DBInstances", []):
                        states[db["DBInstanceIdentifier"]] = db["DBInstanceStatus"]
                return states
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(
                f"Could not describe resources for {action.key}: {exc}"
            ) from exc
        return {}

    def resolve(
        self,
        connection: Connection,
        action: CatalogAction,
        parameters: dict[str, Any],
        region: str | None,
    ) -> list[str]:
        idle_days = parameters.get("idle_days")
        cutoff = utc_now() - timedelta(days=int(idle_days)) if idle_days else None
        tags: dict[str, str] = parameters.get("tags") or {}
        try:
            if action.resource_kind == "ec2_instance":
                return self._resolve_instances(connection, action, region, cutoff, tags)
            if action.resource_kind == "ebs_volume":
                client = self._client("ec2", region, connection)
                filters = [{"Name": "status", "Values": action.source_states or ["available"]}]
                found: list[str] = []
                for page in client.get_paginator("describe_volumes").paginate(Filters=filters):
                    for volume in page.get("Volumes", []):
                        if cutoff is None or volume["CreateTime"] <= cutoff:
                            found.append(volume["VolumeId"])
                return found
            if action.resource_kind == "ebs_snapshot":
                client = self._client("ec2", region, connection)
                found = []
                paginator = client.get_paginator("describe_snapshots")
                for page in paginator.paginate(OwnerIds=["self"]):
                    for snapshot in page.get("Snapshots", []):
                        if cutoff is None or snapshot["StartTime"] <= cutoff:
                            found.append(snapshot["SnapshotId"])
                return found
            if action.resource_kind == "rds_instance":
                client = self._client("rds", region, connection)
                found = []
                for page in client.get_paginator("describe_db_instances").paginate():
                    for db in page.get("DBInstances", []):
                        status = db["DBInstanceStatus"]
                        if action.source_states and status not in action.source_states:
                            continue
                        found.append(db["DBInstanceIdentifier"])
                return found
        except (ClientError, BotoCoreError) as exc:
            raise ProviderError(f"Could not list resources for {action.key}: {exc}") from exc
        logger.info("No resolver for %s resources", action.resource_kind or action.key)
        return []

    def _resolve_instances(
        self,
        connection: Connection,
        action: CatalogAction,
        region: str | None,
        cutoff: datetime | None,
        tags: dict[str, str],
    ) -> list[str]:
        client = self._client("ec2", region, connection)
        filters: list[dict[str, Any]] = []
        if action.source_states:
            filters.append({"Name": "instance-state-name", "Values": list(action.source_states)})
        for key, value in sorted(tags.items()):
            filters.append({"Name": f"tag:{key}", "Values": [value]})
        found: list[str] = []
        paginator = client.get_paginator("describe_instances")
        for page in paginator.paginate(Filters=filters):
            for reservation in page.get("Reservations", []):
                for instance in reservation.get("Instances", []):
                    # Launch age stands in for idleness; utilization metrics are not consulted.
                    if cutoff is not None and instance["LaunchTime"] > cutoff:
                        continue
                    found.append(instance["InstanceId"])
        return found
