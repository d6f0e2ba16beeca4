from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from aws_ops_gate.app import AppContext, build_app_context
from aws_ops_gate.audit.db import SqliteStore
from aws_ops_gate.config import (
    ApprovalSettings,
    BoundarySettings,
    ConnectionSettings,
    ExecutionSettings,
    ServerSettings,
    Settings,
    StorageSettings,
)
from aws_ops_gate.connections.registry import ConnectionRegistry, load_connections
from aws_ops_gate.execution.aws_client import ActionCall, clear_client_cache
from aws_ops_gate.policy.boundary import PermissionBoundary
from aws_ops_gate.policy.loader import load_boundary

PROJECT_ROOT = Path(__file__).resolve().parents[1]

ADMIN_TOKEN = "admin-token-for-tests"


class FakeRunner:
    """Records every call.

    ``fail`` queues errors for one (action key, resource); each call raises
    the next one. With ``always=True`` the last error repeats forever.
    """

    def __init__(self) -> None:
        self.calls: list[ActionCall] = []
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.always: set[tuple[str, str]] = set()
        self.responses: dict[str, dict[str, Any]] = {}
        self.before_call = None

    def fail(
        self, action_key: str, resource: str, *errors: Exception, always: bool = False
    ) -> None:
        self.failures[(action_key, resource)] = list(errors)
        if always:
            self.always.add((action_key, resource))

    def invoke(self, call: ActionCall) -> dict[str, Any]:
        self.calls.append(call)
        if self.before_call is not None:
            self.before_call(call)
        for resource in call.resources:
            key = (call.action.key, resource)
            pending = self.failures.get(key)
            if pending:
                if key in self.always and len(pending) == 1:
                    raise pending[0]
                raise pending.pop(0)
        return dict(self.responses.get(call.action.key, {}))

    def keys(self) -> list[tuple[str, list[str]]]:
        return [(call.action.key, list(call.resources)) for call in self.calls]


class FakeInspector:
    """State inspector and resource resolver backed by dictionaries."""

    def __init__(self) -> None:
        self.states: dict[str, str] = {}
        self.resolved: list[str] = []
        self.error: Exception | None = None

    def current_states(self, connection, action, resources, region) -> dict[str, str]:
        if self.error is not None:
            raise self.error
        return {r: self.states[r] for r in resources if r in self.states}

    def resolve(self, connection, action, parameters, region) -> list[str]:
        return list(self.resolved)


@pytest.fixture(autouse=True)
def _clear_client_cache() -> None:
    clear_client_cache()
    yield
    clear_client_cache()


@pytest.fixture
def boundary() -> PermissionBoundary:
    return PermissionBoundary(load_boundary(str(PROJECT_ROOT / "boundary.yaml")))


@pytest.fixture
def registry() -> ConnectionRegistry:
    return load_connections(str(PROJECT_ROOT / "connections.yaml"))


@pytest.fixture
def store(tmp_path):
    sqlite_store = SqliteStore(str(tmp_path / "gate.sqlite"))
    yield sqlite_store
    sqlite_store.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        server=ServerSettings(admin_token=ADMIN_TOKEN, request_logging=False),
        storage=StorageSettings(sqlite_path=str(tmp_path / "gate.sqlite")),
        boundary=BoundarySettings(path=str(PROJECT_ROOT / "boundary.yaml")),
        connections=ConnectionSettings(registry_path=str(PROJECT_ROOT / "connections.yaml")),
        approval=ApprovalSettings(signing_key="unit-test-signing-key-0123456789"),
        execution=ExecutionSettings(max_retries=2, retry_backoff_seconds=0.0),
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def inspector() -> FakeInspector:
    return FakeInspector()


@pytest.fixture
def ctx(settings, boundary, registry, store, runner, inspector) -> AppContext:
    return build_app_context(
        settings,
        boundary=boundary,
        connections=registry,
        store=store,
        runner=runner,
        inspector=inspector,
        resolver=inspector,
    )


@pytest.fixture
def entries(ctx):
    """All audit entries, oldest first, as wire dicts."""

    def _entries(event_type: str | None = None) -> list[dict[str, Any]]:
        rows = ctx.store.entries_between(1, None)
        wire = [entry.to_wire() for entry in rows]
        if event_type is None:
            return wire
        return [e for e in wire if e["eventType"] == event_type]

    return _entries


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
