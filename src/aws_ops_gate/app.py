"""Application context assembly."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from functools import lru_cache

from aws_ops_gate.approval.service import ApprovalService
from aws_ops_gate.audit.chain import AuditLog
from aws_ops_gate.audit.db import SqliteStore
from aws_ops_gate.config import Settings, load_settings
from aws_ops_gate.connections.registry import ConnectionRegistry, load_connections
from aws_ops_gate.execution.aws_client import (
    ActionRunner,
    Boto3ActionRunner,
    Boto3StateInspector,
    SessionFactory,
    StateInspector,
)
from aws_ops_gate.execution.engine import ExecutionEngine
from aws_ops_gate.intent.classifier import Classifier
from aws_ops_gate.intent.parser import IntentParser
from aws_ops_gate.killswitch.switch import KillSwitch
from aws_ops_gate.planning.generator import PlanGenerator, ResourceResolver
from aws_ops_gate.planning.risk import RiskScorer
from aws_ops_gate.planning.store import PlanStore
from aws_ops_gate.policy.boundary import PermissionBoundary
from aws_ops_gate.policy.loader import load_boundary
from aws_ops_gate.simulation.engine import SimulationEngine

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Application-wide dependency container.

    Initialized once at startup; tests build their own with
    ``build_app_context`` and fake AWS seams.
    """

    settings: Settings
    store: SqliteStore
    audit: AuditLog
    boundary: PermissionBoundary
    scorer: RiskScorer
    connections: ConnectionRegistry
    kill_switch: KillSwitch
    plans: PlanStore
    parser: IntentParser
    generator: PlanGenerator
    simulator: SimulationEngine
    approvals: ApprovalService
    executor: ExecutionEngine

    def close(self) -> None:
        self.store.close()


def _signing_key(settings: Settings) -> bytes:
    if settings.approval.signing_key:
        return settings.approval.signing_key.encode("utf-8")
    logger.warning(
        "APPROVAL_SIGNING_KEY is not set; using a per-process key. "
        "Approval tokens will not survive a restart."
    )
    return secrets.token_bytes(32)


def build_app_context(
    settings: Settings,
    *,
    boundary: PermissionBoundary | None = None,
    connections: ConnectionRegistry | None = None,
    store: SqliteStore | None = None,
    classifier: Classifier | None = None,
    runner: ActionRunner | None = None,
    inspector: StateInspector | None = None,
    resolver: ResourceResolver | None = None,
    session_factory: SessionFactory | None = None,
) -> AppContext:
    boundary = boundary or PermissionBoundary(load_boundary(settings.boundary.path))
    connections = connections or load_connections(settings.connections.registry_path)
    store = store or SqliteStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)

    if inspector is None:
        inspector = Boto3StateInspector(settings, session_factory)
    if resolver is None and isinstance(inspector, Boto3StateInspector):
        resolver = inspector
    if runner is None:
        runner = Boto3ActionRunner(settings, session_factory)

    audit = AuditLog(store, anchor_interval=settings.audit.anchor_interval)
    scorer = RiskScorer(boundary.config.risk)
    kill_switch = KillSwitch(audit)
    plans = PlanStore(store)

    parser = IntentParser(
        boundary,
        audit,
        connections,
        classifier=classifier,
        confidence_threshold=settings.plan.confidence_threshold,
    )
    generator = PlanGenerator(
        boundary,
        scorer,
        plans,
        audit,
        connections,
        resolver=resolver,
        ttl_seconds=settings.plan.ttl_seconds,
        dsl_version=settings.plan.dsl_version,
    )
    simulator = SimulationEngine(
        boundary, scorer, plans, store, audit, connections, inspector=inspector
    )
    approvals = ApprovalService(
        plans,
        store,
        audit,
        kill_switch,
        connections,
        signing_key=_signing_key(settings),
        ttl_seconds=settings.approval.ttl_seconds,
        require_simulation_for=settings.approval.require_simulation_for,
    )
    executor = ExecutionEngine(
        boundary,
        plans,
        approvals,
        kill_switch,
        audit,
        connections,
        runner,
        max_retries=settings.execution.max_retries,
        retry_backoff_seconds=settings.execution.retry_backoff_seconds,
    )
    logger.info(
        "Gate ready: %d catalog actions, %d connections, audit position %d",
        len(boundary.config.actions),
        len(connections.connections()),
        audit.chain_position,
    )
    return AppContext(
        settings=settings,
        store=store,
        audit=audit,
        boundary=boundary,
        scorer=scorer,
        connections=connections,
        kill_switch=kill_switch,
        plans=plans,
        parser=parser,
        generator=generator,
        simulator=simulator,
        approvals=approvals,
        executor=executor,
    )


@lru_cache(maxsize=1)
def get_app_context() -> AppContext:
    """Cached process-wide context built from ``load_settings()``."""
    return build_app_context(load_settings())
