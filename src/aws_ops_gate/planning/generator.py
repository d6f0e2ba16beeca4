"""Turn a parsed intent into an ordered, risk-scored execution plan."""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Any, Protocol

from aws_ops_gate.audit.chain import AuditLog
from aws_ops_gate.audit.models import AuditEventType, AuditResult
from aws_ops_gate.connections.registry import Connection, ConnectionRegistry
from aws_ops_gate.domain.models import (
    ExecutionPlan,
    ExecutionStep,
    ParsedIntent,
    PlanSummary,
    RiskLevel,
    StepImpact,
)
from aws_ops_gate.errors import BlockedError, GateError, PlanValidationError
from aws_ops_gate.planning.dsl import compute_dsl_hash
from aws_ops_gate.planning.risk import RiskScorer, level_for_score
from aws_ops_gate.planning.store import PlanStore
from aws_ops_gate.policy.boundary import PermissionBoundary
from aws_ops_gate.policy.models import CatalogAction
from aws_ops_gate.utils.time import utc_now

logger = logging.getLogger(__name__)

_MAX_RESOURCE_ID_LENGTH = 2048


class ResourceResolver(Protocol):
    """Finds the resources an intent refers to when none were named."""

    def resolve(
        self,
        connection: Connection,
        action: CatalogAction,
        parameters: dict[str, Any],
        region: str | None,
    ) -> list[str]: ...


class PlanGenerator:
    def __init__(
        self,
        boundary: PermissionBoundary,
        scorer: RiskScorer,
        plans: PlanStore,
        audit: AuditLog,
        connections: ConnectionRegistry,
        *,
        resolver: ResourceResolver | None = None,
        ttl_seconds: int = 900,
        dsl_version: str = "1.0",
    ) -> None:
        self._boundary = boundary
        self._scorer = scorer
        self._plans = plans
        self._audit = audit
        self._connections = connections
        self._resolver = resolver
        self._ttl = timedelta(seconds=ttl_seconds)
        self._dsl_version = dsl_version

    def generate(
        self,
        intent: ParsedIntent,
        connection_id: str,
        resources: list[str] | None = None,
    ) -> ExecutionPlan:
        try:
            plan = self._build(intent, connection_id, resources)
        except GateError as exc:
            self._audit.record(
                AuditEventType.PLAN_GENERATED,
                AuditResult(exc.category),
                connection_id=connection_id,
                service=intent.entities.service,
                operation=intent.entities.action,
                details={"interpretedAction": intent.interpreted_action, **exc.details},
                error=exc.message,
            )
            logger.warning("Plan generation refused for %s: %s", connection_id, exc.message)
            raise

        self._plans.save(plan)
        first = plan.steps[0]
        self._audit.record(
            AuditEventType.PLAN_GENERATED,
            AuditResult.SUCCESS,
            connection_id=connection_id,
            service=first.service,
            operation=intent.entities.action,
            plan_id=plan.plan_id,
            resource_count=plan.summary.resources_affected,
            cost_change=plan.summary.estimated_cost_impact,
            details={
                "dslHash": plan.dsl_hash,
                "totalSteps": plan.summary.total_steps,
                "riskScore": plan.summary.risk_score,
                "requiresApproval": plan.summary.requires_approval,
                "reversible": plan.summary.reversible,
            },
        )
        logger.info(
            "Plan %s generated: %d step(s), risk %d",
            plan.plan_id,
            plan.summary.total_steps,
            plan.summary.risk_score,
        )
        return plan

    def _build(
        self,
        intent: ParsedIntent,
        connection_id: str,
        resources: list[str] | None,
    ) -> ExecutionPlan:
        if intent.blocked:
            raise PlanValidationError(
                f"Intent is blocked: {intent.block_reason or 'no reason given'}"
            )
        if not intent.suggested_action:
            raise PlanValidationError("Intent has no suggested action to plan")

        connection = self._connections.get(connection_id)
        if not connection.is_active:
            raise BlockedError(f"Connection {connection_id} is {connection.status.value}")

        # The intent arrives from the client; re-check it against the boundary.
        root = self._boundary.get_action(intent.suggested_action)
        if root is None:
            raise PlanValidationError(
                f"Suggested action {intent.suggested_action} is not in the catalog"
            )
        chain = self._boundary.expand_prerequisites(root.key)
        for action in chain:
            decision = self._boundary.evaluate(action.operation)
            if not decision.allowed:
                raise BlockedError(decision.reasons[0], details={"action": action.key})
            if not connection.reaches_service(action.operation.service):
                raise BlockedError(
                    f"Service '{action.operation.service}' is not enabled for connection "
                    f"{connection_id}"
                )

        region = self._pick_region(intent, connection, root)
        targets = self._resolve_resources(intent, connection, root, resources, region)

        violations: list[str] = []
        for action in chain:
            violations.extend(
                self._boundary.hard_limit_violations(
                    action, len(targets), action.cost_per_resource * len(targets)
                )
            )
        if violations:
            raise BlockedError(
                "; ".join(violations), details={"resourceCount": len(targets)}
            )

        steps = self._build_steps(chain, targets, region)
        created_at = utc_now()
        plan_id = f"plan_{uuid.uuid4().hex}"
        return ExecutionPlan(
            plan_id=plan_id,
            dsl_hash=compute_dsl_hash(self._dsl_version, steps),
            dsl_version=self._dsl_version,
            connection_id=connection_id,
            intent_action=root.key,
            steps=steps,
            summary=self._summarize(chain, steps),
            visualization=render_mermaid(steps),
            created_at=created_at,
            expires_at=created_at + self._ttl,
        )

    @staticmethod
    def _pick_region(
        intent: ParsedIntent, connection: Connection, action: CatalogAction
    ) -> str | None:
        for region in intent.entities.regions:
            if connection.reaches_region(region, action.operation.service):
                return region
        if intent.entities.regions:
            raise BlockedError(
                "None of the requested regions are enabled for connection "
                f"{connection.connection_id}"
            )
        return connection.allowed_regions[0] if connection.allowed_regions else None

    def _resolve_resources(
        self,
        intent: ParsedIntent,
        connection: Connection,
        action: CatalogAction,
        override: list[str] | None,
        region: str | None,
    ) -> list[str]:
        if override:
            candidates = override
        elif intent.entities.resources:
            candidates = intent.entities.resources
        elif self._resolver is not None:
            candidates = self._resolver.resolve(
                connection, action, dict(intent.entities.parameters), region
            )
        else:
            candidates = []

        cleaned: list[str] = []
        for resource in candidates:
            if not isinstance(resource, str) or not resource.strip():
                raise PlanValidationError("Resource identifiers must be non-empty strings")
            if len(resource) > _MAX_RESOURCE_ID_LENGTH:
                raise PlanValidationError("Resource identifier is too long")
            cleaned.append(resource.strip())
        unique = sorted(set(cleaned))
        if not unique:
            raise PlanValidationError(
                f"No resources found for {action.key}; name them explicitly"
            )
        return unique

    def _build_steps(
        self,
        chain: list[CatalogAction],
        targets: list[str],
        region: str | None,
    ) -> list[ExecutionStep]:
        drafts: list[tuple[tuple[int, str, int], ExecutionStep]] = []
        for position, action in enumerate(chain):
            # Every step of an action shares that action's blast radius.
            score, level = self._scorer.assess_step(
                action.risk,
                reversible=action.reversible,
                downtime=action.downtime,
                data_loss=action.data_loss,
                resource_count=len(targets),
            )
            for resource in targets:
                step = ExecutionStep(
                    step_id=f"step_{uuid.uuid4().hex[:12]}",
                    order=1,
                    service=action.operation.service,
                    action=action.operation.operation,
                    description=f"{action.name}: {resource}",
                    resources=[resource],
                    region=region,
                    parameters=dict(action.parameters),
                    impact=StepImpact(
                        resource_count=1,
                        cost_change=action.cost_per_resource,
                        reversible=action.reversible,
                        downtime=action.downtime,
                        data_loss=action.data_loss,
                        risk_level=level,
                        risk_score=score,
                    ),
                    ordering_key=(action.dependency_rank, resource),
                    cost_model=action.cost_model,
                    compensating_action=action.compensating_action,
                )
                drafts.append(((action.dependency_rank, resource, position), step))

        drafts.sort(key=lambda item: item[0])
        steps: list[ExecutionStep] = []
        for index, (_, step) in enumerate(drafts, start=1):
            steps.append(step.model_copy(update={"order": index}))
        return steps

    def _summarize(self, chain: list[CatalogAction], steps: list[ExecutionStep]) -> PlanSummary:
        durations = {action.key: action.duration_seconds for action in chain}
        risk_score = self._scorer.plan_score([s.impact.risk_score for s in steps])
        reversible = all(s.impact.reversible for s in steps)
        level = level_for_score(risk_score)
        highest = max((s.impact.risk_level for s in steps), key=lambda lv: lv.rank)
        if highest.rank > level.rank:
            level = highest
        requires_approval = (
            any(action.requires_approval for action in chain)
            or not reversible
            or level in (RiskLevel.HIGH, RiskLevel.CRITICAL)
        )
        resources = {r for s in steps for r in s.resources}
        return PlanSummary(
            total_steps=len(steps),
            estimated_duration=sum(durations[s.action_key] for s in steps),
            estimated_cost_impact=round(sum(s.impact.cost_change for s in steps), 2),
            risk_score=risk_score,
            resources_affected=len(resources),
            services_affected=sorted({s.service for s in steps}),
            requires_approval=requires_approval,
            reversible=reversible,
        )


def plan_risk_level(plan: ExecutionPlan) -> RiskLevel:
    level = level_for_score(plan.summary.risk_score)
    for step in plan.steps:
        if step.impact.risk_level.rank > level.rank:
            level = step.impact.risk_level
    return level


_MERMAID_CLASSES = {
    RiskLevel.LOW: "fill:#e6f4ea,stroke:#1e8e3e",
    RiskLevel.MEDIUM: "fill:#fef7e0,stroke:#f9ab00",
    RiskLevel.HIGH: "fill:#fce8e6,stroke:#d93025",
    RiskLevel.CRITICAL: "fill:#d93025,stroke:#a50e0e,color:#fff",
}


def render_mermaid(steps: list[ExecutionStep]) -> str:
    """Mermaid flowchart of the steps in execution order, colored by risk."""
    lines = ["flowchart TD", "    start([Start])"]
    previous = "start"
    for step in sorted(steps, key=lambda s: s.order):
        node = f"s{step.order}"
        label = f"{step.order}. {step.service}:{step.action}<br/>{', '.join(step.resources)}"
        if not step.impact.reversible:
            label += "<br/>irreversible"
        label = label.replace('"', "'")
        lines.append(f'    {node}["{label}"]:::{step.impact.risk_level.value}')
        lines.append(f"    {previous} --> {node}")
        previous = node
    lines.append("    done([Done])")
    lines.append(f"    {previous} --> done")
    for level, style in _MERMAID_CLASSES.items():
        lines.append(f"    classDef {level.value} {style}")
    return "\n".join(lines)
