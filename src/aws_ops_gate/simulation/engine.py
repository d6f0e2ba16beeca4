"""Dry-run a plan: permissions, cost and an independent risk assessment.

Nothing here mutates cloud state. Live state is only observed through a
``StateInspector``, and only to discount resources that are already in
the state an action would put them in.
"""

from __future__ import annotations

import logging
from collections import defaultdict

from aws_ops_gate.audit.chain import AuditLog
from aws_ops_gate.audit.db import SqliteStore
from aws_ops_gate.audit.models import AuditEventType, AuditResult
from aws_ops_gate.connections.registry import Connection, ConnectionRegistry, ExecutionMode
from aws_ops_gate.domain.models import (
    CostPrediction,
    ExecutionPlan,
    ExecutionStep,
    PermissionValidation,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    SimulationResult,
)
from aws_ops_gate.errors import GateError, PlanValidationError, ProviderError
from aws_ops_gate.execution.aws_client import StateInspector
from aws_ops_gate.planning.dsl import compute_dsl_hash
from aws_ops_gate.planning.risk import RiskScorer
from aws_ops_gate.planning.store import PlanStore
from aws_ops_gate.policy.boundary import PermissionBoundary
from aws_ops_gate.utils.time import to_iso, utc_now

logger = logging.getLogger(__name__)

_LARGE_BATCH = 10


def cost_confidence(steps: list[ExecutionStep]) -> str:
    models = {step.cost_model for step in steps}
    if "estimated" in models:
        return "low"
    if "variable" in models:
        return "medium"
    return "high"


def verify_submitted_plan(
    submitted: ExecutionPlan, stored: ExecutionPlan, connection_id: str
) -> None:
    """Reject a submitted plan whose executable content or binding differs from the stored one."""
    if submitted.plan_id != stored.plan_id:
        raise PlanValidationError("Submitted plan id does not match the stored plan")
    recomputed = compute_dsl_hash(stored.dsl_version, submitted.steps)
    if recomputed != submitted.dsl_hash or recomputed != stored.dsl_hash:
        raise PlanValidationError(
            "Plan content does not match its dslHash",
            details={"planId": stored.plan_id},
        )
    if stored.connection_id != connection_id:
        raise PlanValidationError(
            f"Plan {stored.plan_id} is bound to a different connection"
        )


class SimulationEngine:
    def __init__(
        self,
        boundary: PermissionBoundary,
        scorer: RiskScorer,
        plans: PlanStore,
        store: SqliteStore,
        audit: AuditLog,
        connections: ConnectionRegistry,
        *,
        inspector: StateInspector | None = None,
    ) -> None:
        self._boundary = boundary
        self._scorer = scorer
        self._plans = plans
        self._store = store
        self._audit = audit
        self._connections = connections
        self._inspector = inspector

    def simulate(self, plan: ExecutionPlan, connection_id: str) -> SimulationResult:
        try:
            stored = self._plans.get(plan.plan_id)
            verify_submitted_plan(plan, stored, connection_id)
            connection = self._connections.get(connection_id)
            result = self._run(stored, connection)
        except GateError as exc:
            self._audit.record(
                AuditEventType.SIMULATION_EXECUTED,
                AuditResult(exc.category),
                connection_id=connection_id,
                plan_id=plan.plan_id,
                error=exc.message,
            )
            raise

        self._store.save_simulation(
            result.plan_id,
            result.dsl_hash,
            result.can_promote_to_live,
            result.to_wire(),
            to_iso(result.simulated_at),
        )
        self._audit.record(
            AuditEventType.SIMULATION_EXECUTED,
            AuditResult.SUCCESS if result.can_promote_to_live else AuditResult.BLOCKED,
            connection_id=connection_id,
            plan_id=result.plan_id,
            resource_count=stored.summary.resources_affected,
            cost_change=result.cost_prediction.monthly,
            details={
                "status": result.status,
                "canPromoteToLive": result.can_promote_to_live,
                "promotionBlockers": result.promotion_blockers,
                "missingPermissions": result.permission_validation.missing_permissions,
                "riskScore": result.risk_assessment.risk_score,
            },
        )
        logger.info(
            "Simulated plan %s: promotable=%s blockers=%d",
            result.plan_id,
            result.can_promote_to_live,
            len(result.promotion_blockers),
        )
        return result

    def latest(self, plan_id: str, dsl_hash: str) -> SimulationResult | None:
        payload = self._store.get_simulation(plan_id, dsl_hash)
        if payload is None:
            return None
        return SimulationResult.model_validate(payload)

    def _run(self, plan: ExecutionPlan, connection: Connection) -> SimulationResult:
        granted = connection.granted_permissions(self._boundary)
        required = sorted({step.action_key for step in plan.steps})
        missing = [key for key in required if key not in granted]

        monthly = round(sum(step.impact.cost_change for step in plan.steps), 2)
        risk, state_error = self._assess(plan, connection)
        if missing:
            risk.factors.append(
                RiskFactor(
                    factor="missing_permissions",
                    impact="high",
                    description=f"Connection lacks {', '.join(missing)}",
                )
            )

        blockers: list[str] = []
        if missing:
            blockers.append(f"Missing permissions: {', '.join(missing)}")
        banned = [key for key in required if self._boundary.is_banned(key)]
        if banned:
            blockers.append(f"Banned actions in plan: {', '.join(banned)}")
        if risk.overall_risk == RiskLevel.CRITICAL:
            blockers.append("Overall risk is critical")
        if plan.is_expired():
            blockers.append("Plan has expired; generate a new plan")
        if connection.execution_mode == ExecutionMode.SIMULATION:
            blockers.append(
                f"Connection {connection.connection_id} is in simulation mode"
            )
        if not connection.is_active:
            blockers.append(
                f"Connection {connection.connection_id} is {connection.status.value}"
            )
        if state_error:
            blockers.append(f"Account state could not be read: {state_error}")

        return SimulationResult(
            plan_id=plan.plan_id,
            dsl_hash=plan.dsl_hash,
            status="failed" if state_error else "simulated",
            permission_validation=PermissionValidation(
                valid=not missing, missing_permissions=missing
            ),
            cost_prediction=CostPrediction(
                monthly=monthly,
                annual=round(monthly * 12, 2),
                confidence=cost_confidence(plan.steps),
            ),
            risk_assessment=risk,
            can_promote_to_live=not blockers,
            promotion_blockers=blockers,
            simulated_at=utc_now(),
        )

    def _assess(
        self, plan: ExecutionPlan, connection: Connection
    ) -> tuple[RiskAssessment, str | None]:
        by_action: dict[str, list[ExecutionStep]] = defaultdict(list)
        for step in plan.steps:
            by_action[step.action_key].append(step)

        factors: list[RiskFactor] = []
        mitigations: list[str] = []
        state_error: str | None = None
        best_score = 0
        best_level = RiskLevel.LOW

        for key, steps in by_action.items():
            action = self._boundary.get_action(key)
            if action is None:
                factors.append(
                    RiskFactor(
                        factor="unknown_action",
                        impact="critical",
                        description=f"{key} is not in the catalog",
                    )
                )
                best_level = RiskLevel.CRITICAL
                continue

            resources = sorted({r for s in steps for r in s.resources})
            pending = resources
            if self._inspector is not None and action.target_states:
                try:
                    states = self._inspector.current_states(
                        connection, action, resources, steps[0].region
                    )
                except ProviderError as exc:
                    state_error = exc.message
                    factors.append(
                        RiskFactor(
                            factor="state_unknown",
                            impact="medium",
                            description=exc.message,
                        )
                    )
                else:
                    done = [r for r in resources if states.get(r) in action.target_states]
                    pending = [r for r in resources if r not in done]
                    if done:
                        factors.append(
                            RiskFactor(
                                factor="already_in_target_state",
                                impact="low",
                                description=(
                                    f"{len(done)} resource(s) already "
                                    f"{'/'.join(action.target_states)} for {key}"
                                ),
                            )
                        )

            score, level = self._scorer.assess_step(
                action.risk,
                reversible=action.reversible,
                downtime=action.downtime,
                data_loss=action.data_loss,
                resource_count=len(pending),
            )
            if score > best_score:
                best_score = score
            if level.rank > best_level.rank:
                best_level = level

            if not action.reversible:
                factors.append(
                    RiskFactor(
                        factor="irreversible",
                        impact="high",
                        description=f"{key} cannot be undone",
                    )
                )
            if action.data_loss:
                factors.append(
                    RiskFactor(
                        factor="data_loss",
                        impact="critical",
                        description=f"{key} permanently deletes data",
                    )
                )
            if action.downtime:
                factors.append(
                    RiskFactor(
                        factor="downtime",
                        impact="medium",
                        description=f"{key} interrupts service on {len(pending)} resource(s)",
                    )
                )
            if len(pending) >= _LARGE_BATCH:
                factors.append(
                    RiskFactor(
                        factor="blast_radius",
                        impact="high",
                        description=f"{key} touches {len(pending)} resources",
                    )
                )

        if any(f.factor == "irreversible" for f in factors):
            mitigations.append("Snapshot or back up affected resources before execution")
        else:
            mitigations.append("Compensating actions are available if a step fails")
        if any(f.factor == "downtime" for f in factors):
            mitigations.append("Schedule execution inside a maintenance window")
        if any(f.factor == "blast_radius" for f in factors):
            mitigations.append("Split the plan into smaller batches")
        mitigations.append("Review the plan visualization before approving")

        return (
            RiskAssessment(
                overall_risk=best_level,
                risk_score=best_score,
                factors=factors,
                mitigations=mitigations,
            ),
            state_error,
        )
