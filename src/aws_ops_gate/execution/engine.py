"""Run an approved plan step by step, with rollback on partial failure."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError

from aws_ops_gate.approval.service import ApprovalService
from aws_ops_gate.audit.chain import AuditLog
from aws_ops_gate.audit.models import AuditEventType, AuditResult
from aws_ops_gate.connections.registry import Connection, ConnectionRegistry, ExecutionMode
from aws_ops_gate.domain.models import (
    ExecutionPlan,
    ExecutionResult,
    ExecutionStatus,
    ExecutionStep,
    StepStatus,
)
from aws_ops_gate.domain.operations import OperationRef
from aws_ops_gate.errors import BlockedError, ConflictError, GateError
from aws_ops_gate.execution.aws_client import ActionCall, ActionRunner, is_retryable
from aws_ops_gate.killswitch.switch import KillSwitch
from aws_ops_gate.planning.store import PlanStore
from aws_ops_gate.policy.boundary import PermissionBoundary
from aws_ops_gate.simulation.engine import verify_submitted_plan
from aws_ops_gate.utils.time import utc_now

logger = logging.getLogger(__name__)


class ExecutionEngine:
    def __init__(
        self,
        boundary: PermissionBoundary,
        plans: PlanStore,
        approvals: ApprovalService,
        kill_switch: KillSwitch,
        audit: AuditLog,
        connections: ConnectionRegistry,
        runner: ActionRunner,
        *,
        max_retries: int = 2,
        retry_backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._boundary = boundary
        self._plans = plans
        self._approvals = approvals
        self._kill_switch = kill_switch
        self._audit = audit
        self._connections = connections
        self._runner = runner
        self._max_retries = max_retries
        self._backoff = retry_backoff_seconds
        self._sleep = sleep
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, connection_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(connection_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[connection_id] = lock
            return lock

    def execute(
        self,
        plan: ExecutionPlan,
        connection_id: str,
        approval_token: str,
    ) -> ExecutionResult:
        lock = self._lock_for(connection_id)
        if not lock.acquire(blocking=False):
            message = f"Connection {connection_id} is already executing a plan"
            self._audit.record(
                AuditEventType.EXECUTION_FAILED,
                AuditResult.FAILURE,
                connection_id=connection_id,
                plan_id=plan.plan_id,
                details={"reason": "connection_busy"},
                error=message,
            )
            raise ConflictError(message, details={"reason": "connection_busy"})
        try:
            stored, connection = self._preflight(plan, connection_id, approval_token)
            return self._run(stored, connection)
        finally:
            lock.release()

    def _preflight(
        self,
        plan: ExecutionPlan,
        connection_id: str,
        approval_token: str,
    ) -> tuple[ExecutionPlan, Connection]:
        try:
            stored = self._plans.get(plan.plan_id)
            verify_submitted_plan(plan, stored, connection_id)
            connection = self._connections.get(connection_id)
            if connection.execution_mode == ExecutionMode.SIMULATION:
                raise BlockedError(
                    f"Connection {connection_id} is in simulation mode; live execution is disabled"
                )
            if not connection.is_active:
                raise BlockedError(f"Connection {connection_id} is {connection.status.value}")
            for step in stored.steps:
                decision = self._boundary.evaluate(OperationRef.parse(step.action_key))
                if not decision.allowed:
                    raise BlockedError(decision.reasons[0], details={"stepId": step.step_id})
            record = self._approvals.validate(approval_token, stored, connection_id)
            self._kill_switch.check_mutation_allowed(
                connection_id=connection_id,
                customer_id=connection.customer_id,
                services=sorted({step.service for step in stored.steps}),
            )
            self._approvals.consume(record)
        except GateError as exc:
            event = (
                AuditEventType.PERMISSION_DENIED
                if isinstance(exc, BlockedError)
                else AuditEventType.EXECUTION_FAILED
            )
            self._audit.record(
                event,
                AuditResult(exc.category),
                connection_id=connection_id,
                plan_id=plan.plan_id,
                details={"stage": "preflight", **exc.details},
                error=exc.message,
            )
            logger.warning("Execution of %s refused: %s", plan.plan_id, exc.message)
            raise
        return stored, connection

    def _run(self, plan: ExecutionPlan, connection: Connection) -> ExecutionResult:
        started_at = utc_now()
        started = time.monotonic()
        self._plans.set_status(plan.plan_id, "executing")
        self._audit.record(
            AuditEventType.EXECUTION_STARTED,
            AuditResult.PENDING,
            connection_id=connection.connection_id,
            plan_id=plan.plan_id,
            resource_count=plan.summary.resources_affected,
            cost_change=plan.summary.estimated_cost_impact,
            details={"totalSteps": plan.summary.total_steps, "dslHash": plan.dsl_hash},
        )
        logger.info("Executing plan %s (%d steps)", plan.plan_id, plan.summary.total_steps)

        steps = [
            step.model_copy(deep=True, update={"status": StepStatus.PENDING, "error": None})
            for step in sorted(plan.steps, key=lambda s: s.order)
        ]
        completed: list[tuple[ExecutionStep, dict[str, Any]]] = []
        failure: str | None = None
        halted = False

        for step in steps:
            try:
                self._kill_switch.check_mutation_allowed(
                    connection_id=connection.connection_id,
                    customer_id=connection.customer_id,
                    services=[step.service],
                )
            except BlockedError as exc:
                failure = f"Halted before step {step.order}: {exc.message}"
                halted = True
                logger.warning("Plan %s halted by kill switch: %s", plan.plan_id, exc.message)
                break

            step.status = StepStatus.RUNNING
            try:
                call = ActionCall(
                    action=self._boundary.require_action(step.action_key),
                    resources=list(step.resources),
                    region=step.region,
                    parameters=dict(step.parameters),
                    connection=connection,
                )
                response = self._invoke(call)
            except (ClientError, BotoCoreError) as exc:
                step.status = StepStatus.FAILED
                step.error = str(exc)
                failure = f"Step {step.order} ({step.action_key}) failed: {exc}"
                logger.error("Plan %s step %d failed: %s", plan.plan_id, step.order, exc)
                break
            except (KeyboardInterrupt, SystemExit, MemoryError):
                raise
            except Exception as exc:
                step.status = StepStatus.FAILED
                step.error = str(exc)
                failure = f"Step {step.order} ({step.action_key}) failed: {exc}"
                logger.exception("Plan %s step %d raised", plan.plan_id, step.order)
                break
            step.status = StepStatus.SUCCEEDED
            completed.append((step, response))
            logger.info("Plan %s step %d succeeded", plan.plan_id, step.order)

        rollback_executed = False
        manual: list[str] = []
        irreversible_partial = False

        if failure is None:
            status = ExecutionStatus.COMPLETED
        elif not completed:
            status = ExecutionStatus.FAILED
        elif halted:
            # A tripped switch means no further calls, compensating ones included.
            status = ExecutionStatus.PARTIAL
            manual = [self._manual_undo(step) for step, _ in reversed(completed)]
        elif plan.summary.reversible:
            rollback_executed = True
            manual = self._rollback(plan, connection, completed)
            status = ExecutionStatus.PARTIAL if manual else ExecutionStatus.ROLLED_BACK
        else:
            status = ExecutionStatus.PARTIAL
            irreversible_partial = True
            manual = [
                f"Step {step.order}: {step.action_key} on {', '.join(step.resources)} "
                "took effect and cannot be undone"
                for step, _ in completed
            ]
            logger.critical(
                "IRREVERSIBLE PARTIAL EXECUTION of plan %s on %s: %d of %d steps took effect",
                plan.plan_id,
                connection.connection_id,
                len(completed),
                len(steps),
            )

        error = failure
        if failure and manual:
            error = f"{failure}. Manual intervention required: " + "; ".join(manual)

        completed_at = utc_now()
        result = ExecutionResult(
            plan_id=plan.plan_id,
            status=status,
            steps=steps,
            started_at=started_at,
            completed_at=completed_at,
            duration=round(time.monotonic() - started, 3),
            error=error,
            rollback_executed=rollback_executed,
            manual_intervention_steps=manual,
            irreversible_partial=irreversible_partial,
        )
        self._plans.set_status(plan.plan_id, status.value)
        self._audit.record(
            (
                AuditEventType.EXECUTION_COMPLETED
                if status == ExecutionStatus.COMPLETED
                else AuditEventType.EXECUTION_FAILED
            ),
            AuditResult.SUCCESS if status == ExecutionStatus.COMPLETED else AuditResult.FAILURE,
            connection_id=connection.connection_id,
            plan_id=plan.plan_id,
            resource_count=plan.summary.resources_affected,
            cost_change=plan.summary.estimated_cost_impact,
            steps=[
                {
                    "stepId": step.step_id,
                    "order": step.order,
                    "action": step.action_key,
                    "status": step.status.value,
                    "error": step.error,
                }
                for step in steps
            ],
            details={
                "status": status.value,
                "rollbackExecuted": rollback_executed,
                "irreversiblePartial": irreversible_partial,
                "manualInterventionSteps": manual,
                "duration": result.duration,
            },
            error=error,
        )
        logger.info("Plan %s finished: %s", plan.plan_id, status.value)
        return result

    def _invoke(self, call: ActionCall) -> dict[str, Any]:
        attempt = 0
        while True:
            try:
                return self._runner.invoke(call)
            except (ClientError, BotoCoreError) as exc:
                if attempt >= self._max_retries or not is_retryable(exc):
                    raise
                backoff = self._backoff * (2**attempt)
                logger.info(
                    "Retrying %s after %s (attempt %d)", call.action.key, exc, attempt + 1
                )
                self._sleep(backoff)
                attempt += 1

    def _manual_undo(self, step: ExecutionStep) -> str:
        action = self._boundary.get_action(step.action_key)
        target = ", ".join(step.resources)
        if action is not None and action.compensating_action:
            return f"Step {step.order}: run {action.compensating_action} on {target}"
        return f"Step {step.order}: review {step.action_key} on {target}"

    def _rollback(
        self,
        plan: ExecutionPlan,
        connection: Connection,
        completed: list[tuple[ExecutionStep, dict[str, Any]]],
    ) -> list[str]:
        """Compensate completed steps newest first. Returns steps left for a human."""
        manual: list[str] = []
        compensated: list[str] = []
        for step, response in reversed(completed):
            action = self._boundary.require_action(step.action_key)
            if not action.compensating_action:
                continue
            compensation = self._boundary.require_action(action.compensating_action)
            parameters = dict(compensation.parameters)
            missing = []
            for param, response_key in action.compensation_parameters.items():
                if response_key in response:
                    parameters[param] = response[response_key]
                else:
                    missing.append(response_key)
            if missing:
                manual.append(
                    f"Step {step.order}: run {compensation.key} on {', '.join(step.resources)} "
                    f"(response lacked {', '.join(missing)})"
                )
                continue
            call = ActionCall(
                action=compensation,
                resources=list(step.resources),
                region=step.region,
                parameters=parameters,
                connection=connection,
            )
            try:
                self._invoke(call)
            except (ClientError, BotoCoreError) as exc:
                manual.append(
                    f"Step {step.order}: run {compensation.key} on "
                    f"{', '.join(step.resources)} ({exc})"
                )
                logger.error(
                    "Rollback of plan %s step %d failed: %s", plan.plan_id, step.order, exc
                )
                continue
            except (KeyboardInterrupt, SystemExit, MemoryError):
                raise
            except Exception as exc:
                manual.append(
                    f"Step {step.order}: run {compensation.key} on "
                    f"{', '.join(step.resources)} ({exc})"
                )
                logger.exception("Rollback of plan %s step %d raised", plan.plan_id, step.order)
                continue
            step.status = StepStatus.ROLLED_BACK
            compensated.append(step.step_id)

        self._audit.record(
            AuditEventType.ROLLBACK_EXECUTED,
            AuditResult.FAILURE if manual else AuditResult.SUCCESS,
            connection_id=connection.connection_id,
            plan_id=plan.plan_id,
            resource_count=len({r for step, _ in completed for r in step.resources}),
            details={"compensatedSteps": compensated, "manualInterventionSteps": manual},
        )
        return manual
