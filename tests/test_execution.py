"""Tests for plan execution, retries and rollback."""

from __future__ import annotations

import logging
import threading
from datetime import timedelta

import pytest
from botocore.exceptions import ClientError

from aws_ops_gate.app import build_app_context
from aws_ops_gate.approval import service as approval_service
from aws_ops_gate.config import ApprovalSettings
from aws_ops_gate.domain.models import (
    ExecutionStatus,
    IntentEntities,
    ParsedIntent,
    StepStatus,
)
from aws_ops_gate.errors import BlockedError, ConflictError, ExpiredError, PlanValidationError
from aws_ops_gate.utils.time import utc_now


def _client_error(code: str, operation: str = "StopInstances") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": f"{code} raised"}}, operation)


def _approved(ctx, action: str, connection_id: str, resources: list[str]):
    service, operation = action.split(":")
    intent = ParsedIntent(
        original_request=f"{operation} {' '.join(resources)}",
        interpreted_action=action,
        confidence=0.9,
        entities=IntentEntities(service=service, action=operation, resources=resources),
        suggested_action=action,
    )
    plan = ctx.generator.generate(intent, connection_id)
    token = ctx.approvals.approve(plan.plan_id, connection_id).approval_token
    return plan, token


@pytest.fixture
def lenient_ctx(settings, boundary, registry, store, runner, inspector):
    """Context that approves critical plans without a simulation."""
    relaxed = settings.model_copy(
        update={
            "approval": ApprovalSettings(
                signing_key=settings.approval.signing_key, require_simulation_for=()
            )
        }
    )
    return build_app_context(
        relaxed,
        boundary=boundary,
        connections=registry,
        store=store,
        runner=runner,
        inspector=inspector,
        resolver=inspector,
    )


def test_stop_plan_completes(ctx, runner, entries):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000a", "i-0000000b"])

    result = ctx.executor.execute(plan, "conn_prod_ops", token)

    assert result.status == ExecutionStatus.COMPLETED
    assert result.error is None
    assert result.rollback_executed is False
    assert [s.status for s in result.steps] == [StepStatus.SUCCEEDED, StepStatus.SUCCEEDED]
    assert runner.keys() == [
        ("ec2:StopInstances", ["i-0000000a"]),
        ("ec2:StopInstances", ["i-0000000b"]),
    ]
    assert all(call.region == "us-east-1" for call in runner.calls)
    assert runner.calls[0].connection.connection_id == "conn_prod_ops"
    assert ctx.plans.status(plan.plan_id) == "completed"

    assert len(entries("execution_started")) == 1
    completed = entries("execution_completed")
    assert len(completed) == 1
    assert completed[0]["result"] == "success"
    assert [s["status"] for s in completed[0]["impact"]["steps"]] == ["succeeded", "succeeded"]


def test_failed_step_rolls_back_completed_steps(ctx, runner, entries):
    resources = ["i-00000001", "i-00000002", "i-00000003"]
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_staging_rw", resources)
    runner.fail(
        "ec2:StopInstances", "i-00000002", _client_error("IncorrectInstanceState"), always=True
    )

    result = ctx.executor.execute(plan, "conn_staging_rw", token)

    assert runner.keys() == [
        ("ec2:StopInstances", ["i-00000001"]),
        ("ec2:StopInstances", ["i-00000002"]),
        ("ec2:StartInstances", ["i-00000001"]),
    ]
    assert result.status == ExecutionStatus.ROLLED_BACK
    assert result.rollback_executed is True
    assert result.manual_intervention_steps == []
    assert [s.status for s in result.steps] == [
        StepStatus.ROLLED_BACK,
        StepStatus.FAILED,
        StepStatus.PENDING,
    ]
    assert "IncorrectInstanceState" in result.steps[1].error
    assert result.error.startswith("Step 2 (ec2:StopInstances) failed")

    rollback = entries("rollback_executed")
    assert len(rollback) == 1
    assert rollback[0]["result"] == "success"
    assert rollback[0]["details"]["compensatedSteps"] == [result.steps[0].step_id]
    failed = entries("execution_failed")
    assert failed[-1]["details"]["status"] == "rolled_back"


def test_first_step_failure_is_failed_without_rollback(ctx, runner, entries):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_staging_rw", ["i-00000001"])
    runner.fail("ec2:StopInstances", "i-00000001", _client_error("UnauthorizedOperation"))

    result = ctx.executor.execute(plan, "conn_staging_rw", token)

    assert result.status == ExecutionStatus.FAILED
    assert result.rollback_executed is False
    assert entries("rollback_executed") == []


def test_irreversible_partial_requires_manual_intervention(
    lenient_ctx, runner, entries, caplog
):
    plan, token = _approved(
        lenient_ctx, "ec2:TerminateInstances", "conn_staging_rw", ["i-00000001", "i-00000002"]
    )
    runner.fail(
        "ec2:TerminateInstances",
        "i-00000002",
        _client_error("OperationNotPermitted", "TerminateInstances"),
        always=True,
    )

    with caplog.at_level(logging.CRITICAL, logger="aws_ops_gate.execution.engine"):
        result = lenient_ctx.executor.execute(plan, "conn_staging_rw", token)

    assert result.status == ExecutionStatus.PARTIAL
    assert result.irreversible_partial is True
    assert result.rollback_executed is False
    assert len(result.manual_intervention_steps) == 3
    assert "Manual intervention required" in result.error
    assert any(
        r.levelno == logging.CRITICAL and "IRREVERSIBLE PARTIAL" in r.getMessage()
        for r in caplog.records
    )
    assert entries("rollback_executed") == []
    assert entries("execution_failed")[-1]["details"]["irreversiblePartial"] is True


def test_compensation_takes_parameters_from_response(ctx, runner):
    plan, token = _approved(
        ctx, "ec2:DetachVolume", "conn_staging_rw", ["vol-0000000a", "vol-0000000b"]
    )
    runner.responses["ec2:DetachVolume"] = {"InstanceId": "i-00000001", "Device": "/dev/sdf"}
    runner.fail(
        "ec2:DetachVolume", "vol-0000000b", _client_error("VolumeInUse", "DetachVolume"),
        always=True,
    )

    result = ctx.executor.execute(plan, "conn_staging_rw", token)

    assert result.status == ExecutionStatus.ROLLED_BACK
    attach = runner.calls[-1]
    assert attach.action.key == "ec2:AttachVolume"
    assert attach.resources == ["vol-0000000a"]
    assert attach.parameters == {"InstanceId": "i-00000001", "Device": "/dev/sdf"}


def test_compensation_without_response_data_is_left_to_operator(ctx, runner, entries):
    plan, token = _approved(
        ctx, "ec2:DetachVolume", "conn_staging_rw", ["vol-0000000a", "vol-0000000b"]
    )
    runner.fail(
        "ec2:DetachVolume", "vol-0000000b", _client_error("VolumeInUse", "DetachVolume"),
        always=True,
    )

    result = ctx.executor.execute(plan, "conn_staging_rw", token)

    assert result.status == ExecutionStatus.PARTIAL
    assert result.rollback_executed is True
    assert len(result.manual_intervention_steps) == 1
    assert "ec2:AttachVolume" in result.manual_intervention_steps[0]
    assert "InstanceId" in result.manual_intervention_steps[0]
    assert entries("rollback_executed")[0]["result"] == "failure"


def test_throttled_call_is_retried(ctx, runner):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_staging_rw", ["i-00000001"])
    runner.fail("ec2:StopInstances", "i-00000001", _client_error("Throttling"))

    result = ctx.executor.execute(plan, "conn_staging_rw", token)

    assert result.status == ExecutionStatus.COMPLETED
    assert len(runner.calls) == 2


def test_retries_are_bounded(ctx, runner):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_staging_rw", ["i-00000001"])
    runner.fail("ec2:StopInstances", "i-00000001", _client_error("Throttling"), always=True)

    result = ctx.executor.execute(plan, "conn_staging_rw", token)

    assert result.status == ExecutionStatus.FAILED
    assert len(runner.calls) == 1 + ctx.settings.execution.max_retries


def test_unexpected_runner_error_fails_step(ctx, runner):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_staging_rw", ["i-00000001"])
    runner.fail("ec2:StopInstances", "i-00000001", RuntimeError("socket closed"))

    result = ctx.executor.execute(plan, "conn_staging_rw", token)

    assert result.status == ExecutionStatus.FAILED
    assert result.steps[0].error == "socket closed"


def test_token_is_single_use(ctx, entries):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000a"])
    ctx.executor.execute(plan, "conn_prod_ops", token)

    with pytest.raises(ConflictError, match="already been used"):
        ctx.executor.execute(plan, "conn_prod_ops", token)

    refused = entries("execution_failed")
    assert refused[-1]["details"]["stage"] == "preflight"
    assert len(entries("execution_started")) == 1


def test_tampered_plan_is_refused(ctx, runner):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000a"])
    steps = [s.model_copy(update={"resources": ["i-0000ffff"]}) for s in plan.steps]

    with pytest.raises(PlanValidationError):
        ctx.executor.execute(plan.model_copy(update={"steps": steps}), "conn_prod_ops", token)

    assert runner.calls == []


def test_simulation_mode_connection_cannot_execute(ctx, runner, entries):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_dev_sandbox", ["i-0000000a"])

    with pytest.raises(BlockedError, match="simulation mode"):
        ctx.executor.execute(plan, "conn_dev_sandbox", token)

    denied = entries("permission_denied")
    assert len(denied) == 1
    assert denied[0]["details"]["stage"] == "preflight"
    assert runner.calls == []


def test_kill_switch_before_execution_keeps_token(ctx, runner):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000a"])
    ctx.kill_switch.activate("global", reason="incident")

    with pytest.raises(BlockedError, match="incident"):
        ctx.executor.execute(plan, "conn_prod_ops", token)
    assert runner.calls == []

    ctx.kill_switch.deactivate("global")
    result = ctx.executor.execute(plan, "conn_prod_ops", token)
    assert result.status == ExecutionStatus.COMPLETED


def test_kill_switch_halts_between_steps(ctx, runner, entries):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000a", "i-0000000b"])

    def trip(call):
        ctx.kill_switch.activate("connection", "conn_prod_ops", reason="operator stop")

    runner.before_call = trip

    result = ctx.executor.execute(plan, "conn_prod_ops", token)

    assert len(runner.calls) == 1
    assert result.status == ExecutionStatus.PARTIAL
    assert result.rollback_executed is False
    assert result.manual_intervention_steps == [
        "Step 1: run ec2:StartInstances on i-0000000a"
    ]
    assert result.error.startswith("Halted before step 2")
    assert [s.status for s in result.steps] == [StepStatus.SUCCEEDED, StepStatus.PENDING]
    assert entries("rollback_executed") == []


def test_one_execution_per_connection(ctx, runner, entries):
    first, first_token = _approved(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000a"])
    second, second_token = _approved(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000b"])
    entered = threading.Event()
    release = threading.Event()

    def hold(call):
        entered.set()
        release.wait(timeout=5)

    runner.before_call = hold
    outcome = {}

    def run_first():
        outcome["result"] = ctx.executor.execute(first, "conn_prod_ops", first_token)

    worker = threading.Thread(target=run_first)
    worker.start()
    try:
        assert entered.wait(timeout=5)
        with pytest.raises(ConflictError) as exc_info:
            ctx.executor.execute(second, "conn_prod_ops", second_token)
    finally:
        release.set()
        worker.join(timeout=5)

    assert exc_info.value.details == {"reason": "connection_busy"}
    assert outcome["result"].status == ExecutionStatus.COMPLETED
    assert len(entries("execution_started")) == 1
    busy = [e for e in entries("execution_failed") if e["details"].get("reason")]
    assert len(busy) == 1

    runner.before_call = None
    retried = ctx.executor.execute(second, "conn_prod_ops", second_token)
    assert retried.status == ExecutionStatus.COMPLETED


def test_completed_plan_cannot_be_approved_again(ctx, runner, entries):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000a"])
    ctx.executor.execute(plan, "conn_prod_ops", token)

    with pytest.raises(ConflictError, match="already been executed"):
        ctx.approvals.approve(plan.plan_id, "conn_prod_ops")

    rejected = entries("plan_rejected")
    assert rejected[-1]["result"] == "failure"
    assert rejected[-1]["details"]["planStatus"] == "completed"
    assert len(runner.calls) == 1
    assert len(entries("execution_started")) == 1


def test_failed_compensation_is_left_to_operator(ctx, runner, entries):
    resources = ["i-00000001", "i-00000002"]
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_staging_rw", resources)
    runner.fail(
        "ec2:StopInstances", "i-00000002", _client_error("IncorrectInstanceState"), always=True
    )
    runner.fail(
        "ec2:StartInstances",
        "i-00000001",
        _client_error("IncorrectInstanceState", "StartInstances"),
        always=True,
    )

    result = ctx.executor.execute(plan, "conn_staging_rw", token)

    assert result.status == ExecutionStatus.PARTIAL
    assert result.rollback_executed is True
    assert len(result.manual_intervention_steps) == 1
    assert "ec2:StartInstances on i-00000001" in result.manual_intervention_steps[0]
    assert entries("rollback_executed")[0]["result"] == "failure"
    assert entries("execution_failed")[-1]["details"]["status"] == "partial"


def test_compensation_raising_unexpectedly_still_finishes_run(ctx, runner, entries):
    resources = ["i-00000001", "i-00000002"]
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_staging_rw", resources)
    runner.fail(
        "ec2:StopInstances", "i-00000002", _client_error("IncorrectInstanceState"), always=True
    )
    runner.fail("ec2:StartInstances", "i-00000001", RuntimeError("connection reset"))

    result = ctx.executor.execute(plan, "conn_staging_rw", token)

    assert result.status == ExecutionStatus.PARTIAL
    assert "connection reset" in result.manual_intervention_steps[0]
    assert ctx.plans.status(plan.plan_id) == "partial"
    terminal = entries("execution_failed")
    assert len(terminal) == 1
    assert terminal[0]["details"]["rollbackExecuted"] is True


def test_expired_plan_cannot_run_with_live_token(ctx, runner, entries, monkeypatch):
    plan, token = _approved(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000a"])
    later = utc_now() + timedelta(minutes=20)
    monkeypatch.setattr(approval_service, "utc_now", lambda: later)

    with pytest.raises(ExpiredError, match="Plan"):
        ctx.executor.execute(plan, "conn_prod_ops", token)

    refused = entries("execution_failed")
    assert refused[-1]["details"]["stage"] == "preflight"
    assert refused[-1]["result"] == "failure"
    assert entries("execution_started") == []
    assert runner.calls == []


def test_non_ascii_token_is_refused_and_audited(ctx, runner, entries):
    plan, _ = _approved(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000a"])

    with pytest.raises(PlanValidationError, match="Malformed"):
        ctx.executor.execute(plan, "conn_prod_ops", "v1.abc.éé")

    assert entries("execution_failed")[-1]["details"]["stage"] == "preflight"
    assert runner.calls == []
