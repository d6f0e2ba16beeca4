"""Tests for approval tokens."""

from __future__ import annotations

from datetime import timedelta

import jwt
import pytest

from aws_ops_gate.approval import service as approval_service
from aws_ops_gate.approval.service import TokenSigner
from aws_ops_gate.domain.models import IntentEntities, ParsedIntent
from aws_ops_gate.errors import BlockedError, ConflictError, ExpiredError, PlanValidationError
from aws_ops_gate.utils.time import utc_now


def _plan(ctx, action: str, connection_id: str, resources: list[str]):
    service, operation = action.split(":")
    intent = ParsedIntent(
        original_request=f"{operation} {' '.join(resources)}",
        interpreted_action=action,
        confidence=0.9,
        entities=IntentEntities(service=service, action=operation, resources=resources),
        suggested_action=action,
    )
    return ctx.generator.generate(intent, connection_id)


def _shift_clock(monkeypatch, delta: timedelta) -> None:
    shifted = utc_now() + delta
    monkeypatch.setattr(approval_service, "utc_now", lambda: shifted)


@pytest.fixture
def stop_plan(ctx):
    return _plan(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000a"])


def test_approve_medium_plan(ctx, stop_plan, entries):
    grant = ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops")

    assert grant.approval_token.count(".") == 2
    assert jwt.get_unverified_header(grant.approval_token)["alg"] == "HS256"
    decoded = jwt.decode(grant.approval_token, options={"verify_signature": False})
    assert decoded["pid"] == stop_plan.plan_id
    assert decoded["exp"] <= int(stop_plan.expires_at.timestamp())
    assert grant.expires_at <= stop_plan.expires_at
    assert ctx.plans.status(stop_plan.plan_id) == "approved"

    approved = entries("plan_approved")
    assert len(approved) == 1
    assert approved[0]["details"]["reused"] is False
    assert approved[0]["details"]["dslHash"] == stop_plan.dsl_hash
    assert grant.approval_token not in str(approved[0])


def test_second_approval_reuses_outstanding_token(ctx, stop_plan, entries):
    first = ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops")
    second = ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops")

    assert second.approval_token == first.approval_token
    assert [e["details"]["reused"] for e in entries("plan_approved")] == [False, True]


def test_token_expiry_is_bounded_by_plan_expiry(ctx, settings, stop_plan):
    grant = ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops")

    lifetime = grant.expires_at - utc_now()
    assert lifetime <= timedelta(seconds=settings.approval.ttl_seconds)
    assert grant.expires_at <= stop_plan.expires_at


def test_high_risk_plan_requires_simulation(ctx, entries):
    resources = [f"i-000000{n:02d}" for n in range(10)]
    plan = _plan(ctx, "ec2:StopInstances", "conn_staging_rw", resources)
    assert plan.summary.risk_score == 50

    with pytest.raises(BlockedError, match="run a simulation"):
        ctx.approvals.approve(plan.plan_id, "conn_staging_rw")
    rejected = entries("plan_rejected")
    assert rejected[0]["result"] == "blocked"
    assert rejected[0]["details"]["riskLevel"] == "high"

    simulation = ctx.simulator.simulate(plan, "conn_staging_rw")
    assert simulation.can_promote_to_live is True

    grant = ctx.approvals.approve(plan.plan_id, "conn_staging_rw")
    assert grant.approval_token


def test_unpromotable_simulation_blocks_approval(ctx):
    plan = _plan(ctx, "ec2:TerminateInstances", "conn_staging_rw", ["i-0000000a"])
    ctx.simulator.simulate(plan, "conn_staging_rw")

    with pytest.raises(BlockedError, match="does not allow promotion") as exc_info:
        ctx.approvals.approve(plan.plan_id, "conn_staging_rw")

    assert "Overall risk is critical" in exc_info.value.details["promotionBlockers"]


def test_expired_plan_cannot_be_approved(ctx, stop_plan, monkeypatch, entries):
    _shift_clock(monkeypatch, timedelta(minutes=20))

    with pytest.raises(ExpiredError):
        ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops")

    assert entries("plan_rejected")[0]["result"] == "failure"


def test_read_only_mode_refuses_approval(ctx, stop_plan):
    ctx.kill_switch.activate("read_only", reason="freeze")

    with pytest.raises(BlockedError, match="Read-only mode"):
        ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops")


def test_connection_kill_switch_refuses_approval(ctx, stop_plan):
    ctx.kill_switch.activate("customer", "cust_example", reason="offboarding")

    with pytest.raises(BlockedError, match="offboarding"):
        ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops")


def test_plan_bound_to_other_connection(ctx, stop_plan):
    with pytest.raises(PlanValidationError, match="different connection"):
        ctx.approvals.approve(stop_plan.plan_id, "conn_staging_rw")


def test_validate_and_consume_once(ctx, stop_plan):
    token = ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops").approval_token

    record = ctx.approvals.validate(token, stop_plan, "conn_prod_ops")
    assert record.plan_id == stop_plan.plan_id
    ctx.approvals.consume(record)

    with pytest.raises(ConflictError):
        ctx.approvals.consume(record)
    with pytest.raises(ConflictError, match="already been used"):
        ctx.approvals.validate(token, stop_plan, "conn_prod_ops")


def test_tampered_token_is_rejected(ctx, stop_plan):
    token = ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops").approval_token
    header, claims, signature = token.split(".")
    first = "B" if signature.startswith("A") else "A"
    forged = f"{header}.{claims}.{first}{signature[1:]}"

    with pytest.raises(PlanValidationError, match="signature"):
        ctx.approvals.validate(forged, stop_plan, "conn_prod_ops")
    with pytest.raises(PlanValidationError, match="Malformed"):
        ctx.approvals.validate("not-a-token", stop_plan, "conn_prod_ops")


def test_token_from_another_signer_is_rejected(ctx, stop_plan):
    foreign = TokenSigner(b"a-different-signing-key-0000000000").sign({"pid": stop_plan.plan_id})

    with pytest.raises(PlanValidationError, match="signature"):
        ctx.approvals.validate(foreign, stop_plan, "conn_prod_ops")


def test_token_bound_to_plan(ctx, stop_plan):
    other = _plan(ctx, "ec2:StopInstances", "conn_prod_ops", ["i-0000000b"])
    token = ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops").approval_token

    with pytest.raises(PlanValidationError, match="does not match"):
        ctx.approvals.validate(token, other, "conn_prod_ops")


def test_expired_plan_reported_before_token(ctx, stop_plan, monkeypatch):
    token = ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops").approval_token
    _shift_clock(monkeypatch, timedelta(minutes=20))

    with pytest.raises(ExpiredError, match="Plan"):
        ctx.approvals.validate(token, stop_plan, "conn_prod_ops")


def test_expired_token(ctx, stop_plan, monkeypatch):
    token = ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops").approval_token
    _shift_clock(monkeypatch, timedelta(minutes=6))

    with pytest.raises(ExpiredError, match="Approval token has expired"):
        ctx.approvals.validate(token, stop_plan, "conn_prod_ops")


def test_signer_rejects_short_keys():
    with pytest.raises(ValueError, match="at least 32 bytes"):
        TokenSigner(b"short")


def test_consumed_approval_blocks_reapproval(ctx, stop_plan, entries):
    token = ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops").approval_token
    ctx.approvals.consume(ctx.approvals.validate(token, stop_plan, "conn_prod_ops"))

    with pytest.raises(ConflictError, match="already been executed"):
        ctx.approvals.approve(stop_plan.plan_id, "conn_prod_ops")

    assert entries("plan_rejected")[-1]["details"]["planStatus"] == "approved"


@pytest.mark.parametrize("token", ["v1.abc.éé", "é.é.é", "a.b", ""])
def test_hostile_tokens_are_malformed(ctx, stop_plan, token):
    with pytest.raises(PlanValidationError, match="Malformed"):
        ctx.approvals.validate(token, stop_plan, "conn_prod_ops")


def test_token_missing_claims_is_malformed(ctx, settings, stop_plan):
    signer = TokenSigner(settings.approval.signing_key.encode("utf-8"))
    token = signer.sign({"pid": stop_plan.plan_id, "cid": "conn_prod_ops"})

    with pytest.raises(PlanValidationError, match="Malformed"):
        ctx.approvals.validate(token, stop_plan, "conn_prod_ops")
