"""Time-boxed, single-use approval tokens.

Tokens are HS256 JWTs. Claims bind the token to one approval row, one
plan, one connection and one DSL hash, and ``exp`` carries the token
expiry as a NumericDate. The signature only proves the gate minted the
token; whether it is still usable is decided by the approval row it names.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from aws_ops_gate.audit.chain import AuditLog
from aws_ops_gate.audit.db import SqliteStore
from aws_ops_gate.audit.models import ApprovalRecord, AuditEventType, AuditResult
from aws_ops_gate.connections.registry import ConnectionRegistry
from aws_ops_gate.domain.models import ApprovalGrant, ExecutionPlan
from aws_ops_gate.errors import (
    BlockedError,
    ConflictError,
    ExpiredError,
    GateError,
    PlanValidationError,
)
from aws_ops_gate.killswitch.switch import KillSwitch
from aws_ops_gate.planning.generator import plan_risk_level
from aws_ops_gate.planning.store import PlanStore
from aws_ops_gate.utils.time import parse_iso, to_iso, utc_now, utc_now_iso

logger = logging.getLogger(__name__)

TOKEN_ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["aid", "pid", "cid", "dsl", "exp"]

# Plan states that no longer accept a new approval.
SETTLED_PLAN_STATES = frozenset(
    {"executing", "completed", "partial", "failed", "rolled_back"}
)


class TokenSigner:
    def __init__(self, key: bytes) -> None:
        if len(key) < 32:
            raise ValueError("Approval signing key must be at least 32 bytes")
        self._key = key

    def sign(self, claims: dict[str, Any]) -> str:
        return jwt.encode(claims, self._key, algorithm=TOKEN_ALGORITHM)

    def verify(self, token: str) -> dict[str, Any]:
        # exp is left to the caller so an expired plan is reported before an expired token.
        try:
            return jwt.decode(
                token,
                self._key,
                algorithms=[TOKEN_ALGORITHM],
                options={"require": REQUIRED_CLAIMS, "verify_exp": False},
            )
        except jwt.InvalidSignatureError as e:
            raise PlanValidationError("Approval token signature is invalid") from e
        except jwt.InvalidTokenError as e:
            raise PlanValidationError("Malformed approval token") from e


class ApprovalService:
    def __init__(
        self,
        plans: PlanStore,
        store: SqliteStore,
        audit: AuditLog,
        kill_switch: KillSwitch,
        connections: ConnectionRegistry,
        *,
        signing_key: bytes,
        ttl_seconds: int = 300,
        require_simulation_for: tuple[str, ...] = ("high", "critical"),
    ) -> None:
        self._plans = plans
        self._store = store
        self._audit = audit
        self._kill_switch = kill_switch
        self._connections = connections
        self._signer = TokenSigner(signing_key)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._require_simulation_for = frozenset(require_simulation_for)

    def approve(self, plan_id: str, connection_id: str) -> ApprovalGrant:
        plan: ExecutionPlan | None = None
        try:
            plan = self._plans.get(plan_id)
            grant, reused = self._approve(plan, connection_id)
        except GateError as exc:
            self._audit.record(
                AuditEventType.PLAN_REJECTED,
                AuditResult(exc.category),
                connection_id=connection_id,
                plan_id=plan_id,
                service=plan.steps[0].service if plan else None,
                details=dict(exc.details),
                error=exc.message,
            )
            logger.warning("Approval refused for plan %s: %s", plan_id, exc.message)
            raise

        self._audit.record(
            AuditEventType.PLAN_APPROVED,
            AuditResult.SUCCESS,
            connection_id=connection_id,
            plan_id=plan_id,
            service=plan.steps[0].service,
            resource_count=plan.summary.resources_affected,
            cost_change=plan.summary.estimated_cost_impact,
            details={
                "dslHash": plan.dsl_hash,
                "expiresAt": to_iso(grant.expires_at),
                "reused": reused,
            },
        )
        logger.info("Plan %s approved until %s", plan_id, to_iso(grant.expires_at))
        return grant

    def _approve(self, plan: ExecutionPlan, connection_id: str) -> tuple[ApprovalGrant, bool]:
        if plan.connection_id != connection_id:
            raise PlanValidationError(f"Plan {plan.plan_id} is bound to a different connection")
        connection = self._connections.get(connection_id)
        if not connection.is_active:
            raise BlockedError(f"Connection {connection_id} is {connection.status.value}")
        self._kill_switch.check_mutation_allowed(
            connection_id=connection_id,
            customer_id=connection.customer_id,
            services=sorted({step.service for step in plan.steps}),
        )

        now = utc_now()
        if plan.is_expired(now):
            raise ExpiredError(f"Plan {plan.plan_id} expired at {to_iso(plan.expires_at)}")

        status = self._plans.status(plan.plan_id)
        if status in SETTLED_PLAN_STATES or self._store.has_consumed_approval(
            plan.plan_id, plan.dsl_hash
        ):
            raise ConflictError(
                f"Plan {plan.plan_id} has already been executed; generate a new plan",
                details={"planStatus": status},
            )

        self._store.expire_approvals(to_iso(now))
        existing = self._store.find_issued_approval(plan.plan_id, connection_id, plan.dsl_hash)
        if existing is not None and parse_iso(existing.expires_at) > now:
            return (
                ApprovalGrant(
                    approval_token=existing.token,
                    expires_at=parse_iso(existing.expires_at),
                ),
                True,
            )

        level = plan_risk_level(plan)
        if level.value in self._require_simulation_for:
            simulation = self._store.get_simulation(plan.plan_id, plan.dsl_hash)
            if simulation is None:
                raise BlockedError(
                    f"Plan risk is {level.value}; run a simulation before approving",
                    details={"riskLevel": level.value},
                )
            if not simulation.get("canPromoteToLive"):
                raise BlockedError(
                    "The latest simulation does not allow promotion to live",
                    details={"promotionBlockers": simulation.get("promotionBlockers", [])},
                )

        return self._mint(plan, connection_id, now), False

    def _mint(self, plan: ExecutionPlan, connection_id: str, now: datetime) -> ApprovalGrant:
        expires_at = min(plan.expires_at, now + self._ttl)
        approval_id = f"apr_{uuid.uuid4().hex}"
        token = self._signer.sign(
            {
                "aid": approval_id,
                "pid": plan.plan_id,
                "cid": connection_id,
                "dsl": plan.dsl_hash,
                "exp": int(expires_at.timestamp()),
            }
        )
        self._store.insert_approval(
            ApprovalRecord(
                approval_id=approval_id,
                plan_id=plan.plan_id,
                connection_id=connection_id,
                dsl_hash=plan.dsl_hash,
                token=token,
                status="issued",
                expires_at=to_iso(expires_at),
                created_at=to_iso(now),
            )
        )
        self._plans.set_status(plan.plan_id, "approved")
        return ApprovalGrant(approval_token=token, expires_at=expires_at)

    def validate(self, token: str, plan: ExecutionPlan, connection_id: str) -> ApprovalRecord:
        """Check a token against the stored plan without consuming it."""
        claims = self._signer.verify(token)
        if (
            claims.get("pid") != plan.plan_id
            or claims.get("cid") != connection_id
            or claims.get("dsl") != plan.dsl_hash
        ):
            raise PlanValidationError("Approval token does not match this plan and connection")

        now = utc_now()
        # Plan expiry is checked first so it is reported even when the token is still valid.
        if plan.is_expired(now):
            raise ExpiredError(f"Plan {plan.plan_id} expired at {to_iso(plan.expires_at)}")
        exp = claims["exp"]
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise PlanValidationError("Malformed approval token")
        if datetime.fromtimestamp(exp, tz=timezone.utc) <= now:
            raise ExpiredError("Approval token has expired; approve the plan again")

        record = self._store.get_approval(str(claims["aid"]))
        if record is None or not secrets.compare_digest(
            record.token.encode("utf-8"), token.encode("utf-8")
        ):
            raise PlanValidationError("Approval token is not recognized")
        if record.status == "consumed":
            raise ConflictError("Approval token has already been used")
        if record.status != "issued":
            raise ExpiredError("Approval token has expired; approve the plan again")
        return record

    def consume(self, record: ApprovalRecord) -> None:
        if not self._store.consume_approval(record.approval_id, utc_now_iso()):
            raise ConflictError("Approval token has already been used")
