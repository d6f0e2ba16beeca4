"""Data models for audit log entries and anchors."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class AuditEventType(str, Enum):
    CONNECTION_CREATED = "connection_created"
    CONNECTION_DELETED = "connection_deleted"
    INTENT_PARSED = "intent_parsed"
    PLAN_GENERATED = "plan_generated"
    PLAN_APPROVED = "plan_approved"
    PLAN_REJECTED = "plan_rejected"
    EXECUTION_STARTED = "execution_started"
    EXECUTION_COMPLETED = "execution_completed"
    EXECUTION_FAILED = "execution_failed"
    KILL_SWITCH_ACTIVATED = "kill_switch_activated"
    KILL_SWITCH_DEACTIVATED = "kill_switch_deactivated"
    PERMISSION_DENIED = "permission_denied"
    SIMULATION_EXECUTED = "simulation_executed"
    ROLLBACK_EXECUTED = "rollback_executed"


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    BLOCKED = "blocked"
    PENDING = "pending"


GENESIS_HASH = "0" * 64


@dataclass
class AuditEvent:
    """What a caller asks the log to record. Position and hashes are assigned on append."""

    event_type: AuditEventType
    result: AuditResult
    connection_id: str | None = None
    service: str | None = None
    operation: str | None = None
    plan_id: str | None = None
    resource_count: int | None = None
    cost_change: float | None = None
    steps: list[dict[str, Any]] | None = None
    details: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class AuditLogEntry:
    chain_position: int
    entry_id: str
    event_type: str
    timestamp: str
    result: str
    connection_id: str | None
    action: dict[str, Any]
    impact: dict[str, Any]
    details: dict[str, Any]
    error: str | None
    prev_hash: str
    entry_hash: str

    def hashed_body(self) -> dict[str, Any]:
        """The fields covered by ``entry_hash``, in wire spelling."""
        return {
            "entryId": self.entry_id,
            "chainPosition": self.chain_position,
            "eventType": self.event_type,
            "timestamp": self.timestamp,
            "result": self.result,
            "connectionId": self.connection_id,
            "action": self.action,
            "impact": self.impact,
            "details": self.details,
            "error": self.error,
        }

    def to_wire(self) -> dict[str, Any]:
        body = self.hashed_body()
        body["prevHash"] = self.prev_hash
        body["entryHash"] = self.entry_hash
        return body


@dataclass
class Anchor:
    anchor_id: str
    anchor_hash: str
    start_position: int
    end_position: int
    entry_count: int
    created_at: str

    def to_wire(self) -> dict[str, Any]:
        return {
            "anchorId": self.anchor_id,
            "anchorHash": self.anchor_hash,
            "startPosition": self.start_position,
            "endPosition": self.end_position,
            "entryCount": self.entry_count,
            "createdAt": self.created_at,
        }


@dataclass
class ChainVerification:
    valid: bool
    entries_checked: int
    broken_at: int | None = None
    reason: str | None = None

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"valid": self.valid, "entriesChecked": self.entries_checked}
        if self.broken_at is not None:
            payload["brokenAt"] = self.broken_at
        if self.reason:
            payload["reason"] = self.reason
        return payload


@dataclass
class AuditQuery:
    connection_id: str | None = None
    event_type: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    limit: int = 50
    offset: int = 0


@dataclass
class AuditPage:
    entries: list[AuditLogEntry]
    total: int
    has_more: bool

    def to_wire(self) -> dict[str, Any]:
        return {
            "entries": [entry.to_wire() for entry in self.entries],
            "total": self.total,
            "hasMore": self.has_more,
        }


@dataclass
class PlanRecord:
    plan_id: str
    connection_id: str | None
    dsl_hash: str
    payload: str
    status: str
    created_at: str
    expires_at: str


@dataclass
class ApprovalRecord:
    approval_id: str
    plan_id: str
    connection_id: str
    dsl_hash: str
    token: str
    status: str
    expires_at: str
    created_at: str
    consumed_at: str | None = None
