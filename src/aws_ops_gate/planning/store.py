"""Plan persistence on top of the SQLite store."""

from __future__ import annotations

import json

from aws_ops_gate.audit.db import SqliteStore
from aws_ops_gate.audit.models import PlanRecord
from aws_ops_gate.domain.models import ExecutionPlan
from aws_ops_gate.errors import NotFoundError
from aws_ops_gate.utils.time import to_iso


class PlanStore:
    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    def save(self, plan: ExecutionPlan, status: str = "generated") -> None:
        self._store.save_plan(
            PlanRecord(
                plan_id=plan.plan_id,
                connection_id=plan.connection_id,
                dsl_hash=plan.dsl_hash,
                payload=json.dumps(plan.to_wire()),
                status=status,
                created_at=to_iso(plan.created_at),
                expires_at=to_iso(plan.expires_at),
            )
        )

    def find(self, plan_id: str) -> ExecutionPlan | None:
        record = self._store.get_plan(plan_id)
        if record is None:
            return None
        return ExecutionPlan.model_validate(json.loads(record.payload))

    def get(self, plan_id: str) -> ExecutionPlan:
        plan = self.find(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found")
        return plan

    def status(self, plan_id: str) -> str | None:
        record = self._store.get_plan(plan_id)
        return record.status if record else None

    def set_status(self, plan_id: str, status: str) -> None:
        self._store.update_plan_status(plan_id, status)
