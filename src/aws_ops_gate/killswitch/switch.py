"""Hierarchical emergency stop.

Switches exist at four scopes, checked in order: global, customer,
service, connection. Any active switch that covers a request stops it.
Read-only mode is separate: it still allows parsing, planning and
simulation but refuses approval and execution.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any

from aws_ops_gate.audit.chain import AuditLog
from aws_ops_gate.audit.models import AuditEventType, AuditResult
from aws_ops_gate.errors import BlockedError, PlanValidationError
from aws_ops_gate.utils.time import utc_now_iso

logger = logging.getLogger(__name__)


class KillSwitchScope(str, Enum):
    GLOBAL = "global"
    CUSTOMER = "customer"
    SERVICE = "service"
    CONNECTION = "connection"
    READ_ONLY = "read_only"


_SCOPED = (KillSwitchScope.CUSTOMER, KillSwitchScope.SERVICE, KillSwitchScope.CONNECTION)


@dataclass(frozen=True)
class SwitchRecord:
    reason: str
    activated_at: str
    actor: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return {"reason": self.reason, "activatedAt": self.activated_at, "actor": self.actor}


@dataclass(frozen=True)
class TripReason:
    scope: KillSwitchScope
    target_id: str | None
    reason: str

    def describe(self) -> str:
        where = self.scope.value
        if self.target_id is not None:
            where = f"{where} {self.target_id}"
        return f"Kill switch active ({where}): {self.reason}"


class KillSwitch:
    def __init__(self, audit: AuditLog) -> None:
        self._audit = audit
        self._lock = threading.Lock()
        self._global: SwitchRecord | None = None
        self._read_only: SwitchRecord | None = None
        self._scoped: dict[KillSwitchScope, dict[str, SwitchRecord]] = {
            scope: {} for scope in _SCOPED
        }

    def set(
        self,
        scope: str | KillSwitchScope,
        target_id: str | None = None,
        *,
        reason: str | None = None,
        activate: bool = True,
        actor: str | None = None,
    ) -> bool:
        """Activate or clear one switch. Returns whether the state changed."""
        try:
            resolved = KillSwitchScope(scope)
        except ValueError as exc:
            raise PlanValidationError(f"Unknown kill switch scope: {scope}") from exc
        if resolved in _SCOPED and not target_id:
            raise PlanValidationError(f"Scope '{resolved.value}' requires an id")
        key = target_id.strip() if resolved in _SCOPED and target_id else None
        if key and resolved == KillSwitchScope.SERVICE:
            key = key.lower()
        text = (reason or "").strip() or "no reason given"

        with self._lock:
            changed = self._apply(resolved, key, text, activate, actor)

        self._audit.record(
            (
                AuditEventType.KILL_SWITCH_ACTIVATED
                if activate
                else AuditEventType.KILL_SWITCH_DEACTIVATED
            ),
            AuditResult.SUCCESS,
            connection_id=key if resolved == KillSwitchScope.CONNECTION else None,
            service=key if resolved == KillSwitchScope.SERVICE else None,
            details={
                "scope": resolved.value,
                "id": key,
                "reason": text,
                "actor": actor,
                "changed": changed,
            },
        )
        log = logger.warning if activate else logger.info
        log(
            "Kill switch %s: scope=%s id=%s reason=%s",
            "activated" if activate else "cleared",
            resolved.value,
            key,
            text,
        )
        return changed

    def activate(
        self, scope: str | KillSwitchScope, target_id: str | None = None, **kwargs: Any
    ) -> bool:
        return self.set(scope, target_id, activate=True, **kwargs)

    def deactivate(
        self, scope: str | KillSwitchScope, target_id: str | None = None, **kwargs: Any
    ) -> bool:
        return self.set(scope, target_id, activate=False, **kwargs)

    def _apply(
        self,
        scope: KillSwitchScope,
        key: str | None,
        reason: str,
        activate: bool,
        actor: str | None,
    ) -> bool:
        record = (
            SwitchRecord(reason=reason, activated_at=utc_now_iso(), actor=actor)
            if activate
            else None
        )
        if scope == KillSwitchScope.GLOBAL:
            changed = (self._global is None) == activate
            self._global = record
            return changed
        if scope == KillSwitchScope.READ_ONLY:
            changed = (self._read_only is None) == activate
            self._read_only = record
            return changed
        bucket = self._scoped[scope]
        if record is not None and key is not None:
            changed = key not in bucket
            bucket[key] = record
            return changed
        return bucket.pop(key or "", None) is not None

    def check(
        self,
        *,
        connection_id: str | None = None,
        customer_id: str | None = None,
        service: str | None = None,
    ) -> TripReason | None:
        """First active switch covering the request, most general scope first."""
        with self._lock:
            if self._global is not None:
                return TripReason(KillSwitchScope.GLOBAL, None, self._global.reason)
            ordered = (
                (KillSwitchScope.CUSTOMER, customer_id),
                (KillSwitchScope.SERVICE, service.lower() if service else None),
                (KillSwitchScope.CONNECTION, connection_id),
            )
            for scope, key in ordered:
                if key is None:
                    continue
                record = self._scoped[scope].get(key)
                if record is not None:
                    return TripReason(scope, key, record.reason)
        return None

    def ensure_clear(
        self,
        *,
        connection_id: str | None = None,
        customer_id: str | None = None,
        service: str | None = None,
    ) -> None:
        trip = self.check(connection_id=connection_id, customer_id=customer_id, service=service)
        if trip is not None:
            raise BlockedError(
                trip.describe(),
                details={"scope": trip.scope.value, "id": trip.target_id},
            )

    @property
    def read_only(self) -> bool:
        with self._lock:
            return self._read_only is not None

    def check_mutation_allowed(
        self,
        *,
        connection_id: str | None = None,
        customer_id: str | None = None,
        services: list[str] | None = None,
    ) -> None:
        """Refuse approval or execution in read-only mode or under any covering switch."""
        with self._lock:
            read_only = self._read_only
        if read_only is not None:
            raise BlockedError(
                f"Read-only mode is active: {read_only.reason}",
                details={"scope": KillSwitchScope.READ_ONLY.value},
            )
        self.ensure_clear(customer_id=customer_id)
        for service in services or []:
            self.ensure_clear(service=service)
        self.ensure_clear(connection_id=connection_id)

    def state(self) -> dict[str, Any]:
        with self._lock:
            scoped = {
                scope.value: {key: record.to_wire() for key, record in sorted(bucket.items())}
                for scope, bucket in self._scoped.items()
            }
            return {
                "global": self._global is not None,
                "globalReason": self._global.reason if self._global else None,
                "readOnlyMode": self._read_only is not None,
                "readOnlyReason": self._read_only.reason if self._read_only else None,
                "counts": {scope: len(entries) for scope, entries in scoped.items()},
                "active": scoped,
            }
