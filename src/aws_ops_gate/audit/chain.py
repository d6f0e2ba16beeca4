"""Hash-chained, anchored audit log.

Every entry commits to its predecessor:

    entryHash = SHA-256(prevHash || canonical_json(body))

where ``body`` is the entry without its hashes, serialized with sorted
keys and compact separators. The first entry links to ``GENESIS_HASH``.
Every ``anchor_interval`` entries an anchor is written over the run of
entry hashes since the previous anchor, so a consistent rewrite of the
chain tail still disagrees with the anchors already handed out.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from typing import Any

from aws_ops_gate.audit.db import SqliteStore
from aws_ops_gate.audit.models import (
    GENESIS_HASH,
    Anchor,
    AuditEvent,
    AuditEventType,
    AuditLogEntry,
    AuditPage,
    AuditQuery,
    AuditResult,
    ChainVerification,
)
from aws_ops_gate.errors import PlanValidationError
from aws_ops_gate.utils.hashing import sha256_text
from aws_ops_gate.utils.masking import redact_sensitive_fields
from aws_ops_gate.utils.serialization import canonical_json
from aws_ops_gate.utils.time import parse_iso, to_iso, utc_now_iso

logger = logging.getLogger(__name__)

_MAX_QUERY_LIMIT = 500


def compute_entry_hash(prev_hash: str, body: dict[str, Any]) -> str:
    return sha256_text(prev_hash + canonical_json(body))


def compute_anchor_hash(entry_hashes: list[str]) -> str:
    return sha256_text("".join(entry_hashes))


class AuditLog:
    """Single writer for the audit chain.

    ``append`` holds one lock across reading the head, hashing and the
    SQLite insert, so chain positions are dense and never reused.
    """

    def __init__(self, store: SqliteStore, anchor_interval: int = 100) -> None:
        if anchor_interval < 1:
            raise ValueError("anchor_interval must be at least 1")
        self._store = store
        self._anchor_interval = anchor_interval
        self._lock = threading.Lock()
        self._head_position, self._head_hash = self._load_head()

    def _load_head(self) -> tuple[int, str]:
        last = self._store.last_entry()
        if last is None:
            return 0, GENESIS_HASH
        return last.chain_position, last.entry_hash

    @property
    def chain_position(self) -> int:
        with self._lock:
            return self._head_position

    def append(self, event: AuditEvent) -> AuditLogEntry:
        action = {
            "service": event.service,
            "operation": event.operation,
            "planId": event.plan_id,
        }
        impact: dict[str, Any] = {}
        if event.resource_count is not None:
            impact["resourceCount"] = event.resource_count
        if event.cost_change is not None:
            impact["costChange"] = event.cost_change
        if event.steps is not None:
            impact["steps"] = event.steps

        with self._lock:
            position = self._head_position + 1
            draft = AuditLogEntry(
                chain_position=position,
                entry_id=f"audit_{uuid.uuid4().hex}",
                event_type=AuditEventType(event.event_type).value,
                timestamp=utc_now_iso(),
                result=AuditResult(event.result).value,
                connection_id=event.connection_id,
                action=action,
                impact=impact,
                details=redact_sensitive_fields(event.details or {}),  # type: ignore[arg-type]
                error=event.error,
                prev_hash=self._head_hash,
                entry_hash="",
            )
            # Normalize through JSON so the stored body and the hashed body agree.
            body = json.loads(canonical_json(draft.hashed_body()))
            draft.action = body["action"]
            draft.impact = body["impact"]
            draft.details = body["details"]
            draft.entry_hash = compute_entry_hash(draft.prev_hash, body)

            anchor = None
            if position % self._anchor_interval == 0:
                anchor = self._build_anchor(position, draft.entry_hash)

            self._store.insert_entry(draft, anchor)
            self._head_position = position
            self._head_hash = draft.entry_hash

        logger.debug(
            "Audit entry %d %s result=%s", position, draft.event_type, draft.result
        )
        if anchor is not None:
            logger.info(
                "Audit anchor written for positions %d-%d: %s",
                anchor.start_position,
                anchor.end_position,
                anchor.anchor_hash,
            )
        return draft

    def record(
        self,
        event_type: AuditEventType,
        result: AuditResult,
        **fields: Any,
    ) -> AuditLogEntry:
        return self.append(AuditEvent(event_type=event_type, result=result, **fields))

    def _build_anchor(self, end_position: int, end_hash: str) -> Anchor:
        previous = self._store.latest_anchor()
        start = previous.end_position + 1 if previous else 1
        hashes = self._store.entry_hashes_between(start, end_position - 1)
        hashes.append(end_hash)
        return Anchor(
            anchor_id=f"anchor_{uuid.uuid4().hex}",
            anchor_hash=compute_anchor_hash(hashes),
            start_position=start,
            end_position=end_position,
            entry_count=len(hashes),
            created_at=utc_now_iso(),
        )

    def verify_chain(
        self, start: int | None = None, end: int | None = None
    ) -> ChainVerification:
        first = 1 if start is None else start
        if first < 1:
            raise PlanValidationError("startPosition must be at least 1")
        if end is not None and end < first:
            raise PlanValidationError("endPosition must not precede startPosition")

        if first == 1:
            prev_hash = GENESIS_HASH
        else:
            seed = self._store.get_entry(first - 1)
            if seed is None:
                return ChainVerification(
                    valid=False,
                    entries_checked=0,
                    broken_at=first - 1,
                    reason="entry before the requested range is missing",
                )
            prev_hash = seed.entry_hash

        entries = self._store.entries_between(first, end)
        expected_position = first
        checked = 0
        for entry in entries:
            checked += 1
            if entry.chain_position != expected_position:
                return ChainVerification(
                    valid=False,
                    entries_checked=checked,
                    broken_at=expected_position,
                    reason="entry missing from chain",
                )
            if entry.prev_hash != prev_hash:
                return ChainVerification(
                    valid=False,
                    entries_checked=checked,
                    broken_at=entry.chain_position,
                    reason="prevHash does not link to the preceding entry",
                )
            if compute_entry_hash(prev_hash, entry.hashed_body()) != entry.entry_hash:
                return ChainVerification(
                    valid=False,
                    entries_checked=checked,
                    broken_at=entry.chain_position,
                    reason="entryHash does not match entry contents",
                )
            prev_hash = entry.entry_hash
            expected_position += 1

        if entries:
            last_position = entries[-1].chain_position
            hashes_by_position = {e.chain_position: e.entry_hash for e in entries}
            for anchor in self._store.anchors_within(first, last_position):
                run = [
                    hashes_by_position[pos]
                    for pos in range(anchor.start_position, anchor.end_position + 1)
                ]
                if compute_anchor_hash(run) != anchor.anchor_hash:
                    return ChainVerification(
                        valid=False,
                        entries_checked=checked,
                        broken_at=anchor.start_position,
                        reason=f"anchor {anchor.anchor_id} does not match its entries",
                    )

        return ChainVerification(valid=True, entries_checked=checked)

    def query(self, query: AuditQuery) -> AuditPage:
        if query.limit < 1 or query.offset < 0:
            raise PlanValidationError("limit must be positive and offset non-negative")
        normalized = AuditQuery(
            connection_id=query.connection_id,
            event_type=query.event_type,
            start_date=_normalize_date(query.start_date, "startDate"),
            end_date=_normalize_date(query.end_date, "endDate"),
            limit=min(query.limit, _MAX_QUERY_LIMIT),
            offset=query.offset,
        )
        if normalized.event_type:
            try:
                AuditEventType(normalized.event_type)
            except ValueError as exc:
                raise PlanValidationError(
                    f"Unknown eventType: {normalized.event_type}"
                ) from exc
        entries, total = self._store.query_entries(normalized)
        return AuditPage(
            entries=entries,
            total=total,
            has_more=normalized.offset + len(entries) < total,
        )

    def anchor_status(self) -> dict[str, Any]:
        latest = self._store.latest_anchor()
        root = self._store.first_anchor()
        return {
            "latestAnchor": latest.to_wire() if latest else None,
            "rootOfTrust": root.to_wire() if root else None,
            "totalAnchors": self._store.count_anchors(),
            "chainPosition": self.chain_position,
        }


def _normalize_date(value: str | None, name: str) -> str | None:
    if not value:
        return None
    try:
        return to_iso(parse_iso(value))
    except ValueError as exc:
        raise PlanValidationError(f"{name} is not an ISO-8601 timestamp: {value!r}") from exc
