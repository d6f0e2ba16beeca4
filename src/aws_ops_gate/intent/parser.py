"""Natural-language request -> ParsedIntent, with the boundary applied up front."""

from __future__ import annotations

import logging

from aws_ops_gate.audit.chain import AuditLog
from aws_ops_gate.audit.models import AuditEventType, AuditResult
from aws_ops_gate.connections.registry import Connection, ConnectionRegistry
from aws_ops_gate.domain.models import IntentEntities, ParsedIntent, RiskLevel
from aws_ops_gate.errors import GateError, PlanValidationError
from aws_ops_gate.intent.classifier import Classifier, ClassifiedEntities, KeywordClassifier
from aws_ops_gate.policy.boundary import ActionMatch, PermissionBoundary

logger = logging.getLogger(__name__)

_MAX_REQUEST_LENGTH = 2000
_DESTRUCTIVE_VERBS = frozenset(
    {"terminate", "destroy", "delete", "remove", "kill", "purge", "drop", "empty"}
)


class IntentParser:
    def __init__(
        self,
        boundary: PermissionBoundary,
        audit: AuditLog,
        connections: ConnectionRegistry,
        *,
        classifier: Classifier | None = None,
        confidence_threshold: float = 0.6,
    ) -> None:
        self._boundary = boundary
        self._audit = audit
        self._connections = connections
        self._classifier = classifier or KeywordClassifier()
        self._threshold = confidence_threshold

    def parse(self, text: str, connection_id: str | None = None) -> ParsedIntent:
        """Interpret ``text`` and record exactly one ``intent_parsed`` entry."""
        try:
            request = self._validate_request(text)
            connection = self._connections.get(connection_id) if connection_id else None
            intent = self._interpret(request, self._classifier.classify(request), connection)
        except GateError as exc:
            self._audit.record(
                AuditEventType.INTENT_PARSED,
                AuditResult(exc.category),
                connection_id=connection_id,
                details={"request": (text or "")[:_MAX_REQUEST_LENGTH]},
                error=exc.message,
            )
            raise

        action = self._boundary.get_action(intent.suggested_action or intent.interpreted_action)
        self._audit.record(
            AuditEventType.INTENT_PARSED,
            AuditResult.BLOCKED if intent.blocked else AuditResult.SUCCESS,
            connection_id=connection_id,
            service=intent.entities.service,
            operation=action.operation.operation if action else intent.entities.action,
            details={
                "request": intent.original_request,
                "interpretedAction": intent.interpreted_action,
                "confidence": intent.confidence,
                "riskLevel": intent.risk_level.value,
                "warnings": intent.warnings,
                "blockReason": intent.block_reason,
            },
        )
        if intent.blocked:
            logger.info("Intent blocked: %s (%s)", intent.interpreted_action, intent.block_reason)
        else:
            logger.info(
                "Intent parsed: %s confidence=%.2f", intent.interpreted_action, intent.confidence
            )
        return intent

    @staticmethod
    def _validate_request(text: str) -> str:
        if not isinstance(text, str) or not text.strip():
            raise PlanValidationError("request must be a non-empty string")
        if len(text) > _MAX_REQUEST_LENGTH:
            raise PlanValidationError(
                f"request exceeds {_MAX_REQUEST_LENGTH} characters"
            )
        return text.strip()

    def _interpret(
        self,
        request: str,
        entities: ClassifiedEntities,
        connection: Connection | None,
    ) -> ParsedIntent:
        match = self._boundary.match(entities.verb, entities.service, entities.noun)
        service = entities.service or (match.action.operation.service if match else None)
        confidence = round(entities.confidence * match.score, 2) if match else 0.0

        warnings: list[str] = []
        block_reason = self._block_reason(entities, match, service, confidence, connection)

        if connection is not None and block_reason is None and match is not None:
            for region in entities.regions:
                if not connection.reaches_region(region, service):
                    warnings.append(
                        f"Region {region} is not enabled for connection "
                        f"{connection.connection_id}; it will be skipped"
                    )
            if match.action.key not in connection.granted_permissions(self._boundary):
                warnings.append(
                    f"Connection {connection.connection_id} ({connection.permission_mode.value}) "
                    f"does not grant {match.action.key}; simulation will report it as missing"
                )
        if (
            block_reason is None
            and not entities.resources
            and "idle_days" not in entities.parameters
            and entities.parameters.get("scope") != "all"
        ):
            warnings.append("No resources named; they will be resolved from account state")

        if match is not None:
            interpreted = match.action.key
            risk_level = match.action.risk
        else:
            interpreted = " ".join(p for p in (entities.verb, service) if p) or "unknown"
            risk_level = _partial_risk(entities)

        blocked = block_reason is not None
        return ParsedIntent(
            original_request=request,
            interpreted_action=interpreted,
            confidence=confidence,
            entities=IntentEntities(
                service=service,
                action=match.action.operation.operation if match else entities.verb,
                resources=entities.resources,
                parameters=entities.parameters,
                regions=entities.regions,
            ),
            risk_level=risk_level,
            suggested_action=None if blocked or match is None else match.action.key,
            warnings=warnings,
            blocked=blocked,
            block_reason=block_reason,
        )

    def _block_reason(
        self,
        entities: ClassifiedEntities,
        match: ActionMatch | None,
        service: str | None,
        confidence: float,
        connection: Connection | None,
    ) -> str | None:
        if match is not None:
            decision = self._boundary.evaluate(match.action.operation)
            if decision.banned_by:
                return decision.reasons[0]
        if service and not self._boundary.is_service_allowed(service):
            return f"Service '{service}' is outside the permission boundary"
        if match is None:
            if entities.verb is None:
                return "Could not recognize an operation in the request"
            return (
                f"No catalog action matches '{entities.verb}'"
                + (f" on {service}" if service else "")
            )
        if confidence < self._threshold:
            return (
                f"Confidence {confidence:.2f} is below the {self._threshold:.2f} threshold; "
                "rephrase the request with the service and resource type"
            )
        if connection is not None:
            if not connection.is_active:
                return (
                    f"Connection {connection.connection_id} is {connection.status.value}"
                )
            if service and not connection.reaches_service(service):
                return (
                    f"Service '{service}' is not enabled for connection "
                    f"{connection.connection_id}"
                )
        return None


def _partial_risk(entities: ClassifiedEntities) -> RiskLevel:
    if entities.verb in _DESTRUCTIVE_VERBS:
        return RiskLevel.HIGH
    if entities.verb:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW
