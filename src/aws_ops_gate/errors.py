"""Error taxonomy shared by every stage of the intent-to-execution pipeline."""

from __future__ import annotations


class GateError(Exception):
    """Base class for refusals raised by the gate.

    ``category`` is the outcome category recorded in the audit log and
    ``status_code`` is what the HTTP layer answers with.
    """

    category = "failure"
    code = "gate_error"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_payload(self) -> dict[str, object]:
        payload: dict[str, object] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class BlockedError(GateError):
    """Policy-level refusal: banned action, kill switch, missing permission."""

    category = "blocked"
    code = "blocked"
    status_code = 403


class ExpiredError(GateError):
    """A plan or approval token outlived its TTL. Regenerate the plan."""

    category = "failure"
    code = "expired"
    status_code = 410


class PlanValidationError(GateError):
    """Malformed input, tampered plan hash, or token/plan mismatch."""

    category = "failure"
    code = "validation_error"
    status_code = 400


class NotFoundError(GateError):
    category = "failure"
    code = "not_found"
    status_code = 404


class ConflictError(GateError):
    """The connection is busy or the token was already consumed."""

    category = "failure"
    code = "conflict"
    status_code = 409


class AdminRequiredError(GateError):
    category = "blocked"
    code = "admin_required"
    status_code = 401


class ProviderError(GateError):
    """The cloud provider rejected or failed a read the gate depends on."""

    category = "failure"
    code = "provider_error"
    status_code = 502
