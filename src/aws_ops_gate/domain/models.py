"""Wire models exchanged between the pipeline stages and the HTTP layer.

Fields are snake_case in Python and camelCase on the wire; input accepts
either spelling.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from aws_ops_gate.utils.time import utc_now


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class IntentEntities(WireModel):
    service: str | None = None
    action: str | None = None
    resources: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    regions: list[str] = Field(default_factory=list)


class ParsedIntent(WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    original_request: str
    interpreted_action: str
    confidence: float = Field(ge=0.0, le=1.0)
    entities: IntentEntities = Field(default_factory=IntentEntities)
    risk_level: RiskLevel = RiskLevel.LOW
    suggested_action: str | None = None
    warnings: list[str] = Field(default_factory=list)
    blocked: bool = False
    block_reason: str | None = None


class StepImpact(WireModel):
    resource_count: int = Field(ge=0)
    cost_change: float = 0.0
    reversible: bool = True
    downtime: bool = False
    data_loss: bool = False
    risk_level: RiskLevel = RiskLevel.LOW
    risk_score: int = Field(default=0, ge=0, le=100)


class ExecutionStep(WireModel):
    step_id: str
    order: int = Field(ge=1)
    service: str
    action: str
    description: str
    resources: list[str] = Field(default_factory=list)
    region: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    impact: StepImpact
    ordering_key: tuple[int, str] = (0, "")
    cost_model: str = "tabular"
    compensating_action: str | None = None
    status: StepStatus = StepStatus.PENDING
    error: str | None = None

    @property
    def action_key(self) -> str:
        return f"{self.service}:{self.action}"


class PlanSummary(WireModel):
    total_steps: int
    estimated_duration: int
    estimated_cost_impact: float
    risk_score: int = Field(ge=0, le=100)
    resources_affected: int
    services_affected: list[str]
    requires_approval: bool
    reversible: bool


class ExecutionPlan(WireModel):
    plan_id: str
    dsl_hash: str
    dsl_version: str
    connection_id: str | None = None
    intent_action: str | None = None
    steps: list[ExecutionStep]
    summary: PlanSummary
    visualization: str | None = None
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at


class ExecutionResult(WireModel):
    plan_id: str
    status: ExecutionStatus
    steps: list[ExecutionStep]
    started_at: datetime
    completed_at: datetime
    duration: float
    error: str | None = None
    rollback_executed: bool = False
    manual_intervention_steps: list[str] = Field(default_factory=list)
    irreversible_partial: bool = False


class PermissionValidation(WireModel):
    valid: bool
    missing_permissions: list[str] = Field(default_factory=list)


class CostPrediction(WireModel):
    monthly: float
    annual: float
    confidence: str


class RiskFactor(WireModel):
    factor: str
    impact: str
    description: str


class RiskAssessment(WireModel):
    overall_risk: RiskLevel
    risk_score: int = Field(ge=0, le=100)
    factors: list[RiskFactor] = Field(default_factory=list)
    mitigations: list[str] = Field(default_factory=list)


class SimulationResult(WireModel):
    plan_id: str
    dsl_hash: str
    status: str = "simulated"
    permission_validation: PermissionValidation
    cost_prediction: CostPrediction
    risk_assessment: RiskAssessment
    can_promote_to_live: bool
    promotion_blockers: list[str] = Field(default_factory=list)
    simulated_at: datetime = Field(default_factory=utc_now)


class ApprovalGrant(WireModel):
    approval_token: str
    expires_at: datetime
