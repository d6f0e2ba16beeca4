"""Permission boundary configuration models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from aws_ops_gate.domain.models import RiskLevel
from aws_ops_gate.domain.operations import OperationRef

CostModel = Literal["tabular", "estimated", "variable", "none"]


def _ensure_list(v: Any) -> list:
    """Convert None to empty list, pass through lists."""
    if v is None:
        return []
    return v


class CatalogAction(BaseModel):
    """A canonical action the gate knows how to plan, score and execute."""

    key: str
    name: str
    description: str = ""
    category: str
    risk: RiskLevel = RiskLevel.MEDIUM
    requires_approval: bool = True
    reversible: bool = True
    downtime: bool = False
    data_loss: bool = False
    read_only_safe: bool = False
    user_facing: bool = True

    verbs: list[str] = Field(default_factory=list)
    nouns: list[str] = Field(default_factory=list)

    dependency_rank: int = Field(default=50, ge=0, le=1000)
    prerequisites: list[str] = Field(default_factory=list)
    compensating_action: str | None = None
    compensation_parameters: dict[str, str] = Field(
        default_factory=dict,
        description="Compensating call parameter -> key in the forward call's response.",
    )

    resource_param: str | None = None
    resource_param_is_list: bool = False
    resource_kind: str | None = None
    source_states: list[str] = Field(default_factory=list)
    target_states: list[str] = Field(default_factory=list)

    parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Extra request parameters sent with every call of this action.",
    )

    cost_model: CostModel = "tabular"
    cost_per_resource: float = 0.0
    duration_seconds: int = Field(default=30, ge=0)

    @field_validator(
        "verbs",
        "nouns",
        "prerequisites",
        "source_states",
        "target_states",
        mode="before",
    )
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)

    @field_validator("key", "compensating_action")
    @classmethod
    def _validate_key(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return OperationRef.parse(v).key

    @property
    def operation(self) -> OperationRef:
        return OperationRef.parse(self.key)


class HardLimit(BaseModel):
    max_resources_per_plan: int = Field(default=50, ge=1)
    max_monthly_cost_increase: float | None = Field(default=None, ge=0)


class RiskWeights(BaseModel):
    """Additive contributions to a step's 0-100 risk score.

    Every weight is non-negative so the score never decreases as
    resources are added or reversibility is lost.
    """

    base: dict[RiskLevel, int] = Field(
        default_factory=lambda: {
            RiskLevel.LOW: 5,
            RiskLevel.MEDIUM: 20,
            RiskLevel.HIGH: 40,
            RiskLevel.CRITICAL: 60,
        }
    )
    irreversible: int = Field(default=25, ge=0, le=100)
    downtime: int = Field(default=10, ge=0, le=100)
    data_loss: int = Field(default=30, ge=0, le=100)
    per_resource: int = Field(default=2, ge=0, le=100)
    blast_radius_cap: int = Field(default=20, ge=0, le=100)

    @field_validator("base")
    @classmethod
    def _validate_base(cls, v: dict[RiskLevel, int]) -> dict[RiskLevel, int]:
        for level, weight in v.items():
            if weight < 0 or weight > 100:
                raise ValueError(f"Base weight for {level.value} must be within 0..100")
        missing = [level.value for level in RiskLevel if level not in v]
        if missing:
            raise ValueError(f"Base weights missing for: {', '.join(missing)}")
        return v


class BoundaryConfig(BaseModel):
    version: int = Field(default=1)
    allowed_services: list[str] = Field(default_factory=list)
    banned_actions: list[str] = Field(default_factory=list)
    hard_limits: dict[str, HardLimit] = Field(default_factory=dict)
    actions: list[CatalogAction] = Field(default_factory=list)
    risk: RiskWeights = Field(default_factory=RiskWeights)

    @field_validator("allowed_services", "banned_actions", "actions", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)

    @field_validator("hard_limits", mode="before")
    @classmethod
    def _validate_hard_limits(cls, v: Any) -> dict:
        if v is None:
            return {}
        return v

    @field_validator("actions")
    @classmethod
    def _validate_unique_actions(cls, v: list[CatalogAction]) -> list[CatalogAction]:
        seen: set[str] = set()
        for action in v:
            if action.key in seen:
                raise ValueError(f"Duplicate catalog action: {action.key}")
            seen.add(action.key)
        return v

    @classmethod
    def from_yaml(cls, data: dict[str, object]) -> "BoundaryConfig":
        return cls.model_validate(data)
