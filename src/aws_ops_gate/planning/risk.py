"""Risk scoring for plan steps.

A step's score is the sum of non-negative contributions from the policy
weight table, clamped to 0..100:

    base[catalog risk] + irreversible + downtime + data_loss
        + min(per_resource * resource_count, blast_radius_cap)

Because every term is non-negative and grows with its input, adding
resources or losing reversibility can never lower the score.
"""

from __future__ import annotations

from aws_ops_gate.domain.models import RiskLevel
from aws_ops_gate.policy.models import RiskWeights

CRITICAL_THRESHOLD = 75
HIGH_THRESHOLD = 50
MEDIUM_THRESHOLD = 25


def level_for_score(score: int) -> RiskLevel:
    if score >= CRITICAL_THRESHOLD:
        return RiskLevel.CRITICAL
    if score >= HIGH_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


class RiskScorer:
    def __init__(self, weights: RiskWeights | None = None) -> None:
        self._weights = weights or RiskWeights()

    @property
    def weights(self) -> RiskWeights:
        return self._weights

    def blast_radius(self, resource_count: int) -> int:
        w = self._weights
        return min(w.per_resource * max(resource_count, 0), w.blast_radius_cap)

    def score_step(
        self,
        base_level: RiskLevel,
        *,
        reversible: bool,
        downtime: bool,
        data_loss: bool,
        resource_count: int,
    ) -> int:
        w = self._weights
        score = w.base[base_level]
        if not reversible:
            score += w.irreversible
        if downtime:
            score += w.downtime
        if data_loss:
            score += w.data_loss
        score += self.blast_radius(resource_count)
        return max(0, min(100, score))

    def assess_step(
        self,
        base_level: RiskLevel,
        *,
        reversible: bool,
        downtime: bool,
        data_loss: bool,
        resource_count: int,
    ) -> tuple[int, RiskLevel]:
        score = self.score_step(
            base_level,
            reversible=reversible,
            downtime=downtime,
            data_loss=data_loss,
            resource_count=resource_count,
        )
        # The catalog's own rating is a floor; weights only ever escalate it.
        level = level_for_score(score)
        if base_level.rank > level.rank:
            level = base_level
        return score, level

    @staticmethod
    def plan_score(step_scores: list[int]) -> int:
        return max(step_scores, default=0)
