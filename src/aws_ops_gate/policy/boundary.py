"""Permission boundary evaluation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from aws_ops_gate.domain.operations import OperationRef
from aws_ops_gate.policy.models import BoundaryConfig, CatalogAction, HardLimit

_MAX_POLICY_REGEX_LENGTH = 256
_BACKREFERENCE_PATTERN = re.compile(r"\\[1-9]")
_NESTED_QUANTIFIER_PATTERN = re.compile(
    r"\((?:[^()\\]|\\.)*[+*](?:[^()\\]|\\.)*\)\s*(?:[+*]|\{\d+(?:,\d*)?\})"
)
_LOOKBEHIND_TOKENS = ("(?<=", "(?<!")


@dataclass
class BoundaryDecision:
    allowed: bool
    reasons: list[str] = field(default_factory=list)
    action: CatalogAction | None = None
    banned_by: str | None = None


@dataclass(frozen=True)
class ActionMatch:
    action: CatalogAction
    score: float


class PermissionBoundary:
    """Static lookups over the boundary policy. Holds no mutable state."""

    def __init__(self, config: BoundaryConfig) -> None:
        self._config = config
        self._banned_patterns = self._compile_patterns(config.banned_actions, "banned")
        self._allowed_services = frozenset(s.lower() for s in config.allowed_services)
        self._actions = {action.key: action for action in config.actions}
        for action in config.actions:
            for dependency in [*action.prerequisites, action.compensating_action]:
                if dependency and dependency not in self._actions:
                    raise ValueError(
                        f"Catalog action {action.key} references unknown action {dependency}"
                    )

    @property
    def config(self) -> BoundaryConfig:
        return self._config

    @classmethod
    def _compile_patterns(cls, patterns: list[str], label: str) -> list[re.Pattern[str]]:
        compiled: list[re.Pattern[str]] = []
        for pat in patterns:
            cls._validate_pattern_safety(pat, label)
            try:
                compiled.append(re.compile(pat, re.IGNORECASE))
            except re.error as exc:
                raise ValueError(
                    f"Invalid regex in {label} boundary pattern '{pat}': {exc}"
                ) from exc
        return compiled

    @staticmethod
    def _validate_pattern_safety(pattern: str, label: str) -> None:
        if len(pattern) > _MAX_POLICY_REGEX_LENGTH:
            raise ValueError(
                f"Unsafe regex in {label} boundary pattern '{pattern}': exceeds "
                f"{_MAX_POLICY_REGEX_LENGTH} characters"
            )
        if any(token in pattern for token in _LOOKBEHIND_TOKENS):
            raise ValueError(
                f"Unsafe regex in {label} boundary pattern '{pattern}': look-behind is not allowed"
            )
        if _BACKREFERENCE_PATTERN.search(pattern):
            raise ValueError(
                f"Unsafe regex in {label} boundary pattern '{pattern}': "
                "backreferences are not allowed"
            )
        if _NESTED_QUANTIFIER_PATTERN.search(pattern):
            raise ValueError(
                f"Unsafe regex in {label} boundary pattern '{pattern}': "
                "nested quantifiers are not allowed"
            )

    def evaluate(self, operation: OperationRef) -> BoundaryDecision:
        action = self._actions.get(operation.key)
        banned = self.banned_match(operation.key)
        if banned:
            return BoundaryDecision(
                False,
                [f"Action {operation.key} is on the banned-action list (rule: {banned})"],
                action,
                banned_by=banned,
            )

        if not self.is_service_allowed(operation.service):
            return BoundaryDecision(
                False, [f"Service '{operation.service}' is not allowed"], action
            )

        if action is None:
            return BoundaryDecision(False, [f"Action {operation.key} is not in the catalog"])

        return BoundaryDecision(True, [], action)

    def is_service_allowed(self, service: str) -> bool:
        return service.lower() in self._allowed_services

    def banned_match(self, key: str) -> str | None:
        for pattern in self._banned_patterns:
            if pattern.fullmatch(key):
                return pattern.pattern
        return None

    def is_banned(self, key: str) -> bool:
        return self.banned_match(key) is not None

    def get_action(self, key: str) -> CatalogAction | None:
        return self._actions.get(key)

    def require_action(self, key: str) -> CatalogAction:
        action = self._actions.get(key)
        if action is None:
            raise KeyError(key)
        return action

    def hard_limit_for(self, category: str) -> HardLimit | None:
        return self._config.hard_limits.get(category)

    def hard_limit_violations(
        self,
        action: CatalogAction,
        resource_count: int,
        monthly_cost_change: float,
    ) -> list[str]:
        limit = self.hard_limit_for(action.category)
        if limit is None:
            return []
        violations: list[str] = []
        if resource_count > limit.max_resources_per_plan:
            violations.append(
                f"{action.key} touches {resource_count} resources; the '{action.category}' "
                f"limit is {limit.max_resources_per_plan} per plan"
            )
        if (
            limit.max_monthly_cost_increase is not None
            and monthly_cost_change > limit.max_monthly_cost_increase
        ):
            violations.append(
                f"{action.key} raises monthly cost by {monthly_cost_change:.2f}; the "
                f"'{action.category}' limit is {limit.max_monthly_cost_increase:.2f}"
            )
        return violations

    def match(
        self,
        verb: str | None,
        service: str | None = None,
        noun: str | None = None,
    ) -> ActionMatch | None:
        """Return the catalog action closest to the extracted entities.

        A verb match is mandatory. Service and resource-noun agreement raise
        the score; a conflicting service rules the action out.
        """
        if not verb:
            return None
        verb_key = verb.lower()
        noun_key = noun.lower() if noun else None
        service_key = service.lower() if service else None

        best: ActionMatch | None = None
        for action in self._config.actions:
            if not action.user_facing:
                continue
            if verb_key not in (v.lower() for v in action.verbs):
                continue
            action_service = action.operation.service
            if service_key and service_key != action_service:
                continue
            score = 0.5
            if service_key:
                score += 0.2
            if noun_key and noun_key in (n.lower() for n in action.nouns):
                score += 0.3
            elif noun_key is None and not action.nouns:
                score += 0.3
            score = round(score, 2)
            if best is None or score > best.score:
                best = ActionMatch(action=action, score=score)
        return best

    def expand_prerequisites(self, key: str) -> list[CatalogAction]:
        """Return the action and everything it depends on, dependencies first."""
        ordered: list[CatalogAction] = []
        visiting: set[str] = set()

        def visit(action_key: str) -> None:
            if any(a.key == action_key for a in ordered):
                return
            if action_key in visiting:
                raise ValueError(f"Circular prerequisite involving {action_key}")
            visiting.add(action_key)
            action = self.require_action(action_key)
            for prerequisite in action.prerequisites:
                visit(prerequisite)
            visiting.discard(action_key)
            ordered.append(action)

        visit(key)
        return ordered

    def catalog(self) -> list[dict[str, object]]:
        """Allowed canonical actions, for display."""
        entries: list[dict[str, object]] = []
        for action in self._config.actions:
            if not action.user_facing or self.is_banned(action.key):
                continue
            if not self.is_service_allowed(action.operation.service):
                continue
            entries.append(
                {
                    "action": action.key,
                    "name": action.name,
                    "description": action.description,
                    "category": action.category,
                    "risk": action.risk.value,
                    "requiresApproval": action.requires_approval,
                    "reversible": action.reversible,
                }
            )
        return entries

    def describe(self) -> dict[str, object]:
        return {
            "hardLimits": {
                category: {
                    "maxResourcesPerPlan": limit.max_resources_per_plan,
                    "maxMonthlyCostIncrease": limit.max_monthly_cost_increase,
                }
                for category, limit in sorted(self._config.hard_limits.items())
            },
            "bannedActions": list(self._config.banned_actions),
            "allowedServices": sorted(self._allowed_services),
        }
