"""Plan DSL hashing.

The DSL hash pins the executable content of a plan: what runs, in which
order, against which resources. Descriptive fields (descriptions, impact
estimates, status) are excluded so re-rendering a plan does not change it.
"""

from __future__ import annotations

from typing import Iterable

from aws_ops_gate.domain.models import ExecutionStep
from aws_ops_gate.utils.hashing import sha256_text
from aws_ops_gate.utils.serialization import canonical_json


def dsl_document(dsl_version: str, steps: Iterable[ExecutionStep]) -> dict[str, object]:
    return {
        "version": dsl_version,
        "steps": [
            {
                "order": step.order,
                "service": step.service,
                "action": step.action,
                "resources": list(step.resources),
                "region": step.region,
                "parameters": step.parameters,
            }
            for step in sorted(steps, key=lambda s: s.order)
        ],
    }


def compute_dsl_hash(dsl_version: str, steps: Iterable[ExecutionStep]) -> str:
    return sha256_text(canonical_json(dsl_document(dsl_version, steps)))
