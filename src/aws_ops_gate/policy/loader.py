"""Boundary loader for boundary.yaml."""

from __future__ import annotations

from pathlib import Path

import yaml

from aws_ops_gate.policy.models import BoundaryConfig


def load_boundary(path: str) -> BoundaryConfig:
    boundary_path = Path(path)
    if not boundary_path.exists():
        raise FileNotFoundError(f"Boundary file not found: {boundary_path}")
    with boundary_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return BoundaryConfig.from_yaml(data)
