"""Domain objects for AWS operations."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class OperationRef:
    """A service-qualified AWS API action, e.g. ``ec2:StopInstances``."""

    service: str
    operation: str

    @property
    def key(self) -> str:
        return f"{self.service}:{self.operation}"

    @classmethod
    def parse(cls, key: str) -> "OperationRef":
        service, sep, operation = key.partition(":")
        if not sep or not service or not operation:
            raise ValueError(f"Action key must look like 'service:Operation', got {key!r}")
        return cls(service=service.strip().lower(), operation=operation.strip())
