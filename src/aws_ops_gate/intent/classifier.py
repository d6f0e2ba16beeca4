"""Entity extraction for operator requests.

The parser only needs structured entities, so any classifier that
implements ``classify(text)`` can be plugged in. ``KeywordClassifier`` is
the default: a deterministic keyword and pattern extractor with a
confidence that reflects how much of the request it recognized.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class ClassifiedEntities:
    service: str | None = None
    verb: str | None = None
    noun: str | None = None
    resources: list[str] = field(default_factory=list)
    parameters: dict[str, Any] = field(default_factory=dict)
    regions: list[str] = field(default_factory=list)
    confidence: float = 0.0


class Classifier(Protocol):
    def classify(self, text: str) -> ClassifiedEntities: ...


SERVICE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "ec2": ("ec2", "instance", "instances", "server", "servers", "vm", "vms",
            "ebs", "volume", "volumes", "snapshot", "snapshots", "ami"),
    "rds": ("rds", "database", "databases", "db", "dbs", "postgres", "mysql", "aurora"),
    "s3": ("s3", "bucket", "buckets", "object", "objects"),
    "lambda": ("lambda", "lambdas", "function", "functions"),
    "iam": ("iam", "role", "roles", "user", "users", "policy", "policies"),
    "organizations": ("organizations", "organization", "org", "scp"),
}

# Explicit service names win over services inferred from resource nouns.
_EXPLICIT_SERVICES = frozenset(SERVICE_KEYWORDS)

VERBS = frozenset(
    {
        "stop", "shutdown", "halt", "pause", "start", "boot", "resume",
        "reboot", "restart", "terminate", "destroy", "delete", "remove",
        "kill", "detach", "unmount", "attach", "purge", "cleanup", "archive",
        "tier", "transition", "lifecycle", "throttle", "limit", "cap", "drop",
        "empty", "create", "launch", "scale", "resize", "modify", "list",
        "describe",
    }
)

_VERB_ALIASES = {
    "clean": "cleanup",
    "shut": "shutdown",
}

_TOKEN = re.compile(r"[a-z0-9]+(?:[_.:/-][a-z0-9]+)*")
_RESOURCE_ID = re.compile(
    r"\b(?:i|vol|snap|ami|sg|subnet|vpc|eni)-[0-9a-f]{8,17}\b"
)
_ARN = re.compile(r"\barn:aws[\w-]*:[\w-]+:[\w-]*:\d{0,12}:[\w/.:+=@-]+")
_REGION = re.compile(
    r"\b[a-z]{2}(?:-gov)?-(?:north|south|east|west|central|northeast|southeast|"
    r"northwest|southwest)-\d\b"
)
_IDLE_DAYS = re.compile(
    r"(?:older than|idle (?:for )?(?:more than )?|unused (?:for )?|for)\s*(\d{1,4})\s*days?"
)
_TAG = re.compile(r"\btag(?:ged)?\s+([\w.:/-]+)\s*=\s*([\w.:/-]+)")
_NAMED = re.compile(r"\b(?:named|called|identifier)\s+([a-z0-9][a-z0-9._-]{2,62})")


class KeywordClassifier:
    def classify(self, text: str) -> ClassifiedEntities:
        lowered = text.lower()
        tokens = _TOKEN.findall(lowered)

        verb = self._find_verb(tokens, lowered)
        service, noun = self._find_service(tokens)

        resources = list(dict.fromkeys(_RESOURCE_ID.findall(lowered)))
        resources.extend(arn for arn in _ARN.findall(text) if arn not in resources)
        resources.extend(
            name for name in _NAMED.findall(lowered) if name not in resources
        )
        regions = list(dict.fromkeys(_REGION.findall(lowered)))

        parameters: dict[str, Any] = {}
        idle = _IDLE_DAYS.search(lowered)
        if idle:
            parameters["idle_days"] = int(idle.group(1))
        tags = dict(_TAG.findall(lowered))
        if tags:
            parameters["tags"] = tags
        if "all" in tokens or "every" in tokens:
            parameters["scope"] = "all"

        return ClassifiedEntities(
            service=service,
            verb=verb,
            noun=noun,
            resources=resources,
            parameters=parameters,
            regions=regions,
            confidence=self._confidence(verb, service, noun, resources, parameters),
        )

    @staticmethod
    def _find_verb(tokens: list[str], lowered: str) -> str | None:
        if "clean up" in lowered:
            return "cleanup"
        if "shut down" in lowered or "turn off" in lowered:
            return "stop"
        if "turn on" in lowered:
            return "start"
        for token in tokens:
            if token in VERBS:
                return token
            alias = _VERB_ALIASES.get(token)
            if alias:
                return alias
        return None

    @staticmethod
    def _find_service(tokens: list[str]) -> tuple[str | None, str | None]:
        explicit: str | None = None
        inferred: str | None = None
        noun: str | None = None
        for token in tokens:
            for service, keywords in SERVICE_KEYWORDS.items():
                if token not in keywords:
                    continue
                if token in _EXPLICIT_SERVICES:
                    explicit = explicit or service
                else:
                    inferred = inferred or service
                    noun = noun or token
        return explicit or inferred, noun

    @staticmethod
    def _confidence(
        verb: str | None,
        service: str | None,
        noun: str | None,
        resources: list[str],
        parameters: dict[str, Any],
    ) -> float:
        if verb is None:
            return 0.0
        score = 0.4
        if service:
            score += 0.3
        if noun:
            score += 0.2
        if resources or parameters:
            score += 0.1
        return round(min(score, 1.0), 2)
