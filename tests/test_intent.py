from __future__ import annotations

import pytest

from aws_ops_gate.domain.models import RiskLevel
from aws_ops_gate.errors import NotFoundError, PlanValidationError
from aws_ops_gate.intent.classifier import ClassifiedEntities, KeywordClassifier
from aws_ops_gate.intent.parser import IntentParser


@pytest.fixture
def classifier() -> KeywordClassifier:
    return KeywordClassifier()


def test_classifier_extracts_idle_ec2_request(classifier):
    entities = classifier.classify("Stop idle EC2 instances older than 7 days")
    assert entities.verb == "stop"
    assert entities.service == "ec2"
    assert entities.noun == "instances"
    assert entities.parameters == {"idle_days": 7}
    assert entities.confidence == 1.0


def test_classifier_extracts_ids_regions_and_tags(classifier):
    entities = classifier.classify(
        "reboot instances i-0abc12345 and i-0abc12346 in us-west-2 tagged env=staging"
    )
    assert entities.verb == "reboot"
    assert entities.resources == ["i-0abc12345", "i-0abc12346"]
    assert entities.regions == ["us-west-2"]
    assert entities.parameters["tags"] == {"env": "staging"}


def test_classifier_phrasal_verbs(classifier):
    assert classifier.classify("shut down the database named orders-db").verb == "stop"
    entities = classifier.classify("please turn on my servers")
    assert entities.verb == "start"
    assert entities.service == "ec2"


def test_classifier_without_verb_has_zero_confidence(classifier):
    entities = classifier.classify("ec2 instances")
    assert entities.verb is None
    assert entities.confidence == 0.0


def test_parse_stop_idle_instances(ctx, entries):
    intent = ctx.parser.parse("Stop idle EC2 instances older than 7 days", "conn_prod_ops")

    assert intent.blocked is False
    assert intent.suggested_action == "ec2:StopInstances"
    assert intent.interpreted_action == "ec2:StopInstances"
    assert intent.confidence == 1.0
    assert intent.risk_level == RiskLevel.MEDIUM
    assert intent.entities.service == "ec2"
    assert intent.entities.action == "StopInstances"
    assert intent.warnings == []

    logged = entries("intent_parsed")
    assert len(logged) == 1
    assert logged[0]["result"] == "success"
    assert logged[0]["connectionId"] == "conn_prod_ops"
    assert logged[0]["action"]["operation"] == "StopInstances"


def test_banned_action_is_blocked_with_one_entry(ctx, entries):
    intent = ctx.parser.parse("delete all S3 buckets")

    assert intent.blocked is True
    assert intent.suggested_action is None
    assert intent.interpreted_action == "s3:DeleteBucket"
    assert intent.risk_level == RiskLevel.CRITICAL
    assert "banned" in intent.block_reason

    logged = entries()
    assert len(logged) == 1
    assert logged[0]["eventType"] == "intent_parsed"
    assert logged[0]["result"] == "blocked"


class _ConfidentClassifier:
    def classify(self, text: str) -> ClassifiedEntities:
        return ClassifiedEntities(
            service="rds", verb="delete", noun="database", resources=["orders"], confidence=1.0
        )


def test_banned_action_blocked_regardless_of_confidence(ctx, boundary, registry):
    parser = IntentParser(
        boundary, ctx.audit, registry, classifier=_ConfidentClassifier(), confidence_threshold=0.0
    )
    intent = parser.parse("drop the orders database")
    assert intent.blocked is True
    assert intent.interpreted_action == "rds:DeleteDBInstance"


def test_service_outside_boundary_is_blocked(ctx):
    intent = ctx.parser.parse("delete iam users")
    assert intent.blocked is True
    assert intent.suggested_action is None


def test_unrecognized_request_is_blocked(ctx):
    intent = ctx.parser.parse("make everything faster")
    assert intent.blocked is True
    assert intent.confidence == 0.0
    assert intent.risk_level == RiskLevel.LOW
    assert intent.block_reason == "Could not recognize an operation in the request"


def test_low_confidence_is_blocked(ctx):
    # Verb only: 0.4 classifier confidence.
    intent = ctx.parser.parse("reboot")
    assert intent.blocked is True
    assert "below" in intent.block_reason


def test_partial_risk_for_unmatched_destructive_verb(ctx):
    intent = ctx.parser.parse("purge the lambda functions")
    assert intent.blocked is True
    assert intent.risk_level == RiskLevel.HIGH


def test_service_not_enabled_for_connection_is_blocked(ctx):
    intent = ctx.parser.parse("throttle lambda functions named billing-fn", "conn_prod_ops")
    assert intent.blocked is True
    assert "not enabled for connection" in intent.block_reason


def test_region_outside_connection_is_a_warning(ctx):
    intent = ctx.parser.parse("stop ec2 instances i-0abc12345 in eu-west-1", "conn_prod_ops")
    assert intent.blocked is False
    assert any("eu-west-1" in w for w in intent.warnings)


def test_missing_permission_is_a_warning(ctx):
    intent = ctx.parser.parse("terminate ec2 instances i-0abc12345", "conn_prod_ops")
    assert intent.blocked is False
    assert any("does not grant ec2:TerminateInstances" in w for w in intent.warnings)


def test_unnamed_resources_warning(ctx):
    intent = ctx.parser.parse("reboot ec2 instances", "conn_staging_rw")
    assert intent.blocked is False
    assert intent.warnings == ["No resources named; they will be resolved from account state"]


def test_unknown_connection_is_audited_and_raised(ctx, entries):
    with pytest.raises(NotFoundError):
        ctx.parser.parse("stop ec2 instances", "conn_missing")
    logged = entries("intent_parsed")
    assert len(logged) == 1
    assert logged[0]["result"] == "failure"


@pytest.mark.parametrize("text", ["", "   ", "x" * 2001])
def test_invalid_request_text(ctx, text):
    with pytest.raises(PlanValidationError):
        ctx.parser.parse(text)
