from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from aws_ops_gate.config import Settings
from aws_ops_gate.errors import ProviderError
from aws_ops_gate.execution import aws_client
from aws_ops_gate.execution.aws_client import (
    ActionCall,
    Boto3ActionRunner,
    Boto3StateInspector,
    _snake_case,
    build_request,
    get_client,
    is_retryable,
)
from aws_ops_gate.utils.time import utc_now


def _session_factory(client: MagicMock) -> MagicMock:
    session = MagicMock()
    session.client.return_value = client
    return MagicMock(return_value=session)


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("StopInstances", "stop_instances"),
        ("StopDBInstance", "stop_db_instance"),
        ("DescribeDBInstances", "describe_db_instances"),
        ("PutBucketLifecycleConfiguration", "put_bucket_lifecycle_configuration"),
        ("PutFunctionConcurrency", "put_function_concurrency"),
    ],
)
def test_snake_case(name: str, expected: str) -> None:
    assert _snake_case(name) == expected


def test_is_retryable() -> None:
    throttled = ClientError({"Error": {"Code": "Throttling"}}, "StopInstances")
    denied = ClientError({"Error": {"Code": "UnauthorizedOperation"}}, "StopInstances")

    assert is_retryable(throttled) is True
    assert is_retryable(denied) is False
    assert is_retryable(EndpointConnectionError(endpoint_url="https://ec2")) is True
    assert is_retryable(ValueError("nope")) is False


def test_build_request_list_and_scalar_params(boundary) -> None:
    stop = boundary.require_action("ec2:StopInstances")
    throttle = boundary.require_action("lambda:PutFunctionConcurrency")

    assert build_request(ActionCall(action=stop, resources=["i-1", "i-2"])) == {
        "InstanceIds": ["i-1", "i-2"]
    }
    assert build_request(
        ActionCall(action=throttle, resources=["billing-fn"], parameters={"Extra": 1})
    ) == {"Extra": 1, "FunctionName": "billing-fn"}
    with pytest.raises(ValueError, match="single FunctionName"):
        build_request(ActionCall(action=throttle, resources=["a", "b"]))


def test_get_client_is_cached_per_role(registry) -> None:
    settings = Settings()
    client = MagicMock()
    factory = _session_factory(client)
    prod = registry.get("conn_prod_ops")
    staging = registry.get("conn_staging_rw")

    first = get_client("ec2", "us-east-1", settings, prod, factory)
    again = get_client("ec2", "us-east-1", settings, prod, factory)
    get_client("ec2", "us-east-1", settings, staging, factory)

    assert first is again
    assert factory.call_count == 2
    factory.assert_any_call(prod, "us-east-1")
    _, kwargs = factory.return_value.client.call_args
    assert kwargs["config"].retries == {"max_attempts": 1, "mode": "standard"}


def test_client_cache_entries_expire(monkeypatch) -> None:
    settings = Settings()
    factory = _session_factory(MagicMock())
    monkeypatch.setattr(aws_client, "_CLIENT_TTL_SECONDS", 0)

    get_client("s3", "us-east-1", settings, None, factory)
    get_client("s3", "us-east-1", settings, None, factory)

    assert factory.call_count == 2


def test_runner_invokes_snake_case_method(boundary, registry) -> None:
    client = MagicMock()
    client.stop_instances.return_value = {
        "StoppingInstances": [{"InstanceId": "i-1"}],
        "ResponseMetadata": {"HTTPStatusCode": 200},
    }
    runner = Boto3ActionRunner(Settings(), _session_factory(client))
    call = ActionCall(
        action=boundary.require_action("ec2:StopInstances"),
        resources=["i-1"],
        region="us-east-1",
        connection=registry.get("conn_prod_ops"),
    )

    response = runner.invoke(call)

    client.stop_instances.assert_called_once_with(InstanceIds=["i-1"])
    assert response == {"StoppingInstances": [{"InstanceId": "i-1"}]}


def test_runner_propagates_client_errors(boundary) -> None:
    client = MagicMock()
    client.reboot_instances.side_effect = ClientError(
        {"Error": {"Code": "IncorrectState"}}, "RebootInstances"
    )
    runner = Boto3ActionRunner(Settings(), _session_factory(client))

    with pytest.raises(ClientError):
        runner.invoke(
            ActionCall(action=boundary.require_action("ec2:RebootInstances"), resources=["i-1"])
        )


def test_inspector_reads_instance_states(boundary, registry) -> None:
    client = MagicMock()
    client.get_paginator.return_value.paginate.return_value = [
        {
            "Reservations": [
                {"Instances": [{"InstanceId": "i-1", "State": {"Name": "running"}}]},
                {"Instances": [{"InstanceId": "i-2", "State": {"Name": "stopped"}}]},
            ]
        }
    ]
    inspector = Boto3StateInspector(Settings(), _session_factory(client))

    states = inspector.current_states(
        registry.get("conn_prod_ops"),
        boundary.require_action("ec2:StopInstances"),
        ["i-1", "i-2"],
        "us-east-1",
    )

    assert states == {"i-1": "running", "i-2": "stopped"}
    client.get_paginator.assert_called_once_with("describe_instances")


def test_inspector_reads_database_states(boundary) -> None:
    client = MagicMock()
    client.describe_db_instances.return_value = {
        "DBInstances": [{"DBInstanceIdentifier": "orders-db", "DBInstanceStatus": "available"}]
    }
    inspector = Boto3StateInspector(Settings(), _session_factory(client))

    states = inspector.current_states(
        None, boundary.require_action("rds:StopDBInstance"), ["orders-db"], None
    )

    assert states == {"orders-db": "available"}


def test_inspector_wraps_provider_errors(boundary) -> None:
    client = MagicMock()
    client.describe_volumes.side_effect = ClientError(
        {"Error": {"Code": "UnauthorizedOperation"}}, "DescribeVolumes"
    )
    inspector = Boto3StateInspector(Settings(), _session_factory(client))

    with pytest.raises(ProviderError, match="ec2:DetachVolume"):
        inspector.current_states(
            None, boundary.require_action("ec2:DetachVolume"), ["vol-1"], None
        )


def test_resolve_idle_instances_by_launch_time(boundary, registry) -> None:
    now = utc_now()
    client = MagicMock()
    client.get_paginator.return_value.paginate.return_value = [
        {
            "Reservations": [
                {
                    "Instances": [
                        {"InstanceId": "i-old", "LaunchTime": now - timedelta(days=30)},
                        {"InstanceId": "i-new", "LaunchTime": now - timedelta(days=1)},
                    ]
                }
            ]
        }
    ]
    inspector = Boto3StateInspector(Settings(), _session_factory(client))

    found = inspector.resolve(
        registry.get("conn_prod_ops"),
        boundary.require_action("ec2:StopInstances"),
        {"idle_days": 7, "tags": {"env": "dev"}},
        "us-east-1",
    )

    assert found == ["i-old"]
    client.get_paginator.return_value.paginate.assert_called_once_with(
        Filters=[
            {"Name": "instance-state-name", "Values": ["running"]},
            {"Name": "tag:env", "Values": ["dev"]},
        ]
    )


def test_resolve_unknown_resource_kind_returns_nothing(boundary, registry) -> None:
    inspector = Boto3StateInspector(Settings(), _session_factory(MagicMock()))

    found = inspector.resolve(
        registry.get("conn_staging_rw"),
        boundary.require_action("lambda:PutFunctionConcurrency"),
        {},
        None,
    )

    assert found == []
