"""Shared fixtures: fake credentials, moto-backed AWS, the audit table and tagged instances."""
import boto3
import pytest
from moto import mock_aws

from curfew_lambda import app
from tests.consts import TEST_AMI_ID, TEST_REGION, TEST_TABLE_NAME


@pytest.fixture(autouse=True)
def aws_env(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_REGION)
    for name in ("LOG_TABLE_NAME", "SNS_TOPIC_ARN", "MODE"):
        monkeypatch.delenv(name, raising=False)
    # the warm-container handler must not leak between tests
    monkeypatch.setattr(app, "_handler", None)


@pytest.fixture
def mocked_aws():
    with mock_aws():
        yield


@pytest.fixture
def log_table(mocked_aws):
    ddb = boto3.client("dynamodb")
    ddb.create_table(
        TableName=TEST_TABLE_NAME,
        KeySchema=[{"AttributeName": "LogId", "KeyType": "HASH"}],
        AttributeDefinitions=[{"AttributeName": "LogId", "AttributeType": "S"}],
        BillingMode="PAY_PER_REQUEST",
    )
    return TEST_TABLE_NAME


@pytest.fixture
def launch_instance(mocked_aws):
    """Factory: launch one instance with the given tags, optionally stopped, and return its id."""
    ec2 = boto3.client("ec2")

    def _launch(tags=None, stopped=False):
        kwargs = {"ImageId": TEST_AMI_ID, "InstanceType": "t3.micro", "MinCount": 1, "MaxCount": 1}
        if tags:
            kwargs["TagSpecifications"] = [
                {"ResourceType": "instance", "Tags": [{"Key": k, "Value": v} for k, v in tags.items()]}
            ]
        instance_id = ec2.run_instances(**kwargs)["Instances"][0]["InstanceId"]
        if stopped:
            ec2.stop_instances(InstanceIds=[instance_id])
        return instance_id

    return _launch


@pytest.fixture
def log_items(log_table):
    """Callable returning every audit item currently in the table."""

    def _scan():
        return boto3.client("dynamodb").scan(TableName=log_table)["Items"]

    return _scan


@pytest.fixture
def curfew_handler(log_table):
    def _build(**overrides):
        config = app.CurfewConfig(log_table_name=log_table, **overrides)
        return app.CurfewHandler(
            ec2=boto3.client("ec2"),
            dynamodb=boto3.client("dynamodb"),
            sns=boto3.client("sns"),
            config=config,
        )

    return _build
