"""Tests for stack status probing and existing-stack reads."""

import pytest
from botocore.exceptions import ClientError

from stack_bootstrap.aws.cloudformation import StackStatusProber, read_existing_stack

from fakes import CICD_ACCOUNT, client_error, stack_missing_error


@pytest.mark.asyncio
async def test_missing_stack_does_not_exist(fake_clients) -> None:
    fake_clients["cloudformation"].describe_stacks.side_effect = stack_missing_error("DevRamps-acme-Org")

    status = await StackStatusProber(fake_clients).status("DevRamps-acme-Org", None, "us-east-1")

    assert status.exists is False
    assert status.lifecycle_status is None


@pytest.mark.asyncio
async def test_existing_stack_reports_status(fake_clients) -> None:
    fake_clients["cloudformation"].describe_stacks.return_value = {
        "Stacks": [{"StackName": "s", "StackStatus": "UPDATE_COMPLETE", "StackId": "arn:stack/s/1"}]
    }

    status = await StackStatusProber(fake_clients).status("s", None, "us-east-1")

    assert status.exists is True
    assert status.lifecycle_status == "UPDATE_COMPLETE"
    assert status.stack_id == "arn:stack/s/1"


@pytest.mark.asyncio
async def test_probe_errors_are_not_treated_as_missing(fake_clients) -> None:
    fake_clients["cloudformation"].describe_stacks.side_effect = client_error("AccessDenied", "denied")

    with pytest.raises(ClientError):
        await StackStatusProber(fake_clients).status("s", None, "us-east-1")


@pytest.mark.asyncio
async def test_probe_uses_stack_region(fake_clients) -> None:
    fake_clients["cloudformation"].describe_stacks.return_value = {"Stacks": []}

    await StackStatusProber(fake_clients).status("s", None, "eu-west-1")

    assert fake_clients.requests[-1] == ("cloudformation", None, "eu-west-1")


@pytest.mark.asyncio
async def test_read_existing_stack(fake_clients) -> None:
    cfn = fake_clients["cloudformation"]
    cfn.describe_stacks.return_value = {
        "Stacks": [{
            "StackName": "DevRamps-acme-Org",
            "StackStatus": "CREATE_COMPLETE",
            "Outputs": [{"OutputKey": "StateBucketName", "OutputValue": "acme-state"}],
        }]
    }
    cfn.describe_stack_resources.return_value = {
        "StackResources": [
            {
                "LogicalResourceId": "TerraformStateBucket",
                "ResourceType": "AWS::S3::Bucket",
                "PhysicalResourceId": "acme-state",
                "ResourceStatus": "CREATE_COMPLETE",
            },
        ]
    }

    existing = await read_existing_stack(fake_clients, "DevRamps-acme-Org", CICD_ACCOUNT, "us-east-1")

    assert existing.outputs == {"StateBucketName": "acme-state"}
    bucket = existing.resources["TerraformStateBucket"]
    assert bucket.type == "AWS::S3::Bucket"
    assert bucket.physical_id == "acme-state"


@pytest.mark.asyncio
async def test_read_missing_stack_returns_none(fake_clients) -> None:
    fake_clients["cloudformation"].describe_stacks.side_effect = stack_missing_error()

    assert await read_existing_stack(fake_clients, "s", CICD_ACCOUNT, "us-east-1") is None


@pytest.mark.asyncio
async def test_read_failure_returns_none(fake_clients) -> None:
    cfn = fake_clients["cloudformation"]
    cfn.describe_stacks.return_value = {"Stacks": [{"StackName": "s"}]}
    cfn.describe_stack_resources.side_effect = client_error("AccessDenied", "denied")

    assert await read_existing_stack(fake_clients, "s", CICD_ACCOUNT, "us-east-1") is None
