"""CloudFormation stack status probing and existing-state reads."""

import logging
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from stack_bootstrap.aws.session import AwsClientFactory, call_aws
from stack_bootstrap.core.contracts import (
    AssumedCredentials,
    ExistingStackResources,
    StackResource,
    StackStatus,
)
from stack_bootstrap.core.errors import is_stack_missing

logger = logging.getLogger(__name__)


class StackStatusProber:
    """Answers whether a named stack exists and what state it is in."""

    def __init__(self, clients: AwsClientFactory):
        self.clients = clients

    async def status(
        self,
        stack_name: str,
        credentials: Optional[AssumedCredentials],
        region: str,
    ) -> StackStatus:
        """Probe a stack.

        A "does not exist" response maps to ``exists=False``. Every other
        provider error propagates so that a failed probe is never mistaken
        for a missing stack.
        """
        cfn = self.clients.client("cloudformation", credentials, region)
        try:
            response = await call_aws(cfn.describe_stacks, StackName=stack_name)
        except ClientError as e:
            if is_stack_missing(e):
                return StackStatus(exists=False)
            raise

        stacks = response.get("Stacks") or []
        if not stacks:
            return StackStatus(exists=False)

        stack = stacks[0]
        return StackStatus(
            exists=True,
            lifecycle_status=stack.get("StackStatus"),
            stack_id=stack.get("StackId"),
        )


async def read_existing_stack(
    clients: AwsClientFactory,
    stack_name: str,
    account_id: str,
    region: str,
    credentials: Optional[AssumedCredentials] = None,
) -> Optional[ExistingStackResources]:
    """Read the resources and outputs of a deployed stack.

    Returns None when the stack does not exist or cannot be read.
    """
    cfn = clients.client("cloudformation", credentials, region)

    try:
        stacks_response = await call_aws(cfn.describe_stacks, StackName=stack_name)
        stacks = stacks_response.get("Stacks") or []
        if not stacks:
            return None

        resources_response = await call_aws(cfn.describe_stack_resources, StackName=stack_name)
    except ClientError as e:
        if not is_stack_missing(e):
            logger.debug(f"Could not read stack {stack_name}: {e}")
        return None
    except BotoCoreError as e:
        logger.debug(f"Could not read stack {stack_name}: {e}")
        return None

    outputs = {
        output["OutputKey"]: output["OutputValue"]
        for output in stacks[0].get("Outputs") or []
        if output.get("OutputKey") and output.get("OutputValue")
    }

    resources = {
        resource["LogicalResourceId"]: StackResource(
            type=resource.get("ResourceType", ""),
            physical_id=resource.get("PhysicalResourceId"),
            status=resource.get("ResourceStatus"),
        )
        for resource in resources_response.get("StackResources") or []
        if resource.get("LogicalResourceId")
    }

    return ExistingStackResources(
        stack_name=stack_name,
        account_id=account_id,
        region=region,
        resources=resources,
        outputs=outputs,
    )
