"""Bucket policy merge strategy.

Keeps the shared Terraform state bucket's allow-list growing across runs:

1. Read the existing bucket policy (if any)
2. Extract the currently allowed account ids
3. Union them with the account ids of every pipeline
4. Sort for stable, diff-friendly templates
"""

import json
import logging
import re
from typing import Any, Optional

from botocore.exceptions import BotoCoreError, ClientError

from stack_bootstrap.aws.session import call_aws
from stack_bootstrap.core.contracts import (
    BucketPolicyData,
    ExistingStackResources,
    MergeContext,
    MergeValidation,
)
from stack_bootstrap.core.errors import MergeCollectionFailure, error_code
from stack_bootstrap.merge.strategy import ExtractionScope, MergeStrategy

logger = logging.getLogger(__name__)

STRATEGY_ID = "terraform-state-bucket-policy"
DISPLAY_NAME = "Terraform State Bucket Policy"

DEFAULT_WARNING_THRESHOLD = 50

ACCOUNT_ID_PATTERN = re.compile(r"[0-9]{12}")
# arn:aws:iam::123456789012:root, arn:aws:iam::123456789012:role/Name
PRINCIPAL_ARN_PATTERN = re.compile(r"arn:aws[a-z-]*:iam::([0-9]{12}):")

BUCKET_RESOURCE_TYPE = "AWS::S3::Bucket"
MISSING_POLICY_CODES = {"NoSuchBucketPolicy", "NoSuchBucket"}


def is_valid_account_id(value: Any) -> bool:
    """True for exactly twelve ASCII digits."""
    return isinstance(value, str) and ACCOUNT_ID_PATTERN.fullmatch(value) is not None


def extract_account_ids_from_policy(policy: Any) -> list[str]:
    """Account ids granted by the AWS principals of a policy document.

    Recognizes bare account ids and account-scoped IAM ARNs. Anything else,
    including malformed ids, is skipped.
    """
    if not isinstance(policy, dict):
        return []
    statements = policy.get("Statement")
    if isinstance(statements, dict):
        statements = [statements]
    if not isinstance(statements, list):
        return []

    account_ids: list[str] = []
    for statement in statements:
        if not isinstance(statement, dict):
            continue
        principal = statement.get("Principal")
        if not isinstance(principal, dict):
            continue
        aws = principal.get("AWS")
        if not aws:
            continue

        for value in aws if isinstance(aws, list) else [aws]:
            if not isinstance(value, str):
                continue
            arn_match = PRINCIPAL_ARN_PATTERN.match(value)
            if arn_match:
                extracted = arn_match.group(1)
            elif ACCOUNT_ID_PATTERN.fullmatch(value):
                extracted = value
            else:
                continue

            if not is_valid_account_id(extracted):
                logger.debug(f"Skipping invalid account ID from existing policy: {extracted!r}")
                continue
            if extracted not in account_ids:
                account_ids.append(extracted)

    return account_ids


def find_state_bucket(stack: ExistingStackResources) -> Optional[str]:
    """Physical name of the state bucket in a deployed org stack."""
    buckets = [
        (logical_id, resource.physical_id)
        for logical_id, resource in stack.resources.items()
        if resource.type == BUCKET_RESOURCE_TYPE and resource.physical_id
    ]
    for logical_id, physical_id in buckets:
        if "StateBucket" in logical_id:
            return physical_id
    if len(buckets) == 1:
        return buckets[0][1]
    return None


async def extract_existing_account_ids(
    stack: ExistingStackResources, scope: ExtractionScope
) -> Optional[BucketPolicyData]:
    """Read the allow-list from the live bucket policy.

    Returns None when there is no bucket, no policy, or the policy cannot be
    read; a deployment then proceeds with the new account list alone.
    """
    bucket_name = find_state_bucket(stack)
    if not bucket_name:
        logger.debug(f"No state bucket found in stack {stack.stack_name}")
        return None

    s3 = scope.client("s3")
    try:
        response = await call_aws(s3.get_bucket_policy, Bucket=bucket_name)
    except ClientError as e:
        if error_code(e) in MISSING_POLICY_CODES:
            logger.debug(f"Bucket {bucket_name} has no policy ({error_code(e)})")
        else:
            logger.warning(f"Could not read bucket policy for {bucket_name}: {e}")
        return None
    except BotoCoreError as e:
        logger.warning(f"Could not read bucket policy for {bucket_name}: {e}")
        return None

    raw_policy = response.get("Policy")
    if not raw_policy:
        logger.debug(f"Bucket {bucket_name} has no policy")
        return None

    try:
        policy = json.loads(raw_policy)
    except json.JSONDecodeError as e:
        logger.warning(f"Bucket policy for {bucket_name} is not valid JSON: {e}")
        return None

    account_ids = extract_account_ids_from_policy(policy)
    logger.debug(f"Found {len(account_ids)} existing account(s) in bucket policy")
    return BucketPolicyData(allowed_account_ids=account_ids)


def collect_account_ids(context: MergeContext) -> BucketPolicyData:
    """Gather the CI/CD account and every pipeline target account.

    Raises:
        MergeCollectionFailure: Any id is not exactly twelve digits.
    """
    if not is_valid_account_id(context.cicd_account_id):
        raise MergeCollectionFailure(
            f'Invalid CI/CD account ID: "{context.cicd_account_id}". '
            "AWS account IDs must be exactly 12 digits.",
            value=context.cicd_account_id,
        )

    account_ids = [context.cicd_account_id]
    for pipeline in context.pipelines:
        for account_id in pipeline.target_account_ids:
            if not is_valid_account_id(account_id):
                raise MergeCollectionFailure(
                    f'Invalid target account ID in pipeline "{pipeline.slug}": "{account_id}". '
                    "AWS account IDs must be exactly 12 digits.",
                    pipeline_slug=pipeline.slug,
                    value=account_id,
                )
            if account_id not in account_ids:
                account_ids.append(account_id)

    logger.debug(f"Collected {len(account_ids)} account(s) from pipelines")
    return BucketPolicyData(allowed_account_ids=account_ids)


def merge_account_ids(
    existing: Optional[BucketPolicyData], new_data: BucketPolicyData
) -> BucketPolicyData:
    """Sorted union of existing and new account ids."""
    merged = set(new_data.allowed_account_ids)
    if existing is not None:
        merged.update(existing.allowed_account_ids)
    return BucketPolicyData(allowed_account_ids=sorted(merged))


def validate_account_ids(
    result: BucketPolicyData, warning_threshold: int = DEFAULT_WARNING_THRESHOLD
) -> MergeValidation:
    """Check id format and warn when the policy grows large."""
    errors = [
        f"Invalid AWS account ID format: {account_id}"
        for account_id in result.allowed_account_ids
        if not is_valid_account_id(account_id)
    ]

    warnings = []
    count = len(result.allowed_account_ids)
    if count > warning_threshold:
        warnings.append(
            f"Large number of accounts ({count}) in bucket policy. "
            "Consider using AWS Organizations conditions instead."
        )

    return MergeValidation(
        valid=not errors,
        errors=errors or None,
        warnings=warnings or None,
    )


def bucket_policy_strategy(
    warning_threshold: int = DEFAULT_WARNING_THRESHOLD,
) -> MergeStrategy[BucketPolicyData, BucketPolicyData, BucketPolicyData]:
    """Build the bucket policy merge strategy."""
    return MergeStrategy(
        strategy_id=STRATEGY_ID,
        display_name=DISPLAY_NAME,
        extract_existing=extract_existing_account_ids,
        collect_new=collect_account_ids,
        merge=merge_account_ids,
        validate=lambda result: validate_account_ids(result, warning_threshold),
    )
