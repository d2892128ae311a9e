"""Ambient identity detection and cross-account role assumption."""

import logging
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from stack_bootstrap.aws.session import STS_REGION, AwsClientFactory, call_aws
from stack_bootstrap.config import Settings, get_settings
from stack_bootstrap.core.contracts import AssumedCredentials, CallerIdentity
from stack_bootstrap.core.errors import CredentialsUnavailable, RoleAssumptionFailure, error_code

logger = logging.getLogger(__name__)

CREDENTIAL_ERROR_CODES = {"ExpiredToken", "ExpiredTokenException", "InvalidClientTokenId"}


async def get_current_identity(clients: AwsClientFactory) -> CallerIdentity:
    """Establish who the engine runs as.

    Raises:
        CredentialsUnavailable: No credentials, expired credentials, or an
            incomplete identity response.
    """
    sts = clients.client("sts", region=STS_REGION)
    logger.debug("Checking AWS credentials...")

    try:
        response = await call_aws(sts.get_caller_identity)
    except NoCredentialsError as e:
        raise CredentialsUnavailable() from e
    except ClientError as e:
        if error_code(e) in CREDENTIAL_ERROR_CODES:
            raise CredentialsUnavailable(error_code(e)) from e
        raise

    account_id = response.get("Account")
    arn = response.get("Arn")
    user_id = response.get("UserId")
    if not account_id or not arn or not user_id:
        raise CredentialsUnavailable("incomplete caller identity")

    logger.debug(f"Authenticated as: {arn}")
    return CallerIdentity(account_id=account_id, arn=arn, user_id=user_id)


class CredentialResolver:
    """Exchanges an account id for short-lived cross-account credentials."""

    def __init__(self, clients: AwsClientFactory, settings: Optional[Settings] = None):
        self.clients = clients
        self.settings = settings or get_settings()

    async def resolve(
        self,
        target_account_id: str,
        current_account_id: str,
        preferred_role_name: Optional[str] = None,
    ) -> Optional[AssumedCredentials]:
        """Get credentials for a target account.

        Args:
            target_account_id: Account the caller needs to act in.
            current_account_id: Account of the ambient identity.
            preferred_role_name: Role to assume. When given, no fallback role
                is tried.

        Returns:
            Assumed credentials, or None when the target is the current
            account and the ambient credentials should be used.

        Raises:
            RoleAssumptionFailure: Every applicable role failed.
        """
        if target_account_id == current_account_id:
            logger.debug(f"Account {target_account_id} is the current account, using current credentials")
            return None

        roles = [preferred_role_name] if preferred_role_name else self.settings.target_roles

        for role_name in roles:
            role_arn = f"arn:aws:iam::{target_account_id}:role/{role_name}"
            try:
                logger.debug(f"Attempting to assume role: {role_arn}")
                credentials = await self._assume(role_arn, target_account_id)
            except (ClientError, BotoCoreError, ValueError) as e:
                logger.debug(f"Failed to assume role {role_name}: {e}")
                continue
            logger.debug(f"Assumed role {role_name} in account {target_account_id}")
            return credentials

        raise RoleAssumptionFailure(target_account_id, roles, current_account_id)

    async def _assume(self, role_arn: str, account_id: str) -> AssumedCredentials:
        sts = self.clients.client("sts", region=STS_REGION)
        response = await call_aws(
            sts.assume_role,
            RoleArn=role_arn,
            RoleSessionName=self.settings.role_session_name,
            DurationSeconds=self.settings.role_session_duration_seconds,
        )

        raw = response.get("Credentials")
        if not raw:
            raise ValueError("AssumeRole returned no credentials")
        if not raw.get("AccessKeyId") or not raw.get("SecretAccessKey"):
            raise ValueError("AssumeRole returned incomplete credentials")

        return AssumedCredentials(
            access_key=raw["AccessKeyId"],
            secret=raw["SecretAccessKey"],
            session_token=raw.get("SessionToken"),
            expiration=raw.get("Expiration"),
            account_id=account_id,
            role_arn=role_arn,
        )
