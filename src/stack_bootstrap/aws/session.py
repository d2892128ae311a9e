"""boto3 session and client construction.

Clients are built per call from either the ambient session or a set of
assumed-role credentials, so credentials are never shared between stacks.
"""

import asyncio
from functools import lru_cache
from typing import Any, Callable, Optional, TypeVar

import boto3
from botocore.config import Config

from stack_bootstrap.config import Settings, get_settings
from stack_bootstrap.core.contracts import AssumedCredentials

T = TypeVar("T")

# STS is global; any region works
STS_REGION = "us-east-1"

RETRY_CONFIG = Config(retries={"max_attempts": 5, "mode": "standard"})


class AwsClientFactory:
    """Builds boto3 clients for the ambient identity or assumed credentials."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    @property
    def ambient_session(self) -> boto3.Session:
        return _ambient_session(self.settings.aws_profile, self.settings.aws_region)

    def session_for(self, credentials: Optional[AssumedCredentials]) -> boto3.Session:
        """Get a session for the given credentials, or the ambient session for None."""
        if credentials is None:
            return self.ambient_session
        return boto3.Session(
            aws_access_key_id=credentials.access_key,
            aws_secret_access_key=credentials.secret,
            aws_session_token=credentials.session_token,
        )

    def client(
        self,
        service: str,
        credentials: Optional[AssumedCredentials] = None,
        region: Optional[str] = None,
    ) -> Any:
        """Create a client for a service in a region."""
        session = self.session_for(credentials)
        return session.client(
            service,
            region_name=region or self.settings.aws_region,
            config=RETRY_CONFIG,
        )


@lru_cache
def _ambient_session(profile: Optional[str], region: str) -> boto3.Session:
    """Get cached boto3 session for the ambient identity."""
    session_kwargs = {"region_name": region}
    if profile:
        session_kwargs["profile_name"] = profile
    return boto3.Session(**session_kwargs)


async def call_aws(operation: Callable[..., T], **kwargs: Any) -> T:
    """Run a blocking boto3 operation without blocking the event loop."""
    return await asyncio.to_thread(operation, **kwargs)
