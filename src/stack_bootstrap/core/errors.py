"""Error taxonomy for the deployment orchestration engine."""

from typing import Optional, Sequence

from botocore.exceptions import ClientError


class BootstrapError(Exception):
    """Base class for every error the engine raises on purpose."""


class CredentialsUnavailable(BootstrapError):
    """The ambient AWS identity could not be established."""

    def __init__(self, detail: Optional[str] = None):
        message = (
            "No usable AWS credentials found. Configure credentials with `aws configure` "
            "or set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY."
        )
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.detail = detail


class RoleAssumptionFailure(BootstrapError):
    """Every candidate role failed for a target account."""

    def __init__(
        self,
        target_account_id: str,
        attempted_roles: Sequence[str],
        current_account_id: str,
    ):
        roles = " or ".join(attempted_roles)
        super().__init__(
            f"Cannot access account {target_account_id} from account {current_account_id}: "
            f"unable to assume role {roles}. Ensure the current credentials may assume it, "
            "or pass a different role name."
        )
        self.target_account_id = target_account_id
        self.attempted_roles = list(attempted_roles)
        self.current_account_id = current_account_id


class UnknownMergeStrategy(BootstrapError):
    """No merge strategy is registered under the requested id."""

    def __init__(self, strategy_id: str):
        super().__init__(f"Unknown merge strategy: {strategy_id}")
        self.strategy_id = strategy_id


class MergeCollectionFailure(BootstrapError):
    """Invalid input found while collecting new state for a merge."""

    def __init__(self, message: str, pipeline_slug: Optional[str] = None, value: Optional[str] = None):
        super().__init__(message)
        self.pipeline_slug = pipeline_slug
        self.value = value


class MergeValidationFailure(BootstrapError):
    """A merged result failed structural validation."""

    def __init__(self, strategy_name: str, errors: Sequence[str]):
        detail = ", ".join(errors) or "Unknown validation error"
        super().__init__(f"Merge validation failed for {strategy_name}: {detail}")
        self.strategy_name = strategy_name
        self.errors = list(errors)


class StackOperationFailure(BootstrapError):
    """The provider reported a terminal non-success status for a stack."""

    def __init__(
        self,
        stack_name: str,
        account_id: str,
        region: str,
        reason: str,
        status: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        where = f"'{stack_name}' in account {account_id} ({region})"
        super().__init__(f"Failed to deploy stack {where}: {reason}")
        self.stack_name = stack_name
        self.account_id = account_id
        self.region = region
        self.reason = reason
        self.status = status
        self.resource_id = resource_id


class StackOperationTimeout(BootstrapError):
    """Polling exceeded the ceiling before the stack reached a terminal state."""

    def __init__(
        self,
        stack_name: str,
        account_id: str,
        region: str,
        timeout_seconds: float,
        last_status: Optional[str] = None,
    ):
        super().__init__(
            f"Timed out after {timeout_seconds:g}s waiting for stack '{stack_name}' in account "
            f"{account_id} ({region}); last status: {last_status or 'unknown'}"
        )
        self.stack_name = stack_name
        self.account_id = account_id
        self.region = region
        self.timeout_seconds = timeout_seconds
        self.last_status = last_status


class PipelineFileError(BootstrapError):
    """The parsed-pipeline input file could not be loaded."""


class TemplateRenderError(BootstrapError):
    """A stack template could not be parsed or rendered."""

    def __init__(self, template_path: str, detail: str):
        super().__init__(f"Cannot render template {template_path}: {detail}")
        self.template_path = template_path
        self.detail = detail


# =============================================================================
# botocore ClientError classification
# =============================================================================


def error_code(error: ClientError) -> str:
    """Get the AWS error code from a ClientError."""
    return error.response.get("Error", {}).get("Code", "Unknown")


def error_message(error: ClientError) -> str:
    """Get the AWS error message from a ClientError."""
    return error.response.get("Error", {}).get("Message", str(error))


def is_stack_missing(error: ClientError) -> bool:
    """True when the provider says the stack does not exist."""
    return error_code(error) == "ValidationError" and "does not exist" in error_message(error)


def is_no_updates(error: ClientError) -> bool:
    """True when an update submission had nothing to change."""
    return "No updates are to be performed" in error_message(error)
