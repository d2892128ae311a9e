"""Stack deployment state machine.

Drives a single stack through create-or-update:

    SUBMITTED -> IN_PROGRESS -> SUCCEEDED | FAILED

with a NEEDS_RECREATE pre-state when the stack sits in ROLLBACK_COMPLETE,
which the provider will not update. The machine emits ``ProgressEvent``
objects and never renders anything itself.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import yaml
from botocore.exceptions import BotoCoreError, ClientError

from stack_bootstrap.aws.cloudformation import StackStatusProber
from stack_bootstrap.aws.session import AwsClientFactory, call_aws
from stack_bootstrap.config import Settings, get_settings
from stack_bootstrap.core.contracts import (
    AssumedCredentials,
    BaseStackDeployment,
    ChangeAction,
    ProgressEvent,
    ProgressStatus,
    ResourceChange,
    StackOutcome,
    StackPreview,
)
from stack_bootstrap.core.errors import (
    StackOperationFailure,
    StackOperationTimeout,
    error_message,
    is_no_updates,
)
from stack_bootstrap.core.progress import NullProgressSink, ProgressSink

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = frozenset({"CREATE_COMPLETE", "UPDATE_COMPLETE"})
FAILURE_STATUSES = frozenset({
    "CREATE_FAILED",
    "ROLLBACK_COMPLETE",
    "ROLLBACK_FAILED",
    "UPDATE_FAILED",
    "UPDATE_ROLLBACK_COMPLETE",
    "UPDATE_ROLLBACK_FAILED",
})
TERMINAL_STATUSES = SUCCESS_STATUSES | FAILURE_STATUSES

# Provider status that leaves a stack unusable until it is deleted
RECREATE_STATUS = "ROLLBACK_COMPLETE"
DELETE_COMPLETE = "DELETE_COMPLETE"
DELETE_FAILED = "DELETE_FAILED"

CHANGE_SET_READY = "CREATE_COMPLETE"
CHANGE_SET_FAILED = "FAILED"
EMPTY_CHANGE_SET_MARKERS = ("didn't contain changes", "No updates are to be performed")

CAPABILITIES = ["CAPABILITY_NAMED_IAM"]
STACK_TAGS = [
    {"Key": "CreatedBy", "Value": "DevRamps"},
    {"Key": "ManagedBy", "Value": "DevRamps-CLI"},
]


class DeploymentState(str, Enum):
    """States of a single stack deployment."""

    NEEDS_RECREATE = "needs_recreate"
    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class EventTracker:
    """Accumulates what the stack's event stream has told us so far."""

    stack_name: str
    baseline_event_id: Optional[str] = None
    started_at: Optional[datetime] = None
    seen_event_ids: set[str] = field(default_factory=set)
    completed_resources: set[str] = field(default_factory=set)
    latest_resource_id: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_resource_id: Optional[str] = None

    def new_events(self, events: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Unseen events since the operation began, oldest first.

        ``events`` is newest first, as the provider returns them. Without a
        baseline event, events older than ``started_at`` are skipped.
        """
        fresh = []
        for event in events:
            event_id = event.get("EventId")
            if event_id and event_id == self.baseline_event_id:
                break
            if event_id in self.seen_event_ids:
                continue
            timestamp = event.get("Timestamp")
            if self.started_at and timestamp and timestamp < self.started_at:
                continue
            fresh.append(event)
        fresh.reverse()
        return fresh

    def record(self, event: dict[str, Any]) -> None:
        event_id = event.get("EventId")
        if event_id:
            self.seen_event_ids.add(event_id)

        logical_id = event.get("LogicalResourceId")
        status = event.get("ResourceStatus", "")
        if logical_id and logical_id != self.stack_name:
            self.latest_resource_id = logical_id
            if status.endswith("_COMPLETE") and "ROLLBACK" not in status:
                self.completed_resources.add(logical_id)

        reason = event.get("ResourceStatusReason")
        if "FAILED" in status and reason:
            self.failure_reason = reason
            self.failure_resource_id = logical_id

    @property
    def completed_count(self) -> int:
        return len(self.completed_resources)


class CloudFormationLoader(yaml.SafeLoader):
    """SafeLoader that understands short-form intrinsics (``!Ref``, ``!Sub``, ...)."""


def _construct_intrinsic(loader: yaml.SafeLoader, suffix: str, node: yaml.Node) -> dict[str, Any]:
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)
    return {suffix if suffix in ("Ref", "Condition") else f"Fn::{suffix}": value}


CloudFormationLoader.add_multi_constructor("!", _construct_intrinsic)


def count_template_resources(template_body: str) -> int:
    """Best-effort count of resources declared in a template."""
    try:
        document = yaml.load(template_body, Loader=CloudFormationLoader)
    except yaml.YAMLError:
        return 0
    if not isinstance(document, dict):
        return 0
    resources = document.get("Resources")
    return len(resources) if isinstance(resources, dict) else 0


def _progress_status(lifecycle_status: Optional[str]) -> ProgressStatus:
    if lifecycle_status in SUCCESS_STATUSES:
        return ProgressStatus.COMPLETE
    if lifecycle_status in FAILURE_STATUSES:
        return ProgressStatus.FAILED
    if lifecycle_status and "ROLLBACK" in lifecycle_status:
        return ProgressStatus.ROLLBACK
    return ProgressStatus.IN_PROGRESS


class StackDeployer:
    """Deploys one stack at a time and reports its terminal outcome."""

    def __init__(
        self,
        clients: AwsClientFactory,
        settings: Optional[Settings] = None,
        progress: Optional[ProgressSink] = None,
        prober: Optional[StackStatusProber] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.clients = clients
        self.settings = settings or get_settings()
        self.progress = progress or NullProgressSink()
        self.prober = prober or StackStatusProber(clients)
        self._sleep = sleep
        self._clock = clock

    # -------------------------------------------------------------------------
    # Deployment
    # -------------------------------------------------------------------------

    async def deploy(
        self,
        stack: BaseStackDeployment,
        template_body: str,
        credentials: Optional[AssumedCredentials] = None,
    ) -> StackOutcome:
        """Create or update a stack and wait for a terminal state.

        Returns:
            A successful ``StackOutcome``.

        Raises:
            StackOperationFailure: The provider rejected the submission or
                the stack settled in a failure state.
            StackOperationTimeout: No terminal state within the ceiling.
        """
        cfn = self.clients.client("cloudformation", credentials, stack.region)
        total = count_template_resources(template_body)

        current = await self.prober.status(stack.stack_name, credentials, stack.region)
        if current.exists and current.lifecycle_status == RECREATE_STATUS:
            self._transition(stack, DeploymentState.NEEDS_RECREATE)
            logger.info(f"Stack {stack.label} is {RECREATE_STATUS}, deleting before re-creating")
            self._emit(stack, ProgressStatus.ROLLBACK, 0, total)
            try:
                await self._delete_and_wait(stack, cfn, credentials)
            except (StackOperationFailure, StackOperationTimeout) as e:
                self._emit(stack, ProgressStatus.FAILED, 0, total, failure_reason=str(e))
                raise
            creating = True
        else:
            creating = not current.exists

        tracker = EventTracker(stack_name=stack.stack_name)
        if not creating:
            tracker.baseline_event_id = await self._latest_event_id(cfn, stack.stack_name)
            if tracker.baseline_event_id is None:
                tracker.started_at = datetime.now(timezone.utc)

        try:
            if creating:
                logger.debug(f"Stack {stack.label} does not exist, creating...")
                await call_aws(
                    cfn.create_stack,
                    StackName=stack.stack_name,
                    TemplateBody=template_body,
                    Capabilities=CAPABILITIES,
                    Tags=STACK_TAGS,
                )
            else:
                logger.debug(f"Stack {stack.label} exists, updating...")
                await call_aws(
                    cfn.update_stack,
                    StackName=stack.stack_name,
                    TemplateBody=template_body,
                    Capabilities=CAPABILITIES,
                )
        except ClientError as e:
            if not creating and is_no_updates(e):
                logger.info(f"Stack {stack.label} is already up to date")
                self._emit(stack, ProgressStatus.COMPLETE, total, total)
                return StackOutcome(
                    stack_name=stack.stack_name,
                    stack_kind=stack.stack_kind,
                    account_id=stack.account_id,
                    region=stack.region,
                    success=True,
                    final_status=current.lifecycle_status,
                )
            self._emit(stack, ProgressStatus.FAILED, 0, total, failure_reason=error_message(e))
            raise StackOperationFailure(
                stack.stack_name, stack.account_id, stack.region, error_message(e)
            ) from e

        self._transition(stack, DeploymentState.SUBMITTED)
        self._emit(stack, ProgressStatus.IN_PROGRESS, 0, total)
        final_status, polls = await self._wait_for_terminal(stack, cfn, credentials, tracker, total)

        if final_status in SUCCESS_STATUSES:
            self._transition(stack, DeploymentState.SUCCEEDED)
            verb = "created" if creating else "updated"
            logger.info(f"Stack {stack.label} {verb} successfully")
            self._emit(stack, ProgressStatus.COMPLETE, max(tracker.completed_count, total), total,
                       latest_resource_id=tracker.latest_resource_id)
            return StackOutcome(
                stack_name=stack.stack_name,
                stack_kind=stack.stack_kind,
                account_id=stack.account_id,
                region=stack.region,
                success=True,
                final_status=final_status,
                completed_resources=tracker.completed_count,
                poll_count=polls,
            )

        self._transition(stack, DeploymentState.FAILED)
        reason = tracker.failure_reason or final_status
        if tracker.failure_resource_id and tracker.failure_reason:
            reason = f"{tracker.failure_resource_id}: {tracker.failure_reason}"
        self._emit(stack, ProgressStatus.FAILED, tracker.completed_count, total,
                   latest_resource_id=tracker.failure_resource_id, failure_reason=reason)
        raise StackOperationFailure(
            stack.stack_name,
            stack.account_id,
            stack.region,
            reason,
            status=final_status,
            resource_id=tracker.failure_resource_id,
        )

    async def _wait_for_terminal(
        self,
        stack: BaseStackDeployment,
        cfn: Any,
        credentials: Optional[AssumedCredentials],
        tracker: EventTracker,
        total: int,
    ) -> tuple[str, int]:
        """Poll status and events until a terminal status or the timeout."""
        timeout = self.settings.stack_timeout_seconds
        started = self._clock()
        polls = 0
        lifecycle_status: Optional[str] = None

        while True:
            await self._sleep(self.settings.poll_interval_seconds)
            polls += 1

            status = await self.prober.status(stack.stack_name, credentials, stack.region)
            lifecycle_status = status.lifecycle_status
            await self._collect_events(cfn, tracker)

            if lifecycle_status in TERMINAL_STATUSES:
                return lifecycle_status, polls

            if polls == 1:
                self._transition(stack, DeploymentState.IN_PROGRESS)

            self._emit(stack, _progress_status(lifecycle_status), tracker.completed_count, total,
                       latest_resource_id=tracker.latest_resource_id,
                       failure_reason=tracker.failure_reason)

            if self._clock() - started > timeout:
                self._emit(stack, ProgressStatus.FAILED, tracker.completed_count, total,
                           failure_reason="timed out")
                raise StackOperationTimeout(
                    stack.stack_name, stack.account_id, stack.region, timeout, lifecycle_status
                )

    async def _collect_events(self, cfn: Any, tracker: EventTracker) -> None:
        response = await call_aws(cfn.describe_stack_events, StackName=tracker.stack_name)
        for event in tracker.new_events(response.get("StackEvents") or []):
            tracker.record(event)

    async def _latest_event_id(self, cfn: Any, stack_name: str) -> Optional[str]:
        try:
            response = await call_aws(cfn.describe_stack_events, StackName=stack_name)
        except (ClientError, BotoCoreError) as e:
            logger.debug(f"Could not read events for {stack_name}, filtering by time instead: {e}")
            return None
        events = response.get("StackEvents") or []
        return events[0].get("EventId") if events else None

    async def _delete_and_wait(
        self,
        stack: BaseStackDeployment,
        cfn: Any,
        credentials: Optional[AssumedCredentials],
    ) -> None:
        """Delete a stack and wait until it is gone."""
        try:
            await call_aws(cfn.delete_stack, StackName=stack.stack_name)
        except ClientError as e:
            raise StackOperationFailure(
                stack.stack_name, stack.account_id, stack.region,
                f"could not delete stack for re-creation: {error_message(e)}",
                status=RECREATE_STATUS,
            ) from e

        timeout = self.settings.stack_timeout_seconds
        started = self._clock()
        while True:
            await self._sleep(self.settings.poll_interval_seconds)
            status = await self.prober.status(stack.stack_name, credentials, stack.region)
            if not status.exists or status.lifecycle_status == DELETE_COMPLETE:
                logger.debug(f"Stack {stack.label} deleted")
                return
            if status.lifecycle_status == DELETE_FAILED:
                raise StackOperationFailure(
                    stack.stack_name, stack.account_id, stack.region,
                    "could not delete stack for re-creation",
                    status=DELETE_FAILED,
                )
            if self._clock() - started > timeout:
                raise StackOperationTimeout(
                    stack.stack_name, stack.account_id, stack.region, timeout,
                    status.lifecycle_status,
                )

    def _transition(self, stack: BaseStackDeployment, state: DeploymentState) -> None:
        logger.debug(f"{stack.label} -> {state.value}")

    def _emit(
        self,
        stack: BaseStackDeployment,
        status: ProgressStatus,
        completed: int,
        total: int,
        latest_resource_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
    ) -> None:
        self.progress.emit(
            ProgressEvent(
                stack_name=stack.stack_name,
                account_id=stack.account_id,
                region=stack.region,
                completed_resource_count=completed,
                total_resource_count=total,
                status=status,
                latest_resource_id=latest_resource_id,
                failure_reason=failure_reason,
            )
        )

    # -------------------------------------------------------------------------
    # Preview
    # -------------------------------------------------------------------------

    async def preview(
        self,
        stack: BaseStackDeployment,
        template_body: str,
        credentials: Optional[AssumedCredentials] = None,
    ) -> StackPreview:
        """List the resource changes a deployment would make.

        Stacks that do not exist yet are reported as "will be created"
        without a change set: a CREATE-type change set leaves the stack in
        REVIEW_IN_PROGRESS, which blocks the real deployment.
        """
        current = await self.prober.status(stack.stack_name, credentials, stack.region)
        if not current.exists or current.lifecycle_status == RECREATE_STATUS:
            return StackPreview(
                stack_name=stack.stack_name,
                account_id=stack.account_id,
                region=stack.region,
                will_create=True,
            )

        cfn = self.clients.client("cloudformation", credentials, stack.region)
        change_set_name = f"{self.settings.stack_name_prefix}-preview-{int(time.time())}"

        await call_aws(
            cfn.create_change_set,
            StackName=stack.stack_name,
            ChangeSetName=change_set_name,
            ChangeSetType="UPDATE",
            TemplateBody=template_body,
            Capabilities=CAPABILITIES,
        )

        try:
            changes = await self._read_change_set(stack, cfn, change_set_name)
        finally:
            await self._discard_change_set(cfn, stack.stack_name, change_set_name)

        return StackPreview(
            stack_name=stack.stack_name,
            account_id=stack.account_id,
            region=stack.region,
            changes=changes,
        )

    async def _read_change_set(
        self, stack: BaseStackDeployment, cfn: Any, change_set_name: str
    ) -> list[ResourceChange]:
        timeout = self.settings.change_set_timeout_seconds
        started = self._clock()

        while True:
            response = await call_aws(
                cfn.describe_change_set, StackName=stack.stack_name, ChangeSetName=change_set_name
            )
            status = response.get("Status")
            if status == CHANGE_SET_READY:
                break
            if status == CHANGE_SET_FAILED:
                reason = response.get("StatusReason") or "change set failed"
                if any(marker in reason for marker in EMPTY_CHANGE_SET_MARKERS):
                    return []
                raise StackOperationFailure(
                    stack.stack_name, stack.account_id, stack.region, reason, status=status
                )
            if self._clock() - started > timeout:
                raise StackOperationTimeout(
                    stack.stack_name, stack.account_id, stack.region, timeout, status
                )
            await self._sleep(self.settings.poll_interval_seconds)

        changes = _parse_changes(response.get("Changes") or [])
        next_token = response.get("NextToken")
        while next_token:
            response = await call_aws(
                cfn.describe_change_set,
                StackName=stack.stack_name,
                ChangeSetName=change_set_name,
                NextToken=next_token,
            )
            changes.extend(_parse_changes(response.get("Changes") or []))
            next_token = response.get("NextToken")
        return changes

    async def _discard_change_set(self, cfn: Any, stack_name: str, change_set_name: str) -> None:
        try:
            await call_aws(cfn.delete_change_set, StackName=stack_name, ChangeSetName=change_set_name)
        except (ClientError, BotoCoreError) as e:
            logger.debug(f"Could not delete change set {change_set_name} for {stack_name}: {e}")


def _parse_changes(raw_changes: list[dict[str, Any]]) -> list[ResourceChange]:
    changes = []
    for change in raw_changes:
        rc = change.get("ResourceChange") or {}
        try:
            action = ChangeAction(rc.get("Action", ""))
        except ValueError:
            logger.debug(f"Skipping change with unknown action: {rc.get('Action')}")
            continue
        changes.append(
            ResourceChange(
                action=action,
                logical_id=rc.get("LogicalResourceId", ""),
                resource_type=rc.get("ResourceType", ""),
                physical_id=rc.get("PhysicalResourceId"),
                replacement=rc.get("Replacement"),
            )
        )
    return changes
