"""Tests for the stack deployment state machine and change previews."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from stack_bootstrap.aws.deployer import (
    CAPABILITIES,
    EventTracker,
    StackDeployer,
    count_template_resources,
)
from stack_bootstrap.core.contracts import (
    AccountStackDeployment,
    ChangeAction,
    ProgressStatus,
    StackAction,
    StackStatus,
)
from stack_bootstrap.core.errors import StackOperationFailure, StackOperationTimeout
from stack_bootstrap.core.progress import ProgressRegistry

from fakes import STAGE_ACCOUNT, client_error, stack_event

TEMPLATE = json.dumps({
    "Resources": {
        "OidcProvider": {"Type": "AWS::IAM::OIDCProvider"},
        "DeployRole": {"Type": "AWS::IAM::Role"},
    }
})

MISSING = StackStatus(exists=False)


def _status(lifecycle_status: str) -> StackStatus:
    return StackStatus(exists=True, lifecycle_status=lifecycle_status, stack_id="arn:stack")


def _stack(action: StackAction = StackAction.CREATE) -> AccountStackDeployment:
    return AccountStackDeployment(
        stack_name="DevRamps-Account-Bootstrap",
        account_id=STAGE_ACCOUNT,
        region="us-west-2",
        action=action,
    )


def _deployer(fake_clients, settings, statuses, progress=None, clock=None) -> StackDeployer:
    prober = MagicMock()
    prober.status = AsyncMock(side_effect=statuses)
    return StackDeployer(
        fake_clients,
        settings,
        progress=progress or ProgressRegistry(),
        prober=prober,
        sleep=AsyncMock(),
        clock=clock or (lambda: 0.0),
    )


def _latest(registry: ProgressRegistry):
    stack = _stack()
    return registry.get(stack.stack_name, stack.account_id, stack.region)


# =============================================================================
# Event tracking
# =============================================================================


def test_event_tracker_stops_at_baseline() -> None:
    tracker = EventTracker(stack_name="s", baseline_event_id="e1")
    events = [
        stack_event("e3", "Role", "UPDATE_COMPLETE"),
        stack_event("e2", "Role", "UPDATE_IN_PROGRESS"),
        stack_event("e1", "Bucket", "CREATE_COMPLETE"),
    ]

    fresh = tracker.new_events(events)

    assert [event["EventId"] for event in fresh] == ["e2", "e3"]


def test_event_tracker_without_baseline_skips_older_events() -> None:
    started = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    tracker = EventTracker(stack_name="s", started_at=started)
    events = [
        stack_event("e3", "Role", "UPDATE_COMPLETE", timestamp=started + timedelta(seconds=30)),
        stack_event("e2", "Role", "UPDATE_IN_PROGRESS", timestamp=started + timedelta(seconds=5)),
        stack_event("e1", "Bucket", "CREATE_FAILED", "Access Denied", timestamp=started - timedelta(days=3)),
    ]

    fresh = tracker.new_events(events)

    assert [event["EventId"] for event in fresh] == ["e2", "e3"]


def test_event_tracker_counts_completed_resources() -> None:
    tracker = EventTracker(stack_name="s")
    for event in [
        stack_event("e1", "s", "CREATE_IN_PROGRESS"),
        stack_event("e2", "Role", "CREATE_COMPLETE"),
        stack_event("e3", "Role", "CREATE_COMPLETE"),
        stack_event("e4", "Bucket", "CREATE_FAILED", "Access Denied"),
        stack_event("e5", "Policy", "UPDATE_ROLLBACK_COMPLETE"),
        stack_event("e6", "s", "CREATE_COMPLETE"),
    ]:
        tracker.record(event)

    assert tracker.completed_count == 1
    assert tracker.failure_reason == "Access Denied"
    assert tracker.failure_resource_id == "Bucket"


@pytest.mark.parametrize(
    "body, expected",
    [
        (TEMPLATE, 2),
        ("Resources:\n  Bucket:\n    Type: AWS::S3::Bucket\n", 1),
        ("{}", 0),
        ("- not: a template", 0),
        ("{unbalanced", 0),
        (
            "Resources:\n"
            "  Role:\n"
            "    Type: AWS::IAM::Role\n"
            "    Properties:\n"
            "      RoleName: !Sub '${AWS::StackName}-role'\n"
            "      Path: !Ref RolePath\n"
            "      Tags: !If [IsProd, [{Key: env, Value: prod}], !Ref AWS::NoValue]\n"
            "  Bucket:\n"
            "    Type: AWS::S3::Bucket\n"
            "    Properties:\n"
            "      BucketName: !GetAtt Role.Arn\n",
            2,
        ),
    ],
)
def test_count_template_resources(body: str, expected: int) -> None:
    assert count_template_resources(body) == expected


# =============================================================================
# Create / update
# =============================================================================


@pytest.mark.asyncio
async def test_create_succeeds_after_polling(fake_clients, settings) -> None:
    cfn = fake_clients["cloudformation"]
    cfn.describe_stack_events.side_effect = [
        {"StackEvents": [stack_event("e1", "OidcProvider", "CREATE_IN_PROGRESS")]},
        {"StackEvents": [
            stack_event("e2", "OidcProvider", "CREATE_COMPLETE"),
            stack_event("e1", "OidcProvider", "CREATE_IN_PROGRESS"),
        ]},
        {"StackEvents": [
            stack_event("e4", "DevRamps-Account-Bootstrap", "CREATE_COMPLETE"),
            stack_event("e3", "DeployRole", "CREATE_COMPLETE"),
            stack_event("e2", "OidcProvider", "CREATE_COMPLETE"),
            stack_event("e1", "OidcProvider", "CREATE_IN_PROGRESS"),
        ]},
    ]
    registry = ProgressRegistry()
    deployer = _deployer(
        fake_clients,
        settings,
        [MISSING, _status("CREATE_IN_PROGRESS"), _status("CREATE_IN_PROGRESS"), _status("CREATE_COMPLETE")],
        progress=registry,
    )

    outcome = await deployer.deploy(_stack(), TEMPLATE, None)

    assert outcome.success is True
    assert outcome.final_status == "CREATE_COMPLETE"
    assert outcome.completed_resources == 2
    assert outcome.poll_count == 3
    create = cfn.create_stack.call_args.kwargs
    assert create["StackName"] == "DevRamps-Account-Bootstrap"
    assert create["Capabilities"] == CAPABILITIES
    assert {"Key": "CreatedBy", "Value": "DevRamps"} in create["Tags"]
    cfn.update_stack.assert_not_called()

    event = _latest(registry)
    assert event.status == ProgressStatus.COMPLETE
    assert event.completed_resource_count == 2
    assert event.total_resource_count == 2


@pytest.mark.asyncio
async def test_rollback_without_resource_reason_reports_status(fake_clients, settings) -> None:
    fake_clients["cloudformation"].describe_stack_events.return_value = {"StackEvents": []}
    deployer = _deployer(
        fake_clients, settings, [MISSING, _status("CREATE_IN_PROGRESS"), _status("ROLLBACK_COMPLETE")]
    )

    with pytest.raises(StackOperationFailure) as exc_info:
        await deployer.deploy(_stack(), TEMPLATE, None)

    error = exc_info.value
    assert error.status == "ROLLBACK_COMPLETE"
    assert error.reason == "ROLLBACK_COMPLETE"
    assert error.account_id == STAGE_ACCOUNT
    assert error.region == "us-west-2"


@pytest.mark.asyncio
async def test_failure_prefers_resource_reason(fake_clients, settings) -> None:
    fake_clients["cloudformation"].describe_stack_events.return_value = {
        "StackEvents": [
            stack_event("e2", "DeployRole", "CREATE_FAILED", "Role name already exists"),
            stack_event("e1", "DeployRole", "CREATE_IN_PROGRESS"),
        ]
    }
    registry = ProgressRegistry()
    deployer = _deployer(fake_clients, settings, [MISSING, _status("ROLLBACK_COMPLETE")], progress=registry)

    with pytest.raises(StackOperationFailure) as exc_info:
        await deployer.deploy(_stack(), TEMPLATE, None)

    assert exc_info.value.reason == "DeployRole: Role name already exists"
    assert exc_info.value.resource_id == "DeployRole"
    assert _latest(registry).status == ProgressStatus.FAILED


@pytest.mark.asyncio
async def test_update_without_changes_succeeds_without_polling(fake_clients, settings) -> None:
    cfn = fake_clients["cloudformation"]
    cfn.describe_stack_events.return_value = {"StackEvents": [stack_event("e0", "DeployRole", "CREATE_COMPLETE")]}
    cfn.update_stack.side_effect = client_error(
        "ValidationError", "No updates are to be performed.", "UpdateStack"
    )
    deployer = _deployer(fake_clients, settings, [_status("UPDATE_COMPLETE")])

    outcome = await deployer.deploy(_stack(StackAction.UPDATE), TEMPLATE, None)

    assert outcome.success is True
    assert outcome.poll_count == 0
    deployer._sleep.assert_not_awaited()
    cfn.create_stack.assert_not_called()


@pytest.mark.asyncio
async def test_update_ignores_events_from_earlier_operations(fake_clients, settings) -> None:
    cfn = fake_clients["cloudformation"]
    old = stack_event("e0", "OidcProvider", "CREATE_COMPLETE")
    cfn.describe_stack_events.side_effect = [
        {"StackEvents": [old]},
        {"StackEvents": [stack_event("e1", "DeployRole", "UPDATE_COMPLETE"), old]},
    ]
    deployer = _deployer(fake_clients, settings, [_status("CREATE_COMPLETE"), _status("UPDATE_COMPLETE")])

    outcome = await deployer.deploy(_stack(StackAction.UPDATE), TEMPLATE, None)

    assert outcome.success is True
    assert outcome.completed_resources == 1
    assert outcome.poll_count == 1
    cfn.update_stack.assert_called_once()


@pytest.mark.asyncio
async def test_update_without_baseline_ignores_earlier_failures(fake_clients, settings) -> None:
    cfn = fake_clients["cloudformation"]
    old_failure = stack_event(
        "e0", "DeployRole", "CREATE_FAILED", "Role name already exists",
        timestamp=datetime(2020, 1, 1, tzinfo=timezone.utc),
    )
    cfn.describe_stack_events.side_effect = [
        client_error("Throttling", "Rate exceeded", "DescribeStackEvents"),
        {"StackEvents": [old_failure]},
    ]
    deployer = _deployer(
        fake_clients, settings, [_status("UPDATE_COMPLETE"), _status("UPDATE_ROLLBACK_COMPLETE")]
    )

    with pytest.raises(StackOperationFailure) as exc_info:
        await deployer.deploy(_stack(StackAction.UPDATE), TEMPLATE, None)

    assert exc_info.value.reason == "UPDATE_ROLLBACK_COMPLETE"
    assert exc_info.value.resource_id is None


@pytest.mark.asyncio
async def test_rejected_submission_fails(fake_clients, settings) -> None:
    fake_clients["cloudformation"].create_stack.side_effect = client_error(
        "InsufficientCapabilitiesException", "Requires capabilities", "CreateStack"
    )
    deployer = _deployer(fake_clients, settings, [MISSING])

    with pytest.raises(StackOperationFailure) as exc_info:
        await deployer.deploy(_stack(), TEMPLATE, None)

    assert exc_info.value.reason == "Requires capabilities"


@pytest.mark.asyncio
async def test_timeout_fails_only_with_timeout_error(fake_clients, settings) -> None:
    fake_clients["cloudformation"].describe_stack_events.return_value = {"StackEvents": []}
    ticks = iter([0.0, 30.0, 61.0])
    registry = ProgressRegistry()
    deployer = _deployer(
        fake_clients,
        settings,
        [MISSING, _status("CREATE_IN_PROGRESS"), _status("CREATE_IN_PROGRESS")],
        progress=registry,
        clock=lambda: next(ticks),
    )

    with pytest.raises(StackOperationTimeout) as exc_info:
        await deployer.deploy(_stack(), TEMPLATE, None)

    assert exc_info.value.timeout_seconds == settings.stack_timeout_seconds
    assert exc_info.value.last_status == "CREATE_IN_PROGRESS"
    assert _latest(registry).status == ProgressStatus.FAILED


@pytest.mark.asyncio
async def test_rolled_back_stack_is_recreated(fake_clients, settings) -> None:
    cfn = fake_clients["cloudformation"]
    cfn.describe_stack_events.return_value = {"StackEvents": []}
    deployer = _deployer(
        fake_clients,
        settings,
        [_status("ROLLBACK_COMPLETE"), _status("DELETE_IN_PROGRESS"), MISSING, _status("CREATE_COMPLETE")],
    )

    outcome = await deployer.deploy(_stack(StackAction.UPDATE), TEMPLATE, None)

    assert outcome.success is True
    cfn.delete_stack.assert_called_once_with(StackName="DevRamps-Account-Bootstrap")
    cfn.create_stack.assert_called_once()
    cfn.update_stack.assert_not_called()


@pytest.mark.asyncio
async def test_failed_delete_before_recreate(fake_clients, settings) -> None:
    deployer = _deployer(fake_clients, settings, [_status("ROLLBACK_COMPLETE"), _status("DELETE_FAILED")])

    with pytest.raises(StackOperationFailure) as exc_info:
        await deployer.deploy(_stack(), TEMPLATE, None)

    assert exc_info.value.status == "DELETE_FAILED"
    fake_clients["cloudformation"].create_stack.assert_not_called()


# =============================================================================
# Preview
# =============================================================================


@pytest.mark.asyncio
async def test_preview_of_new_stack_skips_change_set(fake_clients, settings) -> None:
    deployer = _deployer(fake_clients, settings, [MISSING])

    preview = await deployer.preview(_stack(), TEMPLATE, None)

    assert preview.will_create is True
    assert preview.has_changes is True
    fake_clients["cloudformation"].create_change_set.assert_not_called()


@pytest.mark.asyncio
async def test_preview_lists_changes_and_discards_change_set(fake_clients, settings) -> None:
    cfn = fake_clients["cloudformation"]
    cfn.describe_change_set.side_effect = [
        {"Status": "CREATE_PENDING"},
        {
            "Status": "CREATE_COMPLETE",
            "Changes": [
                {"ResourceChange": {
                    "Action": "Modify",
                    "LogicalResourceId": "DeployRole",
                    "ResourceType": "AWS::IAM::Role",
                    "PhysicalResourceId": "role-1",
                    "Replacement": "False",
                }},
            ],
            "NextToken": "page-2",
        },
        {
            "Status": "CREATE_COMPLETE",
            "Changes": [
                {"ResourceChange": {
                    "Action": "Add", "LogicalResourceId": "Policy", "ResourceType": "AWS::IAM::Policy",
                }},
            ],
        },
    ]
    deployer = _deployer(fake_clients, settings, [_status("UPDATE_COMPLETE")])

    preview = await deployer.preview(_stack(StackAction.UPDATE), TEMPLATE, None)

    assert [(c.action, c.logical_id) for c in preview.changes] == [
        (ChangeAction.MODIFY, "DeployRole"),
        (ChangeAction.ADD, "Policy"),
    ]
    assert cfn.create_change_set.call_args.kwargs["ChangeSetType"] == "UPDATE"
    cfn.delete_change_set.assert_called_once()


@pytest.mark.asyncio
async def test_preview_without_changes(fake_clients, settings) -> None:
    cfn = fake_clients["cloudformation"]
    cfn.describe_change_set.return_value = {
        "Status": "FAILED",
        "StatusReason": "The submitted information didn't contain changes. Submit different information.",
    }
    deployer = _deployer(fake_clients, settings, [_status("UPDATE_COMPLETE")])

    preview = await deployer.preview(_stack(StackAction.UPDATE), TEMPLATE, None)

    assert preview.changes == []
    assert preview.has_changes is False
    cfn.delete_change_set.assert_called_once()


@pytest.mark.asyncio
async def test_preview_cleanup_failure_is_swallowed(fake_clients, settings) -> None:
    cfn = fake_clients["cloudformation"]
    cfn.describe_change_set.return_value = {"Status": "CREATE_COMPLETE", "Changes": []}
    cfn.delete_change_set.side_effect = client_error("AccessDenied", "no", "DeleteChangeSet")
    deployer = _deployer(fake_clients, settings, [_status("UPDATE_COMPLETE")])

    preview = await deployer.preview(_stack(StackAction.UPDATE), TEMPLATE, None)

    assert preview.changes == []


@pytest.mark.asyncio
async def test_preview_failure_still_discards_change_set(fake_clients, settings) -> None:
    cfn = fake_clients["cloudformation"]
    cfn.describe_change_set.return_value = {"Status": "FAILED", "StatusReason": "Template format error"}
    deployer = _deployer(fake_clients, settings, [_status("UPDATE_COMPLETE")])

    with pytest.raises(StackOperationFailure):
        await deployer.preview(_stack(StackAction.UPDATE), TEMPLATE, None)

    cfn.delete_change_set.assert_called_once()
