"""Tests for progress reporting."""

from stack_bootstrap.core.contracts import AccountStackDeployment, ProgressEvent, ProgressStatus, StackAction
from stack_bootstrap.core.progress import FanOutProgressSink, ProgressRegistry

from fakes import CICD_ACCOUNT, STAGE_ACCOUNT


def _event(account_id: str, status: ProgressStatus, completed: int = 0) -> ProgressEvent:
    return ProgressEvent(
        stack_name="DevRamps-Account-Bootstrap",
        account_id=account_id,
        region="us-east-1",
        status=status,
        completed_resource_count=completed,
        total_resource_count=3,
    )


def test_registry_keeps_latest_event_per_stack() -> None:
    registry = ProgressRegistry()
    registry.register([
        AccountStackDeployment(
            stack_name="DevRamps-Account-Bootstrap", account_id=account_id, region="us-east-1",
            action=StackAction.CREATE,
        )
        for account_id in (CICD_ACCOUNT, STAGE_ACCOUNT)
    ])

    registry.emit(_event(STAGE_ACCOUNT, ProgressStatus.IN_PROGRESS, 1))
    registry.emit(_event(STAGE_ACCOUNT, ProgressStatus.COMPLETE, 3))

    snapshot = registry.snapshot()
    assert [event.account_id for event in snapshot] == [CICD_ACCOUNT, STAGE_ACCOUNT]
    assert snapshot[0].status == ProgressStatus.PENDING
    assert snapshot[1].status == ProgressStatus.COMPLETE
    assert snapshot[1].completed_resource_count == 3


def test_fan_out_reaches_every_sink() -> None:
    first, second = ProgressRegistry(), ProgressRegistry()

    FanOutProgressSink(first, second).emit(_event(CICD_ACCOUNT, ProgressStatus.FAILED))

    assert first.get("DevRamps-Account-Bootstrap", CICD_ACCOUNT, "us-east-1").status == ProgressStatus.FAILED
    assert second.snapshot() == first.snapshot()
