"""Phased concurrent executor.

Runs a ``DeploymentPlan`` in two strictly ordered phases:

1. Account stacks, all concurrently. Every account stack must succeed,
   otherwise the run aborts before phase two.
2. Org, Pipeline, Stage and Import stacks, all concurrently.

Within a phase each stack's outcome is collected on its own; one failing
stack never cancels its siblings.
"""

import asyncio
import logging
from typing import Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from stack_bootstrap.aws.cloudformation import read_existing_stack
from stack_bootstrap.aws.credentials import CredentialResolver
from stack_bootstrap.aws.deployer import StackDeployer
from stack_bootstrap.aws.session import AwsClientFactory
from stack_bootstrap.core.contracts import (
    AssumedCredentials,
    BaseStackDeployment,
    BucketPolicyData,
    DeploymentPlan,
    DeploymentSummary,
    MergeContext,
    OrgStackDeployment,
    ParsedPipeline,
    ProgressEvent,
    ProgressStatus,
    StackOutcome,
    StackPreview,
)
from stack_bootstrap.core.errors import BootstrapError, StackOperationFailure, StackOperationTimeout
from stack_bootstrap.core.progress import ProgressSink
from stack_bootstrap.core.templates import TemplateProvider
from stack_bootstrap.merge import BUCKET_POLICY_STRATEGY_ID, ExtractionScope, MergeStrategyRegistry

logger = logging.getLogger(__name__)

# Expected failure kinds; anything else is logged with a traceback
EXPECTED_ERRORS = (BootstrapError, ClientError, BotoCoreError, OSError)


class DeploymentExecutor:
    """Deploys every stack of a plan, account stacks first."""

    def __init__(
        self,
        deployer: StackDeployer,
        resolver: CredentialResolver,
        registry: MergeStrategyRegistry,
        templates: TemplateProvider,
        clients: AwsClientFactory,
        progress: Optional[ProgressSink] = None,
    ):
        self.deployer = deployer
        self.resolver = resolver
        self.registry = registry
        self.templates = templates
        self.clients = clients
        self.progress = progress or deployer.progress

    async def execute(
        self,
        plan: DeploymentPlan,
        pipelines: Sequence[ParsedPipeline],
        current_account_id: str,
        role_name: Optional[str] = None,
    ) -> DeploymentSummary:
        """Run both phases and aggregate the per-stack outcomes."""
        context = _merge_context(plan, pipelines)

        logger.info(f"Phase 1: deploying {len(plan.phase_one)} account stack(s)")
        phase_one = await self._run_phase(plan.phase_one, context, current_account_id, role_name)

        failed = [outcome for outcome in phase_one if not outcome.success]
        if failed:
            skipped = [stack.label for stack in plan.phase_two]
            logger.error(
                f"{len(failed)} account stack(s) failed, skipping {len(skipped)} remaining stack(s)"
            )
            return DeploymentSummary(outcomes=phase_one, aborted=True, skipped_stacks=skipped)

        logger.info(f"Phase 2: deploying {len(plan.phase_two)} org, pipeline, stage and import stack(s)")
        phase_two = await self._run_phase(plan.phase_two, context, current_account_id, role_name)

        summary = DeploymentSummary(outcomes=[*phase_one, *phase_two])
        logger.info(
            f"Deployment finished: {summary.success_count} succeeded, {summary.failed_count} failed"
        )
        return summary

    async def preview(
        self,
        plan: DeploymentPlan,
        pipelines: Sequence[ParsedPipeline],
        current_account_id: str,
        role_name: Optional[str] = None,
    ) -> list[StackPreview]:
        """Preview every stack of the plan without deploying anything.

        Previews are independent; a stack that cannot be previewed is
        reported with ``error`` set.
        """
        context = _merge_context(plan, pipelines)
        stacks = plan.all_stacks
        async with asyncio.TaskGroup() as group:
            tasks = [
                group.create_task(self._preview_isolated(stack, context, current_account_id, role_name))
                for stack in stacks
            ]
        return [task.result() for task in tasks]

    # -------------------------------------------------------------------------
    # Per-stack work
    # -------------------------------------------------------------------------

    async def _run_phase(
        self,
        stacks: Sequence[BaseStackDeployment],
        context: MergeContext,
        current_account_id: str,
        role_name: Optional[str],
    ) -> list[StackOutcome]:
        async with asyncio.TaskGroup() as group:
            tasks = [
                group.create_task(self._deploy_isolated(stack, context, current_account_id, role_name))
                for stack in stacks
            ]
        return [task.result() for task in tasks]

    async def _deploy_isolated(
        self,
        stack: BaseStackDeployment,
        context: MergeContext,
        current_account_id: str,
        role_name: Optional[str],
    ) -> StackOutcome:
        """Deploy one stack, turning any error into a failed outcome."""
        try:
            credentials = await self.resolver.resolve(stack.account_id, current_account_id, role_name)
            template_body = await self._render(stack, context, credentials)
            return await self.deployer.deploy(stack, template_body, credentials)
        except EXPECTED_ERRORS as e:
            logger.error(f"Stack {stack.label} failed: {e}")
            return self._failed(stack, e)
        except Exception as e:
            logger.exception(f"Unexpected error deploying {stack.label}")
            return self._failed(stack, e)

    async def _preview_isolated(
        self,
        stack: BaseStackDeployment,
        context: MergeContext,
        current_account_id: str,
        role_name: Optional[str],
    ) -> StackPreview:
        try:
            credentials = await self.resolver.resolve(stack.account_id, current_account_id, role_name)
            template_body = await self._render(stack, context, credentials)
            return await self.deployer.preview(stack, template_body, credentials)
        except EXPECTED_ERRORS as e:
            logger.warning(f"Could not preview {stack.label}: {e}")
            return self._preview_failed(stack, e)
        except Exception as e:
            logger.exception(f"Unexpected error previewing {stack.label}")
            return self._preview_failed(stack, e)

    async def _render(
        self,
        stack: BaseStackDeployment,
        context: MergeContext,
        credentials: Optional[AssumedCredentials],
    ) -> str:
        merged = None
        if isinstance(stack, OrgStackDeployment):
            merged = await self._reconcile_bucket_policy(stack, context, credentials)
        return self.templates.render(stack, merged)

    async def _reconcile_bucket_policy(
        self,
        stack: OrgStackDeployment,
        context: MergeContext,
        credentials: Optional[AssumedCredentials],
    ) -> BucketPolicyData:
        """Merge the live bucket allow-list with the accounts of this run."""
        existing = await read_existing_stack(
            self.clients, stack.stack_name, stack.account_id, stack.region, credentials
        )
        scope = ExtractionScope(self.clients, credentials, stack.region)
        merged = await self.registry.execute(BUCKET_POLICY_STRATEGY_ID, existing, context, scope)
        logger.debug(
            f"Bucket policy for {stack.stack_name} allows {len(merged.allowed_account_ids)} account(s)"
        )
        return merged

    def _preview_failed(self, stack: BaseStackDeployment, error: Exception) -> StackPreview:
        return StackPreview(
            stack_name=stack.stack_name,
            account_id=stack.account_id,
            region=stack.region,
            error=str(error) or type(error).__name__,
        )

    def _failed(self, stack: BaseStackDeployment, error: Exception) -> StackOutcome:
        final_status = None
        if isinstance(error, StackOperationFailure):
            final_status = error.status
        elif isinstance(error, StackOperationTimeout):
            final_status = error.last_status

        # The deployer reports its own failures; errors raised before it
        # ran still need a terminal event.
        if not isinstance(error, (StackOperationFailure, StackOperationTimeout)):
            self.progress.emit(
                ProgressEvent(
                    stack_name=stack.stack_name,
                    account_id=stack.account_id,
                    region=stack.region,
                    status=ProgressStatus.FAILED,
                    failure_reason=str(error),
                )
            )

        return StackOutcome(
            stack_name=stack.stack_name,
            stack_kind=stack.stack_kind,
            account_id=stack.account_id,
            region=stack.region,
            success=False,
            failure_reason=str(error),
            error_type=type(error).__name__,
            final_status=final_status,
        )


def _merge_context(plan: DeploymentPlan, pipelines: Sequence[ParsedPipeline]) -> MergeContext:
    return MergeContext(
        org_slug=plan.org_slug,
        cicd_account_id=plan.cicd_account_id,
        cicd_region=plan.cicd_region,
        pipelines=list(pipelines),
    )
