"""Deployment plan builder.

Derives every stack a bootstrap run needs from the parsed pipelines:

1. Org stack - one per org in the CI/CD account (trust scope: all target accounts)
2. Pipeline stacks - one per pipeline in the CI/CD account
3. Account stacks - one per distinct account, CI/CD account first
4. Stage stacks - one per (pipeline, stage) in the stage's account/region
5. Import stacks - one per (pipeline, external artifact-source account)

Each descriptor is probed to decide CREATE or UPDATE. A probe that fails
degrades to CREATE instead of aborting the plan.
"""

import asyncio
import logging
from typing import Any, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from stack_bootstrap import naming
from stack_bootstrap.aws.cloudformation import StackStatusProber
from stack_bootstrap.aws.credentials import CredentialResolver
from stack_bootstrap.config import Settings, get_settings
from stack_bootstrap.core.contracts import (
    AccountStackDeployment,
    AssumedCredentials,
    AuthContext,
    DeploymentPlan,
    ImportStackDeployment,
    OrgStackDeployment,
    ParsedPipeline,
    PipelineStackDeployment,
    StackAction,
    StageStackDeployment,
)
from stack_bootstrap.core.errors import RoleAssumptionFailure

logger = logging.getLogger(__name__)


class _AccountAccess:
    """Credentials per account for one planning pass.

    Concurrent probes against the same account share a single role
    assumption. A failed assumption is remembered as unavailable.
    """

    def __init__(
        self,
        resolver: CredentialResolver,
        current_account_id: str,
        role_name: Optional[str],
    ):
        self.resolver = resolver
        self.current_account_id = current_account_id
        self.role_name = role_name
        self._tasks: dict[str, asyncio.Task] = {}

    async def get(self, account_id: str) -> tuple[bool, Optional[AssumedCredentials]]:
        """Returns (available, credentials) for an account."""
        if account_id not in self._tasks:
            self._tasks[account_id] = asyncio.ensure_future(self._resolve(account_id))
        return await self._tasks[account_id]

    async def _resolve(self, account_id: str) -> tuple[bool, Optional[AssumedCredentials]]:
        try:
            credentials = await self.resolver.resolve(
                account_id, self.current_account_id, self.role_name
            )
        except RoleAssumptionFailure as e:
            logger.debug(f"Could not assume role in {account_id} for status check: {e}")
            return False, None
        return True, credentials


class PlanBuilder:
    """Builds a ``DeploymentPlan`` from parsed pipelines and auth context."""

    def __init__(
        self,
        resolver: CredentialResolver,
        prober: StackStatusProber,
        settings: Optional[Settings] = None,
    ):
        self.resolver = resolver
        self.prober = prober
        self.settings = settings or get_settings()

    async def build(
        self,
        pipelines: Sequence[ParsedPipeline],
        auth: AuthContext,
        current_account_id: str,
        role_name: Optional[str] = None,
    ) -> DeploymentPlan:
        """Build the full plan for all five stack kinds."""
        prefix = self.settings.stack_name_prefix
        org_slug, cicd_account_id, cicd_region = auth.org_slug, auth.cicd_account_id, auth.cicd_region
        access = _AccountAccess(self.resolver, current_account_id, role_name)

        # Descriptor fields without the action; probed together below
        org_draft: dict[str, Any] = {
            "stack_name": naming.org_stack_name(prefix, org_slug),
            "account_id": cicd_account_id,
            "region": cicd_region,
            "org_slug": org_slug,
            "target_account_ids": _unique(
                account_id for pipeline in pipelines for account_id in pipeline.target_account_ids
            ),
        }

        pipeline_drafts = []
        for pipeline in pipelines:
            shared = pipeline.artifacts.shared_only()
            pipeline_drafts.append({
                "stack_name": naming.pipeline_stack_name(prefix, pipeline.slug),
                "account_id": cicd_account_id,
                "region": cicd_region,
                "pipeline_slug": pipeline.slug,
                "docker_artifacts": shared.docker,
                "bundle_artifacts": shared.bundle,
            })

        import_sources = {
            pipeline.slug: pipeline.artifacts.import_source_accounts() for pipeline in pipelines
        }

        # The CI/CD account hosts the trust provider everything else federates
        # against, so its Account stack comes first.
        account_ids = _unique([
            cicd_account_id,
            *(stage.account_id for pipeline in pipelines for stage in pipeline.stages),
            *(account_id for sources in import_sources.values() for account_id in sources),
        ])
        account_stack_name = naming.account_stack_name(prefix)
        account_drafts = [
            {"stack_name": account_stack_name, "account_id": account_id, "region": cicd_region}
            for account_id in account_ids
        ]

        stage_drafts = []
        for pipeline in pipelines:
            for stage in pipeline.stages:
                stage_drafts.append({
                    "stack_name": naming.stage_stack_name(prefix, pipeline.slug, stage.name),
                    "account_id": stage.account_id,
                    "region": stage.region,
                    "pipeline_slug": pipeline.slug,
                    "stage_name": stage.name,
                    "org_slug": org_slug,
                    "steps": pipeline.steps,
                    "additional_policies": pipeline.additional_policies,
                    "docker_artifacts": pipeline.artifacts.docker,
                    "bundle_artifacts": pipeline.artifacts.bundle,
                })

        import_drafts = []
        for pipeline in pipelines:
            for source_account_id in import_sources[pipeline.slug]:
                import_drafts.append({
                    "stack_name": naming.import_stack_name(prefix, pipeline.slug),
                    "account_id": source_account_id,
                    # IAM is global; deploy next to the CI/CD stacks
                    "region": cicd_region,
                    "pipeline_slug": pipeline.slug,
                    "org_slug": org_slug,
                })

        drafts = [org_draft, *pipeline_drafts, *account_drafts, *stage_drafts, *import_drafts]
        actions = await asyncio.gather(*(self._determine_action(draft, access) for draft in drafts))
        for draft, action in zip(drafts, actions):
            draft["action"] = action

        plan = DeploymentPlan(
            org_slug=org_slug,
            cicd_account_id=cicd_account_id,
            cicd_region=cicd_region,
            org_stack=OrgStackDeployment(**org_draft),
            pipeline_stacks=[PipelineStackDeployment(**d) for d in pipeline_drafts],
            account_stacks=[AccountStackDeployment(**d) for d in account_drafts],
            stage_stacks=[StageStackDeployment(**d) for d in stage_drafts],
            import_stacks=[ImportStackDeployment(**d) for d in import_drafts],
        )
        logger.info(
            f"Planned {plan.total_stacks} stack(s): {len(plan.account_stacks)} account, "
            f"{len(plan.pipeline_stacks)} pipeline, {len(plan.stage_stacks)} stage, "
            f"{len(plan.import_stacks)} import, 1 org"
        )
        return plan

    async def _determine_action(self, draft: dict[str, Any], access: _AccountAccess) -> StackAction:
        """Probe a stack; any failure to find out defaults to CREATE."""
        stack_name, account_id, region = draft["stack_name"], draft["account_id"], draft["region"]

        available, credentials = await access.get(account_id)
        if not available:
            logger.warning(
                f"Could not access account {account_id} to check {stack_name}, assuming CREATE"
            )
            return StackAction.CREATE

        try:
            status = await self.prober.status(stack_name, credentials, region)
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                f"Status check failed for {stack_name} in {account_id}/{region}, assuming CREATE: {e}"
            )
            return StackAction.CREATE

        return StackAction.UPDATE if status.exists else StackAction.CREATE


def _unique(values) -> list[str]:
    seen: list[str] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return seen
