"""Contract definitions (Pydantic models) for the deployment orchestration engine.

This module defines the data exchanged between the engine's components:
- Pipeline records and auth context consumed from external collaborators
- Stack deployment descriptors and the deployment plan
- Merge strategy inputs and outputs
- Per-stack outcomes, progress events, and the run summary
"""

import re
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Shared Types
# =============================================================================


class StackKind(str, Enum):
    """Kinds of stacks the engine deploys."""

    ORG = "Org"
    PIPELINE = "Pipeline"
    ACCOUNT = "Account"
    STAGE = "Stage"
    IMPORT = "Import"


class StackAction(str, Enum):
    """Action chosen for a stack at planning time."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"


class ArtifactType(str, Enum):
    """Supported pipeline artifact types."""

    DOCKER_BUILD = "DEVRAMPS:DOCKER:BUILD"
    DOCKER_IMPORT = "DEVRAMPS:DOCKER:IMPORT"
    BUNDLE_BUILD = "DEVRAMPS:BUNDLE:BUILD"
    BUNDLE_IMPORT = "DEVRAMPS:BUNDLE:IMPORT"


class ProgressStatus(str, Enum):
    """Lifecycle of a stack as seen by progress subscribers."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    ROLLBACK = "rollback"


class ChangeAction(str, Enum):
    """Per-resource action reported by a change preview."""

    ADD = "Add"
    MODIFY = "Modify"
    REMOVE = "Remove"
    IMPORT = "Import"
    DYNAMIC = "Dynamic"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# =============================================================================
# External Inputs (parsed pipelines, auth context)
# =============================================================================


ECR_ACCOUNT_PATTERN = re.compile(r"^(\d+)\.dkr\.ecr\.")


class StageTarget(_Frozen):
    """A pipeline stage and the account/region it deploys into."""

    name: str
    account_id: str
    region: str


class PipelineStep(_Frozen):
    """A pipeline step, carried through to stage templates."""

    name: str
    type: str
    params: dict[str, Any] = Field(default_factory=dict)


class Artifact(_Frozen):
    """A build or import artifact declared by a pipeline."""

    name: str
    type: ArtifactType
    id: Optional[str] = None
    per_stage: bool = False
    params: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_import(self) -> bool:
        return self.type in (ArtifactType.DOCKER_IMPORT, ArtifactType.BUNDLE_IMPORT)

    def import_source_account(self) -> Optional[str]:
        """Account the artifact is imported from, if it is an import artifact."""
        if self.type == ArtifactType.DOCKER_IMPORT:
            url = self.params.get("source_image_url")
            if isinstance(url, str):
                match = ECR_ACCOUNT_PATTERN.match(url)
                if match:
                    return match.group(1)
            return None
        if self.type == ArtifactType.BUNDLE_IMPORT:
            account = self.params.get("source_account")
            if isinstance(account, str) and account:
                return account
        return None


class PipelineArtifacts(_Frozen):
    """Artifacts of a pipeline, split by family."""

    docker: list[Artifact] = Field(default_factory=list)
    bundle: list[Artifact] = Field(default_factory=list)

    def shared_only(self) -> "PipelineArtifacts":
        """Artifacts that get a root resource in the pipeline stack."""
        return PipelineArtifacts(
            docker=[a for a in self.docker if not a.per_stage],
            bundle=[a for a in self.bundle if not a.per_stage],
        )

    def import_source_accounts(self) -> list[str]:
        """Distinct external accounts referenced by import artifacts, in declaration order."""
        accounts: list[str] = []
        for artifact in [*self.docker, *self.bundle]:
            account = artifact.import_source_account()
            if account and account not in accounts:
                accounts.append(account)
        return accounts


class ParsedPipeline(_Frozen):
    """A pipeline definition as handed over by the pipeline parser."""

    slug: str
    target_account_ids: list[str] = Field(default_factory=list)
    stages: list[StageTarget] = Field(default_factory=list)
    steps: list[PipelineStep] = Field(default_factory=list)
    artifacts: PipelineArtifacts = Field(default_factory=PipelineArtifacts)
    additional_policies: list[dict[str, Any]] = Field(default_factory=list)


class AuthContext(_Frozen):
    """Organization and CI/CD account identifiers from authentication."""

    org_slug: str
    cicd_account_id: str
    cicd_region: str


class CallerIdentity(_Frozen):
    """The ambient identity the engine runs as."""

    account_id: str
    arn: str
    user_id: str


# =============================================================================
# Credentials and Stack State
# =============================================================================


class AssumedCredentials(_Frozen):
    """Short-lived credentials for a cross-account role.

    Never cached beyond a single deployment operation and never persisted.
    """

    access_key: str
    secret: str = Field(repr=False)
    session_token: Optional[str] = Field(default=None, repr=False)
    expiration: Optional[datetime] = None
    account_id: str
    role_arn: str


class StackStatus(_Frozen):
    """Result of probing a stack."""

    exists: bool
    lifecycle_status: Optional[str] = None
    stack_id: Optional[str] = None


class StackResource(_Frozen):
    """A deployed resource inside an existing stack."""

    type: str
    physical_id: Optional[str] = None
    status: Optional[str] = None


class ExistingStackResources(_Frozen):
    """Snapshot of a previously deployed stack."""

    stack_name: str
    account_id: str
    region: str
    resources: dict[str, StackResource] = Field(default_factory=dict)
    outputs: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Stack Deployment Descriptors
# =============================================================================


class BaseStackDeployment(_Frozen):
    """Fields shared by every stack descriptor."""

    stack_kind: StackKind
    stack_name: str
    account_id: str
    region: str
    action: StackAction

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.stack_name, self.account_id, self.region)

    @property
    def label(self) -> str:
        return f"{self.stack_name} ({self.account_id}/{self.region})"


class OrgStackDeployment(BaseStackDeployment):
    """One per organization in the CI/CD account."""

    stack_kind: Literal[StackKind.ORG] = StackKind.ORG
    org_slug: str
    target_account_ids: list[str] = Field(default_factory=list)


class PipelineStackDeployment(BaseStackDeployment):
    """One per pipeline in the CI/CD account."""

    stack_kind: Literal[StackKind.PIPELINE] = StackKind.PIPELINE
    pipeline_slug: str
    docker_artifacts: list[Artifact] = Field(default_factory=list)
    bundle_artifacts: list[Artifact] = Field(default_factory=list)


class AccountStackDeployment(BaseStackDeployment):
    """One per distinct account; hosts the trust federation provider."""

    stack_kind: Literal[StackKind.ACCOUNT] = StackKind.ACCOUNT


class StageStackDeployment(BaseStackDeployment):
    """One per (pipeline, stage) pair in the stage's account/region."""

    stack_kind: Literal[StackKind.STAGE] = StackKind.STAGE
    pipeline_slug: str
    stage_name: str
    org_slug: str
    steps: list[PipelineStep] = Field(default_factory=list)
    additional_policies: list[dict[str, Any]] = Field(default_factory=list)
    docker_artifacts: list[Artifact] = Field(default_factory=list)
    bundle_artifacts: list[Artifact] = Field(default_factory=list)


class ImportStackDeployment(BaseStackDeployment):
    """One per (pipeline, external artifact-source account) pair."""

    stack_kind: Literal[StackKind.IMPORT] = StackKind.IMPORT
    pipeline_slug: str
    org_slug: str


class DeploymentPlan(_Frozen):
    """Every stack a bootstrap run must deploy.

    Account stacks form phase one and must all succeed before any other
    stack is deployed. The CI/CD account's Account stack is always first.
    """

    org_slug: str
    cicd_account_id: str
    cicd_region: str
    org_stack: OrgStackDeployment
    pipeline_stacks: list[PipelineStackDeployment] = Field(default_factory=list)
    account_stacks: list[AccountStackDeployment] = Field(default_factory=list)
    stage_stacks: list[StageStackDeployment] = Field(default_factory=list)
    import_stacks: list[ImportStackDeployment] = Field(default_factory=list)

    @property
    def phase_one(self) -> list[BaseStackDeployment]:
        return list(self.account_stacks)

    @property
    def phase_two(self) -> list[BaseStackDeployment]:
        return [self.org_stack, *self.pipeline_stacks, *self.stage_stacks, *self.import_stacks]

    @property
    def all_stacks(self) -> list[BaseStackDeployment]:
        return [*self.phase_one, *self.phase_two]

    @property
    def total_stacks(self) -> int:
        return len(self.all_stacks)


# =============================================================================
# Merge Strategy Contracts
# =============================================================================


class MergeContext(_Frozen):
    """Read-only input handed to merge strategies."""

    org_slug: str
    cicd_account_id: str
    cicd_region: str
    pipelines: list[ParsedPipeline] = Field(default_factory=list)


class MergeValidation(_Frozen):
    """Result of validating a merged result."""

    valid: bool
    errors: Optional[list[str]] = None
    warnings: Optional[list[str]] = None


class BucketPolicyData(_Frozen):
    """Accounts allowed to use the shared state bucket."""

    allowed_account_ids: list[str] = Field(default_factory=list)


# =============================================================================
# Deployment Outcomes and Progress
# =============================================================================


class StackOutcome(_Frozen):
    """Terminal result of deploying one stack."""

    stack_name: str
    stack_kind: Optional[StackKind] = None
    account_id: str
    region: str
    success: bool
    failure_reason: Optional[str] = None
    error_type: Optional[str] = None
    final_status: Optional[str] = None
    completed_resources: int = 0
    poll_count: int = 0


class ProgressEvent(_Frozen):
    """Structured progress update emitted while a stack deploys."""

    stack_name: str
    account_id: str
    region: str
    completed_resource_count: int = 0
    total_resource_count: int = 0
    status: ProgressStatus = ProgressStatus.PENDING
    latest_resource_id: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.stack_name, self.account_id, self.region)


class ResourceChange(_Frozen):
    """A prospective change listed by a change preview."""

    action: ChangeAction
    logical_id: str
    resource_type: str
    physical_id: Optional[str] = None
    replacement: Optional[str] = None


class StackPreview(_Frozen):
    """Outcome of previewing a stack deployment."""

    stack_name: str
    account_id: str
    region: str
    will_create: bool = False
    changes: list[ResourceChange] = Field(default_factory=list)
    error: Optional[str] = None

    @property
    def has_changes(self) -> bool:
        return self.will_create or bool(self.changes)


class DeploymentSummary(_Frozen):
    """Aggregated result of a phased deployment run."""

    outcomes: list[StackOutcome] = Field(default_factory=list)
    aborted: bool = False
    skipped_stacks: list[str] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)

    @property
    def success(self) -> bool:
        return not self.aborted and self.failed_count == 0

    @property
    def failures(self) -> list[StackOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]
