"""Shared fixtures for the stack bootstrap tests."""

import pytest

from stack_bootstrap.config import Settings
from stack_bootstrap.core.contracts import (
    Artifact,
    ArtifactType,
    AuthContext,
    ParsedPipeline,
    PipelineArtifacts,
    PipelineStep,
    StageTarget,
)

from fakes import CICD_ACCOUNT, PROD_ACCOUNT, SOURCE_ACCOUNT, STAGE_ACCOUNT, FakeClients


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment, with instant polling."""
    return Settings(
        _env_file=None,
        poll_interval_seconds=0,
        stack_timeout_seconds=60,
        change_set_timeout_seconds=60,
    )


@pytest.fixture
def fake_clients() -> FakeClients:
    return FakeClients()


@pytest.fixture
def auth() -> AuthContext:
    return AuthContext(org_slug="acme", cicd_account_id=CICD_ACCOUNT, cicd_region="us-east-1")


@pytest.fixture
def pipelines() -> list[ParsedPipeline]:
    """Two pipelines: one with an imported image, one sharing the staging account."""
    web = ParsedPipeline(
        slug="web",
        target_account_ids=[STAGE_ACCOUNT, PROD_ACCOUNT],
        stages=[
            StageTarget(name="staging", account_id=STAGE_ACCOUNT, region="us-west-2"),
            StageTarget(name="prod", account_id=PROD_ACCOUNT, region="us-east-1"),
        ],
        steps=[PipelineStep(name="deploy", type="DEVRAMPS:TERRAFORM:SYNTHESIZE")],
        artifacts=PipelineArtifacts(
            docker=[
                Artifact(name="api", type=ArtifactType.DOCKER_BUILD),
                Artifact(name="worker", type=ArtifactType.DOCKER_BUILD, per_stage=True),
                Artifact(
                    name="base",
                    type=ArtifactType.DOCKER_IMPORT,
                    params={
                        "source_image_url": f"{SOURCE_ACCOUNT}.dkr.ecr.us-east-1.amazonaws.com/base:latest"
                    },
                ),
            ],
        ),
    )
    batch = ParsedPipeline(
        slug="batch",
        target_account_ids=[STAGE_ACCOUNT],
        stages=[StageTarget(name="staging", account_id=STAGE_ACCOUNT, region="us-west-2")],
    )
    return [web, batch]
