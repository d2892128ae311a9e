"""Merge strategies for reconciling deployed state with desired state."""

from typing import Optional

from stack_bootstrap.config import Settings, get_settings
from stack_bootstrap.merge.bucket_policy import STRATEGY_ID as BUCKET_POLICY_STRATEGY_ID
from stack_bootstrap.merge.bucket_policy import bucket_policy_strategy
from stack_bootstrap.merge.strategy import (
    ExtractionScope,
    MergeStrategy,
    MergeStrategyRegistry,
)


def default_registry(settings: Optional[Settings] = None) -> MergeStrategyRegistry:
    """Create a registry holding the built-in strategies."""
    settings = settings or get_settings()
    return MergeStrategyRegistry(
        [bucket_policy_strategy(settings.bucket_policy_account_warning_threshold)]
    )


__all__ = [
    "BUCKET_POLICY_STRATEGY_ID",
    "ExtractionScope",
    "MergeStrategy",
    "MergeStrategyRegistry",
    "bucket_policy_strategy",
    "default_registry",
]
