"""Extensible merge strategies.

Some resources must be reconciled with what is already deployed rather than
overwritten. The shared state bucket policy is the canonical case: its
allow-list has to keep every account granted by earlier runs, not only the
accounts named by the pipelines in the current run.

A strategy is a set of four functions registered under a stable id:

- ``extract_existing`` reads the current state from a deployed stack
- ``collect_new`` scans the merge context for desired state
- ``merge`` combines the two (``existing`` may be None)
- ``validate`` checks the result before it reaches template generation

Registries are owned by the caller and passed to the executor explicitly.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, Iterable, Optional, TypeVar

from botocore.exceptions import BotoCoreError, ClientError

from stack_bootstrap.aws.session import AwsClientFactory
from stack_bootstrap.core.contracts import (
    AssumedCredentials,
    ExistingStackResources,
    MergeContext,
    MergeValidation,
)
from stack_bootstrap.core.errors import MergeValidationFailure, UnknownMergeStrategy

logger = logging.getLogger(__name__)

TExisting = TypeVar("TExisting")
TNew = TypeVar("TNew")
TResult = TypeVar("TResult")


@dataclass(frozen=True)
class ExtractionScope:
    """Where a strategy may read existing state from."""

    clients: AwsClientFactory
    credentials: Optional[AssumedCredentials]
    region: str

    def client(self, service: str) -> Any:
        return self.clients.client(service, self.credentials, self.region)


def always_valid(result: Any) -> MergeValidation:
    """Default validation for strategies without business rules."""
    return MergeValidation(valid=True)


@dataclass(frozen=True)
class MergeStrategy(Generic[TExisting, TNew, TResult]):
    """A reconciliation algorithm described by its functions."""

    strategy_id: str
    display_name: str
    extract_existing: Callable[[ExistingStackResources, ExtractionScope], Awaitable[Optional[TExisting]]]
    collect_new: Callable[[MergeContext], TNew]
    merge: Callable[[Optional[TExisting], TNew], TResult]
    validate: Callable[[TResult], MergeValidation] = always_valid


class MergeStrategyRegistry:
    """Strategies available to one deployment run."""

    def __init__(self, strategies: Iterable[MergeStrategy] = ()):
        self._strategies: dict[str, MergeStrategy] = {}
        for strategy in strategies:
            self.register(strategy)

    def register(self, strategy: MergeStrategy) -> None:
        """Register a strategy, replacing any strategy with the same id."""
        if strategy.strategy_id in self._strategies:
            logger.warning(f"Overwriting existing merge strategy: {strategy.strategy_id}")
        self._strategies[strategy.strategy_id] = strategy

    def get(self, strategy_id: str) -> MergeStrategy:
        try:
            return self._strategies[strategy_id]
        except KeyError:
            raise UnknownMergeStrategy(strategy_id) from None

    def __contains__(self, strategy_id: object) -> bool:
        return strategy_id in self._strategies

    @property
    def strategy_ids(self) -> list[str]:
        return sorted(self._strategies)

    async def execute(
        self,
        strategy_id: str,
        existing_stack: Optional[ExistingStackResources],
        context: MergeContext,
        scope: ExtractionScope,
    ) -> Any:
        """Run extract, collect, merge, and validate for one strategy.

        Raises:
            UnknownMergeStrategy: No strategy is registered under the id.
            MergeCollectionFailure: New state contains invalid data.
            MergeValidationFailure: The merged result failed validation.
        """
        strategy = self.get(strategy_id)
        logger.debug(f"Executing merge strategy: {strategy.display_name}")

        existing = None
        if existing_stack is not None:
            try:
                existing = await strategy.extract_existing(existing_stack, scope)
            except (ClientError, BotoCoreError, ValueError) as e:
                logger.warning(
                    f"[{strategy.display_name}] Could not read existing state, "
                    f"using new state only: {e}"
                )
            except Exception as e:
                logger.warning(
                    f"[{strategy.display_name}] Unexpected error reading existing state, "
                    f"using new state only: {e!r}",
                    exc_info=True,
                )

        new_data = strategy.collect_new(context)
        merged = strategy.merge(existing, new_data)
        validation = strategy.validate(merged)

        for warning in validation.warnings or []:
            logger.warning(f"[{strategy.display_name}] {warning}")

        if not validation.valid:
            raise MergeValidationFailure(strategy.display_name, validation.errors or [])

        logger.debug(f"Merge complete: {strategy.display_name}")
        return merged
