"""
Applying a plan.

The `Executor` walks plan items, calls the provider adapter for each one
and commits the result into `RecordedState`. Every item moves through
``pending -> in-progress -> applied | failed``; an item whose requirements
failed or were skipped becomes ``skipped`` without reaching the provider.
Items that do not depend on a failure still run, so one failed node never
throws away unrelated work.

Provider calls run on a thread pool and are bounded by
`ExecutorConfig.apply_timeout`. With ``max_workers=1`` items are applied
one at a time in plan order. With more workers, items whose requirements
are all applied may run at once; results are still committed by the
scheduling thread alone.

A call that outlives its timeout cannot be interrupted. Its item fails with
`ApplyTimeoutError` and the call is left to finish on a discarded pool whose
result is never recorded. Pool threads are not daemon threads, so the
interpreter waits for such calls before it exits.

If a configured `StateStore` cannot be written, the item whose commit could
not be saved fails with `StateError`; its change stays in the returned state.
"""

from __future__ import annotations

import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from logging import getLogger
from typing import Any, Mapping, Protocol, Sequence

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_fixed

from graph_plan._config import ExecutorConfig
from graph_plan._errors import (
    ApplyTimeoutError,
    PartialApplyError,
    ProviderError,
    StateError,
    UnknownReferenceError,
)
from graph_plan._model import ResourceNode
from graph_plan._planner import Action, AttributeChange, PlanItem
from graph_plan._resolver import resolve_value
from graph_plan._state import RecordedState, StateStore

__all__ = [
    "ProviderAdapter",
    "ItemStatus",
    "ItemOutcome",
    "Executor",
    "apply",
]

logger = getLogger(__name__)


class ProviderAdapter(Protocol):
    """The narrow contract between the executor and a provider.

    Nodes passed in carry concrete attributes; every reference has already
    been replaced by its recorded value. Any exception raised fails the
    item. Raise `ProviderError` with ``retryable=True`` for transient
    failures that are worth another attempt.
    """

    def create(self, node: ResourceNode) -> Mapping[str, Any]: ...

    def update(self, node: ResourceNode, diff: Sequence[AttributeChange]) -> Mapping[str, Any]: ...

    def delete(self, node: ResourceNode) -> None: ...


class ItemStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ItemOutcome:
    """What happened to one plan item.

    Attributes:
        item: The plan item.
        status: Its current status.
        error: Why it failed, for failed items.
        blocked_by: The key of the failed or skipped requirement, for
            skipped items.
    """

    item: PlanItem
    status: ItemStatus = ItemStatus.PENDING
    error: BaseException | None = None
    blocked_by: str | None = None


@dataclass(frozen=True)
class _Running:
    item: PlanItem
    node: ResourceNode
    deadline: float


def _is_retryable(ex: BaseException) -> bool:
    return isinstance(ex, ProviderError) and ex.retryable


class Executor:
    """Applies plan items through a provider adapter.

    Args:
        provider: The provider adapter.
        config: Timeouts, retries and concurrency. Defaults to
            `ExecutorConfig()`.
        store: If given, state is loaded from it when `apply` gets no
            state, and saved after every committed item. Defaults to a
            store at `config.state_path` when that is set.
    """

    def __init__(
        self,
        provider: ProviderAdapter,
        config: ExecutorConfig | None = None,
        store: StateStore | None = None,
    ) -> None:
        self.provider = provider
        self.config = config or ExecutorConfig()
        if store is None and self.config.state_path is not None:
            store = StateStore(self.config.state_path)
        self.store = store

    def apply(
        self,
        items: Sequence[PlanItem],
        state: RecordedState | None = None,
    ) -> RecordedState:
        """Apply `items` in order and return the updated state.

        Args:
            items: Plan items, in the order `plan` produced them.
            state: The state to update in place. Loaded from the store, or
                empty, when omitted.

        Returns:
            The updated state.

        Raises:
            PartialApplyError: If any item failed. The error carries the
                updated state, which reflects every change the provider
                made, and every item's outcome.
        """
        if state is None:
            state = self.store.load() if self.store is not None else RecordedState()

        outcomes = {item.key: ItemOutcome(item) for item in items}
        self._schedule(items, outcomes, state)

        ordered = [outcomes[item.key] for item in items]
        if any(o.status is ItemStatus.FAILED for o in ordered):
            error = PartialApplyError(state, ordered)
            logger.warning(str(error))
            raise error
        return state

    def _schedule(
        self,
        items: Sequence[PlanItem],
        outcomes: dict[str, ItemOutcome],
        state: RecordedState,
    ) -> None:
        max_workers = self.config.max_workers
        pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="graph-plan")
        pending = list(items)
        running: dict[Future, _Running] = {}
        try:
            while pending or running:
                pending = self._dispatch(pending, running, outcomes, state, pool)
                if not running:
                    if pending:
                        stuck = ", ".join(item.key for item in pending)
                        raise ValueError(f"Plan items can never become ready: {stuck}")
                    continue

                deadline = min(r.deadline for r in running.values())
                done, _ = wait(
                    list(running),
                    timeout=max(0.0, deadline - time.monotonic()),
                    return_when=FIRST_COMPLETED,
                )
                for future in done:
                    self._finish(running.pop(future), future, outcomes, state)

                now = time.monotonic()
                for future, run in list(running.items()):
                    if run.deadline > now:
                        continue
                    del running[future]
                    error = ApplyTimeoutError(run.item.identity, self.config.apply_timeout)
                    self._fail(outcomes[run.item.key], error)
                    if not future.cancel():
                        # The call is still running; leave it to finish on the
                        # old pool and never look at its result.
                        pool.shutdown(wait=False)
                        pool = ThreadPoolExecutor(
                            max_workers=max_workers, thread_name_prefix="graph-plan"
                        )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _dispatch(
        self,
        pending: list[PlanItem],
        running: dict[Future, _Running],
        outcomes: dict[str, ItemOutcome],
        state: RecordedState,
        pool: ThreadPoolExecutor,
    ) -> list[PlanItem]:
        # Skips and no-ops finish immediately and may unblock later items,
        # so keep scanning until a pass makes no progress.
        progress = True
        while progress:
            progress = False
            waiting = []
            for item in pending:
                outcome = outcomes[item.key]
                blocker = self._blocker(item, outcomes)
                if blocker is not None:
                    outcome.status = ItemStatus.SKIPPED
                    outcome.blocked_by = blocker
                    logger.warning(f"Skipped {item}: requires {blocker}")
                    progress = True
                elif not self._ready(item, outcomes) or len(running) >= self.config.max_workers:
                    waiting.append(item)
                elif item.action is Action.NO_OP:
                    self._keep(item, outcome, state)
                    progress = True
                else:
                    self._start(item, outcome, running, state, pool)
                    progress = True
            pending = waiting
        return pending

    @staticmethod
    def _blocker(item: PlanItem, outcomes: Mapping[str, ItemOutcome]) -> str | None:
        for key in item.requires:
            required = outcomes.get(key)
            if required is not None and required.status in (ItemStatus.FAILED, ItemStatus.SKIPPED):
                return key
        return None

    @staticmethod
    def _ready(item: PlanItem, outcomes: Mapping[str, ItemOutcome]) -> bool:
        return all(
            outcomes[key].status is ItemStatus.APPLIED for key in item.requires if key in outcomes
        )

    def _start(
        self,
        item: PlanItem,
        outcome: ItemOutcome,
        running: dict[Future, _Running],
        state: RecordedState,
        pool: ThreadPoolExecutor,
    ) -> None:
        outcome.status = ItemStatus.IN_PROGRESS
        try:
            node, changes = self._prepare(item, state)
        except UnknownReferenceError as ex:
            self._fail(outcome, ex)
            return
        logger.debug(f"Applying {item}")
        future = pool.submit(self._call, item, node, changes)
        running[future] = _Running(item, node, time.monotonic() + self.config.apply_timeout)

    @staticmethod
    def _prepare(
        item: PlanItem,
        state: RecordedState,
    ) -> tuple[ResourceNode, tuple[AttributeChange, ...]]:
        if item.action is Action.DELETE:
            return item.node, ()
        resolved = resolve_value(item.node.attributes, state, strict=True, source=item.identity)
        changes = tuple(
            AttributeChange(
                field=change.field,
                before=change.before,
                after=resolved[change.field],
                forces_replacement=change.forces_replacement,
            )
            for change in item.diff
        )
        return item.node.with_attributes(resolved), changes

    def _call(
        self,
        item: PlanItem,
        node: ResourceNode,
        changes: tuple[AttributeChange, ...],
    ) -> Mapping[str, Any] | None:
        retrying = Retrying(
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_fixed(self.config.retry_wait),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        )
        return retrying(self._invoke, item, node, changes)

    def _invoke(
        self,
        item: PlanItem,
        node: ResourceNode,
        changes: tuple[AttributeChange, ...],
    ) -> Mapping[str, Any] | None:
        try:
            if item.action is Action.DELETE:
                self.provider.delete(node)
                return None
            if item.action is Action.CREATE:
                result = self.provider.create(node)
            else:
                result = self.provider.update(node, changes)
        except ProviderError as ex:
            if ex.identity is None:
                ex.identity = item.identity
            raise
        except Exception as ex:
            raise ProviderError(f"{item} failed: {ex}", identity=item.identity) from ex

        if not isinstance(result, Mapping):
            raise ProviderError(
                f"{item} returned {type(result).__name__}, expected a mapping",
                identity=item.identity,
            )
        return result

    def _finish(
        self,
        run: _Running,
        future: Future,
        outcomes: Mapping[str, ItemOutcome],
        state: RecordedState,
    ) -> None:
        item = run.item
        outcome = outcomes[item.key]
        try:
            result = future.result()
        except ProviderError as ex:
            self._fail(outcome, ex)
            return

        if item.action is Action.DELETE:
            state.forget(item.identity)
        else:
            # Providers may return only computed fields, so declared values
            # are kept underneath what the provider reports.
            recorded = state.get(item.identity, {}) if item.action is Action.UPDATE else {}
            state.record(
                item.identity,
                {**recorded, **run.node.attributes, **result},
                item.dependencies,
            )
        outcome.status = ItemStatus.APPLIED
        logger.info(f"Applied {item}")
        self._save(outcome, state)

    def _keep(self, item: PlanItem, outcome: ItemOutcome, state: RecordedState) -> None:
        # A no-op can still gain or lose edges, and delete ordering reads
        # them from recorded state.
        outcome.status = ItemStatus.APPLIED
        recorded = state.get(item.identity)
        if recorded is None or state.dependencies_of(item.identity) == item.dependencies:
            return
        state.record(item.identity, recorded, item.dependencies)
        logger.debug(f"Recorded new dependencies of {item.identity}")
        self._save(outcome, state)

    def _save(self, outcome: ItemOutcome, state: RecordedState) -> None:
        if self.store is None:
            return
        try:
            self.store.save(state)
        except OSError as ex:
            # The change is already made and stays in the in-memory state.
            self._fail(outcome, StateError(f"Could not save state after {outcome.item}: {ex}"))

    @staticmethod
    def _fail(outcome: ItemOutcome, error: BaseException) -> None:
        outcome.status = ItemStatus.FAILED
        outcome.error = error
        logger.warning(f"Failed {outcome.item}: {error}")


def apply(
    items: Sequence[PlanItem],
    provider: ProviderAdapter,
    state: RecordedState | None = None,
    config: ExecutorConfig | None = None,
    store: StateStore | None = None,
) -> RecordedState:
    """Apply a plan with a one-off `Executor`.

    See `Executor.apply`.
    """
    return Executor(provider, config=config, store=store).apply(items, state)
