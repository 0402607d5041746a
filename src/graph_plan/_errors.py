"""
Error taxonomy for graph planning and apply.

Planning errors (`DuplicateIdentityError`, `UnknownReferenceError`,
`CycleError`, `UnsafeReplaceError`) are raised before anything is mutated,
so the caller can fix the declarations and plan again.

Apply errors (`ProviderError`, `ApplyTimeoutError`) fail a single plan item.
The executor collects them into a `PartialApplyError` once every independent
item has had its chance to run.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from graph_plan._executor import ItemOutcome
    from graph_plan._state import RecordedState
    from graph_plan._types import Identity

__all__ = [
    "GraphPlanError",
    "DuplicateIdentityError",
    "UnknownReferenceError",
    "CycleError",
    "UnsafeReplaceError",
    "ProviderError",
    "ApplyTimeoutError",
    "PartialApplyError",
    "StateError",
]


class GraphPlanError(Exception):
    """Base class for every error raised by graph_plan."""


class DuplicateIdentityError(GraphPlanError):
    """A (kind, name) pair was declared more than once."""

    def __init__(self, identity: Identity) -> None:
        self.identity = identity
        super().__init__(f"{identity} is already declared")


class UnknownReferenceError(GraphPlanError):
    """A reference points at a node that is not declared.

    Attributes:
        source: The node holding the reference, or None for outputs.
        target: The identity that could not be found.
        field: The referenced field, when the lookup failed on a field.
    """

    def __init__(
        self,
        source: Identity | None,
        target: Identity,
        field: str | None = None,
    ) -> None:
        self.source = source
        self.target = target
        self.field = field
        where = f"{target}.{field}" if field else str(target)
        origin = str(source) if source is not None else "<output>"
        super().__init__(f"{origin} references unknown {where}")


class CycleError(GraphPlanError):
    """The dependency graph contains a cycle.

    Attributes:
        cycle: The identities along the cycle; the first element is repeated
            at the end so the path reads as a closed loop.
    """

    def __init__(self, cycle: Sequence[Any]) -> None:
        self.cycle = tuple(cycle)
        path = " -> ".join(str(step) for step in self.cycle)
        super().__init__(f"dependency cycle: {path}")


class UnsafeReplaceError(GraphPlanError):
    """A replaced node still has dependents that stay in place."""

    def __init__(self, identity: Identity, dependents: Sequence[Identity]) -> None:
        self.identity = identity
        self.dependents = tuple(dependents)
        names = ", ".join(str(d) for d in self.dependents)
        super().__init__(
            f"{identity} must be replaced but is still used by {names}; "
            "mark the referencing fields immutable or remove the dependents"
        )


class ProviderError(GraphPlanError):
    """The provider adapter failed to apply a node.

    Attributes:
        identity: The node that failed, when known.
        retryable: True if the failure is transient and the call may be
            retried.
    """

    def __init__(
        self,
        message: str,
        identity: Identity | None = None,
        retryable: bool = False,
    ) -> None:
        self.identity = identity
        self.retryable = retryable
        super().__init__(message)


class ApplyTimeoutError(ProviderError, TimeoutError):
    """A provider call did not finish within the configured timeout."""

    def __init__(self, identity: Identity, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(
            f"{identity} did not finish within {timeout:g}s", identity=identity
        )


class PartialApplyError(GraphPlanError):
    """Some plan items failed; unrelated items were still applied.

    Attributes:
        state: The recorded state after the apply pass. It reflects every
            applied item and nothing else.
        outcomes: The outcome of every plan item, in plan order.
    """

    def __init__(self, state: RecordedState, outcomes: Sequence[ItemOutcome]) -> None:
        self.state = state
        self.outcomes = tuple(outcomes)
        super().__init__(
            f"apply incomplete: {len(self.failed)} failed, "
            f"{len(self.skipped)} skipped"
        )

    @property
    def failed(self) -> tuple[ItemOutcome, ...]:
        return tuple(o for o in self.outcomes if o.status.value == "failed")

    @property
    def skipped(self) -> tuple[ItemOutcome, ...]:
        return tuple(o for o in self.outcomes if o.status.value == "skipped")


class StateError(GraphPlanError):
    """A persisted state document could not be read, written or validated."""
