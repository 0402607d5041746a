"""
graph-plan: Plan and apply declarative resource graphs.

This package is the engine behind a declarative infrastructure tool. Given
a set of declared resources that reference each other, it builds the
dependency graph, diffs it against the last recorded state, orders the
resulting actions so dependencies are always created first and deleted
last, and applies them through a provider adapter.

Overview:
    The pipeline has four stages:

    - `Declarations.define_node`: declare resources; references are
      embedded with `Ref[...]` and `Attr[...]`
    - `resolve_references`: turn references into a `DependencyGraph`
    - `plan`: diff the graph against `RecordedState` into `PlanItem`s
    - `apply` / `Executor`: run the plan through a `ProviderAdapter`

Quick Start:
    Declaring and applying a small network::

        from graph_plan import Attr, Declarations, RecordedState, apply, plan, resolve_references

        decls = Declarations()
        decls.define_node("aws_vpc", "main", {"cidr_block": "10.0.0.0/16"})
        decls.define_node(
            "aws_subnet",
            "public",
            {"vpc_id": Attr["aws_vpc.main", "id"], "cidr_block": "10.0.1.0/24"},
        )
        decls.define_node(
            "aws_instance",
            "web",
            {"subnet_id": Attr["aws_subnet.public", "id"], "ami": "ami-123"},
        )

        graph = resolve_references(decls.nodes, decls.outputs)
        state = RecordedState()
        items = plan(graph, state)
        # [create aws_vpc.main, create aws_subnet.public, create aws_instance.web]

        state = apply(items, provider, state)

Replacement:
    Fields that cannot change in place are listed per kind in an
    `ImmutabilityPolicy`. A change to such a field plans a delete followed
    by a create of the same node::

        policy = ImmutabilityPolicy.from_mapping({"aws_subnet": ["cidr_block"]})
        items = plan(graph, state, policy)

Failures:
    Planning errors (`DuplicateIdentityError`, `UnknownReferenceError`,
    `CycleError`, `UnsafeReplaceError`) are raised before anything changes.
    Apply errors fail one item at a time; dependents are skipped, unrelated
    items still run, and a `PartialApplyError` reports the outcome along
    with the state of what was applied.

Exports:
    Types:
        - `Identity`, `Reference`, `Ref`, `Attr`, `UNKNOWN`
        - `ResourceNode`, `Output`, `Declarations`
        - `RefInfo`, `DependencyGraph`
        - `Action`, `AttributeChange`, `PlanItem`
        - `RecordedState`, `StateStore`, `ImmutabilityPolicy`
        - `ExecutorConfig`, `Executor`, `ProviderAdapter`, `ItemStatus`,
          `ItemOutcome`

    Functions:
        - `get_refs`, `resolve_references`, `resolve_value`,
          `evaluate_outputs`, `format_outputs`
        - `plan`, `summarize`, `has_changes`, `format_plan`
        - `apply`
"""

from graph_plan._config import ExecutorConfig, load_policy
from graph_plan._errors import (
    ApplyTimeoutError,
    CycleError,
    DuplicateIdentityError,
    GraphPlanError,
    PartialApplyError,
    ProviderError,
    StateError,
    UnknownReferenceError,
    UnsafeReplaceError,
)
from graph_plan._executor import (
    Executor,
    ItemOutcome,
    ItemStatus,
    ProviderAdapter,
    apply,
)
from graph_plan._graph import DependencyGraph
from graph_plan._model import Declarations, Output, ResourceNode
from graph_plan._planner import (
    Action,
    AttributeChange,
    PlanItem,
    format_plan,
    has_changes,
    plan,
    summarize,
)
from graph_plan._policy import ImmutabilityPolicy
from graph_plan._resolver import (
    RefInfo,
    evaluate_outputs,
    format_outputs,
    get_refs,
    resolve_references,
    resolve_value,
)
from graph_plan._state import RecordedState, StateDocument, StateStore
from graph_plan._types import UNKNOWN, Attr, Identity, Ref, Reference

__all__ = [
    # Types
    "Identity",
    "Reference",
    "Ref",
    "Attr",
    "UNKNOWN",
    # Declarations
    "ResourceNode",
    "Output",
    "Declarations",
    # Resolution
    "RefInfo",
    "get_refs",
    "resolve_references",
    "resolve_value",
    "evaluate_outputs",
    "format_outputs",
    "DependencyGraph",
    # Planning
    "Action",
    "AttributeChange",
    "PlanItem",
    "ImmutabilityPolicy",
    "plan",
    "summarize",
    "has_changes",
    "format_plan",
    # State
    "RecordedState",
    "StateDocument",
    "StateStore",
    # Apply
    "ExecutorConfig",
    "load_policy",
    "Executor",
    "ProviderAdapter",
    "ItemStatus",
    "ItemOutcome",
    "apply",
    # Errors
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

__version__ = "0.1.0"
