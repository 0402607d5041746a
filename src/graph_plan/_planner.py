"""
Planning: diff declarations against recorded state.

`plan` walks the dependency graph in topological order and classifies each
node:

- not in recorded state: create
- an immutable field differs: replace, emitted as a delete item followed
  by a create item, both flagged ``replacing``
- only mutable fields differ: update
- nothing differs: no-op

Recorded nodes that are no longer declared are deleted.

The resulting items are then ordered as one graph of actions. Creates and
updates follow the forward items of their dependencies. A delete follows
the delete (or in-place update) of every node that depended on it, so a
dependency is never removed while a dependent still exists. Among items that
are ready at the same time, deletes go first, most recently recorded first,
then forward items in declaration order.

Example:
    Planning a fresh network::

        graph = resolve_references(decls.nodes)
        items = plan(graph, RecordedState())
        print(format_plan(items))
        # + aws_vpc.main
        # + aws_subnet.public
        # Plan: 2 to create, 0 to update, 0 to delete.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from enum import Enum
from logging import getLogger
from typing import Any, Mapping, Sequence

from graph_plan._errors import UnsafeReplaceError
from graph_plan._graph import DependencyGraph, ordered_toposort
from graph_plan._model import ResourceNode
from graph_plan._policy import ImmutabilityPolicy
from graph_plan._resolver import resolve_value
from graph_plan._state import RecordedState
from graph_plan._types import UNKNOWN, Identity

__all__ = [
    "Action",
    "AttributeChange",
    "PlanItem",
    "plan",
    "summarize",
    "has_changes",
    "format_plan",
]

logger = getLogger(__name__)

_ABSENT: Any = object()


class Action(str, Enum):
    """What a plan item does to its node."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NO_OP = "no-op"


@dataclass(frozen=True)
class AttributeChange:
    """One changed field.

    Attributes:
        field: The attribute name.
        before: The recorded value, or None if the field was not recorded.
        after: The declared value, `UNKNOWN` where it depends on something
            that will only be known after apply.
        forces_replacement: True if the field is immutable.
    """

    field: str
    before: Any
    after: Any
    forces_replacement: bool = False


@dataclass(frozen=True)
class PlanItem:
    """One action in a plan.

    Attributes:
        identity: The node acted upon.
        action: The action.
        node: The node handed to the provider. For create, update and no-op
            this is the declared node, references included; for delete it
            carries the recorded attributes.
        diff: Changed fields; empty for delete and no-op.
        requires: Keys of the plan items that must be applied first.
        dependencies: Declared dependencies to record once applied.
        replacing: True for both halves of a replace.
    """

    identity: Identity
    action: Action
    node: ResourceNode
    diff: tuple[AttributeChange, ...] = ()
    requires: tuple[str, ...] = ()
    dependencies: tuple[Identity, ...] = ()
    replacing: bool = False

    @property
    def key(self) -> str:
        """Unique key of the item within its plan."""
        return f"{self.action.value}:{self.identity}"

    def __str__(self) -> str:
        suffix = " (replace)" if self.replacing else ""
        return f"{self.action.value} {self.identity}{suffix}"


def _has_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, Mapping):
        return any(_has_unknown(v) for v in value.values())
    if isinstance(value, list):
        return any(_has_unknown(v) for v in value)
    return False


def _differs(before: Any, after: Any) -> bool:
    if before is _ABSENT:
        return True
    return _has_unknown(after) or before != after


def _diff(
    node: ResourceNode,
    declared: Mapping[str, Any],
    recorded: Mapping[str, Any],
    policy: ImmutabilityPolicy,
) -> tuple[AttributeChange, ...]:
    # Only declared fields are compared; provider-assigned fields are
    # recorded but never declared.
    changes = []
    for field, after in declared.items():
        before = recorded.get(field, _ABSENT)
        if _differs(before, after):
            changes.append(
                AttributeChange(
                    field=field,
                    before=None if before is _ABSENT else before,
                    after=after,
                    forces_replacement=policy.is_immutable(node.kind, field),
                )
            )
    return tuple(changes)


def plan(
    graph: DependencyGraph,
    recorded_state: RecordedState,
    policy: ImmutabilityPolicy | None = None,
) -> list[PlanItem]:
    """Compute the ordered actions that converge recorded state on the graph.

    Args:
        graph: The declared dependency graph.
        recorded_state: The last recorded state. Not modified.
        policy: Which fields force replacement. Defaults to none.

    Returns:
        Plan items in apply order. Identical inputs give identical plans.

    Raises:
        CycleError: If the graph, or the recorded dependencies of nodes to
            delete, contain a cycle.
        UnsafeReplaceError: If a node must be replaced while a dependent of
            it stays in place.
    """
    policy = policy or ImmutabilityPolicy()
    order = graph.topo_order()

    # What each node will look like after apply, as far as planning knows.
    projected: dict[Identity, Mapping[str, Any]] = {}
    actions: dict[Identity, Action] = {}
    diffs: dict[Identity, tuple[AttributeChange, ...]] = {}
    replaced: list[Identity] = []

    for node in order:
        ident = node.identity
        declared = resolve_value(node.attributes, projected)
        recorded = recorded_state.get(ident)
        if recorded is None:
            actions[ident] = Action.CREATE
            diffs[ident] = tuple(
                AttributeChange(field, None, value) for field, value in declared.items()
            )
            projected[ident] = declared
            continue

        changes = _diff(node, declared, recorded, policy)
        diffs[ident] = changes
        if not changes:
            actions[ident] = Action.NO_OP
            projected[ident] = recorded
        elif any(change.forces_replacement for change in changes):
            actions[ident] = Action.CREATE
            replaced.append(ident)
            projected[ident] = declared
        else:
            actions[ident] = Action.UPDATE
            projected[ident] = {**recorded, **declared}

    recorded_dependents: dict[Identity, list[Identity]] = {}
    for ident in recorded_state:
        for dep in recorded_state.dependencies_of(ident):
            recorded_dependents.setdefault(dep, []).append(ident)

    orphans = [ident for ident in recorded_state if ident not in graph]
    deleting = set(orphans) | set(replaced)

    def dependents(ident: Identity) -> list[Identity]:
        found = list(recorded_dependents.get(ident, ()))
        if ident in graph:
            found.extend(graph.dependents_of(ident))
        return list(dict.fromkeys(found))

    # Only current edges make a replace unsafe. A recorded dependent that no
    # longer references the node just orders the delete after its update.
    for ident in replaced:
        in_place = [
            dep
            for dep in graph.dependents_of(ident)
            if dep not in deleting and dep in recorded_state
        ]
        if in_place:
            raise UnsafeReplaceError(ident, in_place)

    forward_keys: dict[Identity, str] = {}
    for node in order:
        forward_keys[node.identity] = f"{actions[node.identity].value}:{node.identity}"

    items: dict[str, PlanItem] = {}
    priority: dict[str, tuple[int, int]] = {}
    state_position = {ident: i for i, ident in enumerate(recorded_state)}

    # Deletes, for orphans and for the first half of replaces.
    for ident in sorted(deleting, key=state_position.__getitem__, reverse=True):
        requires = []
        for dependent in dependents(ident):
            if dependent in deleting:
                requires.append(f"{Action.DELETE.value}:{dependent}")
            elif dependent in forward_keys and dependent in recorded_state:
                requires.append(forward_keys[dependent])
        item = PlanItem(
            identity=ident,
            action=Action.DELETE,
            node=ResourceNode(ident.kind, ident.name, dict(recorded_state[ident])),
            requires=tuple(requires),
            dependencies=recorded_state.dependencies_of(ident),
            replacing=ident in replaced,
        )
        items[item.key] = item
        priority[item.key] = (0, -state_position[ident])

    for node in order:
        ident = node.identity
        requires = [forward_keys[dep] for dep in graph.dependencies_of(ident)]
        is_replace = ident in deleting
        if is_replace:
            requires.append(f"{Action.DELETE.value}:{ident}")
        item = PlanItem(
            identity=ident,
            action=actions[ident],
            node=node,
            diff=diffs[ident],
            requires=tuple(requires),
            dependencies=graph.dependencies_of(ident),
            replacing=is_replace,
        )
        items[item.key] = item
        priority[item.key] = (1, graph.position(ident))

    keys = list(items)
    ordered = ordered_toposort(
        keys,
        {key: item.requires for key, item in items.items()},
        key=priority.__getitem__,
    )
    result = [items[key] for key in ordered]
    for item in result:
        logger.debug(f"Planned {item}")
    return result


def summarize(items: Sequence[PlanItem]) -> dict[Action, int]:
    """Count plan items per action."""
    counts = Counter(item.action for item in items)
    return {action: counts.get(action, 0) for action in Action}


def has_changes(items: Sequence[PlanItem]) -> bool:
    return any(item.action is not Action.NO_OP for item in items)


_SYMBOLS = {
    Action.CREATE: "+",
    Action.UPDATE: "~",
    Action.DELETE: "-",
    Action.NO_OP: " ",
}


def format_plan(items: Sequence[PlanItem], show_no_op: bool = False) -> str:
    """Render a plan as text, one line per item plus changed fields."""
    lines = []
    for item in items:
        if item.action is Action.NO_OP and not show_no_op:
            continue
        suffix = " (replace)" if item.replacing else ""
        lines.append(f"{_SYMBOLS[item.action]} {item.identity}{suffix}")
        if item.action is Action.UPDATE or item.replacing:
            for change in item.diff:
                marker = " # forces replacement" if change.forces_replacement else ""
                lines.append(f"    {change.field}: {change.before!r} -> {change.after!r}{marker}")
    counts = summarize(items)
    lines.append(
        f"Plan: {counts[Action.CREATE]} to create, {counts[Action.UPDATE]} to update, "
        f"{counts[Action.DELETE]} to delete."
    )
    return "\n".join(lines)
