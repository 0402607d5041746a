"""
Reference resolution.

This module finds the `Reference` placeholders embedded in node attributes
and turns them into graph edges, and later substitutes them with concrete
values from recorded state.

Key functions:

- `get_refs`: List every reference held by a node
- `resolve_references`: Build a `DependencyGraph` from declared nodes
- `resolve_value`: Replace references in a value with recorded values
- `evaluate_outputs`: Compute output values after apply
- `format_outputs`: Render output values, masking sensitive ones

Example:
    Resolving a subnet's network id::

        state = RecordedState({Identity("aws_vpc", "main"): {"id": "vpc-1"}})
        resolve_value({"vpc_id": Attr["aws_vpc.main", "id"]}, state)
        # {'vpc_id': 'vpc-1'}
"""

from __future__ import annotations

from dataclasses import dataclass
from logging import getLogger
from typing import Any, Iterable, Iterator, Mapping

from graph_plan._errors import DuplicateIdentityError, UnknownReferenceError
from graph_plan._graph import DependencyGraph
from graph_plan._model import Output, ResourceNode
from graph_plan._types import UNKNOWN, Identity, Reference

__all__ = [
    "RefInfo",
    "get_refs",
    "iter_references",
    "resolve_references",
    "resolve_value",
    "evaluate_outputs",
    "format_outputs",
]

logger = getLogger(__name__)

Path = tuple[Any, ...]


@dataclass(frozen=True)
class RefInfo:
    """Metadata about one reference held by a node.

    Attributes:
        source: The node holding the reference.
        path: Keys and list indices leading from the attribute mapping to
            the reference, for example ``("tags", "Vpc")`` or
            ``("security_groups", 0)``.
        target: The referenced node.
        attr: The referenced field, or None for a whole-node reference.
        explicit: True if the reference comes from ``depends_on`` rather
            than from an attribute value.
    """

    source: Identity
    path: Path
    target: Identity
    attr: str | None = None
    explicit: bool = False

    @property
    def field(self) -> str | None:
        """The top-level attribute holding the reference."""
        if self.explicit or not self.path:
            return None
        return self.path[0]


def iter_references(value: Any, path: Path = ()) -> Iterator[tuple[Path, Reference]]:
    """Yield (path, reference) for every reference nested inside `value`.

    Mappings are walked by key and lists or tuples by index, in order.
    """
    if isinstance(value, Reference):
        yield path, value
    elif isinstance(value, Mapping):
        for key, item in value.items():
            yield from iter_references(item, path + (key,))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            yield from iter_references(item, path + (index,))


def get_refs(node: ResourceNode) -> list[RefInfo]:
    """Extract reference information from a node.

    Walks the node's attributes, including nested lists and mappings, and
    its ``depends_on`` entries.

    Args:
        node: The node to analyze.

    Returns:
        One `RefInfo` per reference, attributes first in declaration order,
        then explicit dependencies.
    """
    source = node.identity
    refs = [
        RefInfo(source=source, path=path, target=ref.target, attr=ref.field)
        for path, ref in iter_references(node.attributes)
    ]
    refs.extend(
        RefInfo(source=source, path=(index,), target=dep, explicit=True)
        for index, dep in enumerate(node.depends_on)
    )
    return refs


def resolve_references(
    nodes: Iterable[ResourceNode],
    outputs: Iterable[Output] = (),
) -> DependencyGraph:
    """Build the dependency graph of a declaration set.

    Every reference becomes an edge from the node holding it to the node it
    targets. Output values are checked too, although they add no edges.

    Args:
        nodes: The declared nodes, in declaration order.
        outputs: Declared outputs whose references must also resolve.

    Returns:
        The dependency graph. It is not checked for cycles here;
        `DependencyGraph.topo_order` does that.

    Raises:
        DuplicateIdentityError: If two nodes share an identity.
        UnknownReferenceError: If a reference targets an undeclared node.
    """
    declared: dict[Identity, ResourceNode] = {}
    for node in nodes:
        if node.identity in declared:
            raise DuplicateIdentityError(node.identity)
        declared[node.identity] = node

    dependencies: dict[Identity, list[Identity]] = {}
    all_refs: list[RefInfo] = []
    for identity, node in declared.items():
        refs = get_refs(node)
        for info in refs:
            if info.target not in declared:
                raise UnknownReferenceError(identity, info.target, info.attr)
        dependencies[identity] = [info.target for info in refs]
        all_refs.extend(refs)

    for out in outputs:
        for _, ref in iter_references(out.value):
            if ref.target not in declared:
                raise UnknownReferenceError(None, ref.target, ref.field)

    logger.debug(f"Resolved {len(all_refs)} references across {len(declared)} nodes")
    return DependencyGraph(list(declared.values()), dependencies, all_refs)


def resolve_value(
    value: Any,
    state: Mapping[Identity, Mapping[str, Any]],
    strict: bool = False,
    source: Identity | None = None,
) -> Any:
    """Substitute every reference in `value` with its concrete value.

    A field reference resolves to ``state[target][field]``; a whole-node
    reference resolves to the target's address string.

    Args:
        value: A literal, list, mapping or reference.
        state: Concrete attributes per identity.
        strict: If False, references whose target or field is not in
            `state` resolve to `UNKNOWN`. If True they raise.
        source: The node being resolved, used in error messages.

    Returns:
        A copy of `value` with no references left.

    Raises:
        UnknownReferenceError: In strict mode, when a target or field is
            missing from `state`.
    """
    if isinstance(value, Reference):
        if value.field is None:
            return str(value.target)
        attributes = state.get(value.target)
        if attributes is None or value.field not in attributes:
            if strict:
                raise UnknownReferenceError(source, value.target, value.field)
            return UNKNOWN
        return attributes[value.field]
    if isinstance(value, Mapping):
        return {key: resolve_value(item, state, strict, source) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_value(item, state, strict, source) for item in value]
    return value


def evaluate_outputs(
    outputs: Iterable[Output],
    state: Mapping[Identity, Mapping[str, Any]],
) -> dict[str, Any]:
    """Compute output values from recorded state.

    Raises:
        UnknownReferenceError: If an output refers to something the state
            does not hold, for example after a partial apply.
    """
    return {out.name: resolve_value(out.value, state, strict=True) for out in outputs}


SENSITIVE_PLACEHOLDER = "(sensitive value)"


def format_outputs(
    outputs: Iterable[Output],
    state: Mapping[Identity, Mapping[str, Any]],
) -> str:
    """Render output values as ``name = value`` lines.

    Sensitive outputs are masked; their values are still available from
    `evaluate_outputs`.
    """
    outputs = list(outputs)
    values = evaluate_outputs(outputs, state)
    lines = []
    for out in outputs:
        shown = SENSITIVE_PLACEHOLDER if out.sensitive else repr(values[out.name])
        lines.append(f"{out.name} = {shown}")
    return "\n".join(lines)
