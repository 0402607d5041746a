"""
Dependency graph over declared nodes.

Edges point from a dependent to its dependency. Ordering is Kahn's algorithm
with a priority queue: whenever several nodes are ready, the one declared
first goes first. Identical declarations therefore always produce the same
order, run after run.

Example:
    Ordering a small graph::

        graph = resolve_references(decls.nodes)
        [str(n.identity) for n in graph.topo_order()]
        # ['aws_vpc.main', 'aws_subnet.public', 'aws_instance.web']
"""

from __future__ import annotations

import heapq
from logging import getLogger
from typing import Any, Callable, Hashable, Iterable, Iterator, Mapping, Sequence, TypeVar

from graph_plan._errors import CycleError
from graph_plan._model import ResourceNode
from graph_plan._types import Identity

__all__ = [
    "DependencyGraph",
    "ordered_toposort",
]

logger = getLogger(__name__)

K = TypeVar("K", bound=Hashable)


def ordered_toposort(
    items: Sequence[K],
    requires: Mapping[K, Iterable[K]],
    key: Callable[[K], Any] | None = None,
) -> list[K]:
    """Topologically sort `items` so every item follows what it requires.

    Args:
        items: The items to order. Their position is the final tie-break.
        requires: Maps an item to the items that must come before it.
            Requirements outside `items` are ignored.
        key: Optional priority among ready items; smaller goes first.
            Defaults to the position in `items`.

    Returns:
        The ordered items.

    Raises:
        CycleError: If the requirements contain a cycle. Nothing partial is
            returned.
    """
    position = {item: i for i, item in enumerate(items)}
    priority = key if key is not None else position.__getitem__

    pending: dict[K, set[K]] = {}
    followers: dict[K, list[K]] = {item: [] for item in items}
    for item in items:
        deps = {dep for dep in requires.get(item, ()) if dep in position}
        pending[item] = deps
        for dep in deps:
            followers[dep].append(item)

    ready = [(priority(item), position[item], item) for item in items if not pending[item]]
    heapq.heapify(ready)

    order: list[K] = []
    while ready:
        _, _, item = heapq.heappop(ready)
        order.append(item)
        for follower in followers[item]:
            waiting = pending[follower]
            waiting.discard(item)
            if not waiting:
                heapq.heappush(ready, (priority(follower), position[follower], follower))

    if len(order) != len(items):
        stuck = [item for item in items if pending[item]]
        raise CycleError(_find_cycle(stuck, pending, position))
    return order


def _find_cycle(
    stuck: Sequence[K],
    pending: Mapping[K, set[K]],
    position: Mapping[K, int],
) -> list[K]:
    # Every stuck item still waits on another stuck item, so following the
    # first unmet requirement must eventually revisit a node.
    path: list[K] = []
    seen: dict[K, int] = {}
    item = stuck[0]
    while item not in seen:
        seen[item] = len(path)
        path.append(item)
        item = min(pending[item], key=position.__getitem__)
    return path[seen[item]:] + [item]


class DependencyGraph:
    """A directed acyclic graph of declared nodes.

    Built by `resolve_references`; holds the nodes in declaration order and,
    for each node, the identities it depends on.

    Attributes:
        refs: Every reference found while building the graph.
    """

    def __init__(
        self,
        nodes: Sequence[ResourceNode],
        dependencies: Mapping[Identity, Sequence[Identity]],
        refs: Sequence[Any] = (),
    ) -> None:
        self._nodes: dict[Identity, ResourceNode] = {n.identity: n for n in nodes}
        self._position = {ident: i for i, ident in enumerate(self._nodes)}
        self._deps: dict[Identity, tuple[Identity, ...]] = {
            ident: tuple(dict.fromkeys(dependencies.get(ident, ()))) for ident in self._nodes
        }
        self._dependents: dict[Identity, list[Identity]] = {ident: [] for ident in self._nodes}
        for ident, deps in self._deps.items():
            for dep in deps:
                self._dependents[dep].append(ident)
        self.refs = tuple(refs)

    @property
    def nodes(self) -> list[ResourceNode]:
        """All nodes, in declaration order."""
        return list(self._nodes.values())

    @property
    def identities(self) -> list[Identity]:
        return list(self._nodes)

    def node(self, identity: Identity | str) -> ResourceNode:
        return self._nodes[Identity.coerce(identity)]

    def position(self, identity: Identity) -> int:
        """Declaration index of `identity`."""
        return self._position[identity]

    def edges(self) -> Iterator[tuple[Identity, Identity]]:
        """Yield (dependent, dependency) pairs."""
        for ident, deps in self._deps.items():
            for dep in deps:
                yield ident, dep

    def dependencies_of(self, identity: Identity | str) -> tuple[Identity, ...]:
        """Direct dependencies of a node."""
        return self._deps[Identity.coerce(identity)]

    def dependents_of(self, identity: Identity | str) -> tuple[Identity, ...]:
        """Nodes that directly depend on a node."""
        return tuple(self._dependents[Identity.coerce(identity)])

    def get_dependencies(self, identity: Identity | str, transitive: bool = False) -> set[Identity]:
        """Compute the dependencies of a node.

        Args:
            identity: The node to analyze.
            transitive: If True, include dependencies of dependencies.

        Returns:
            The set of identities `identity` depends on.
        """
        return self._walk(Identity.coerce(identity), self._deps, transitive)

    def get_dependents(self, identity: Identity | str, transitive: bool = False) -> set[Identity]:
        """Compute the nodes that depend on a node, directly or transitively."""
        return self._walk(Identity.coerce(identity), self._dependents, transitive)

    @staticmethod
    def _walk(
        start: Identity,
        adjacency: Mapping[Identity, Sequence[Identity]],
        transitive: bool,
    ) -> set[Identity]:
        found = set(adjacency[start])
        if not transitive:
            return found

        to_visit = list(found)
        while to_visit:
            current = to_visit.pop()
            for nxt in adjacency[current]:
                if nxt not in found:
                    found.add(nxt)
                    to_visit.append(nxt)
        return found

    def topo_order(self) -> list[ResourceNode]:
        """Return nodes with every dependency before its dependents.

        Ties are broken by declaration order.

        Raises:
            CycleError: If the graph has a cycle.
        """
        order = ordered_toposort(list(self._nodes), self._deps)
        logger.debug(f"Topological order: {', '.join(str(i) for i in order)}")
        return [self._nodes[ident] for ident in order]

    def __contains__(self, identity: object) -> bool:
        if isinstance(identity, str):
            identity = Identity.parse(identity)
        return identity in self._nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)
