"""
Resource node model.

A `ResourceNode` is one declared resource or data lookup. A `Declarations`
set collects nodes in declaration order and rejects duplicate identities;
that order is what makes every later ordering step deterministic.

Example:
    Declaring a network and a subnet::

        from graph_plan import Attr, Declarations

        decls = Declarations()
        decls.define_node("aws_vpc", "main", {"cidr_block": "10.0.0.0/16"})
        decls.define_node(
            "aws_subnet",
            "public",
            {"vpc_id": Attr["aws_vpc.main", "id"], "cidr_block": "10.0.1.0/24"},
        )
        decls.output("subnet_id", Attr["aws_subnet.public", "id"])
"""

from __future__ import annotations

from dataclasses import dataclass, field
from logging import getLogger
from typing import Any, Iterable, Iterator, Mapping

from graph_plan._errors import DuplicateIdentityError
from graph_plan._types import Identity

__all__ = [
    "ResourceNode",
    "Output",
    "Declarations",
]

logger = getLogger(__name__)


@dataclass(frozen=True)
class ResourceNode:
    """One declared resource.

    Attributes:
        kind: The resource kind, for example ``aws_instance``.
        name: The local name of the resource.
        attributes: Ordered mapping of field name to value. A value is a
            literal, a list, a nested mapping or a `Reference`.
        depends_on: Extra dependencies that no attribute expresses.
    """

    kind: str
    name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)
    depends_on: tuple[Identity, ...] = ()

    @property
    def identity(self) -> Identity:
        return Identity(self.kind, self.name)

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    def with_attributes(self, attributes: Mapping[str, Any]) -> ResourceNode:
        """Return a copy of this node carrying different attributes."""
        return ResourceNode(self.kind, self.name, dict(attributes), self.depends_on)


@dataclass(frozen=True)
class Output:
    """A named value exposed after apply.

    Attributes:
        name: The output name.
        value: The value; may contain references.
        sensitive: True if `format_outputs` should mask the value.
    """

    name: str
    value: Any
    sensitive: bool = False


class Declarations:
    """An ordered set of declared nodes and outputs.

    Nodes are kept in the order they were defined. Identity is unique
    within a set.
    """

    def __init__(self, nodes: Iterable[ResourceNode] = ()) -> None:
        self._nodes: dict[Identity, ResourceNode] = {}
        self._outputs: dict[str, Output] = {}
        for node in nodes:
            self.add(node)

    def define_node(
        self,
        kind: str,
        name: str,
        attributes: Mapping[str, Any] | None = None,
        depends_on: Iterable[Identity | str] = (),
    ) -> ResourceNode:
        """Declare a new node.

        Args:
            kind: The resource kind.
            name: The local name.
            attributes: Field values, possibly embedding references.
            depends_on: Explicit extra dependencies, as identities or
                ``kind.name`` addresses.

        Returns:
            The declared node.

        Raises:
            DuplicateIdentityError: If (kind, name) is already declared.
        """
        node = ResourceNode(
            kind,
            name,
            dict(attributes or {}),
            tuple(Identity.coerce(dep) for dep in depends_on),
        )
        return self.add(node)

    def add(self, node: ResourceNode) -> ResourceNode:
        """Add an already built node.

        Raises:
            DuplicateIdentityError: If the node's identity is already declared.
        """
        identity = node.identity
        if identity in self._nodes:
            raise DuplicateIdentityError(identity)
        self._nodes[identity] = node
        logger.debug(f"Declared {identity}")
        return node

    def output(self, name: str, value: Any, sensitive: bool = False) -> Output:
        """Declare an output value.

        Raises:
            ValueError: If an output with this name already exists.
        """
        if name in self._outputs:
            raise ValueError(f"Output {name!r} is already declared")
        out = Output(name, value, sensitive)
        self._outputs[name] = out
        return out

    @property
    def nodes(self) -> list[ResourceNode]:
        return list(self._nodes.values())

    @property
    def outputs(self) -> list[Output]:
        return list(self._outputs.values())

    def get(self, identity: Identity | str) -> ResourceNode | None:
        return self._nodes.get(Identity.coerce(identity))

    def __contains__(self, identity: object) -> bool:
        if isinstance(identity, str):
            identity = Identity.parse(identity)
        return identity in self._nodes

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)
