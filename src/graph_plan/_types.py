"""
Identity and reference types.

This module defines the value types that tie declarations together:

- `Identity`: the (kind, name) pair that names a node
- `Reference`: a placeholder inside an attribute value that points at
  another node, or at one field of another node
- `Ref["kind.name"]` and `Attr["kind.name", "field"]`: subscript shorthands
  that build references
- `UNKNOWN`: the value of a field that will only be known after apply

Example:
    Building references with subscript syntax::

        from graph_plan import Attr, Ref

        vpc_id = Attr["aws_vpc.main", "id"]
        assert vpc_id.target.kind == "aws_vpc"
        assert vpc_id.field == "id"

        whole = Ref["aws_vpc.main"]
        assert whole.field is None
"""

from dataclasses import dataclass
from typing import Any

__all__ = [
    "Identity",
    "Reference",
    "Ref",
    "Attr",
    "UNKNOWN",
]


@dataclass(frozen=True, order=True)
class Identity:
    """The identity of a declared node.

    Attributes:
        kind: The resource kind, for example ``aws_subnet``.
        name: The local name, unique among nodes of the same kind.

    Example:
        Parsing and printing addresses::

            ident = Identity.parse("aws_subnet.public")
            assert ident == Identity("aws_subnet", "public")
            assert str(ident) == "aws_subnet.public"
    """

    kind: str
    name: str

    def __post_init__(self) -> None:
        if not self.kind or not self.name:
            raise ValueError("Identity requires a non-empty kind and name")
        if "." in self.kind:
            raise ValueError(f"Identity kind must not contain '.': {self.kind!r}")

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"

    @property
    def address(self) -> str:
        """The ``kind.name`` address string."""
        return str(self)

    @classmethod
    def parse(cls, address: str) -> "Identity":
        """Parse a ``kind.name`` address.

        Args:
            address: The address string.

        Returns:
            The parsed Identity.

        Raises:
            ValueError: If the address has no ``.`` separator.
        """
        kind, sep, name = address.partition(".")
        if not sep:
            raise ValueError(f"Invalid address {address!r}, expected 'kind.name'")
        return cls(kind, name)

    @classmethod
    def coerce(cls, value: "Identity | str") -> "Identity":
        """Return `value` as an Identity, parsing it if it is a string."""
        if isinstance(value, Identity):
            return value
        return cls.parse(value)


@dataclass(frozen=True)
class Reference:
    """A placeholder pointing at another node.

    A reference with a `field` resolves to the concrete value of that field
    in the target's recorded state, for example a provider-assigned ``id``.
    A reference without a field expresses a plain dependency on the whole
    node and resolves to the target's address string.

    Attributes:
        target: The identity of the referenced node.
        field: The referenced field, or None for a whole-node reference.
    """

    target: Identity
    field: str | None = None

    def __str__(self) -> str:
        if self.field is None:
            return str(self.target)
        return f"{self.target}.{self.field}"


class _RefMeta(type):
    """Metaclass that enables Ref["kind.name"] subscript syntax."""

    def __getitem__(cls, target: Identity | str) -> Reference:
        return Reference(Identity.coerce(target))


class Ref(metaclass=_RefMeta):
    """Shorthand for a whole-node reference.

    ``Ref["aws_vpc.main"]`` is ``Reference(Identity("aws_vpc", "main"))``.

    See Also:
        - `Attr`: For references to a single field.
    """

    __slots__ = ()


class _AttrMeta(type):
    """Metaclass that enables Attr["kind.name", "field"] subscript syntax."""

    def __getitem__(cls, args: tuple[Identity | str, str]) -> Reference:
        if not isinstance(args, tuple) or len(args) != 2:
            raise TypeError("Attr requires exactly two arguments: Attr['kind.name', 'field']")
        target, field = args
        if not isinstance(field, str) or not field:
            raise TypeError("Attr field must be a non-empty string")
        return Reference(Identity.coerce(target), field)


class Attr(metaclass=_AttrMeta):
    """Shorthand for a reference to one field of another node.

    ``Attr["aws_vpc.main", "id"]`` is
    ``Reference(Identity("aws_vpc", "main"), "id")``.
    """

    __slots__ = ()


class _Unknown:
    """Singleton type of `UNKNOWN`."""

    _instance: "_Unknown | None" = None

    def __new__(cls) -> "_Unknown":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __copy__(self) -> "_Unknown":
        return self

    def __deepcopy__(self, memo: dict[int, Any]) -> "_Unknown":
        return self


UNKNOWN: Any = _Unknown()
