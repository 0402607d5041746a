"""
Field immutability policy.

Which fields force a replacement when they change is a property of the
target provider, not of the declarations, so it is supplied as a table::

    {
      "aws_subnet": ["vpc_id", "cidr_block", "availability_zone"],
      "aws_instance": ["ami", "subnet_id"],
      "*": ["name"]
    }

The ``"*"`` entry applies to every kind.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Iterable, Mapping

from pydantic import BaseModel, Field, ValidationError

__all__ = ["ImmutabilityPolicy"]

ANY_KIND = "*"


class ImmutabilityPolicy(BaseModel, frozen=True):
    """Immutable field names per resource kind.

    Attributes:
        immutable: Maps a kind (or ``"*"``) to the fields that cannot be
            updated in place.
    """

    immutable: dict[str, frozenset[str]] = Field(default_factory=dict)

    @classmethod
    def from_mapping(cls, table: Mapping[str, Iterable[str]]) -> ImmutabilityPolicy:
        return cls(immutable={kind: frozenset(names) for kind, names in table.items()})

    @classmethod
    def from_file(cls, path: str | os.PathLike[str]) -> ImmutabilityPolicy:
        """Load a policy table from a JSON file.

        Raises:
            ValueError: If the file does not hold a kind -> field list table.
        """
        try:
            table = json.loads(Path(path).read_text(encoding="utf-8"))
            return cls.from_mapping(table)
        except (json.JSONDecodeError, ValidationError, TypeError, AttributeError) as ex:
            raise ValueError(f"Invalid immutability policy {path}: {ex}") from ex

    def is_immutable(self, kind: str, field: str) -> bool:
        return field in self.immutable.get(kind, ()) or field in self.immutable.get(ANY_KIND, ())
