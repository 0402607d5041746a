"""
Recorded state and its persisted form.

`RecordedState` maps each applied node to its last-known concrete
attributes, provider-assigned fields included, and remembers which nodes it
depended on when it was applied. The executor is its only writer; every
mutation goes through a lock so concurrent applies commit one at a time.

`StateStore` persists a state as a JSON document::

    {
      "version": 1,
      "serial": 3,
      "resources": {"aws_vpc.main": {"id": "vpc-1", "cidr_block": "10.0.0.0/16"}},
      "dependencies": {"aws_subnet.public": ["aws_vpc.main"]}
    }
"""

from __future__ import annotations

import copy
import os
import tempfile
import threading
from collections.abc import Mapping
from logging import getLogger
from pathlib import Path
from typing import Any, Iterable, Iterator, Literal

from pydantic import BaseModel, Field, ValidationError

from graph_plan._errors import StateError
from graph_plan._types import Identity

__all__ = [
    "RecordedState",
    "StateDocument",
    "StateStore",
]

logger = getLogger(__name__)


class StateDocument(BaseModel):
    """The serialized form of a `RecordedState`."""

    version: Literal[1] = 1
    serial: int = Field(default=0, ge=0)
    resources: dict[str, dict[str, Any]] = Field(default_factory=dict)
    dependencies: dict[str, list[str]] = Field(default_factory=dict)


class RecordedState(Mapping):
    """Last-known concrete attributes per node identity.

    Reads behave like a read-only mapping from `Identity` to attributes.
    Writes go through `record` and `forget`, which hold a lock.
    """

    def __init__(
        self,
        resources: Mapping[Identity | str, Mapping[str, Any]] | None = None,
        dependencies: Mapping[Identity | str, Iterable[Identity | str]] | None = None,
        serial: int = 0,
    ) -> None:
        self._lock = threading.Lock()
        self._resources: dict[Identity, dict[str, Any]] = {}
        self._dependencies: dict[Identity, tuple[Identity, ...]] = {}
        self.serial = serial
        for ident, attributes in (resources or {}).items():
            self._resources[Identity.coerce(ident)] = copy.deepcopy(dict(attributes))
        for ident, deps in (dependencies or {}).items():
            self._dependencies[Identity.coerce(ident)] = tuple(Identity.coerce(d) for d in deps)

    def __getitem__(self, identity: Identity) -> dict[str, Any]:
        return self._resources[identity]

    def __iter__(self) -> Iterator[Identity]:
        return iter(list(self._resources))

    def __len__(self) -> int:
        return len(self._resources)

    def __repr__(self) -> str:
        return f"RecordedState({', '.join(str(i) for i in self._resources)})"

    def dependencies_of(self, identity: Identity) -> tuple[Identity, ...]:
        """Identities `identity` depended on when it was last applied."""
        return self._dependencies.get(identity, ())

    def record(
        self,
        identity: Identity,
        attributes: Mapping[str, Any],
        dependencies: Iterable[Identity] = (),
    ) -> None:
        """Store the concrete attributes of a successfully applied node."""
        with self._lock:
            self._resources[identity] = copy.deepcopy(dict(attributes))
            self._dependencies[identity] = tuple(dependencies)

    def forget(self, identity: Identity) -> None:
        """Drop a node after it was successfully deleted."""
        with self._lock:
            self._resources.pop(identity, None)
            self._dependencies.pop(identity, None)

    def copy(self) -> RecordedState:
        with self._lock:
            return RecordedState(self._resources, self._dependencies, self.serial)

    def to_document(self) -> StateDocument:
        with self._lock:
            return StateDocument(
                serial=self.serial,
                resources={str(i): copy.deepcopy(a) for i, a in self._resources.items()},
                dependencies={
                    str(i): [str(d) for d in deps]
                    for i, deps in self._dependencies.items()
                    if deps
                },
            )

    @classmethod
    def from_document(cls, document: StateDocument) -> RecordedState:
        try:
            return cls(document.resources, document.dependencies, document.serial)
        except ValueError as ex:
            raise StateError(f"Invalid address in state document: {ex}") from ex


class StateStore:
    """Loads and atomically saves a `RecordedState` as a JSON file.

    Saving writes a temporary file next to the target and renames it into
    place, so readers see either the old document or the new one.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)

    def load(self) -> RecordedState:
        """Load the state, or an empty state if the file does not exist.

        Raises:
            StateError: If the file is not a valid state document.
        """
        if not self.path.exists():
            logger.debug(f"No state at {self.path}, starting empty")
            return RecordedState()
        try:
            document = StateDocument.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValidationError as ex:
            raise StateError(f"Invalid state document {self.path}: {ex}") from ex
        return RecordedState.from_document(document)

    def save(self, state: RecordedState) -> None:
        """Persist `state`, bumping its serial."""
        state.serial += 1
        payload = state.to_document().model_dump_json(indent=2)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as tmp:
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved state serial {state.serial} to {self.path}")
