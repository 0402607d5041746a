"""Shared fixtures: an in-memory provider and a small network declaration."""

import itertools
import threading
from typing import Any, Mapping, Sequence

import pytest

from graph_plan import (
    Attr,
    AttributeChange,
    Declarations,
    ProviderError,
    ResourceNode,
)


class FakeProvider:
    """Provider adapter that records calls and hands out sequential ids.

    Args:
        fail: Address -> exception raised on every call for that node.
        flaky: Address -> number of retryable failures before succeeding.
        slow: Addresses whose calls block until `release` is set.
        extra: Kind -> extra computed attributes returned on create.
    """

    def __init__(
        self,
        fail: Mapping[str, BaseException] | None = None,
        flaky: Mapping[str, int] | None = None,
        slow: Sequence[str] = (),
        extra: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        self.fail = dict(fail or {})
        self.flaky = dict(flaky or {})
        self.slow = set(slow)
        self.extra = dict(extra or {})
        self.release = threading.Event()
        self.calls: list[tuple[str, str]] = []
        self.nodes: list[ResourceNode] = []
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def _enter(self, action: str, node: ResourceNode) -> None:
        with self._lock:
            self.calls.append((action, node.address))
            self.nodes.append(node)
        if node.address in self.slow:
            self.release.wait(10)
        if node.address in self.fail:
            raise self.fail[node.address]
        if self.flaky.get(node.address, 0) > 0:
            self.flaky[node.address] -= 1
            raise ProviderError(f"{node.address} throttled", retryable=True)

    def create(self, node: ResourceNode) -> Mapping[str, Any]:
        self._enter("create", node)
        with self._lock:
            ident = f"{node.kind}-{next(self._ids)}"
        return {**node.attributes, "id": ident, **self.extra.get(node.kind, {})}

    def update(self, node: ResourceNode, diff: Sequence[AttributeChange]) -> Mapping[str, Any]:
        self._enter("update", node)
        return dict(node.attributes)

    def delete(self, node: ResourceNode) -> None:
        self._enter("delete", node)


@pytest.fixture()
def provider():
    fake = FakeProvider()
    yield fake
    fake.release.set()


@pytest.fixture()
def network_decls() -> Declarations:
    """Net <- Sub <- Inst, each referencing the previous one's id."""
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
    return decls
