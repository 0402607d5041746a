#!/usr/bin/env python3
"""Demo: Plan, Apply and Replace with graph-plan

This example declares a small network, plans it against empty state,
applies it through an in-memory provider, and then changes an immutable
field to show a replacement plan.

Run with: python examples/demo.py
"""

import itertools
import logging
from typing import Any, Mapping, Sequence

from graph_plan import (
    Attr,
    AttributeChange,
    Declarations,
    ImmutabilityPolicy,
    RecordedState,
    ResourceNode,
    apply,
    format_outputs,
    format_plan,
    get_refs,
    plan,
    resolve_references,
)


# =============================================================================
# PART 1: A Provider Adapter
# =============================================================================
#
# A real adapter would call a cloud API. This one hands out ids and
# reports a public address for instances.


class DemoProvider:
    """Pretends to create resources and returns their computed fields."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)

    def create(self, node: ResourceNode) -> Mapping[str, Any]:
        computed: dict[str, Any] = {"id": f"{node.kind.split('_', 1)[-1]}-{next(self._ids):04d}"}
        if node.kind == "aws_instance":
            computed["public_ip"] = "203.0.113.10"
            computed["private_key"] = "-----BEGIN KEY-----"
        return computed

    def update(self, node: ResourceNode, diff: Sequence[AttributeChange]) -> Mapping[str, Any]:
        return {}

    def delete(self, node: ResourceNode) -> None:
        pass


POLICY = ImmutabilityPolicy.from_mapping(
    {
        "aws_subnet": ["vpc_id", "cidr_block"],
        "aws_instance": ["ami", "subnet_id"],
    }
)


# =============================================================================
# PART 2: Declarations
# =============================================================================


def declare(subnet_cidr: str = "10.0.1.0/24") -> Declarations:
    decls = Declarations()
    decls.define_node("aws_vpc", "main", {"cidr_block": "10.0.0.0/16"})
    decls.define_node(
        "aws_subnet",
        "public",
        {"vpc_id": Attr["aws_vpc.main", "id"], "cidr_block": subnet_cidr},
    )
    decls.define_node(
        "aws_security_group",
        "web",
        {"vpc_id": Attr["aws_vpc.main", "id"], "ingress_ports": [22, 80]},
    )
    decls.define_node(
        "aws_instance",
        "web",
        {
            "ami": "ami-0abcdef",
            "instance_type": "t3.micro",
            "subnet_id": Attr["aws_subnet.public", "id"],
            "vpc_security_group_ids": [Attr["aws_security_group.web", "id"]],
        },
    )
    decls.output("instance_id", Attr["aws_instance.web", "id"])
    decls.output("public_ip", Attr["aws_instance.web", "public_ip"])
    decls.output("private_key", Attr["aws_instance.web", "private_key"], sensitive=True)
    return decls


# =============================================================================
# PART 3: Plan and Apply
# =============================================================================


def demo_apply() -> RecordedState:
    print("=" * 70)
    print("Initial plan against empty state")
    print("=" * 70)

    decls = declare()
    graph = resolve_references(decls.nodes, decls.outputs)

    print("\n   References found:\n")
    for node in graph:
        for info in get_refs(node):
            print(f"   {info.source} -> {info.target}.{info.field or ''}")

    items = plan(graph, RecordedState(), POLICY)
    print()
    print(format_plan(items))

    state = apply(items, DemoProvider())
    print("\n   Outputs:\n")
    for line in format_outputs(decls.outputs, state).splitlines():
        print(f"   {line}")
    return state


# =============================================================================
# PART 4: Replacement
# =============================================================================


def demo_replace(state: RecordedState) -> None:
    print("\n" + "=" * 70)
    print("Changing the subnet CIDR forces replacement")
    print("=" * 70 + "\n")

    decls = declare(subnet_cidr="10.0.2.0/24")
    items = plan(resolve_references(decls.nodes), state, POLICY)
    print(format_plan(items))


if __name__ == "__main__":
    logging.basicConfig(level=logging.WARNING)
    demo_replace(demo_apply())
