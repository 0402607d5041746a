"""Tests for applying plans."""

import pytest
from conftest import FakeProvider

from graph_plan import (
    ApplyTimeoutError,
    Attr,
    Declarations,
    Executor,
    ExecutorConfig,
    Identity,
    ImmutabilityPolicy,
    ItemStatus,
    PartialApplyError,
    ProviderError,
    RecordedState,
    StateError,
    StateStore,
    UnknownReferenceError,
    apply,
    plan,
    resolve_references,
)

VPC = Identity("aws_vpc", "main")
SUBNET = Identity("aws_subnet", "public")
INSTANCE = Identity("aws_instance", "web")


def _plan(decls: Declarations, state: RecordedState | None = None, policy=None):
    return plan(resolve_references(decls.nodes), state or RecordedState(), policy)


def _statuses(error: PartialApplyError) -> dict[str, str]:
    return {str(o.item.identity): o.status.value for o in error.outcomes}


class TestApply:
    """Tests for successful applies."""

    def test_example_scenario(self, network_decls: Declarations, provider: FakeProvider) -> None:
        """Applying the create plan records exactly the three nodes."""
        state = apply(_plan(network_decls), provider)
        assert set(state) == {VPC, SUBNET, INSTANCE}
        assert provider.calls == [
            ("create", "aws_vpc.main"),
            ("create", "aws_subnet.public"),
            ("create", "aws_instance.web"),
        ]
        assert state[VPC] == {"cidr_block": "10.0.0.0/16", "id": "aws_vpc-1"}
        assert state[SUBNET]["vpc_id"] == "aws_vpc-1"
        assert state[INSTANCE]["subnet_id"] == "aws_subnet-2"
        assert state.dependencies_of(INSTANCE) == (SUBNET,)

    def test_provider_sees_resolved_attributes(
        self, network_decls: Declarations, provider: FakeProvider
    ) -> None:
        """References are replaced by concrete values before the call."""
        apply(_plan(network_decls), provider)
        subnet_node = provider.nodes[1]
        assert subnet_node.attributes == {"vpc_id": "aws_vpc-1", "cidr_block": "10.0.1.0/24"}

    def test_round_trip_is_no_op(self, network_decls: Declarations, provider: FakeProvider) -> None:
        """After apply, planning again yields only no-ops, which skip the provider."""
        state = apply(_plan(network_decls), provider)
        items = _plan(network_decls, state)
        assert {item.action.value for item in items} == {"no-op"}
        calls = len(provider.calls)
        apply(items, provider, state)
        assert len(provider.calls) == calls

    def test_update_keeps_provider_fields(
        self, network_decls: Declarations, provider: FakeProvider
    ) -> None:
        """An update merges over the recorded attributes."""
        state = apply(_plan(network_decls), provider)
        network_decls.get("aws_instance.web").attributes["ami"] = "ami-456"
        items = _plan(network_decls, state)
        apply(items, provider, state)
        assert provider.calls[-1] == ("update", "aws_instance.web")
        assert state[INSTANCE]["ami"] == "ami-456"
        assert state[INSTANCE]["id"] == "aws_instance-3"

    def test_delete_forgets(self, network_decls: Declarations, provider: FakeProvider) -> None:
        """Destroying everything empties the state in reverse order."""
        state = apply(_plan(network_decls), provider)
        apply(_plan(Declarations(), state), provider, state)
        assert len(state) == 0
        assert provider.calls[-3:] == [
            ("delete", "aws_instance.web"),
            ("delete", "aws_subnet.public"),
            ("delete", "aws_vpc.main"),
        ]

    def test_replace_gets_new_id(self, provider: FakeProvider) -> None:
        """A replace deletes the old node and records the new one."""
        decls = Declarations()
        decls.define_node("aws_vpc", "main", {"cidr_block": "10.1.0.0/16"})
        state = RecordedState({VPC: {"cidr_block": "10.0.0.0/16", "id": "vpc-old"}})
        policy = ImmutabilityPolicy.from_mapping({"aws_vpc": ["cidr_block"]})
        apply(_plan(decls, state, policy), provider, state)
        assert provider.calls == [("delete", "aws_vpc.main"), ("create", "aws_vpc.main")]
        assert provider.nodes[0].attributes["id"] == "vpc-old"
        assert state[VPC] == {"cidr_block": "10.1.0.0/16", "id": "aws_vpc-1"}

    def test_executor_class(self, network_decls: Declarations, provider: FakeProvider) -> None:
        """Executor.apply updates the given state in place."""
        state = RecordedState()
        result = Executor(provider).apply(_plan(network_decls), state)
        assert result is state
        assert len(state) == 3

    def test_no_op_records_new_dependencies(self, provider: FakeProvider) -> None:
        """A reference that resolves to the same value still orders the destroy."""
        subnet = Identity("aws_subnet", "y")
        vpc = Identity("aws_vpc", "x")
        decls = Declarations()
        decls.define_node("aws_subnet", "y", {"cidr_block": "10.0.0.0/16"})
        decls.define_node("aws_vpc", "x", {"cidr_block": "10.0.0.0/16"})
        state = apply(_plan(decls), provider)
        assert state.dependencies_of(subnet) == ()

        decls = Declarations()
        decls.define_node("aws_subnet", "y", {"cidr_block": Attr["aws_vpc.x", "cidr_block"]})
        decls.define_node("aws_vpc", "x", {"cidr_block": "10.0.0.0/16"})
        items = _plan(decls, state)
        assert {item.action.value for item in items} == {"no-op"}
        apply(items, provider, state)
        assert state.dependencies_of(subnet) == (vpc,)

        destroy = _plan(Declarations(), state)
        assert [str(item.identity) for item in destroy] == ["aws_subnet.y", "aws_vpc.x"]


class TestPartialFailure:
    """Tests for failures during apply."""

    def test_chain_failure(self, network_decls: Declarations) -> None:
        """A applied, B failed, C skipped; state holds only A."""
        provider = FakeProvider(fail={"aws_subnet.public": RuntimeError("quota exceeded")})
        with pytest.raises(PartialApplyError) as exc_info:
            apply(_plan(network_decls), provider)
        error = exc_info.value
        assert _statuses(error) == {
            "aws_vpc.main": "applied",
            "aws_subnet.public": "failed",
            "aws_instance.web": "skipped",
        }
        assert set(error.state) == {VPC}
        assert [str(o.item.identity) for o in error.failed] == ["aws_subnet.public"]
        assert [o.blocked_by for o in error.skipped] == ["create:aws_subnet.public"]
        assert ("create", "aws_instance.web") not in provider.calls

    def test_provider_exception_is_wrapped(self, network_decls: Declarations) -> None:
        """Arbitrary provider exceptions become ProviderError with a cause."""
        cause = RuntimeError("boom")
        provider = FakeProvider(fail={"aws_vpc.main": cause})
        with pytest.raises(PartialApplyError) as exc_info:
            apply(_plan(network_decls), provider)
        (failed,) = exc_info.value.failed
        assert isinstance(failed.error, ProviderError)
        assert failed.error.identity == VPC
        assert failed.error.__cause__ is cause

    def test_independent_branch_still_applied(self) -> None:
        """A failure does not stop nodes that do not depend on it."""
        decls = Declarations()
        decls.define_node("aws_iam_role", "app", {"name": "app"})
        decls.define_node("aws_iam_role_policy", "app", {"role": Attr["aws_iam_role.app", "name"]})
        decls.define_node("aws_vpc", "main", {"cidr_block": "10.0.0.0/16"})
        decls.define_node("aws_subnet", "public", {"vpc_id": Attr["aws_vpc.main", "id"]})
        provider = FakeProvider(fail={"aws_iam_role.app": ProviderError("denied")})
        with pytest.raises(PartialApplyError) as exc_info:
            apply(_plan(decls), provider)
        assert _statuses(exc_info.value) == {
            "aws_iam_role.app": "failed",
            "aws_iam_role_policy.app": "skipped",
            "aws_vpc.main": "applied",
            "aws_subnet.public": "applied",
        }
        assert set(exc_info.value.state) == {VPC, SUBNET}

    def test_failed_delete_keeps_dependency(self, network_decls: Declarations) -> None:
        """If deleting a dependent fails, its dependencies are not deleted."""
        state = apply(_plan(network_decls), FakeProvider())
        provider = FakeProvider(fail={"aws_instance.web": ProviderError("in use")})
        with pytest.raises(PartialApplyError) as exc_info:
            apply(_plan(Declarations(), state), provider, state)
        assert _statuses(exc_info.value) == {
            "aws_instance.web": "failed",
            "aws_subnet.public": "skipped",
            "aws_vpc.main": "skipped",
        }
        assert set(state) == {VPC, SUBNET, INSTANCE}

    def test_missing_provider_field_fails_dependent(self) -> None:
        """A reference to a field the provider never returned fails that item."""
        decls = Declarations()
        decls.define_node("aws_vpc", "main", {"cidr_block": "10.0.0.0/16"})
        decls.define_node("aws_subnet", "public", {"vpc_arn": Attr["aws_vpc.main", "arn"]})
        with pytest.raises(PartialApplyError) as exc_info:
            apply(_plan(decls), FakeProvider())
        (failed,) = exc_info.value.failed
        assert isinstance(failed.error, UnknownReferenceError)
        assert set(exc_info.value.state) == {VPC}

    def test_non_mapping_result_fails(self, network_decls: Declarations) -> None:
        """A provider must return the concrete attributes as a mapping."""

        class BadProvider(FakeProvider):
            def create(self, node):
                super().create(node)
                return None

        with pytest.raises(PartialApplyError) as exc_info:
            apply(_plan(network_decls), BadProvider())
        assert isinstance(exc_info.value.failed[0].error, ProviderError)
        assert len(exc_info.value.state) == 0


class TestTimeoutAndRetry:
    """Tests for bounded and retried provider calls."""

    def test_timeout_fails_item(self, network_decls: Declarations) -> None:
        """A call past the timeout fails and its late result is never recorded."""
        provider = FakeProvider(slow=["aws_subnet.public"])
        config = ExecutorConfig(apply_timeout=0.2)
        try:
            with pytest.raises(PartialApplyError) as exc_info:
                apply(_plan(network_decls), provider, config=config)
        finally:
            provider.release.set()
        error = exc_info.value
        (failed,) = error.failed
        assert isinstance(failed.error, ApplyTimeoutError)
        assert isinstance(failed.error, TimeoutError)
        assert _statuses(error)["aws_instance.web"] == "skipped"
        assert set(error.state) == {VPC}

    def test_retryable_errors_are_retried(self, network_decls: Declarations) -> None:
        """Transient failures are retried up to the configured attempts."""
        provider = FakeProvider(flaky={"aws_vpc.main": 2})
        config = ExecutorConfig(retry_attempts=3)
        state = apply(_plan(network_decls), provider, config=config)
        assert provider.calls.count(("create", "aws_vpc.main")) == 3
        assert len(state) == 3

    def test_retries_exhausted(self, network_decls: Declarations) -> None:
        """When attempts run out the last error fails the item."""
        provider = FakeProvider(flaky={"aws_vpc.main": 5})
        config = ExecutorConfig(retry_attempts=2)
        with pytest.raises(PartialApplyError) as exc_info:
            apply(_plan(network_decls), provider, config=config)
        assert provider.calls.count(("create", "aws_vpc.main")) == 2
        assert exc_info.value.failed[0].error.retryable is True

    def test_permanent_errors_not_retried(self, network_decls: Declarations) -> None:
        """Errors not marked retryable get a single attempt."""
        provider = FakeProvider(fail={"aws_vpc.main": ProviderError("invalid cidr")})
        config = ExecutorConfig(retry_attempts=5)
        with pytest.raises(PartialApplyError):
            apply(_plan(network_decls), provider, config=config)
        assert provider.calls.count(("create", "aws_vpc.main")) == 1


class TestConcurrentApply:
    """Tests for applying independent items in parallel."""

    def _two_chains(self) -> Declarations:
        decls = Declarations()
        for side in ["a", "b"]:
            decls.define_node("aws_vpc", side, {"cidr_block": f"10.{ord(side)}.0.0/16"})
            decls.define_node("aws_subnet", side, {"vpc_id": Attr[f"aws_vpc.{side}", "id"]})
            decls.define_node("aws_instance", side, {"subnet_id": Attr[f"aws_subnet.{side}", "id"]})
        return decls

    def test_all_applied(self) -> None:
        """Parallel apply records every node with dependencies respected."""
        provider = FakeProvider()
        state = apply(_plan(self._two_chains()), provider, config=ExecutorConfig(max_workers=4))
        assert len(state) == 6
        for side in ["a", "b"]:
            order = [call for call in provider.calls if call[1].endswith(f".{side}")]
            assert [address for _, address in order] == [
                f"aws_vpc.{side}",
                f"aws_subnet.{side}",
                f"aws_instance.{side}",
            ]

    def test_failure_stays_in_its_branch(self) -> None:
        """A failed branch skips its own dependents only."""
        provider = FakeProvider(fail={"aws_subnet.a": ProviderError("no capacity")})
        with pytest.raises(PartialApplyError) as exc_info:
            apply(_plan(self._two_chains()), provider, config=ExecutorConfig(max_workers=2))
        statuses = _statuses(exc_info.value)
        assert statuses["aws_subnet.a"] == "failed"
        assert statuses["aws_instance.a"] == "skipped"
        assert [statuses[f"{k}.b"] for k in ["aws_vpc", "aws_subnet", "aws_instance"]] == [
            "applied"
        ] * 3
        assert len(exc_info.value.state) == 4


class TestPersistence:
    """Tests for saving state during apply."""

    def test_state_saved_per_item(self, network_decls: Declarations, tmp_path) -> None:
        """Each committed item bumps the persisted serial."""
        store = StateStore(tmp_path / "state.json")
        apply(_plan(network_decls), FakeProvider(), store=store)
        loaded = store.load()
        assert set(loaded) == {VPC, SUBNET, INSTANCE}
        assert loaded.serial == 3
        assert loaded.dependencies_of(SUBNET) == (VPC,)

    def test_partial_apply_persists_applied_only(self, network_decls: Declarations, tmp_path) -> None:
        """After a failure the file reflects exactly what succeeded."""
        store = StateStore(tmp_path / "state.json")
        provider = FakeProvider(fail={"aws_subnet.public": ProviderError("nope")})
        with pytest.raises(PartialApplyError):
            apply(_plan(network_decls), provider, store=store)
        assert set(store.load()) == {VPC}

    def test_state_loaded_from_store(self, network_decls: Declarations, tmp_path) -> None:
        """Without an explicit state the executor starts from the store."""
        store = StateStore(tmp_path / "state.json")
        first = apply(_plan(network_decls), FakeProvider(), store=store)
        provider = FakeProvider()
        result = Executor(provider, store=store).apply(_plan(network_decls, first))
        assert provider.calls == []
        assert set(result) == set(first)

    def test_unwritable_store_fails_item(self, network_decls: Declarations, tmp_path) -> None:
        """A save error fails the item and skips its dependents."""
        (tmp_path / "blocker").write_text("")
        store = StateStore(tmp_path / "blocker" / "state.json")
        with pytest.raises(PartialApplyError) as exc_info:
            apply(_plan(network_decls), FakeProvider(), RecordedState(), store=store)
        error = exc_info.value
        assert _statuses(error) == {
            "aws_vpc.main": "failed",
            "aws_subnet.public": "skipped",
            "aws_instance.web": "skipped",
        }
        assert isinstance(error.failed[0].error, StateError)
        assert set(error.state) == {VPC}

    def test_store_from_config(self, network_decls: Declarations, tmp_path) -> None:
        """A configured state path is used when no store is passed."""
        path = tmp_path / "state" / "prod.json"
        config = ExecutorConfig(state_path=str(path))
        apply(_plan(network_decls), FakeProvider(), config=config)
        assert set(StateStore(path).load()) == {VPC, SUBNET, INSTANCE}


def test_item_status_values() -> None:
    """Statuses follow pending -> in-progress -> applied | failed, or skipped."""
    assert [s.value for s in ItemStatus] == [
        "pending",
        "in-progress",
        "applied",
        "failed",
        "skipped",
    ]
