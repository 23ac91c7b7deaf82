"""Tests for instance snapshots, state persistence and idempotency keys."""
from datetime import timedelta

import pytest

from farmflow.error_coordination.errors import FailureKind, InvalidTransitionError
from farmflow.error_coordination.fallback import WorkflowError
from farmflow.models.context import ExecutionContext
from farmflow.orchestration.idempotency import (
    InMemoryIdempotencyStore,
    SqliteIdempotencyStore,
    derive_idempotency_key,
    derive_request_key,
)
from farmflow.orchestration.state_manager import InMemoryStateManager, PersistentStateManager
from farmflow.orchestration.templates import CropDiagnosisWorkflow, PriceLookupWorkflow
from farmflow.orchestration.workflow_engine.steps import (
    StepRecord,
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
)


@pytest.fixture
def instance(context):
    return WorkflowInstance.create(PriceLookupWorkflow.create(), {"text": "price of onion in pune"}, context)


class TestStepRecord:
    def test_lifecycle(self):
        record = StepRecord("fetch_price")
        record.transition(StepStatus.RUNNING)
        record.succeed({"price": 1800})

        assert record.is_terminal
        assert record.output == {"price": 1800}
        assert record.get_duration() is not None

    @pytest.mark.parametrize("finish", ["succeed", "fail", "skip"])
    def test_terminal_states_are_final(self, finish):
        record = StepRecord("fetch_price")
        record.transition(StepStatus.RUNNING)
        {
            "succeed": lambda: record.succeed(None),
            "fail": lambda: record.fail(FailureKind.PERMANENT, "rejected"),
            "skip": lambda: record.skip("not needed"),
        }[finish]()

        with pytest.raises(InvalidTransitionError):
            record.transition(StepStatus.RUNNING)
        with pytest.raises(InvalidTransitionError):
            record.succeed("late output")


class TestWorkflowInstance:
    def test_create_copies_input_and_builds_records(self, context):
        data = {"text": "price of onion"}
        instance = WorkflowInstance.create(PriceLookupWorkflow.create(), data, context)
        data["text"] = "changed"

        assert instance.input == {"text": "price of onion"}
        assert set(instance.steps) == {"parse_query", "fetch_price", "compose_response"}
        assert instance.status is WorkflowStatus.RUNNING
        assert all(r.status is StepStatus.PENDING for r in instance.steps.values())

    def test_terminal_once(self, instance):
        instance.mark_succeeded({"compose_response": {"text": "ok"}})

        with pytest.raises(InvalidTransitionError):
            instance.mark_failed(WorkflowError.build(None, FailureKind.CANCELLED, "late cancel"))
        assert instance.status is WorkflowStatus.SUCCEEDED

    def test_snapshot_is_detached(self, instance):
        snapshot = instance.snapshot()
        snapshot.steps["parse_query"].status = StepStatus.RUNNING

        assert instance.steps["parse_query"].status is StepStatus.PENDING

    def test_dict_roundtrip_keeps_failure_and_grant(self, instance):
        instance.steps["fetch_price"].transition(StepStatus.RUNNING)
        instance.steps["fetch_price"].fail(FailureKind.TRANSIENT, "HTTP 503")
        instance.mark_failed(WorkflowError.build("fetch_price", FailureKind.TRANSIENT, "HTTP 503"))

        restored = WorkflowInstance.from_dict(instance.to_dict())

        assert restored.status is WorkflowStatus.FAILED
        assert restored.error == instance.error
        assert restored.steps["fetch_price"].failure_kind is FailureKind.TRANSIENT
        assert restored.context.grant_value() == "grant-token"
        assert restored.context.correlation_id == "corr-1"


class TestStateManagers:
    @pytest.fixture(params=["memory", "sqlite"])
    def manager(self, request, tmp_path):
        if request.param == "memory":
            return InMemoryStateManager()
        return PersistentStateManager(tmp_path / "workflows.db")

    def test_save_and_load(self, manager, instance):
        assert manager.save_state(instance)
        loaded = manager.load_state(instance.instance_id)

        assert loaded is not instance
        assert loaded.instance_id == instance.instance_id
        assert loaded.input == instance.input
        assert manager.list_states() == {instance.instance_id: WorkflowStatus.RUNNING}

    def test_save_overwrites(self, manager, instance):
        manager.save_state(instance)
        instance.mark_succeeded({"compose_response": {"text": "ok"}})
        manager.save_state(instance)

        assert manager.load_state(instance.instance_id).status is WorkflowStatus.SUCCEEDED

    def test_delete(self, manager, instance):
        manager.save_state(instance)

        assert manager.delete_state(instance.instance_id) is True
        assert manager.delete_state(instance.instance_id) is False
        assert manager.load_state(instance.instance_id) is None

    def test_in_memory_keeps_running_and_bounds_finished(self, context):
        manager = InMemoryStateManager(max_finished=1)
        running = WorkflowInstance.create(PriceLookupWorkflow.create(), {"text": "a"}, context)
        manager.save_state(running)
        finished = []
        for text in ("b", "c"):
            done = WorkflowInstance.create(PriceLookupWorkflow.create(), {"text": text}, context)
            done.mark_succeeded({})
            manager.save_state(done)
            finished.append(done)

        assert set(manager.list_states()) == {running.instance_id, finished[1].instance_id}

    def test_in_memory_cleanup_removes_old_finished(self, instance, context):
        manager = InMemoryStateManager()
        instance.mark_succeeded({})
        instance.finished_at = instance.finished_at - timedelta(days=31)
        manager.save_state(instance)
        running = WorkflowInstance.create(PriceLookupWorkflow.create(), {"text": "a"}, context)
        manager.save_state(running)

        assert manager.cleanup_old_states(days=30) == 1
        assert manager.list_states() == {running.instance_id: WorkflowStatus.RUNNING}

    def test_persistent_state_survives_reopen(self, tmp_path, instance):
        PersistentStateManager(tmp_path / "workflows.db").save_state(instance)

        reopened = PersistentStateManager(tmp_path / "workflows.db")
        assert reopened.load_state(instance.instance_id).definition_name == "price-lookup"
        assert reopened.cleanup_old_states(days=30) == 0


class TestIdempotencyKeys:
    @pytest.fixture
    def upload_step(self):
        return CropDiagnosisWorkflow.create().step("upload_photo")

    @pytest.fixture
    def fetch_step(self):
        return PriceLookupWorkflow.create().step("fetch_price")

    def test_declared_fields_ignore_correlation(self, upload_step, make_context):
        data = {"photo_id": "p1", "image_b64": "aaa"}
        first = derive_idempotency_key("crop-diagnosis", upload_step, data, make_context(correlation_id="c1"))
        second = derive_idempotency_key(
            "crop-diagnosis", upload_step, {**data, "image_b64": "bbb"}, make_context(correlation_id="c2")
        )
        other = derive_idempotency_key(
            "crop-diagnosis", upload_step, {**data, "photo_id": "p2"}, make_context(correlation_id="c1")
        )

        assert first == second
        assert first != other

    def test_default_key_is_per_submission(self, fetch_step, make_context):
        data = {"text": "price of onion"}
        same = derive_idempotency_key("price-lookup", fetch_step, data, make_context(correlation_id="c1"))
        again = derive_idempotency_key("price-lookup", fetch_step, data, make_context(correlation_id="c1"))
        other = derive_idempotency_key("price-lookup", fetch_step, data, make_context(correlation_id="c2"))

        assert same == again
        assert same != other

    def test_request_key_is_independent_of_requester(self, fetch_step, make_context):
        upstream = {"parse_query": {"crop": "onion", "market": "pune", "date": None}}
        first = derive_request_key("price-lookup", fetch_step, {"text": "onion pune?"}, upstream, make_context("a"))
        second = derive_request_key(
            "price-lookup", fetch_step, {"text": "price of onion in pune"}, upstream, make_context("b")
        )
        other = derive_request_key(
            "price-lookup", fetch_step, {}, {"parse_query": {"crop": "potato"}}, make_context("a")
        )

        assert first == second
        assert first != other


class TestIdempotencyStores:
    @pytest.fixture(params=["memory", "sqlite"])
    def store(self, request, tmp_path):
        if request.param == "memory":
            return InMemoryIdempotencyStore()
        return SqliteIdempotencyStore(tmp_path / "idempotency.db")

    def test_get_put(self, store):
        assert store.get("k1") == (False, None)

        store.put("k1", {"key": "photos/p1", "size": 3})
        assert store.get("k1") == (True, {"key": "photos/p1", "size": 3})

    def test_stored_none_is_found(self, store):
        store.put("k2", None)
        assert store.get("k2") == (True, None)

    def test_in_memory_store_evicts_least_recently_used(self):
        store = InMemoryIdempotencyStore(max_entries=2)
        store.put("k1", 1)
        store.put("k2", 2)
        store.get("k1")
        store.put("k3", 3)

        assert store.get("k1") == (True, 1)
        assert store.get("k2") == (False, None)
        assert store.get("k3") == (True, 3)
