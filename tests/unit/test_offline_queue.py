"""Tests for the durable per-client offline queue."""
import pytest

from farmflow.error_coordination.errors import CapacityExceededError, DuplicateOperationError
from farmflow.orchestration.workflow_engine.steps import WorkflowStatus
from farmflow.sync.queue import (
    DEFAULT_CAP_BYTES,
    InMemoryOfflineQueue,
    QueuedOperation,
    SqliteOfflineQueue,
)


def make_operation(context, sequence_number, text="price of onion in pune", client_id="device-1"):
    return QueuedOperation(
        client_id=client_id,
        sequence_number=sequence_number,
        definition_name="price-lookup",
        input={"text": text},
        context=context,
    )


@pytest.fixture(params=["memory", "sqlite"])
def make_queue(request, tmp_path):
    created = []

    def _make(cap_bytes=DEFAULT_CAP_BYTES):
        if request.param == "memory":
            queue = InMemoryOfflineQueue(cap_bytes)
        else:
            queue = SqliteOfflineQueue(tmp_path / "offline_queue.db", cap_bytes)
        created.append(queue)
        return queue

    yield _make
    for queue in created:
        if isinstance(queue, SqliteOfflineQueue):
            queue.close()


class TestQueuedOperation:
    def test_payload_roundtrip(self, context):
        operation = make_operation(context, 4)
        restored = QueuedOperation.from_payload(
            "device-1", 4, operation.payload(), operation.enqueued_at
        )

        assert restored.input == operation.input
        assert restored.context.correlation_id == "corr-1"
        assert restored.context.grant_value() == "grant-token"
        assert operation.size_bytes == len(operation.payload().encode("utf-8"))

    def test_negative_sequence_rejected(self, context):
        with pytest.raises(Exception):
            make_operation(context, -1)


class TestOfflineQueue:
    def test_pending_in_ascending_sequence(self, make_queue, context):
        queue = make_queue()
        for seq in (3, 1, 2):
            queue.enqueue(make_operation(context, seq))

        assert [op.sequence_number for op in queue.pending("device-1")] == [1, 2, 3]
        assert queue.peek("device-1").sequence_number == 1
        assert queue.clients() == ["device-1"]

    def test_clients_are_independent(self, make_queue, context, make_context):
        queue = make_queue()
        queue.enqueue(make_operation(context, 1))
        queue.enqueue(make_operation(make_context("device-2"), 1, client_id="device-2"))

        assert queue.clients() == ["device-1", "device-2"]
        assert len(queue.pending("device-2")) == 1
        assert queue.peek("device-3") is None

    def test_cap_rejects_new_without_evicting(self, make_queue, context):
        first = make_operation(context, 1)
        queue = make_queue(cap_bytes=first.size_bytes + 10)
        queue.enqueue(first)

        with pytest.raises(CapacityExceededError) as exc_info:
            queue.enqueue(make_operation(context, 2))

        assert exc_info.value.used_bytes == first.size_bytes
        assert [op.sequence_number for op in queue.pending("device-1")] == [1]
        assert queue.used_bytes("device-1") == first.size_bytes

    def test_cap_is_per_client(self, make_queue, context, make_context):
        first = make_operation(context, 1)
        queue = make_queue(cap_bytes=first.size_bytes + 100)
        queue.enqueue(first)

        queue.enqueue(make_operation(make_context("device-2"), 1, client_id="device-2"))
        assert queue.clients() == ["device-1", "device-2"]

    def test_duplicate_pending(self, make_queue, context):
        queue = make_queue()
        queue.enqueue(make_operation(context, 1))

        with pytest.raises(DuplicateOperationError) as exc_info:
            queue.enqueue(make_operation(context, 1, text="something else"))
        assert exc_info.value.replayed is False

    def test_complete_moves_to_replay_log(self, make_queue, context):
        queue = make_queue()
        queue.enqueue(make_operation(context, 1))
        queue.enqueue(make_operation(context, 2))

        assert queue.complete("device-1", 1, WorkflowStatus.SUCCEEDED, instance_id="i-1") is True
        assert queue.complete("device-1", 1, WorkflowStatus.SUCCEEDED) is False

        assert [op.sequence_number for op in queue.pending("device-1")] == [2]
        log = queue.replay_log("device-1")
        assert [(r.sequence_number, r.status, r.instance_id) for r in log] == [
            (1, WorkflowStatus.SUCCEEDED, "i-1")
        ]

    def test_replayed_sequence_cannot_be_reused(self, make_queue, context):
        queue = make_queue()
        queue.enqueue(make_operation(context, 1))
        queue.complete("device-1", 1, WorkflowStatus.FAILED, reason="rejected")

        with pytest.raises(DuplicateOperationError) as exc_info:
            queue.enqueue(make_operation(context, 1))
        assert exc_info.value.replayed is True
        assert queue.replay_log("device-1")[0].reason == "rejected"

    def test_completed_operations_free_capacity(self, make_queue, context):
        first = make_operation(context, 1)
        queue = make_queue(cap_bytes=first.size_bytes + 10)
        queue.enqueue(first)
        queue.complete("device-1", 1, WorkflowStatus.SUCCEEDED)

        queue.enqueue(make_operation(context, 2))
        assert queue.used_bytes("device-1") == first.size_bytes

    def test_record_attempt(self, make_queue, context):
        queue = make_queue()
        queue.enqueue(make_operation(context, 1))
        queue.record_attempt("device-1", 1, "HTTP 503")
        queue.record_attempt("device-1", 1, "HTTP 504")

        operation = queue.peek("device-1")
        assert operation.attempts == 2
        assert operation.last_error == "HTTP 504"

    def test_invalid_cap(self):
        with pytest.raises(ValueError):
            InMemoryOfflineQueue(cap_bytes=0)


class TestSqliteOfflineQueue:
    def test_survives_reopen(self, tmp_path, context):
        path = tmp_path / "offline_queue.db"
        queue = SqliteOfflineQueue(path)
        queue.enqueue(make_operation(context, 1, text="price of tomato"))
        queue.enqueue(make_operation(context, 2))
        queue.complete("device-1", 2, WorkflowStatus.SUCCEEDED)
        queue.close()

        reopened = SqliteOfflineQueue(path)
        try:
            pending = reopened.pending("device-1")
            assert [(op.sequence_number, op.input["text"]) for op in pending] == [(1, "price of tomato")]
            assert pending[0].context.client_id == "device-1"
            assert [r.sequence_number for r in reopened.replay_log("device-1")] == [2]
        finally:
            reopened.close()
