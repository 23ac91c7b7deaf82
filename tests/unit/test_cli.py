"""Tests for the farmflow command line interface."""
import json
import textwrap

import pytest

from farmflow.cli import create_parser, main
from farmflow.error_coordination.errors import FailureKind
from farmflow.error_coordination.fallback import WorkflowError
from farmflow.models.context import ExecutionContext
from farmflow.orchestration.state_manager import PersistentStateManager
from farmflow.orchestration.templates import PriceLookupWorkflow
from farmflow.orchestration.workflow_engine.steps import StepStatus, WorkflowInstance
from farmflow.sync.queue import QueuedOperation, SqliteOfflineQueue
from farmflow.utils.logging_factory import LoggingFactory


@pytest.fixture(autouse=True)
def quiet_cli(monkeypatch, tmp_path):
    monkeypatch.setenv("FARMFLOW_LOG_TO_CONSOLE", "false")
    monkeypatch.setenv("FARMFLOW_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.chdir(tmp_path)
    LoggingFactory.reset()
    yield
    LoggingFactory.reset()


def run_json(capsys, *argv):
    code = main(["--json-output", *argv])
    lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
    return code, [json.loads(line) for line in lines]


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args([])

    def test_plan_arguments(self):
        args = create_parser().parse_args(["plan", "price-lookup", "-f", "w.yaml", "--version-number", "2"])

        assert args.name == "price-lookup"
        assert args.file == "w.yaml"
        assert args.definition_version == 2


class TestTemplatesCommand:
    def test_lists_builtin_workflows(self, capsys):
        code, output = run_json(capsys, "templates")

        assert code == 0
        names = [row["workflow"] for row in output[0]["rows"]]
        assert names == ["price-lookup", "voice-price-query", "crop-diagnosis", "soil-report"]

    def test_human_output(self, capsys):
        assert main(["templates"]) == 0
        assert "Built-in workflows" in capsys.readouterr().out


class TestValidateCommand:
    def test_valid_file(self, capsys, tmp_path):
        path = tmp_path / "workflows.yaml"
        path.write_text(
            textwrap.dedent(
                """
                name: ping
                steps:
                  - id: lookup
                    dependency: market-prices
                  - id: reply
                    handler: compose_price_response
                    dependencies: [lookup]
                """
            )
        )

        code, output = run_json(capsys, "validate", str(path))

        assert code == 0
        row = output[0]["rows"][0]
        assert row["workflow"] == "ping"
        assert row["steps"] == 2
        assert row["dependencies"] == "market-prices"
        assert row["unknown_handlers"] is None

    def test_strict_rejects_unknown_handlers(self, capsys, tmp_path):
        path = tmp_path / "workflows.yaml"
        path.write_text("name: ping\nsteps:\n  - id: echo\n    handler: shout\n")

        assert run_json(capsys, "validate", str(path))[0] == 0
        code, output = run_json(capsys, "validate", "--strict", str(path))

        assert code == 1
        assert output[0]["rows"][0]["unknown_handlers"] == "shout"

    def test_cycle_is_reported(self, capsys, tmp_path):
        path = tmp_path / "loop.yaml"
        path.write_text("name: loop\nsteps:\n  - id: a\n    handler: echo\n    dependencies: [a]\n")

        code, output = run_json(capsys, "validate", str(path))

        assert code == 1
        assert output[0]["type"] == "error"

    def test_missing_file(self, capsys, tmp_path):
        code, output = run_json(capsys, "validate", str(tmp_path / "nope.yaml"))

        assert code == 1
        assert "File not found" in output[0]["message"]


class TestPlanCommand:
    def test_builtin_plan(self, capsys):
        code, output = run_json(capsys, "plan", "soil-report")

        assert code == 0
        assert output[0]["type"] == "plan"
        assert output[0]["levels"] == [["record_sample"], ["analyze"], ["report"]]

    def test_unknown_workflow(self, capsys):
        code, output = run_json(capsys, "plan", "irrigation-schedule")

        assert code == 1
        assert "not found" in output[0]["message"]

    def test_plan_from_file_picks_version(self, capsys, tmp_path):
        path = tmp_path / "workflows.yaml"
        path.write_text(
            textwrap.dedent(
                """
                workflows:
                  - name: ping
                    version: 1
                    steps:
                      - id: a
                        handler: echo
                  - name: ping
                    version: 2
                    steps:
                      - id: a
                        handler: echo
                      - id: b
                        handler: echo
                """
            )
        )

        _, latest = run_json(capsys, "plan", "ping", "--file", str(path))
        _, first = run_json(capsys, "plan", "ping", "--file", str(path), "--version-number", "1")

        assert latest[0]["version"] == 2
        assert latest[0]["levels"] == [["a", "b"]]
        assert first[0]["levels"] == [["a"]]


    def test_configured_definitions_file(self, capsys, monkeypatch, tmp_path):
        path = tmp_path / "extra.yaml"
        path.write_text("name: irrigation-schedule\nsteps:\n  - id: plan\n    handler: echo\n")
        monkeypatch.setenv("FARMFLOW_DEFINITIONS", str(path))

        code, output = run_json(capsys, "plan", "irrigation-schedule")

        assert code == 0
        assert output[0]["levels"] == [["plan"]]


class TestQueueCommand:
    def test_missing_database(self, capsys, tmp_path):
        code, output = run_json(capsys, "queue", "--db", str(tmp_path / "missing.db"))

        assert code == 1
        assert "No offline queue" in output[0]["message"]

    def test_lists_pending_and_replay_log(self, capsys, tmp_path):
        db_path = tmp_path / "offline_queue.db"
        queue = SqliteOfflineQueue(db_path)
        context = ExecutionContext(client_id="device-9", farmer_id="farmer-9")
        for seq in (1, 2):
            queue.enqueue(
                QueuedOperation(
                    client_id="device-9",
                    sequence_number=seq,
                    definition_name="price-lookup",
                    input={"text": "price of onion"},
                    context=context,
                )
            )
        queue.record_attempt("device-9", 2, "HTTP 503")
        queue.close()

        code, output = run_json(capsys, "queue", "--db", str(db_path))
        assert code == 0
        rows = output[0]["rows"]
        assert [(r["client"], r["seq"], r["attempts"]) for r in rows] == [("device-9", 1, 0), ("device-9", 2, 1)]
        assert rows[1]["last_error"] == "HTTP 503"

        code, output = run_json(capsys, "queue", "--db", str(db_path), "--client", "device-9", "--log")
        assert code == 0
        assert output[0]["rows"] == []

    def test_log_requires_client(self, capsys, tmp_path):
        db_path = tmp_path / "offline_queue.db"
        SqliteOfflineQueue(db_path).close()

        code, output = run_json(capsys, "queue", "--db", str(db_path), "--log")

        assert code == 1
        assert output[0]["message"] == "--log requires --client"


class TestStatusCommand:
    @pytest.fixture
    def failed_instance(self, tmp_path):
        context = ExecutionContext(client_id="device-9", farmer_id="farmer-9")
        instance = WorkflowInstance.create(PriceLookupWorkflow.create(), {"text": "price of onion"}, context)
        record = instance.steps["fetch_price"]
        record.transition(StepStatus.RUNNING)
        record.attempts = 3
        record.fail(FailureKind.TRANSIENT, "HTTP 503")
        instance.mark_failed(WorkflowError.build("fetch_price", FailureKind.TRANSIENT, "HTTP 503"))
        PersistentStateManager(tmp_path / "data" / "workflows.db").save_state(instance)
        return instance

    def test_missing_database(self, capsys):
        code, output = run_json(capsys, "status")

        assert code == 1
        assert "No workflow database" in output[0]["message"]

    def test_lists_instances(self, capsys, failed_instance):
        code, output = run_json(capsys, "status")

        assert code == 0
        assert output[0]["rows"] == [{"instance": failed_instance.instance_id, "status": "failed"}]

    def test_shows_steps_of_one_instance(self, capsys, failed_instance):
        code, output = run_json(capsys, "status", failed_instance.instance_id)

        assert code == 0
        steps = {row["step"]: row for row in output[0]["rows"]}
        assert steps["fetch_price"]["status"] == "failed"
        assert steps["fetch_price"]["attempts"] == 3
        assert steps["fetch_price"]["failure"] == "transient"
        assert steps["parse_query"]["status"] == "pending"
        assert output[1]["type"] == "error"

    def test_unknown_instance(self, capsys, failed_instance):
        code, output = run_json(capsys, "status", "no-such-instance")

        assert code == 1
        assert "not found" in output[0]["message"]
