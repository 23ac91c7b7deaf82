"""Command line tools for inspecting workflow definitions and offline queues.

This module serves as the main entry point for the CLI with all commands
consolidated in a single file.
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

from . import __version__
from .config import get_config
from .error_coordination.errors import DefinitionError
from .orchestration.definitions import load_definitions
from .orchestration.handlers import HandlerRegistry
from .orchestration.state_manager import PersistentStateManager
from .orchestration.templates import TEMPLATES, configured_definitions, register_builtin_handlers
from .orchestration.workflow_engine.steps import WorkflowDefinition
from .sync.queue import SqliteOfflineQueue
from .ui.console import ConsoleManager
from .utils.logging_factory import LoggingFactory

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration based on verbosity level.

    Args:
        verbose: If True, set to DEBUG level; otherwise use the configured level
    """
    config = get_config()
    LoggingFactory.initialize(
        log_file=config.log_file,
        level="DEBUG" if verbose else config.log_level,
        console=config.log_to_console,
    )


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser.

    Returns:
        Configured ArgumentParser instance
    """
    parser = argparse.ArgumentParser(
        prog="farmflow",
        description="Inspect farmer-assistance workflow definitions and offline queues",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Examples:
  # Check a definitions file before deploying it
  farmflow validate workflows.yaml

  # Show which steps of a workflow run concurrently
  farmflow plan price-lookup
  farmflow plan crop-diagnosis --file workflows.yaml

  # List operations waiting for connectivity
  farmflow queue --db ~/.farmflow/offline_queue.db --client device-17

  # Inspect persisted workflow instances
  farmflow status
  farmflow status <instance-id>

  # List built-in workflow templates
  farmflow templates

Environment:
  FARMFLOW_DEFINITIONS adds a YAML definitions file to the built-in templates.
  FARMFLOW_DATA_DIR, FARMFLOW_LOG_LEVEL, FARMFLOW_LOG_FILE and the other
  FARMFLOW_* variables may also be set in a .env file.
        """,
    )

    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json-output", action="store_true", help="Emit machine-readable JSON")

    subparsers = parser.add_subparsers(dest="command", help="Available commands", required=True)

    validate_parser = subparsers.add_parser(
        "validate",
        help="Validate a YAML definitions file",
        description="Parse definitions, check the graph is acyclic and handlers are known",
    )
    validate_parser.add_argument("path", help="YAML file with one or more workflow definitions")
    validate_parser.add_argument(
        "--strict",
        action="store_true",
        help="Fail when a step names a handler that is not built in",
    )

    plan_parser = subparsers.add_parser(
        "plan",
        help="Show the execution levels of a workflow",
        description="Group steps into levels whose members may run concurrently",
    )
    plan_parser.add_argument("name", help="Workflow name")
    plan_parser.add_argument("--file", "-f", help="Load the workflow from a YAML file instead of templates")
    plan_parser.add_argument("--version-number", type=int, dest="definition_version", help="Definition version")

    queue_parser = subparsers.add_parser(
        "queue",
        help="List queued offline operations",
        description="Show pending operations, or replay acknowledgments with --log",
    )
    queue_parser.add_argument("--db", help="Offline queue database (default: <data dir>/offline_queue.db)")
    queue_parser.add_argument("--client", help="Only show this client")
    queue_parser.add_argument("--log", action="store_true", help="Show the replay log of --client")

    status_parser = subparsers.add_parser(
        "status",
        help="Show persisted workflow instances",
        description="List instance snapshots, or the steps of one instance",
    )
    status_parser.add_argument("instance_id", nargs="?", help="Instance to show in detail")
    status_parser.add_argument("--db", help="Instance database (default: <data dir>/workflows.db)")

    subparsers.add_parser("templates", help="List built-in workflow templates")

    return parser


def _select_definition(
    definitions: List[WorkflowDefinition], name: str, version: Optional[int]
) -> Optional[WorkflowDefinition]:
    matches = [d for d in definitions if d.name == name and (version is None or d.version == version)]
    return max(matches, key=lambda d: d.version) if matches else None


def validate_command(args: argparse.Namespace, console: ConsoleManager) -> int:
    path = Path(args.path)
    if not path.exists():
        console.print_error(f"File not found: {path}")
        return 1

    try:
        definitions = load_definitions(path)
    except DefinitionError as e:
        console.print_error(str(e))
        return 1
    except Exception as e:
        logger.debug(f"Failed to read {path}", exc_info=True)
        console.print_error(f"Could not read {path}: {e}")
        return 1

    handlers = register_builtin_handlers(HandlerRegistry())
    rows = []
    failed = False
    for definition in definitions:
        missing = handlers.missing([step.handler for step in definition.steps if step.handler])
        if missing and args.strict:
            failed = True
        rows.append(
            (
                definition.name,
                definition.version,
                len(definition.steps),
                ", ".join(sorted(definition.external_dependencies())) or None,
                ", ".join(missing) or None,
            )
        )

    console.print_table(
        f"Definitions in {path.name}",
        ["Workflow", "Version", "Steps", "Dependencies", "Unknown handlers"],
        rows,
    )
    return 1 if failed else 0


def plan_command(args: argparse.Namespace, console: ConsoleManager) -> int:
    try:
        definitions = load_definitions(args.file) if args.file else configured_definitions(get_config())
    except (DefinitionError, OSError) as e:
        console.print_error(str(e))
        return 1

    definition = _select_definition(definitions, args.name, args.definition_version)
    if definition is None:
        console.print_error(f"Workflow '{args.name}' not found")
        return 1

    console.print_plan(definition)
    return 0


def queue_command(args: argparse.Namespace, console: ConsoleManager) -> int:
    db_path = Path(args.db).expanduser() if args.db else get_config().queue_db_path
    if not db_path.exists():
        console.print_error(f"No offline queue at {db_path}")
        return 1

    queue = SqliteOfflineQueue(db_path, cap_bytes=get_config().queue_cap_bytes)
    try:
        if args.log:
            if not args.client:
                console.print_error("--log requires --client")
                return 1
            console.print_table(
                f"Replay log for {args.client}",
                ["Seq", "Status", "Instance", "Reason", "Completed"],
                [
                    (r.sequence_number, r.status.value, r.instance_id, r.reason, r.completed_at.isoformat())
                    for r in queue.replay_log(args.client)
                ],
            )
            return 0

        clients = [args.client] if args.client else queue.clients()
        rows = [
            (op.client_id, op.sequence_number, op.definition_name, op.size_bytes, op.attempts, op.last_error)
            for client_id in clients
            for op in queue.pending(client_id)
        ]
        console.print_table(
            "Pending operations",
            ["Client", "Seq", "Workflow", "Bytes", "Attempts", "Last error"],
            rows,
        )
        return 0
    finally:
        queue.close()


def status_command(args: argparse.Namespace, console: ConsoleManager) -> int:
    db_path = Path(args.db).expanduser() if args.db else get_config().state_db_path
    if not db_path.exists():
        console.print_error(f"No workflow database at {db_path}")
        return 1

    manager = PersistentStateManager(db_path)
    if not args.instance_id:
        console.print_table(
            "Workflow instances",
            ["Instance", "Status"],
            [(instance_id, status.value) for instance_id, status in sorted(manager.list_states().items())],
        )
        return 0

    instance = manager.load_state(args.instance_id)
    if instance is None:
        console.print_error(f"Instance '{args.instance_id}' not found")
        return 1

    console.print_table(
        f"{instance.definition_name} v{instance.definition_version}: {instance.status.value}",
        ["Step", "Status", "Attempts", "Failure", "Reason"],
        [
            (
                record.step_id,
                record.status.value,
                record.attempts,
                record.failure_kind.value if record.failure_kind else None,
                record.reason,
            )
            for record in instance.steps.values()
        ],
    )
    if instance.error is not None:
        console.print_error(instance.error.message)
    return 0


def templates_command(args: argparse.Namespace, console: ConsoleManager) -> int:
    rows = []
    for name, template_class in TEMPLATES.items():
        definition = template_class.create()
        rows.append(
            (
                name,
                definition.version,
                len(definition.steps),
                ", ".join(sorted(definition.external_dependencies())),
                definition.description,
            )
        )
    console.print_table("Built-in workflows", ["Workflow", "Version", "Steps", "Dependencies", "Description"], rows)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    setup_logging(args.verbose)
    console = ConsoleManager(json_output=args.json_output)

    commands = {
        "validate": validate_command,
        "plan": plan_command,
        "queue": queue_command,
        "status": status_command,
        "templates": templates_command,
    }

    try:
        return commands[args.command](args, console)
    except KeyboardInterrupt:
        logger.error("Operation cancelled by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
