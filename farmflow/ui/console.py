"""Console management with Rich integration.

This module provides a ConsoleManager that adapts CLI output to:
- Rich-rendered tables and panels for people
- JSON-only output for machine-readable use (CI/CD, scripts)
"""

from __future__ import annotations

import json
import re
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import IO, Any, Dict, List, Optional, Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..orchestration.workflow_engine.steps import WorkflowDefinition


class ThreadSafeConsole:
    """Thread-safe wrapper around Rich Console."""

    def __init__(self, console: Console):
        self._console = console
        self._lock = threading.RLock()  # Reentrant lock for nested calls

    def print(self, *args, **kwargs):
        """Thread-safe print method."""
        with self._lock:
            self._console.print(*args, **kwargs)

    @contextmanager
    def status(self, *args, **kwargs):
        """Thread-safe status context manager."""
        with self._lock:
            with self._console.status(*args, **kwargs) as status:
                yield status


class ConsoleManager:
    """Manages CLI output with Rich integration."""

    def __init__(self, json_output: bool = False, file: Optional[IO[str]] = None):
        self.json_output = json_output
        self._file = file or sys.stdout
        self._json_max_field_length = 200

        if self.json_output:
            self.console = None
        else:
            self.console = ThreadSafeConsole(Console(file=self._file, highlight=False))

    def print_json(self, payload: Dict[str, Any]) -> None:
        payload = {"timestamp": self._get_timestamp(), **payload}
        print(json.dumps(payload, default=str), file=self._file)

    def print_stage(self, stage: str, status: str = "starting") -> None:
        """Print stage information with appropriate renderer."""
        if self.json_output:
            self.print_json({"stage": self._sanitize_json_field(stage), "status": status})
            return

        status_color = {
            "starting": "blue",
            "complete": "green",
            "error": "red",
            "warning": "yellow",
        }.get(status, "white")
        self.console.print(Panel(f"[bold]{stage}[/bold]", style=status_color, padding=(0, 1)))

    def print_table(self, title: str, columns: Sequence[str], rows: List[Sequence[Any]]) -> None:
        """Print rows as a table, or as a JSON list of objects."""
        if self.json_output:
            keys = [self._json_key(column) for column in columns]
            self.print_json({"type": "table", "title": title, "rows": [dict(zip(keys, row)) for row in rows]})
            return

        table = Table(title=title)
        for index, column in enumerate(columns):
            table.add_column(column, style="cyan" if index == 0 else None)
        for row in rows:
            table.add_row(*(str(value) if value is not None else "-" for value in row))
        self.console.print(table)

    def print_plan(self, definition: WorkflowDefinition) -> None:
        """Print the execution levels of a definition."""
        levels = definition.execution_levels()
        if self.json_output:
            self.print_json(
                {
                    "type": "plan",
                    "workflow": definition.name,
                    "version": definition.version,
                    "levels": levels,
                }
            )
            return

        rows = []
        for number, level in enumerate(levels, start=1):
            for step_id in level:
                step = definition.step(step_id)
                rows.append(
                    (
                        number,
                        step_id,
                        step.dependency or "local",
                        ", ".join(step.dependency_ids),
                        step.fallback.action.value if step.fallback else None,
                    )
                )
        self.print_table(
            f"{definition.name} v{definition.version}",
            ["Level", "Step", "Dependency", "Depends on", "Fallback"],
            rows,
        )

    def print_error(self, message: str) -> None:
        if self.json_output:
            self.print_json({"type": "error", "message": self._sanitize_json_field(message)})
        else:
            self.console.print(f"[red]ERROR: {message}[/red]")

    def _get_timestamp(self) -> str:
        """Get ISO timestamp for JSON output."""
        return datetime.now().isoformat()

    @staticmethod
    def _json_key(column: str) -> str:
        return re.sub(r"[^a-z0-9]+", "_", column.lower()).strip("_")

    def _sanitize_json_field(self, value: str) -> str:
        """Sanitize field values for JSON output."""
        if not isinstance(value, str):
            value = str(value)
        # Remove control characters and limit length
        sanitized = "".join(char for char in value if ord(char) >= 32)
        return sanitized[: self._json_max_field_length]
