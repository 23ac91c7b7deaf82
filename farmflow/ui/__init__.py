"""Console output helpers for the CLI."""

from .console import ConsoleManager

__all__ = ["ConsoleManager"]
