"""Published workflow definitions, loadable from YAML.

Definitions are immutable and versioned: publishing a second, different
definition under an existing ``(name, version)`` is rejected, so instances in
flight keep executing against the exact object they started with.
"""
from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from ..error_coordination.errors import DefinitionError, UnknownWorkflowError
from .workflow_engine.steps import WorkflowDefinition

logger = logging.getLogger(__name__)


def parse_definition(data: Dict[str, Any]) -> WorkflowDefinition:
    """Build a definition from a plain mapping.

    Raises:
        DefinitionError: If the mapping is not a valid acyclic workflow
    """
    try:
        return WorkflowDefinition.model_validate(data)
    except PydanticValidationError as e:
        raise DefinitionError(f"Invalid workflow definition '{data.get('name', '?')}': {e}") from e


def load_definitions(path: Union[str, Path]) -> List[WorkflowDefinition]:
    """Load one or more definitions from a YAML file.

    The file holds either a single definition mapping or a ``workflows`` list.
    """
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    if isinstance(data, dict) and "workflows" in data:
        documents = data["workflows"] or []
    elif isinstance(data, list):
        documents = data
    else:
        documents = [data]

    definitions = [parse_definition(document) for document in documents]
    logger.debug(f"Loaded {len(definitions)} workflow definition(s) from {path}")
    return definitions


class DefinitionRegistry:
    """Versioned store of published workflow definitions."""

    def __init__(self, definitions: Optional[List[WorkflowDefinition]] = None) -> None:
        self._definitions: Dict[Tuple[str, int], WorkflowDefinition] = {}
        self._lock = Lock()
        for definition in definitions or []:
            self.publish(definition)

    def publish(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Publish a definition.

        Re-publishing an identical definition is a no-op.

        Raises:
            DefinitionError: If a different definition already uses the same name and version
        """
        with self._lock:
            existing = self._definitions.get(definition.key)
            if existing is not None:
                if existing == definition:
                    return existing
                raise DefinitionError(
                    f"Workflow {definition.name} v{definition.version} is already published; "
                    "publish a new version instead of changing it"
                )
            self._definitions[definition.key] = definition
        logger.info(f"Published workflow: {definition.name} v{definition.version}")
        return definition

    def publish_file(self, path: Union[str, Path]) -> List[WorkflowDefinition]:
        return [self.publish(definition) for definition in load_definitions(path)]

    def resolve(self, name: str, version: Optional[int] = None) -> WorkflowDefinition:
        """Return a specific version, or the latest one when ``version`` is None.

        Raises:
            UnknownWorkflowError: If no matching definition is published
        """
        with self._lock:
            if version is not None:
                definition = self._definitions.get((name, version))
            else:
                versions = [v for (n, v) in self._definitions if n == name]
                definition = self._definitions.get((name, max(versions))) if versions else None

        if definition is None:
            suffix = f" v{version}" if version is not None else ""
            raise UnknownWorkflowError(f"Workflow '{name}'{suffix} is not published")
        return definition

    def list_definitions(self) -> List[Tuple[str, int]]:
        with self._lock:
            return sorted(self._definitions)
