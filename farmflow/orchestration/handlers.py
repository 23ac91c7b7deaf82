"""Named step handlers and input schemas referenced from workflow definitions.

Definitions are data, so they refer to code by name: ``handler: parse_price_query``
resolves to a function registered here, and ``input_schema: price_query`` to a
pydantic model. Handlers are plain synchronous functions of a
:class:`StepInput`; for local steps they compute the step output, for
external steps they build the request payload.
"""
from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..error_coordination.errors import ValidationError
from .workflow_engine.steps import StepInput

logger = logging.getLogger(__name__)

StepHandler = Callable[[StepInput], Any]


class HandlerRegistry:
    """Maps handler names to step functions and schema names to pydantic models."""

    def __init__(self) -> None:
        self._handlers: Dict[str, StepHandler] = {}
        self._schemas: Dict[str, Type[BaseModel]] = {}
        self._lock = Lock()

    def register(self, name: str, handler: Optional[StepHandler] = None):
        """Register a handler; usable directly or as a decorator.

        Example:
            @handlers.register("compose_response")
            def compose_response(step_input):
                ...
        """

        def decorator(func: StepHandler) -> StepHandler:
            with self._lock:
                self._handlers[name] = func
            logger.debug(f"Registered step handler: {name}")
            return func

        if handler is not None:
            return decorator(handler)
        return decorator

    def register_schema(self, name: str, model: Type[BaseModel]) -> None:
        with self._lock:
            self._schemas[name] = model

    def get(self, name: str) -> StepHandler:
        with self._lock:
            handler = self._handlers.get(name)
        if handler is None:
            raise KeyError(f"No step handler registered as '{name}'")
        return handler

    def has(self, name: str) -> bool:
        with self._lock:
            return name in self._handlers

    def schema(self, name: str) -> Type[BaseModel]:
        with self._lock:
            model = self._schemas.get(name)
        if model is None:
            raise KeyError(f"No input schema registered as '{name}'")
        return model

    def validate_input(self, schema_name: str, data: Dict[str, Any]) -> None:
        """Validate workflow input against a registered schema.

        Raises:
            ValidationError: If the input does not match
        """
        model = self.schema(schema_name)
        try:
            model.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Input does not match schema '{schema_name}': {e.error_count()} error(s)",
                errors=e.errors(include_url=False),
            ) from e

    def missing(self, names: List[str]) -> List[str]:
        with self._lock:
            return [name for name in names if name not in self._handlers]
