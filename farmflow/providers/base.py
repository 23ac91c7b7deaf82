"""Uniform capability-provider interface and exception-mapping adapter."""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type

from ..models.outcomes import PermanentFailure, StepOutcome, Success, TransientFailure

logger = logging.getLogger(__name__)

# Exception types that indicate the dependency may recover
TRANSIENT_EXCEPTION_TYPES: Tuple[Type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    OSError,
)

# HTTP-like status codes worth retrying
TRANSIENT_STATUS_CODES = {408, 425, 429, 500, 502, 503, 504}


def _status_code_of(exception: BaseException) -> Optional[int]:
    status = getattr(exception, "status_code", None)
    if status is None:
        response = getattr(exception, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_exception(
    exception: BaseException,
    transient_types: Tuple[Type[BaseException], ...] = TRANSIENT_EXCEPTION_TYPES,
) -> StepOutcome:
    """Map a provider SDK exception onto a transient or permanent failure.

    Args:
        exception: The exception raised by the provider call
        transient_types: Exception types treated as transient

    Returns:
        TransientFailure or PermanentFailure carrying the exception text
    """
    reason = f"{type(exception).__name__}: {exception}"

    # Check for specific HTTP status codes if available
    status_code = _status_code_of(exception)
    if status_code is not None:
        if status_code in TRANSIENT_STATUS_CODES:
            return TransientFailure(reason, status_code=status_code)
        if 400 <= status_code < 500:
            return PermanentFailure(reason, status_code=status_code)

    if isinstance(exception, transient_types):
        return TransientFailure(reason, status_code=status_code)
    return PermanentFailure(reason, status_code=status_code)


class CapabilityProvider(ABC):
    """Abstract base class for every external capability provider.

    Speech-to-text, language models, vision, document extraction, speech
    synthesis and data stores are all reached through :meth:`invoke`, so the
    executor and breakers never depend on a provider-specific protocol.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    async def invoke(self, operation: str, payload: Dict[str, Any], timeout: Optional[float]) -> StepOutcome:
        """Perform one operation against the provider.

        Implementations must not raise for dependency failures; they report
        ``TransientFailure`` or ``PermanentFailure`` instead.

        Args:
            operation: Provider operation name (e.g. 'transcribe', 'classify')
            payload: Request payload
            timeout: Seconds the caller is willing to wait, or None

        Returns:
            Success, TransientFailure or PermanentFailure
        """
        pass

    def get_supported_operations(self) -> List[str]:
        """Operations this provider accepts; empty means any."""
        return []

    def supports_operation(self, operation: str) -> bool:
        supported = self.get_supported_operations()
        return not supported or operation in supported

    async def health_check_async(self) -> Dict[str, Any]:
        """Perform asynchronous health check for the provider.

        Returns:
            Dictionary containing health check results:
            {
                "healthy": bool,
                "status": str,
                "response_time_ms": float,
                "details": dict
            }
        """
        return {"healthy": True, "status": "unknown", "response_time_ms": 0.0, "details": {}}


ProviderCallable = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class CallableProvider(CapabilityProvider):
    """Adapts a provider client coroutine to the uniform call shape.

    The wrapped coroutine receives ``(operation, payload)`` and returns the
    response payload or raises. Exceptions are classified by
    :func:`classify_exception`; a missing response is a permanent failure.

    Example:
        >>> async def transcribe(operation, payload):
        ...     return await stt_client.recognize(payload["audio_url"], payload["locale"])
        >>> provider = CallableProvider("speech-to-text", transcribe, operations=["transcribe"])
    """

    def __init__(
        self,
        name: str,
        func: ProviderCallable,
        operations: Optional[List[str]] = None,
        transient_types: Tuple[Type[BaseException], ...] = TRANSIENT_EXCEPTION_TYPES,
        health_func: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> None:
        super().__init__(name)
        self._func = func
        self._operations = list(operations or [])
        self._transient_types = transient_types
        self._health_func = health_func

    def get_supported_operations(self) -> List[str]:
        return list(self._operations)

    async def invoke(self, operation: str, payload: Dict[str, Any], timeout: Optional[float]) -> StepOutcome:
        if not self.supports_operation(operation):
            return PermanentFailure(f"{self.name} does not support operation '{operation}'")

        # The executor enforces the step timeout around this call
        try:
            response = await self._func(operation, payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            outcome = classify_exception(e, self._transient_types)
            logger.debug(f"{self.name}.{operation} failed ({type(outcome).__name__}): {e}")
            return outcome

        if response is None:
            return PermanentFailure(f"{self.name}.{operation} returned no response")
        return Success(response)

    async def health_check_async(self) -> Dict[str, Any]:
        if self._health_func is None:
            return await super().health_check_async()

        start = time.perf_counter()
        try:
            healthy = bool(await self._health_func())
            status = "healthy" if healthy else "unhealthy"
            details: Dict[str, Any] = {}
        except Exception as e:
            healthy = False
            status = "error"
            details = {"error": str(e)}
        return {
            "healthy": healthy,
            "status": status,
            "response_time_ms": (time.perf_counter() - start) * 1000,
            "details": details,
        }
