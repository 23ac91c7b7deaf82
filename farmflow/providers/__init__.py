"""Capability provider interface, adapters and registry."""

from .base import CallableProvider, CapabilityProvider, classify_exception
from .factory import ProviderRegistry, UnknownProviderError
from .notifications import NotificationChannel, NotificationDispatcher
from .stores import StoreProvider

__all__ = [
    "CallableProvider",
    "CapabilityProvider",
    "NotificationChannel",
    "NotificationDispatcher",
    "ProviderRegistry",
    "StoreProvider",
    "UnknownProviderError",
    "classify_exception",
]
