"""Shared runtime state for the IndexHub backend.

Exposes the running JobScheduler, ReconciliationEngine and provider
registry so that request handlers and services can access them without
importing `app` directly, avoiding circular dependencies during startup.
"""

from __future__ import annotations

from typing import Optional

from .providers.base import ProviderRegistry
from .reconciliation.engine import ReconciliationEngine
from .scheduling.scheduler import JobScheduler

# Mutable module level references to the running components.
_scheduler: Optional[JobScheduler] = None
_engine: Optional[ReconciliationEngine] = None
_registry: Optional[ProviderRegistry] = None


def get_scheduler() -> Optional[JobScheduler]:
    """Return the active JobScheduler instance, if available."""

    return _scheduler


def set_scheduler(instance: Optional[JobScheduler]) -> None:
    """Update the shared scheduler reference."""

    global _scheduler
    _scheduler = instance


def get_engine() -> Optional[ReconciliationEngine]:
    return _engine


def set_engine(instance: Optional[ReconciliationEngine]) -> None:
    global _engine
    _engine = instance


def get_registry() -> Optional[ProviderRegistry]:
    return _registry


def set_registry(instance: Optional[ProviderRegistry]) -> None:
    global _registry
    _registry = instance


__all__ = [
    "get_scheduler",
    "set_scheduler",
    "get_engine",
    "set_engine",
    "get_registry",
    "set_registry",
]
