"""Registry of named modules that configuration can refer to."""

from __future__ import annotations

import threading
from typing import Any, Callable

Factory = Callable[[Any], Any]

_lock = threading.Lock()
_factories: dict[str, Factory] = {}


class ModuleError(Exception):
    """Raised when a module cannot be registered, built, provisioned or validated."""


def register_module(module_id: str, factory: Factory) -> None:
    """Register a factory that builds the module `module_id` from its config."""
    if not module_id:
        raise ModuleError("module ID missing")
    if not callable(factory):
        raise ModuleError(f"module '{module_id}': factory is not callable")
    with _lock:
        if module_id in _factories:
            raise ModuleError(f"module already registered: {module_id}")
        _factories[module_id] = factory


def load_module(module_id: str, config: Any = None) -> Any:
    """Build, provision and validate the module `module_id` from `config`."""
    with _lock:
        factory = _factories.get(module_id)
    if factory is None:
        raise ModuleError(f"unknown module: {module_id}")

    try:
        instance = factory(config)
    except ModuleError:
        raise
    except (TypeError, ValueError, KeyError, AttributeError) as exc:
        raise ModuleError(f"decoding module config: {module_id}: {exc}") from exc

    provision = getattr(instance, "provision", None)
    if callable(provision):
        try:
            provision()
        except Exception as exc:
            raise ModuleError(f"provision {module_id}: {exc}") from exc

    validate = getattr(instance, "validate", None)
    if callable(validate):
        try:
            validate()
        except Exception as exc:
            raise ModuleError(f"{module_id}: invalid configuration: {exc}") from exc

    return instance


def module_ids(namespace: str) -> list[str]:
    """Return the sorted IDs of modules registered directly in `namespace`."""
    with _lock:
        ids = list(_factories)
    return sorted(mid for mid in ids if mid.rpartition(".")[0] == namespace)