#!/usr/bin/env python3
"""Protocol id -> lending adapter factory registry."""

from __future__ import annotations

import importlib
from typing import Callable, Dict, List, Mapping, Optional

from .base import LendingAdapter

AdapterFactory = Callable[[], LendingAdapter]

DEFAULT_PROTOCOL = "venus"

_FACTORIES: Dict[str, AdapterFactory] = {}


class UnsupportedProtocolError(ValueError):
    """Raised when no adapter is registered for a protocol id."""


def _normalize(protocol_id: str) -> str:
    return str(protocol_id or "").strip().lower()


def register_adapter(protocol_id: str, factory: AdapterFactory) -> None:
    key = _normalize(protocol_id)
    if not key:
        raise ValueError("protocol_id is required")
    _FACTORIES[key] = factory


def unregister_adapter(protocol_id: str) -> None:
    _FACTORIES.pop(_normalize(protocol_id), None)


def registered_protocols() -> List[str]:
    return sorted(_FACTORIES)


def load_factory(target: str) -> AdapterFactory:
    """Import ``package.module:attr`` and return the callable it names."""
    module_name, sep, attr = str(target or "").partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Adapter factory must look like 'module:attr', got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"{target} is not callable")
    return factory


def register_from_config(adapters: Optional[Mapping[str, str]]) -> List[str]:
    """Register every ``protocol: module:attr`` entry from worker.yaml."""
    added: List[str] = []
    for protocol_id, target in (adapters or {}).items():
        if not protocol_id or not target:
            continue
        register_adapter(protocol_id, load_factory(str(target)))
        added.append(_normalize(protocol_id))
    return added


def resolve_adapter(protocol_id: Optional[str] = None) -> LendingAdapter:
    key = _normalize(protocol_id or DEFAULT_PROTOCOL)
    factory = _FACTORIES.get(key)
    if factory is None:
        known = ", ".join(registered_protocols()) or "none registered"
        raise UnsupportedProtocolError(f"Unsupported protocol: {key} (known: {known})")
    return factory()
