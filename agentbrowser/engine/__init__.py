"""Browser engines the daemon can drive, selected by the backend name.

Resolution order for a backend name:
1. Built-in names (``native``)
2. Entry points in the ``agentbrowser.backends`` group
3. A ``module:attribute`` reference to an engine class or factory
"""

import importlib
from importlib.metadata import entry_points
from typing import Callable, Optional

from agentbrowser.daemon.errors import UnknownBackend
from agentbrowser.engine.base import BaseEngine

DEFAULT_BACKEND = "native"

BUILTIN_BACKENDS = {
    "native": "agentbrowser.engine.native:PlaywrightEngine",
}

ENTRY_POINT_GROUP = "agentbrowser.backends"


def _import_target(target: str) -> Callable[[], BaseEngine]:
    module_name, _, attribute = target.partition(":")
    module = importlib.import_module(module_name)
    return getattr(module, attribute)


def load_engine_factory(backend: Optional[str] = None) -> Callable[[], BaseEngine]:
    """
    Find the engine factory for a backend name.

    Raises:
        UnknownBackend: Nothing matches the name
    """
    name = backend or DEFAULT_BACKEND

    if name in BUILTIN_BACKENDS:
        return _import_target(BUILTIN_BACKENDS[name])

    for entry in entry_points(group=ENTRY_POINT_GROUP):
        if entry.name == name:
            return entry.load()

    if ":" in name:
        try:
            return _import_target(name)
        except (ImportError, AttributeError) as e:
            raise UnknownBackend(name) from e

    raise UnknownBackend(name)


__all__ = ["BaseEngine", "DEFAULT_BACKEND", "load_engine_factory"]
