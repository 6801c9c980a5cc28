"""
This package provides the command-lifecycle engine behind the OpsDeck
operator console: dispatching commands to agents, correlating their
asynchronous results, enforcing deadlines and keeping the command history.

The public API is loaded lazily through ``__getattr__`` so that importing a
light module (for instance ``opsdeck_runtime.errors``) does not pull in the
Redis and HTTP client stacks.
"""

from importlib import import_module
from typing import Any, Dict, Tuple

__all__ = [
    "CommandLifecycle",
    "create_lifecycle",
    "run_forever",
    "RuntimeSettings",
    "configure_logging",
]


_ATTR_MODULE_MAP: Dict[str, Tuple[str, str]] = {
    "CommandLifecycle": ("engine", "CommandLifecycle"),
    "create_lifecycle": ("engine", "create_lifecycle"),
    "run_forever": ("engine", "run_forever"),
    "RuntimeSettings": ("config", "RuntimeSettings"),
    "configure_logging": ("logging_utils", "configure_logging"),
}


def __getattr__(name: str) -> Any:
    """
    Lazily loads attributes from submodules of the ``opsdeck_runtime`` package.

    Raises:
        AttributeError: If the requested attribute is not part of the
                        package's public API.
    """
    try:
        module_name, attribute = _ATTR_MODULE_MAP[name]
    except KeyError as exc:  # pragma: no cover - guard against typos
        raise AttributeError(f"module 'opsdeck_runtime' has no attribute {name!r}") from exc

    module = import_module(f".{module_name}", __name__)
    value = getattr(module, attribute)
    globals()[name] = value  # Cache for future lookups
    return value
