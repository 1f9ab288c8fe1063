"""streamnorm package entrypoint and lightweight public API."""

from __future__ import annotations

import importlib
from typing import Any

__version__ = "0.3.0"
__license__ = "MIT"

_LAZY_EXPORTS = {
    "Config": ("streamnorm.config", "Config"),
    "StreamMode": ("streamnorm.normalizer.pipeline", "StreamMode"),
    "StreamNormalizer": ("streamnorm.normalizer.pipeline", "StreamNormalizer"),
    "normalize_stream": ("streamnorm.normalizer.pipeline", "normalize_stream"),
    "anormalize_stream": ("streamnorm.normalizer.pipeline", "anormalize_stream"),
    "UpstreamStreamError": ("streamnorm.normalizer.errors", "UpstreamStreamError"),
}


def __getattr__(name: str) -> Any:
    if name not in _LAZY_EXPORTS:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    module_name, attr_name = _LAZY_EXPORTS[name]
    module = importlib.import_module(module_name)
    value = getattr(module, attr_name)
    globals()[name] = value
    return value


__all__ = [
    "__version__",
    "__license__",
    "Config",
    "StreamMode",
    "StreamNormalizer",
    "UpstreamStreamError",
    "anormalize_stream",
    "normalize_stream",
]
