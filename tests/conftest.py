"""Test configuration for environments without the runtime dependencies."""
from __future__ import annotations

import importlib.util

import pytest

REQUIRED_MODULES = [
    "pandas",
    "requests",
    "websockets",
    "yaml",
    "appdirs",
]

missing = [mod for mod in REQUIRED_MODULES if importlib.util.find_spec(mod) is None]
if missing:
    pytest.skip(
        "Missing optional dependencies: " + ", ".join(sorted(missing)),
        allow_module_level=True,
    )
