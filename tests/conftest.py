import sys
from pathlib import Path

import pytest

from budget_runtime.api.lifespan.health_registry import HealthRegistry
from budget_runtime.database.manager import DatabaseLifecycleManager


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "budget-local"


@pytest.fixture
def health_registry() -> HealthRegistry:
    return HealthRegistry()


@pytest.fixture
def make_manager(db_path, health_registry):
    """Manager bound to a temp directory and a private health registry."""
    def _make(**kwargs) -> DatabaseLifecycleManager:
        return DatabaseLifecycleManager(db_path, health_registry=health_registry, **kwargs)
    return _make


@pytest.fixture
def python_cmd():
    """argv prefix running a Python snippet in a fresh interpreter."""
    def _cmd(code: str):
        return [sys.executable, "-c", code]
    return _cmd
