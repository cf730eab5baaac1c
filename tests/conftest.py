"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Make the src layout importable when the package is not installed
_src_path = Path(__file__).resolve().parent.parent / "src"
if str(_src_path) not in sys.path:
    sys.path.insert(0, str(_src_path))

from sandbox_bridge.settings import Settings  # noqa: E402


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: spawns the real worker process")


@pytest.fixture
def settings() -> Settings:
    """Settings with short margins so timeout tests finish quickly."""
    return Settings(timeout_margin_ms=100, worker_shutdown_timeout=1.0)
