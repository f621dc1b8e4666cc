"""Pytest configuration and shared fixtures for integration tests."""

from __future__ import annotations

import socket
import sys
from pathlib import Path

import pytest

# Make the bridge package importable without an editable install
_repo_root = Path(__file__).parent.parent
_bridge_src = _repo_root / "bridge" / "src"

if str(_bridge_src) not in sys.path:
    sys.path.insert(0, str(_bridge_src))


@pytest.fixture
def free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]
