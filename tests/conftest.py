"""
Pytest configuration and shared fixtures.

Provides:
- Test environment defaults (no language server autostart, short settle delays)
- A temporary workspace with policies and output directories
- An orchestrator driving the fake language server subprocess

In-process fakes and sample sources live in ``tests/fakes.py``.
"""

from __future__ import annotations

import os
import sys
from collections.abc import AsyncGenerator
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

# Add project root to path for imports
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Set test environment variables before importing the app
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("APP_LOG_LEVEL", "DEBUG")
os.environ.setdefault("OBSERVABILITY_STRUCTURED_LOGS", "false")
os.environ.setdefault("LANGUAGE_SERVER_AUTOSTART", "false")
os.environ.setdefault("INITIALIZE_SETTLE_SECONDS", "0")
os.environ.setdefault("COMPILE_SETTLE_SECONDS", "0.2")
os.environ.setdefault("UPLOAD_SETTLE_SECONDS", "0")

import pytest  # noqa: E402 (import after env setup)

from alfa_service.compiler.orchestrator import CompileOrchestrator  # noqa: E402
from alfa_service.lsp.process import LanguageServerConfig  # noqa: E402
from tests.fakes import build_orchestrator, fake_server_config  # noqa: E402


@pytest.fixture
def anyio_backend():
    """Use asyncio backend for anyio tests."""
    return "asyncio"


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A workspace root with the policies and output directories."""
    (tmp_path / "server" / "policies").mkdir(parents=True)
    (tmp_path / "src-gen").mkdir()
    return tmp_path


@pytest.fixture
def policies_dir(workspace: Path) -> Path:
    return workspace / "server" / "policies"


@pytest.fixture
def output_dir(workspace: Path) -> Path:
    return workspace / "src-gen"


@pytest.fixture
def server_config(workspace: Path, output_dir: Path) -> LanguageServerConfig:
    """Launch configuration for the fake language server subprocess."""
    return fake_server_config(workspace, output_dir)


@pytest.fixture
async def live_orchestrator(
    server_config: LanguageServerConfig, workspace: Path, output_dir: Path
) -> AsyncGenerator[CompileOrchestrator, None]:
    """An orchestrator with a started fake language server; stopped afterwards."""
    orchestrator = build_orchestrator(server_config, workspace, output_dir)
    await orchestrator.start()
    try:
        yield orchestrator
    finally:
        await orchestrator.stop()
