from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path

import pytest

import sys

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from telnet_docker.cli import ENGINE_ENV
from telnet_docker.runtime import DEFAULT_ENGINE


def _configured_engine() -> str:
    return os.environ.get(ENGINE_ENV, "").strip() or DEFAULT_ENGINE


def _engine_daemon_available(engine: str) -> bool:
    if shutil.which(engine) is None:
        return False
    result = subprocess.run(
        [engine, "info", "--format", "{{.ServerVersion}}"],
        check=False,
        text=True,
        capture_output=True,
    )
    return result.returncode == 0 and bool(result.stdout.strip())


@pytest.fixture(scope="session")
def container_engine() -> str:
    return _configured_engine()


@pytest.fixture(scope="session")
def engine_daemon_available(container_engine: str) -> bool:
    return _engine_daemon_available(container_engine)


@pytest.fixture()
def require_engine(container_engine: str, engine_daemon_available: bool) -> str:
    if not engine_daemon_available:
        pytest.skip(f"{container_engine} daemon is not reachable")
    return container_engine
