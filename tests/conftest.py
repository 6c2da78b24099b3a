"""Shared pytest configuration and fixtures."""
import os
import sys
import tempfile
from pathlib import Path

import pytest

# Keep session state and overrides out of the working tree; must happen
# before chainvisor.settings is first imported.
os.environ.setdefault("CHAINVISOR_STATE_DIR", tempfile.mkdtemp(prefix="chainvisor-test-"))
os.environ.setdefault("CHAINVISOR_LOG_DB", "False")

from chainvisor.local.spec import ProcessSpec  # noqa: E402
from chainvisor.local.supervisor import Launcher, Supervisor  # noqa: E402

PYTHON = sys.executable
SLEEP_FOREVER = "import time; time.sleep(60)"
IGNORE_SIGTERM = "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)"


def python_code(seconds: float, exit_code: int = 0) -> str:
    return f"import sys, time; time.sleep({seconds}); sys.exit({exit_code})"


@pytest.fixture
def make_spec(tmp_path):
    """Builds ProcessSpecs that run a Python snippet."""
    def _make(name: str, code: str = SLEEP_FOREVER, **kwargs) -> ProcessSpec:
        kwargs.setdefault("cwd", tmp_path)
        kwargs.setdefault("log_file", tmp_path / "logs" / f"{name}.log")
        return ProcessSpec(name=name, executable=PYTHON, args=("-c", code), **kwargs)
    return _make


@pytest.fixture
def state_path(tmp_path) -> Path:
    return tmp_path / "state" / "session.json"


@pytest.fixture
def supervisor():
    sup = Supervisor(poll_interval=0.05, startup_timeout=5)
    yield sup
    sup.shutdown_all(grace=1)
    sup.close()


@pytest.fixture
def launcher(supervisor):
    return Launcher(supervisor, confirm_window=0.1)
