"""
Shared pytest fixtures for pycall tests.

Provides isolated workspaces, free ports and cleanup of process-global state
(working directory, sys.path, the exception logger singleton).
"""

import socket
import sys
from pathlib import Path

import pytest

from pycall_daemon.utils.exception_logger import ExceptionLogger


def get_free_port() -> int:
    """Ask the OS for a currently unused TCP port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(autouse=True)
def reset_exception_logger():
    """ExceptionLogger is a singleton; give every test a fresh one."""
    ExceptionLogger._instance = None
    yield
    ExceptionLogger._instance = None


@pytest.fixture(autouse=True)
def restore_process_state(tmp_path, monkeypatch):
    """Call units chdir and extend sys.path; undo both after each test."""
    monkeypatch.chdir(tmp_path)
    saved_path = list(sys.path)
    yield
    sys.path[:] = saved_path


@pytest.fixture
def workspace(tmp_path) -> Path:
    """Empty pycall workspace directory."""
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def free_port() -> int:
    return get_free_port()


@pytest.fixture
def make_options(tmp_path, workspace):
    """Factory for CallOptions whose temporary files live under tmp_path."""
    from pycall_daemon.config import CallOptions

    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        n = counter["n"]
        values = {
            "infile": tmp_path / f"in-{n}.json",
            "outfile": tmp_path / f"out-{n}.json",
            "workspace": workspace,
            "cwd": tmp_path,
        }
        values.update(overrides)
        return CallOptions(**values)

    return _make
