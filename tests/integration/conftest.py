"""Fixtures running a real RPyC daemon server inside the test process."""

import threading

import pytest

from pycall_daemon.config import DaemonConfig, PollingConfig
from pycall_daemon.daemon.port_helper import is_listening, wait_until
from pycall_daemon.daemon.registry import ServerRegistry
from pycall_daemon.daemon.server import create_server
from pycall_daemon.daemon.service import CallDaemonService


@pytest.fixture
def daemon_config():
    return DaemonConfig(
        startup_timeout=30,
        shutdown_timeout=5,
        polling=PollingConfig(initial_interval=0.02, max_interval=0.2),
    )


@pytest.fixture
def in_process_daemon(free_port):
    """Serve CallDaemonService on a free port from a background thread.

    Shutdown closes the server instead of signalling the test process.
    """
    servers = []
    service = CallDaemonService(port=free_port, on_shutdown=lambda: servers[0].close())
    server = create_server(free_port, service=service)
    servers.append(server)

    thread = threading.Thread(target=server.start, daemon=True)
    thread.start()
    assert wait_until(lambda: is_listening("127.0.0.1", free_port), timeout=5)

    yield service

    server.close()
    thread.join(timeout=5)


@pytest.fixture
def registry(daemon_config):
    with ServerRegistry(daemon_config) as registry:
        yield registry
