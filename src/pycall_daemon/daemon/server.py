"""Daemon server startup with TCP port binding.

Binding the port provides the atomic lock for a single daemon per port.
"""

import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from rpyc.utils.server import ThreadedServer

from .port_helper import is_listening
from .service import CallDaemonService

logger = logging.getLogger(__name__)

PROTOCOL_CONFIG = {
    "allow_public_attrs": True,
    "allow_pickle": True,
    "sync_request_timeout": None,  # calls may run arbitrarily long
}


def create_server(
    port: int,
    host: str = "127.0.0.1",
    shared: bool = True,
    workspace: Optional[Path] = None,
    service: Optional[CallDaemonService] = None,
) -> ThreadedServer:
    """Build (but do not start) the RPyC server for a daemon.

    Args:
        port: Port to bind
        host: Interface to bind
        shared: Default namespace mode for calls that do not choose one
        workspace: Workspace for exception logs
        service: Service instance to serve, created if not given

    Returns:
        Unstarted ThreadedServer sharing one service instance across connections
    """
    if service is None:
        service = CallDaemonService(port=port, shared=shared, workspace=workspace)

    return ThreadedServer(
        service,  # instance, not class: namespace is shared by all connections
        hostname=host,
        port=port,
        protocol_config=PROTOCOL_CONFIG,
    )


def start_daemon(
    port: int,
    host: str = "127.0.0.1",
    shared: bool = True,
    workspace: Optional[Path] = None,
) -> None:
    """Start the daemon and block until it is shut down.

    Raises:
        SystemExit: If a daemon already listens on the port or binding fails
    """
    logger.info(f"Starting pycall daemon on {host}:{port}")

    if is_listening(host, port):
        logger.error(f"Port {port} already in use")
        print(f"ERROR: Port {port} already in use", file=sys.stderr)
        sys.exit(1)

    try:
        server = create_server(port, host=host, shared=shared, workspace=workspace)
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Daemon already running on port {port}")
            print(f"ERROR: Daemon already running on port {port}", file=sys.stderr)
            sys.exit(1)
        raise

    _setup_signal_handlers(server)

    logger.info(f"pycall daemon listening on {host}:{port}")
    print(f"pycall daemon started on {host}:{port}")

    try:
        # Blocks here until shutdown
        server.start()
    finally:
        server.close()
        logger.info(f"Released port {port}")


def _setup_signal_handlers(server: ThreadedServer) -> None:
    """Setup signal handlers for graceful shutdown."""

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        server.close()
        sys.exit(0)

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
