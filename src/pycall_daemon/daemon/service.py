"""pycall daemon service - RPyC service executing call units.

Runs inside the background daemon process and keeps the shared namespace
alive between calls.
"""

import logging
import os
import signal
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError
from rpyc import Service

from ..callunit import Namespace, execute
from ..config import CallOptions
from ..utils.exception_logger import ExceptionLogger

logger = logging.getLogger(__name__)


def _terminate_self() -> None:
    # SIGTERM the daemon process; the server's signal handler closes the
    # listening socket and exits
    os.kill(os.getpid(), signal.SIGTERM)


class CallDaemonService(Service):
    """RPyC service serving call units sequentially.

    Exposed methods:
    - run: execute one call unit described by serialized ``CallOptions``
    - ping: health check
    - get_status: daemon statistics
    - shutdown: stop the daemon, aborting any in-flight call

    Thread Safety:
        RPyC's ThreadedServer handles each connection in its own thread.
        ``run_lock`` makes call units execute one at a time, in arrival order
        per connection. It does not isolate callers from each other's state
        in the shared namespace.
    """

    def __init__(
        self,
        port: int,
        shared: bool = True,
        workspace: Optional[Path] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
    ):
        super().__init__()

        if workspace is not None:
            exception_logger = ExceptionLogger.initialize(workspace, mode="daemon")
            exception_logger.install_thread_exception_hook()

        self.port = port
        self.default_shared = shared
        self.shared_namespace = Namespace()
        self.run_lock = threading.Lock()
        self.calls_served = 0
        self.calls_failed = 0
        self.started_at = time.time()
        self._on_shutdown = on_shutdown or _terminate_self

        logger.info(
            f"CallDaemonService initialized on port {port} "
            f"({'shared' if shared else 'isolated'} namespace by default)"
        )

    def on_connect(self, conn):
        logger.debug("Client connected")

    def on_disconnect(self, conn):
        logger.debug("Client disconnected")

    def exposed_run(self, options_json: str) -> Dict[str, Any]:
        """Execute one call unit.

        Args:
            options_json: ``CallOptions`` serialized with ``model_dump_json``

        Returns:
            Dictionary with 'status' ('ok' or 'error'), 'namespace' and, on
            error, 'phase' and 'message'. Outputs and errors are also written
            to the options' result file.
        """
        try:
            options = CallOptions.model_validate_json(options_json)
        except ValidationError as e:
            logger.error(f"Rejected malformed call options: {e}")
            return {"status": "error", "phase": "payload", "message": str(e)}

        shared = self.default_shared if options.shared is None else options.shared

        with self.run_lock:
            namespace = self.shared_namespace if shared else Namespace.fresh()
            logger.debug(
                f"exposed_run: f={options.f[:50]!r} "
                f"namespace={'shared' if shared else 'fresh'}"
            )
            error = execute(options, namespace)
            self.calls_served += 1
            if error is not None:
                self.calls_failed += 1

        result = {"status": "ok", "namespace": "shared" if shared else "fresh"}
        if error is not None:
            result.update(status="error", phase=error.phase, message=error.message)
        return result

    def exposed_ping(self) -> Dict[str, Any]:
        """Health check endpoint."""
        return {"status": "ok"}

    def exposed_get_status(self) -> Dict[str, Any]:
        """Daemon statistics."""
        return {
            "pid": os.getpid(),
            "port": self.port,
            "shared": self.default_shared,
            "calls_served": self.calls_served,
            "calls_failed": self.calls_failed,
            "shared_namespace_calls": self.shared_namespace.calls,
            "uptime_seconds": round(time.time() - self.started_at, 3),
            "busy": self.run_lock.locked(),
        }

    def exposed_shutdown(self) -> Dict[str, Any]:
        """Shut the daemon down.

        Does not wait for an in-flight call; its caller sees the connection
        drop.
        """
        logger.info("exposed_shutdown: initiating shutdown")
        # run after this reply has been sent
        timer = threading.Timer(0.05, self._on_shutdown)
        timer.daemon = True
        timer.start()
        return {"status": "success", "message": "Shutdown initiated"}
