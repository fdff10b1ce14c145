"""Client-side lifecycle management of pycall daemons.

``ServerRegistry`` tracks one ``ServerHandle`` per port and moves it through

    absent -> starting -> ready -> shutting-down -> absent

A daemon found answering on a port (for example one launched by an earlier
CLI invocation) is adopted as ready instead of being launched again.
"""

import logging
import os
import socket
import subprocess
import sys
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from rpyc.core.stream import SocketStream
from rpyc.utils.classic import obtain
from rpyc.utils.factory import connect_stream

from ..config import DEFAULT_WORKSPACE, CallOptions, DaemonConfig, thread_env
from ..errors import AbortedOnShutdown, ServerUnreachable, StartupTimeout
from .port_helper import is_listening, wait_until

logger = logging.getLogger(__name__)


class ServerState(str, Enum):
    ABSENT = "absent"
    STARTING = "starting"
    READY = "ready"
    SHUTTING_DOWN = "shutting-down"


@dataclass
class ServerHandle:
    """A daemon addressed by port."""

    port: int
    state: ServerState = ServerState.ABSENT
    shared: bool = True
    process: Optional[subprocess.Popen] = None
    started_at: Optional[float] = None

    @property
    def owned(self) -> bool:
        """True if this registry launched the daemon process."""
        return self.process is not None


class ServerRegistry:
    """Explicit registry of daemons keyed by port.

    Pass a registry through the dispatcher rather than relying on global
    state; at most one live handle exists per port.
    """

    def __init__(self, config: Optional[DaemonConfig] = None):
        self.config = config or DaemonConfig()
        self._handles: Dict[int, ServerHandle] = {}

    def __enter__(self) -> "ServerRegistry":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # Queries
    # =========================================================================

    def state(self, port: int) -> ServerState:
        handle = self._handles.get(port)
        return handle.state if handle else ServerState.ABSENT

    def handle(self, port: int) -> Optional[ServerHandle]:
        return self._handles.get(port)

    def ports(self) -> List[int]:
        """Ports with a ready daemon."""
        return sorted(
            port
            for port, handle in self._handles.items()
            if handle.state is ServerState.READY
        )

    def status(self, port: int) -> Dict[str, Any]:
        """Fetch statistics from the daemon on ``port``.

        Raises:
            ServerUnreachable: If no daemon answers
        """
        try:
            conn = self._connect(port, request_timeout=self.config.connect_timeout)
        except OSError as e:
            raise ServerUnreachable(f"No daemon answers on port {port}: {e}") from e
        try:
            return obtain(conn.root.exposed_get_status())
        finally:
            conn.close()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(
        self,
        port: int,
        shared: bool = True,
        restart: bool = False,
        threads: Union[int, str] = "auto",
        runtime: Optional[str] = None,
        workspace: Optional[Path] = None,
    ) -> ServerHandle:
        """Ensure a ready daemon listens on ``port``.

        Does nothing if a ready daemon is already there, unless ``restart``
        is set, in which case the daemon is shut down and launched again.

        Raises:
            StartupTimeout: If the daemon does not answer within
                ``config.startup_timeout`` or exits while starting
        """
        handle = self._handles.setdefault(port, ServerHandle(port=port))

        if restart:
            logger.info(f"Restarting daemon on port {port}")
            self.shutdown(port)
        elif self._ping(port):
            if handle.state is not ServerState.READY:
                logger.info(f"Adopting running daemon on port {port}")
                handle.state = ServerState.READY
            return handle
        elif handle.state is ServerState.READY:
            logger.warning(f"Daemon on port {port} stopped responding, relaunching")
            self._reap(handle)

        handle.state = ServerState.STARTING
        handle.shared = shared
        try:
            handle.process = self._launch(port, shared, threads, runtime, workspace)
        except OSError as e:
            handle.state = ServerState.ABSENT
            raise StartupTimeout.wrap(
                e, f"Cannot launch daemon with {runtime or sys.executable}: {e}"
            ) from e
        handle.started_at = time.time()

        try:
            self._wait_ready(handle)
        except StartupTimeout:
            self._reap(handle)
            raise

        handle.state = ServerState.READY
        logger.info(
            f"Daemon ready on port {port} after {time.time() - handle.started_at:.2f}s"
        )
        return handle

    def dispatch(self, port: int, options: CallOptions) -> Dict[str, Any]:
        """Submit a call unit to the ready daemon on ``port``.

        The daemon reads ``options.infile`` and writes ``options.outfile``.

        Returns:
            The status dictionary returned by the daemon

        Raises:
            ServerUnreachable: If no ready handle exists or the connection fails
            AbortedOnShutdown: If the daemon went away during the call
        """
        handle = self._handles.get(port)
        if handle is None or handle.state is not ServerState.READY:
            raise ServerUnreachable(
                f"No ready daemon on port {port} (state: {self.state(port).value})"
            )

        try:
            conn = self._connect(port, request_timeout=self.config.sync_request_timeout)
        except OSError as e:
            handle.state = ServerState.ABSENT
            raise ServerUnreachable(f"Cannot connect to daemon on port {port}: {e}") from e

        try:
            return obtain(conn.root.exposed_run(options.model_dump_json()))
        except (EOFError, ConnectionError) as e:
            handle.state = ServerState.ABSENT
            raise AbortedOnShutdown(
                f"Daemon on port {port} shut down during the call"
            ) from e
        finally:
            self._close_quietly(conn)

    def shutdown(self, port: int) -> None:
        """Shut down the daemon on ``port``. Idempotent."""
        handle = self._handles.get(port)

        if not self._ping(port):
            if handle is not None:
                self._reap(handle)
            if is_listening(self.config.host, port, self.config.connect_timeout):
                logger.warning(f"Port {port} is in use by something other than pycall")
            else:
                logger.debug(f"No daemon on port {port}, nothing to shut down")
            return

        handle = self._handles.setdefault(port, ServerHandle(port=port))
        handle.state = ServerState.SHUTTING_DOWN
        logger.info(f"Shutting down daemon on port {port}")

        try:
            conn = self._connect(port, request_timeout=self.config.connect_timeout)
            try:
                conn.root.exposed_shutdown()
            finally:
                self._close_quietly(conn)
        except (EOFError, OSError) as e:
            # Connection closed is expected during shutdown
            logger.debug(f"Shutdown connection closed: {e}")

        released = wait_until(
            lambda: not is_listening(self.config.host, port),
            self.config.shutdown_timeout,
            self.config.polling,
        )
        if not released:
            logger.warning(f"Daemon on port {port} did not release the port in time")

        self._reap(handle)

    def close(self) -> None:
        """Shut down every daemon this registry launched."""
        for port, handle in list(self._handles.items()):
            if handle.owned:
                self.shutdown(port)

    # =========================================================================
    # Internal Methods
    # =========================================================================

    def _launch(
        self,
        port: int,
        shared: bool,
        threads: Union[int, str],
        runtime: Optional[str],
        workspace: Optional[Path],
    ) -> subprocess.Popen:
        workspace = Path(workspace or DEFAULT_WORKSPACE).expanduser()
        cmd = [
            runtime or sys.executable,
            "-m",
            "pycall_daemon.daemon",
            "--port",
            str(port),
            "--host",
            self.config.host,
            "--workspace",
            str(workspace),
            "--shared" if shared else "--isolated",
        ]
        env = dict(os.environ)
        env.update(thread_env(threads))

        logger.debug(f"Launching daemon: {' '.join(cmd)}")
        # Start daemon process detached
        return subprocess.Popen(
            cmd,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            env=env,
            start_new_session=True,
        )

    def _wait_ready(self, handle: ServerHandle) -> None:
        exit_code: List[Optional[int]] = [None]

        def ready() -> bool:
            if handle.process is not None:
                exit_code[0] = handle.process.poll()
                if exit_code[0] is not None:
                    return True
            return self._ping(handle.port)

        if not wait_until(ready, self.config.startup_timeout, self.config.polling):
            raise StartupTimeout(
                f"Daemon on port {handle.port} not ready after "
                f"{self.config.startup_timeout}s"
            )
        if exit_code[0] is not None:
            raise StartupTimeout(
                f"Daemon on port {handle.port} exited with code {exit_code[0]} "
                "while starting; see the daemon log in the workspace"
            )

    def _connect(self, port: int, request_timeout: Optional[float]):
        """Open an RPyC connection with a bounded connect timeout.

        Socket-level connect (instead of ``rpyc.connect``) so connecting
        fails fast while RPC requests may run for ``request_timeout``.
        """
        sock = socket.create_connection(
            (self.config.host, port), timeout=self.config.connect_timeout
        )
        sock.settimeout(None)
        return connect_stream(
            SocketStream(sock),
            config={
                "allow_public_attrs": True,
                "sync_request_timeout": request_timeout,
            },
        )

    def _ping(self, port: int) -> bool:
        try:
            conn = self._connect(port, request_timeout=self.config.connect_timeout)
        except OSError:
            return False
        try:
            conn.root.exposed_ping()
            return True
        except Exception as e:
            logger.debug(f"Ping on port {port} failed: {e}")
            return False
        finally:
            self._close_quietly(conn)

    def _reap(self, handle: ServerHandle) -> None:
        """Forget a daemon, terminating its process if we own a lingering one."""
        process = handle.process
        if process is not None and process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=self.config.shutdown_timeout)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
        handle.process = None
        handle.state = ServerState.ABSENT

    @staticmethod
    def _close_quietly(conn) -> None:
        try:
            conn.close()
        except Exception as e:
            logger.debug(f"Ignoring error while closing connection: {e}")
