"""Port probing helpers for daemon mode.

The daemon is addressed by a local TCP port. A listening socket on that port
is the externally observable readiness signal, and binding it is the atomic
single-instance lock, so no PID files are needed.
"""

import socket
import time
from typing import Callable, Optional

from ..config import PollingConfig


def is_listening(host: str, port: int, timeout: float = 0.2) -> bool:
    """Check whether something accepts TCP connections on ``host:port``.

    Args:
        host: Interface to probe
        port: Port to probe
        timeout: Connect timeout in seconds

    Returns:
        True if a connection could be established
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_until(
    predicate: Callable[[], bool],
    timeout: float,
    polling: Optional[PollingConfig] = None,
) -> bool:
    """Poll ``predicate`` with exponential backoff until it holds.

    Args:
        predicate: Condition to wait for
        timeout: Maximum time to wait in seconds
        polling: Backoff settings, defaults to ``PollingConfig()``

    Returns:
        True if the predicate held before the timeout, False otherwise
    """
    polling = polling or PollingConfig()
    deadline = time.monotonic() + timeout
    interval = polling.initial_interval

    while True:
        if predicate():
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(interval, remaining))
        interval = min(interval * polling.backoff_factor, polling.max_interval)
