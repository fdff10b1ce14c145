"""Entry point for the pycall daemon.

Usage:
    python -m pycall_daemon.daemon --port 3000
    python -m pycall_daemon.daemon --port 3000 --isolated --workspace ~/.pycall

The daemon binds a TCP port on localhost and serves call units until it is
shut down.
"""

import argparse
import logging
import sys
from pathlib import Path

from ..config import DEFAULT_PORT, DEFAULT_WORKSPACE
from .server import start_daemon

# Setup logging - Output to both console and file
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(),
    ],
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point for the daemon process."""
    parser = argparse.ArgumentParser(
        description="pycall daemon - persistent Python interpreter for pycall"
    )
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Port to bind")
    parser.add_argument("--host", default="127.0.0.1", help="Interface to bind")
    parser.add_argument(
        "--workspace",
        type=Path,
        default=DEFAULT_WORKSPACE,
        help="Workspace for logs (default: ~/.pycall)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--shared",
        dest="shared",
        action="store_true",
        default=True,
        help="Retain one namespace across calls (default)",
    )
    mode.add_argument(
        "--isolated",
        dest="shared",
        action="store_false",
        help="Evaluate each call in a fresh namespace by default",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    workspace = args.workspace.expanduser()
    try:
        workspace.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        print(f"ERROR: Cannot create workspace {workspace}: {e}", file=sys.stderr)
        sys.exit(1)

    # Add file handler for daemon logs
    daemon_log_file = workspace / f"daemon-{args.port}.log"
    file_handler = logging.FileHandler(daemon_log_file)
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    logging.getLogger().addHandler(file_handler)
    logger.info(f"Daemon logging to {daemon_log_file}")

    start_daemon(args.port, host=args.host, shared=args.shared, workspace=workspace)


if __name__ == "__main__":
    main()
