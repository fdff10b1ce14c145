"""Run a single call in a fresh interpreter instance.

Usage:
    python -m pycall_daemon.runner /path/to/options-<id>.json

Used when the caller asks for no daemon (``server=False``). The options file
is written by the dispatcher; outputs or a tagged error go to the result file
named in it.
"""

import argparse
import logging
import sys
from pathlib import Path

from .callunit import Namespace, execute
from .config import load_options
from .errors import MalformedPayload
from .utils.exception_logger import ExceptionLogger

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one pycall call unit")
    parser.add_argument("options", type=Path, help="Path to the options JSON file")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.WARNING, format="%(levelname)s:%(name)s:%(message)s")

    try:
        options = load_options(args.options)
    except MalformedPayload as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2

    if options.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    ExceptionLogger.initialize(options.workspace, mode="runner")
    execute(options, Namespace.fresh())
    return 0


if __name__ == "__main__":
    sys.exit(main())
