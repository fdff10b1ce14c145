"""Caller side of pycall: write the payload, route the call, read the outputs.

Calls go either to the persistent daemon on ``options.port`` (through a
``ServerRegistry``) or to a fresh interpreter instance running
``python -m pycall_daemon.runner``.
"""

import logging
import os
import subprocess
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .config import CallOptions, ConfigManager, save_options
from .daemon.registry import ServerRegistry
from .errors import InvocationError
from .payload import read_outputs, remove_quietly, write_payload

logger = logging.getLogger(__name__)


@contextmanager
def temporary_files(options: CallOptions) -> Iterator[CallOptions]:
    """Scope of the payload, result and options files of one call.

    When ``options.gc`` is set the files are removed on exit, whether the
    call succeeded or not.
    """
    try:
        yield options
    finally:
        if options.gc:
            for path in (options.infile, options.outfile, options.options_file):
                remove_quietly(path)


class Dispatcher:
    """Routes calls to a daemon or a fresh runtime."""

    def __init__(self, registry: ServerRegistry):
        self.registry = registry

    def call(
        self,
        options: CallOptions,
        args: Optional[Sequence[Any]] = None,
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> List[Any]:
        """Run the call described by ``options``.

        Args:
            options: Call options
            args: Positional arguments. When both ``args`` and ``kwargs`` are
                None and ``options.infile`` exists, that payload is used as-is.
            kwargs: Keyword arguments

        Returns:
            Output slots: empty if the function returned None, one per element
            for a tuple, else a single slot

        Raises:
            PycallError: The tagged failure of whichever phase failed
        """
        if options.is_shutdown:
            self.registry.shutdown(options.port)
            return []

        with temporary_files(options):
            if args is None and kwargs is None and options.infile.exists():
                logger.debug(f"Using existing payload {options.infile}")
            else:
                write_payload(options.infile, args or (), kwargs or {})

            if options.server:
                self._call_daemon(options)
            else:
                self._call_fresh(options)

            return read_outputs(options.outfile)

    def _call_daemon(self, options: CallOptions) -> None:
        self.registry.start(
            options.port,
            shared=True if options.shared is None else options.shared,
            restart=options.restart,
            threads=options.threads,
            runtime=options.runtime,
            workspace=options.workspace,
        )
        status = self.registry.dispatch(options.port, options)
        if options.debug:
            logger.info(f"Daemon status: {status}")

    def _call_fresh(self, options: CallOptions) -> None:
        options_file = save_options(options)
        cmd = [options.runtime, "-m", "pycall_daemon.runner", str(options_file)]
        env = dict(os.environ)
        env.update(options.thread_env())

        logger.debug(f"Running fresh runtime: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, env=env)
        except OSError as e:
            raise InvocationError.wrap(e, f"Cannot run runtime {options.runtime}: {e}") from e

        if options.debug:
            if result.stdout:
                logger.info(f"runtime stdout:\n{result.stdout}")
            if result.stderr:
                logger.info(f"runtime stderr:\n{result.stderr}")

        if not options.outfile.exists():
            raise InvocationError(
                f"Runtime {options.runtime} exited with code {result.returncode} "
                f"without writing results: {result.stderr.strip()}"
            )


def pycall(
    f: str = "",
    args: Sequence[Any] = (),
    kwargs: Optional[Dict[str, Any]] = None,
    registry: Optional[ServerRegistry] = None,
    **options: Any,
) -> List[Any]:
    """Call the Python function expression ``f`` out of process.

    Example:
        >>> pycall("sorted", [[3, 1, 2]], {"reverse": True})
        [[3, 2, 1]]
        >>> pycall("numpy.linalg.norm", [[3.0, 4.0]], modules=["numpy.linalg"])
        [5.0]

    Args:
        f: Expression evaluating to a callable; "" calls a function that
            returns nothing
        args: Positional arguments
        kwargs: Keyword arguments
        registry: Daemon registry; a new one configured from the workspace is
            used when omitted (a daemon already running on the port is reused)
        **options: Any ``CallOptions`` field

    Returns:
        List of output slots
    """
    call_options = CallOptions(f=f, **options)
    if registry is None:
        config = ConfigManager(call_options.workspace).load()
        registry = ServerRegistry(config)
    return Dispatcher(registry).call(call_options, list(args), kwargs or {})
