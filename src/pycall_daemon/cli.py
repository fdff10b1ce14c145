"""Command line interface for pycall."""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import DEFAULT_PORT, DEFAULT_WORKSPACE, CallOptions, ConfigManager
from .daemon.registry import ServerRegistry
from .dispatcher import Dispatcher
from .errors import PycallError
from .payload import dumps

console = Console(stderr=True)


def _parse_json(value: Optional[str], expected: type, name: str) -> Any:
    if value is None:
        return None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint=name)
    if not isinstance(parsed, expected):
        raise click.BadParameter(
            f"must be a JSON {'array' if expected is list else 'object'}",
            param_hint=name,
        )
    return parsed


def _parse_threads(value: str) -> Union[int, str]:
    if value == "auto":
        return value
    try:
        threads = int(value)
    except ValueError:
        threads = 0
    if threads < 1:
        raise click.BadParameter("must be a positive integer or 'auto'", param_hint="--threads")
    return threads


def _registry(workspace: Path) -> ServerRegistry:
    try:
        config = ConfigManager(workspace).load()
    except ValueError as e:
        console.print(f"❌ {e}", style="red")
        sys.exit(1)
    return ServerRegistry(config)


def _report_failure(error: PycallError, debug: bool) -> None:
    console.print(f"❌ [bold]{error.phase}[/bold]: {escape(str(error))}", style="red")
    if debug and error.remote_traceback:
        console.print(error.remote_traceback, style="dim", markup=False)


@click.group(invoke_without_command=True)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__, prog_name="pycall")
@click.pass_context
def cli(ctx, verbose: bool):
    """Call Python functions through a persistent interpreter daemon.

    \b
    EXAMPLES:
      pycall call sorted --args '[[3, 1, 2]]' --kwargs '{"reverse": true}'
      pycall call numpy.linalg.norm --args '[[3, 4]]' -m numpy.linalg
      pycall call '' --setup setup.py --restart   # prepare the environment
      pycall stop                                 # shut the daemon down
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )

    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@cli.command("call")
@click.argument("f", default="")
@click.option("--args", "args_json", help="Positional arguments as a JSON array")
@click.option("--kwargs", "kwargs_json", help="Keyword arguments as a JSON object")
@click.option(
    "--infile",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Existing payload file to use instead of --args/--kwargs",
)
@click.option(
    "--outfile", type=click.Path(dir_okay=False, path_type=Path), help="Result file"
)
@click.option("--runtime", help="Python interpreter for the daemon or fresh runtime")
@click.option(
    "--project",
    type=click.Path(file_okay=False, path_type=Path),
    help="Project directory or virtualenv to activate",
)
@click.option(
    "--setup",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Setup script to execute before calling F",
)
@click.option("--module", "-m", "modules", multiple=True, help="Module to import")
@click.option("--threads", default="auto", help="Thread count or 'auto'")
@click.option("--cwd", type=click.Path(file_okay=False, path_type=Path))
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_WORKSPACE,
    show_default=True,
)
@click.option("--server/--no-server", default=True, help="Use the persistent daemon")
@click.option("--port", type=int, default=DEFAULT_PORT, show_default=True)
@click.option(
    "--shared/--isolated",
    default=None,
    help="Evaluate in the retained namespace or in a fresh one",
)
@click.option("--restart", is_flag=True, help="Restart the daemon first")
@click.option("--nofun", is_flag=True, help="Execute F as statements, return nothing")
@click.option("--no-gc", is_flag=True, help="Keep temporary files")
@click.option("--debug", is_flag=True, help="Print debugging information")
def call_command(
    f: str,
    args_json: Optional[str],
    kwargs_json: Optional[str],
    infile: Optional[Path],
    outfile: Optional[Path],
    runtime: Optional[str],
    project: Optional[Path],
    setup: Optional[Path],
    modules: Tuple[str, ...],
    threads: str,
    cwd: Optional[Path],
    workspace: Path,
    server: bool,
    port: int,
    shared: Optional[bool],
    restart: bool,
    nofun: bool,
    no_gc: bool,
    debug: bool,
):
    """Call the function expression F and print its outputs as JSON.

    F is any Python expression evaluating to a callable, optionally preceded
    by statements, e.g. 'a = 2; lambda x: a * x'. The outputs are printed as
    a JSON array: empty for None, one entry per element for a tuple.
    """
    args: Optional[List[Any]] = _parse_json(args_json, list, "--args")
    kwargs: Optional[Dict[str, Any]] = _parse_json(kwargs_json, dict, "--kwargs")

    if infile is not None and (args is not None or kwargs is not None):
        raise click.UsageError("--infile cannot be combined with --args/--kwargs")
    if infile is None:
        args, kwargs = args or [], kwargs or {}

    values: Dict[str, Any] = {
        "f": f,
        "infile": infile,
        "outfile": outfile,
        "project": project,
        "setup": setup,
        "modules": list(modules),
        "threads": _parse_threads(threads),
        "workspace": workspace,
        "server": server,
        "port": port,
        "shared": shared,
        "restart": restart,
        "nofun": nofun,
        "gc": not no_gc,
        "debug": debug,
    }
    if runtime:
        values["runtime"] = runtime
    if cwd:
        values["cwd"] = cwd

    try:
        options = CallOptions(**values)
    except ValidationError as e:
        raise click.UsageError(str(e))

    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        console.print(f"🔍 Options: {escape(options.model_dump_json())}", style="dim")

    try:
        outputs = Dispatcher(_registry(options.workspace)).call(options, args, kwargs)
    except PycallError as e:
        _report_failure(e, debug)
        sys.exit(1)

    click.echo(dumps(outputs))


@cli.command("start")
@click.option("--port", type=int, default=DEFAULT_PORT, show_default=True)
@click.option("--shared/--isolated", default=True, help="Default namespace mode")
@click.option("--threads", default="auto", help="Thread count or 'auto'")
@click.option("--restart", is_flag=True, help="Restart a running daemon")
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_WORKSPACE,
    show_default=True,
)
def start_command(port: int, shared: bool, threads: str, restart: bool, workspace: Path):
    """Start the daemon (normally started on the first call)."""
    parsed_threads = _parse_threads(threads)

    registry = _registry(workspace)
    try:
        registry.start(
            port, shared=shared, restart=restart, threads=parsed_threads, workspace=workspace
        )
    except PycallError as e:
        _report_failure(e, debug=False)
        sys.exit(1)

    console.print(f"[green]✓ Daemon ready on port {port}[/green]")


@cli.command("stop")
@click.option("--port", type=int, default=DEFAULT_PORT, show_default=True)
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_WORKSPACE,
    show_default=True,
)
def stop_command(port: int, workspace: Path):
    """Shut the daemon down. Does nothing if it is not running."""
    _registry(workspace).shutdown(port)
    console.print(f"[green]✓ Daemon stopped on port {port}[/green]")


@cli.command("status")
@click.option("--port", type=int, default=DEFAULT_PORT, show_default=True)
@click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=DEFAULT_WORKSPACE,
    show_default=True,
)
def status_command(port: int, workspace: Path):
    """Show daemon statistics."""
    try:
        status = _registry(workspace).status(port)
    except PycallError as e:
        console.print(f"[yellow]Daemon not running on port {port}[/yellow]")
        console.print(f"[dim](Error: {e})[/dim]")
        sys.exit(1)

    table = Table(title=f"pycall daemon on port {port}")
    table.add_column("Property", style="cyan")
    table.add_column("Value")
    for key, value in status.items():
        table.add_row(key, str(value))
    Console().print(table)


def main():
    cli(obj={})


if __name__ == "__main__":
    main()
