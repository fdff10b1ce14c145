"""Call units: the callee side of a pycall invocation.

A call unit is everything needed to turn a function expression and a payload
file into outputs, executed against a ``Namespace``:

    (a) change into the working directory
    (b) activate the project (a source directory or a virtualenv)
    (c) import the requested modules
    (d) execute the setup script
    (e) evaluate the function expression to a callable
    (f) call it with the payload arguments
    (g) return the value

The same code runs inside the daemon and inside a fresh runtime instance.
"""

import ast
import builtins
import importlib
import logging
import os
import site
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import CallOptions
from .conversion import ConversionTable, default_table
from .errors import (
    InvocationError,
    ModuleLoadFailure,
    PycallError,
    SetupScriptFailure,
    UndefinedReference,
)
from .payload import read_payload, remove_quietly, write_error, write_outputs
from .utils.exception_logger import ExceptionLogger

logger = logging.getLogger(__name__)

SCOPE_NAME = "__pycall_scope__"


def _nothing(*args, **kwargs) -> None:
    return None


class Namespace:
    """Globals in which call units are evaluated, plus their conversion rules.

    A shared namespace is kept by the daemon and reused across calls, so
    imports and definitions from earlier calls stay visible. ``fresh()`` gives
    an isolated one.
    """

    def __init__(self, converters: Optional[ConversionTable] = None):
        self.converters = converters or default_table.child()
        self.globals: Dict[str, Any] = {
            "__name__": "__pycall__",
            "__builtins__": builtins,
            "converters": self.converters,
        }
        self.calls = 0

    @classmethod
    def fresh(cls) -> "Namespace":
        return cls()

    def __contains__(self, name: str) -> bool:
        return name in self.globals


@dataclass(frozen=True)
class CallUnit:
    """Composed environment setup, imports, resolution and invocation."""

    f: str = ""
    nofun: bool = False
    modules: Tuple[str, ...] = ()
    setup: Optional[Path] = None
    cwd: Optional[Path] = None
    project: Optional[Path] = None

    def run(
        self,
        namespace: Namespace,
        args: Sequence[Any] = (),
        kwargs: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Execute the unit in ``namespace`` and return the raw result.

        Raises:
            SetupScriptFailure: Working directory, project or setup script failed
            ModuleLoadFailure: A module could not be imported
            UndefinedReference: ``f`` does not resolve to a callable
            InvocationError: The callable (or expression) raised
        """
        kwargs = kwargs or {}
        namespace.calls += 1

        self._change_directory()
        self._activate_project()
        self._import_modules(namespace)
        self._load_setup(namespace)

        if self.nofun:
            self._execute_statements(namespace)
            return None

        fn = self._resolve(namespace)
        try:
            return fn(*args, **kwargs)
        except (Exception, SystemExit) as e:
            raise InvocationError.wrap(e) from e

    def _change_directory(self) -> None:
        if self.cwd is None:
            return
        try:
            os.chdir(self.cwd)
        except OSError as e:
            raise SetupScriptFailure.wrap(
                e, f"Cannot change to working directory {self.cwd}: {e}"
            ) from e

    def _activate_project(self) -> None:
        if self.project is None:
            return
        project = Path(self.project).expanduser().resolve()
        if not project.is_dir():
            raise SetupScriptFailure(f"Project directory not found: {project}")

        if (project / "pyvenv.cfg").exists():
            site_dirs = list(project.glob("lib/python*/site-packages"))
            site_dirs += list(project.glob("Lib/site-packages"))
            for site_dir in site_dirs:
                if str(site_dir) not in sys.path:
                    site.addsitedir(str(site_dir))
                    logger.debug(f"Activated virtualenv site dir {site_dir}")
            return

        if str(project) not in sys.path:
            sys.path.insert(0, str(project))
            logger.debug(f"Activated project {project}")

    def _import_modules(self, namespace: Namespace) -> None:
        for name in self.modules:
            try:
                importlib.import_module(name)
            except Exception as e:
                raise ModuleLoadFailure.wrap(e, f"Failed to import {name}: {e}") from e
            # like `import a.b`: bind the top-level package only
            top = name.split(".")[0]
            namespace.globals[top] = sys.modules[top]

    def _load_setup(self, namespace: Namespace) -> None:
        if self.setup is None:
            return
        path = Path(self.setup).expanduser()
        try:
            source = path.read_text(encoding="utf-8")
        except OSError as e:
            raise SetupScriptFailure.wrap(e, f"Cannot read setup script {path}: {e}") from e

        namespace.globals["converters"] = namespace.converters
        try:
            code = compile(source, str(path), "exec")
            exec(code, namespace.globals)
        except (Exception, SystemExit) as e:
            raise SetupScriptFailure.wrap(e, f"Setup script {path} failed: {e}") from e

    def _scoped(self, namespace: Namespace) -> Callable[[], Any]:
        """Wrap ``f`` in a throw-away function defined in ``namespace``.

        Local assignments in ``f`` stay local, names not assigned in ``f``
        resolve against the namespace. The final statement must be an
        expression and becomes the return value.
        """
        try:
            body = ast.parse(self.f.strip(), filename="<pycall>", mode="exec").body
        except SyntaxError as e:
            raise UndefinedReference.wrap(e, f"Cannot parse {self.f!r}: {e}") from e

        if not body:
            raise UndefinedReference(f"{self.f!r} holds no expression")
        last = body[-1]
        if not isinstance(last, ast.Expr):
            raise UndefinedReference(
                f"{self.f!r} must end with an expression evaluating to a callable"
            )
        body[-1] = ast.copy_location(ast.Return(value=last.value), last)

        module = ast.parse(f"def {SCOPE_NAME}():\n    pass\n")
        module.body[0].body = body
        ast.fix_missing_locations(module)

        try:
            code = compile(module, "<pycall>", "exec")
        except SyntaxError as e:
            raise UndefinedReference.wrap(e, f"Cannot compile {self.f!r}: {e}") from e
        exec(code, namespace.globals)
        return namespace.globals.pop(SCOPE_NAME)

    def _resolve(self, namespace: Namespace) -> Callable:
        if not self.f.strip():
            return _nothing

        scope = self._scoped(namespace)
        try:
            fn = scope()
        except (NameError, AttributeError) as e:
            raise UndefinedReference.wrap(e, f"Cannot resolve {self.f!r}: {e}") from e
        except ImportError as e:
            raise ModuleLoadFailure.wrap(e) from e
        except Exception as e:
            raise UndefinedReference.wrap(
                e, f"Evaluating {self.f!r} raised {type(e).__name__}: {e}"
            ) from e

        if not callable(fn):
            raise UndefinedReference(
                f"{self.f!r} evaluated to {type(fn).__name__}, which is not callable"
            )
        return fn

    def _execute_statements(self, namespace: Namespace) -> None:
        if not self.f.strip():
            return

        # statements run at namespace level so their definitions persist
        try:
            code = compile(self.f.strip(), "<pycall>", "exec")
        except SyntaxError as e:
            raise UndefinedReference.wrap(e, f"Cannot parse {self.f!r}: {e}") from e
        try:
            exec(code, namespace.globals)
        except (Exception, SystemExit) as e:
            raise InvocationError.wrap(e) from e


def build_call_unit(options: CallOptions) -> CallUnit:
    """Compose the call unit described by ``options``."""
    return CallUnit(
        f=options.f,
        nofun=options.nofun,
        modules=tuple(options.modules),
        setup=options.setup,
        cwd=options.cwd,
        project=options.project,
    )


def execute(options: CallOptions, namespace: Namespace) -> Optional[PycallError]:
    """Run one call on the callee side.

    Reads the payload (removing it when ``gc`` is set), runs the call unit,
    converts the value with the namespace's conversion rules and writes the
    result file. Failures are written to the result file as a tagged error.

    Returns:
        The error that was written, or None on success
    """
    unit = build_call_unit(options)
    if options.debug:
        logger.info(f"Executing {unit}")

    try:
        try:
            args, kwargs = read_payload(options.infile)
        finally:
            if options.gc:
                remove_quietly(options.infile)
        value = unit.run(namespace, args, kwargs)
        write_outputs(options.outfile, _to_outputs(namespace, value))
    except PycallError as e:
        error = e
    except Exception as e:
        error = InvocationError.wrap(e)
    else:
        return None

    logger.warning(f"Call {options.f!r} failed in {error.phase} phase: {error}")
    exception_logger = ExceptionLogger.get_instance()
    if exception_logger:
        exception_logger.log_exception(
            error, context={"phase": error.phase, "f": options.f, "port": options.port}
        )
    write_error(options.outfile, error)
    return error


def _to_outputs(namespace: Namespace, value: Any) -> List[Any]:
    try:
        return namespace.converters.to_outputs(value)
    except PycallError:
        raise
    except Exception as e:
        raise InvocationError.wrap(e, f"Converting the result failed: {e}") from e
