"""Error taxonomy for pycall.

Every failure of a call is surfaced to the caller as exactly one of the
classes below. Each class carries a ``phase`` tag naming the part of the call
that failed, so errors raised inside the daemon (or a fresh runtime) can be
written to the result file as a single tagged value and re-raised on the
caller side as the same class.
"""

import traceback
from typing import Any, Dict, Optional, Type


class PycallError(Exception):
    """Base class for all bridge failures."""

    phase = "unknown"

    def __init__(
        self,
        message: str,
        remote_type: Optional[str] = None,
        remote_traceback: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.remote_type = remote_type
        self.remote_traceback = remote_traceback

    def __str__(self) -> str:
        if self.remote_type:
            return f"{self.remote_type}: {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Tagged, JSON-serializable representation of this error."""
        return {
            "phase": self.phase,
            "message": self.message,
            "remote_type": self.remote_type,
            "remote_traceback": self.remote_traceback,
        }

    @classmethod
    def wrap(cls, exc: BaseException, message: Optional[str] = None) -> "PycallError":
        """Build an error of this class from a caught exception.

        The original exception type, message and formatted stack are kept so
        the caller sees what actually went wrong in the callee.
        """
        return cls(
            message if message is not None else str(exc),
            remote_type=type(exc).__name__,
            remote_traceback="".join(
                traceback.format_exception(type(exc), exc, exc.__traceback__)
            ),
        )


class MalformedPayload(PycallError):
    """Payload, options or result file is missing, unreadable or incomplete."""

    phase = "payload"


class UndefinedReference(PycallError):
    """Function expression does not resolve to a callable."""

    phase = "resolve"


class ModuleLoadFailure(PycallError):
    """A module listed for import could not be imported."""

    phase = "import"


class SetupScriptFailure(PycallError):
    """The setup script is missing or raised while executing."""

    phase = "setup"


class InvocationError(PycallError):
    """The user callable (or expression) raised."""

    phase = "invoke"


class ServerUnreachable(PycallError):
    """No ready daemon answers on the requested port."""

    phase = "server"


class StartupTimeout(PycallError):
    """Daemon did not signal readiness before the startup timeout."""

    phase = "startup"


class AbortedOnShutdown(PycallError):
    """Daemon went away while a call was in flight."""

    phase = "shutdown"


ERROR_CLASSES: Dict[str, Type[PycallError]] = {
    cls.phase: cls
    for cls in (
        MalformedPayload,
        UndefinedReference,
        ModuleLoadFailure,
        SetupScriptFailure,
        InvocationError,
        ServerUnreachable,
        StartupTimeout,
        AbortedOnShutdown,
    )
}


def error_from_dict(data: Dict[str, Any]) -> PycallError:
    """Rebuild an error written with ``PycallError.to_dict``.

    Unknown phases fall back to the base class so nothing is lost.
    """
    if not isinstance(data, dict) or "message" not in data:
        return MalformedPayload(f"Invalid error record in result file: {data!r}")

    cls = ERROR_CLASSES.get(data.get("phase", ""), PycallError)
    return cls(
        str(data["message"]),
        remote_type=data.get("remote_type"),
        remote_traceback=data.get("remote_traceback"),
    )
