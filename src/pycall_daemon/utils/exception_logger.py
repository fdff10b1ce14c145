"""Centralized exception logger for pycall.

Writes every failed call and every uncaught thread exception to a JSON log
in the workspace, with:
- Timestamp and process ID-based log files
- Complete stack traces
- Thread information
- Call context (port, function expression, failing phase)
"""

import json
import os
import threading
import traceback
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any


class ExceptionLogger:
    """Centralized exception logging facility.

    Logs exceptions with full context to timestamped log files under
    ``<workspace>/logs``. Used by the daemon and by fresh runtime instances.
    """

    _instance: Optional["ExceptionLogger"] = None
    log_file_path: Optional[Path] = None

    def __init__(self, log_file_path: Path):
        self.log_file_path = log_file_path

    @classmethod
    def initialize(cls, workspace: Path, mode: str = "daemon") -> "ExceptionLogger":
        """Initialize the global exception logger (idempotent singleton).

        WARNING: This is a singleton. If already initialized, returns the existing
        instance rather than creating a new one. Tests should reset
        ``cls._instance = None`` if they need fresh instances.

        Args:
            workspace: pycall workspace directory
            mode: Operating mode - "daemon" or "runner"

        Returns:
            Initialized ExceptionLogger instance (singleton)
        """
        if cls._instance is not None:
            return cls._instance

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        pid = os.getpid()

        log_dir = Path(workspace) / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file_path = log_dir / f"{mode}_error_{timestamp}_{pid}.log"

        instance = cls(log_file_path)
        cls._instance = instance
        log_file_path.touch()

        return instance

    @classmethod
    def get_instance(cls) -> Optional["ExceptionLogger"]:
        """Get the current exception logger instance, or None."""
        return cls._instance

    def log_exception(
        self,
        exception: BaseException,
        thread_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Log an exception with full context.

        Args:
            exception: The exception to log
            thread_name: Name of the thread where exception occurred (optional)
            context: Additional context data to include in log (optional)
        """
        if not self.log_file_path:
            return

        log_entry = {
            "timestamp": datetime.now().isoformat(),
            "thread": thread_name or threading.current_thread().name,
            "exception_type": type(exception).__name__,
            "exception_message": str(exception),
            "stack_trace": "".join(
                traceback.format_exception(
                    type(exception), exception, exception.__traceback__
                )
            ),
            "context": context or {},
        }

        with open(self.log_file_path, "a") as f:
            f.write(json.dumps(log_entry, indent=2, default=str))
            f.write("\n---\n")

    def install_thread_exception_hook(self) -> None:
        """Install global thread exception handler.

        Sets up threading.excepthook to capture uncaught exceptions in
        connection threads of the daemon.
        """

        def global_thread_exception_handler(args):
            self.log_exception(
                exception=args.exc_value,
                thread_name=args.thread.name if args.thread else None,
                context={
                    "exc_type": args.exc_type.__name__,
                    "thread_identifier": args.thread.ident if args.thread else None,
                },
            )

        threading.excepthook = global_thread_exception_handler
