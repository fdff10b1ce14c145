"""
pycall - call Python from anywhere through a persistent interpreter daemon.

Arguments are passed to a background Python server (or a fresh interpreter)
through JSON payload files, the function expression is evaluated there, and
its outputs come back through a result file.
"""

__version__ = "0.3.0"

from .config import CallOptions  # noqa: E402
from .conversion import ConversionTable, default_table  # noqa: E402
from .dispatcher import Dispatcher, pycall  # noqa: E402
from .errors import PycallError  # noqa: E402

__all__ = [
    "CallOptions",
    "ConversionTable",
    "Dispatcher",
    "PycallError",
    "default_table",
    "pycall",
]
