"""File-based payload and result envelopes.

Payload file (written by the caller, read by the callee)::

    {"args": [...], "kwargs": {...}}

Result file (written by the callee, read by the caller)::

    {"outputs": [...]}            on success
    {"error": {"phase": ...}}     on failure

Both are plain JSON so any environment can produce and consume them. numpy
arrays travel as tagged objects carrying their data, dtype and shape.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import MalformedPayload, PycallError, error_from_dict

logger = logging.getLogger(__name__)

NDARRAY_TAG = "__ndarray__"


def _encode_default(value: Any) -> Any:
    """``json.dumps`` hook for values JSON does not know about."""
    if isinstance(value, np.ndarray):
        return {
            NDARRAY_TAG: value.tolist(),
            "dtype": str(value.dtype),
            "shape": list(value.shape),
        }
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, (set, frozenset)):
        return list(value)
    raise TypeError(
        f"Object of type {type(value).__name__} cannot be written to a payload; "
        "register a converter for it in the setup script"
    )


def _decode_hook(obj: Dict[str, Any]) -> Any:
    if NDARRAY_TAG in obj:
        try:
            data = np.array(obj[NDARRAY_TAG], dtype=obj.get("dtype"))
            shape = obj.get("shape")
            return data.reshape(shape) if shape is not None else data
        except (TypeError, ValueError) as e:
            raise MalformedPayload(f"Invalid array in payload: {e}") from e
    return obj


def dumps(value: Any) -> str:
    """Serialize ``value`` to the shared JSON format."""
    try:
        return json.dumps(value, default=_encode_default)
    except (TypeError, ValueError) as e:
        raise MalformedPayload(str(e)) from e


def _read_json(path: Path, what: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f, object_hook=_decode_hook)
    except FileNotFoundError as e:
        raise MalformedPayload(f"{what} file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise MalformedPayload(f"{what} file {path} is not valid JSON: {e}") from e
    except (UnicodeDecodeError, OSError) as e:
        raise MalformedPayload(f"{what} file {path} cannot be read: {e}") from e

    if not isinstance(data, dict):
        raise MalformedPayload(f"{what} file {path} must hold a JSON object")
    return data


def _write_json(path: Path, value: Any) -> None:
    text = dumps(value)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # write-then-rename so a reader never sees a partial file
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    tmp_path.replace(path)


def write_payload(
    path: Path, args: Sequence[Any] = (), kwargs: Optional[Dict[str, Any]] = None
) -> None:
    """Write positional and keyword arguments into a payload file.

    Raises:
        MalformedPayload: If a value cannot be encoded or a key is not a string
    """
    kwargs = kwargs or {}
    bad_keys = [k for k in kwargs if not isinstance(k, str)]
    if bad_keys:
        raise MalformedPayload(f"Keyword argument names must be strings: {bad_keys!r}")

    _write_json(path, {"args": list(args), "kwargs": dict(kwargs)})
    logger.debug(f"Wrote payload {path}: {len(args)} args, {len(kwargs)} kwargs")


def read_payload(path: Path) -> Tuple[List[Any], Dict[str, Any]]:
    """Read a payload file written by ``write_payload`` (or any other caller).

    Returns:
        Tuple of (positional arguments, keyword arguments)

    Raises:
        MalformedPayload: If the file is missing or lacks ``args``/``kwargs``
    """
    data = _read_json(path, "Payload")

    missing = [key for key in ("args", "kwargs") if key not in data]
    if missing:
        raise MalformedPayload(
            f"Payload file {path} is missing field(s): {', '.join(missing)}"
        )

    args, kwargs = data["args"], data["kwargs"]
    if not isinstance(args, list):
        raise MalformedPayload(f"Payload 'args' must be a list, got {type(args).__name__}")
    if not isinstance(kwargs, dict):
        raise MalformedPayload(
            f"Payload 'kwargs' must be an object, got {type(kwargs).__name__}"
        )
    return args, kwargs


def write_outputs(path: Path, outputs: Sequence[Any]) -> None:
    """Write converted output slots into a result file."""
    _write_json(path, {"outputs": list(outputs)})
    logger.debug(f"Wrote {len(outputs)} output(s) to {path}")


def write_error(path: Path, error: PycallError) -> None:
    """Write a tagged failure into a result file."""
    _write_json(path, {"error": error.to_dict()})
    logger.debug(f"Wrote {error.phase} error to {path}")


def read_outputs(path: Path) -> List[Any]:
    """Read a result file.

    Returns:
        The list of output slots (empty when the call returned nothing)

    Raises:
        PycallError: The tagged error recorded by the callee, if any
        MalformedPayload: If the file is missing or malformed
    """
    data = _read_json(path, "Result")

    if "error" in data:
        raise error_from_dict(data["error"])

    outputs = data.get("outputs")
    if not isinstance(outputs, list):
        raise MalformedPayload(f"Result file {path} has no 'outputs' list")
    return outputs


def remove_quietly(path: Path) -> None:
    """Delete a temporary file if it exists."""
    try:
        Path(path).unlink()
        logger.debug(f"Removed {path}")
    except FileNotFoundError:
        pass
