"""Conversion of Python return values into caller-compatible outputs.

A ``ConversionTable`` is an ordered list of ``(predicate, converter)`` rules;
the first rule whose predicate matches a value converts it. Rules registered
later are checked before earlier ones, so a setup script can override any of
the defaults::

    # setup.py, executed with ``converters`` in scope
    from packaging.version import Version
    converters.register(Version, str)

Default rules, highest priority first:

1. ``None`` -> ``[]``
2. plain tuple -> list of converted elements
3. enum member -> its name
4. mapping, namedtuple, dataclass or pydantic model -> ``dict`` with string keys
5. anything else -> unchanged
"""

import dataclasses
import enum
import logging
from collections.abc import Mapping
from typing import Any, Callable, List, Optional, Tuple

from pydantic import BaseModel

logger = logging.getLogger(__name__)

Predicate = Callable[[Any], bool]
Converter = Callable[[Any], Any]


def is_plain_tuple(value: Any) -> bool:
    """True for tuples that are not namedtuples."""
    return isinstance(value, tuple) and not hasattr(value, "_fields")


def is_mapping_like(value: Any) -> bool:
    if isinstance(value, (Mapping, BaseModel)):
        return True
    if isinstance(value, tuple) and hasattr(value, "_asdict"):
        return True
    return dataclasses.is_dataclass(value) and not isinstance(value, type)


def _mapping_items(value: Any):
    if isinstance(value, Mapping):
        return value.items()
    if isinstance(value, BaseModel):
        return ((name, getattr(value, name)) for name in type(value).model_fields)
    if isinstance(value, tuple):
        return value._asdict().items()
    return ((f.name, getattr(value, f.name)) for f in dataclasses.fields(value))


class ConversionTable:
    """Ordered, extensible type-directed conversion rules."""

    def __init__(self, rules: Optional[List[Tuple[Predicate, Converter]]] = None):
        self._rules: List[Tuple[Predicate, Converter]] = list(rules or [])
        # built-in rules always sit at the end of _rules
        self._n_defaults = 0

    @classmethod
    def with_defaults(cls) -> "ConversionTable":
        table = cls()
        table._rules = [
            (lambda v: v is None, lambda v: []),
            (is_plain_tuple, lambda v: [table.convert(x) for x in v]),
            (lambda v: isinstance(v, enum.Enum), lambda v: str(v.name)),
            (
                is_mapping_like,
                lambda v: {str(k): table.convert(x) for k, x in _mapping_items(v)},
            ),
        ]
        table._n_defaults = len(table._rules)
        return table

    def child(self) -> "ConversionTable":
        """Copy of this table; rules registered on the copy stay local to it."""
        table = ConversionTable.with_defaults()
        user_rules = self._rules[: len(self._rules) - self._n_defaults]
        table._rules = user_rules + table._rules
        return table

    def register(self, type_or_predicate, converter: Optional[Converter] = None):
        """Add a rule that takes precedence over every existing one.

        Args:
            type_or_predicate: A class (matched with ``isinstance``) or a
                one-argument predicate
            converter: Function producing the converted value. When omitted,
                ``register`` returns a decorator.
        """
        if isinstance(type_or_predicate, type):
            cls = type_or_predicate

            def predicate(value: Any) -> bool:
                return isinstance(value, cls)

            name = cls.__name__
        elif callable(type_or_predicate):
            predicate = type_or_predicate
            name = getattr(type_or_predicate, "__name__", repr(type_or_predicate))
        else:
            raise TypeError(
                f"register() expects a type or a predicate, got {type_or_predicate!r}"
            )

        if converter is None:

            def decorator(func: Converter) -> Converter:
                self._rules.insert(0, (predicate, func))
                logger.debug(f"Registered converter for {name}")
                return func

            return decorator

        self._rules.insert(0, (predicate, converter))
        logger.debug(f"Registered converter for {name}")
        return converter

    def __len__(self) -> int:
        return len(self._rules)

    def convert(self, value: Any) -> Any:
        """Convert a single value with the first matching rule."""
        for predicate, converter in self._rules:
            if predicate(value):
                return converter(value)
        return value

    def to_outputs(self, value: Any) -> List[Any]:
        """Split a return value into output slots.

        ``None`` gives no slots, a plain tuple one slot per element, anything
        else a single slot. Each slot is converted independently.
        """
        if value is None:
            return []
        if is_plain_tuple(value):
            return [self.convert(x) for x in value]
        return [self.convert(value)]


default_table = ConversionTable.with_defaults()
