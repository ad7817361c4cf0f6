"""
Variable Context - immutable name -> value mapping for one run.

The orchestrator never mutates a context in place; every change produces a
new ``VariableContext``.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Dict, Iterator, Optional


class VariableContext(Mapping):
    """Ordered, read-only mapping of variable names to string values."""

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values: Dict[str, str] = dict(values or {})

    def __getitem__(self, name: str) -> str:
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"VariableContext({self._values!r})"

    def with_value(self, name: str, value: str) -> "VariableContext":
        """Return a new context with ``name`` bound to ``value``."""
        values = dict(self._values)
        values[name] = value
        return VariableContext(values)

    def with_values(self, bindings: Mapping[str, str]) -> "VariableContext":
        values = dict(self._values)
        values.update(bindings)
        return VariableContext(values)

    def to_dict(self) -> Dict[str, str]:
        return dict(self._values)
