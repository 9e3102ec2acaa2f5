"""Channel identity for intensity reduction."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import total_ordering
from typing import Tuple

__all__ = ["Channel", "intuitive_key"]

_CHUNKS = re.compile(r"(\d+)")


def intuitive_key(name: str) -> Tuple:
    """Return a sort key comparing digit runs numerically.

    ``"Pb204" < "Pb206" < "U238"`` and ``"Mass9" < "Mass10"``; letters compare
    case-insensitively with the original spelling as a final tie breaker.
    """

    parts = []
    for chunk in _CHUNKS.split(name):
        if not chunk:
            continue
        if chunk.isdigit():
            parts.append((1, int(chunk), ""))
        else:
            parts.append((0, 0, chunk.lower()))
    return tuple(parts) + ((-1, 0, name),)


@total_ordering
@dataclass(frozen=True, eq=False)
class Channel:
    """Isotope or mass position measured by one collector."""

    name: str
    _key: Tuple = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("channel name must be non-empty")
        object.__setattr__(self, "_key", intuitive_key(self.name))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Channel):
            return NotImplemented
        return self.name == other.name

    def __lt__(self, other: "Channel") -> bool:
        if not isinstance(other, Channel):
            return NotImplemented
        return self._key < other._key

    def __hash__(self) -> int:
        return hash(self.name)

    def __str__(self) -> str:
        return self.name
