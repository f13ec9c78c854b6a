# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Core typed identifiers for FGO-JIT.

Classes
-------
Key
    Identifies one variable in a factor graph. A key is a ``(chr, index)``
    pair, e.g. ``x1`` for the first pose or ``l3`` for the third landmark.
    Keys are immutable, hashable and totally ordered (first by ``chr``, then
    by ``index``), which is what lets ``Values`` iterate deterministically and
    lets the elimination code break ties reproducibly.

Notes
-----
Everything downstream treats a key as opaque: only equality, hashing and
ordering are ever used. ``symbol`` is a small convenience constructor that
mirrors the way measurement front-ends usually name their variables.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True, order=True)
class Key:
    """Variable identifier: a one-character tag plus an integer index."""
    chr: str
    index: int

    def __post_init__(self) -> None:
        if not isinstance(self.chr, str) or len(self.chr) != 1:
            raise ValueError(f"Key tag must be a single character, got {self.chr!r}")
        if int(self.index) < 0:
            raise ValueError(f"Key index must be non-negative, got {self.index}")

    def __str__(self) -> str:
        return f"{self.chr}{self.index}"

    def __repr__(self) -> str:
        return f"Key('{self.chr}', {self.index})"


def symbol(chr: str, index: int) -> Key:
    """Shorthand for ``Key(chr, index)``."""
    return Key(chr, int(index))


def format_keys(keys: Iterable[Key]) -> str:
    return "{" + ", ".join(str(k) for k in keys) + "}"
