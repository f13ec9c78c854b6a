# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Elimination orderings for FGO-JIT.

An ``Ordering`` is an injective map from keys to consecutive positions
``0..n-1``; elimination processes variables in that sequence. Any valid
ordering gives the same solution, but the amount of fill-in (how large the
separators grow) and therefore the cost of elimination depend strongly on it.

Constructors
------------
Ordering(keys)
    Explicit sequence.

Ordering.natural(keys)
    Sorted key order.

Ordering.min_degree(factors, extra_keys=())
    Greedy minimum-degree heuristic over the symbolic variable adjacency:
    repeatedly eliminate the variable with the fewest neighbours (ties
    broken by key order), connecting its neighbours into a clique. This is
    the default used by the optimizers.

Ordering.create(factors, ordering_type, extra_keys=())
    Dispatch on ``"MIN_DEGREE"`` / ``"NATURAL"``.

``factors`` is any iterable of objects with a ``keys`` attribute (nonlinear
factors, JacobianFactors); ``None`` entries are skipped.
"""

from __future__ import annotations

from typing import Dict, Iterable, Iterator, List, Set

from ..core.types import Key

ORDERING_TYPES = ("MIN_DEGREE", "NATURAL")


def _factor_scopes(factors: Iterable) -> List[tuple]:
    return [tuple(f.keys) for f in factors if f is not None]


class Ordering:
    """Bijection between keys and elimination positions."""

    def __init__(self, keys: Iterable[Key] = ()) -> None:
        self._keys: List[Key] = []
        self._position: Dict[Key, int] = {}
        for key in keys:
            self.push_back(key)

    def push_back(self, key: Key) -> None:
        if key in self._position:
            raise ValueError(f"Key {key} appears twice in the ordering")
        self._position[key] = len(self._keys)
        self._keys.append(key)

    def index(self, key: Key) -> int:
        try:
            return self._position[key]
        except KeyError:
            raise ValueError(f"Ordering does not contain key {key}") from None

    @property
    def positions(self) -> Dict[Key, int]:
        return dict(self._position)

    def keys(self) -> List[Key]:
        return list(self._keys)

    def __getitem__(self, i: int) -> Key:
        return self._keys[i]

    def __iter__(self) -> Iterator[Key]:
        return iter(self._keys)

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: object) -> bool:
        return key in self._position

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Ordering) and self._keys == other._keys

    def reversed(self) -> "Ordering":
        return Ordering(reversed(self._keys))

    def __repr__(self) -> str:
        return "Ordering([" + ", ".join(str(k) for k in self._keys) + "])"

    @classmethod
    def natural(cls, keys: Iterable[Key]) -> "Ordering":
        return cls(sorted(set(keys)))

    @classmethod
    def min_degree(cls, factors: Iterable, extra_keys: Iterable[Key] = ()) -> "Ordering":
        adjacency: Dict[Key, Set[Key]] = {key: set() for key in extra_keys}
        for scope in _factor_scopes(factors):
            for key in scope:
                adjacency.setdefault(key, set()).update(k for k in scope if k != key)

        ordering = cls()
        remaining = set(adjacency)
        while remaining:
            key = min(remaining, key=lambda k: (len(adjacency[k]), k))
            neighbours = adjacency.pop(key)
            for n in neighbours:
                adj = adjacency[n]
                adj.discard(key)
                adj.update(m for m in neighbours if m != n)
            remaining.discard(key)
            ordering.push_back(key)
        return ordering

    @classmethod
    def create(
        cls,
        factors: Iterable,
        ordering_type: str = "MIN_DEGREE",
        extra_keys: Iterable[Key] = (),
    ) -> "Ordering":
        factors = list(factors)
        if ordering_type == "MIN_DEGREE":
            return cls.min_degree(factors, extra_keys)
        if ordering_type == "NATURAL":
            keys = {k for scope in _factor_scopes(factors) for k in scope}
            return cls.natural(keys | set(extra_keys))
        raise ValueError(
            f"Unknown ordering type '{ordering_type}', expected one of {ORDERING_TYPES}"
        )
