# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Estimate containers for FGO-JIT.

Classes
-------
Values
    One full estimate: a mapping ``Key -> Manifold`` value. Iteration is
    always in sorted key order so that error sums, orderings built from the
    keys and printed output are reproducible.

    ``retract(delta)`` never mutates; it returns a new ``Values`` so the
    previous estimate stays available (the Levenberg-Marquardt optimizer
    compares against it when it rejects a step).

VectorValues
    A mapping ``Key -> 1-D float64 vector`` living in the tangent spaces of
    the variables: the output of a linear solve and the input to
    ``Values.retract``. Supports the vector-space operations the solvers
    need and stacking into / out of one flat vector under an ``Ordering``.

Notes
-----
A delta may hold entries for keys the target ``Values`` does not contain
(for example when the graph has been pruned since the delta was computed);
``Values.retract`` ignores those. The converse, a ``Values`` key with no delta
entry, means the solve did not cover the estimate and raises ``ValueError``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import jax.numpy as jnp

from .errors import MissingVariable
from .types import Key

if TYPE_CHECKING:
    from ..linear.ordering import Ordering
    from ..slam.manifold import Manifold


class Values:
    """Mapping from Key to manifold value."""

    def __init__(self, items: Optional[Mapping[Key, "Manifold"]] = None) -> None:
        self._values: Dict[Key, "Manifold"] = {}
        if items is not None:
            for key, value in items.items():
                self.insert(key, value)

    # --- Construction ---

    def insert(self, key: Key, value: "Manifold") -> None:
        if key in self._values:
            raise ValueError(f"Values already contains key {key}")
        self._values[key] = value

    def update(self, key: Key, value: "Manifold") -> None:
        """
        Replace the value of an existing key, in place.

        A construction-time helper for building or perturbing an estimate
        before it is handed to an optimizer. Optimizers never call it; they
        only produce new Values through ``retract``.
        """
        if key not in self._values:
            raise MissingVariable(key)
        self._values[key] = value

    # --- Access ---

    def at(self, key: Key) -> "Manifold":
        try:
            return self._values[key]
        except KeyError:
            raise MissingVariable(key) from None

    def __getitem__(self, key: Key) -> "Manifold":
        return self.at(key)

    def exists(self, key: Key) -> bool:
        return key in self._values

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def keys(self) -> List[Key]:
        return sorted(self._values)

    def items(self) -> Iterator[Tuple[Key, "Manifold"]]:
        for key in self.keys():
            yield key, self._values[key]

    def __iter__(self) -> Iterator[Key]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._values)

    def dims(self) -> Dict[Key, int]:
        return {key: value.dim for key, value in self.items()}

    def dim(self) -> int:
        return sum(value.dim for value in self._values.values())

    # --- Manifold operations ---

    def retract(self, delta: "VectorValues") -> "Values":
        """
        Return a new Values with every variable moved by its delta entry.

        Entries of ``delta`` for keys not present here are ignored.
        """
        result = Values()
        for key, value in self.items():
            if key not in delta:
                raise ValueError(f"Delta has no entry for variable {key}")
            result._values[key] = value.retract(delta[key])
        return result

    def local_coordinates(self, other: "Values") -> "VectorValues":
        """Tangent vectors d with self.retract(d) == other, over self's keys."""
        out = VectorValues()
        for key, value in self.items():
            out.insert(key, value.local_coordinates(other.at(key)))
        return out

    def zero_vectors(self) -> "VectorValues":
        return VectorValues.zero(self.dims())

    def equals(self, other: "Values", tol: float = 1e-9) -> bool:
        if set(self._values) != set(other._values):
            return False
        return all(value.equals(other._values[key], tol) for key, value in self.items())

    def copy(self) -> "Values":
        result = Values()
        result._values = dict(self._values)
        return result

    def __repr__(self) -> str:
        body = ", ".join(f"{k}: {v!r}" for k, v in self.items())
        return f"Values({{{body}}})"


class VectorValues:
    """Mapping from Key to a tangent-space vector."""

    def __init__(self, items: Optional[Mapping[Key, jnp.ndarray]] = None) -> None:
        self._vectors: Dict[Key, jnp.ndarray] = {}
        if items is not None:
            for key, vec in items.items():
                self.insert(key, vec)

    @classmethod
    def zero(cls, dims: Mapping[Key, int]) -> "VectorValues":
        out = cls()
        for key in sorted(dims):
            out._vectors[key] = jnp.zeros(dims[key])
        return out

    @classmethod
    def from_vector(
        cls, x: jnp.ndarray, ordering: "Ordering", dims: Mapping[Key, int]
    ) -> "VectorValues":
        """Split a flat vector laid out in ``ordering`` order."""
        out = cls()
        offset = 0
        for key in ordering:
            d = dims[key]
            out._vectors[key] = jnp.asarray(x[offset:offset + d])
            offset += d
        if offset != x.shape[0]:
            raise ValueError(f"Vector has {x.shape[0]} entries, ordering covers {offset}")
        return out

    def insert(self, key: Key, vec: jnp.ndarray) -> None:
        if key in self._vectors:
            raise ValueError(f"VectorValues already contains key {key}")
        self._vectors[key] = jnp.asarray(vec, dtype=jnp.float64).reshape(-1)

    def __getitem__(self, key: Key) -> jnp.ndarray:
        try:
            return self._vectors[key]
        except KeyError:
            raise MissingVariable(key) from None

    def __contains__(self, key: object) -> bool:
        return key in self._vectors

    def keys(self) -> List[Key]:
        return sorted(self._vectors)

    def items(self) -> Iterator[Tuple[Key, jnp.ndarray]]:
        for key in self.keys():
            yield key, self._vectors[key]

    def __iter__(self) -> Iterator[Key]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._vectors)

    def dims(self) -> Dict[Key, int]:
        return {key: int(vec.shape[0]) for key, vec in self.items()}

    def vector(self, ordering: Optional[Iterable[Key]] = None) -> jnp.ndarray:
        """Stack entries into one flat vector (sorted key order by default)."""
        keys = list(ordering) if ordering is not None else self.keys()
        if not keys:
            return jnp.zeros((0,))
        return jnp.concatenate([self[key] for key in keys])

    # --- Vector space ---

    def _binary(self, other: "VectorValues", op) -> "VectorValues":
        if set(self._vectors) != set(other._vectors):
            raise ValueError("VectorValues operands have different keys")
        out = VectorValues()
        for key, vec in self.items():
            out._vectors[key] = op(vec, other._vectors[key])
        return out

    def __add__(self, other: "VectorValues") -> "VectorValues":
        return self._binary(other, lambda a, b: a + b)

    def __sub__(self, other: "VectorValues") -> "VectorValues":
        return self._binary(other, lambda a, b: a - b)

    def __mul__(self, alpha: float) -> "VectorValues":
        out = VectorValues()
        for key, vec in self.items():
            out._vectors[key] = alpha * vec
        return out

    __rmul__ = __mul__

    def __neg__(self) -> "VectorValues":
        return self * -1.0

    def dot(self, other: "VectorValues") -> float:
        if set(self._vectors) != set(other._vectors):
            raise ValueError("VectorValues operands have different keys")
        return float(sum(jnp.dot(vec, other._vectors[key]) for key, vec in self.items()))

    def norm(self) -> float:
        return float(jnp.sqrt(self.dot(self)))

    def equals(self, other: "VectorValues", tol: float = 1e-9) -> bool:
        if set(self._vectors) != set(other._vectors):
            return False
        return all(
            vec.shape == other._vectors[key].shape
            and bool(jnp.all(jnp.abs(vec - other._vectors[key]) <= tol))
            for key, vec in self.items()
        )

    def __repr__(self) -> str:
        body = ", ".join(f"{k}: {v}" for k, v in self.items())
        return f"VectorValues({{{body}}})"
