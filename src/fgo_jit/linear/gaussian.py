# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Linear (Gaussian) factor graphs for FGO-JIT.

Linearizing a nonlinear factor graph at an estimate yields a
``GaussianFactorGraph`` whose factors are ``JacobianFactor`` blocks

    ½ ‖ Σ_j A_j δ_j − b ‖²

already whitened by each factor's noise model. Eliminating it produces
conditionals

    R δ_frontal + S δ_separator = d

collected in a ``GaussianBayesNet`` (sequential elimination) or a
``GaussianBayesTree`` (multifrontal elimination); both back-substitute to a
``VectorValues`` delta.

Classes
-------
JacobianFactor
    Keys, one dense block per key, right-hand side b.

GaussianFactorGraph
    Ordered list of JacobianFactors. Provides ``error``, ``dense`` (stacked
    A, b for small problems and tests), ``add_damping`` (Levenberg-Marquardt
    augmentation) and ``optimize``.

GaussianConditional
    Upper-triangular R over one or more frontal keys plus separator block S.

GaussianBayesNet, GaussianBayesTree
    Results of sequential / multifrontal elimination.

Notes
-----
All blocks are dense ``jax.numpy`` float64 arrays; sparsity lives in the
graph structure (which keys each factor touches), not in the blocks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import jax.numpy as jnp
from jax.scipy.linalg import solve_triangular

from ..core.types import Key
from ..core.values import VectorValues

# Diagonal damping clamps, so that a variable with a vanishing Hessian
# diagonal still receives some damping and huge entries stay finite.
MIN_DIAGONAL = 1e-6
MAX_DIAGONAL = 1e32


class JacobianFactor:
    """Whitened linear factor ½‖A δ − b‖² over a small set of keys."""

    def __init__(
        self,
        keys: Sequence[Key],
        blocks: Sequence[jnp.ndarray],
        b: jnp.ndarray,
    ) -> None:
        keys = tuple(keys)
        if len(keys) != len(blocks):
            raise ValueError(f"{len(keys)} keys but {len(blocks)} Jacobian blocks")
        if len(set(keys)) != len(keys):
            raise ValueError(f"Duplicate keys in JacobianFactor: {keys}")
        b = jnp.asarray(b, dtype=jnp.float64).reshape(-1)
        blocks = tuple(jnp.asarray(A, dtype=jnp.float64).reshape(b.shape[0], -1) for A in blocks)
        self.keys: Tuple[Key, ...] = keys
        self.blocks: Tuple[jnp.ndarray, ...] = blocks
        self.b = b

    @property
    def rows(self) -> int:
        return int(self.b.shape[0])

    def dims(self) -> Dict[Key, int]:
        return {key: int(A.shape[1]) for key, A in zip(self.keys, self.blocks)}

    def get_a(self, key: Key) -> jnp.ndarray:
        return self.blocks[self.keys.index(key)]

    def residual(self, delta: VectorValues) -> jnp.ndarray:
        """A δ − b"""
        r = -self.b
        for key, A in zip(self.keys, self.blocks):
            r = r + A @ delta[key]
        return r

    def error(self, delta: VectorValues) -> float:
        r = self.residual(delta)
        return 0.5 * float(jnp.dot(r, r))

    def __repr__(self) -> str:
        ks = ", ".join(str(k) for k in self.keys)
        return f"JacobianFactor(keys=[{ks}], rows={self.rows})"


class GaussianFactorGraph:
    """Ordered collection of JacobianFactors."""

    def __init__(self, factors: Optional[Iterable[JacobianFactor]] = None) -> None:
        self.factors: List[JacobianFactor] = list(factors) if factors is not None else []

    def push_back(self, factor: JacobianFactor) -> None:
        self.factors.append(factor)

    add_factor = push_back

    def __iter__(self) -> Iterator[JacobianFactor]:
        return iter(self.factors)

    def __len__(self) -> int:
        return len(self.factors)

    def __getitem__(self, i: int) -> JacobianFactor:
        return self.factors[i]

    def keys(self) -> List[Key]:
        return sorted({key for f in self.factors for key in f.keys})

    def dims(self) -> Dict[Key, int]:
        dims: Dict[Key, int] = {}
        for f in self.factors:
            for key, d in f.dims().items():
                if dims.setdefault(key, d) != d:
                    raise ValueError(
                        f"Variable {key} has inconsistent dimension ({dims[key]} vs {d})"
                    )
        return dims

    def error(self, delta: VectorValues) -> float:
        return sum(f.error(delta) for f in self.factors)

    def dense(self, ordering: Iterable[Key]) -> Tuple[jnp.ndarray, jnp.ndarray]:
        """Stack all factors into a dense (A, b) with columns in ``ordering`` order."""
        ordering = list(ordering)
        dims = self.dims()
        offsets: Dict[Key, int] = {}
        n = 0
        for key in ordering:
            offsets[key] = n
            n += dims.get(key, 0)
        rows = []
        for f in self.factors:
            row = jnp.zeros((f.rows, n))
            for key, A in zip(f.keys, f.blocks):
                o = offsets[key]
                row = row.at[:, o:o + A.shape[1]].set(A)
            rows.append(row)
        if not rows:
            return jnp.zeros((0, n)), jnp.zeros((0,))
        return jnp.vstack(rows), jnp.concatenate([f.b for f in self.factors])

    def hessian_diagonal(self) -> Dict[Key, jnp.ndarray]:
        """Per-key diagonal of AᵀA."""
        diag: Dict[Key, jnp.ndarray] = {}
        for f in self.factors:
            for key, A in zip(f.keys, f.blocks):
                col = jnp.sum(A * A, axis=0)
                diag[key] = diag[key] + col if key in diag else col
        return diag

    def add_damping(
        self,
        lambda_: float,
        dims: Dict[Key, int],
        diagonal: bool = False,
    ) -> "GaussianFactorGraph":
        """
        Return a copy with one damping factor per key appended:

            √λ I δ_k = 0                   (diagonal=False)
            √(λ diag(AᵀA)_k) δ_k = 0       (diagonal=True)

        which adds λ (or λ·diag) to the diagonal of the normal equations.
        """
        damped = GaussianFactorGraph(self.factors)
        hdiag = self.hessian_diagonal() if diagonal else {}
        sqrt_lambda = float(lambda_) ** 0.5
        for key, d in dims.items():
            if diagonal and key in hdiag:
                scale = jnp.sqrt(jnp.clip(hdiag[key], MIN_DIAGONAL, MAX_DIAGONAL))
            else:
                scale = jnp.ones(d)
            damped.push_back(JacobianFactor((key,), (jnp.diag(sqrt_lambda * scale),), jnp.zeros(d)))
        return damped

    def eliminate_sequential(self, ordering, rank_tolerance: float = 1e-9) -> "GaussianBayesNet":
        from .elimination import eliminate_sequential

        return eliminate_sequential(self, ordering, rank_tolerance)

    def eliminate_multifrontal(
        self,
        ordering,
        rank_tolerance: float = 1e-9,
        max_workers: Optional[int] = None,
    ) -> "GaussianBayesTree":
        from .elimination import eliminate_multifrontal

        return eliminate_multifrontal(self, ordering, rank_tolerance, max_workers)

    def optimize(
        self,
        ordering,
        elimination: str = "SEQUENTIAL",
        rank_tolerance: float = 1e-9,
        max_workers: Optional[int] = None,
    ) -> VectorValues:
        """Solve the least-squares problem by elimination in ``ordering``."""
        if elimination == "SEQUENTIAL":
            return self.eliminate_sequential(ordering, rank_tolerance).optimize()
        if elimination == "MULTIFRONTAL":
            return self.eliminate_multifrontal(ordering, rank_tolerance, max_workers).optimize()
        raise ValueError(f"Unknown elimination method '{elimination}'")

    def __repr__(self) -> str:
        return f"GaussianFactorGraph({len(self.factors)} factors)"


@dataclass
class GaussianConditional:
    """R δ_frontal + S δ_separator = d, with R upper triangular."""
    frontal_keys: Tuple[Key, ...]
    frontal_dims: Tuple[int, ...]
    separator_keys: Tuple[Key, ...]
    separator_dims: Tuple[int, ...]
    R: jnp.ndarray
    S: jnp.ndarray
    d: jnp.ndarray

    def solve(self, solution: Dict[Key, jnp.ndarray]) -> Dict[Key, jnp.ndarray]:
        rhs = self.d
        if self.separator_keys:
            x_sep = jnp.concatenate([solution[key] for key in self.separator_keys])
            rhs = rhs - self.S @ x_sep
        x = solve_triangular(self.R, rhs, lower=False)
        out: Dict[Key, jnp.ndarray] = {}
        offset = 0
        for key, dim in zip(self.frontal_keys, self.frontal_dims):
            out[key] = x[offset:offset + dim]
            offset += dim
        return out


@dataclass
class GaussianBayesNet:
    """Conditionals in elimination order."""
    conditionals: List[GaussianConditional] = field(default_factory=list)

    def optimize(self) -> VectorValues:
        solution: Dict[Key, jnp.ndarray] = {}
        for conditional in reversed(self.conditionals):
            solution.update(conditional.solve(solution))
        return VectorValues(solution)

    def __len__(self) -> int:
        return len(self.conditionals)


@dataclass
class BayesTreeClique:
    conditional: GaussianConditional
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)


@dataclass
class GaussianBayesTree:
    """
    Cliques of a multifrontal elimination, listed children-before-parents.

    ``optimize`` walks the list backwards, so every clique is solved after
    the clique holding its separator.
    """
    cliques: List[BayesTreeClique] = field(default_factory=list)

    @property
    def roots(self) -> List[int]:
        return [i for i, c in enumerate(self.cliques) if c.parent is None]

    def optimize(self) -> VectorValues:
        solution: Dict[Key, jnp.ndarray] = {}
        for clique in reversed(self.cliques):
            solution.update(clique.conditional.solve(solution))
        return VectorValues(solution)

    def __len__(self) -> int:
        return len(self.cliques)
