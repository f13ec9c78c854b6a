# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Numerical variable elimination for Gaussian factor graphs.

Both solvers reduce a set of JacobianFactors that share a front of
variables with the same dense step (``eliminate_front``):

    1. Stack the factors into one augmented matrix

           [ A_frontal | A_separator | b ]

       with separator columns sorted by elimination position.
    2. Householder QR:  Qᵀ [A_f | A_s | b] = [ R  S  d ]
                                              [ 0  A' b']
    3. The top rows are a GaussianConditional  R δ_f + S δ_s = d.
       The remaining rows are a new JacobianFactor on the separator.

eliminate_sequential(graph, ordering)
    One frontal variable at a time, in ordering order. The consumed factors
    are replaced by the separator factor, exactly like textbook variable
    elimination. Produces a GaussianBayesNet.

eliminate_multifrontal(graph, ordering, max_workers=None)
    Builds the cliques of the elimination tree symbolically
    (``linear.symbolic``) and factors each front once. Cliques of the same
    height are independent and, given ``max_workers``, are eliminated on a
    thread pool; parents wait for the messages of all their children.
    Produces a GaussianBayesTree.

Rank handling
-------------
A frontal column whose |R_ii| is at most ``rank_tolerance`` times the
norm of that same column of the stacked system (or that has no row left at
all) is singular, so a stiff frontal never masks its neighbours in the
same front. This raises ``RankDeficiency`` with the offending keys. There
is no regularization here; damping is the optimizer's business.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Set, Tuple

import jax.numpy as jnp
from loguru import logger

from ..core.errors import RankDeficiency
from ..core.types import Key
from .gaussian import (
    BayesTreeClique,
    GaussianBayesNet,
    GaussianBayesTree,
    GaussianConditional,
    GaussianFactorGraph,
    JacobianFactor,
)
from .ordering import Ordering
from .symbolic import build_cliques, eliminate_symbolic


def _check_ordering(graph: GaussianFactorGraph, ordering: Ordering) -> Dict[Key, int]:
    dims = graph.dims()
    missing = [key for key in dims if key not in ordering]
    if missing:
        raise ValueError(
            "Ordering does not contain key(s) " + ", ".join(str(k) for k in sorted(missing))
        )
    # A key in the ordering that no factor touches is unconstrained.
    unconstrained = [key for key in ordering if key not in dims]
    if unconstrained:
        raise RankDeficiency(unconstrained)
    return dims


def eliminate_front(
    factors: Sequence[JacobianFactor],
    frontal_keys: Sequence[Key],
    position: Dict[Key, int],
    dims: Dict[Key, int],
    rank_tolerance: float = 1e-9,
) -> Tuple[GaussianConditional, Optional[JacobianFactor]]:
    """
    QR-eliminate ``frontal_keys`` from ``factors``.

    Returns the conditional on the frontals and the factor left on the
    separator (None if the separator is empty or no rows remain).
    """
    frontal_keys = tuple(frontal_keys)
    frontal_set = set(frontal_keys)
    if not factors:
        raise RankDeficiency(frontal_keys)

    separator_set: Set[Key] = set()
    for f in factors:
        separator_set.update(k for k in f.keys if k not in frontal_set)
    separator_keys = tuple(sorted(separator_set, key=position.__getitem__))
    all_keys = frontal_keys + separator_keys

    # Stack [A_f | A_s | b], one row block per factor.
    row_blocks = []
    for f in factors:
        cols = []
        for key in all_keys:
            if key in f.keys:
                cols.append(f.get_a(key))
            else:
                cols.append(jnp.zeros((f.rows, dims[key])))
        cols.append(f.b[:, None])
        row_blocks.append(jnp.hstack(cols))
    Ab = jnp.vstack(row_blocks)

    nf = sum(dims[key] for key in frontal_keys)
    R_full = jnp.linalg.qr(Ab, mode="r")
    nr = R_full.shape[0]

    # Rank check on the frontal diagonal, each pivot against its own column.
    col_norms = jnp.linalg.norm(Ab[:, :nf], axis=0)
    diag = jnp.abs(jnp.diag(R_full[: min(nr, nf), :nf]))
    bad_cols = [
        i for i in range(nf) if i >= nr or float(diag[i]) <= rank_tolerance * float(col_norms[i])
    ]
    if bad_cols:
        bad_keys = []
        offset = 0
        for key in frontal_keys:
            d = dims[key]
            if any(offset <= i < offset + d for i in bad_cols):
                bad_keys.append(key)
            offset += d
        raise RankDeficiency(bad_keys)

    conditional = GaussianConditional(
        frontal_keys=frontal_keys,
        frontal_dims=tuple(dims[key] for key in frontal_keys),
        separator_keys=separator_keys,
        separator_dims=tuple(dims[key] for key in separator_keys),
        R=R_full[:nf, :nf],
        S=R_full[:nf, nf:-1],
        d=R_full[:nf, -1],
    )

    if not separator_keys or nr <= nf:
        return conditional, None

    rest = R_full[nf:, nf:]
    blocks = []
    offset = 0
    for key in separator_keys:
        d = dims[key]
        blocks.append(rest[:, offset:offset + d])
        offset += d
    return conditional, JacobianFactor(separator_keys, blocks, rest[:, -1])


def eliminate_sequential(
    graph: GaussianFactorGraph,
    ordering: Ordering,
    rank_tolerance: float = 1e-9,
) -> GaussianBayesNet:
    """Eliminate one variable at a time in ``ordering`` order."""
    ordering = ordering if isinstance(ordering, Ordering) else Ordering(ordering)
    dims = _check_ordering(graph, ordering)
    position = ordering.positions

    active: Dict[int, JacobianFactor] = {}
    involved: Dict[Key, Set[int]] = {key: set() for key in ordering}
    for slot, f in enumerate(graph):
        active[slot] = f
        for key in f.keys:
            involved[key].add(slot)
    next_slot = len(active)

    bayes_net = GaussianBayesNet()
    for key in ordering:
        slots = sorted(involved.pop(key))
        factors = [active.pop(s) for s in slots]
        for f in factors:
            for other in f.keys:
                if other != key:
                    involved[other].difference_update(slots)

        conditional, remaining = eliminate_front(factors, (key,), position, dims, rank_tolerance)
        bayes_net.conditionals.append(conditional)
        if remaining is not None:
            active[next_slot] = remaining
            for other in remaining.keys:
                involved[other].add(next_slot)
            next_slot += 1

    logger.debug(
        "Sequential elimination of {} variables produced {} conditionals",
        len(ordering),
        len(bayes_net),
    )
    return bayes_net


def _clique_levels(parents: List[Optional[int]], children: List[List[int]]) -> List[List[int]]:
    height = [0] * len(parents)
    # Children precede parents, so one forward pass settles all heights.
    for ci in range(len(parents)):
        if children[ci]:
            height[ci] = 1 + max(height[c] for c in children[ci])
    levels: List[List[int]] = [[] for _ in range(max(height, default=-1) + 1)]
    for ci, h in enumerate(height):
        levels[h].append(ci)
    return levels


def eliminate_multifrontal(
    graph: GaussianFactorGraph,
    ordering: Ordering,
    rank_tolerance: float = 1e-9,
    max_workers: Optional[int] = None,
) -> GaussianBayesTree:
    """Eliminate clique by clique, bottom-up through the elimination tree."""
    ordering = ordering if isinstance(ordering, Ordering) else Ordering(ordering)
    dims = _check_ordering(graph, ordering)
    position = ordering.positions

    symbolic = eliminate_symbolic((f.keys for f in graph), ordering)
    cliques = build_cliques(symbolic)
    clique_of = {key: ci for ci, c in enumerate(cliques) for key in c.frontals}

    assigned: List[List[JacobianFactor]] = [[] for _ in cliques]
    for f in graph:
        first = min(f.keys, key=position.__getitem__)
        assigned[clique_of[first]].append(f)

    conditionals: List[Optional[GaussianConditional]] = [None] * len(cliques)
    messages: List[Optional[JacobianFactor]] = [None] * len(cliques)

    def eliminate_clique(ci: int) -> Tuple[GaussianConditional, Optional[JacobianFactor]]:
        clique = cliques[ci]
        factors = list(assigned[ci])
        factors.extend(messages[c] for c in clique.children if messages[c] is not None)
        return eliminate_front(factors, clique.frontals, position, dims, rank_tolerance)

    levels = _clique_levels([c.parent for c in cliques], [c.children for c in cliques])
    executor = ThreadPoolExecutor(max_workers=max_workers) if max_workers and max_workers > 1 else None
    try:
        for level in levels:
            if executor is not None and len(level) > 1:
                results = list(executor.map(eliminate_clique, level))
            else:
                results = [eliminate_clique(ci) for ci in level]
            for ci, (conditional, message) in zip(level, results):
                conditionals[ci] = conditional
                messages[ci] = message
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    logger.debug(
        "Multifrontal elimination of {} variables in {} cliques over {} levels",
        len(ordering),
        len(cliques),
        len(levels),
    )
    return GaussianBayesTree(
        [
            BayesTreeClique(conditional=conditionals[ci], parent=c.parent, children=list(c.children))
            for ci, c in enumerate(cliques)
        ]
    )
