# Copyright (c) 2025.
# This file is part of FGO-JIT, released under the MIT License.
"""
Symbolic elimination: structure without numbers.

Given only which keys each factor touches and an ordering, symbolic
elimination computes every variable's separator (the not-yet-eliminated
variables it ends up coupled to). From that we get

    • the elimination tree: parent(j) = earliest-eliminated key in sep(j)
    • the cliques (fronts) for multifrontal elimination: a chain j → p is
      merged into one front when p has j as its only child and
      sep(j) = {p} ∪ sep(p)
    • a fill-in measure for comparing orderings

Nothing here touches matrices; ``linear.elimination`` does the numerics.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ..core.types import Key


def eliminate_symbolic(
    scopes: Iterable[Sequence[Key]],
    ordering: Sequence[Key],
) -> List[Tuple[Key, Tuple[Key, ...]]]:
    """
    Return ``[(key, separator), ...]`` in elimination order, with each
    separator sorted by elimination position.
    """
    position = {key: i for i, key in enumerate(ordering)}
    pending: Dict[Key, List[Set[Key]]] = {key: [] for key in ordering}
    for scope in scopes:
        scope_set = set(scope)
        if not scope_set:
            continue
        first = min(scope_set, key=position.__getitem__)
        pending[first].append(scope_set)

    result: List[Tuple[Key, Tuple[Key, ...]]] = []
    for key in ordering:
        joined: Set[Key] = set()
        for s in pending.pop(key):
            joined |= s
        joined.discard(key)
        separator = tuple(sorted(joined, key=position.__getitem__))
        result.append((key, separator))
        if separator:
            pending[separator[0]].append(set(separator))
    return result


def elimination_tree(
    symbolic: Sequence[Tuple[Key, Tuple[Key, ...]]],
) -> Dict[Key, Optional[Key]]:
    return {key: (sep[0] if sep else None) for key, sep in symbolic}


def fill_in(symbolic: Sequence[Tuple[Key, Tuple[Key, ...]]]) -> int:
    """Total separator size, a proxy for the nonzeros of the factor R."""
    return sum(len(sep) for _, sep in symbolic)


@dataclass
class SymbolicClique:
    frontals: List[Key]
    separator: Tuple[Key, ...]
    parent: Optional[int] = None
    children: List[int] = field(default_factory=list)


def build_cliques(
    symbolic: Sequence[Tuple[Key, Tuple[Key, ...]]],
) -> List[SymbolicClique]:
    """
    Group the elimination tree into fronts.

    Cliques come out in creation order, which is children before parents.
    """
    parent = elimination_tree(symbolic)
    separator = dict(symbolic)
    children: Dict[Key, List[Key]] = {key: [] for key, _ in symbolic}
    for key, p in parent.items():
        if p is not None:
            children[p].append(key)

    cliques: List[SymbolicClique] = []
    clique_of: Dict[Key, int] = {}
    for key, sep in symbolic:
        kids = children[key]
        if len(kids) == 1:
            child = kids[0]
            ci = clique_of[child]
            clique = cliques[ci]
            if clique.frontals[-1] == child and set(separator[child]) == {key} | set(sep):
                clique.frontals.append(key)
                clique.separator = sep
                clique_of[key] = ci
                continue
        clique_of[key] = len(cliques)
        cliques.append(SymbolicClique(frontals=[key], separator=sep))

    for ci, clique in enumerate(cliques):
        p = parent[clique.frontals[-1]]
        if p is not None:
            clique.parent = clique_of[p]
            cliques[clique.parent].children.append(ci)
    return cliques
