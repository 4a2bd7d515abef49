# Copyright (c) 2025.
# This file is part of ISAM-JIT, released under the MIT License.
"""
Fill-reducing elimination orderings with constraint groups.

`constrained_min_degree` is a greedy minimum-degree heuristic on the
variable adjacency graph:

    1. Only variables of the lowest remaining constraint group are
       candidates; groups never interleave.
    2. Among the candidates the one with the fewest uneliminated
       neighbours is eliminated next; ties go to the lowest ``rank``.
    3. Its neighbours are connected pairwise (fill-in) before continuing.

The ranking makes the result deterministic. Only the fill-in it produces is
meaningful: callers must not depend on a particular tie-break.
"""

from __future__ import annotations

import heapq
from typing import Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Set


def constrained_min_degree(
    variables: Iterable[Hashable],
    factor_keys: Iterable[Iterable[Hashable]],
    groups: Optional[Mapping[Hashable, int]] = None,
    rank: Optional[Callable[[Hashable], int]] = None,
) -> List[Hashable]:
    """
    Compute an elimination order over ``variables``.

    Args:
        variables: the variables to order.
        factor_keys: key sets of the factors coupling them. Keys outside
            ``variables`` are ignored.
        groups: optional ``variable -> group``; unspecified variables are in
            group 0. Higher groups are eliminated after lower ones.
        rank: tie-break key, defaults to insertion order of ``variables``.

    Returns:
        The variables in elimination order.
    """
    variables = list(variables)
    if rank is None:
        position = {v: i for i, v in enumerate(variables)}
        rank = position.__getitem__
    groups = groups or {}
    var_set = set(variables)

    adjacency: Dict[Hashable, Set[Hashable]] = {v: set() for v in variables}
    for keys in factor_keys:
        inside = [k for k in keys if k in var_set]
        for a in inside:
            adjacency[a].update(inside)
    for v in variables:
        adjacency[v].discard(v)

    heap = [(groups.get(v, 0), len(adjacency[v]), rank(v), v) for v in variables]
    heapq.heapify(heap)
    eliminated: Set[Hashable] = set()
    order: List[Hashable] = []

    while heap:
        group, degree, r, v = heapq.heappop(heap)
        if v in eliminated or degree != len(adjacency[v]):
            # stale heap entry
            continue
        eliminated.add(v)
        order.append(v)
        neighbours = adjacency.pop(v)
        for n in neighbours:
            adjacency[n].discard(v)
            adjacency[n].update(neighbours)
            adjacency[n].discard(n)
        for n in neighbours:
            heapq.heappush(heap, (groups.get(n, 0), len(adjacency[n]), rank(n), n))

    return order
