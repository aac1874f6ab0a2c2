"""
_random.py
==========
Random valid delimitations, used as MCMC start states.
"""

import logging
from typing import NamedTuple, Optional

import numpy as np

from ._delimitation import DelimitationStats, delimitation_statistics
from ._tree import Process


logger = logging.getLogger(__name__)


class RandomDelimitation(NamedTuple):
    event: np.ndarray
    stats: DelimitationStats
    score: float


def random_delimitation(
    tree,
    rng: np.random.Generator,
    method: str = "multi",
    speciation_probability: float = 0.5,
    species_count: Optional[int] = None,
) -> RandomDelimitation:
    """
    Draw a random valid delimitation of *tree*.

    Nodes are visited top-down starting at the root.  Each internal node
    reached becomes SPECIATION with probability *speciation_probability* and
    passes the draw on to its children; otherwise it starts a species and its
    whole subtree stays COALESCENT.  Leaves always start a species.

    Parameters
    ----------
    tree : Tree
    rng : numpy.random.Generator
    method : str
        Rate model used for the returned score.
    speciation_probability : float
        Per-node probability of speciation; ignored when *species_count* is
        given.
    species_count : int or None
        Draw a delimitation with exactly this many species instead.  Every
        speciation node splits its species quota between its children
        uniformly over the allocations the leaf counts allow.

    Returns
    -------
    RandomDelimitation
        ``(event, stats, score)``.

    Raises
    ------
    ValueError   if *species_count* is outside ``[1, n_leaves]`` or
                 *speciation_probability* is outside ``[0, 1]``.
    """
    if not 0.0 <= speciation_probability <= 1.0:
        raise ValueError(
            f"speciation_probability must be in [0, 1], got {speciation_probability}"
        )
    event = np.full(tree.n_nodes, Process.COALESCENT, dtype=np.int8)

    if species_count is None:
        stack = [tree.root]
        while stack:
            u = stack.pop()
            if tree.is_leaf(u) or rng.random() >= speciation_probability:
                continue
            event[u] = Process.SPECIATION
            stack.extend(tree.children(u))
    else:
        if not 1 <= species_count <= tree.n_leaves:
            raise ValueError(
                f"species_count must be in [1, {tree.n_leaves}], got {species_count}"
            )
        stack = [(tree.root, int(species_count))]
        while stack:
            u, quota = stack.pop()
            if quota == 1:
                continue
            lc, rc = tree.children(u)
            lo = max(1, quota - int(tree.leaves[rc]))
            hi = min(int(tree.leaves[lc]), quota - 1)
            left_quota = int(rng.integers(lo, hi + 1))
            event[u] = Process.SPECIATION
            stack.append((lc, left_quota))
            stack.append((rc, quota - left_quota))

    stats = delimitation_statistics(tree, event)
    score = stats.score(method)
    logger.debug(
        "Random delimitation: %d species, %s-rate logl %.6f",
        stats.species_count,
        method,
        score,
    )
    return RandomDelimitation(event, stats, score)


def expected_species_count(tree, speciation_probability: float) -> float:
    """
    Expected number of species drawn by ``random_delimitation`` with
    *speciation_probability* ``p``.

    Leaves contribute one species; an internal node contributes
    ``p * (E[left] + E[right]) + (1 - p)``.

    Examples
    --------
    With ``p = 0`` the draw is always the one-species delimitation, and with
    ``p = 1`` every leaf is its own species.
    """
    p = float(speciation_probability)
    expected = np.ones(tree.n_nodes, dtype=np.float64)
    for u in range(tree.n_leaves, tree.n_nodes):
        lc, rc = tree.children(u)
        expected[u] = p * (expected[lc] + expected[rc]) + (1.0 - p)
    return float(expected[tree.root])
