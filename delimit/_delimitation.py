"""
_delimitation.py
================
Delimitations as process-tag vectors, and their statistics and scores.

A delimitation is an ``int8`` vector indexed by node ID holding a
``Process`` tag per node.  It is *valid* when

  * every node is tagged SPECIATION or COALESCENT,
  * every leaf is COALESCENT,
  * every SPECIATION node is internal and is the root or has a SPECIATION
    parent.

Speciation nodes therefore form a rooted subtree at the top of the tree.
Each COALESCENT node directly below it (or the root itself, when it is
COALESCENT) starts one species, and the leaves below these *species roots*
partition the leaf set.  In a binary tree this gives

    number of SPECIATION nodes == species count - 1.

Speciation edges are the edges leaving a SPECIATION node; every other edge
lies inside exactly one species.
"""

from typing import List, NamedTuple, Optional

import numpy as np

from ._likelihood import loglikelihood
from ._tree import Process


class DelimitationStats(NamedTuple):
    """
    Sufficient statistics of a delimitation.  Only edges longer than the
    tree's minimum branch length are counted.
    """

    species_count: int
    spec_edge_count: int
    spec_edgelen_sum: float
    coal_edge_count: int
    coal_edgelen_sum: float
    coal_multi_logl: float

    def score(self, method: str) -> float:
        """
        Log-likelihood under the ``'single'`` or ``'multi'`` rate model.
        """
        spec_logl = loglikelihood(self.spec_edge_count, self.spec_edgelen_sum)
        if method == "multi":
            return spec_logl + self.coal_multi_logl
        if method == "single":
            return spec_logl + loglikelihood(self.coal_edge_count, self.coal_edgelen_sum)
        raise ValueError(f"method must be 'single' or 'multi', got '{method}'")


def null_delimitation(tree) -> np.ndarray:
    """The one-species delimitation: every node COALESCENT."""
    return np.full(tree.n_nodes, Process.COALESCENT, dtype=np.int8)


def _violation(tree, event) -> Optional[str]:
    event = np.asarray(event)
    if event.shape != (tree.n_nodes,):
        return f"expected {tree.n_nodes} tags, got shape {event.shape}"
    known = (event == Process.SPECIATION) | (event == Process.COALESCENT)
    if not known.all():
        return f"node {int(np.flatnonzero(~known)[0])} has no process tag"
    spec = event == Process.SPECIATION
    leaf_spec = spec[: tree.n_leaves]
    if leaf_spec.any():
        return f"leaf {int(np.flatnonzero(leaf_spec)[0])} is tagged SPECIATION"
    nonroot = tree.parent != -1
    orphan = spec & nonroot
    orphan[nonroot] &= ~spec[tree.parent[nonroot]]
    if orphan.any():
        u = int(np.flatnonzero(orphan)[0])
        return f"SPECIATION node {u} has a COALESCENT parent"
    return None


def is_valid_delimitation(tree, event) -> bool:
    """True if *event* is a valid delimitation of *tree*."""
    return _violation(tree, event) is None


def validate_delimitation(tree, event) -> None:
    """
    Raise ``ValueError`` describing the first problem with *event*, if any.
    """
    problem = _violation(tree, event)
    if problem is not None:
        raise ValueError(f"Invalid delimitation: {problem}.")


def _parent_is_speciation(tree, event) -> np.ndarray:
    out = np.zeros(tree.n_nodes, dtype=bool)
    nonroot = tree.parent != -1
    out[nonroot] = event[tree.parent[nonroot]] == Process.SPECIATION
    return out


def species_roots(tree, event) -> np.ndarray:
    """Node IDs starting a species, ascending."""
    event = np.asarray(event)
    starts = (event == Process.COALESCENT) & (
        _parent_is_speciation(tree, event) | (tree.parent == -1)
    )
    return np.flatnonzero(starts)


def species_groups(tree, event) -> List[List[str]]:
    """Leaf names of each species, in species-root order."""
    return [tree.subtree_leaves(int(r)) for r in species_roots(tree, event)]


def delimitation_statistics(tree, event) -> DelimitationStats:
    """
    Count speciation and coalescent edges of a valid delimitation.

    Raises
    ------
    ValueError   if *event* is not a valid delimitation.
    """
    event = np.asarray(event)
    validate_delimitation(tree, event)
    spec_edges = _parent_is_speciation(tree, event) & tree.counted
    roots = species_roots(tree, event)
    return DelimitationStats(
        species_count=int(roots.size),
        spec_edge_count=int(np.count_nonzero(spec_edges)),
        spec_edgelen_sum=float(tree.distance[spec_edges].sum()),
        coal_edge_count=int(tree.edge_count[roots].sum()),
        coal_edgelen_sum=float(tree.edgelen_sum[roots].sum()),
        coal_multi_logl=float(tree.coal_logl[roots].sum()),
    )


def delimitation_score(tree, event, method: str = "multi") -> float:
    """Log-likelihood of *event* under *method*."""
    return delimitation_statistics(tree, event).score(method)
