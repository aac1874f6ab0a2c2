"""
_dp.py
======
Maximum-likelihood delimitation by dynamic programming over the tree.

Every node ``u`` gets a ``DPVector`` whose entry ``i`` describes the best
delimitation of the subtree at ``u`` with exactly ``i`` counted speciation
edges inside that subtree:

  entry 0     Coalescent choice: ``u`` starts a species.  Its subtree is one
              coalescent group and the edges forced above it
              (``tree.spec_edge_count[u]``) form the speciation population.

  entry i>0   Speciation choice: ``u`` is a speciation node.  Entry ``j`` of
              the left child and entry ``k`` of the right child combine into
              ``i = j + k + (counted edges from u to its children)``.

Entries are filled bottom-up in one pass over ascending node IDs (a
post-order).  Each candidate carries both the single-rate and the multi-rate
score; candidates compete on the score of the requested model, ties going to
fewer species and then to the candidate found first.  Speciation counts are
fixed per entry, so the multi-rate coalescent term of a candidate is just the
sum of its children's per-species terms: a coalescent group never spans a
speciation node and no renormalisation is needed when moving upwards.  The
single-rate coalescent term is taken over the whole tree: every edge that is
neither inside the subtree's speciation set nor forced above the node.

At the root, entry ``i`` scores the whole tree exactly, so the best entry is
backtracked top-down into process tags.

Each entry keeps a single candidate, so neither recursion is a guaranteed
optimum.  Multi-rate candidates of one entry differ only in their
speciation length sum and per-species terms, and the kept one agrees with
exhaustive enumeration in practice.  Single-rate candidates are chosen by a
whole-tree score that assumes the edges outside the subtree stay
coalescent; ancestors deciding otherwise can make a discarded candidate the
better one, and on larger trees the single-rate result can fall short of
the best delimitation by a few log-likelihood units.

Akaike-weight support
---------------------
Each filled root entry is the best delimitation with that many speciation
edges.  ``Optimizer.aic_support`` backtracks all of them, weights them by
``exp(-AIC / 2)`` normalised to 1, and gives every node the summed weight of
the delimitations in which it is a speciation node.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from ._config import DelimitConfig, METHODS
from ._delimitation import species_groups
from ._likelihood import (
    INVALID_SCORE,
    LRTResult,
    aic,
    loglikelihood,
    loglikelihood_array,
    lrt,
)
from ._logging import log_aic_support, log_ml_result
from ._tree import Process


logger = logging.getLogger(__name__)

# Scores closer than this are equal; rounding differs between the scalar
# and vectorised likelihood paths.
TIE_TOLERANCE = 1e-9


class DPVector:
    """
    Dynamic-programming record of one node.

    All arrays have length ``tree.edge_count[u] + 1`` and are indexed by the
    number of counted speciation edges inside the subtree.

    Arrays
    ------
    score_single     : float64  Single-rate score of the entry.
    score_multi      : float64  Multi-rate score of the entry.
    spec_edgelen_sum : float64  Summed length of speciation edges inside the
                                subtree.
    coal_multi_logl  : float64  Sum of per-species coalescent logl.
    vec_left         : int32    Entry of the left child; -1 for the
                                coalescent choice.
    vec_right        : int32    Entry of the right child; -1 likewise.
    species_count    : int32    Species in the subtree.
    filled           : bool     Entry holds a candidate.
    """

    def __init__(self, size: int) -> None:
        self.score_single = np.full(size, INVALID_SCORE, dtype=np.float64)
        self.score_multi = np.full(size, INVALID_SCORE, dtype=np.float64)
        self.spec_edgelen_sum = np.zeros(size, dtype=np.float64)
        self.coal_multi_logl = np.zeros(size, dtype=np.float64)
        self.vec_left = np.full(size, -1, dtype=np.int32)
        self.vec_right = np.full(size, -1, dtype=np.int32)
        self.species_count = np.zeros(size, dtype=np.int32)
        self.filled = np.zeros(size, dtype=bool)

    def __len__(self) -> int:
        return int(self.filled.shape[0])

    def score(self, method: str) -> np.ndarray:
        return self.score_multi if method == "multi" else self.score_single

    def choice(self, i: int) -> Process:
        """Which process the node belongs to under entry *i*."""
        if int(self.vec_left[i]) == -1:
            return Process.COALESCENT
        return Process.SPECIATION


@dataclass(frozen=True)
class MLResult:
    """
    Maximum-likelihood delimitation.

    Attributes
    ----------
    method        : str             ``'single'`` or ``'multi'``.
    score         : float           Log-likelihood under *method*.
    score_single  : float           Single-rate score of the same labelling.
    score_multi   : float           Multi-rate score of the same labelling.
    null_score    : float           One-species log-likelihood.
    species_count : int
    event         : np.ndarray      Process tag per node.
    species       : list[list[str]] Leaf names per species.
    lrt           : LRTResult       Test against the null model.
    aic           : float
    edge_count    : int             Counted edges in the tree.
    """

    method: str
    score: float
    score_single: float
    score_multi: float
    null_score: float
    species_count: int
    event: np.ndarray
    species: List[List[str]]
    lrt: LRTResult
    aic: float
    edge_count: int


@dataclass(frozen=True)
class AICSupport:
    """
    Akaike-weight support over the best delimitation of every species count.

    Attributes
    ----------
    method        : str
    entries       : np.ndarray  Filled root entries (speciation edge counts).
    species_count : np.ndarray  Species of each entry's delimitation.
    aic           : np.ndarray  AIC of each entry; inf where undefined.
    weights       : np.ndarray  Akaike weights, summing to 1.
    support       : np.ndarray  Per node, summed weight of the delimitations
                                in which it is SPECIATION.
    """

    method: str
    entries: np.ndarray
    species_count: np.ndarray
    aic: np.ndarray
    weights: np.ndarray
    support: np.ndarray


def parameter_count(method: str, species_count: int) -> int:
    """Free rate parameters of a delimitation with *species_count* species."""
    if species_count <= 1:
        return 1
    return 2 if method == "single" else species_count + 1


def akaike_weights(aic_scores) -> np.ndarray:
    """
    Normalised ``exp(-(AIC - AIC_min) / 2)``.  Infinite scores get weight 0;
    if no score is finite the weights are all 0.
    """
    aic_scores = np.asarray(aic_scores, dtype=np.float64)
    weights = np.zeros(aic_scores.shape[0], dtype=np.float64)
    finite = np.isfinite(aic_scores)
    if not finite.any():
        return weights
    delta = aic_scores[finite] - aic_scores[finite].min()
    weights[finite] = np.exp(-0.5 * delta)
    return weights / weights.sum()


class Optimizer:
    """
    Single- and multi-rate PTP optimizer.

    Parameters
    ----------
    tree : Tree
        The gene tree.  Its ``event`` array receives the optimal labelling.
    config : DelimitConfig or None
        Defaults to the tree's configuration.  Must use the same minimum
        branch length the tree statistics were computed with.

    Attributes
    ----------
    vectors : list[DPVector]
        One vector per node after ``optimize``; rebuilt on every call.
    """

    def __init__(self, tree, config: Optional[DelimitConfig] = None) -> None:
        self.tree = tree
        self.config = config if config is not None else tree.config
        if self.config.min_branch_length != tree.config.min_branch_length:
            raise ValueError(
                "Optimizer min_branch_length "
                f"({self.config.min_branch_length}) differs from the tree's "
                f"({tree.config.min_branch_length}); rebuild the tree with "
                "the same configuration."
            )
        self.vectors: List[DPVector] = []

    def optimize(self, method: Optional[str] = None) -> MLResult:
        """
        Compute the ML delimitation and write it into ``tree.event``.

        Parameters
        ----------
        method : str or None
            ``'single'`` or ``'multi'``; defaults to ``config.method``.
        """
        method = method if method is not None else self.config.method
        if method not in METHODS:
            raise ValueError(f"method must be 'single' or 'multi', got '{method}'")

        tree = self.tree
        if tree.n_leaves == 1:
            return self._single_leaf(method)

        self._fill(method)
        root_vec = self.vectors[tree.root]
        best = Optimizer._best_entry(root_vec, method)
        event, species_count = self._backtrack(best)
        if species_count != int(root_vec.species_count[best]):
            raise RuntimeError(
                f"Backtracking produced {species_count} species, DP entry "
                f"records {int(root_vec.species_count[best])}."
            )
        tree.event[:] = event

        null_score = float(tree.coal_logl[tree.root])
        score = float(root_vec.score(method)[best])
        df = 1 if method == "single" else species_count
        n_params = parameter_count(method, species_count)
        edge_count = int(tree.edge_count[tree.root])

        result = MLResult(
            method=method,
            score=score,
            score_single=float(root_vec.score_single[best]),
            score_multi=float(root_vec.score_multi[best]),
            null_score=null_score,
            species_count=species_count,
            event=event,
            species=species_groups(tree, event),
            lrt=lrt(null_score, score, df, self.config.pvalue),
            aic=aic(score, n_params, edge_count),
            edge_count=edge_count,
        )
        log_ml_result(result)
        return result

    def aic_support(self, method: Optional[str] = None) -> AICSupport:
        """
        Akaike-weight node support.

        Every filled root entry is backtracked into a delimitation and scored
        with ``aic``; the delimitations are weighted with ``akaike_weights``.
        When no AIC is finite (too few counted edges for every model), the
        ML delimitation gets all the weight.  ``tree.event`` is left as it
        is.

        Parameters
        ----------
        method : str or None
            ``'single'`` or ``'multi'``; defaults to ``config.method``.
        """
        method = method if method is not None else self.config.method
        if method not in METHODS:
            raise ValueError(f"method must be 'single' or 'multi', got '{method}'")

        tree = self.tree
        if tree.n_leaves == 1:
            return AICSupport(
                method=method,
                entries=np.zeros(1, dtype=np.int64),
                species_count=np.ones(1, dtype=np.int64),
                aic=np.full(1, math.inf),
                weights=np.ones(1, dtype=np.float64),
                support=np.zeros(tree.n_nodes, dtype=np.float64),
            )

        self._fill(method)
        root_vec = self.vectors[tree.root]
        entries = np.flatnonzero(root_vec.filled)
        edge_count = int(tree.edge_count[tree.root])
        scores = root_vec.score(method)

        species = np.empty(entries.shape[0], dtype=np.int64)
        aic_scores = np.empty(entries.shape[0], dtype=np.float64)
        spec_masks = np.zeros((entries.shape[0], tree.n_nodes), dtype=bool)
        for n, i in enumerate(entries):
            event, species_count = self._backtrack(int(i))
            species[n] = species_count
            aic_scores[n] = aic(float(scores[i]), parameter_count(method, species_count), edge_count)
            spec_masks[n] = event == Process.SPECIATION

        weights = akaike_weights(aic_scores)
        if not weights.any():
            best = Optimizer._best_entry(root_vec, method)
            weights[int(np.flatnonzero(entries == best)[0])] = 1.0
        support = weights @ spec_masks

        log_aic_support(method, entries.shape[0], species[int(np.argmax(weights))], float(weights.max()))
        return AICSupport(
            method=method,
            entries=entries,
            species_count=species,
            aic=aic_scores,
            weights=weights,
            support=support,
        )

    # ------------------------------------------------------------------ #
    # Internals                                                           #
    # ------------------------------------------------------------------ #

    def _single_leaf(self, method: str) -> MLResult:
        """One leaf, no edges: nothing to score."""
        tree = self.tree
        logger.warning(
            "Tree has a single leaf; returning the trivial one-species "
            "delimitation without a likelihood."
        )
        event = np.full(tree.n_nodes, Process.COALESCENT, dtype=np.int8)
        tree.event[:] = event
        self.vectors = []
        return MLResult(
            method=method,
            score=INVALID_SCORE,
            score_single=INVALID_SCORE,
            score_multi=INVALID_SCORE,
            null_score=INVALID_SCORE,
            species_count=1,
            event=event,
            species=[list(tree.leaf_names)],
            lrt=LRTResult(math.nan, math.nan, 1, False, False),
            aic=math.inf,
            edge_count=0,
        )

    def _fill(self, method: str) -> None:
        tree = self.tree
        total_count = int(tree.edge_count[tree.root])
        total_sum = float(tree.edgelen_sum[tree.root])
        vectors: List[Optional[DPVector]] = [None] * tree.n_nodes
        for u in range(tree.n_nodes):
            vec = DPVector(int(tree.edge_count[u]) + 1)
            spec_count = int(tree.spec_edge_count[u])
            spec_sum = float(tree.spec_edgelen_sum[u])
            spec_logl = loglikelihood(spec_count, spec_sum)
            vec.score_single[0] = spec_logl + loglikelihood(
                total_count - spec_count, total_sum - spec_sum
            )
            vec.score_multi[0] = spec_logl + float(tree.coal_logl[u])
            vec.coal_multi_logl[0] = tree.coal_logl[u]
            vec.species_count[0] = 1
            vec.filled[0] = True

            lc = int(tree.left_child[u])
            if lc != -1:
                rc = int(tree.right_child[u])
                if vectors[lc] is None or vectors[rc] is None:
                    raise RuntimeError(
                        f"Children of node {u} were not filled before it; "
                        "node IDs are not in post-order."
                    )
                self._combine(u, vec, vectors[lc], vectors[rc], method)
            vectors[u] = vec
        self.vectors = vectors

    def _combine(self, u: int, vec: DPVector, v_vec: DPVector, w_vec: DPVector, method: str) -> None:
        """
        Fill the speciation entries of *vec* from every filled pair of child
        entries.
        """
        tree = self.tree
        lc, rc = tree.children(u)
        u_edge_count = int(tree.counted[lc]) + int(tree.counted[rc])
        u_edgelen_sum = 0.0
        for c in (lc, rc):
            if tree.counted[c]:
                u_edgelen_sum += float(tree.distance[c])

        j, k = np.meshgrid(
            np.flatnonzero(v_vec.filled), np.flatnonzero(w_vec.filled), indexing="ij"
        )
        j = j.ravel()
        k = k.ravel()
        i = j + k + u_edge_count

        species = v_vec.species_count[j] + w_vec.species_count[k]
        coal_multi = v_vec.coal_multi_logl[j] + w_vec.coal_multi_logl[k]
        spec_sum = v_vec.spec_edgelen_sum[j] + w_vec.spec_edgelen_sum[k] + u_edgelen_sum

        spec_logl = loglikelihood_array(
            int(tree.spec_edge_count[u]) + i,
            float(tree.spec_edgelen_sum[u]) + spec_sum,
        )
        # Single rate: every edge that is not speciation is coalescent,
        # including those outside the subtree.
        coal_single = loglikelihood_array(
            int(tree.edge_count[tree.root]) - int(tree.spec_edge_count[u]) - i,
            float(tree.edgelen_sum[tree.root])
            - float(tree.spec_edgelen_sum[u])
            - spec_sum,
        )
        score_multi = coal_multi + spec_logl
        score_single = coal_single + spec_logl
        score = score_multi if method == "multi" else score_single

        pick = Optimizer._pick_candidates(i, score, species)
        target = i[pick]

        # Entry 0 may already hold the coalescent choice (both child edges
        # uncounted); it only yields to a strictly better score since the
        # speciation candidate has more species.
        keep = ~vec.filled[target] | (
            score[pick] > vec.score(method)[target] + TIE_TOLERANCE
        )
        pick = pick[keep]
        target = target[keep]

        vec.score_single[target] = score_single[pick]
        vec.score_multi[target] = score_multi[pick]
        vec.spec_edgelen_sum[target] = spec_sum[pick]
        vec.coal_multi_logl[target] = coal_multi[pick]
        vec.vec_left[target] = j[pick]
        vec.vec_right[target] = k[pick]
        vec.species_count[target] = species[pick]
        vec.filled[target] = True

    @staticmethod
    def _pick_candidates(i: np.ndarray, score: np.ndarray, species: np.ndarray) -> np.ndarray:
        """
        Index of the winning candidate for every distinct entry in *i*.

        Scores within ``TIE_TOLERANCE`` of the entry's maximum tie; ties go
        to fewer species, then to the lowest candidate index.  Returned in
        ascending entry order.
        """
        by_entry = np.argsort(i, kind="stable")
        i_sorted = i[by_entry]
        starts = np.ones(by_entry.shape[0], dtype=bool)
        starts[1:] = i_sorted[1:] != i_sorted[:-1]
        top = np.maximum.reduceat(score[by_entry], np.flatnonzero(starts))
        group = np.cumsum(starts) - 1
        near = np.empty(by_entry.shape[0], dtype=bool)
        near[by_entry] = score[by_entry] >= top[group] - TIE_TOLERANCE

        cand = np.flatnonzero(near)
        order = cand[np.lexsort((cand, species[cand], i[cand]))]
        i_sorted = i[order]
        first = np.ones(order.shape[0], dtype=bool)
        first[1:] = i_sorted[1:] != i_sorted[:-1]
        return order[first]

    @staticmethod
    def _best_entry(root_vec: DPVector, method: str) -> int:
        """
        Best filled root entry.  Scores within ``TIE_TOLERANCE`` of the
        maximum tie; ties go to fewer species, then lower index.
        """
        idx = np.flatnonzero(root_vec.filled)
        if idx.size == 0:
            raise RuntimeError("Root DP vector has no filled entry.")
        scores = root_vec.score(method)[idx]
        top = scores.max()
        if top != INVALID_SCORE:
            idx = idx[scores >= top - TIE_TOLERANCE]
        order = np.lexsort((idx, root_vec.species_count[idx]))
        return int(idx[order[0]])

    def _backtrack(self, best: int):
        """Materialise root entry *best* as process tags; returns (event, species)."""
        tree = self.tree
        event = np.full(tree.n_nodes, Process.UNASSIGNED, dtype=np.int8)
        species_count = 0
        stack = [(tree.root, best)]
        while stack:
            u, i = stack.pop()
            vec = self.vectors[u]
            if i < 0 or i >= len(vec) or not vec.filled[i]:
                raise RuntimeError(f"Backtracking reached empty entry {i} of node {u}.")
            if vec.choice(i) is Process.COALESCENT:
                event[tree.subtree_nodes(u)] = Process.COALESCENT
                species_count += 1
                continue
            lc, rc = tree.children(u)
            if lc == -1:
                raise RuntimeError(f"Leaf {u} was assigned a speciation entry.")
            event[u] = Process.SPECIATION
            stack.append((rc, int(vec.vec_right[i])))
            stack.append((lc, int(vec.vec_left[i])))
        if (event == Process.UNASSIGNED).any():
            raise RuntimeError("Backtracking left nodes without a process tag.")
        return event, species_count
