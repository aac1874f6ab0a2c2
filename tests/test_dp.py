"""
tests/test_dp.py
================
Tests for the dynamic-programming ML optimizer.

Reference trees
---------------
  balanced_4leaf.tree    ((A:1,B:1):5,(C:1,D:1):5);
      Two shallow pairs joined by long edges.  The optimum under both rate
      models is {A,B} {C,D} with logl = logL(2, 10) - 4.

  caterpillar_5leaf.tree
      Every DP entry has a single candidate, so the optimizer is exhaustive
      and must match brute-force enumeration.

  structured_8leaf.tree
      Two four-taxon clades with short internal edges separated by edges of
      length 2.0 and 2.2.
"""

import os
import math
import logging
import itertools
import pytest
import numpy as np
from scipy.stats import chi2

_TREES_DIR = os.path.join(os.path.dirname(__file__), "trees")

import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from delimit._config import DelimitConfig
from delimit._delimitation import (
    delimitation_score,
    is_valid_delimitation,
    null_delimitation,
)
from delimit._dp import AICSupport, DPVector, MLResult, Optimizer, akaike_weights
from delimit._likelihood import INVALID_SCORE, loglikelihood
from delimit._tree import Process, Tree


EXACT = DelimitConfig(min_branch_length=0.0)
SPLIT_SCORE = loglikelihood(2, 10.0) - 4.0


def load_tree(filename: str, config: DelimitConfig = EXACT) -> Tree:
    path = os.path.join(_TREES_DIR, filename)
    with open(path) as fh:
        newick = fh.read().strip()
    return Tree(newick, config)


def brute_force(tree, method):
    """Best score over every valid delimitation."""
    internal = list(range(tree.n_leaves, tree.n_nodes))
    best = -math.inf
    for mask in itertools.product(
        (Process.COALESCENT, Process.SPECIATION), repeat=len(internal)
    ):
        event = null_delimitation(tree)
        event[internal] = mask
        if is_valid_delimitation(tree, event):
            best = max(best, delimitation_score(tree, event, method))
    return best


# ======================================================================== #
# 1. Reference optimum                                                      #
# ======================================================================== #


class TestBalanced:
    @pytest.mark.parametrize("method", ["single", "multi"])
    def test_species(self, method):
        result = Optimizer(load_tree("balanced_4leaf.tree")).optimize(method)
        assert isinstance(result, MLResult)
        assert result.method == method
        assert result.species_count == 2
        assert result.species == [["A", "B"], ["C", "D"]]

    @pytest.mark.parametrize("method", ["single", "multi"])
    def test_scores(self, method):
        result = Optimizer(load_tree("balanced_4leaf.tree")).optimize(method)
        assert result.score == pytest.approx(SPLIT_SCORE)
        assert result.null_score == pytest.approx(loglikelihood(6, 14.0))
        assert result.edge_count == 6

    def test_event_tags(self):
        tree = load_tree("balanced_4leaf.tree")
        result = Optimizer(tree).optimize()
        expected = [1, 1, 1, 1, 1, 1, 0]
        assert list(result.event) == expected
        assert list(tree.event) == expected

    def test_multi_lrt(self):
        result = Optimizer(load_tree("balanced_4leaf.tree")).optimize("multi")
        statistic = 2.0 * (SPLIT_SCORE - loglikelihood(6, 14.0))
        assert result.lrt.df == 2
        assert result.lrt.valid
        assert result.lrt.statistic == pytest.approx(statistic)
        assert result.lrt.pvalue == pytest.approx(chi2.sf(statistic, 2))
        assert not result.lrt.passed

    def test_single_lrt_df(self):
        result = Optimizer(load_tree("balanced_4leaf.tree")).optimize("single")
        assert result.lrt.df == 1

    def test_aic(self):
        multi = Optimizer(load_tree("balanced_4leaf.tree")).optimize("multi")
        # k = 3 parameters, n = 6 edges: corrected with 2k(k+1)/(n-k-1) = 12.
        assert multi.aic == pytest.approx(-2.0 * SPLIT_SCORE + 6.0 + 12.0)
        single = Optimizer(load_tree("balanced_4leaf.tree")).optimize("single")
        # k = 2: correction 12 / 3.
        assert single.aic == pytest.approx(-2.0 * SPLIT_SCORE + 4.0 + 4.0)

    def test_method_from_config(self):
        tree = load_tree("balanced_4leaf.tree", EXACT.replace(method="single"))
        assert Optimizer(tree).optimize().method == "single"

    def test_deterministic(self):
        first = Optimizer(load_tree("balanced_4leaf.tree")).optimize()
        second = Optimizer(load_tree("balanced_4leaf.tree")).optimize()
        assert first.score == second.score
        assert first.event.tobytes() == second.event.tobytes()

    def test_minimum_branch_length_hides_structure(self):
        tree = load_tree("balanced_4leaf.tree", DelimitConfig(min_branch_length=1.0))
        result = Optimizer(tree).optimize()
        # Only the two long edges count; splitting gains nothing, and ties go
        # to fewer species.
        assert result.species_count == 1
        assert result.score == pytest.approx(loglikelihood(2, 10.0))

    def test_logged(self, caplog):
        with caplog.at_level(logging.INFO, logger="delimit"):
            Optimizer(load_tree("balanced_4leaf.tree")).optimize()
        messages = " ".join(r.getMessage() for r in caplog.records)
        assert "Multi-rate PTP" in messages
        assert "AIC score" in messages


# ======================================================================== #
# 2. General properties                                                     #
# ======================================================================== #


TREES = [
    "balanced_4leaf.tree",
    "caterpillar_5leaf.tree",
    "structured_8leaf.tree",
    "multifurcating.tree",
]


class TestProperties:
    @pytest.mark.parametrize("tree_name", TREES)
    @pytest.mark.parametrize("method", ["single", "multi"])
    def test_backtracked_delimitation_is_valid(self, tree_name, method):
        tree = load_tree(tree_name)
        result = Optimizer(tree).optimize(method)
        assert is_valid_delimitation(tree, result.event)
        flat = sorted(n for group in result.species for n in group)
        assert flat == sorted(tree.leaf_names)
        assert int((result.event == Process.SPECIATION).sum()) == result.species_count - 1

    @pytest.mark.parametrize("tree_name", TREES)
    @pytest.mark.parametrize("method", ["single", "multi"])
    def test_reported_score_matches_recomputed(self, tree_name, method):
        tree = load_tree(tree_name)
        result = Optimizer(tree).optimize(method)
        assert result.score == pytest.approx(
            delimitation_score(tree, result.event, method), abs=1e-9
        )
        assert result.score_single == pytest.approx(
            delimitation_score(tree, result.event, "single"), abs=1e-9
        )
        assert result.score_multi == pytest.approx(
            delimitation_score(tree, result.event, "multi"), abs=1e-9
        )

    @pytest.mark.parametrize("tree_name", TREES)
    def test_ordering_multi_single_null(self, tree_name):
        multi = Optimizer(load_tree(tree_name)).optimize("multi")
        single = Optimizer(load_tree(tree_name)).optimize("single")
        assert single.score >= single.null_score - 1e-9
        assert multi.score >= single.score - 1e-9

    @pytest.mark.parametrize("method", ["single", "multi"])
    def test_caterpillar_matches_brute_force(self, method):
        tree = load_tree("caterpillar_5leaf.tree")
        result = Optimizer(tree).optimize(method)
        assert result.score == pytest.approx(brute_force(tree, method), abs=1e-9)

    @pytest.mark.parametrize("method", ["single", "multi"])
    def test_balanced_matches_brute_force(self, method):
        tree = load_tree("balanced_4leaf.tree")
        result = Optimizer(tree).optimize(method)
        assert result.score == pytest.approx(brute_force(tree, method), abs=1e-9)

    @pytest.mark.parametrize("method", ["single", "multi"])
    def test_structured_clades(self, method):
        result = Optimizer(load_tree("structured_8leaf.tree")).optimize(method)
        assert result.species == [["A", "B", "C", "D"], ["E", "F", "G", "H"]]
        assert result.lrt.passed

    def test_rerun_overwrites_event(self):
        tree = load_tree("balanced_4leaf.tree")
        opt = Optimizer(tree)
        opt.optimize("multi")
        tree.event[:] = Process.UNASSIGNED
        result = opt.optimize("single")
        assert np.array_equal(tree.event, result.event)


# ======================================================================== #
# 3. Small and degenerate trees                                             #
# ======================================================================== #


class TestSmallTrees:
    def test_two_leaf_prefers_one_species(self):
        result = Optimizer(load_tree("two_leaf.tree")).optimize()
        assert result.species_count == 1
        assert result.score == pytest.approx(result.null_score)
        assert result.score == pytest.approx(loglikelihood(2, 3.0))

    def test_two_leaf_aic_single_parameter(self):
        result = Optimizer(load_tree("two_leaf.tree")).optimize()
        # One species: k = 1, n = 2 leaves n - k - 1 = 0.
        assert result.aic == math.inf

    def test_single_leaf(self, caplog):
        tree = load_tree("single_leaf.tree")
        with caplog.at_level(logging.WARNING, logger="delimit"):
            result = Optimizer(tree).optimize()
        assert result.species == [["Solo"]]
        assert result.species_count == 1
        assert result.score == INVALID_SCORE
        assert not result.lrt.valid
        assert result.aic == math.inf
        assert list(tree.event) == [Process.COALESCENT]
        assert any("single leaf" in r.getMessage() for r in caplog.records)


# ======================================================================== #
# 4. DP vectors and argument checks                                         #
# ======================================================================== #


class TestVectors:
    def test_vector_layout(self):
        tree = load_tree("balanced_4leaf.tree")
        opt = Optimizer(tree)
        opt.optimize()
        assert len(opt.vectors) == tree.n_nodes
        assert len(opt.vectors[0]) == 1
        assert len(opt.vectors[4]) == 3
        assert list(opt.vectors[4].filled) == [True, False, True]
        assert list(opt.vectors[tree.root].filled) == [True, False, True, False, True, False, True]

    def test_choice(self):
        tree = load_tree("balanced_4leaf.tree")
        opt = Optimizer(tree)
        opt.optimize()
        vec = opt.vectors[4]
        assert vec.choice(0) is Process.COALESCENT
        assert vec.choice(2) is Process.SPECIATION
        assert vec.species_count[2] == 2

    def test_root_entry_zero_is_null(self):
        tree = load_tree("caterpillar_5leaf.tree")
        opt = Optimizer(tree)
        opt.optimize()
        root_vec = opt.vectors[tree.root]
        null = float(tree.coal_logl[tree.root])
        assert root_vec.score_single[0] == pytest.approx(null)
        assert root_vec.score_multi[0] == pytest.approx(null)

    def test_empty_vector(self):
        vec = DPVector(3)
        assert len(vec) == 3
        assert not vec.filled.any()
        assert (vec.score("multi") == INVALID_SCORE).all()

    def test_config_mismatch(self):
        tree = load_tree("balanced_4leaf.tree")
        with pytest.raises(ValueError, match="min_branch_length"):
            Optimizer(tree, DelimitConfig(min_branch_length=0.5))

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            Optimizer(load_tree("balanced_4leaf.tree")).optimize("triple")


# ======================================================================== #
# 5. Candidate selection                                                    #
# ======================================================================== #


class TestCandidateSelection:
    def test_near_tie_goes_to_fewer_species(self):
        i = np.array([2, 2])
        score = np.array([-1.0 + 1e-12, -1.0])
        species = np.array([3, 2])
        assert list(Optimizer._pick_candidates(i, score, species)) == [1]

    def test_clear_winner_beats_fewer_species(self):
        i = np.array([2, 2])
        score = np.array([-1.0 + 1e-6, -1.0])
        species = np.array([3, 2])
        assert list(Optimizer._pick_candidates(i, score, species)) == [0]

    def test_exact_tie_goes_to_first(self):
        i = np.array([4, 4, 4])
        score = np.array([-2.0, -1.0, -1.0])
        species = np.array([2, 3, 3])
        assert list(Optimizer._pick_candidates(i, score, species)) == [1]

    def test_one_winner_per_entry(self):
        i = np.array([3, 1, 3, 1, 5])
        score = np.array([-1.0, -4.0, -1.0 - 1e-11, -3.0, INVALID_SCORE])
        species = np.array([4, 2, 3, 2, 5])
        assert list(Optimizer._pick_candidates(i, score, species)) == [3, 2, 4]


# ======================================================================== #
# 6. Exhaustive comparison                                                  #
# ======================================================================== #


class TestAgainstEnumeration:
    @pytest.mark.parametrize("tree_name", TREES + ["uneven_5leaf.tree"])
    def test_single_rate_never_exceeds_best(self, tree_name):
        tree = load_tree(tree_name)
        result = Optimizer(tree).optimize("single")
        assert result.score <= brute_force(tree, "single") + 1e-9

    def test_multi_rate_uneven_matches_best(self):
        tree = load_tree("uneven_5leaf.tree")
        result = Optimizer(tree).optimize("multi")
        assert result.score == pytest.approx(brute_force(tree, "multi"), abs=1e-9)


# ======================================================================== #
# 7. Akaike-weight support                                                  #
# ======================================================================== #


class TestAkaikeWeights:
    def test_normalised(self):
        w = akaike_weights([10.0, 12.0, 20.0])
        assert w.sum() == pytest.approx(1.0)
        assert w[1] / w[0] == pytest.approx(math.exp(-1.0))
        assert w[2] / w[0] == pytest.approx(math.exp(-5.0))

    def test_infinite_gets_zero(self):
        w = akaike_weights([5.0, math.inf])
        assert list(w) == [1.0, 0.0]

    def test_all_infinite(self):
        assert list(akaike_weights([math.inf, math.inf])) == [0.0, 0.0]


class TestAICSupport:
    def test_balanced_multi(self):
        tree = load_tree("balanced_4leaf.tree")
        result = Optimizer(tree).aic_support("multi")
        assert isinstance(result, AICSupport)
        assert list(result.entries) == [0, 2, 4, 6]
        assert list(result.species_count) == [1, 2, 3, 4]

        null = loglikelihood(6, 14.0)
        three = loglikelihood(4, 12.0) + loglikelihood(2, 2.0)
        # n = 6 counted edges; k = 1, 3, 4, 5 parameters.
        expected = [
            -2.0 * null + 2.0 + 1.0,
            -2.0 * SPLIT_SCORE + 6.0 + 12.0,
            -2.0 * three + 8.0 + 40.0,
            math.inf,
        ]
        np.testing.assert_allclose(result.aic[:3], expected[:3])
        assert result.aic[3] == math.inf

        assert result.weights.sum() == pytest.approx(1.0)
        assert result.weights[3] == 0.0
        assert result.weights[1] / result.weights[0] == pytest.approx(
            math.exp(-0.5 * (expected[1] - expected[0]))
        )

    def test_balanced_support(self):
        tree = load_tree("balanced_4leaf.tree")
        result = Optimizer(tree).aic_support("multi")
        assert result.support.shape == (tree.n_nodes,)
        assert (result.support[: tree.n_leaves] == 0).all()
        assert result.support[tree.root] == pytest.approx(1.0 - result.weights[0])
        # Three species split exactly one of the two pairs.
        assert result.support[4] + result.support[5] == pytest.approx(result.weights[2])

    @pytest.mark.parametrize("tree_name", TREES)
    @pytest.mark.parametrize("method", ["single", "multi"])
    def test_support_is_weighted_average(self, tree_name, method):
        tree = load_tree(tree_name)
        result = Optimizer(tree).aic_support(method)
        assert result.weights.sum() == pytest.approx(1.0)
        assert ((result.support >= 0.0) & (result.support <= 1.0 + 1e-12)).all()
        assert (result.support[: tree.n_leaves] == 0).all()
        # Parents speciate in every delimitation their children do.
        for u in range(tree.n_leaves, tree.root):
            assert result.support[u] <= result.support[tree.parent[u]] + 1e-12

    def test_event_untouched(self):
        tree = load_tree("structured_8leaf.tree")
        opt = Optimizer(tree)
        ml = opt.optimize().event.copy()
        opt.aic_support()
        np.testing.assert_array_equal(tree.event, ml)

    def test_two_leaf_falls_back_to_ml(self):
        tree = load_tree("two_leaf.tree")
        result = Optimizer(tree).aic_support()
        assert (result.aic == math.inf).all()
        assert list(result.weights) == [1.0, 0.0]
        assert result.support[tree.root] == 0.0

    def test_single_leaf(self):
        tree = load_tree("single_leaf.tree")
        result = Optimizer(tree).aic_support()
        assert list(result.weights) == [1.0]
        assert list(result.support) == [0.0]

    def test_logged(self, caplog):
        with caplog.at_level(logging.INFO, logger="delimit"):
            Optimizer(load_tree("balanced_4leaf.tree")).aic_support()
        assert any("AIC support over 4 delimitations" in r.getMessage() for r in caplog.records)

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            Optimizer(load_tree("balanced_4leaf.tree")).aic_support("triple")
