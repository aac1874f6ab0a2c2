"""
tests/test_random.py
====================
Tests for random delimitations and their closed-form expected species count.
"""

import os
import pytest
import numpy as np

_TREES_DIR = os.path.join(os.path.dirname(__file__), "trees")

import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from delimit._config import DelimitConfig
from delimit._delimitation import delimitation_score, is_valid_delimitation
from delimit._random import RandomDelimitation, expected_species_count, random_delimitation
from delimit._tree import Process, Tree


def load_tree(filename: str) -> Tree:
    path = os.path.join(_TREES_DIR, filename)
    with open(path) as fh:
        newick = fh.read().strip()
    return Tree(newick, DelimitConfig(min_branch_length=0.0))


@pytest.fixture(scope="module")
def structured():
    return load_tree("structured_8leaf.tree")


@pytest.fixture(scope="module")
def balanced():
    return load_tree("balanced_4leaf.tree")


class TestRandomDelimitation:
    def test_draws_are_valid(self, structured):
        rng = np.random.default_rng(3)
        for _ in range(200):
            draw = random_delimitation(structured, rng)
            assert isinstance(draw, RandomDelimitation)
            assert is_valid_delimitation(structured, draw.event)
            n_spec = int((draw.event == Process.SPECIATION).sum())
            assert n_spec == draw.stats.species_count - 1

    @pytest.mark.parametrize("method", ["single", "multi"])
    def test_score_matches_recomputed(self, structured, method):
        draw = random_delimitation(structured, np.random.default_rng(5), method)
        assert draw.score == pytest.approx(
            delimitation_score(structured, draw.event, method)
        )

    def test_probability_zero_is_null(self, structured):
        draw = random_delimitation(
            structured, np.random.default_rng(1), speciation_probability=0.0
        )
        assert draw.stats.species_count == 1
        assert (draw.event == Process.COALESCENT).all()

    def test_probability_one_splits_everything(self, structured):
        draw = random_delimitation(
            structured, np.random.default_rng(1), speciation_probability=1.0
        )
        assert draw.stats.species_count == structured.n_leaves

    def test_same_seed_same_draw(self, structured):
        a = random_delimitation(structured, np.random.default_rng(42))
        b = random_delimitation(structured, np.random.default_rng(42))
        assert np.array_equal(a.event, b.event)

    def test_invalid_probability(self, structured):
        with pytest.raises(ValueError):
            random_delimitation(
                structured, np.random.default_rng(1), speciation_probability=1.5
            )

    @pytest.mark.parametrize("count", range(1, 9))
    def test_fixed_species_count(self, structured, count):
        rng = np.random.default_rng(count)
        for _ in range(20):
            draw = random_delimitation(structured, rng, species_count=count)
            assert draw.stats.species_count == count
            assert is_valid_delimitation(structured, draw.event)

    def test_fixed_species_count_on_caterpillar(self):
        t = load_tree("caterpillar_5leaf.tree")
        draw = random_delimitation(t, np.random.default_rng(0), species_count=3)
        # The only 3-species delimitation is {A} {B} {C,D,E}.
        assert list(np.flatnonzero(draw.event == Process.SPECIATION)) == [7, 8]

    @pytest.mark.parametrize("count", [0, 9])
    def test_species_count_out_of_range(self, structured, count):
        with pytest.raises(ValueError):
            random_delimitation(structured, np.random.default_rng(0), species_count=count)


class TestExpectedSpeciesCount:
    @pytest.mark.parametrize("p", [0.0, 0.25, 0.5, 0.8, 1.0])
    def test_balanced_closed_form(self, balanced, p):
        # E[AB] = 1 + p, E[root] = p * 2 * (1 + p) + (1 - p).
        assert expected_species_count(balanced, p) == pytest.approx(1 + p + 2 * p * p)

    def test_extremes(self, structured):
        assert expected_species_count(structured, 0.0) == pytest.approx(1.0)
        assert expected_species_count(structured, 1.0) == pytest.approx(8.0)

    def test_single_leaf(self):
        t = Tree("Solo;")
        assert expected_species_count(t, 0.5) == 1.0

    @pytest.mark.statistical
    @pytest.mark.parametrize("p", [0.3, 0.5, 0.7])
    def test_monte_carlo_mean(self, structured, p):
        rng = np.random.default_rng(2024)
        counts = [
            random_delimitation(structured, rng, speciation_probability=p).stats.species_count
            for _ in range(4000)
        ]
        # Species counts lie in [1, 8], so the standard error is below 0.06.
        assert np.mean(counts) == pytest.approx(
            expected_species_count(structured, p), abs=0.25
        )
