"""
delimit
=======

Species delimitation on a single gene tree with the Poisson Tree Process.

Branch lengths above the species level (speciation) and within species
(coalescent) are modelled as two exponential processes.  ``delimit`` finds
the maximum-likelihood split of the tree into species, under one shared
coalescent rate or one rate per species, and samples delimitations with
Metropolis-Hastings chains to report per-node support.

Main Classes
------------
Tree : Rooted binary gene tree with NEWICK parsing and PTP edge statistics
Optimizer : Dynamic-programming ML delimitation (single- or multi-rate)
MultiChainSampler : Independent MCMC chains aggregated into node support
DelimitConfig : Immutable run configuration

Functions
---------
loglikelihood : Exponential log-likelihood of a set of branch lengths
lrt : Likelihood-ratio test against the one-species model
aic : Akaike Information Criterion (with small-sample correction)
akaike_weights : Normalised Akaike weights of competing delimitations
random_delimitation : Random valid delimitation
expected_species_count : Expected species of random delimitations
delimitation_score : Score an arbitrary delimitation

Context Managers
----------------
quiet : Suppress logging during operations
suppress_logger : Suppress specific logger

Examples
--------
>>> from delimit import Tree, Optimizer, DelimitConfig
>>> cfg = DelimitConfig(min_branch_length=0.0)
>>> tree = Tree('((A:1,B:1):5,(C:1,D:1):5);', cfg)
>>> result = Optimizer(tree).optimize()
>>> result.species
[['A', 'B'], ['C', 'D']]

Sampling:

>>> from delimit import MultiChainSampler
>>> cfg = cfg.replace(bayes_chains=4, bayes_runs=1100, bayes_burnin=100,
...                   bayes_sample=10, seed=1, workers=1)
>>> bayes = MultiChainSampler(Tree('((A:1,B:1):5,(C:1,D:1):5);', cfg)).run()
>>> bayes.samples
400
"""

__version__ = "0.1.0"

# Main classes
from ._config import DelimitConfig
from ._tree import Tree, Process
from ._dp import Optimizer, MLResult, AICSupport, akaike_weights
from ._mcmc import (
    MultiChainSampler,
    BayesResult,
    ChainResult,
    ChainState,
    run_chain,
    metropolis_accept,
)

# Scoring and delimitations
from ._likelihood import loglikelihood, lrt, aic, LRTResult
from ._delimitation import (
    DelimitationStats,
    delimitation_score,
    delimitation_statistics,
    is_valid_delimitation,
    null_delimitation,
    species_groups,
)
from ._random import random_delimitation, expected_species_count

# Context managers
from ._context import suppress_logger, quiet

# Utilities
from ._utils import format_newick

# Public API
__all__ = [
    # Main classes
    "DelimitConfig",
    "Tree",
    "Process",
    "Optimizer",
    "MLResult",
    "AICSupport",
    "akaike_weights",
    "MultiChainSampler",
    "BayesResult",
    "ChainResult",
    "ChainState",
    "run_chain",
    "metropolis_accept",
    # Scoring
    "loglikelihood",
    "lrt",
    "aic",
    "LRTResult",
    "DelimitationStats",
    "delimitation_score",
    "delimitation_statistics",
    "is_valid_delimitation",
    "null_delimitation",
    "species_groups",
    "random_delimitation",
    "expected_species_count",
    # Context managers
    "suppress_logger",
    "quiet",
    # Utilities
    "format_newick",
    # Version info
    "__version__",
]
