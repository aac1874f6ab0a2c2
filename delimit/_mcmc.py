"""
_mcmc.py
========
Metropolis-Hastings sampling of delimitations, with several independent
chains aggregated into per-node speciation support.

State space
-----------
The valid delimitations of one tree.  A move flips a single node:

  split   An internal species root (COALESCENT, parent SPECIATION or root)
          becomes SPECIATION; its two children become species roots.
  merge   A SPECIATION node whose children are both species roots becomes
          COALESCENT, joining the two species.

Both moves keep the delimitation valid and each is the inverse of the other,
so the reverse of any proposal is a flip of the same node.  The set of
flippable nodes ``F`` changes with the state, and proposals pick uniformly
from it, giving the Hastings term ``ln(|F| / |F'|)``.

Statistics are updated incrementally: a flip only moves the (at most two)
counted child edges between the speciation and coalescent populations and
swaps one species term of the multi-rate coalescent likelihood for two (or
back).

Concurrency
-----------
Chains only read the ``Tree``.  ``MultiChainSampler`` runs them in a
``concurrent.futures.ProcessPoolExecutor`` (or in the calling process when a
single worker is requested) and aggregates after every chain has finished.
"""

import logging
import math
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

import numpy as np

from ._config import DelimitConfig, METHODS
from ._delimitation import (
    DelimitationStats,
    delimitation_statistics,
    null_delimitation,
    species_groups,
    validate_delimitation,
)
from ._dp import Optimizer
from ._likelihood import INVALID_SCORE
from ._logging import log_chain_finished, log_chain_start, log_multichain_summary
from ._random import random_delimitation
from ._tree import Process
from ._utils import spawn_seeds


logger = logging.getLogger(__name__)


class ChainPhase(Enum):
    INITIALIZING = "initializing"
    BURNIN = "burnin"
    SAMPLING = "sampling"
    FINISHED = "finished"


def metropolis_accept(log_ratio: float, rng: np.random.Generator) -> bool:
    """
    Metropolis-Hastings acceptance for a proposal with log acceptance ratio
    *log_ratio*.  NaN is rejected.
    """
    if math.isnan(log_ratio):
        return False
    if log_ratio >= 0.0:
        return True
    return bool(rng.random() < math.exp(log_ratio))


class ChainState:
    """
    Mutable state of one Markov chain.

    Parameters
    ----------
    tree : Tree
        Read only.
    event : array-like
        Valid start delimitation; copied.
    method : str
        ``'single'`` or ``'multi'``.
    rng : numpy.random.Generator

    Attributes
    ----------
    event    : np.ndarray        Current process tags.
    stats    : DelimitationStats Current sufficient statistics.
    logl     : float             Current log-likelihood.
    steps    : int               Proposals made so far.
    accepted : int               Proposals accepted so far.
    phase    : ChainPhase

    Raises
    ------
    ValueError   if *event* is not a valid delimitation or *method* is
                 unknown.
    """

    def __init__(self, tree, event, method: str, rng: np.random.Generator) -> None:
        if method not in METHODS:
            raise ValueError(f"method must be 'single' or 'multi', got '{method}'")
        self.tree = tree
        self.method = method
        self.rng = rng
        self.event = np.array(event, dtype=np.int8, copy=True)
        self.stats = delimitation_statistics(tree, self.event)
        self.logl = self.stats.score(method)
        self.steps = 0
        self.accepted = 0
        self.phase = ChainPhase.INITIALIZING

        # Flippable nodes: dense list plus the position of each node in it.
        self._flippable: List[int] = []
        self._slot = np.full(tree.n_nodes, -1, dtype=np.int64)
        for u in range(tree.n_leaves, tree.n_nodes):
            if self._is_flippable(u):
                self._add(u)
        self.phase = ChainPhase.BURNIN

    @property
    def flippable(self) -> List[int]:
        """Nodes a proposal may flip, in no particular order."""
        return list(self._flippable)

    @property
    def species_count(self) -> int:
        return self.stats.species_count

    def propose(self) -> int:
        """
        Pick a flippable node uniformly and flip it.

        Returns
        -------
        int   The flipped node, or -1 if nothing can be flipped.
        """
        if not self._flippable:
            return -1
        u = self._flippable[int(self.rng.integers(len(self._flippable)))]
        self._flip(u)
        return u

    def step(self) -> bool:
        """
        Make one Metropolis-Hastings step.

        Returns
        -------
        bool   True if the proposal was accepted.
        """
        self.steps += 1
        n_before = len(self._flippable)
        old_stats = self.stats
        old_logl = self.logl

        u = self.propose()
        if u == -1:
            return False

        log_ratio = self.logl - old_logl + math.log(n_before) - math.log(
            len(self._flippable)
        )
        if self.logl == INVALID_SCORE and old_logl == INVALID_SCORE:
            log_ratio = math.log(n_before) - math.log(len(self._flippable))
        if metropolis_accept(log_ratio, self.rng):
            self.accepted += 1
            return True

        # Undo the flip; saved statistics are restored bit-for-bit.
        self._flip(u)
        self.stats = old_stats
        self.logl = old_logl
        return False

    # ------------------------------------------------------------------ #
    # Internals                                                           #
    # ------------------------------------------------------------------ #

    def _is_species_root(self, u: int) -> bool:
        if self.event[u] != Process.COALESCENT:
            return False
        p = int(self.tree.parent[u])
        return p == -1 or self.event[p] == Process.SPECIATION

    def _is_flippable(self, u: int) -> bool:
        if self.tree.is_leaf(u):
            return False
        if self.event[u] == Process.SPECIATION:
            lc, rc = self.tree.children(u)
            return (
                self.event[lc] == Process.COALESCENT
                and self.event[rc] == Process.COALESCENT
            )
        return self._is_species_root(u)

    def _add(self, u: int) -> None:
        if self._slot[u] == -1:
            self._slot[u] = len(self._flippable)
            self._flippable.append(u)

    def _remove(self, u: int) -> None:
        i = int(self._slot[u])
        if i == -1:
            return
        last = self._flippable.pop()
        if last != u:
            self._flippable[i] = last
            self._slot[last] = i
        self._slot[u] = -1

    def _flip(self, u: int) -> None:
        """Split or merge at *u* and update statistics and flippable set."""
        tree = self.tree
        lc, rc = tree.children(u)
        moved_count = int(tree.counted[lc]) + int(tree.counted[rc])
        moved_sum = 0.0
        for c in (lc, rc):
            if tree.counted[c]:
                moved_sum += float(tree.distance[c])
        coal_delta = (
            float(tree.coal_logl[lc]) + float(tree.coal_logl[rc]) - float(tree.coal_logl[u])
        )

        s = self.stats
        if self.event[u] == Process.COALESCENT:
            self.event[u] = Process.SPECIATION
            sign = 1
        else:
            self.event[u] = Process.COALESCENT
            sign = -1
        self.stats = DelimitationStats(
            species_count=s.species_count + sign,
            spec_edge_count=s.spec_edge_count + sign * moved_count,
            spec_edgelen_sum=s.spec_edgelen_sum + sign * moved_sum,
            coal_edge_count=s.coal_edge_count - sign * moved_count,
            coal_edgelen_sum=s.coal_edgelen_sum - sign * moved_sum,
            coal_multi_logl=s.coal_multi_logl + sign * coal_delta,
        )
        self.logl = self.stats.score(self.method)

        p = int(tree.parent[u])
        for x in (u, lc, rc, p):
            if x == -1:
                continue
            if self._is_flippable(x):
                self._add(x)
            else:
                self._remove(x)


@dataclass
class ChainResult:
    """
    Output of one chain.

    Attributes
    ----------
    chain_index       : int
    trace_logl        : np.ndarray  Log-likelihood of each recorded sample.
    trace_species     : np.ndarray  Species count of each recorded sample.
    speciation_counts : np.ndarray  Per node, samples in which it was
                                    SPECIATION.
    samples           : int
    accepted          : int
    steps             : int
    min_logl, max_logl: float       Range over the recorded samples; inf and
                                    -inf when nothing was recorded.
    """

    chain_index: int
    trace_logl: np.ndarray
    trace_species: np.ndarray
    speciation_counts: np.ndarray
    samples: int
    accepted: int
    steps: int
    min_logl: float
    max_logl: float

    @property
    def support(self) -> np.ndarray:
        """Fraction of samples in which each node was SPECIATION."""
        if self.samples == 0:
            return np.zeros(self.speciation_counts.shape[0], dtype=np.float64)
        return self.speciation_counts / float(self.samples)

    @property
    def acceptance_rate(self) -> float:
        return self.accepted / self.steps if self.steps else 0.0

    def trace_rows(self) -> List[Tuple[float, int]]:
        """``(logl, species)`` per recorded sample, in recording order."""
        return [
            (float(logl), int(species))
            for logl, species in zip(self.trace_logl, self.trace_species)
        ]


def run_chain(
    tree,
    config: DelimitConfig,
    chain_index: int,
    seed,
    start_event,
    method: Optional[str] = None,
    start_label: str = "given",
) -> ChainResult:
    """
    Run one chain for ``config.bayes_runs`` steps.

    After the first ``config.bayes_burnin`` steps, every
    ``config.bayes_sample``-th step records the log-likelihood and species
    count of the current state and adds its SPECIATION tags to the per-node
    tally, giving ``config.bayes_samples_per_chain`` samples.

    Parameters
    ----------
    tree : Tree
    config : DelimitConfig
    chain_index : int
        Used in log messages and the result.
    seed : int, numpy.random.SeedSequence or None
        Seed of the chain's generator.
    start_event : array-like
        Valid start delimitation.
    method : str or None
        Defaults to ``config.method``.
    start_label : str
        Name of the start policy, for logging.

    Module-level so it can be sent to worker processes.
    """
    method = method if method is not None else config.method
    rng = np.random.default_rng(seed)
    state = ChainState(tree, start_event, method, rng)
    log_chain_start(chain_index, start_label, state.logl, state.species_count)

    n_samples = config.bayes_samples_per_chain
    trace_logl = np.empty(n_samples, dtype=np.float64)
    trace_species = np.empty(n_samples, dtype=np.int32)
    counts = np.zeros(tree.n_nodes, dtype=np.int64)
    spec_mask = np.empty(tree.n_nodes, dtype=bool)
    recorded = 0
    min_logl = math.inf
    max_logl = -math.inf

    for t in range(1, config.bayes_runs + 1):
        state.step()
        if t <= config.bayes_burnin:
            continue
        state.phase = ChainPhase.SAMPLING
        if (t - config.bayes_burnin) % config.bayes_sample == 0:
            min_logl = min(min_logl, state.logl)
            max_logl = max(max_logl, state.logl)
            trace_logl[recorded] = state.logl
            trace_species[recorded] = state.species_count
            np.equal(state.event, Process.SPECIATION, out=spec_mask)
            counts += spec_mask
            recorded += 1
    state.phase = ChainPhase.FINISHED

    log_chain_finished(chain_index, state.steps, state.accepted, recorded, min_logl, max_logl)
    return ChainResult(
        chain_index=chain_index,
        trace_logl=trace_logl[:recorded],
        trace_species=trace_species[:recorded],
        speciation_counts=counts,
        samples=recorded,
        accepted=state.accepted,
        steps=state.steps,
        min_logl=min_logl,
        max_logl=max_logl,
    )


@dataclass
class BayesResult:
    """
    Aggregated output of all chains.

    Attributes
    ----------
    chains            : list[ChainResult]
    support           : np.ndarray       Per node, fraction of all samples in
                                         which it was SPECIATION.
    credible_event    : np.ndarray       Delimitation made of well-supported
                                         speciation nodes.
    credible_species  : list[list[str]]  Leaf names per credible species.
    min_logl, max_logl: float            Range across chains.
    support_deviation : float            Average standard deviation of
                                         internal-node support between chains;
                                         0 for a single chain.
    """

    chains: List[ChainResult]
    support: np.ndarray
    credible_event: np.ndarray
    credible_species: List[List[str]]
    min_logl: float
    max_logl: float
    support_deviation: float

    @property
    def samples(self) -> int:
        return sum(c.samples for c in self.chains)


class MultiChainSampler:
    """
    Run ``config.bayes_chains`` independent chains and combine them.

    Parameters
    ----------
    tree : Tree
    config : DelimitConfig or None
        Defaults to the tree's configuration.
    ml_event : array-like or None
        Start state for ``bayes_start='ml'``.  Computed with ``Optimizer``
        when omitted.

    Examples
    --------
    >>> cfg = DelimitConfig(bayes_chains=4, bayes_runs=1100,
    ...                     bayes_burnin=100, bayes_sample=10, seed=1)
    >>> result = MultiChainSampler(Tree(nwk, cfg)).run()
    >>> [c.samples for c in result.chains]
    [100, 100, 100, 100]
    """

    def __init__(self, tree, config: Optional[DelimitConfig] = None, ml_event=None) -> None:
        self.tree = tree
        self.config = config if config is not None else tree.config
        if ml_event is not None:
            ml_event = np.asarray(ml_event, dtype=np.int8)
            validate_delimitation(tree, ml_event)
        self.ml_event = ml_event

    def run(self, method: Optional[str] = None) -> BayesResult:
        cfg = self.config
        method = method if method is not None else cfg.method
        n_chains = cfg.bayes_chains

        starts = []
        chain_seeds = []
        for seq in spawn_seeds(cfg.seed, n_chains):
            start_seed, chain_seed = seq.spawn(2)
            starts.append(self._start_event(method, start_seed))
            chain_seeds.append(chain_seed)

        n_workers = min(cfg.workers if cfg.workers is not None else n_chains, n_chains)
        if n_workers == 1:
            chains = [
                run_chain(self.tree, cfg, i, chain_seeds[i], starts[i], method, cfg.bayes_start)
                for i in range(n_chains)
            ]
        else:
            logger.info("Running %d chains on %d worker processes", n_chains, n_workers)
            with ProcessPoolExecutor(max_workers=n_workers) as ex:
                futures = [
                    ex.submit(
                        run_chain,
                        self.tree,
                        cfg,
                        i,
                        chain_seeds[i],
                        starts[i],
                        method,
                        cfg.bayes_start,
                    )
                    for i in range(n_chains)
                ]
                chains = [f.result() for f in futures]

        return self._aggregate(chains)

    # ------------------------------------------------------------------ #
    # Internals                                                           #
    # ------------------------------------------------------------------ #

    def _start_event(self, method: str, seed) -> np.ndarray:
        policy = self.config.bayes_start
        if policy == "null":
            return null_delimitation(self.tree)
        if policy == "random":
            draw = random_delimitation(
                self.tree,
                np.random.default_rng(seed),
                method,
                self.config.speciation_probability,
            )
            return draw.event
        if self.ml_event is None:
            self.ml_event = Optimizer(self.tree, self.config).optimize(method).event.copy()
        return self.ml_event.copy()

    def _aggregate(self, chains: List[ChainResult]) -> BayesResult:
        tree = self.tree
        total = sum(c.samples for c in chains)
        counts = np.sum([c.speciation_counts for c in chains], axis=0)
        if total:
            support = counts / float(total)
        else:
            logger.warning("No samples were recorded; support is zero everywhere.")
            support = np.zeros(tree.n_nodes, dtype=np.float64)

        # Pre-order: a node may only speciate below a speciation parent.
        credible = np.full(tree.n_nodes, Process.COALESCENT, dtype=np.int8)
        for u in range(tree.n_nodes - 1, tree.n_leaves - 1, -1):
            p = int(tree.parent[u])
            parent_ok = p == -1 or credible[p] == Process.SPECIATION
            if parent_ok and support[u] >= self.config.bayes_credible:
                credible[u] = Process.SPECIATION
        credible_species = species_groups(tree, credible)

        if len(chains) > 1:
            per_chain = np.vstack([c.support for c in chains])[:, tree.n_leaves:]
            support_deviation = float(per_chain.std(axis=0).mean()) if per_chain.size else 0.0
        else:
            support_deviation = 0.0

        min_logl = min(c.min_logl for c in chains)
        max_logl = max(c.max_logl for c in chains)
        log_multichain_summary(
            len(chains), total, min_logl, max_logl, support_deviation, len(credible_species)
        )
        return BayesResult(
            chains=chains,
            support=support,
            credible_event=credible,
            credible_species=credible_species,
            min_logl=min_logl,
            max_logl=max_logl,
            support_deviation=support_deviation,
        )
