"""
_config.py
==========
Run configuration for delimitation.

A single immutable ``DelimitConfig`` value carries every tunable used by the
tree statistics, the ML optimizer and the MCMC sampler.  It is passed
explicitly into their constructors; nothing in the package reads global state.
"""

import math
from dataclasses import dataclass, replace
from typing import Optional


METHODS = ("single", "multi")
START_POLICIES = ("null", "ml", "random")


@dataclass(frozen=True)
class DelimitConfig:
    """
    Immutable configuration shared by ``Tree``, ``Optimizer`` and
    ``MultiChainSampler``.

    Attributes
    ----------
    min_branch_length : float
        Edges whose length is ``<=`` this value are ignored by the likelihood.
    method : str
        ``'single'`` (one coalescent rate) or ``'multi'`` (one per species).
    pvalue : float
        Significance threshold of the likelihood-ratio test.
    bayes_chains, bayes_runs, bayes_burnin, bayes_sample : int
        Number of chains, total steps per chain, burn-in steps and recording
        interval after burn-in.
    bayes_credible : float
        Support threshold for the credible delimitation.
    bayes_start : str
        Chain start state: ``'null'``, ``'ml'`` or ``'random'``.
    speciation_probability : float
        Bias of random delimitations.
    seed : int or None
        Root seed.  ``None`` draws fresh entropy from the OS.
    workers : int or None
        Worker processes for chains.  ``None`` uses one per chain, ``1`` runs
        every chain in the calling process.
    """

    min_branch_length: float = 0.0001
    method: str = "multi"
    pvalue: float = 0.001
    bayes_chains: int = 2
    bayes_runs: int = 10000
    bayes_burnin: int = 1
    bayes_sample: int = 100
    bayes_credible: float = 0.95
    bayes_start: str = "ml"
    speciation_probability: float = 0.5
    seed: Optional[int] = None
    workers: Optional[int] = None

    def __post_init__(self) -> None:
        if not math.isfinite(self.min_branch_length) or self.min_branch_length < 0:
            raise ValueError(
                f"min_branch_length must be finite and >= 0, got {self.min_branch_length}"
            )
        if self.method not in METHODS:
            raise ValueError(
                f"method must be one of {', '.join(METHODS)}, got '{self.method}'"
            )
        if not 0.0 < self.pvalue < 1.0:
            raise ValueError(f"pvalue must be in (0, 1), got {self.pvalue}")
        if self.bayes_chains < 1:
            raise ValueError("bayes_chains must be >= 1")
        if self.bayes_runs < 1:
            raise ValueError("bayes_runs must be >= 1")
        if self.bayes_burnin < 0:
            raise ValueError("bayes_burnin must be >= 0")
        if self.bayes_burnin >= self.bayes_runs:
            raise ValueError(
                f"bayes_burnin ({self.bayes_burnin}) must be smaller than "
                f"bayes_runs ({self.bayes_runs})"
            )
        if self.bayes_sample < 1:
            raise ValueError("bayes_sample must be >= 1")
        if not 0.0 <= self.bayes_credible <= 1.0:
            raise ValueError(
                f"bayes_credible must be in [0, 1], got {self.bayes_credible}"
            )
        if self.bayes_start not in START_POLICIES:
            raise ValueError(
                f"bayes_start must be one of {', '.join(START_POLICIES)}, "
                f"got '{self.bayes_start}'"
            )
        if not 0.0 <= self.speciation_probability <= 1.0:
            raise ValueError("speciation_probability must be in [0, 1]")
        if self.workers is not None and self.workers < 1:
            raise ValueError("workers must be >= 1")

    @property
    def bayes_samples_per_chain(self) -> int:
        """Number of samples each chain records."""
        return (self.bayes_runs - self.bayes_burnin) // self.bayes_sample

    def replace(self, **changes) -> "DelimitConfig":
        """Return a copy with *changes* applied (validated again)."""
        return replace(self, **changes)
