"""
_likelihood.py
==============
Closed-form likelihood primitives for the Poisson Tree Process.

Branch lengths of one process are modelled as independent exponential draws.
With the rate fixed at its maximum-likelihood estimate ``k / S`` the
log-likelihood of ``k`` lengths summing to ``S`` collapses to

    logL(k, S) = k * (ln k - 1 - ln S)

so every score in the package is a sum of such terms.
"""

import logging
import math
from typing import NamedTuple

import numpy as np
from scipy.stats import chi2

from ._logging import log_lrt_violation


logger = logging.getLogger(__name__)

# Sentinel for scores that cannot be computed.  Compares below every finite
# score, so such candidates never win a maximisation.
INVALID_SCORE = float("-inf")

# Negative LRT statistics above this are rounding noise and clamped to 0.
LRT_TOLERANCE = 1e-6

# AICc is applied when samples per parameter fall below this ratio.
AICC_RATIO = 40


class LRTResult(NamedTuple):
    """
    Outcome of a likelihood-ratio test.

    Attributes
    ----------
    statistic : float  ``2 * (alt_logl - null_logl)``.
    pvalue    : float  Upper tail of chi-squared(df); NaN when invalid.
    df        : int    Degrees of freedom.
    passed    : bool   True if the null model is rejected.
    valid     : bool   False if the alternative scored below the null.
    """

    statistic: float
    pvalue: float
    df: int
    passed: bool
    valid: bool


def loglikelihood(edge_count: int, edgelen_sum: float) -> float:
    """
    Log-likelihood of *edge_count* exponential branch lengths summing to
    *edgelen_sum* under the ML rate estimate.

    Parameters
    ----------
    edge_count  : int    Number of edges (>= 0).
    edgelen_sum : float  Sum of their lengths.

    Returns
    -------
    float
        ``0.0`` for an empty group, ``INVALID_SCORE`` if the lengths sum to a
        non-positive value while edges are present.

    Raises
    ------
    ValueError   if *edge_count* is negative.

    Examples
    --------
    >>> loglikelihood(0, 0.0)
    0.0
    >>> round(loglikelihood(2, 2.0), 12)
    -2.0
    """
    if edge_count < 0:
        raise ValueError(f"edge_count must be >= 0, got {edge_count}")
    if edge_count == 0:
        return 0.0
    if not edgelen_sum > 0.0:
        logger.debug(
            "Degenerate likelihood input: %d edges with length sum %g",
            edge_count,
            edgelen_sum,
        )
        return INVALID_SCORE
    k = float(edge_count)
    return k * (math.log(k) - 1.0 - math.log(edgelen_sum))


def loglikelihood_array(edge_count, edgelen_sum) -> np.ndarray:
    """
    Element-wise ``loglikelihood`` over arrays of counts and sums, with the
    same conventions for empty and degenerate groups.
    """
    k = np.asarray(edge_count, dtype=np.float64)
    s = np.asarray(edgelen_sum, dtype=np.float64)
    out = np.zeros(np.broadcast(k, s).shape, dtype=np.float64)
    k, s = np.broadcast_arrays(k, s)
    present = k > 0
    ok = present & (s > 0)
    out[ok] = k[ok] * (np.log(k[ok]) - 1.0 - np.log(s[ok]))
    out[present & ~ok] = INVALID_SCORE
    return out


def lrt(
    null_logl: float, alt_logl: float, df: int, threshold: float = 0.001
) -> LRTResult:
    """
    Likelihood-ratio test of the one-species null model against a
    delimitation.

    Parameters
    ----------
    null_logl : float  Log-likelihood of the null (single coalescent) model.
    alt_logl  : float  Log-likelihood of the alternative model.
    df        : int    Degrees of freedom (extra parameters of the alternative).
    threshold : float  Significance level.

    Returns
    -------
    LRTResult
        ``valid`` is False when the statistic is negative beyond rounding:
        the alternative nests the null, so this signals a scoring problem and
        is reported rather than raised.
    """
    if df < 1:
        raise ValueError(f"df must be >= 1, got {df}")
    statistic = 2.0 * (alt_logl - null_logl)
    if math.isnan(statistic) or statistic < -LRT_TOLERANCE:
        log_lrt_violation(null_logl, alt_logl, statistic)
        return LRTResult(statistic, math.nan, df, False, False)
    statistic = max(0.0, statistic)
    pvalue = float(chi2.sf(statistic, df))
    return LRTResult(statistic, pvalue, df, pvalue <= threshold, True)


def aic(logl: float, k: int, n: int) -> float:
    """
    Akaike Information Criterion of a model with *k* parameters fitted to *n*
    samples.

    The small-sample correction ``2k(k+1) / (n-k-1)`` is added when
    ``n / k < 40``; ``inf`` is returned when that correction is undefined.
    """
    if k < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    value = -2.0 * logl + 2.0 * k
    if n < AICC_RATIO * k:
        denom = n - k - 1
        if denom <= 0:
            return math.inf
        value += 2.0 * k * (k + 1) / denom
    return value
