"""
_logging.py
===========
Logging functions for delimit.

All functions in this module have NO side effects except logging. They take
computed data as parameters and format/emit log messages, so computation
stays separate from reporting and logging can be silenced or captured in
tests without touching the algorithms.
"""

import logging


logger = logging.getLogger(__name__)


# ============================================================================ #
# Tree construction                                                            #
# ============================================================================ #


def log_tree_summary(
    n_leaves: int, n_nodes: int, edge_count: int, min_branch_length: float
) -> None:
    """
    Log the size of a freshly built tree and how many edges the likelihood
    will see.

    Parameters
    ----------
    n_leaves, n_nodes : int
        Tree size.
    edge_count : int
        Edges longer than *min_branch_length*.
    min_branch_length : float
        Threshold in effect.
    """
    logger.info(
        "Tree built: %d leaves, %d nodes, %d of %d edges above %g",
        n_leaves,
        n_nodes,
        edge_count,
        max(0, n_nodes - 1),
        min_branch_length,
    )
    if n_nodes > 1 and edge_count == 0:
        logger.warning(
            "No edge is longer than the minimum branch length %g; every "
            "delimitation will score 0.",
            min_branch_length,
        )


def log_multifurcations(n_multifurcating: int, n_leaves: int) -> None:
    """Emit one consolidated warning for resolved multifurcations."""
    logger.warning(
        "Input tree is not strictly bifurcating: %d multifurcation(s) among "
        "%d leaves were resolved into zero-length bifurcations. The order "
        "of splitting is arbitrary.",
        n_multifurcating,
        n_leaves,
    )


# ============================================================================ #
# Maximum likelihood                                                           #
# ============================================================================ #


def log_ml_result(result) -> None:
    """
    Log the outcome of an ML delimitation.

    Parameters
    ----------
    result : MLResult
    """
    logger.info(
        "%s-rate PTP: null logl %.6f, best logl %.6f, %d species",
        result.method.capitalize(),
        result.null_score,
        result.score,
        result.species_count,
    )
    lrt_result = result.lrt
    if not lrt_result.valid:
        logger.info("LRT not computed for this delimitation")
    else:
        logger.info(
            "LRT: statistic %.6f, df %d, p-value %.6g (%s)",
            lrt_result.statistic,
            lrt_result.df,
            lrt_result.pvalue,
            "passed" if lrt_result.passed else "failed",
        )
    logger.info("AIC score: %.6f", result.aic)


def log_aic_support(method: str, n_delimitations: int, top_species: int, top_weight: float) -> None:
    logger.info(
        "%s-rate AIC support over %d delimitations: heaviest has %d species "
        "(Akaike weight %.4f)",
        method.capitalize(),
        n_delimitations,
        top_species,
        top_weight,
    )


def log_lrt_violation(null_logl: float, alt_logl: float, statistic: float) -> None:
    """Report a likelihood-ratio statistic that should not be negative."""
    logger.warning(
        "Likelihood-ratio statistic is negative (%.6g): alternative logl "
        "%.6f is below null logl %.6f. The model assumption is violated; "
        "the p-value is undefined.",
        statistic,
        alt_logl,
        null_logl,
    )


# ============================================================================ #
# MCMC                                                                         #
# ============================================================================ #


def log_chain_start(chain_index: int, start: str, logl: float, species: int) -> None:
    logger.debug(
        "Chain %d starting from %s delimitation: logl %.6f, %d species",
        chain_index,
        start,
        logl,
        species,
    )


def log_chain_finished(
    chain_index: int, steps: int, accepted: int, samples: int, min_logl: float, max_logl: float
) -> None:
    """Log acceptance rate and observed logl range of one chain."""
    rate = accepted / steps if steps else 0.0
    logger.info(
        "Chain %d finished: %d steps, acceptance %.3f, %d samples, "
        "logl range [%.6f, %.6f]",
        chain_index,
        steps,
        rate,
        samples,
        min_logl,
        max_logl,
    )


def log_multichain_summary(
    n_chains: int,
    total_samples: int,
    min_logl: float,
    max_logl: float,
    support_deviation: float,
    credible_species: int,
) -> None:
    """
    Log the aggregated result of all chains.

    A large *support_deviation* (average standard deviation of node support
    between chains) indicates the chains have not converged.
    """
    logger.info(
        "%d chains aggregated: %d samples, logl range [%.6f, %.6f]",
        n_chains,
        total_samples,
        min_logl,
        max_logl,
    )
    if n_chains > 1:
        logger.info(
            "Average standard deviation of support values among chains: %.6f",
            support_deviation,
        )
    logger.info("Credible delimitation: %d species", credible_species)
