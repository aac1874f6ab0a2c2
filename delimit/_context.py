"""
_context.py
===========
Context managers for delimit.

Provides clean, Pythonic context managers for temporarily changing logging
state.  All context managers restore state on exit, even if exceptions occur.
"""

import logging
from contextlib import contextmanager


PACKAGE_LOGGER = "delimit"


@contextmanager
def suppress_logger(logger_name: str, level: int = logging.CRITICAL):
    """
    Temporarily change a logger's level.

    Parameters
    ----------
    logger_name : str
        Name of the logger, e.g. ``'delimit._mcmc'``.
    level : int, default logging.CRITICAL
        Temporary logging level.

    Examples
    --------
    >>> with suppress_logger('delimit._tree'):
    ...     trees = [Tree(nwk) for nwk in newicks]

    Notes
    -----
    - Exception-safe: the level is restored even if the block raises.
    - Nesting-safe: inner contexts restore to the outer context's level.
    """
    logger = logging.getLogger(logger_name)
    original_level = logger.level

    try:
        logger.setLevel(level)
        yield
    finally:
        logger.setLevel(original_level)


@contextmanager
def quiet(level: int = logging.CRITICAL):
    """
    Temporarily silence every logger of the package.

    Every module logs to a child of the ``'delimit'`` logger, so raising the
    parent's level is enough.

    Examples
    --------
    >>> with quiet():
    ...     result = Optimizer(tree).optimize()

    >>> with quiet(logging.WARNING):  # keep warnings
    ...     bayes = MultiChainSampler(tree).run()
    """
    with suppress_logger(PACKAGE_LOGGER, level):
        yield
