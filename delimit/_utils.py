"""
_utils.py
=========
General-purpose helpers that do not depend on the main classes.
"""

from typing import List, Optional

import numpy as np


def format_newick(newick: str) -> str:
    """
    Format a NEWICK string for consistent representation.

    Ensures the string has no surrounding whitespace and ends with exactly
    one semicolon.

    Examples
    --------
    >>> format_newick('((A:1,B:1):1,(C:1,D:1):1)')
    '((A:1,B:1):1,(C:1,D:1):1);'

    >>> format_newick('  ((A:1,B:1):1);  ')
    '((A:1,B:1):1);'
    """
    newick = newick.strip()
    if not newick.endswith(";"):
        newick += ";"
    return newick


def spawn_seeds(seed: Optional[int], n: int) -> List[np.random.SeedSequence]:
    """
    Derive *n* independent seed sequences from one root *seed*.

    The children of ``SeedSequence(seed)`` are statistically independent, so
    chains seeded from them never share a random stream.  ``seed=None`` draws
    the root entropy from the OS.

    Examples
    --------
    >>> [s.generate_state(1)[0] for s in spawn_seeds(7, 2)] == \\
    ...     [s.generate_state(1)[0] for s in spawn_seeds(7, 2)]
    True
    """
    if n < 1:
        raise ValueError(f"n must be >= 1, got {n}")
    return np.random.SeedSequence(seed).spawn(n)
