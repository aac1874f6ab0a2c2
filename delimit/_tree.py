"""
_tree.py
========
A rooted, strictly bifurcating gene tree stored as parallel numpy arrays,
annotated with the per-node edge statistics the PTP likelihood needs.

Public API
----------
  Tree(newick_string, config=None)
      Constructor.  Parses the NEWICK string, validates it, computes the
      per-node statistics and builds the LCA index.

  .lca(u, v) / .multi_lca(nodes) / .branch_distance(u, v)
  .outgroup_lca(taxa)
  .prune(taxa)                -> Tree
  .newick(node=None)          -> str
  .subtree_leaves(node)       -> list[str]
  .node_id(name)              -> int

Node-ID conventions (set once; never change)
--------------------------------------------
  Leaves   : 0 … n_leaves-1       (left-to-right in the NEWICK string)
  Internal : n_leaves … n_nodes-2 (post-order)
  Root     : n_nodes-1

Every child has a smaller ID than its parent, so ``range(n_nodes)`` is a
post-order and its reverse a pre-order.  The optimizer and the sampler rely on
this to walk the tree without recursion.
"""

import logging
from enum import IntEnum
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ._config import DelimitConfig
from ._lca import LCAIndex
from ._likelihood import loglikelihood
from ._logging import log_multifurcations, log_tree_summary
from ._utils import format_newick


logger = logging.getLogger(__name__)

_WHITESPACE = " \t\r\n"
_LABEL_STOP = ":,();" + _WHITESPACE
_LENGTH_STOP = ",();" + _WHITESPACE


class Process(IntEnum):
    """Process tag of a node: which process its outgoing edges belong to."""

    UNASSIGNED = -1
    SPECIATION = 0
    COALESCENT = 1


class Tree:
    """
    A rooted, strictly bifurcating gene tree with PTP edge statistics.

    Attributes (read-only after construction unless noted)
    ------------------------------------------------------
    n_nodes   : int        Total number of nodes (2 * n_leaves - 1).
    n_leaves  : int        Number of leaves.
    root      : int        Node ID of the root (always n_nodes - 1).
    names     : list[str]  Node labels; '' for unlabelled internal nodes.
    config    : DelimitConfig

    Arrays: structure
    ------------------
    parent      : int32  [n_nodes]   Parent ID; -1 for root.
    left_child  : int32  [n_nodes]   Left child ID; -1 for leaves.
    right_child : int32  [n_nodes]   Right child ID; -1 for leaves.
    distance    : float64[n_nodes]   Branch length to parent; -1.0 for root.

    Arrays: PTP statistics
    -----------------------
    leaves           : int32  [n_nodes]  Leaves below the node.
    counted          : bool   [n_nodes]  Edge above the node is longer than
                                         ``config.min_branch_length``.
    edge_count       : int32  [n_nodes]  Counted edges inside the subtree.
    edgelen_sum      : float64[n_nodes]  Their summed length.
    coal_logl        : float64[n_nodes]  Log-likelihood of the subtree as one
                                         coalescent group.
    spec_edge_count  : int32  [n_nodes]  Counted edges that must be speciation
                                         when the node starts a species: the
                                         path from the root plus its siblings.
    spec_edgelen_sum : float64[n_nodes]  Their summed length.

    Arrays: mutable
    ----------------
    event : int8 [n_nodes]   ``Process`` tag per node, written by the
                             optimizer.  Starts as UNASSIGNED.
    """

    def __init__(
        self, newick_string: str, config: Optional[DelimitConfig] = None
    ) -> None:
        self.config = config if config is not None else DelimitConfig()
        self._name_index: Optional[Dict[str, int]] = None

        n_multifurcations = self._parse_newick(newick_string)
        self.n_nodes: int = int(self.parent.shape[0])
        self.n_leaves: int = (self.n_nodes + 1) // 2
        self.root: int = self.n_nodes - 1

        if n_multifurcations:
            log_multifurcations(n_multifurcations, self.n_leaves)

        self._validate()
        self._compute_statistics()
        self.lca_index = LCAIndex(self)
        self.event = np.full(self.n_nodes, Process.UNASSIGNED, dtype=np.int8)

        log_tree_summary(
            self.n_leaves,
            self.n_nodes,
            int(self.edge_count[self.root]),
            self.config.min_branch_length,
        )

    def __repr__(self) -> str:
        return f"Tree(n_leaves={self.n_leaves}, n_nodes={self.n_nodes})"

    # ================================================================== #
    # Public methods                                                       #
    # ================================================================== #

    def is_leaf(self, node: int) -> bool:
        return int(self.left_child[node]) == -1

    def children(self, node: int) -> Tuple[int, int]:
        """``(left, right)`` child IDs; ``(-1, -1)`` for a leaf."""
        return int(self.left_child[node]), int(self.right_child[node])

    @property
    def leaf_names(self) -> List[str]:
        return self.names[: self.n_leaves]

    def node_id(self, name: str) -> int:
        """
        Return the node ID of the leaf called *name*.

        Raises
        ------
        KeyError   if no leaf carries that name.
        """
        if self._name_index is None:
            self._name_index = {
                self.names[i]: i for i in range(self.n_leaves)
            }
        if name not in self._name_index:
            raise KeyError(f"No leaf with name '{name}' found in tree.")
        return self._name_index[name]

    def subtree_nodes(self, node: int) -> List[int]:
        """IDs of *node* and all its descendants, in post-order."""
        out = []
        stack = [int(node)]
        while stack:
            u = stack.pop()
            out.append(u)
            lc = int(self.left_child[u])
            if lc != -1:
                stack.append(lc)
                stack.append(int(self.right_child[u]))
        out.sort()
        return out

    def subtree_leaves(self, node: int) -> List[str]:
        """Leaf names below *node*, ordered by leaf ID."""
        return [self.names[u] for u in self.subtree_nodes(node) if u < self.n_leaves]

    def lca(self, u, v) -> int:
        return self.lca_index.lca(u, v)

    def multi_lca(self, nodes) -> int:
        return self.lca_index.multi_lca(nodes)

    def branch_distance(self, u, v) -> float:
        return self.lca_index.branch_distance(u, v)

    def outgroup_lca(self, taxa: Sequence[str]) -> int:
        """
        Node ID of the smallest clade containing every taxon in *taxa*.

        Raises
        ------
        ValueError   if *taxa* is empty.
        KeyError     if a taxon is not a leaf of this tree.
        """
        if len(taxa) == 0:
            raise ValueError("outgroup must name at least one taxon.")
        return self.multi_lca(list(taxa))

    def prune(self, taxa: Sequence[str]) -> "Tree":
        """
        Return a new tree with the clade at the LCA of *taxa* removed.

        The parent of the removed clade is suppressed and its edge length is
        added to the surviving sibling.  The configuration is carried over.

        Raises
        ------
        ValueError   if the clade is the whole tree or leaves fewer than one
                     taxon behind.
        """
        w = self.outgroup_lca(taxa)
        if w == self.root:
            raise ValueError(
                "Cannot prune the clade spanning the whole tree "
                f"(taxa {sorted(taxa)})."
            )
        logger.info(
            "Pruning clade of %d leaves at node %d", int(self.leaves[w]), w
        )
        return Tree(self.newick(skip=w), self.config)

    def newick(self, node: Optional[int] = None, skip: int = -1) -> str:
        """
        Export the subtree at *node* (default: whole tree) as NEWICK.

        Parameters
        ----------
        node : int or None   Subtree root.
        skip : int           Clade to omit; its parent is suppressed.
        """
        top = self.root if node is None else int(node)
        skipped = set(self.subtree_nodes(skip)) if skip != -1 else set()

        # (body, length) per rendered node; length None means "no edge".
        parts: Dict[int, Tuple[str, Optional[float]]] = {}
        for u in self.subtree_nodes(top):
            if u in skipped:
                continue
            length = float(self.distance[u]) if u != top else None
            lc = int(self.left_child[u])
            if lc == -1:
                parts[u] = (self.names[u], length)
                continue
            kids = [c for c in (lc, int(self.right_child[u])) if c not in skipped]
            if len(kids) == 1:
                body, kid_length = parts.pop(kids[0])
                merged = None if length is None else kid_length + length
                parts[u] = (body, merged)
                continue
            body = "(" + ",".join(Tree._render(*parts.pop(c)) for c in kids) + ")"
            parts[u] = (body + self.names[u], length)
        return Tree._render(*parts[top]) + ";"

    # ================================================================== #
    # Private instance methods                                             #
    # ================================================================== #

    def _parse_newick(self, newick_string: str) -> int:
        """
        **Private.**  Parse *newick_string* into the structure arrays.

        Nodes with more than two children are resolved into a left-to-right
        cascade of binary nodes joined by zero-length edges.  Unary nodes are
        rejected.

        Returns
        -------
        int   Number of multifurcations resolved.
        """
        s = format_newick(newick_string)[:-1]
        n_chars = len(s)
        if n_chars == 0:
            raise ValueError("Empty NEWICK string.")

        # L leaves always produce L-1 commas, with or without multifurcations.
        n_leaves = s.count(",") + 1
        n_nodes = 2 * n_leaves - 1

        parent = np.full(n_nodes, -1, dtype=np.int32)
        left_child = np.full(n_nodes, -1, dtype=np.int32)
        right_child = np.full(n_nodes, -1, dtype=np.int32)
        distance = np.full(n_nodes, np.nan, dtype=np.float64)
        names = [""] * n_nodes

        groups: List[List[int]] = [[]]
        leaf_id = 0
        internal_id = n_leaves
        n_multifurcations = 0

        i = 0
        while i < n_chars:
            c = s[i]
            if c in _WHITESPACE or c == ",":
                i += 1
                continue

            if c == "(":
                groups.append([])
                i += 1
                continue

            if c == ")":
                if len(groups) < 2:
                    raise ValueError(f"Unbalanced ')' at position {i}.")
                kids = groups.pop()
                if len(kids) < 2:
                    raise ValueError(
                        f"Node closed at position {i} has {len(kids)} child(ren); "
                        "only binary trees are supported."
                    )
                if len(kids) > 2:
                    n_multifurcations += 1
                node = kids[0]
                for pos, kid in enumerate(kids[1:]):
                    if pos > 0:
                        distance[node] = 0.0
                    new = internal_id
                    internal_id += 1
                    left_child[new] = node
                    right_child[new] = kid
                    parent[node] = new
                    parent[kid] = new
                    node = new
                label, length, i = Tree._read_suffix(s, i + 1)
                names[node] = label
                if length is not None:
                    distance[node] = length
                groups[-1].append(node)
                continue

            if c in ":;":
                raise ValueError(f"Unexpected '{c}' at position {i}.")

            label, length, i = Tree._read_suffix(s, i)
            if leaf_id >= n_leaves:
                raise ValueError("More leaves than commas allow; malformed NEWICK.")
            names[leaf_id] = label
            if length is not None:
                distance[leaf_id] = length
            groups[-1].append(leaf_id)
            leaf_id += 1

        if len(groups) != 1:
            raise ValueError("Unbalanced '(' in NEWICK string.")
        if len(groups[0]) != 1:
            raise ValueError(
                f"Expected a single root, found {len(groups[0])} top-level nodes."
            )
        if leaf_id != n_leaves:
            raise ValueError(
                f"Parsed {leaf_id} leaves, expected {n_leaves}; malformed NEWICK."
            )

        distance[n_nodes - 1] = -1.0

        self.names = names
        self.parent = parent
        self.left_child = left_child
        self.right_child = right_child
        self.distance = distance
        return n_multifurcations

    def _validate(self) -> None:
        """**Private.**  Check the structural invariants of a parsed tree."""
        for u in range(self.n_leaves):
            if self.names[u] == "":
                raise ValueError(f"Leaf {u} has no label.")
        seen = set()
        for name in self.leaf_names:
            if name in seen:
                raise ValueError(f"Duplicate leaf name '{name}'.")
            seen.add(name)

        edges = self.distance[: self.root]
        if np.isnan(edges).any():
            missing = int(np.flatnonzero(np.isnan(edges))[0])
            raise ValueError(
                f"Missing branch length above node {missing} "
                f"('{self.names[missing]}')."
            )
        if not np.isfinite(edges).all() or (edges < 0).any():
            bad = int(np.flatnonzero(~np.isfinite(edges) | (edges < 0))[0])
            raise ValueError(
                f"Branch length above node {bad} must be finite and >= 0, "
                f"got {edges[bad]}."
            )

    def _compute_statistics(self) -> None:
        """
        **Private.**  Fill the PTP statistic arrays.

        Post-order pass: leaf counts and counted edges inside each subtree.
        Pre-order pass: speciation edges forced above each node.
        """
        n_nodes = self.n_nodes
        minbr = self.config.min_branch_length
        left = self.left_child
        right = self.right_child

        counted = (self.distance > minbr) & (self.parent != -1)
        weight = np.where(counted, self.distance, 0.0)

        leaves = np.zeros(n_nodes, dtype=np.int32)
        edge_count = np.zeros(n_nodes, dtype=np.int32)
        edgelen_sum = np.zeros(n_nodes, dtype=np.float64)
        coal_logl = np.zeros(n_nodes, dtype=np.float64)

        for u in range(n_nodes):
            lc = int(left[u])
            if lc == -1:
                leaves[u] = 1
                continue
            rc = int(right[u])
            leaves[u] = leaves[lc] + leaves[rc]
            edge_count[u] = edge_count[lc] + edge_count[rc] + counted[lc] + counted[rc]
            edgelen_sum[u] = edgelen_sum[lc] + edgelen_sum[rc] + weight[lc] + weight[rc]
            coal_logl[u] = loglikelihood(int(edge_count[u]), float(edgelen_sum[u]))

        spec_edge_count = np.zeros(n_nodes, dtype=np.int32)
        spec_edgelen_sum = np.zeros(n_nodes, dtype=np.float64)
        for u in range(n_nodes - 2, -1, -1):
            p = int(self.parent[u])
            lc = int(left[p])
            rc = int(right[p])
            spec_edge_count[u] = spec_edge_count[p] + counted[lc] + counted[rc]
            spec_edgelen_sum[u] = spec_edgelen_sum[p] + weight[lc] + weight[rc]

        self.leaves = leaves
        self.counted = counted
        self.edge_count = edge_count
        self.edgelen_sum = edgelen_sum
        self.coal_logl = coal_logl
        self.spec_edge_count = spec_edge_count
        self.spec_edgelen_sum = spec_edgelen_sum

    # ================================================================== #
    # Private static methods                                               #
    # ================================================================== #

    @staticmethod
    def _read_suffix(s: str, i: int) -> Tuple[str, Optional[float], int]:
        """
        **Private static.**  Read an optional label and ``:length`` starting
        at *i*.  Returns ``(label, length_or_None, next_position)``.
        """
        n = len(s)
        while i < n and s[i] in _WHITESPACE:
            i += 1
        j = i
        while j < n and s[j] not in _LABEL_STOP:
            j += 1
        label = s[i:j]
        i = j
        while i < n and s[i] in _WHITESPACE:
            i += 1
        length = None
        if i < n and s[i] == ":":
            i += 1
            while i < n and s[i] in _WHITESPACE:
                i += 1
            j = i
            while j < n and s[j] not in _LENGTH_STOP:
                j += 1
            token = s[i:j]
            try:
                length = float(token)
            except ValueError:
                raise ValueError(
                    f"Invalid branch length '{token}' at position {i}."
                ) from None
            i = j
        return label, length, i

    @staticmethod
    def _render(body: str, length: Optional[float]) -> str:
        if length is None:
            return body
        return f"{body}:{length!r}"
