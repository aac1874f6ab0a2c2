"""
_lca.py
=======
Lowest-common-ancestor index over a ``Tree``.

The tree is preprocessed once into an Euler tour with a sparse table for
Range Minimum Queries on tour depth, giving O(1) LCA queries after
O(n log n) construction.  The index is immutable: a new one is built for every
``Tree`` and it is never updated in place.

Arrays
------
depth            : int32  [n_nodes]       Edge depth from root.
root_distance    : float64[n_nodes]       Cumulative branch length from root.
euler_tour       : int32  [2n-1]          Node IDs in tour order.
euler_depth      : int32  [2n-1]          Depth at each tour position.
first_occurrence : int32  [n_nodes]       First tour index of each node.
sparse_table     : int32  [LOG, 2n-1]     Tour index of the minimum depth.
log2_table       : int32  [2n]            floor(log2(i)).
"""

import math

import numpy as np


class LCAIndex:
    """
    Euler tour / sparse-table LCA structure for one tree.

    Parameters
    ----------
    tree : Tree
        Fully constructed tree.  Only its topology and branch lengths are
        read.
    """

    def __init__(self, tree) -> None:
        self._tree = tree
        self.n_nodes = int(tree.n_nodes)
        self._build(tree.parent, tree.left_child, tree.right_child, tree.distance)

    # ------------------------------------------------------------------ #
    # Queries                                                             #
    # ------------------------------------------------------------------ #

    def lca(self, u, v) -> int:
        """
        Node ID of the lowest common ancestor of *u* and *v*.

        Parameters
        ----------
        u, v : int | str   Node IDs or leaf names.

        Raises
        ------
        KeyError   if either node is not part of the indexed tree.
        """
        u_id = self._resolve(u)
        v_id = self._resolve(v)
        if u_id == v_id:
            return u_id
        return self._lca_ids(u_id, v_id)

    def multi_lca(self, nodes) -> int:
        """
        LCA of every node in *nodes*: one RMQ over the span of their first
        occurrences in the tour.
        """
        if len(nodes) == 0:
            raise ValueError("nodes must contain at least one element.")
        ids = [self._resolve(x) for x in nodes]
        if len(ids) == 1:
            return ids[0]
        fo = [int(self.first_occurrence[i]) for i in ids]
        idx = LCAIndex._rmq(
            min(fo), max(fo), self.sparse_table, self.euler_depth, self.log2_table
        )
        return int(self.euler_tour[idx])

    def branch_distance(self, u, v) -> float:
        """Path length between *u* and *v*."""
        u_id = self._resolve(u)
        v_id = self._resolve(v)
        if u_id == v_id:
            return 0.0
        w = self._lca_ids(u_id, v_id)
        rd = self.root_distance
        return float(rd[u_id]) + float(rd[v_id]) - 2.0 * float(rd[w])

    def is_ancestor(self, u, v) -> bool:
        """True if *u* is *v* or one of its ancestors."""
        return self.lca(u, v) == self._resolve(u)

    # ------------------------------------------------------------------ #
    # Internals                                                           #
    # ------------------------------------------------------------------ #

    def _resolve(self, node) -> int:
        if isinstance(node, (int, np.integer)) and not isinstance(node, bool):
            node_id = int(node)
            if node_id < 0 or node_id >= self.n_nodes:
                raise KeyError(
                    f"Node ID {node_id} is not part of this tree "
                    f"(valid range 0..{self.n_nodes - 1})."
                )
            return node_id
        return self._tree.node_id(node)

    def _lca_ids(self, u_id: int, v_id: int) -> int:
        l = int(self.first_occurrence[u_id])
        r = int(self.first_occurrence[v_id])
        if l > r:
            l, r = r, l
        idx = LCAIndex._rmq(l, r, self.sparse_table, self.euler_depth, self.log2_table)
        return int(self.euler_tour[idx])

    def _build(self, parent, left_child, right_child, distance) -> None:
        n_nodes = self.n_nodes
        tour_len = 2 * n_nodes - 1
        root = n_nodes - 1

        depth = np.zeros(n_nodes, dtype=np.int32)
        root_distance = np.zeros(n_nodes, dtype=np.float64)
        euler_tour = np.zeros(tour_len, dtype=np.int32)
        euler_depth = np.zeros(tour_len, dtype=np.int32)
        first_occurrence = np.full(n_nodes, -1, dtype=np.int32)

        # Descending IDs are a pre-order: parents before children.
        for u in range(root, -1, -1):
            p = int(parent[u])
            if p != -1:
                depth[u] = depth[p] + 1
                root_distance[u] = root_distance[p] + distance[u]

        # Iterative Euler tour.  Each stack entry is (node, phase): phase 0
        # enters the node, phase 1 re-emits it after its left subtree.
        stack = [(root, 0)]
        pos = 0
        while stack:
            u, phase = stack.pop()
            euler_tour[pos] = u
            euler_depth[pos] = depth[u]
            if phase == 0:
                first_occurrence[u] = pos
                lc = int(left_child[u])
                if lc != -1:
                    rc = int(right_child[u])
                    stack.append((u, 2))
                    stack.append((rc, 0))
                    stack.append((u, 1))
                    stack.append((lc, 0))
            pos += 1

        if pos != tour_len:
            raise ValueError(
                f"Euler tour visited {pos} positions, expected {tour_len}; "
                "the tree is not connected."
            )

        n_levels = int(math.floor(math.log2(tour_len))) + 1
        sparse_table = np.zeros((n_levels, tour_len), dtype=np.int32)
        sparse_table[0] = np.arange(tour_len, dtype=np.int32)
        for k in range(1, n_levels):
            half = 1 << (k - 1)
            valid = tour_len - half
            left_pos = sparse_table[k - 1, :valid]
            right_pos = sparse_table[k - 1, half:]
            sparse_table[k, :valid] = np.where(
                euler_depth[right_pos] < euler_depth[left_pos], right_pos, left_pos
            )
            sparse_table[k, valid:] = sparse_table[k - 1, valid:]

        log2_table = np.zeros(tour_len + 1, dtype=np.int32)
        for i in range(2, tour_len + 1):
            log2_table[i] = log2_table[i >> 1] + 1

        self.depth = depth
        self.root_distance = root_distance
        self.euler_tour = euler_tour
        self.euler_depth = euler_depth
        self.first_occurrence = first_occurrence
        self.sparse_table = sparse_table
        self.log2_table = log2_table

    @staticmethod
    def _rmq(l: int, r: int, sparse_table, euler_depth, log2_table) -> int:
        """
        Tour index in ``[l, r]`` of minimum ``euler_depth`` (left-biased on
        ties).  Caller ensures ``l <= r``.
        """
        k = int(log2_table[r - l + 1])
        li = int(sparse_table[k, l])
        ri = int(sparse_table[k, r - (1 << k) + 1])
        if int(euler_depth[ri]) < int(euler_depth[li]):
            return ri
        return li
