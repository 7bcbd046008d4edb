"""Neighbor graph construction and shortest-path routing.

The graph connects each slice to the slices near it in z. Pairwise
registration quality turns into edge weights; shortest paths over those
weights pick the reference (root) slice and the chain of registrations
linking every other slice to it.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterator, List, Tuple

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import dijkstra

from histostack.contracts import (
    GraphConnectivityError,
    assert_neighbor_graph,
    assert_weights_resolved,
    require,
)
from histostack.project.manifest import SliceStack

__all__ = ['NeighborGraph', 'ShortestPathTree', 'build_neighbor_graph',
           'root_distance_totals', 'select_root', 'shortest_path_tree']

logger = logging.getLogger(__name__)

NO_PREDECESSOR = -9999  # scipy.sparse.csgraph sentinel


@dataclass
class NeighborGraph:
    """Directed adjacency in CSR form, one row per slice (manifest order).

    Attributes
    ----------
    offsets : np.ndarray
        Row offsets into ``neighbors``; row ``i`` is
        ``neighbors[offsets[i]:offsets[i + 1]]``.
    neighbors : np.ndarray
        Flattened neighbor indices, each row ordered by ``(z, id)``.
    weights : np.ndarray
        Edge weights aligned with ``neighbors``; NaN until resolved.
    """
    offsets: np.ndarray
    neighbors: np.ndarray
    weights: np.ndarray = field(default=None)

    def __post_init__(self):
        self.offsets = np.asarray(self.offsets, dtype=np.int64)
        self.neighbors = np.asarray(self.neighbors, dtype=np.int64)
        if self.weights is None:
            self.weights = np.full(self.neighbors.shape, np.nan)
        else:
            self.weights = np.asarray(self.weights, dtype=float)

    @property
    def n_nodes(self) -> int:
        return self.offsets.shape[0] - 1

    @property
    def n_edges(self) -> int:
        return self.neighbors.shape[0]

    def row(self, i: int) -> np.ndarray:
        return self.neighbors[self.offsets[i]:self.offsets[i + 1]]

    def edges(self) -> Iterator[Tuple[int, int, int]]:
        """Yield ``(position, ref_index, mov_index)`` for every adjacency entry."""
        for i in range(self.n_nodes):
            for pos in range(self.offsets[i], self.offsets[i + 1]):
                yield pos, i, int(self.neighbors[pos])

    def to_csr(self) -> csr_matrix:
        assert_weights_resolved(self.weights)
        n = self.n_nodes
        return csr_matrix((self.weights, self.neighbors, self.offsets), shape=(n, n))


@dataclass
class ShortestPathTree:
    root: int
    predecessors: np.ndarray
    distances: np.ndarray

    def path_to_root(self, index: int) -> List[int]:
        """Nodes from ``index`` back to the root, inclusive."""
        path = [index]
        while path[-1] != self.root:
            prev = int(self.predecessors[path[-1]])
            require(
                prev != NO_PREDECESSOR,
                f"Slice {path[-1]} has no path to root {self.root}",
                error=GraphConnectivityError,
            )
            path.append(prev)
        return path


def build_neighbor_graph(stack: SliceStack, z_range: float) -> NeighborGraph:
    """Connect each slice to its z-neighbors.

    Walking the slices in ascending ``(z, id)`` order, each slice gets an
    edge to every later slice with ``|dz| < z_range``, and always to the
    immediately next slice. The same walk in descending order adds the
    backward edges.

    Parameters
    ----------
    stack : SliceStack
    z_range : float
        Distance threshold. 0 keeps only the nearest neighbor each way.

    Returns
    -------
    NeighborGraph
        Unweighted graph (weights NaN).
    """
    order = stack.sorted_indices
    rank = {idx: r for r, idx in enumerate(order)}
    adjacency = [set() for _ in range(len(stack))]

    for direction in (1, -1):
        walk = order if direction == 1 else order[::-1]
        for pos, i in enumerate(walk):
            z_i = stack[i].z_position
            n_added = 0
            for j in walk[pos + 1:]:
                if n_added >= 1 and abs(stack[j].z_position - z_i) >= z_range:
                    break
                adjacency[i].add(j)
                n_added += 1

    offsets = [0]
    neighbors = []
    for i in range(len(stack)):
        row = sorted(adjacency[i], key=rank.__getitem__)
        neighbors.extend(row)
        offsets.append(len(neighbors))

    graph = NeighborGraph(np.array(offsets), np.array(neighbors, dtype=np.int64))
    assert_neighbor_graph(graph.offsets, graph.neighbors, len(stack))
    logger.info("Neighbor graph: %d slices, %d directed edges (z_range=%g)",
                graph.n_nodes, graph.n_edges, z_range)
    return graph


def root_distance_totals(graph: NeighborGraph) -> np.ndarray:
    """Sum of shortest-path distances from each node to all others.

    Unreachable targets make a node's total infinite.
    """
    distances = dijkstra(graph.to_csr(), directed=True)
    return distances.sum(axis=1)


def select_root(graph: NeighborGraph) -> int:
    """Graph medoid: the node with minimal total distance (lowest index on ties).

    Raises
    ------
    GraphConnectivityError
        If no node reaches every other node.
    """
    totals = root_distance_totals(graph)
    for i, total in enumerate(totals):
        logger.info("Root distance %d : %g", i, total)
    root = int(np.argmin(totals))
    require(
        np.isfinite(totals[root]),
        "No slice reaches every other slice; the neighbor graph is disconnected",
        error=GraphConnectivityError,
    )
    return root


def shortest_path_tree(graph: NeighborGraph, root: int) -> ShortestPathTree:
    """Shortest paths from ``root`` to every slice.

    Raises
    ------
    GraphConnectivityError
        If a slice is unreachable from the root.
    """
    distances, predecessors = dijkstra(
        graph.to_csr(), directed=True, indices=root, return_predecessors=True
    )
    unreachable = np.flatnonzero(~np.isfinite(distances))
    require(
        unreachable.size == 0,
        f"Slices {unreachable.tolist()} are unreachable from root {root}",
        error=GraphConnectivityError,
    )
    return ShortestPathTree(root, predecessors.astype(np.int64), distances)
