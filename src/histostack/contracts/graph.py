"""Neighbor graph contracts.

Enforce the structural guarantees the builder promises and the weight
guarantees the pairwise resolver promises before shortest paths run.
"""

import numpy as np
from histostack.contracts.base import require


def assert_neighbor_graph(offsets: np.ndarray, neighbors: np.ndarray, n_nodes: int) -> None:
    """Enforce graph builder contract.

    Parameters
    ----------
    offsets : np.ndarray
        CSR row offsets, length ``n_nodes + 1``.
    neighbors : np.ndarray
        Flattened neighbor indices.
    n_nodes : int
        Number of slices.

    Raises
    ------
    ContractViolation
        If the adjacency is malformed, has self-edges or isolated nodes.
    """
    require(
        offsets.shape == (n_nodes + 1,),
        f"Graph contract violated: {offsets.shape[0]} offsets for {n_nodes} nodes"
    )
    require(
        offsets[0] == 0 and offsets[-1] == neighbors.shape[0],
        "Graph contract violated: offsets do not span the neighbor list"
    )
    degree = np.diff(offsets)
    require(
        bool(np.all(degree >= 0)),
        "Graph contract violated: offsets are not monotonic"
    )
    if n_nodes > 1:
        isolated = np.flatnonzero(degree == 0)
        require(
            isolated.size == 0,
            f"Graph contract violated: isolated nodes {isolated.tolist()}"
        )
    if neighbors.size:
        require(
            neighbors.min() >= 0 and neighbors.max() < n_nodes,
            "Graph contract violated: neighbor index out of range"
        )
        rows = np.repeat(np.arange(n_nodes), degree)
        require(
            not bool(np.any(rows == neighbors)),
            "Graph contract violated: self-edge present"
        )


def assert_weights_resolved(weights: np.ndarray) -> None:
    """Enforce pairwise resolver contract: finite, non-negative weights.

    Raises
    ------
    ContractViolation
        If any weight is unset (NaN), infinite or negative.
    """
    if weights.size == 0:
        return
    require(
        bool(np.all(np.isfinite(weights))),
        "Edge contract violated: unresolved or infinite edge weight"
    )
    require(
        bool(np.all(weights >= 0)),
        f"Edge contract violated: negative edge weight {weights.min():.6g}"
    )
