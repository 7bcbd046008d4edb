"""Stack reconstruction: neighbor graph, pairwise edges, transform chains."""

from histostack.reconstruction.graph import (
    NeighborGraph,
    ShortestPathTree,
    build_neighbor_graph,
    root_distance_totals,
    select_root,
    shortest_path_tree,
)
from histostack.reconstruction.pairwise import PairwiseResolver, edge_weight, normalize_metric
from histostack.reconstruction.chain import ChainComposer, compose_chain, pad_root_image

__all__ = [
    "NeighborGraph",
    "ShortestPathTree",
    "build_neighbor_graph",
    "root_distance_totals",
    "select_root",
    "shortest_path_tree",
    "PairwiseResolver",
    "edge_weight",
    "normalize_metric",
    "ChainComposer",
    "compose_chain",
    "pad_root_image",
]
