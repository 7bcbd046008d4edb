"""Pairwise edge resolution.

Every adjacency entry of the neighbor graph becomes one rigid
registration between two raw slides. The resulting matrix and a
normalized match metric are persisted per (reference, moving) pair and
reused on later runs when reuse is enabled.
"""

import logging

import numpy as np

from histostack.contracts import assert_weights_resolved
from histostack.core.image_cache import ImageCache
from histostack.engine.base import (
    AffineProblem,
    Dof,
    EngineParams,
    ImagePair,
    InitMode,
    RegistrationEngine,
)
from histostack.project.layout import PairFile, PairRole
from histostack.project.manifest import Slice, SliceStack
from histostack.project.store import CheckpointStore
from histostack.reconstruction.graph import NeighborGraph

__all__ = ['PairwiseResolver', 'normalize_metric', 'edge_weight', 'SLIDE_DTYPE']

logger = logging.getLogger(__name__)

SLIDE_DTYPE = np.float32

# The engine reports NCC summed over pixels and scaled; this maps it to a
# mean NCC where 1 is a perfect match.
METRIC_SCALE = -10000.0


def normalize_metric(total: float, n_components: int) -> float:
    return total / (METRIC_SCALE * n_components)


def edge_weight(metric: float, dz: float, z_epsilon: float) -> float:
    """``(1 - metric) * (1 + z_epsilon) ** |dz|``."""
    return (1.0 - metric) * (1.0 + z_epsilon) ** abs(dz)


class PairwiseResolver:
    """Resolves neighbor-graph edge weights by pairwise registration.

    Parameters
    ----------
    stack : SliceStack
    store : CheckpointStore
    engine : RegistrationEngine
    cache : ImageCache
        Source-image cache shared with later stages.
    params : EngineParams
    z_epsilon : float
        Exponential z-distance penalty.
    init : InitMode, optional
        Starting transform for each pair.
    ledger : RegistrationLedger, optional
        Records each engine run.
    """

    def __init__(self, stack: SliceStack, store: CheckpointStore, engine: RegistrationEngine,
                 cache: ImageCache, params: EngineParams, z_epsilon: float,
                 init: InitMode = InitMode.MOMENTS, ledger=None):
        self.stack = stack
        self.store = store
        self.engine = engine
        self.cache = cache
        self.params = params
        self.z_epsilon = z_epsilon
        self.init = InitMode(init)
        self.ledger = ledger
        self.n_registered = 0
        self.n_reused = 0

    def _register(self, ref: Slice, mov: Slice) -> float:
        fixed = self.cache.get(ref.raw_path, SLIDE_DTYPE)
        moving = self.cache.get(mov.raw_path, SLIDE_DTYPE)

        label = f"pair ref={ref.slice_id} mov={mov.slice_id}"
        logger.info("Registering %s", label)
        result = self.engine.run_affine(AffineProblem(
            pairs=[ImagePair(fixed, moving)],
            dof=Dof.RIGID,
            init=self.init,
            params=self.params,
            label=label,
        ))

        n_components = fixed.sizes.get("component", 1)
        metric = normalize_metric(result.report.total, n_components)
        logger.debug("Last metric value: %g (normalized %g)", result.report.total, metric)

        self.store.write_matrix(PairFile(PairRole.MATRIX, ref.slice_id, mov.slice_id), result.matrix)
        self.store.write_metric(PairFile(PairRole.METRIC, ref.slice_id, mov.slice_id), metric)
        if self.ledger is not None:
            self.ledger.record("pairwise", mov.slice_id, partner_id=ref.slice_id,
                               total_metric=metric)
        self.n_registered += 1
        return metric

    def pair_metric(self, ref: Slice, mov: Slice) -> float:
        """Persisted metric for (ref, mov), registering the pair if needed."""
        matrix_role = PairFile(PairRole.MATRIX, ref.slice_id, mov.slice_id)
        metric_role = PairFile(PairRole.METRIC, ref.slice_id, mov.slice_id)
        if self.store.can_skip(matrix_role) and self.store.can_skip(metric_role):
            self.n_reused += 1
            return self.store.read_metric(metric_role)
        return self._register(ref, mov)

    def resolve(self, graph: NeighborGraph) -> NeighborGraph:
        """Fill ``graph.weights`` in place and return the graph.

        Reference slices are visited in ascending z order. Engine failures
        propagate; no partial graph is returned.
        """
        for i in self.stack.sorted_indices:
            ref = self.stack[i]
            for pos in range(graph.offsets[i], graph.offsets[i + 1]):
                mov = self.stack[int(graph.neighbors[pos])]
                metric = self.pair_metric(ref, mov)
                graph.weights[pos] = edge_weight(
                    metric, mov.z_position - ref.z_position, self.z_epsilon
                )

        assert_weights_resolved(graph.weights)
        logger.info("Pairwise edges: %d registered, %d reused", self.n_registered, self.n_reused)
        return graph
