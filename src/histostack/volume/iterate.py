"""Iterative refinement of slice-to-volume transforms.

Iterations ``1..n_affine`` refine each slice's affine matrix; iterations
``n_affine+1..n_affine+n_deform`` estimate a dense warp on top of the
final affine matrix. Within an iteration every slice is registered
against its volume cross-section plus its two z-neighbors resliced
through their transforms from the previous iteration, so the order slices
are visited in never changes the result. The visiting order is still
shuffled from a seeded generator, so that a run is reproducible from its
logged seed.
"""

import logging
from typing import List, Optional

import numpy as np
import pandas as pd

from histostack.contracts import assert_iteration_range
from histostack.core.image_cache import ImageCache
from histostack.engine.base import (
    AffineProblem,
    DeformableProblem,
    Dof,
    EngineParams,
    ImagePair,
    InitMode,
    MetricReport,
    RegistrationEngine,
    ResliceProblem,
    Transform,
)
from histostack.project.layout import (
    IterationFile,
    IterationRole,
    IterationSummaryFile,
    SliceFile,
    SliceRole,
)
from histostack.project.manifest import SliceStack
from histostack.project.store import CheckpointStore
from histostack.reconstruction.pairwise import SLIDE_DTYPE

__all__ = ['IterativeRefiner', 'SUMMARY_COLUMNS', 'split_report']

logger = logging.getLogger(__name__)

SUMMARY_COLUMNS = [
    'iteration', 'slice_id', 'phase', 'total_metric',
    'volume_metric', 'neighbor_metric', 'n_neighbors',
]


def split_report(report: MetricReport):
    """``(volume_metric, neighbor_metric)`` from a report.

    The volume term is the first component, the neighbor terms are the
    rest. A report without components counts entirely as volume.
    """
    if not report.components:
        return report.total, 0.0
    return report.components[0], float(sum(report.components[1:]))


class IterativeRefiner:
    """Runs the affine-then-deformable refinement schedule.

    Parameters
    ----------
    stack : SliceStack
    store : CheckpointStore
        Must hold the volume slides and iteration-0 matrices.
    engine : RegistrationEngine
    cache : ImageCache
        Source-image cache keyed by raw slide path.
    params : EngineParams
    n_affine, n_deform : int
        Length of each phase.
    w_volume : float
        Weight of the volume term; neighbor terms have weight 1.
    seed : int, optional
        Seed for the slice visiting order. Drawn fresh when omitted.
    ledger : RegistrationLedger, optional
    """

    def __init__(self, stack: SliceStack, store: CheckpointStore, engine: RegistrationEngine,
                 cache: ImageCache, params: EngineParams, n_affine: int = 5,
                 n_deform: int = 5, w_volume: float = 4.0, seed: Optional[int] = None,
                 ledger=None):
        self.stack = stack
        self.store = store
        self.engine = engine
        self.cache = cache
        self.params = params
        self.n_affine = n_affine
        self.n_deform = n_deform
        self.w_volume = w_volume
        self.seed = seed if seed is not None else int(np.random.SeedSequence().entropy % (2 ** 63))
        self.ledger = ledger

    @property
    def n_iterations(self) -> int:
        return self.n_affine + self.n_deform

    def is_affine(self, iteration: int) -> bool:
        return iteration <= self.n_affine

    def result_role(self, slice_id: str, iteration: int) -> IterationFile:
        role = IterationRole.MATRIX if self.is_affine(iteration) else IterationRole.WARP
        return IterationFile(role, slice_id, iteration)

    def previous_transforms(self, slice_id: str, iteration: int) -> List[Transform]:
        """Chain taking ``slice_id`` into volume space after ``iteration - 1``."""
        prev = iteration - 1
        if self.is_affine(prev):
            return [self.store.read_matrix(IterationFile(IterationRole.MATRIX, slice_id, prev))]
        return [
            self.store.read_image(IterationFile(IterationRole.WARP, slice_id, prev)),
            self.store.read_matrix(IterationFile(IterationRole.MATRIX, slice_id, self.n_affine)),
        ]

    def _image_pairs(self, index: int, iteration: int) -> List[ImagePair]:
        s = self.stack[index]
        vol_slice = self.store.read_image(SliceFile(SliceRole.VOL_SLIDE, s.slice_id))
        moving = self.cache.get(s.raw_path, SLIDE_DTYPE)
        pairs = [ImagePair(vol_slice, moving, self.w_volume)]

        for j in self.stack.z_neighbors(index):
            nbr = self.stack[j]
            resliced = self.engine.run_reslice(ResliceProblem(
                reference=vol_slice,
                moving=self.cache.get(nbr.raw_path, SLIDE_DTYPE),
                transforms=self.previous_transforms(nbr.slice_id, iteration),
                label=f"neighbor {nbr.slice_id} into volume slice of {s.slice_id}",
            ))
            pairs.append(ImagePair(resliced, moving, 1.0))
        return pairs

    def refine_slice(self, index: int, iteration: int) -> MetricReport:
        """Register one slice for one iteration and persist the result."""
        s = self.stack[index]
        pairs = self._image_pairs(index, iteration)
        label = f"iteration {iteration} of {s.slice_id}"

        if self.is_affine(iteration):
            init = self.store.read_matrix(IterationFile(IterationRole.MATRIX, s.slice_id, iteration - 1))
            result = self.engine.run_affine(AffineProblem(
                pairs=pairs,
                dof=Dof.AFFINE,
                init=InitMode.MATRIX,
                init_matrix=init,
                params=self.params,
                label=label,
            ))
            self.store.write_matrix(self.result_role(s.slice_id, iteration), result.matrix)
        else:
            seed_warp = None
            if not self.is_affine(iteration - 1):
                seed_warp = self.store.read_image(
                    IterationFile(IterationRole.WARP, s.slice_id, iteration - 1)
                )
            result = self.engine.run_deformable(DeformableProblem(
                pairs=pairs,
                pre_transforms=[self.store.read_matrix(
                    IterationFile(IterationRole.MATRIX, s.slice_id, self.n_affine)
                )],
                initial_warp=seed_warp,
                params=self.params,
                label=label,
            ))
            self.store.write_image(self.result_role(s.slice_id, iteration), result.warp)

        self.store.write_text(IterationFile(IterationRole.METRIC, s.slice_id, iteration),
                              result.report.format() + "\n")
        return result.report

    def run_iteration(self, iteration: int, rng: np.random.Generator) -> pd.DataFrame:
        """One pass over every slice in shuffled order.

        Slices whose result already exists are skipped when reuse is on.
        The permutation is drawn either way so resumed runs visit slices
        in the same order as uninterrupted ones.
        """
        phase = "affine" if self.is_affine(iteration) else "deformable"
        order = rng.permutation(len(self.stack))
        rows = []
        for k in order:
            s = self.stack[int(k)]
            if self.store.can_skip(self.result_role(s.slice_id, iteration)):
                continue
            report = self.refine_slice(int(k), iteration)
            vol_metric, nbr_metric = split_report(report)
            rows.append({
                'iteration': iteration,
                'slice_id': s.slice_id,
                'phase': phase,
                'total_metric': report.total,
                'volume_metric': vol_metric,
                'neighbor_metric': nbr_metric,
                'n_neighbors': len(self.stack.z_neighbors(int(k))),
            })
            if self.ledger is not None:
                self.ledger.record("voliter", s.slice_id, iteration=iteration,
                                   total_metric=report.total, vol_metric=vol_metric,
                                   nbr_metric=nbr_metric)

        summary = pd.DataFrame(rows, columns=SUMMARY_COLUMNS)
        total_vol = float(summary['volume_metric'].sum())
        total_nbr = float(summary['neighbor_metric'].sum())
        logger.info("ITER %3d  TOTAL_VOL_METRIC = %8.4f  TOTAL_NBR_METRIC = %8.4f",
                    iteration, total_vol, total_nbr)
        if len(summary) > 0:
            self.store.write_text(IterationSummaryFile(iteration), summary.to_csv(index=False))
        return summary

    def run(self, i_first: Optional[int] = None, i_last: Optional[int] = None) -> pd.DataFrame:
        """Run iterations ``i_first..i_last`` (whole schedule by default).

        Raises
        ------
        ConfigurationError
            If the range is outside ``[1, n_affine + n_deform]``. Nothing is
            registered in that case.
        """
        i_first = 1 if i_first is None else i_first
        i_last = self.n_iterations if i_last is None else i_last
        assert_iteration_range(i_first, i_last, self.n_affine, self.n_deform)

        logger.info("Refining iterations %d..%d (%d affine, %d deformable), seed %d",
                    i_first, i_last, self.n_affine, self.n_deform, self.seed)
        rng = np.random.default_rng(self.seed)
        # Draws for iterations before i_first keep the schedule aligned with a full run.
        for _ in range(1, i_first):
            rng.permutation(len(self.stack))

        summaries = [self.run_iteration(it, rng) for it in range(i_first, i_last + 1)]
        return pd.concat(summaries, ignore_index=True)
