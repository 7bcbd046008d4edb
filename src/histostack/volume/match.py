"""Volume-match initialization.

Each reconstructed slice is registered to the cross-section of the
reference volume at its z-position. The medoid of the resulting affine
matrices (under the L1 distance between matrices) is taken as one bulk
correction and applied to every slice's accumulated transform to give the
iteration-0 volume-space transforms.
"""

import logging
from typing import Sequence

import numpy as np
import xarray as xr
from scipy import ndimage

from histostack.contracts import require
from histostack.engine.base import (
    AffineProblem,
    Dof,
    EngineParams,
    ImagePair,
    InitMode,
    RegistrationEngine,
)
from histostack.project.io import image_spacing, make_image
from histostack.project.layout import GlobalFile, GlobalRole, IterationFile, IterationRole, SliceFile, SliceRole
from histostack.project.manifest import SliceStack
from histostack.project.store import CheckpointStore

__all__ = ['extract_volume_slice', 'l1_distance_matrix', 'select_median_transform', 'VolumeMatcher']

logger = logging.getLogger(__name__)

_ORDERS = {"nearest": 0, "linear": 1}
_EDGE_TOL = 1e-6


def _continuous_offset(volume: xr.DataArray, z_position: float) -> np.ndarray:
    """Voxel-index offset, ITK order, from the volume origin to the plane origin.

    The plane shares the volume's grid except that its origin has physical
    z equal to ``z_position``.
    """
    origin_z = float(volume["z"].values[0])
    spacing = np.asarray(image_spacing(volume), dtype=float)
    direction = volume.attrs.get("direction") or np.eye(3).ravel()
    index_to_physical = np.asarray(direction, dtype=float).reshape(3, 3) * spacing
    return np.linalg.solve(index_to_physical, [0.0, 0.0, z_position - origin_z])


def extract_volume_slice(volume: xr.DataArray, z_position: float,
                         method: str = "linear") -> xr.DataArray:
    """Sample the plane at physical ``z = z_position`` from a ``(z, y, x)`` volume.

    The plane keeps the volume's in-plane size, spacing, x/y origin and
    direction. Points are mapped to voxel indices through the volume's
    origin, spacing and direction, so flipped or oblique slice axes are
    handled. Samples outside the volume are 0.

    Parameters
    ----------
    volume : xr.DataArray
        Reference volume.
    z_position : float
        Physical z of the plane.
    method : {"linear", "nearest"}

    Returns
    -------
    xr.DataArray
        2-D float32 image; the z axis is dropped from dims, coordinates
        and geometry attributes.
    """
    require("z" in volume.dims, f"Volume has dims {volume.dims}, expected a 'z' axis")
    require(method in _ORDERS, f"Unknown sampling method '{method}'")

    offset = _continuous_offset(volume, float(z_position))
    ny, nx = volume.sizes["y"], volume.sizes["x"]
    rows, cols = np.meshgrid(np.arange(ny, dtype=float), np.arange(nx, dtype=float), indexing="ij")
    # array axis order (z, y, x) is the reverse of ITK's
    points = np.stack([np.full(rows.shape, offset[2]), rows + offset[1], cols + offset[0]])

    extent = np.array([volume.sizes[d] - 1 for d in ("z", "y", "x")], dtype=float)[:, None, None]
    inside = np.all((points >= -_EDGE_TOL) & (points <= extent + _EDGE_TOL), axis=0)
    points = np.clip(points, 0.0, extent)

    values = volume.transpose("z", "y", "x", ...).values.astype(np.float32)
    components = "component" in volume.dims
    planes = [values[..., c] for c in range(values.shape[-1])] if components else [values]
    sampled = [
        np.where(inside, ndimage.map_coordinates(p, points, order=_ORDERS[method], mode="nearest"), 0.0)
        for p in planes
    ]
    data = np.stack(sampled, axis=-1) if components else sampled[0]

    spacing = image_spacing(volume)
    direction = np.asarray(volume.attrs.get("direction") or np.eye(3).ravel(), dtype=float).reshape(3, 3)
    return make_image(
        data.astype(np.float32),
        spacing=spacing[:2],
        origin=(float(volume["x"].values[0]), float(volume["y"].values[0])),
        components=components,
        direction=tuple(direction[:2, :2].ravel()),
    )


def l1_distance_matrix(matrices: Sequence[np.ndarray]) -> np.ndarray:
    """Pairwise sum of absolute element differences between matrices."""
    stacked = np.asarray(matrices, dtype=float)
    return np.abs(stacked[:, None] - stacked[None, :]).sum(axis=(2, 3))


def select_median_transform(matrices: Sequence[np.ndarray]) -> np.ndarray:
    """Medoid of ``matrices`` under the L1 distance.

    Exact ties are broken by the lexicographically smallest matrix, so the
    choice does not depend on input order.
    """
    stacked = np.asarray(matrices, dtype=float)
    require(stacked.ndim == 3 and stacked.shape[0] > 0, "No matrices to choose a median from")
    totals = l1_distance_matrix(stacked).sum(axis=1)
    candidates = np.flatnonzero(totals == totals.min())
    if candidates.size > 1:
        flat = stacked[candidates].reshape(candidates.size, -1)
        candidates = candidates[np.lexsort(flat.T[::-1])]
    return stacked[candidates[0]].copy()


class VolumeMatcher:
    """Initial alignment of the reconstructed stack to a reference volume.

    Parameters
    ----------
    stack : SliceStack
    store : CheckpointStore
    engine : RegistrationEngine
    params : EngineParams
    sampling : {"linear", "nearest"}, optional
    init : InitMode, optional
    ledger : RegistrationLedger, optional
    """

    def __init__(self, stack: SliceStack, store: CheckpointStore, engine: RegistrationEngine,
                 params: EngineParams, sampling: str = "linear",
                 init: InitMode = InitMode.MOMENTS, ledger=None):
        self.stack = stack
        self.store = store
        self.engine = engine
        self.params = params
        self.sampling = sampling
        self.init = InitMode(init)
        self.ledger = ledger

    def match_slice(self, index: int, volume: xr.DataArray) -> None:
        s = self.stack[index]
        vol_slice = extract_volume_slice(volume, s.z_position, self.sampling)
        self.store.write_image(SliceFile(SliceRole.VOL_SLIDE, s.slice_id), vol_slice)

        moving = self.store.read_image(SliceFile(SliceRole.ACCUM_RESLICE, s.slice_id))
        label = f"volume match of {s.slice_id} (z={s.z_position:g})"
        logger.info("Registering %s", label)
        result = self.engine.run_affine(AffineProblem(
            pairs=[ImagePair(vol_slice, moving)],
            dof=Dof.AFFINE,
            init=self.init,
            params=self.params,
            label=label,
        ))
        self.store.write_matrix(SliceFile(SliceRole.VOL_INIT_MATRIX, s.slice_id), result.matrix)
        if self.ledger is not None:
            self.ledger.record("volmatch", s.slice_id, total_metric=result.report.total)

    def match(self, volume: xr.DataArray) -> np.ndarray:
        """Register every slice, pick the median transform, write iteration 0.

        Returns
        -------
        np.ndarray
            The median (medoid) matrix.
        """
        n_done = 0
        for i in self.stack.sorted_indices:
            sid = self.stack[i].slice_id
            if (self.store.can_skip(SliceFile(SliceRole.VOL_SLIDE, sid))
                    and self.store.can_skip(SliceFile(SliceRole.VOL_INIT_MATRIX, sid))):
                continue
            self.match_slice(i, volume)
            n_done += 1
        logger.info("Volume match: %d registered, %d reused", n_done, len(self.stack) - n_done)

        ids = [s.slice_id for s in self.stack]
        matrices = [self.store.read_matrix(SliceFile(SliceRole.VOL_INIT_MATRIX, sid)) for sid in ids]
        median = select_median_transform(matrices)
        self.store.write_matrix(GlobalFile(GlobalRole.VOL_MEDIAN_MATRIX), median)
        logger.info("Median transform:\n%s", median)

        for sid in ids:
            accum = self.store.read_matrix(SliceFile(SliceRole.ACCUM_MATRIX, sid))
            self.store.write_matrix(IterationFile(IterationRole.MATRIX, sid, 0), accum @ median)
        return median
