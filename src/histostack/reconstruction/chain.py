"""Transform-chain composition and root-space reslicing.

Each slice's accumulated transform is the product of the pairwise
matrices along its shortest path from the root::

    T(p1, i) @ T(p2, p1) @ ... @ T(root, pk)

where ``T(r, m)`` is the matrix registering moving slice ``m`` to
reference slice ``r``. The root gets the identity. Every slice is then
resliced into a padded copy of the root image so that content shifted
outside the root's footprint is kept.
"""

import logging
from typing import Callable, Dict

import numpy as np
import xarray as xr

from histostack.core.image_cache import ImageCache
from histostack.engine.base import RegistrationEngine, ResliceProblem
from histostack.project.io import image_spacing
from histostack.project.layout import PairFile, PairRole, SliceFile, SliceRole
from histostack.project.manifest import SliceStack
from histostack.project.store import CheckpointStore
from histostack.reconstruction.graph import ShortestPathTree
from histostack.reconstruction.pairwise import SLIDE_DTYPE

__all__ = ['compose_chain', 'pad_root_image', 'ChainComposer']

logger = logging.getLogger(__name__)


def compose_chain(tree: ShortestPathTree, index: int,
                  read_edge: Callable[[int, int], np.ndarray]) -> np.ndarray:
    """Accumulated root-to-slice matrix for ``index``.

    Parameters
    ----------
    tree : ShortestPathTree
    index : int
        Slice to compose for.
    read_edge : callable
        ``read_edge(ref, mov) -> 3x3 matrix`` for a tree edge.

    Returns
    -------
    np.ndarray
        Identity for the root.
    """
    path = tree.path_to_root(index)
    t_accum = np.eye(3)
    for curr, prev in zip(path[:-1], path[1:]):
        t_accum = t_accum @ read_edge(prev, curr)
    return t_accum


def pad_root_image(image: xr.DataArray) -> xr.DataArray:
    """Pad the in-plane axes by ``max(ny, nx) // 4`` with edge replication.

    The origin moves by ``-pad`` pixels along each direction cosine, so the
    original pixels keep their physical positions.
    """
    pad = max(image.sizes["y"], image.sizes["x"]) // 4
    if pad == 0:
        return image.copy()

    widths = [(pad, pad) if d in ("y", "x") else (0, 0) for d in image.dims]
    data = np.pad(image.values, widths, mode="edge")

    spacing = np.asarray(image_spacing(image)[:2], dtype=float)
    origin = np.array([float(image["x"].values[0]), float(image["y"].values[0])])
    direction = np.asarray(image.attrs.get("direction") or np.eye(2).ravel(), dtype=float).reshape(2, 2)
    new_origin = origin + direction @ (-pad * spacing)

    coords = {}
    for axis, dim in enumerate(("x", "y")):
        coords[dim] = new_origin[axis] + np.arange(image.sizes[dim] + 2 * pad) * spacing[axis]

    return xr.DataArray(data, dims=image.dims, coords=coords, attrs=dict(image.attrs))


class ChainComposer:
    """Writes accumulated matrices and root-space reslices for every slice.

    Parameters
    ----------
    stack : SliceStack
    store : CheckpointStore
    engine : RegistrationEngine
    cache : ImageCache
    reslice : bool, optional
        When False only the matrices are written.
    """

    def __init__(self, stack: SliceStack, store: CheckpointStore, engine: RegistrationEngine,
                 cache: ImageCache, reslice: bool = True):
        self.stack = stack
        self.store = store
        self.engine = engine
        self.cache = cache
        self.reslice = reslice

    def _read_edge(self, ref: int, mov: int) -> np.ndarray:
        role = PairFile(PairRole.MATRIX, self.stack[ref].slice_id, self.stack[mov].slice_id)
        return self.store.read_matrix(role)

    def compose_all(self, tree: ShortestPathTree) -> Dict[str, np.ndarray]:
        """Compose, persist and (optionally) reslice every slice.

        Returns
        -------
        dict
            Accumulated matrix per slice id.
        """
        padded_root = None
        if self.reslice:
            root_image = self.cache.get(self.stack[tree.root].raw_path, SLIDE_DTYPE)
            padded_root = pad_root_image(root_image)
            logger.info("Root slice %s padded to %s", self.stack[tree.root].slice_id,
                        dict(padded_root.sizes))

        accumulated = {}
        for i, s in enumerate(self.stack):
            t_accum = compose_chain(tree, i, self._read_edge)
            logger.info("Chain for %s : %s", s.slice_id,
                        " ".join(self.stack[j].slice_id for j in tree.path_to_root(i)[1:]))
            self.store.write_matrix(SliceFile(SliceRole.ACCUM_MATRIX, s.slice_id), t_accum)
            accumulated[s.slice_id] = t_accum

            reslice_role = SliceFile(SliceRole.ACCUM_RESLICE, s.slice_id)
            if not self.reslice or self.store.can_skip(reslice_role):
                continue
            resliced = self.engine.run_reslice(ResliceProblem(
                reference=padded_root,
                moving=self.cache.get(s.raw_path, SLIDE_DTYPE),
                transforms=[t_accum],
                label=f"root-space reslice of {s.slice_id}",
            ))
            self.store.write_image(reslice_role, resliced)

        return accumulated
