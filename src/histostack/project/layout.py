"""Project directory layout.

Every persisted artifact is named by a file role. Roles are small frozen
dataclasses carrying exactly the fields their path needs, and
:class:`ProjectLayout` maps them to paths relative to the project root::

    config/manifest.txt
    config/dict/<key>
    config/runtime_config_<stage>.json
    recon/nbr/affine_ref_<R>_mov_<M>.mat
    recon/nbr/affine_ref_<R>_mov_<M>_metric.txt
    recon/accum/accum_affine_<S>.mat
    recon/accum/accum_affine_<S>_reslice.<ext>
    vol/slides/vol_slide_<S>.<ext>
    vol/match/affine_refvol_mov_<S>.mat
    vol/match/affine_refvol_median.mat
    vol/iterNN/affine_refvol_mov_<S>_iterNN.mat
    vol/iterNN/warp_refvol_mov_<S>_iterNN.<ext>
    vol/iterNN/metric_refvol_mov_<S>_iterNN.txt
    vol/iterNN/iteration_summary.csv

Paths derive only from slice ids and iteration numbers, so resumed runs
find their checkpoints without a separate index.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import PurePosixPath
from typing import Union

__all__ = [
    'PairRole', 'SliceRole', 'IterationRole', 'GlobalRole',
    'PairFile', 'SliceFile', 'IterationFile', 'GlobalFile', 'SettingFile',
    'IterationSummaryFile', 'RuntimeConfigFile', 'FileRole', 'ProjectLayout',
]


class PairRole(str, Enum):
    MATRIX = "matrix"
    METRIC = "metric"


class SliceRole(str, Enum):
    ACCUM_MATRIX = "accum_matrix"
    ACCUM_RESLICE = "accum_reslice"
    VOL_SLIDE = "vol_slide"
    VOL_INIT_MATRIX = "vol_init_matrix"


class IterationRole(str, Enum):
    MATRIX = "matrix"
    WARP = "warp"
    METRIC = "metric"


class GlobalRole(str, Enum):
    MANIFEST = "manifest"
    VOL_MEDIAN_MATRIX = "vol_median_matrix"


@dataclass(frozen=True)
class PairFile:
    """Pairwise registration output for (reference, moving)."""
    role: PairRole
    ref_id: str
    mov_id: str


@dataclass(frozen=True)
class SliceFile:
    role: SliceRole
    slice_id: str


@dataclass(frozen=True)
class IterationFile:
    """Per-slice, per-iteration volume-space output."""
    role: IterationRole
    slice_id: str
    iteration: int


@dataclass(frozen=True)
class GlobalFile:
    role: GlobalRole


@dataclass(frozen=True)
class SettingFile:
    """Entry of the project key/value store."""
    key: str


@dataclass(frozen=True)
class IterationSummaryFile:
    iteration: int


@dataclass(frozen=True)
class RuntimeConfigFile:
    """Resolved configuration a stage ran with."""
    stage: str


FileRole = Union[
    PairFile, SliceFile, IterationFile, GlobalFile, SettingFile, IterationSummaryFile, RuntimeConfigFile,
]


class ProjectLayout:
    """Maps file roles to project-relative paths.

    Parameters
    ----------
    image_ext : str
        Extension (without leading dot) for images written to the project.
    """

    def __init__(self, image_ext: str = "nii.gz"):
        self.image_ext = image_ext.lstrip(".")

    @staticmethod
    def iteration_dir(iteration: int) -> PurePosixPath:
        return PurePosixPath("vol") / f"iter{iteration:02d}"

    def relative_path(self, role: FileRole) -> PurePosixPath:
        """Return the project-relative path for ``role``.

        Raises
        ------
        TypeError
            If ``role`` is not one of the file role types.
        """
        ext = self.image_ext

        if isinstance(role, PairFile):
            stem = f"affine_ref_{role.ref_id}_mov_{role.mov_id}"
            name = {
                PairRole.MATRIX: f"{stem}.mat",
                PairRole.METRIC: f"{stem}_metric.txt",
            }[role.role]
            return PurePosixPath("recon", "nbr", name)

        if isinstance(role, SliceFile):
            sid = role.slice_id
            return {
                SliceRole.ACCUM_MATRIX: PurePosixPath("recon", "accum", f"accum_affine_{sid}.mat"),
                SliceRole.ACCUM_RESLICE: PurePosixPath("recon", "accum", f"accum_affine_{sid}_reslice.{ext}"),
                SliceRole.VOL_SLIDE: PurePosixPath("vol", "slides", f"vol_slide_{sid}.{ext}"),
                SliceRole.VOL_INIT_MATRIX: PurePosixPath("vol", "match", f"affine_refvol_mov_{sid}.mat"),
            }[role.role]

        if isinstance(role, IterationFile):
            sid, it = role.slice_id, role.iteration
            name = {
                IterationRole.MATRIX: f"affine_refvol_mov_{sid}_iter{it:02d}.mat",
                IterationRole.WARP: f"warp_refvol_mov_{sid}_iter{it:02d}.{ext}",
                IterationRole.METRIC: f"metric_refvol_mov_{sid}_iter{it:02d}.txt",
            }[role.role]
            return self.iteration_dir(it) / name

        if isinstance(role, GlobalFile):
            return {
                GlobalRole.MANIFEST: PurePosixPath("config", "manifest.txt"),
                GlobalRole.VOL_MEDIAN_MATRIX: PurePosixPath("vol", "match", "affine_refvol_median.mat"),
            }[role.role]

        if isinstance(role, SettingFile):
            return PurePosixPath("config", "dict", role.key)

        if isinstance(role, IterationSummaryFile):
            return self.iteration_dir(role.iteration) / "iteration_summary.csv"

        if isinstance(role, RuntimeConfigFile):
            return PurePosixPath("config", f"runtime_config_{role.stage}.json")

        raise TypeError(f"Not a file role: {role!r}")
