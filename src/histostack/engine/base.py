"""Registration engine contract.

The pipeline never computes image similarity itself. It describes each
registration as a problem object holding in-memory images plus generic
parameters, hands it to a :class:`RegistrationEngine`, and gets back a
transform together with a :class:`MetricReport`.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Union

import numpy as np
import xarray as xr

__all__ = [
    'Dof', 'InitMode', 'EngineParams', 'ImagePair', 'AffineProblem',
    'DeformableProblem', 'ResliceProblem', 'MetricReport', 'AffineResult',
    'DeformableResult', 'RegistrationEngine', 'Transform',
]


class Dof(str, Enum):
    RIGID = "rigid"
    AFFINE = "affine"


class InitMode(str, Enum):
    """How the optimizer's starting transform is chosen."""
    MOMENTS = "moments"              # match centers of mass
    IMAGE_CENTERS = "image_centers"  # match geometric image centers
    MATRIX = "matrix"                # start from a given matrix


@dataclass(frozen=True)
class EngineParams:
    """Generic registration parameters shared by every run of a stage."""
    metric: str = "NCC"
    metric_radius: Tuple[int, int] = (4, 4)
    iterations: str = "100x50x10"
    smoothing: Tuple[str, str] = ("2.0vox", "0.5vox")
    step_size: float = 0.25
    threads: Optional[int] = None
    extra_args: Tuple[str, ...] = ()

    @classmethod
    def from_config(cls, engine_cfg) -> "EngineParams":
        return cls(
            metric=engine_cfg.metric,
            metric_radius=tuple(engine_cfg.metric_radius),
            iterations=engine_cfg.iterations,
            smoothing=tuple(engine_cfg.smoothing),
            step_size=engine_cfg.step_size,
            threads=engine_cfg.threads,
            extra_args=tuple(engine_cfg.extra_args),
        )


@dataclass
class ImagePair:
    """One weighted fixed/moving term of a registration objective."""
    fixed: xr.DataArray
    moving: xr.DataArray
    weight: float = 1.0


Transform = Union[np.ndarray, xr.DataArray]


@dataclass
class AffineProblem:
    pairs: List[ImagePair]
    dof: Dof
    init: InitMode
    init_matrix: Optional[np.ndarray] = None
    params: EngineParams = field(default_factory=EngineParams)
    label: str = ""

    def __post_init__(self):
        if not self.pairs:
            raise ValueError("Registration problem needs at least one image pair")
        if self.init == InitMode.MATRIX and self.init_matrix is None:
            raise ValueError("InitMode.MATRIX requires init_matrix")


@dataclass
class DeformableProblem:
    """Dense registration on top of fixed moving-side pre-transforms.

    ``initial_warp`` seeds the optimization; None starts from identity.
    """
    pairs: List[ImagePair]
    pre_transforms: List[np.ndarray] = field(default_factory=list)
    initial_warp: Optional[xr.DataArray] = None
    params: EngineParams = field(default_factory=EngineParams)
    label: str = ""

    def __post_init__(self):
        if not self.pairs:
            raise ValueError("Registration problem needs at least one image pair")


@dataclass
class ResliceProblem:
    """Resample ``moving`` onto the grid of ``reference`` through ``transforms``.

    Transforms are listed in the engine's chain order.
    """
    reference: xr.DataArray
    moving: xr.DataArray
    transforms: List[Transform] = field(default_factory=list)
    interpolation: str = "linear"
    label: str = ""


_REPORT_RE = re.compile(
    r"Metric\s*=\s*(?P<total>[-+0-9.eEinfa]+)\s*(?:Components\s*=\s*\[(?P<components>[^\]]*)\])?"
)


@dataclass(frozen=True)
class MetricReport:
    """Total objective value and one value per image pair, in pair order."""
    total: float
    components: Tuple[float, ...] = ()

    def format(self) -> str:
        # repr keeps every digit so that parse(format()) is exact
        comps = " ".join(repr(float(c)) for c in self.components)
        return f"Metric = {float(self.total)!r}  Components = [{comps}]"

    @classmethod
    def parse(cls, text: str) -> "MetricReport":
        """Inverse of :meth:`format`.

        Raises
        ------
        ValueError
            If ``text`` holds no metric report.
        """
        match = _REPORT_RE.search(text)
        if match is None:
            raise ValueError(f"No metric report in '{text.strip()[:80]}'")
        comps = match.group("components") or ""
        return cls(float(match.group("total")), tuple(float(c) for c in comps.split()))


@dataclass
class AffineResult:
    matrix: np.ndarray
    report: MetricReport


@dataclass
class DeformableResult:
    warp: xr.DataArray
    report: MetricReport


class RegistrationEngine(ABC):
    """External collaborator performing the image-similarity optimization.

    Implementations block until the run completes and raise
    :class:`~histostack.contracts.RegistrationEngineFailure` on any failure.
    """

    @abstractmethod
    def run_affine(self, problem: AffineProblem) -> AffineResult:
        pass

    @abstractmethod
    def run_deformable(self, problem: DeformableProblem) -> DeformableResult:
        pass

    @abstractmethod
    def run_reslice(self, problem: ResliceProblem) -> xr.DataArray:
        pass

