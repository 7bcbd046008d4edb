"""Registration engine backed by the ``greedy`` command-line tool.

Each call writes its in-memory inputs to a scratch directory, runs one
``greedy -d 2`` process and reads the outputs back. The metric report is
parsed from the last iteration line greedy prints, which has the form::

    Lev: 2  Itr:   10  Met:[-0.8123  -0.0512  -0.0498]  Tot: -0.9133

``Met`` lists one value per image pair, ``Tot`` the weighted total. When
``Tot`` is absent the components are summed.
"""

import logging
import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np
import xarray as xr

from histostack.contracts import RegistrationEngineFailure
from histostack.engine.base import (
    AffineProblem,
    AffineResult,
    DeformableProblem,
    DeformableResult,
    Dof,
    EngineParams,
    InitMode,
    MetricReport,
    RegistrationEngine,
    ResliceProblem,
)
from histostack.project.io import read_affine_matrix, read_image, write_affine_matrix, write_image

__all__ = ['GreedyEngine', 'parse_greedy_metric']

logger = logging.getLogger(__name__)

_MET_RE = re.compile(r"Met:\s*\[(?P<components>[^\]]*)\](?:\s*Tot:\s*(?P<total>\S+))?")

_DOF_ARGS = {Dof.RIGID: "6", Dof.AFFINE: "12"}


def parse_greedy_metric(output: str) -> MetricReport:
    """Metric report from the last iteration line of greedy's output.

    Raises
    ------
    ValueError
        If no iteration line is present.
    """
    matches = list(_MET_RE.finditer(output))
    if not matches:
        raise ValueError("greedy output holds no metric line")
    last = matches[-1]
    components = tuple(float(c) for c in last.group("components").split())
    total = float(last.group("total")) if last.group("total") else float(sum(components))
    return MetricReport(total, components)


class _Scratch:
    """Scratch directory that writes each in-memory object once."""

    def __init__(self, root: Path, ext: str):
        self.root = root
        self.ext = ext
        self._written: Dict[int, str] = {}
        self._count = 0

    def _name(self, prefix: str, ext: str) -> Path:
        self._count += 1
        return self.root / f"{prefix}_{self._count:03d}.{ext}"

    def image(self, image: xr.DataArray, prefix: str) -> str:
        key = id(image)
        if key not in self._written:
            path = self._name(prefix, self.ext)
            write_image(image, path)
            self._written[key] = str(path)
        return self._written[key]

    def matrix(self, matrix: np.ndarray, prefix: str) -> str:
        path = self._name(prefix, "mat")
        write_affine_matrix(path, matrix)
        return str(path)

    def transform(self, transform, prefix: str) -> str:
        if isinstance(transform, xr.DataArray):
            return self.image(transform, prefix)
        return self.matrix(np.asarray(transform), prefix)

    def output(self, prefix: str, ext: Optional[str] = None) -> Path:
        return self._name(prefix, ext or self.ext)


class GreedyEngine(RegistrationEngine):
    """Drives ``greedy`` through ``subprocess``.

    Parameters
    ----------
    executable : str, optional
        Name or path of the greedy binary.
    scratch_dir : str or Path, optional
        Parent for per-call scratch directories (system temp by default).
    keep_scratch : bool, optional
        Leave scratch directories behind for debugging.
    """

    def __init__(self, executable: str = "greedy", scratch_dir=None,
                 keep_scratch: bool = False, image_ext: str = "nii.gz"):
        self.executable = executable
        self.scratch_dir = scratch_dir
        self.keep_scratch = keep_scratch
        self.image_ext = image_ext

    @classmethod
    def from_config(cls, engine_cfg, **kwargs) -> "GreedyEngine":
        return cls(executable=engine_cfg.executable, **kwargs)

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    # ------------------------------------------------------------------
    # Command assembly
    # ------------------------------------------------------------------

    def _metric_args(self, params: EngineParams) -> List[str]:
        args = ["-m", params.metric]
        if params.metric in ("NCC", "WNCC"):
            args.append("x".join(str(r) for r in params.metric_radius))
        args += ["-n", params.iterations]
        if params.threads is not None:
            args += ["-threads", str(params.threads)]
        return args

    def _pair_args(self, problem, scratch: _Scratch) -> List[str]:
        args = []
        for k, pair in enumerate(problem.pairs):
            args += [
                "-w", repr(float(pair.weight)),
                "-i", scratch.image(pair.fixed, f"fixed{k}"), scratch.image(pair.moving, "moving"),
            ]
        return args

    def _init_args(self, problem: AffineProblem, scratch: _Scratch) -> List[str]:
        if problem.init == InitMode.MOMENTS:
            return ["-ia-moments", "1"]
        if problem.init == InitMode.IMAGE_CENTERS:
            return ["-ia-image-centers"]
        return ["-ia", scratch.matrix(problem.init_matrix, "init")]

    def _run(self, args: List[str], label: str) -> str:
        logger.debug("Running: %s", " ".join(args))
        try:
            result = subprocess.run(args, capture_output=True, text=True, check=True)
        except FileNotFoundError:
            raise RegistrationEngineFailure(
                f"Registration engine not found: {self.executable} ({label})", command=args
            ) from None
        except subprocess.CalledProcessError as err:
            raise RegistrationEngineFailure(
                f"greedy exited with status {err.returncode} for {label}",
                command=args,
                stderr=err.stderr or "",
            ) from err
        return result.stdout

    def _report(self, output: str, args: List[str], label: str) -> MetricReport:
        try:
            return parse_greedy_metric(output)
        except ValueError as err:
            raise RegistrationEngineFailure(f"{err} ({label})", command=args) from err

    def _scratch(self):
        return tempfile.TemporaryDirectory(prefix="histostack_", dir=self.scratch_dir)

    def _scratch_root(self, tmp: str) -> Path:
        if self.keep_scratch:
            kept = Path(tempfile.mkdtemp(prefix="histostack_keep_", dir=self.scratch_dir))
            logger.info("Keeping engine scratch files in %s", kept)
            return kept
        return Path(tmp)

    # ------------------------------------------------------------------
    # RegistrationEngine interface
    # ------------------------------------------------------------------

    def run_affine(self, problem: AffineProblem) -> AffineResult:
        with self._scratch() as tmp:
            scratch = _Scratch(self._scratch_root(tmp), self.image_ext)
            out = scratch.output("affine", "mat")
            args = [self.executable, "-d", "2", "-a", "-dof", _DOF_ARGS[Dof(problem.dof)]]
            args += self._pair_args(problem, scratch)
            args += self._init_args(problem, scratch)
            args += self._metric_args(problem.params)
            args += list(problem.params.extra_args)
            args += ["-o", str(out)]

            output = self._run(args, problem.label)
            report = self._report(output, args, problem.label)
            if not out.exists():
                raise RegistrationEngineFailure(f"greedy wrote no matrix for {problem.label}", command=args)
            return AffineResult(read_affine_matrix(out), report)

    def run_deformable(self, problem: DeformableProblem) -> DeformableResult:
        params = problem.params
        with self._scratch() as tmp:
            scratch = _Scratch(self._scratch_root(tmp), self.image_ext)
            out = scratch.output("warp")
            args = [self.executable, "-d", "2"]
            args += self._pair_args(problem, scratch)
            if problem.pre_transforms:
                args.append("-it")
                args += [scratch.matrix(m, "pre") for m in problem.pre_transforms]
            if problem.initial_warp is not None:
                args += ["-id", scratch.image(problem.initial_warp, "seed")]
            args += self._metric_args(params)
            args += ["-s", params.smoothing[0], params.smoothing[1], "-e", repr(params.step_size)]
            args += list(params.extra_args)
            args += ["-o", str(out)]

            output = self._run(args, problem.label)
            report = self._report(output, args, problem.label)
            if not out.exists():
                raise RegistrationEngineFailure(f"greedy wrote no warp for {problem.label}", command=args)
            return DeformableResult(read_image(out), report)

    def run_reslice(self, problem: ResliceProblem) -> xr.DataArray:
        with self._scratch() as tmp:
            scratch = _Scratch(self._scratch_root(tmp), self.image_ext)
            out = scratch.output("reslice")
            args = [
                self.executable, "-d", "2",
                "-rf", scratch.image(problem.reference, "reference"),
                "-ri", problem.interpolation.upper(),
                "-rm", scratch.image(problem.moving, "moving"), str(out),
            ]
            if problem.transforms:
                args.append("-r")
                args += [scratch.transform(t, "xform") for t in problem.transforms]

            self._run(args, problem.label)
            if not out.exists():
                raise RegistrationEngineFailure(f"greedy wrote no reslice for {problem.label}", command=args)
            return read_image(out)
