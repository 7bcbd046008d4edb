"""CLIConfig: Command-line operational overrides.

Configuration for the parameters each stage command accepts: project
directory, reuse flag, reconstruction range, iteration schedule, engine
threads and verbosity.

This schema handles command-line arguments parsed by argparse.
"""

from typing import Literal, Optional
from pydantic import model_validator
from histostack.schemas.base import HistostackBaseModel


class CLIConfig(HistostackBaseModel):
    """Command-line configuration overrides.

    Highest priority in config resolution.

    Notes
    -----
    An iteration range is given as a pair; supplying only one end is
    rejected here rather than in runtime code.

    Usage
    -----
        cli_cfg = CLIConfig(
            project_dir="/scratch/stack01",
            reuse=True,
            z_range=2.0,
            z_epsilon=0.1,
        )

        internal = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    project_dir: Optional[str] = None
    reuse: Optional[bool] = None
    image_ext: Optional[str] = None
    z_range: Optional[float] = None
    z_epsilon: Optional[float] = None
    n_affine: Optional[int] = None
    n_deform: Optional[int] = None
    w_volume: Optional[float] = None
    i_first: Optional[int] = None
    i_last: Optional[int] = None
    seed: Optional[int] = None
    threads: Optional[int] = None
    metric: Optional[str] = None
    iterations: Optional[str] = None
    log_level: Optional[Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]] = None

    @model_validator(mode="after")
    def require_complete_range(self):
        """Iteration range bounds come together."""
        if (self.i_first is None) != (self.i_last is None):
            raise ValueError("iteration range needs both first and last")
        return self

    def to_internal_overrides(self) -> dict:
        """Convert CLI config to internal config structure.

        Returns
        -------
        dict
            Nested dictionary matching InternalConfig structure
        """
        overrides = {}

        if self.project_dir is not None:
            overrides["project_dir"] = str(self.project_dir)

        project = {}
        if self.reuse is not None:
            project["reuse"] = self.reuse
        if self.image_ext is not None:
            project["image_ext"] = self.image_ext
        if project:
            overrides["project"] = project

        recon = {}
        if self.z_range is not None:
            recon["z_range"] = self.z_range
        if self.z_epsilon is not None:
            recon["z_epsilon"] = self.z_epsilon
        if recon:
            overrides["recon"] = recon

        voliter = {}
        for key in ("n_affine", "n_deform", "w_volume", "i_first", "i_last", "seed"):
            value = getattr(self, key)
            if value is not None:
                voliter[key] = value
        if voliter:
            overrides["voliter"] = voliter

        engine = {}
        if self.threads is not None:
            engine["threads"] = self.threads
        if self.metric is not None:
            engine["metric"] = self.metric
        if self.iterations is not None:
            engine["iterations"] = self.iterations
        if engine:
            overrides["engine"] = engine

        if self.log_level is not None:
            overrides["logging"] = {"level": self.log_level}

        return overrides
