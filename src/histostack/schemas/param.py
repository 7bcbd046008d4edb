"""ParamConfig: Expert defaults for the histostack pipeline.

This module defines the complete default configuration. ALL pipeline
parameters must have defaults here. No runtime code should define fallback
values - this is the single source of truth for defaults.

Runtime code NEVER reads from ParamConfig directly - it only receives InternalConfig.
"""

from typing import Literal, Optional
from pydantic import Field, field_validator, model_validator
from histostack.schemas.base import HistostackBaseModel


InitMode = Literal["moments", "image_centers"]


# =============================================================================
# Nested Configuration Models
# =============================================================================

class ProjectConfig(HistostackBaseModel):
    """Project-wide settings."""
    image_ext: str = Field("nii.gz", min_length=1, description="Extension for images written to the project")
    reuse: bool = Field(False, description="Trust existing checkpoint files instead of recomputing")

    @field_validator("image_ext", mode="before")
    @classmethod
    def strip_leading_dot(cls, v):
        """Accept '.nii.gz' as well as 'nii.gz'."""
        if isinstance(v, str):
            return v.strip().lstrip(".")
        return v


class CacheConfig(HistostackBaseModel):
    """Bounded image cache limits. Zero disables a limit."""
    max_items: int = Field(20, ge=0)
    max_bytes: int = Field(0, ge=0)


class ReconConfig(HistostackBaseModel):
    """Stack reconstruction settings."""
    z_range: float = Field(0.0, ge=0, description="Connect slices closer than this in z")
    z_epsilon: float = Field(0.1, ge=0, description="Per-unit-z penalty on edge weights")
    pairwise_init: InitMode = "moments"
    reslice: bool = Field(True, description="Write root-space reslices of every slice")

    @field_validator("z_range", "z_epsilon", mode="before")
    @classmethod
    def coerce_to_float(cls, v):
        """Allow int or float."""
        return float(v)


class VolMatchConfig(HistostackBaseModel):
    """Volume matching settings."""
    sampling: Literal["linear", "nearest"] = "linear"
    init: InitMode = "moments"


class VolIterConfig(HistostackBaseModel):
    """Iterative volume refinement settings."""
    n_affine: int = Field(5, ge=0)
    n_deform: int = Field(5, ge=0)
    w_volume: float = Field(4.0, gt=0)
    i_first: Optional[int] = None
    i_last: Optional[int] = None
    seed: Optional[int] = Field(None, ge=0, description="Seed for the slice visitation shuffle")

    @model_validator(mode="after")
    def require_some_iterations(self):
        """At least one iteration must exist."""
        if self.n_affine + self.n_deform < 1:
            raise ValueError("n_affine + n_deform must be at least 1")
        return self


class EngineConfig(HistostackBaseModel):
    """Registration engine settings passed through to every run."""
    executable: str = "greedy"
    threads: Optional[int] = Field(None, ge=1)
    metric: Literal["NCC", "WNCC", "SSD", "MI", "NMI"] = "NCC"
    metric_radius: tuple[int, int] = (4, 4)
    iterations: str = Field("100x50x10", pattern=r"^\d+(x\d+)*$")
    smoothing: tuple[str, str] = ("2.0vox", "0.5vox")
    step_size: float = Field(0.25, gt=0)
    extra_args: list[str] = Field(default_factory=list)

    @field_validator("metric", mode="before")
    @classmethod
    def normalize_metric_name(cls, v):
        """Normalize metric names to uppercase."""
        if isinstance(v, str):
            return v.upper().strip()
        return v


class VisualizationConfig(HistostackBaseModel):
    """QC plot settings."""
    enabled: bool = True
    dpi: int = Field(150, ge=50)
    figsize: tuple[float, float] = (10.0, 6.0)
    output_format: Literal["png", "pdf", "jpeg"] = "png"
    montage_columns: int = Field(6, ge=1)


class LoggingConfig(HistostackBaseModel):
    """Logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


# =============================================================================
# Main ParamConfig
# =============================================================================

class ParamConfig(HistostackBaseModel):
    """Complete expert configuration with all defaults.

    This is the single source of truth for all pipeline parameters.
    Every tunable parameter MUST have a default here.

    Usage
    -----
    This config is NOT used directly by runtime code. It serves as the
    base layer in config resolution:

        internal_cfg = resolve_config(param_cfg, user_cfg, cli_cfg)

    Runtime code only sees InternalConfig.
    """

    project_dir: Optional[str] = None
    project: ProjectConfig = Field(default_factory=ProjectConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    recon: ReconConfig = Field(default_factory=ReconConfig)
    volmatch: VolMatchConfig = Field(default_factory=VolMatchConfig)
    voliter: VolIterConfig = Field(default_factory=VolIterConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    visualization: VisualizationConfig = Field(default_factory=VisualizationConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
