"""UserConfig: Forgiving, minimal user-facing configuration.

This schema accepts user inputs with aliases for the common knobs
(e.g., Z_RANGE -> recon.z_range, N_AFFINE -> voliter.n_affine).

UserConfig is intentionally minimal - users only specify what they want
to override from the expert defaults. Validation is lenient to accept
both uppercase and lowercase keys, integers where floats are expected, etc.
"""

from typing import Any, Literal, Optional
from pydantic import Field, field_validator
from histostack.schemas.base import HistostackBaseModel


class UserReconConfig(HistostackBaseModel):
    """User-facing reconstruction config."""
    z_range: Optional[float] = None
    z_epsilon: Optional[float] = None
    pairwise_init: Optional[str] = None
    reslice: Optional[bool] = None

    @field_validator("pairwise_init", mode="before")
    @classmethod
    def normalize_init(cls, v):
        """Normalize init mode names to lowercase."""
        if isinstance(v, str):
            return v.lower().strip()
        return v


class UserVolIterConfig(HistostackBaseModel):
    """User-facing iteration config."""
    n_affine: Optional[int] = None
    n_deform: Optional[int] = None
    w_volume: Optional[float] = None
    i_first: Optional[int] = None
    i_last: Optional[int] = None
    seed: Optional[int] = None


class UserEngineConfig(HistostackBaseModel):
    """User-facing engine config."""
    executable: Optional[str] = None
    threads: Optional[int] = None
    metric: Optional[str] = None
    metric_radius: Optional[tuple[int, int]] = None
    iterations: Optional[str] = None
    smoothing: Optional[tuple[str, str]] = None
    step_size: Optional[float] = None
    extra_args: Optional[list[str]] = None


class UserConfig(HistostackBaseModel):
    """User-facing configuration schema.

    Minimal, forgiving, and uses common aliases. Users only specify
    what they want to override from ParamConfig defaults.

    Usage
    -----
        user_cfg = UserConfig(
            project_dir="/data/stack01",
            z_range=2.0,
            n_affine=3,
        )

        internal = resolve_config(param_cfg, user_cfg, cli_cfg)
    """

    project_dir: Optional[str] = Field(None, alias="PROJECT_DIR")
    image_ext: Optional[str] = Field(None, alias="IMAGE_EXT")
    reuse: Optional[bool] = Field(None, alias="REUSE")

    # Cache limits
    cache_max_items: Optional[int] = Field(None, alias="CACHE_MAX_ITEMS")
    cache_max_bytes: Optional[int] = Field(None, alias="CACHE_MAX_BYTES")

    # Reconstruction (flat aliases)
    z_range: Optional[float] = Field(None, alias="Z_RANGE")
    z_epsilon: Optional[float] = Field(None, alias="Z_EPSILON")

    # Volume matching
    volume_sampling: Optional[Literal["linear", "nearest"]] = Field(None, alias="VOLUME_SAMPLING")

    # Iterations (flat aliases)
    n_affine: Optional[int] = Field(None, alias="N_AFFINE")
    n_deform: Optional[int] = Field(None, alias="N_DEFORM")
    w_volume: Optional[float] = Field(None, alias="W_VOLUME")
    seed: Optional[int] = Field(None, alias="SEED")

    # Engine (flat aliases)
    threads: Optional[int] = Field(None, alias="THREADS")
    metric: Optional[str] = Field(None, alias="METRIC")
    iterations: Optional[str] = Field(None, alias="ITERATIONS")

    log_level: Optional[str] = Field(None, alias="LOG_LEVEL")
    plots: Optional[bool] = Field(None, alias="PLOTS")

    # Nested overrides (advanced users)
    recon: Optional[UserReconConfig] = None
    voliter: Optional[UserVolIterConfig] = None
    engine: Optional[UserEngineConfig] = None
    visualization: Optional[dict[str, Any]] = None

    model_config = HistostackBaseModel.model_config.copy()
    # Allow forgiving input dictionaries (ignore unknown legacy keys)
    model_config.update({"populate_by_name": True, "extra": "ignore"})

    @field_validator("z_range", "z_epsilon", "w_volume", mode="before")
    @classmethod
    def coerce_numeric_fields(cls, v):
        """Accept int or float for numeric fields."""
        if v is not None:
            return float(v)
        return v

    @field_validator("log_level", "metric", mode="before")
    @classmethod
    def normalize_upper(cls, v):
        """Normalize level and metric names to uppercase."""
        if isinstance(v, str):
            return v.upper().strip()
        return v

    def to_internal_overrides(self) -> dict:
        """Convert flat UserConfig to nested InternalConfig structure.

        Returns
        -------
        dict
            Nested dictionary matching InternalConfig structure
        """
        overrides = {}

        if self.project_dir is not None:
            overrides["project_dir"] = str(self.project_dir)

        project = {}
        if self.image_ext is not None:
            project["image_ext"] = self.image_ext
        if self.reuse is not None:
            project["reuse"] = self.reuse
        if project:
            overrides["project"] = project

        cache = {}
        if self.cache_max_items is not None:
            cache["max_items"] = self.cache_max_items
        if self.cache_max_bytes is not None:
            cache["max_bytes"] = self.cache_max_bytes
        if cache:
            overrides["cache"] = cache

        # Recon section
        recon = {}
        if self.z_range is not None:
            recon["z_range"] = self.z_range
        if self.z_epsilon is not None:
            recon["z_epsilon"] = self.z_epsilon
        if self.recon is not None:
            recon.update(self.recon.model_dump(exclude_none=True))
        if recon:
            overrides["recon"] = recon

        if self.volume_sampling is not None:
            overrides["volmatch"] = {"sampling": self.volume_sampling}

        # Voliter section
        voliter = {}
        if self.n_affine is not None:
            voliter["n_affine"] = self.n_affine
        if self.n_deform is not None:
            voliter["n_deform"] = self.n_deform
        if self.w_volume is not None:
            voliter["w_volume"] = self.w_volume
        if self.seed is not None:
            voliter["seed"] = self.seed
        if self.voliter is not None:
            voliter.update(self.voliter.model_dump(exclude_none=True))
        if voliter:
            overrides["voliter"] = voliter

        # Engine section
        engine = {}
        if self.threads is not None:
            engine["threads"] = self.threads
        if self.metric is not None:
            engine["metric"] = self.metric
        if self.iterations is not None:
            engine["iterations"] = self.iterations
        if self.engine is not None:
            engine.update(self.engine.model_dump(exclude_none=True))
        if engine:
            overrides["engine"] = engine

        visualization = dict(self.visualization or {})
        if self.plots is not None:
            visualization["enabled"] = self.plots
        if visualization:
            overrides["visualization"] = visualization

        if self.log_level is not None:
            overrides["logging"] = {"level": self.log_level}

        return overrides
