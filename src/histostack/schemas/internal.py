"""InternalConfig: Authoritative runtime configuration.

This is the ONLY config schema that runtime code sees. It is fully validated,
normalized, and contains NO optional fields that processing code depends on.

All .get() calls, fallback defaults, and validation logic are FORBIDDEN in
runtime code - everything is explicit here.
"""

from typing import Literal, Optional
from pydantic import ConfigDict, Field
from histostack.schemas.base import HistostackBaseModel


# =============================================================================
# Nested Configuration Models (Runtime)
# =============================================================================

class InternalProjectConfig(HistostackBaseModel):
    """Runtime project settings."""
    image_ext: str
    reuse: bool


class InternalCacheConfig(HistostackBaseModel):
    """Runtime cache limits."""
    max_items: int = Field(ge=0)
    max_bytes: int = Field(ge=0)


class InternalReconConfig(HistostackBaseModel):
    """Runtime reconstruction settings."""
    z_range: float = Field(ge=0)
    z_epsilon: float = Field(ge=0)
    pairwise_init: Literal["moments", "image_centers"]
    reslice: bool


class InternalVolMatchConfig(HistostackBaseModel):
    """Runtime volume matching settings."""
    sampling: Literal["linear", "nearest"]
    init: Literal["moments", "image_centers"]


class InternalVolIterConfig(HistostackBaseModel):
    """Runtime iteration settings.

    Note: i_first and i_last stay optional; a missing range means the full
    schedule ``[1, n_affine + n_deform]``. Range validation against the
    schedule happens when the loop starts so that the error names the
    offending bounds.
    """
    n_affine: int = Field(ge=0)
    n_deform: int = Field(ge=0)
    w_volume: float = Field(gt=0)
    i_first: Optional[int]
    i_last: Optional[int]
    seed: Optional[int]


class InternalEngineConfig(HistostackBaseModel):
    """Runtime engine settings."""
    executable: str
    threads: Optional[int]
    metric: Literal["NCC", "WNCC", "SSD", "MI", "NMI"]
    metric_radius: tuple[int, int]
    iterations: str
    smoothing: tuple[str, str]
    step_size: float
    extra_args: list[str]


class InternalVisualizationConfig(HistostackBaseModel):
    """Runtime visualization settings."""
    enabled: bool
    dpi: int
    figsize: tuple[float, float]
    output_format: Literal["png", "pdf", "jpeg"]
    montage_columns: int


class InternalLoggingConfig(HistostackBaseModel):
    """Runtime logging configuration."""
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


class InternalLedgerConfig(HistostackBaseModel):
    """Runtime ledger configuration."""
    db_filename: str = Field(default="ledger.db")


# =============================================================================
# Main InternalConfig
# =============================================================================

class InternalConfig(HistostackBaseModel):
    """Authoritative runtime configuration.

    This is the ONLY configuration schema that processing code sees.
    It is fully validated, immutable, and contains explicit values for
    all parameters (no None for fields that runtime depends on).

    Usage
    -----
    Runtime modules receive InternalConfig and access fields directly:

        def __init__(self, config: InternalConfig):
            self.z_range = config.recon.z_range  # NOT .get()

    Rules
    -----
    - NO .get() calls
    - NO fallback defaults
    - NO validation

    All of that happens during config resolution, not in runtime code.
    """

    project_dir: Optional[str]
    project: InternalProjectConfig
    cache: InternalCacheConfig
    recon: InternalReconConfig
    volmatch: InternalVolMatchConfig
    voliter: InternalVolIterConfig
    engine: InternalEngineConfig
    visualization: InternalVisualizationConfig
    logging: InternalLoggingConfig
    ledger: InternalLedgerConfig = Field(default_factory=InternalLedgerConfig)

    model_config = ConfigDict(
        extra='forbid',
        validate_assignment=True,
        use_enum_values=True,
        str_strip_whitespace=True,
        frozen=True,  # Immutable after construction
    )
