"""InternalConfig: Authoritative runtime configuration.

This is the ONLY config schema that runtime code sees. It is fully validated,
normalized, and contains NO optional fields that processing code depends on
(thresholds are the exception: None there means the gate is off).
"""

from typing import Optional

from pydantic import ConfigDict, Field, field_validator

from dicflow.core.fields import (
    CorrelationRoutine,
    InitializationMethod,
    OptimizationMethod,
    ProjectionMethod,
)
from dicflow.schemas.base import DicBaseModel
from dicflow.schemas.param import ImageRotation, LogLevel, MotionWindowParams, normalize_threshold


# =============================================================================
# Nested Configuration Models (Runtime)
# =============================================================================

class InternalImagesConfig(DicBaseModel):
    """Runtime image configuration."""
    ref_rotation: ImageRotation
    def_rotation: ImageRotation
    compute_ref_gradients: bool
    compute_def_gradients: bool


class InternalSolverConfig(DicBaseModel):
    """Runtime solver configuration."""
    optimization_method: OptimizationMethod
    correlation_routine: CorrelationRoutine
    projection_method: ProjectionMethod


class InternalInitializationConfig(DicBaseModel):
    """Runtime initialization configuration."""
    method: InitializationMethod
    path_files: dict[int, str]
    path_neighbors: int = Field(ge=1)


class InternalThresholdsConfig(DicBaseModel):
    """Runtime quality gates (None = disabled)."""
    initial_gamma: Optional[float]
    final_gamma: Optional[float]
    path_distance: Optional[float]
    skip_solve_gamma: Optional[float]

    @field_validator("initial_gamma", "final_gamma", "path_distance", "skip_solve_gamma", mode="before")
    @classmethod
    def disable_negative_one(cls, v):
        return normalize_threshold(v)


class InternalSubsetsConfig(DicBaseModel):
    """Runtime per-point settings."""
    use_subset_evolution: bool
    skip_solve: dict[int, bool]
    motion_windows: dict[int, MotionWindowParams]


class InternalObstructionConfig(DicBaseModel):
    """Runtime obstruction settings."""
    skin_factor: float = Field(gt=0)


class InternalOutputConfig(DicBaseModel):
    """Runtime output configuration."""
    fields: Optional[dict[str, int]]
    delimiter: str = Field(min_length=1)
    omit_row_id: bool

    model_config = DicBaseModel.model_config.copy()
    model_config.update({"str_strip_whitespace": False})


class InternalLoggingConfig(DicBaseModel):
    """Runtime logging configuration."""
    level: LogLevel
    log_file: Optional[str]


# =============================================================================
# Main InternalConfig
# =============================================================================

class InternalConfig(DicBaseModel):
    """Authoritative runtime configuration.

    This is the ONLY configuration schema that processing code sees.
    It is fully validated and immutable.

    Usage
    -----
    Runtime modules receive InternalConfig and access fields directly:

        def __init__(self, config: InternalConfig):
            self.final_gamma = config.thresholds.final_gamma  # NOT .get()
            self.method = config.initialization.method

    Rules
    -----
    - NO .get() calls
    - NO fallback defaults
    - NO validation

    All of that happens during config resolution, not in runtime code.
    """

    images: InternalImagesConfig
    solver: InternalSolverConfig
    initialization: InternalInitializationConfig
    thresholds: InternalThresholdsConfig
    subsets: InternalSubsetsConfig
    obstruction: InternalObstructionConfig
    output: InternalOutputConfig
    logging: InternalLoggingConfig
    post_processors: list[str]

    model_config = ConfigDict(
        extra='forbid',
        validate_assignment=True,
        use_enum_values=True,
        str_strip_whitespace=True,
        frozen=True,  # Immutable after construction
    )
