"""ParamConfig: Expert defaults for the dicflow engine.

This module defines the complete default configuration. ALL engine
parameters must have defaults here. No runtime code should define
fallback values - this is the single source of truth for defaults.

Runtime code NEVER reads from ParamConfig directly - it only receives InternalConfig.
"""

from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator

from dicflow.core.fields import (
    CorrelationRoutine,
    InitializationMethod,
    OptimizationMethod,
    ProjectionMethod,
)
from dicflow.schemas.base import DicBaseModel

ImageRotation = Literal[0, 90, 180, 270]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def normalize_threshold(v):
    """-1 (the conventional 'off' value) and None both mean disabled."""
    if v is None:
        return None
    v = float(v)
    if v == -1.0:
        return None
    if v < 0.0:
        raise ValueError(f"Threshold must be non-negative or -1 (disabled), got {v}")
    return v


# =============================================================================
# Nested Configuration Models
# =============================================================================

class MotionWindowParams(DicBaseModel):
    """Window of the deformed image tested for motion before a point is solved.

    A point may borrow another point's window by setting ``use_subset_id``;
    the window geometry is then taken from that point's entry.
    """
    origin_x: int = Field(0, ge=0)
    origin_y: int = Field(0, ge=0)
    width: int = Field(0, ge=0)
    height: int = Field(0, ge=0)
    tol: float = Field(0.0, ge=0)
    use_subset_id: int = Field(-1, ge=-1)

    @model_validator(mode="after")
    def require_window_geometry(self):
        """A window that does not borrow must have a non-empty area."""
        if self.use_subset_id == -1 and (self.width <= 0 or self.height <= 0):
            raise ValueError(
                f"Motion window needs positive width and height, got {self.width}x{self.height}"
            )
        return self


class ImagesConfig(DicBaseModel):
    """Image rotation and gradient settings."""
    ref_rotation: ImageRotation = 0
    def_rotation: ImageRotation = 0
    compute_ref_gradients: bool = False
    compute_def_gradients: bool = False


class SolverConfig(DicBaseModel):
    """Optimizer and correlation routine selection."""
    optimization_method: OptimizationMethod = OptimizationMethod.GRADIENT_BASED
    correlation_routine: CorrelationRoutine = CorrelationRoutine.GENERIC
    projection_method: ProjectionMethod = ProjectionMethod.DISPLACEMENT_BASED

    @field_validator("optimization_method", "correlation_routine", "projection_method", mode="before")
    @classmethod
    def normalize_method_name(cls, v):
        """Normalize method names to lowercase."""
        if isinstance(v, str):
            return v.lower().strip()
        return v


class InitializationConfig(DicBaseModel):
    """Initial guess strategy."""
    method: InitializationMethod = InitializationMethod.USE_FIELD_VALUES
    path_files: dict[int, str] = Field(default_factory=dict)
    path_neighbors: int = Field(6, ge=1, description="Nearest path triads searched locally")

    @field_validator("method", mode="before")
    @classmethod
    def normalize_method_name(cls, v):
        """Normalize method names to lowercase."""
        if isinstance(v, str):
            return v.lower().strip()
        return v


class ThresholdsConfig(DicBaseModel):
    """Quality gates; None disables a gate."""
    initial_gamma: Optional[float] = None
    final_gamma: Optional[float] = None
    path_distance: Optional[float] = None
    skip_solve_gamma: Optional[float] = None

    @field_validator("initial_gamma", "final_gamma", "path_distance", "skip_solve_gamma", mode="before")
    @classmethod
    def disable_negative_one(cls, v):
        return normalize_threshold(v)


class SubsetsConfig(DicBaseModel):
    """Per-point behavior keyed by point id."""
    use_subset_evolution: bool = False
    skip_solve: dict[int, bool] = Field(default_factory=dict)
    motion_windows: dict[int, MotionWindowParams] = Field(default_factory=dict)


class ObstructionConfig(DicBaseModel):
    """Obstruction mask settings."""
    skin_factor: float = Field(1.0, gt=0, description="Scale applied to a blocker's shape")


class OutputConfig(DicBaseModel):
    """Result export settings.

    ``fields`` maps a field name to its column index; None selects the
    default column list.
    """
    fields: Optional[dict[str, int]] = None
    delimiter: str = Field(",", min_length=1)
    omit_row_id: bool = False

    model_config = DicBaseModel.model_config.copy()
    model_config.update({"str_strip_whitespace": False})  # tab and space delimiters


class LoggingConfig(DicBaseModel):
    """Logging configuration."""
    level: LogLevel = "INFO"
    log_file: Optional[str] = None

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v):
        if isinstance(v, str):
            return v.upper().strip()
        return v


# =============================================================================
# Main ParamConfig
# =============================================================================

class ParamConfig(DicBaseModel):
    """Complete expert configuration with all defaults.

    This is the single source of truth for all engine parameters.
    Every tunable parameter MUST have a default here.

    Usage
    -----
    This config is NOT used directly by runtime code. It serves as the
    base layer in config resolution:

        internal_cfg = resolve_config(param_cfg, user_cfg)

    Runtime code only sees InternalConfig.
    """

    images: ImagesConfig = Field(default_factory=ImagesConfig)
    solver: SolverConfig = Field(default_factory=SolverConfig)
    initialization: InitializationConfig = Field(default_factory=InitializationConfig)
    thresholds: ThresholdsConfig = Field(default_factory=ThresholdsConfig)
    subsets: SubsetsConfig = Field(default_factory=SubsetsConfig)
    obstruction: ObstructionConfig = Field(default_factory=ObstructionConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    post_processors: list[str] = Field(default_factory=list)
