"""UserConfig: flat, user-facing key/value configuration.

Users specify only what they want to override from the expert defaults,
using the flat parameter names of a correlation input deck
(``optimization_method``, ``initial_gamma_threshold``, ...). Keys are
matched case-insensitively, but unlike most of the layered schemas an
unknown key is a fatal error: a misspelled threshold would otherwise
silently disable a quality gate.
"""

from typing import Any, Optional

from pydantic import Field, field_validator, model_validator

from dicflow.core.fields import (
    CorrelationRoutine,
    InitializationMethod,
    OptimizationMethod,
    ProjectionMethod,
)
from dicflow.schemas.base import DicBaseModel
from dicflow.schemas.param import ImageRotation, LogLevel, MotionWindowParams

__all__ = ['UserConfig', 'valid_parameter_names']

_ROTATION_FLAGS = {
    "rotate_ref_image_90": ("ref_image_rotation", 90),
    "rotate_ref_image_180": ("ref_image_rotation", 180),
    "rotate_ref_image_270": ("ref_image_rotation", 270),
    "rotate_def_image_90": ("def_image_rotation", 90),
    "rotate_def_image_180": ("def_image_rotation", 180),
    "rotate_def_image_270": ("def_image_rotation", 270),
}


class UserConfig(DicBaseModel):
    """User-facing configuration schema.

    Usage
    -----
        user_cfg = UserConfig(
            optimization_method="gradient_based_then_simplex",
            initialization_method="use_field_values",
            final_gamma_threshold=0.5,
            rotate_def_image_90=True,
        )

        internal = resolve_config(param_cfg, user_cfg)
    """

    # Solver selection
    optimization_method: Optional[OptimizationMethod] = None
    initialization_method: Optional[InitializationMethod] = None
    correlation_routine: Optional[CorrelationRoutine] = None
    projection_method: Optional[ProjectionMethod] = None

    # Image rotation; the flags are folded into the *_image_rotation angles
    rotate_ref_image_90: Optional[bool] = None
    rotate_ref_image_180: Optional[bool] = None
    rotate_ref_image_270: Optional[bool] = None
    rotate_def_image_90: Optional[bool] = None
    rotate_def_image_180: Optional[bool] = None
    rotate_def_image_270: Optional[bool] = None
    ref_image_rotation: Optional[ImageRotation] = None
    def_image_rotation: Optional[ImageRotation] = None
    compute_image_gradients: Optional[bool] = None

    # Quality gates (-1 disables)
    initial_gamma_threshold: Optional[float] = None
    final_gamma_threshold: Optional[float] = None
    path_distance_threshold: Optional[float] = None
    skip_solve_gamma_threshold: Optional[float] = None

    # Per-point behavior keyed by point id
    motion_windows: Optional[dict[int, MotionWindowParams]] = None
    path_files: Optional[dict[int, str]] = None
    skip_solve: Optional[dict[int, bool]] = None
    use_subset_evolution: Optional[bool] = None
    obstruction_skin_factor: Optional[float] = Field(None, gt=0)

    # Output
    output_spec: Optional[dict[str, int]] = None
    output_delimiter: Optional[str] = None
    omit_output_row_id: Optional[bool] = None

    post_processors: Optional[list[str]] = None
    log_level: Optional[LogLevel] = None
    log_file: Optional[str] = None

    model_config = DicBaseModel.model_config.copy()
    model_config.update({"str_strip_whitespace": False})  # tab and space delimiters

    @model_validator(mode="before")
    @classmethod
    def normalize_keys(cls, data: Any):
        """Lower-case keys, reject unknown ones and fold rotation flags.

        Rotation flags are applied in input order, so the last flag set
        for an image wins.
        """
        if not isinstance(data, dict):
            return data
        normalized = {}
        for key, value in data.items():
            normalized[key.lower().strip() if isinstance(key, str) else key] = value

        unknown = [key for key in normalized if key not in cls.model_fields]
        if unknown:
            raise ValueError(
                f"Invalid parameter(s) {sorted(map(str, unknown))}. "
                f"Valid parameters: {', '.join(valid_parameter_names())}"
            )

        for key, value in list(normalized.items()):
            if key in _ROTATION_FLAGS and value:
                target, angle = _ROTATION_FLAGS[key]
                normalized[target] = angle
        return normalized

    @field_validator("optimization_method", "initialization_method", "correlation_routine",
                     "projection_method", mode="before")
    @classmethod
    def normalize_method_names(cls, v):
        """Normalize method names to lowercase."""
        if isinstance(v, str):
            return v.lower().strip()
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper().strip()
        return v

    @field_validator("skip_solve", mode="before")
    @classmethod
    def accept_id_list(cls, v):
        """Accept a plain list of ids as shorthand for ``{id: True}``."""
        if isinstance(v, (list, tuple, set)):
            return {int(gid): True for gid in v}
        return v

    def to_internal_overrides(self) -> dict:
        """Convert the flat UserConfig to the nested InternalConfig structure.

        Returns
        -------
        dict
            Nested dictionary matching InternalConfig structure
        """
        overrides = {}

        images = {}
        if self.ref_image_rotation is not None:
            images["ref_rotation"] = self.ref_image_rotation
        if self.def_image_rotation is not None:
            images["def_rotation"] = self.def_image_rotation
        if self.compute_image_gradients is not None:
            images["compute_ref_gradients"] = self.compute_image_gradients
            images["compute_def_gradients"] = self.compute_image_gradients
        if images:
            overrides["images"] = images

        solver = {}
        if self.optimization_method is not None:
            solver["optimization_method"] = self.optimization_method
        if self.correlation_routine is not None:
            solver["correlation_routine"] = self.correlation_routine
        if self.projection_method is not None:
            solver["projection_method"] = self.projection_method
        if solver:
            overrides["solver"] = solver

        initialization = {}
        if self.initialization_method is not None:
            initialization["method"] = self.initialization_method
        if self.path_files is not None:
            initialization["path_files"] = dict(self.path_files)
        if initialization:
            overrides["initialization"] = initialization

        # -1 passes through so it can override a non-default threshold
        thresholds = {}
        if self.initial_gamma_threshold is not None:
            thresholds["initial_gamma"] = self.initial_gamma_threshold
        if self.final_gamma_threshold is not None:
            thresholds["final_gamma"] = self.final_gamma_threshold
        if self.path_distance_threshold is not None:
            thresholds["path_distance"] = self.path_distance_threshold
        if self.skip_solve_gamma_threshold is not None:
            thresholds["skip_solve_gamma"] = self.skip_solve_gamma_threshold
        if thresholds:
            overrides["thresholds"] = thresholds

        subsets = {}
        if self.use_subset_evolution is not None:
            subsets["use_subset_evolution"] = self.use_subset_evolution
        if self.skip_solve is not None:
            subsets["skip_solve"] = dict(self.skip_solve)
        if self.motion_windows is not None:
            subsets["motion_windows"] = {
                gid: window.model_dump() for gid, window in self.motion_windows.items()
            }
        if subsets:
            overrides["subsets"] = subsets

        if self.obstruction_skin_factor is not None:
            overrides["obstruction"] = {"skin_factor": self.obstruction_skin_factor}

        output = {}
        if self.output_spec is not None:
            output["fields"] = dict(self.output_spec)
        if self.output_delimiter is not None:
            output["delimiter"] = self.output_delimiter
        if self.omit_output_row_id is not None:
            output["omit_row_id"] = self.omit_output_row_id
        if output:
            overrides["output"] = output

        logging_cfg = {}
        if self.log_level is not None:
            logging_cfg["level"] = self.log_level
        if self.log_file is not None:
            logging_cfg["log_file"] = self.log_file
        if logging_cfg:
            overrides["logging"] = logging_cfg

        if self.post_processors is not None:
            overrides["post_processors"] = list(self.post_processors)

        return overrides


def valid_parameter_names() -> list[str]:
    """Sorted list of every accepted flat parameter name."""
    return sorted(UserConfig.model_fields)
