"""Field names, status flags and the enumerations that drive control flow.

Every tracked point carries the same fixed set of scalar fields. The first
six field names double as indices into a deformation vector so that a
solution can be copied into (or read out of) the field store directly.
"""

from enum import Enum, IntEnum

import numpy as np

__all__ = [
    'FieldName',
    'StatusFlag',
    'PointOutcome',
    'TargetFieldDescriptor',
    'InitializationMethod',
    'OptimizationMethod',
    'CorrelationRoutine',
    'ProjectionMethod',
    'NUM_FIELDS',
    'DEFORMATION_SIZE',
    'DEFORMATION_FIELDS',
    'new_deformation',
    'field_name_from_string',
]


class FieldName(IntEnum):
    """Column index of each per-point scalar field."""
    DISPLACEMENT_X = 0
    DISPLACEMENT_Y = 1
    ROTATION_Z = 2
    NORMAL_STRAIN_X = 3
    NORMAL_STRAIN_Y = 4
    SHEAR_STRAIN_XY = 5
    COORDINATE_X = 6
    COORDINATE_Y = 7
    SIGMA = 8
    GAMMA = 9
    MATCH = 10
    ITERATIONS = 11
    STATUS_FLAG = 12
    NEIGHBOR_ID = 13


NUM_FIELDS = len(FieldName)

DEFORMATION_FIELDS = (
    FieldName.DISPLACEMENT_X,
    FieldName.DISPLACEMENT_Y,
    FieldName.ROTATION_Z,
    FieldName.NORMAL_STRAIN_X,
    FieldName.NORMAL_STRAIN_Y,
    FieldName.SHEAR_STRAIN_XY,
)
DEFORMATION_SIZE = len(DEFORMATION_FIELDS)


class StatusFlag(IntEnum):
    """Numeric status recorded into the STATUS_FLAG field of a point."""
    CORRELATION_SUCCESSFUL = 0
    INITIALIZE_USING_PREVIOUS_FRAME_SUCCESSFUL = 1
    INITIALIZE_USING_CONVERGED_NEIGHBOR_SUCCESSFUL = 2
    INITIALIZE_USING_NEIGHBOR_VALUE_SUCCESSFUL = 3
    INITIALIZE_SUCCESSFUL = 4
    INITIALIZE_FAILED = 5
    INITIALIZE_FAILED_BY_EXCEPTION = 6
    CORRELATION_FAILED = 7
    CORRELATION_FAILED_BY_EXCEPTION = 8
    MAX_ITERATIONS_REACHED = 9
    HESSIAN_SINGULAR = 10
    FRAME_SKIPPED = 11
    FRAME_SKIPPED_DUE_TO_NO_MOTION = 12
    FRAME_FAILED_DUE_TO_HIGH_PATH_DISTANCE = 13
    FRAME_FAILED_DUE_TO_HIGH_GAMMA = 14


class PointOutcome(str, Enum):
    """Terminal state of one point for one frame."""
    SKIPPED_NO_MOTION = "skipped_no_motion"
    INITIALIZE_FAILED = "initialize_failed"
    SOLVE_SKIPPED = "solve_skipped"
    GAMMA_GATE_FAILED = "gamma_gate_failed"
    OPTIMIZE_FAILED = "optimize_failed"
    PATH_GATE_FAILED = "path_gate_failed"
    SUCCESS = "success"


class TargetFieldDescriptor(str, Enum):
    """Which field view the local points are read from and written to."""
    ALL_OWNED = "all_owned"
    DISTRIBUTED = "distributed"
    DISTRIBUTED_GROUPED_BY_SEED = "distributed_grouped_by_seed"


class InitializationMethod(str, Enum):
    USE_FIELD_VALUES = "use_field_values"
    USE_NEIGHBOR_VALUES = "use_neighbor_values"
    USE_NEIGHBOR_VALUES_FIRST_STEP_ONLY = "use_neighbor_values_first_step_only"
    USE_PHASE_CORRELATION = "use_phase_correlation"


class OptimizationMethod(str, Enum):
    SIMPLEX = "simplex"
    GRADIENT_BASED = "gradient_based"
    SIMPLEX_THEN_GRADIENT_BASED = "simplex_then_gradient_based"
    GRADIENT_BASED_THEN_SIMPLEX = "gradient_based_then_simplex"


class CorrelationRoutine(str, Enum):
    """GENERIC re-allocates objectives every frame, TRACKING keeps them."""
    GENERIC = "generic"
    TRACKING = "tracking"


class ProjectionMethod(str, Enum):
    DISPLACEMENT_BASED = "displacement_based"
    VELOCITY_BASED = "velocity_based"


def new_deformation() -> np.ndarray:
    """Zeroed deformation vector indexed by the first six FieldName members."""
    return np.zeros(DEFORMATION_SIZE, dtype=np.float64)


def field_name_from_string(name: str) -> FieldName:
    """Look up a FieldName by (case-insensitive) string.

    Raises
    ------
    ValueError
        If the name is not a known field.
    """
    key = name.strip().upper()
    try:
        return FieldName[key]
    except KeyError:
        raise ValueError(f"Unknown field name: {name!r}") from None
