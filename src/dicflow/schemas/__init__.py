"""Pydantic configuration schemas for the dicflow engine.

All configuration validation, coercion, and normalization happens at
schema validation time via Pydantic.

Exports
-------
resolve_config : function
    Single entrypoint for configuration resolution
valid_parameter_names : function
    Sorted list of the accepted flat parameter names
InternalConfig : class
    Fully validated, authoritative runtime configuration
ParamConfig : class
    Expert defaults (complete)
UserConfig : class
    Flat user-facing overrides (unknown keys rejected)
MotionWindowParams : class
    Motion test window of one point
"""

from dicflow.schemas.resolve import resolve_config, load_user_config_dict
from dicflow.schemas.internal import InternalConfig
from dicflow.schemas.param import ParamConfig, MotionWindowParams
from dicflow.schemas.user import UserConfig, valid_parameter_names

__all__ = [
    'resolve_config',
    'load_user_config_dict',
    'valid_parameter_names',
    'InternalConfig',
    'ParamConfig',
    'UserConfig',
    'MotionWindowParams',
]
