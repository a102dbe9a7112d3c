"""Configuration resolution and merging logic.

This module provides the single entrypoint for configuration resolution:
resolve_config(). It merges ParamConfig and UserConfig in precedence order,
runs the cross-field checks no single section can make on its own, and
returns a validated InternalConfig.

Precedence (highest to lowest):
1. UserConfig (user file or dict)
2. ParamConfig (expert defaults)
"""

import importlib.util
import logging
from pathlib import Path
from typing import Optional, Union

from dicflow.core.fields import OptimizationMethod
from dicflow.schemas.internal import InternalConfig
from dicflow.schemas.param import ParamConfig
from dicflow.schemas.user import UserConfig

logger = logging.getLogger(__name__)


def deep_merge(base: dict, *overrides: dict) -> dict:
    """Deep merge multiple dictionaries.

    Later dictionaries override earlier ones. Nested dictionaries are
    merged recursively; other values are replaced.

    Examples
    --------
    >>> base = {"a": 1, "b": {"c": 2, "d": 3}}
    >>> override = {"b": {"d": 4, "e": 5}, "f": 6}
    >>> deep_merge(base, override)
    {'a': 1, 'b': {'c': 2, 'd': 4, 'e': 5}, 'f': 6}
    """
    result = base.copy()

    for override in overrides:
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = deep_merge(result[key], value)
            else:
                result[key] = value

    return result


def _check_output_fields(fields: Optional[dict]) -> None:
    """Output column indices must be unique and run 0..n-1."""
    if fields is None:
        return
    if not fields:
        raise ValueError("Output field spec is empty")
    indices = sorted(fields.values())
    if indices != list(range(len(indices))):
        raise ValueError(
            f"Output field indices must be unique and contiguous from 0, got {fields}"
        )


def _check_point_keys(merged: dict) -> None:
    """Per-point maps are keyed by non-negative point ids."""
    per_point = {
        "path_files": merged["initialization"]["path_files"],
        "skip_solve": merged["subsets"]["skip_solve"],
        "motion_windows": merged["subsets"]["motion_windows"],
    }
    for name, mapping in per_point.items():
        bad = [gid for gid in mapping if int(gid) < 0]
        if bad:
            raise ValueError(f"{name} has negative point ids {bad}")

    windows = merged["subsets"]["motion_windows"]
    for gid, window in windows.items():
        use_id = window["use_subset_id"]
        if use_id == -1:
            continue
        target = windows.get(use_id)
        if target is None or target["use_subset_id"] != -1:
            raise ValueError(
                f"Motion window of point {gid} borrows the window of point {use_id}, "
                "which does not define its own window"
            )


def resolve_config(
    param_cfg: Union[dict, ParamConfig],
    user_cfg: Optional[Union[dict, UserConfig]] = None,
) -> InternalConfig:
    """Resolve final runtime configuration from param and user configs.

    Parameters
    ----------
    param_cfg : dict or ParamConfig
        Expert configuration with complete defaults. Required.
    user_cfg : dict or UserConfig, optional
        Flat user overrides. If None or empty, uses only param defaults.

    Returns
    -------
    InternalConfig
        Fully validated, immutable runtime configuration

    Raises
    ------
    ValidationError
        If any config fails Pydantic validation (unknown keys included)
    ValueError
        If a cross-field check fails

    Examples
    --------
    >>> config = resolve_config(ParamConfig(), {"final_gamma_threshold": 0.5})
    >>> config.thresholds.final_gamma
    0.5
    """
    if not isinstance(param_cfg, ParamConfig):
        param = ParamConfig.model_validate(param_cfg)
    else:
        param = param_cfg

    if user_cfg is None or (isinstance(user_cfg, dict) and not user_cfg):
        user = UserConfig()
    elif not isinstance(user_cfg, UserConfig):
        user = UserConfig.model_validate(user_cfg)
    else:
        user = user_cfg

    merged = deep_merge(param.model_dump(), user.to_internal_overrides())

    _check_output_fields(merged["output"]["fields"])
    _check_point_keys(merged)

    # every optimizer but pure simplex needs reference gradients
    if merged["solver"]["optimization_method"] != OptimizationMethod.SIMPLEX:
        if not merged["images"]["compute_ref_gradients"]:
            logger.debug("Enabling reference image gradients for %s",
                         merged["solver"]["optimization_method"])
        merged["images"]["compute_ref_gradients"] = True

    return InternalConfig.model_validate(merged)


def load_user_config_dict(config_path: str) -> dict:
    """Load a user config dict from a Python file.

    The file must define a module-level dict whose name starts with
    ``CONFIG``; the first one found is returned.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    spec = importlib.util.spec_from_file_location("config_module", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Could not load config module from {path}")

    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    for name in dir(module):
        if name.startswith('CONFIG'):
            obj = getattr(module, name)
            if isinstance(obj, dict):
                return obj

    raise ValueError(f"No CONFIG dict found in {path}")
