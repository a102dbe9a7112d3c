"""dicflow user configuration.

Flat correlation parameters overriding the expert defaults in
``dicflow.schemas.param``. Keys are case-insensitive; an unknown key is an
error.

Usage:
    from dicflow.schemas import ParamConfig, load_user_config_dict, resolve_config

    config = resolve_config(ParamConfig(), load_user_config_dict("scripts/user_config.py"))
"""

CONFIG = {
    # ========================================================================
    # SOLVER
    # ========================================================================
    "optimization_method": "gradient_based_then_simplex",
    "initialization_method": "use_neighbor_values_first_step_only",
    "correlation_routine": "generic",      # "generic" or "tracking"
    "projection_method": "displacement_based",

    # ========================================================================
    # IMAGES
    # ========================================================================
    "rotate_def_image_90": False,
    "compute_image_gradients": True,

    # ========================================================================
    # QUALITY GATES (-1 disables a gate)
    # ========================================================================
    "initial_gamma_threshold": -1,
    "final_gamma_threshold": 0.8,
    "path_distance_threshold": -1,
    "skip_solve_gamma_threshold": -1,

    # ========================================================================
    # OUTPUT
    # ========================================================================
    "output_spec": {
        "COORDINATE_X": 0,
        "COORDINATE_Y": 1,
        "DISPLACEMENT_X": 2,
        "DISPLACEMENT_Y": 3,
        "SIGMA": 4,
        "STATUS_FLAG": 5,
    },
    "output_delimiter": ",",
    "post_processors": ["displacement_magnitude"],

    "log_level": "INFO",
}
