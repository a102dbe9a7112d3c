"""Root-level pytest fixtures for the dicflow test suite.

Provides shared configuration fixtures following the Pydantic-based
architecture. Tests build configs through these fixtures instead of
creating raw nested dicts.
"""

import shutil
import tempfile
from pathlib import Path

import pytest

from dicflow.core.image import Image
from dicflow.schemas import ParamConfig, UserConfig, resolve_config
from tests.helpers.fake_images import speckle


# =============================================================================
# Configuration Fixtures (Pydantic-based)
# =============================================================================

@pytest.fixture
def param_config():
    """Expert configuration with all defaults.

    Use this as the base for all test configs. Override specific values
    through ``make_config``.
    """
    return ParamConfig()


@pytest.fixture
def internal_config(param_config):
    """Fully validated runtime configuration (no overrides).

    Examples
    --------
    >>> def test_scheduler_init(internal_config, images):
    ...     scheduler = CorrelationScheduler(internal_config, *images)
    ...     assert scheduler.frame == 0
    """
    return resolve_config(param_config, None)


@pytest.fixture
def make_config(param_config):
    """Factory fixture for creating custom test configs.

    Returns a callable that accepts UserConfig-compatible kwargs.

    Examples
    --------
    >>> def test_custom_threshold(make_config):
    ...     config = make_config(final_gamma_threshold=0.5)
    ...     assert config.thresholds.final_gamma == 0.5
    """
    def _make(**user_overrides):
        """Create InternalConfig with user overrides."""
        if user_overrides:
            user = UserConfig(**user_overrides)
            return resolve_config(param_config, user)
        return resolve_config(param_config, None)

    return _make


# =============================================================================
# Image Fixtures
# =============================================================================

@pytest.fixture
def images():
    """Reference and deformed images of identical size (64x48)."""
    return Image(speckle(seed=0), "ref.tif"), Image(speckle(seed=1), "def.tif")


# =============================================================================
# Directory Fixtures
# =============================================================================

@pytest.fixture
def temp_dir():
    """Temporary directory that is cleaned up after test."""
    d = tempfile.mkdtemp()
    yield Path(d)
    shutil.rmtree(d, ignore_errors=True)
