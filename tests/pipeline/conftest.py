import pytest

from dicflow.pipeline.scheduler import CorrelationScheduler
from tests.helpers.fake_objective import FakeObjectiveFactory


@pytest.fixture
def factory():
    return FakeObjectiveFactory()


@pytest.fixture
def make_scheduler(images, factory):
    """Build and initialize a serial scheduler over four points on a row."""
    def _make(config, num_points=4, **init_kwargs):
        ref, deformed = images
        scheduler = CorrelationScheduler(config, ref, deformed, objective_factory=factory)
        xs = [10.0 + 10.0 * i for i in range(num_points)]
        ys = [20.0] * num_points
        init_kwargs.setdefault("subset_size", 7)
        scheduler.initialize(xs, ys, **init_kwargs)
        return scheduler

    return _make
