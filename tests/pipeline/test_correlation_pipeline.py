"""Per-point pipeline stages, run through a serial scheduler."""

import numpy as np
import pytest

from dicflow.core.fields import FieldName, PointOutcome, StatusFlag
from dicflow.core.image import Image
from dicflow.pipeline.correlation import CorrelationPipeline
from tests.helpers.fake_objective import FakeObjective, PointScript

pytestmark = [pytest.mark.unit, pytest.mark.pipeline]

DISPLACEMENT_AND_STRAIN = (
    FieldName.DISPLACEMENT_X, FieldName.DISPLACEMENT_Y, FieldName.ROTATION_Z,
    FieldName.NORMAL_STRAIN_X, FieldName.NORMAL_STRAIN_Y, FieldName.SHEAR_STRAIN_XY,
)


def field(scheduler, gid, name):
    return scheduler.field_value(gid, name)


class TestSuccess:

    def test_four_points_serial_all_succeed(self, make_config, make_scheduler):
        config = make_config(initial_gamma_threshold=0.05, final_gamma_threshold=0.05)
        scheduler = make_scheduler(config)

        outcomes = scheduler.execute_correlation()

        assert outcomes == {gid: PointOutcome.SUCCESS for gid in range(4)}
        for gid in range(4):
            assert field(scheduler, gid, FieldName.STATUS_FLAG) == StatusFlag.INITIALIZE_USING_PREVIOUS_FRAME_SUCCESSFUL
            assert field(scheduler, gid, FieldName.DISPLACEMENT_X) == 1.0
            assert field(scheduler, gid, FieldName.DISPLACEMENT_Y) == -0.5
            assert field(scheduler, gid, FieldName.GAMMA) == pytest.approx(0.001)
            assert field(scheduler, gid, FieldName.SIGMA) == pytest.approx(0.02)
            assert field(scheduler, gid, FieldName.MATCH) == 0.0
            assert field(scheduler, gid, FieldName.ITERATIONS) == 5
        # single rank: the active view is the all view
        assert scheduler.active_fields is scheduler.all_fields
        assert scheduler.frame == 1

    def test_coordinates_survive_correlation(self, internal_config, make_scheduler):
        scheduler = make_scheduler(internal_config)
        scheduler.execute_correlation()
        assert field(scheduler, 2, FieldName.COORDINATE_X) == 30.0
        assert field(scheduler, 2, FieldName.COORDINATE_Y) == 20.0


class TestGates:

    def test_initial_gamma_gate_keeps_prior_displacement(self, make_config, make_scheduler, factory):
        scheduler = make_scheduler(make_config(initial_gamma_threshold=0.05))
        scheduler.execute_correlation()

        factory.default = PointScript(initial_gamma=0.2)
        outcomes = scheduler.execute_correlation()

        assert set(outcomes.values()) == {PointOutcome.GAMMA_GATE_FAILED}
        for gid in range(4):
            assert field(scheduler, gid, FieldName.STATUS_FLAG) == StatusFlag.INITIALIZE_FAILED
            assert field(scheduler, gid, FieldName.DISPLACEMENT_X) == 1.0
            assert field(scheduler, gid, FieldName.DISPLACEMENT_Y) == -0.5
            assert field(scheduler, gid, FieldName.SIGMA) == -1.0
            assert field(scheduler, gid, FieldName.GAMMA) == -1.0
            assert field(scheduler, gid, FieldName.MATCH) == -1.0
            assert field(scheduler, gid, FieldName.ITERATIONS) == -1
        assert "fast" not in factory.created[-1].calls

    def test_final_gamma_gate(self, make_config, make_scheduler, factory):
        factory.default = PointScript(final_gamma=0.3)
        scheduler = make_scheduler(make_config(final_gamma_threshold=0.1))

        outcomes = scheduler.execute_correlation()

        assert set(outcomes.values()) == {PointOutcome.GAMMA_GATE_FAILED}
        assert field(scheduler, 0, FieldName.STATUS_FLAG) == StatusFlag.FRAME_FAILED_DUE_TO_HIGH_GAMMA
        assert field(scheduler, 0, FieldName.ITERATIONS) == 5
        # solution is not recorded
        assert field(scheduler, 0, FieldName.DISPLACEMENT_X) == 0.0

    def test_final_gamma_gate_keeps_phase_correlation_offset(self, make_config, factory):
        from dicflow.pipeline.scheduler import CorrelationScheduler

        base = np.random.default_rng(11).random((48, 64)) * 255.0
        ref = Image(base)
        deformed = Image(np.roll(base, shift=(-2, 3), axis=(0, 1)))
        factory.default = PointScript(final_gamma=0.3)
        config = make_config(initialization_method="use_phase_correlation", final_gamma_threshold=0.1)
        scheduler = CorrelationScheduler(config, ref, deformed, objective_factory=factory)
        scheduler.initialize([20.0, 40.0], [24.0, 24.0], subset_size=7)

        outcomes = scheduler.execute_correlation()

        assert (scheduler.phase_cor_u_x, scheduler.phase_cor_u_y) == (3.0, -2.0)
        assert outcomes[0] == PointOutcome.GAMMA_GATE_FAILED
        assert field(scheduler, 0, FieldName.DISPLACEMENT_X) == 3.0
        assert field(scheduler, 0, FieldName.DISPLACEMENT_Y) == -2.0
        # the phase offset was the solver's starting point
        np.testing.assert_allclose(factory.created[0].guesses[0][:2], [3.0, -2.0])

    def test_path_distance_gate(self, make_config, make_scheduler, factory, temp_dir):
        path_file = temp_dir / "path_0.txt"
        path_file.write_text("0.0 0.0 0.0\n1.0 -0.5 0.0\n2.0 -1.0 0.0\n")
        factory.scripts[0] = PointScript(u=6.0, v=4.0)
        config = make_config(path_files={0: str(path_file), 1: str(path_file)},
                             path_distance_threshold=0.5)
        scheduler = make_scheduler(config)

        outcomes = scheduler.execute_correlation()

        assert outcomes[0] == PointOutcome.PATH_GATE_FAILED
        assert field(scheduler, 0, FieldName.STATUS_FLAG) == StatusFlag.FRAME_FAILED_DUE_TO_HIGH_PATH_DISTANCE
        # default script lands exactly on a waypoint
        assert outcomes[1] == PointOutcome.SUCCESS
        assert field(scheduler, 1, FieldName.STATUS_FLAG) == StatusFlag.INITIALIZE_SUCCESSFUL


class TestSkipSolve:

    def test_skip_solve_records_guess_metrics(self, make_config, make_scheduler, factory):
        scheduler = make_scheduler(make_config(skip_solve=[1]))

        outcomes = scheduler.execute_correlation()

        assert outcomes[1] == PointOutcome.SOLVE_SKIPPED
        assert outcomes[0] == PointOutcome.SUCCESS
        assert field(scheduler, 1, FieldName.STATUS_FLAG) == StatusFlag.FRAME_SKIPPED
        assert field(scheduler, 1, FieldName.MATCH) == 0.0
        assert field(scheduler, 1, FieldName.GAMMA) == pytest.approx(0.01)
        assert field(scheduler, 1, FieldName.SIGMA) == pytest.approx(0.02)
        assert field(scheduler, 1, FieldName.DISPLACEMENT_X) == 0.0
        assert factory.calls_for(1) == ["initialize"]

    def test_skip_solve_gamma_accepts_good_guess(self, make_config, make_scheduler, factory):
        scheduler = make_scheduler(make_config(skip_solve_gamma_threshold=0.05))

        outcomes = scheduler.execute_correlation()

        assert set(outcomes.values()) == {PointOutcome.SUCCESS}
        assert field(scheduler, 0, FieldName.ITERATIONS) == 0
        assert field(scheduler, 0, FieldName.GAMMA) == pytest.approx(0.01)
        assert "fast" not in factory.calls_for(0)

    def test_skip_solve_gamma_solves_poor_guess(self, make_config, make_scheduler, factory):
        factory.default = PointScript(initial_gamma=0.5)
        scheduler = make_scheduler(make_config(skip_solve_gamma_threshold=0.05))

        scheduler.execute_correlation()

        assert "fast" in factory.calls_for(0)
        assert field(scheduler, 0, FieldName.ITERATIONS) == 5


class TestOptimizerRetry:

    def test_gradient_then_simplex_records_initialization_status(self, make_config, make_scheduler, factory):
        factory.default = PointScript(fast_status=StatusFlag.MAX_ITERATIONS_REACHED)
        scheduler = make_scheduler(make_config(optimization_method="gradient_based_then_simplex"))

        outcomes = scheduler.execute_correlation()

        assert outcomes[0] == PointOutcome.SUCCESS
        assert factory.calls_for(0) == ["initialize", "fast", "initialize", "robust"]
        assert field(scheduler, 0, FieldName.STATUS_FLAG) == StatusFlag.INITIALIZE_USING_PREVIOUS_FRAME_SUCCESSFUL
        assert field(scheduler, 0, FieldName.STATUS_FLAG) != StatusFlag.MAX_ITERATIONS_REACHED

    def test_retry_starts_from_fresh_guess(self, make_config, make_scheduler, factory):
        factory.default = PointScript(fast_status=StatusFlag.CORRELATION_FAILED)
        scheduler = make_scheduler(make_config(optimization_method="gradient_based_then_simplex"))
        scheduler.execute_correlation()
        # the failed fast attempt leaves the vector alone; robust sees the re-derived guess
        objective = factory.created[0]
        np.testing.assert_array_equal(objective.guesses[1], np.zeros(6))

    def test_simplex_then_gradient_order(self, make_config, make_scheduler, factory):
        factory.default = PointScript(robust_status=StatusFlag.CORRELATION_FAILED)
        scheduler = make_scheduler(make_config(optimization_method="simplex_then_gradient_based"))
        scheduler.execute_correlation()
        assert factory.calls_for(0) == ["initialize", "robust", "initialize", "fast"]

    def test_both_solvers_fail(self, make_config, make_scheduler, factory):
        factory.default = PointScript(fast_status=StatusFlag.CORRELATION_FAILED,
                                      robust_status=StatusFlag.HESSIAN_SINGULAR)
        scheduler = make_scheduler(make_config(optimization_method="gradient_based_then_simplex"))

        outcomes = scheduler.execute_correlation()

        assert outcomes[0] == PointOutcome.OPTIMIZE_FAILED
        assert field(scheduler, 0, FieldName.STATUS_FLAG) == StatusFlag.HESSIAN_SINGULAR

    def test_simplex_only(self, make_config, make_scheduler, factory):
        scheduler = make_scheduler(make_config(optimization_method="simplex"))
        scheduler.execute_correlation()
        assert factory.calls_for(0) == ["initialize", "robust"]


class TestExceptions:

    @pytest.mark.parametrize("raise_on,status,outcome", [
        (("initialize",), StatusFlag.INITIALIZE_FAILED_BY_EXCEPTION, PointOutcome.INITIALIZE_FAILED),
        (("fast",), StatusFlag.CORRELATION_FAILED_BY_EXCEPTION, PointOutcome.OPTIMIZE_FAILED),
        (("sigma",), StatusFlag.CORRELATION_FAILED_BY_EXCEPTION, PointOutcome.OPTIMIZE_FAILED),
    ])
    def test_exception_becomes_status(self, internal_config, make_scheduler, factory,
                                      raise_on, status, outcome):
        factory.scripts[2] = PointScript(raise_on=raise_on)
        scheduler = make_scheduler(internal_config)

        outcomes = scheduler.execute_correlation()

        assert outcomes[2] == outcome
        assert field(scheduler, 2, FieldName.STATUS_FLAG) == status
        assert field(scheduler, 2, FieldName.SIGMA) == -1.0
        assert field(scheduler, 2, FieldName.ITERATIONS) == -1
        # the frame carries on with the other points
        assert outcomes[3] == PointOutcome.SUCCESS

    def test_exception_during_retry(self, make_config, make_scheduler, factory, monkeypatch):
        factory.default = PointScript(fast_status=StatusFlag.CORRELATION_FAILED)
        scheduler = make_scheduler(make_config(optimization_method="gradient_based_then_simplex"))
        calls = {"n": 0}
        original = FakeObjective.initialize_from_previous_frame

        def flaky(self, deformation):
            calls["n"] += 1
            if calls["n"] == 2:
                raise RuntimeError("re-initialization failed")
            return original(self, deformation)

        monkeypatch.setattr(FakeObjective, "initialize_from_previous_frame", flaky)
        outcomes = scheduler.execute_correlation()

        assert outcomes[0] == PointOutcome.INITIALIZE_FAILED
        assert field(scheduler, 0, FieldName.STATUS_FLAG) == StatusFlag.INITIALIZE_FAILED_BY_EXCEPTION


class TestMotionGate:

    def test_no_motion_only_touches_match_status_iterations(self, make_config, make_scheduler, factory):
        config = make_config(motion_windows={
            0: {"origin_x": 0, "origin_y": 0, "width": 16, "height": 16, "tol": 1.0},
            1: {"use_subset_id": 0},
        })
        scheduler = make_scheduler(config)
        scheduler.execute_correlation()
        before = scheduler.all_fields.values.copy()

        # same deformed image again: nothing moved inside the window
        scheduler.set_def_image(scheduler.def_img)
        outcomes = scheduler.execute_correlation()

        for gid in (0, 1):
            assert outcomes[gid] == PointOutcome.SKIPPED_NO_MOTION
            assert field(scheduler, gid, FieldName.MATCH) == 0.0
            assert field(scheduler, gid, FieldName.STATUS_FLAG) == StatusFlag.FRAME_SKIPPED_DUE_TO_NO_MOTION
            assert field(scheduler, gid, FieldName.ITERATIONS) == 0
            for name in DISPLACEMENT_AND_STRAIN + (FieldName.SIGMA, FieldName.GAMMA):
                assert field(scheduler, gid, name) == before[gid, int(name)]
        # points without a window are always correlated
        assert outcomes[2] == PointOutcome.SUCCESS
        # one detector, shared by the borrowing point
        assert list(scheduler.motion_detectors) == [0]

    def test_motion_detected_after_image_change(self, make_config, make_scheduler):
        config = make_config(motion_windows={
            0: {"origin_x": 0, "origin_y": 0, "width": 16, "height": 16, "tol": 1.0},
        })
        scheduler = make_scheduler(config)
        scheduler.execute_correlation()

        scheduler.set_def_image(Image(scheduler.def_img.intensities + 50.0))
        outcomes = scheduler.execute_correlation()

        assert outcomes[0] == PointOutcome.SUCCESS


class TestPipelineDirect:

    def test_unexpected_error_is_recorded_not_raised(self, internal_config, make_scheduler, monkeypatch):
        scheduler = make_scheduler(internal_config)
        scheduler._select_target()

        def boom(point_id):
            raise RuntimeError("motion test failed")

        monkeypatch.setattr(scheduler, "motion_detected", boom)
        outcome = CorrelationPipeline(scheduler).run(FakeObjective(scheduler, 0))

        assert outcome == PointOutcome.OPTIMIZE_FAILED
        assert field(scheduler, 0, FieldName.STATUS_FLAG) == StatusFlag.CORRELATION_FAILED_BY_EXCEPTION
