"""
Tests for gridcal.calibration.calibrator.
"""

import numpy as np
import pytest

from gridcal.calibration.calibrator import Calibrator, CalibratorState
from gridcal.errors import InvalidHandleError
from gridcal.types import OptimizerConfig, Pose, identity_pose


@pytest.fixture
def calibrator(pinhole_camera):
    calib = Calibrator()
    calib.add_camera(pinhole_camera)
    return calib


@pytest.fixture
def seed_pose():
    return Pose(rotation=np.eye(3), translation=np.array([0.0, 0.0, 1.0]))


class TestCameras:
    def test_indices_dense_in_registration_order(self, pinhole_camera, fov_camera):
        calib = Calibrator()
        assert calib.add_camera(pinhole_camera) == 0
        assert calib.add_camera(fov_camera) == 1
        assert calib.add_camera(pinhole_camera) == 2
        assert calib.num_cameras() == 3
        assert [cap.camera.index for cap in calib.cameras] == [0, 1, 2]

    def test_same_model_twice_gives_independent_state(self, pinhole_camera):
        calib = Calibrator()
        a = calib.add_camera(pinhole_camera)
        b = calib.add_camera(pinhole_camera)
        assert calib.get_camera(a) is not calib.get_camera(b)

    def test_reference_camera_extrinsic_is_identity(self, pinhole_camera):
        calib = Calibrator()
        offset = Pose(rotation=np.eye(3), translation=np.array([0.1, 0.0, 0.0]))
        calib.add_camera(pinhole_camera, T_ck=offset)
        calib.add_camera(pinhole_camera, T_ck=offset)

        np.testing.assert_array_equal(calib.get_camera(0).T_ck.translation, np.zeros(3))
        np.testing.assert_array_equal(calib.get_camera(1).T_ck.translation, [0.1, 0.0, 0.0])

    def test_cameras_can_be_added_in_any_state(self, calibrator, pinhole_camera):
        calibrator.start()
        calibrator.add_camera(pinhole_camera)
        calibrator.stop()
        calibrator.add_camera(pinhole_camera)
        assert calibrator.num_cameras() == 3

    def test_unknown_camera(self, calibrator):
        with pytest.raises(InvalidHandleError):
            calibrator.get_camera(5)
        with pytest.raises(InvalidHandleError):
            calibrator.get_camera(-1)


class TestLifecycle:
    def test_initial_state(self, calibrator):
        assert calibrator.state is CalibratorState.IDLE
        assert calibrator.is_capturing is False

    def test_start_stop(self, calibrator):
        calibrator.start()
        assert calibrator.state is CalibratorState.CAPTURING
        calibrator.stop()
        assert calibrator.state is CalibratorState.STOPPED
        calibrator.start()
        assert calibrator.state is CalibratorState.CAPTURING

    def test_start_then_stop_without_data(self, calibrator):
        """Stop with nothing accumulated runs the optimizer without crashing."""
        calibrator.start()
        mse = calibrator.stop()
        assert mse == 0.0
        assert calibrator.num_frames() == 0
        assert calibrator.num_observations() == 0
        assert calibrator.mean_square_error() == 0.0

    def test_add_frame_while_idle_is_noop(self, calibrator, seed_pose):
        assert calibrator.add_frame(seed_pose) is None
        assert calibrator.num_frames() == 0

    def test_add_while_stopped_is_noop(self, calibrator, seed_pose):
        calibrator.start()
        frame = calibrator.add_frame(seed_pose)
        calibrator.stop()

        assert calibrator.add_frame(seed_pose) is None
        assert calibrator.add_observation(frame, 0, np.zeros(3), np.zeros(2)) is False
        assert calibrator.num_frames() == 1
        assert calibrator.num_observations() == 0

    def test_clear_keeps_cameras(self, calibrator, seed_pose):
        calibrator.start()
        frame = calibrator.add_frame(seed_pose)
        calibrator.add_observation(frame, 0, np.zeros(3), np.zeros(2))
        calibrator.clear()

        assert calibrator.num_cameras() == 1
        assert calibrator.num_frames() == 0
        assert calibrator.num_observations() == 0


class TestFramesAndObservations:
    def test_add_frame_returns_dense_handles(self, calibrator, seed_pose):
        calibrator.start()
        assert calibrator.add_frame(seed_pose) == 0
        assert calibrator.add_frame(identity_pose()) == 1
        assert calibrator.num_frames() == 2

    def test_get_frame_returns_seed(self, calibrator, seed_pose):
        calibrator.start()
        frame = calibrator.add_frame(seed_pose)
        assert calibrator.get_frame(frame).T_kw is seed_pose

    def test_get_frame_is_mutable_reference(self, calibrator, seed_pose):
        calibrator.start()
        handle = calibrator.add_frame(seed_pose)
        calibrator.get_frame(handle).T_kw = identity_pose()
        np.testing.assert_array_equal(calibrator.frames[handle].T_kw.translation, np.zeros(3))

    def test_add_observation(self, calibrator, seed_pose):
        calibrator.start()
        frame = calibrator.add_frame(seed_pose)
        assert calibrator.add_observation(frame, 0, [0.1, 0.2, 0.0], [10.0, 20.0]) is True

        obs = calibrator.observations[0]
        assert obs.frame == frame
        assert obs.camera == 0
        np.testing.assert_array_equal(obs.point3d, [0.1, 0.2, 0.0])
        np.testing.assert_array_equal(obs.pixel, [10.0, 20.0])

    @pytest.mark.parametrize("frame, camera", [(1, 0), (0, 1), (-1, 0), (0, -1)])
    def test_unknown_handles_rejected(self, calibrator, seed_pose, frame, camera):
        calibrator.start()
        calibrator.add_frame(seed_pose)

        with pytest.raises(InvalidHandleError):
            calibrator.add_observation(frame, camera, np.zeros(3), np.zeros(2))
        assert calibrator.num_observations() == 0

    @pytest.mark.parametrize("frame, camera", [(True, 0), (0, False)])
    def test_bool_handles_rejected(self, calibrator, seed_pose, frame, camera):
        calibrator.start()
        calibrator.add_frame(seed_pose)

        with pytest.raises(InvalidHandleError):
            calibrator.add_observation(frame, camera, np.zeros(3), np.zeros(2))

    def test_unknown_frame_rejected_even_when_stopped(self, calibrator):
        with pytest.raises(InvalidHandleError):
            calibrator.add_observation(0, 0, np.zeros(3), np.zeros(2))


class TestRefinement:
    def test_optimize_waits_for_min_frames(self, calibrator, seed_pose):
        calibrator.config = OptimizerConfig(min_frames=3)
        calibrator.start()
        frame = calibrator.add_frame(seed_pose)
        calibrator.add_observation(frame, 0, np.zeros(3), [330.0, 240.0])

        # Current state error: (0, 0, 0) projects 10px left of the observation
        assert calibrator.optimize() == pytest.approx(100.0)
        # Frame pose untouched because refinement was skipped
        assert calibrator.get_frame(frame).T_kw is seed_pose

    def test_mse_non_negative_with_observations(self, calibrator, seed_pose):
        calibrator.start()
        frame = calibrator.add_frame(seed_pose)
        for i, point in enumerate([[0, 0, 0], [0.1, 0, 0], [0, 0.1, 0], [0.1, 0.1, 0]]):
            calibrator.add_observation(frame, 0, point, [320.0 + 3 * i, 240.0 + i])

        assert calibrator.mean_square_error() >= 0.0
        calibrator.stop()
        assert calibrator.mean_square_error() >= 0.0

    def test_mse_before_first_refinement(self, calibrator, seed_pose):
        """One frame, one observation 80/60 px off the projection."""
        calibrator.start()
        frame = calibrator.add_frame(seed_pose)
        calibrator.add_observation(frame, 0, np.zeros(3), [400.0, 300.0])

        assert calibrator.mean_square_error() == pytest.approx(10000.0)

    def test_mse_follows_observations_added_after_refinement(self, calibrator, seed_pose):
        calibrator.config = OptimizerConfig(min_frames=1, fix_intrinsics=True)
        calibrator.start()
        frame = calibrator.add_frame(seed_pose)
        for point in [[0, 0, 0], [0.1, 0, 0], [0, 0.1, 0], [0.1, 0.1, 0]]:
            pixel = [320.0 + 500.0 * point[0], 240.0 + 500.0 * point[1]]
            calibrator.add_observation(frame, 0, point, pixel)
        assert calibrator.optimize() == pytest.approx(0.0, abs=1e-6)

        calibrator.add_observation(frame, 0, np.zeros(3), [400.0, 300.0])

        # 10000 px^2 spread over five observations
        assert calibrator.mean_square_error() == pytest.approx(2000.0, rel=1e-3)

    def test_reprojection_errors_without_data(self, calibrator):
        assert calibrator.reprojection_errors() == {"overall": 0.0}
