from __future__ import annotations

import numpy as np
import pytest

from rigcalib.calib import Calibrator
from rigcalib.cam import CameraModel, Rig
from rigcalib.config import CalibratorConfig
from rigcalib.core.geometry import SE3
from rigcalib.errors import ConfigurationError, NumericalFailure
from rigcalib.sim.synthetic import make_synthetic_scenario, perturbed_initialization, populate_calibrator


def _populated(lens: str = "fov", **kwargs) -> tuple[Calibrator, object]:
    scenario = make_synthetic_scenario(lens=lens, **kwargs)
    calibrator = Calibrator(lens)
    populate_calibrator(calibrator, scenario, perturbed_initialization(scenario))
    return calibrator, scenario


def test_ids_are_dense_and_in_insertion_order():
    calibrator = Calibrator("linear")
    assert [calibrator.add_camera([500.0, 500.0, 320.0, 240.0]) for _ in range(3)] == [0, 1, 2]
    assert [calibrator.add_frame() for _ in range(4)] == [0, 1, 2, 3]
    assert calibrator.num_cameras() == 3
    assert calibrator.num_frames() == 4


def test_add_observation_counts_each_valid_pair():
    calibrator = Calibrator("linear")
    calibrator.add_camera([500.0, 500.0, 320.0, 240.0])
    calibrator.add_camera([500.0, 500.0, 320.0, 240.0])
    calibrator.add_frame()
    calibrator.add_frame()
    for f in range(2):
        for c in range(2):
            before = calibrator.num_observations()
            calibrator.add_observation(f, c, [0.0, 0.1, 2.0], [320.0, 265.0])
            assert calibrator.num_observations() == before + 1


@pytest.mark.parametrize(
    "frame_id, camera_id",
    [(-1, 0), (1, 0), (0, -1), (0, 1), (5, 5)],
)
def test_add_observation_rejects_unknown_ids(frame_id: int, camera_id: int):
    calibrator = Calibrator("linear")
    calibrator.add_camera([500.0, 500.0, 320.0, 240.0])
    calibrator.add_frame()
    with pytest.raises(ConfigurationError):
        calibrator.add_observation(frame_id, camera_id, [0.0, 0.0, 2.0], [320.0, 240.0])
    assert calibrator.num_observations() == 0


def test_add_observation_rejects_bad_shapes():
    calibrator = Calibrator("linear")
    calibrator.add_camera([500.0, 500.0, 320.0, 240.0])
    calibrator.add_frame()
    with pytest.raises(ConfigurationError):
        calibrator.add_observation(0, 0, [0.0, 2.0], [320.0, 240.0])
    with pytest.raises(ConfigurationError):
        calibrator.add_observation(0, 0, [0.0, 0.0, 2.0], [320.0, 240.0, 1.0])
    assert calibrator.num_observations() == 0


def test_add_camera_rejects_wrong_intrinsics_size():
    calibrator = Calibrator("fov")
    with pytest.raises(ConfigurationError):
        calibrator.add_camera([500.0, 500.0, 320.0, 240.0])
    assert calibrator.num_cameras() == 0


def test_reads_are_copies():
    calibrator = Calibrator("linear")
    calibrator.add_camera([500.0, 500.0, 320.0, 240.0], SE3.from_rotvec([0.0, 0.0, 0.1], [0.2, 0.0, 0.0]))
    calibrator.add_frame(SE3.from_rotvec([0.1, 0.0, 0.0], [0.0, 0.0, 3.0]))

    frame = calibrator.get_frame(0)
    frame.data[:] = 0.0
    assert np.allclose(calibrator.get_frame(0).translation, [0.0, 0.0, 3.0])

    cp = calibrator.get_camera(0)
    cp.camera.params[:] = 0.0
    cp.T_ck.data[:] = 0.0
    again = calibrator.get_camera(0)
    assert again.camera.params[0] == 500.0
    assert np.allclose(again.T_ck.translation, [0.2, 0.0, 0.0])


def test_get_rejects_unknown_ids():
    calibrator = Calibrator("linear")
    with pytest.raises(ConfigurationError):
        calibrator.get_frame(0)
    with pytest.raises(ConfigurationError):
        calibrator.get_camera(0)


def test_solve_round_without_observations_is_a_no_op():
    calibrator = Calibrator("fov")
    calibrator.add_camera([500.0, 500.0, 320.0, 240.0, 0.9], SE3.from_rotvec([0.0, 0.1, 0.0]))
    calibrator.add_camera([505.0, 500.0, 321.0, 240.0, 0.9], SE3.from_rotvec([0.0, 0.2, 0.0]))
    calibrator.add_frame(SE3.from_rotvec([0.1, 0.0, 0.0], [0.0, 0.0, 3.0]))
    before = [calibrator.get_camera(c) for c in range(2)]
    frame_before = calibrator.get_frame(0)

    assert calibrator.solve_round() is None

    for c, cp in enumerate(before):
        assert np.array_equal(calibrator.get_camera(c).camera.params, cp.camera.params)
        assert np.array_equal(calibrator.get_camera(c).T_ck.data, cp.T_ck.data)
    assert np.array_equal(calibrator.get_frame(0).data, frame_before.data)


def test_gauge_camera_extrinsic_is_bit_identical_after_solving():
    scenario = make_synthetic_scenario(lens="fov", seed=3)
    initial = perturbed_initialization(scenario, seed=4)
    calibrator = Calibrator("fov")
    gauge = SE3.from_rotvec([0.01, -0.02, 0.0], [0.05, 0.0, 0.01])
    initial.T_ck[0] = gauge
    populate_calibrator(calibrator, scenario, initial)
    frame_before = calibrator.get_frame(0).data.copy()

    for _ in range(2):
        calibrator.solve_round()

    assert np.array_equal(calibrator.get_camera(0).T_ck.data, gauge.data)
    assert not np.array_equal(calibrator.get_frame(0).data, frame_before)


def test_solve_round_reduces_error_and_reports():
    calibrator, _scenario = _populated()
    summary = calibrator.solve_round()
    assert summary is not None
    assert summary.num_residual_blocks == calibrator.num_observations()
    assert summary.num_residuals == 2 * calibrator.num_observations()
    assert summary.final_cost < summary.initial_cost
    assert calibrator.last_summary is summary


def test_numerical_failure_restores_estimates():
    calibrator, _scenario = _populated()
    calibrator.add_observation(0, 1, [0.0, 0.0, 0.0], [np.nan, 10.0])
    frames_before = [calibrator.get_frame(f).data for f in range(calibrator.num_frames())]
    with pytest.raises(NumericalFailure):
        calibrator.solve_round()
    for f, data in enumerate(frames_before):
        assert np.array_equal(calibrator.get_frame(f).data, data)


def test_clear_resets_everything():
    calibrator, _scenario = _populated()
    calibrator.clear()
    assert calibrator.num_cameras() == 0
    assert calibrator.num_frames() == 0
    assert calibrator.num_observations() == 0
    assert calibrator.add_camera([500.0, 500.0, 320.0, 240.0, 0.9]) == 0


def test_add_rig_and_back():
    rig = Rig()
    rig.add_camera(CameraModel("fov", [500.0, 500.0, 320.0, 240.0, 0.9]))
    T_wc = SE3.from_rotvec([0.0, 0.05, 0.0], [0.3, 0.0, 0.0])
    rig.add_camera(CameraModel("fov", [505.0, 502.0, 318.0, 241.0, 0.88]), T_wc)

    calibrator = Calibrator("fov")
    assert calibrator.add_rig(rig) == [0, 1]
    assert np.allclose(calibrator.get_camera(1).T_ck.matrix(), np.linalg.inv(T_wc.matrix()), atol=1e-12)

    out = calibrator.to_rig()
    assert len(out) == 2
    assert np.allclose(out[1][1].matrix(), T_wc.matrix(), atol=1e-12)
    assert np.allclose(out[1][0].params, rig[1][0].params)


def test_add_rig_rejects_other_lens():
    rig = Rig()
    rig.add_camera(CameraModel("linear", [500.0, 500.0, 320.0, 240.0]))
    calibrator = Calibrator("fov")
    with pytest.raises(ConfigurationError):
        calibrator.add_rig(rig)
    assert calibrator.num_cameras() == 0


def test_lens_comes_from_config_by_default():
    calibrator = Calibrator(config=CalibratorConfig(lens="poly3"))
    assert calibrator.lens.name == "poly3"
    assert calibrator.add_camera([500.0, 500.0, 320.0, 240.0, 0.0, 0.0, 0.0]) == 0


def test_storage_grows_past_one_segment():
    calibrator = Calibrator("linear", config=CalibratorConfig(lens="linear", segment_size=2))
    first = calibrator.add_frame(SE3.from_rotvec([0.0, 0.0, 0.0], [0.0, 0.0, 1.0]))
    for _ in range(5):
        calibrator.add_frame()
    assert calibrator.num_frames() == 6
    assert np.allclose(calibrator.get_frame(first).translation, [0.0, 0.0, 1.0])


@pytest.mark.parametrize(
    "pose",
    [
        SE3(np.zeros(7)),
        SE3([0.0, 0.0, 0.0, 1.0, np.nan, 0.0, 0.0]),
        SE3([0.0, np.inf, 0.0, 1.0, 0.0, 0.0, 0.0]),
    ],
)
def test_degenerate_poses_are_rejected(pose: SE3):
    calibrator = Calibrator("linear")
    with pytest.raises(ConfigurationError):
        calibrator.add_frame(pose)
    with pytest.raises(ConfigurationError):
        calibrator.add_camera([500.0, 500.0, 320.0, 240.0], pose)
    assert calibrator.num_frames() == 0
    assert calibrator.num_cameras() == 0
