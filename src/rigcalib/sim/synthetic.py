from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from rigcalib.cam.camera import CameraModel
from rigcalib.cam.lens import LensModel, lens_from_name
from rigcalib.cam.rig import Rig
from rigcalib.calib.calibrator import Calibrator
from rigcalib.core.geometry import SE3

_BASE_INTRINSICS = {
    "linear": (500.0, 500.0, 320.0, 240.0),
    "fov": (500.0, 500.0, 320.0, 240.0, 0.9),
    "poly3": (500.0, 500.0, 320.0, 240.0, -0.05, 0.01, 0.0),
}


@dataclass(frozen=True)
class SyntheticObservation:
    frame_id: int
    camera_id: int
    point: np.ndarray  # (3,) target frame
    pixel: np.ndarray  # (2,)


@dataclass(frozen=True)
class SyntheticScenario:
    """
    Ground truth for a rig looking at a non-planar target from several keyframes.

    Camera 0 sits at the keyframe origin (T_ck = identity).
    """

    lens: LensModel
    intrinsics: list[np.ndarray]
    T_ck: list[SE3]
    T_kw: list[SE3]
    points: np.ndarray  # (N,3)
    observations: list[SyntheticObservation]

    def rig(self) -> Rig:
        rig = Rig()
        for params, T_ck in zip(self.intrinsics, self.T_ck):
            rig.add_camera(CameraModel(self.lens, params), T_ck.inverse())
        return rig


@dataclass(frozen=True)
class InitialGuess:
    intrinsics: list[np.ndarray]
    T_ck: list[SE3]
    T_kw: list[SE3]


def make_synthetic_scenario(
    *,
    lens: str = "fov",
    n_cameras: int = 2,
    n_frames: int = 3,
    n_points: int = 24,
    baseline: float = 0.3,
    distance: float = 3.0,
    pixel_noise: float = 0.0,
    seed: int = 0,
) -> SyntheticScenario:
    if n_cameras < 1 or n_frames < 1 or n_points < 1:
        raise ValueError("n_cameras, n_frames and n_points must be >= 1")
    model = lens_from_name(lens)
    rng = np.random.default_rng(seed)

    points = np.stack(
        [
            rng.uniform(-1.0, 1.0, size=n_points),
            rng.uniform(-1.0, 1.0, size=n_points),
            rng.uniform(-0.5, 0.5, size=n_points),
        ],
        axis=-1,
    )

    intrinsics = []
    T_ck = []
    for c in range(n_cameras):
        params = np.array(_BASE_INTRINSICS[model.name], dtype=np.float64)
        params[:4] += np.array([10.0, 12.0, 4.0, -3.0]) * c
        intrinsics.append(params)
        if c == 0:
            T_ck.append(SE3())
        else:
            T_ck.append(SE3.from_rotvec([0.01 * c, -0.05 * c, 0.02 * c], [-baseline * c, 0.02 * c, 0.01 * c]))

    T_kw = []
    for _f in range(n_frames):
        rvec = rng.uniform(-0.15, 0.15, size=3)
        tvec = np.array(
            [rng.uniform(-0.2, 0.2), rng.uniform(-0.2, 0.2), distance + rng.uniform(-0.3, 0.3)], dtype=np.float64
        )
        T_kw.append(SE3.from_rotvec(rvec, tvec))

    observations = []
    for f, T in enumerate(T_kw):
        P_k = T.act(points)
        for c in range(n_cameras):
            P_c = T_ck[c].act(P_k)
            uv = model.project(intrinsics[c], P_c)
            if pixel_noise > 0:
                uv = uv + rng.normal(0.0, float(pixel_noise), size=uv.shape)
            for j in np.flatnonzero(P_c[:, 2] > 0.1):
                observations.append(SyntheticObservation(frame_id=f, camera_id=c, point=points[j], pixel=uv[j]))

    return SyntheticScenario(
        lens=model,
        intrinsics=intrinsics,
        T_ck=T_ck,
        T_kw=T_kw,
        points=points,
        observations=observations,
    )


def perturbed_initialization(
    scenario: SyntheticScenario,
    *,
    rotation_sigma: float = 0.02,
    translation_sigma: float = 0.05,
    intrinsics_rel_sigma: float = 0.01,
    distortion_sigma: float = 0.005,
    seed: int = 1,
) -> InitialGuess:
    """
    Ground truth with noise on every estimated quantity. Camera 0's extrinsic
    is left exact since it is never optimized.
    """
    rng = np.random.default_rng(seed)

    def perturb(T: SE3) -> SE3:
        delta = np.concatenate(
            [rng.normal(0.0, translation_sigma, size=3), rng.normal(0.0, rotation_sigma, size=3)]
        )
        return T.plus(delta)

    intrinsics = []
    for params in scenario.intrinsics:
        p = params.copy()
        p[:4] *= 1.0 + rng.normal(0.0, intrinsics_rel_sigma, size=4)
        p[4:] += rng.normal(0.0, distortion_sigma, size=p.size - 4)
        intrinsics.append(p)

    T_ck = [T.copy() if c == 0 else perturb(T) for c, T in enumerate(scenario.T_ck)]
    T_kw = [perturb(T) for T in scenario.T_kw]
    return InitialGuess(intrinsics=intrinsics, T_ck=T_ck, T_kw=T_kw)


def populate_calibrator(calibrator: Calibrator, scenario: SyntheticScenario, initial: InitialGuess) -> None:
    for params, T_ck in zip(initial.intrinsics, initial.T_ck):
        calibrator.add_camera(params, T_ck)
    for T_kw in initial.T_kw:
        calibrator.add_frame(T_kw)
    for obs in scenario.observations:
        calibrator.add_observation(obs.frame_id, obs.camera_id, obs.point, obs.pixel)


def pose_error(T_est: SE3, T_gt: SE3) -> tuple[float, float]:
    """(rotation error in rad, translation error) between two poses."""
    rot = float(np.linalg.norm((T_gt.rotation.inv() * T_est.rotation).as_rotvec()))
    trans = float(np.linalg.norm(T_est.translation - T_gt.translation))
    return rot, trans


def calibration_errors(calibrator: Calibrator, scenario: SyntheticScenario) -> dict[str, float]:
    frame_rot, frame_trans = zip(*(pose_error(calibrator.get_frame(f), T) for f, T in enumerate(scenario.T_kw)))
    cams = [calibrator.get_camera(c) for c in range(len(scenario.T_ck))]
    cam_rot, cam_trans = zip(*(pose_error(cp.T_ck, T) for cp, T in zip(cams, scenario.T_ck)))
    intr_rel = [
        float(np.max(np.abs(cp.camera.params - gt) / np.maximum(np.abs(gt), 1.0)))
        for cp, gt in zip(cams, scenario.intrinsics)
    ]
    return {
        "frame_rotation_error_rad": float(max(frame_rot)),
        "frame_translation_error": float(max(frame_trans)),
        "camera_rotation_error_rad": float(max(cam_rot)),
        "camera_translation_error": float(max(cam_trans)),
        "intrinsics_rel_error": float(max(intr_rel)),
    }
