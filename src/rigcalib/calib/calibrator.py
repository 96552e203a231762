from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

import numpy as np

from rigcalib.cam.camera import CameraModel
from rigcalib.cam.lens import LensModel, lens_from_name
from rigcalib.cam.rig import Rig
from rigcalib.calib.arena import BlockArena
from rigcalib.calib.costs import ReprojectionCost
from rigcalib.config import CalibratorConfig
from rigcalib.core.geometry import SE3
from rigcalib.core.manifold import SE3Manifold
from rigcalib.errors import ConfigurationError, NumericalFailure
from rigcalib.solver.problem import Problem, SolverSummary, solve

logger = logging.getLogger(__name__)

# Its extrinsic pose is held constant in every round to remove the global
# rigid-transform ambiguity.
GAUGE_CAMERA_ID = 0


@dataclass(frozen=True)
class CameraPose:
    camera: CameraModel
    T_ck: SE3  # keyframe to camera


@dataclass(frozen=True)
class CostTerm:
    frame_id: int
    camera_id: int
    cost: ReprojectionCost


def _checked_pose(T: SE3 | None, name: str) -> SE3:
    if T is None:
        return SE3()
    if not np.all(np.isfinite(T.data)):
        raise ConfigurationError(f"{name} must be finite, got {T!r}")
    if np.linalg.norm(T.quaternion) < 1e-12:
        raise ConfigurationError(f"{name} has a zero-norm quaternion")
    return T


class Calibrator:
    """
    Incremental rig calibration with a background bundle-adjustment loop.

    Cameras, frames and observations may be added from any thread at any time.
    Each round of the loop snapshots the current cost terms under the structural
    lock, then solves without holding it; the minimizer writes the frame and
    camera storage in place, so estimates read between rounds are live.
    """

    def __init__(self, lens: LensModel | str | None = None, config: CalibratorConfig | None = None):
        self.config = config or CalibratorConfig()
        if lens is None:
            lens = self.config.lens
        self.lens = lens_from_name(lens) if isinstance(lens, str) else lens
        self._manifold = SE3Manifold()

        self._lock = threading.Lock()  # structural lists
        self._lifecycle_lock = threading.Lock()  # start / stop / clear
        self._rounds = threading.Condition()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        self._rounds_completed = 0
        self._failed_rounds = 0
        self._last_summary: SolverSummary | None = None
        self._loop_active = False
        self._reset_storage()

    def _reset_storage(self) -> None:
        seg = self.config.segment_size
        self._frames = BlockArena(7, seg)
        self._extrinsics = BlockArena(7, seg)
        self._intrinsics = BlockArena(self.lens.num_params, seg)
        self._terms: list[CostTerm] = []

    # -- structure ---------------------------------------------------------

    def add_camera(self, intrinsics: np.ndarray, T_ck: SE3 | None = None) -> int:
        camera = CameraModel(self.lens, intrinsics)
        T_ck = _checked_pose(T_ck, "T_ck")
        with self._lock:
            camera_id = self._intrinsics.append(camera.params)
            self._extrinsics.append(T_ck.data)
        return camera_id

    def add_frame(self, T_kw: SE3 | None = None) -> int:
        T_kw = _checked_pose(T_kw, "T_kw")
        with self._lock:
            return self._frames.append(T_kw.data)

    def add_observation(self, frame_id: int, camera_id: int, point_3d: np.ndarray, pixel: np.ndarray) -> None:
        """
        Add one correspondence: `point_3d` is a target point mapped to the camera
        through T_ck * T_kw, `pixel` its observed projection.
        """
        point = np.asarray(point_3d, dtype=np.float64).reshape(-1)
        pix = np.asarray(pixel, dtype=np.float64).reshape(-1)
        if point.size != 3:
            raise ConfigurationError(f"point_3d must have 3 coordinates, got {point.size}")
        if pix.size != 2:
            raise ConfigurationError(f"pixel must have 2 coordinates, got {pix.size}")
        frame_id = int(frame_id)
        camera_id = int(camera_id)
        with self._lock:
            if not 0 <= frame_id < len(self._frames):
                raise ConfigurationError(f"frame id {frame_id} out of range [0, {len(self._frames)})")
            if not 0 <= camera_id < len(self._extrinsics):
                raise ConfigurationError(f"camera id {camera_id} out of range [0, {len(self._extrinsics)})")
            cost = ReprojectionCost(self.lens, point, pix)
            self._terms.append(CostTerm(frame_id=frame_id, camera_id=camera_id, cost=cost))

    def add_rig(self, rig: Rig) -> list[int]:
        """Add every rig camera, using T_ck = T_wc^-1 as its initial extrinsic."""
        for camera, _T_wc in rig:
            if camera.lens.name != self.lens.name:
                raise ConfigurationError(f"rig camera uses lens {camera.lens.name!r}, calibrator uses {self.lens.name!r}")
        return [self.add_camera(camera.params, T_wc.inverse()) for camera, T_wc in rig]

    def to_rig(self) -> Rig:
        rig = Rig()
        for c in range(self.num_cameras()):
            cp = self.get_camera(c)
            rig.add_camera(cp.camera, cp.T_ck.inverse())
        return rig

    def clear(self) -> None:
        with self._lifecycle_lock:
            if self.running:
                raise ConfigurationError("cannot clear while the calibration loop is running")
            with self._lock:
                self._reset_storage()

    # -- reads (not synchronized with a running round) ---------------------

    def num_frames(self) -> int:
        return len(self._frames)

    def num_cameras(self) -> int:
        return len(self._extrinsics)

    def num_observations(self) -> int:
        return len(self._terms)

    def get_frame(self, frame_id: int) -> SE3:
        if not 0 <= int(frame_id) < self.num_frames():
            raise ConfigurationError(f"frame id {frame_id} out of range")
        return SE3(self._frames[frame_id].copy())

    def get_camera(self, camera_id: int) -> CameraPose:
        if not 0 <= int(camera_id) < self.num_cameras():
            raise ConfigurationError(f"camera id {camera_id} out of range")
        camera = CameraModel(self.lens, self._intrinsics[camera_id].copy())
        return CameraPose(camera=camera, T_ck=SE3(self._extrinsics[camera_id].copy()))

    # -- solving -----------------------------------------------------------

    def _snapshot(self) -> tuple[Problem, int]:
        problem = Problem()
        with self._lock:
            n_frames = len(self._frames)
            n_cameras = len(self._extrinsics)
            for c in range(n_cameras):
                problem.add_parameter_block(("extrinsics", c), self._extrinsics[c], self._manifold)
                problem.add_parameter_block(("intrinsics", c), self._intrinsics[c])
            if n_cameras > 0:
                problem.set_parameter_block_constant(("extrinsics", GAUGE_CAMERA_ID))
            for f in range(n_frames):
                problem.add_parameter_block(("frame", f), self._frames[f], self._manifold)
            for term in self._terms:
                problem.add_residual_block(
                    term.cost,
                    (("frame", term.frame_id), ("extrinsics", term.camera_id), ("intrinsics", term.camera_id)),
                )
        return problem, n_frames

    def solve_round(self) -> SolverSummary | None:
        """
        Snapshot, solve and report once. Returns None when there is nothing to
        solve; raises NumericalFailure when the minimizer fails.
        """
        problem, n_frames = self._snapshot()
        if problem.num_residuals == 0:
            return None
        summary = solve(problem, self.config.solver)
        self._last_summary = summary
        logger.debug(summary.brief_report())
        logger.info(
            "Frames: %d; Observations: %d; Residuals: %d; mse: %.6g",
            n_frames,
            summary.num_residual_blocks,
            summary.num_residuals,
            summary.mse,
        )
        if not summary.converged:
            logger.info("round ended before convergence: %s", summary.message)
        return summary

    def _finish_round(self, failed: bool) -> None:
        with self._rounds:
            self._rounds_completed += 1
            if failed:
                self._failed_rounds += 1
            self._rounds.notify_all()

    def _solve_loop(self, stop_event: threading.Event) -> None:
        retry = self.config.retry
        failures = 0
        logger.info("calibration loop started")
        try:
            while not stop_event.is_set():
                try:
                    summary = self.solve_round()
                except NumericalFailure as exc:
                    failures += 1
                    self._finish_round(failed=True)
                    logger.warning("solve round failed (%d in a row): %s", failures, exc)
                    if retry.exhausted(failures):
                        logger.error("giving up after %d consecutive failed rounds", failures)
                        break
                    stop_event.wait(retry.delay(failures))
                    continue
                failures = 0
                self._finish_round(failed=False)
                if summary is None:
                    stop_event.wait(self.config.idle_interval_s)
        finally:
            with self._rounds:
                self._loop_active = False
                self._rounds.notify_all()
            logger.info("calibration loop exited after %d rounds", self.rounds_completed)

    # -- lifecycle ---------------------------------------------------------

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    @property
    def rounds_completed(self) -> int:
        with self._rounds:
            return self._rounds_completed

    @property
    def failed_rounds(self) -> int:
        with self._rounds:
            return self._failed_rounds

    @property
    def last_summary(self) -> SolverSummary | None:
        return self._last_summary

    def start(self) -> bool:
        with self._lifecycle_lock:
            if self.running:
                logger.warning("calibration loop is already running")
                return False
            if self._thread is not None:
                self._thread.join()
            self._stop_event = threading.Event()
            with self._rounds:
                self._loop_active = True
            self._thread = threading.Thread(
                target=self._solve_loop, args=(self._stop_event,), name="rigcalib-solver", daemon=True
            )
            self._thread.start()
            return True

    def stop(self) -> bool:
        """
        Ask the loop to finish its current round and wait for it. There is no
        way to interrupt the minimizer itself mid-round.
        """
        with self._lifecycle_lock:
            thread = self._thread
            if thread is None or not thread.is_alive():
                self._thread = None
                logger.warning("calibration loop is not running")
                return False
            self._stop_event.set()
            thread.join()
            self._thread = None
        self._log_cameras()
        return True

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the loop to exit on its own; True once it has."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def wait_for_rounds(self, count: int, timeout: float | None = None) -> bool:
        """Block until at least `count` rounds have completed in total."""
        with self._rounds:
            self._rounds.wait_for(lambda: self._rounds_completed >= count or not self._loop_active, timeout)
            return self._rounds_completed >= count

    def _log_cameras(self) -> None:
        for c in range(self.num_cameras()):
            cp = self.get_camera(c)
            logger.info("camera %d: %s\n%s", c, cp.camera, np.array2string(cp.T_ck.matrix3x4(), precision=6))

    def __enter__(self) -> "Calibrator":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
