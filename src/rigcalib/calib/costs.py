from __future__ import annotations

from typing import Sequence

import numpy as np
from scipy.optimize import approx_fprime
from scipy.spatial.transform import Rotation

from rigcalib.cam.lens import LensModel
from rigcalib.core.geometry import rotate_point_dquat
from rigcalib.solver.problem import CostFunction

_REL_STEP = 1.5e-8


class ReprojectionCost(CostFunction):
    """
    Pixel residual of one observation.

    Parameter blocks:
      0: T_kw, world (target) to keyframe, SE3 7-vector
      1: T_ck, keyframe to camera, SE3 7-vector
      2: camera intrinsics

    residual = Project(intrinsics, T_ck * (T_kw * P)) - observed
    """

    num_residuals = 2

    def __init__(self, lens: LensModel, point: np.ndarray, pixel: np.ndarray):
        self.lens = lens
        self.point = np.array(point, dtype=np.float64).reshape(3)
        self.pixel = np.array(pixel, dtype=np.float64).reshape(2)
        self.parameter_block_sizes = (7, 7, lens.num_params)

    def evaluate(
        self, parameters: Sequence[np.ndarray], jacobians: bool = False
    ) -> tuple[np.ndarray, list[np.ndarray] | None]:
        x_kw, x_ck, intrinsics = parameters
        R_kw = Rotation.from_quat(x_kw[:4])
        R_ck = Rotation.from_quat(x_ck[:4])
        P_k = R_kw.apply(self.point) + x_kw[4:]
        P_c = R_ck.apply(P_k) + x_ck[4:]
        residual = self.lens.project(intrinsics, P_c) - self.pixel
        if not jacobians:
            return residual, None

        dproj = self.lens.dproject_dray(intrinsics, P_c)
        M_ck = R_ck.as_matrix()

        dPc_dkw = np.empty((3, 7), dtype=np.float64)
        dPc_dkw[:, :4] = M_ck @ rotate_point_dquat(x_kw[:4], self.point)
        dPc_dkw[:, 4:] = M_ck

        dPc_dck = np.empty((3, 7), dtype=np.float64)
        dPc_dck[:, :4] = rotate_point_dquat(x_ck[:4], P_k)
        dPc_dck[:, 4:] = np.eye(3)

        step = _REL_STEP * np.maximum(1.0, np.abs(intrinsics))
        J_intrinsics = approx_fprime(intrinsics, lambda p: self.lens.project(p, P_c), step)
        return residual, [dproj @ dPc_dkw, dproj @ dPc_dck, J_intrinsics]
