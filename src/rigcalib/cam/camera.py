from __future__ import annotations

import numpy as np

from rigcalib.cam.lens import LensModel, lens_from_name
from rigcalib.core.geometry import SE3
from rigcalib.errors import ConfigurationError


class CameraModel:
    """
    A lens model bound to its intrinsic vector.

    Lens models provide project / unproject / dproject_dray; the multi-view
    transfer operations are derived here from those three primitives only.
    """

    def __init__(self, lens: LensModel | str, params: np.ndarray):
        if isinstance(lens, str):
            lens = lens_from_name(lens)
        params = np.array(params, dtype=np.float64).reshape(-1)
        if params.size != lens.num_params:
            raise ConfigurationError(
                f"{lens.name} expects {lens.num_params} intrinsics ({', '.join(lens.param_names)}), got {params.size}"
            )
        self.lens = lens
        self.params = params

    @property
    def num_params(self) -> int:
        return self.lens.num_params

    def project(self, ray: np.ndarray) -> np.ndarray:
        return self.lens.project(self.params, ray)

    def unproject(self, pixel: np.ndarray) -> np.ndarray:
        return self.lens.unproject(self.params, pixel)

    def dproject_dray(self, ray: np.ndarray) -> np.ndarray:
        return self.lens.dproject_dray(self.params, ray)

    @staticmethod
    def _transfer_ray(T_ba: SE3, ray: np.ndarray, rho) -> tuple[np.ndarray, np.ndarray]:
        R = T_ba.rotation_matrix()
        ray = np.asarray(ray, dtype=np.float64)
        rho = np.asarray(rho, dtype=np.float64)
        return ray @ R.T + rho[..., None] * T_ba.translation, R

    def transfer3d(self, T_ba: SE3, ray: np.ndarray, rho) -> np.ndarray:
        """
        Project the point with bearing `ray` and inverse depth `rho` (frame a)
        into this camera at frame b. rho = 0 transfers a point at infinity.
        """
        ray_b, _R = self._transfer_ray(T_ba, ray, rho)
        return self.project(ray_b)

    def dtransfer3d_dray(self, T_ba: SE3, ray: np.ndarray, rho) -> np.ndarray:
        """Jacobian (..., 2, 4) of `transfer3d` w.r.t. (ray, rho)."""
        ray_b, R = self._transfer_ray(T_ba, ray, rho)
        dproj = self.dproject_dray(ray_b)
        J = np.empty(dproj.shape[:-1] + (4,), dtype=np.float64)
        J[..., :3] = dproj @ R
        J[..., 3] = dproj @ T_ba.translation
        return J

    def copy(self) -> "CameraModel":
        return CameraModel(self.lens, self.params)

    def __repr__(self) -> str:
        values = ", ".join(f"{n}={v:.6g}" for n, v in zip(self.lens.param_names, self.params))
        return f"CameraModel({self.lens.name}: {values})"
