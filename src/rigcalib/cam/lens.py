from __future__ import annotations

from abc import ABC, abstractmethod

import numpy as np

from rigcalib.core.distortion import FovDistortion, PolyDistortion
from rigcalib.errors import ConfigurationError


class LensModel(ABC):
    """
    Primitive projection contract every lens model implements.

    Each primitive takes the intrinsic vector explicitly, so the same model can
    be evaluated on live solver storage or on a perturbed copy. Rays and pixels
    may carry leading batch dimensions: rays are (..., 3), pixels (..., 2).
    """

    name: str = ""
    num_params: int = 0
    param_names: tuple[str, ...] = ()

    @abstractmethod
    def project(self, params: np.ndarray, ray: np.ndarray) -> np.ndarray:
        ...

    @abstractmethod
    def unproject(self, params: np.ndarray, pixel: np.ndarray) -> np.ndarray:
        """Ray with unit z component, i.e. [x, y, 1]."""

    @abstractmethod
    def dproject_dray(self, params: np.ndarray, ray: np.ndarray) -> np.ndarray:
        """Jacobian of `project` w.r.t. the ray, shape (..., 2, 3)."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def _dehomogenize(ray: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    ray = np.asarray(ray, dtype=np.float64)
    z = np.asarray(ray[..., 2])
    return ray[..., :2] / z[..., None], z


def _dnormalized_dray(ray: np.ndarray) -> np.ndarray:
    """d(x/z, y/z)/d(x, y, z), shape (..., 2, 3)."""
    ray = np.asarray(ray, dtype=np.float64)
    x, y, z = ray[..., 0], ray[..., 1], ray[..., 2]
    inv_z = 1.0 / z
    J = np.zeros(ray.shape[:-1] + (2, 3), dtype=np.float64)
    J[..., 0, 0] = inv_z
    J[..., 1, 1] = inv_z
    J[..., 0, 2] = -x * inv_z * inv_z
    J[..., 1, 2] = -y * inv_z * inv_z
    return J


def _homogeneous(xy: np.ndarray) -> np.ndarray:
    return np.concatenate([xy, np.ones(xy.shape[:-1] + (1,), dtype=np.float64)], axis=-1)


class LinearLens(LensModel):
    """Pinhole without distortion: fu, fv, u0, v0."""

    name = "linear"
    num_params = 4
    param_names = ("fu", "fv", "u0", "v0")

    def project(self, params: np.ndarray, ray: np.ndarray) -> np.ndarray:
        fu, fv, u0, v0 = params[:4]
        p, _z = _dehomogenize(ray)
        return np.stack([fu * p[..., 0] + u0, fv * p[..., 1] + v0], axis=-1)

    def unproject(self, params: np.ndarray, pixel: np.ndarray) -> np.ndarray:
        fu, fv, u0, v0 = params[:4]
        pixel = np.asarray(pixel, dtype=np.float64)
        xy = np.stack([(pixel[..., 0] - u0) / fu, (pixel[..., 1] - v0) / fv], axis=-1)
        return _homogeneous(xy)

    def dproject_dray(self, params: np.ndarray, ray: np.ndarray) -> np.ndarray:
        fu, fv = params[0], params[1]
        J = _dnormalized_dray(ray)
        J[..., 0, :] *= fu
        J[..., 1, :] *= fv
        return J


class _RadialLens(LensModel):
    """
    Pinhole followed by a radial distortion of the normalized coordinates.

    Subclasses only say how to build the distortion from params[4:].
    """

    @abstractmethod
    def distortion(self, params: np.ndarray):
        ...

    def project(self, params: np.ndarray, ray: np.ndarray) -> np.ndarray:
        fu, fv, u0, v0 = params[:4]
        p, _z = _dehomogenize(ray)
        r = np.asarray(np.linalg.norm(p, axis=-1))
        pd = p * np.asarray(self.distortion(params).factor(r))[..., None]
        return np.stack([fu * pd[..., 0] + u0, fv * pd[..., 1] + v0], axis=-1)

    def unproject(self, params: np.ndarray, pixel: np.ndarray) -> np.ndarray:
        fu, fv, u0, v0 = params[:4]
        pixel = np.asarray(pixel, dtype=np.float64)
        pd = np.stack([(pixel[..., 0] - u0) / fu, (pixel[..., 1] - v0) / fv], axis=-1)
        rd = np.asarray(np.linalg.norm(pd, axis=-1))
        p = pd * np.asarray(self.distortion(params).undistort_factor(rd))[..., None]
        return _homogeneous(p)

    def dproject_dray(self, params: np.ndarray, ray: np.ndarray) -> np.ndarray:
        fu, fv = params[0], params[1]
        dist = self.distortion(params)
        p, _z = _dehomogenize(ray)
        r = np.asarray(np.linalg.norm(p, axis=-1))
        f = np.asarray(dist.factor(r))
        df = np.asarray(dist.dfactor_dr(r))
        # d(p f(r))/dp = f I + p p^T f'(r) / r
        df_over_r = np.divide(df, r, out=np.zeros_like(r), where=r > 1e-12)
        dpd_dp = f[..., None, None] * np.eye(2) + df_over_r[..., None, None] * (p[..., :, None] * p[..., None, :])
        J = dpd_dp @ _dnormalized_dray(ray)
        J[..., 0, :] *= fu
        J[..., 1, :] *= fv
        return J


class FovLens(_RadialLens):
    """FOV/arctan model: fu, fv, u0, v0, w."""

    name = "fov"
    num_params = 5
    param_names = ("fu", "fv", "u0", "v0", "w")

    def distortion(self, params: np.ndarray) -> FovDistortion:
        return FovDistortion(w=float(params[4]))


class Poly3Lens(_RadialLens):
    """Three-term polynomial radial model: fu, fv, u0, v0, k1, k2, k3."""

    name = "poly3"
    num_params = 7
    param_names = ("fu", "fv", "u0", "v0", "k1", "k2", "k3")

    def distortion(self, params: np.ndarray) -> PolyDistortion:
        return PolyDistortion(k1=float(params[4]), k2=float(params[5]), k3=float(params[6]))


LENS_MODELS: dict[str, type[LensModel]] = {
    LinearLens.name: LinearLens,
    FovLens.name: FovLens,
    Poly3Lens.name: Poly3Lens,
}


def lens_from_name(name: str) -> LensModel:
    try:
        return LENS_MODELS[str(name)]()
    except KeyError:
        raise ConfigurationError(f"unknown lens model {name!r}; expected one of {sorted(LENS_MODELS)}") from None
