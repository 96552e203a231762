from __future__ import annotations

import numpy as np
import pytest

from rigcalib.cam import CameraModel, lens_from_name
from rigcalib.core.geometry import SE3
from rigcalib.errors import ConfigurationError

INTRINSICS = {
    "linear": np.array([480.0, 470.0, 320.0, 240.0]),
    "fov": np.array([480.0, 470.0, 320.0, 240.0, 0.85]),
    "poly3": np.array([480.0, 470.0, 320.0, 240.0, -0.08, 0.02, -0.002]),
}
LENSES = sorted(INTRINSICS)


def _camera(name: str) -> CameraModel:
    return CameraModel(name, INTRINSICS[name])


def _rays(rng: np.random.Generator, n: int = 200) -> np.ndarray:
    xy = rng.uniform(-0.4, 0.4, size=(n, 2))
    scale = rng.uniform(0.5, 4.0, size=(n, 1))
    return np.concatenate([xy, np.ones((n, 1))], axis=1) * scale


@pytest.mark.parametrize("name", LENSES)
def test_unproject_inverts_project(name: str):
    cam = _camera(name)
    rays = _rays(np.random.default_rng(0))
    back = cam.unproject(cam.project(rays))
    assert back.shape == rays.shape
    assert np.allclose(back[:, 2], 1.0)
    assert np.allclose(back, rays / rays[:, 2:3], atol=1e-9)


@pytest.mark.parametrize("name", LENSES)
def test_project_inverts_unproject(name: str):
    cam = _camera(name)
    rng = np.random.default_rng(1)
    pix = np.stack([rng.uniform(100.0, 540.0, size=300), rng.uniform(80.0, 400.0, size=300)], axis=-1)
    assert np.allclose(cam.project(cam.unproject(pix)), pix, atol=1e-6)


@pytest.mark.parametrize("name", LENSES)
def test_project_accepts_single_ray_and_batches(name: str):
    cam = _camera(name)
    rays = _rays(np.random.default_rng(2), n=12).reshape(3, 4, 3)
    uv = cam.project(rays)
    assert uv.shape == (3, 4, 2)
    assert np.allclose(cam.project(rays[1, 2]), uv[1, 2])
    assert cam.dproject_dray(rays).shape == (3, 4, 2, 3)


@pytest.mark.parametrize("name", LENSES)
def test_principal_ray_hits_principal_point(name: str):
    cam = _camera(name)
    assert np.allclose(cam.project(np.array([0.0, 0.0, 2.5])), INTRINSICS[name][2:4])


@pytest.mark.parametrize("name", LENSES)
def test_dproject_dray_matches_finite_differences(name: str):
    cam = _camera(name)
    rays = _rays(np.random.default_rng(3), n=20)
    J = cam.dproject_dray(rays)
    h = 1e-6
    for k in range(3):
        e = np.zeros(3)
        e[k] = h
        fd = (cam.project(rays + e) - cam.project(rays - e)) / (2.0 * h)
        assert np.allclose(J[..., k], fd, atol=1e-4)


def test_fov_with_vanishing_w_is_linear():
    rays = _rays(np.random.default_rng(4), n=50)
    fov = CameraModel("fov", [480.0, 470.0, 320.0, 240.0, 0.0])
    lin = CameraModel("linear", [480.0, 470.0, 320.0, 240.0])
    assert np.allclose(fov.project(rays), lin.project(rays))
    assert np.allclose(fov.dproject_dray(rays), lin.dproject_dray(rays))


@pytest.mark.parametrize("name", LENSES)
def test_transfer3d_at_infinity_with_identity_is_project(name: str):
    cam = _camera(name)
    rays = _rays(np.random.default_rng(5), n=30)
    uv = cam.transfer3d(SE3(), rays, np.zeros(len(rays)))
    assert np.allclose(uv, cam.project(rays), atol=1e-12)


@pytest.mark.parametrize("name", LENSES)
def test_transfer3d_matches_transformed_point(name: str):
    cam = _camera(name)
    rng = np.random.default_rng(6)
    T_ba = SE3.from_rotvec([0.02, -0.03, 0.01], [0.1, -0.05, 0.02])
    rays = _rays(rng, n=30)
    rho = rng.uniform(0.1, 0.5, size=30)
    expected = cam.project(T_ba.act(rays / rho[:, None]))
    assert np.allclose(cam.transfer3d(T_ba, rays, rho), expected, atol=1e-8)


@pytest.mark.parametrize("name", LENSES)
def test_dtransfer3d_dray_matches_finite_differences(name: str):
    cam = _camera(name)
    rng = np.random.default_rng(7)
    T_ba = SE3.from_rotvec([0.02, -0.03, 0.01], [0.1, -0.05, 0.02])
    rays = _rays(rng, n=10)
    rho = rng.uniform(0.1, 0.5, size=10)
    J = cam.dtransfer3d_dray(T_ba, rays, rho)
    assert J.shape == (10, 2, 4)
    h = 1e-6
    for k in range(3):
        e = np.zeros(3)
        e[k] = h
        fd = (cam.transfer3d(T_ba, rays + e, rho) - cam.transfer3d(T_ba, rays - e, rho)) / (2.0 * h)
        assert np.allclose(J[..., k], fd, atol=1e-4)
    fd_rho = (cam.transfer3d(T_ba, rays, rho + h) - cam.transfer3d(T_ba, rays, rho - h)) / (2.0 * h)
    assert np.allclose(J[..., 3], fd_rho, atol=1e-4)


def test_camera_rejects_wrong_intrinsics_size():
    with pytest.raises(ConfigurationError):
        CameraModel("fov", [480.0, 470.0, 320.0, 240.0])


def test_camera_copies_its_params():
    params = INTRINSICS["linear"].copy()
    cam = CameraModel("linear", params)
    params[0] = 1.0
    assert cam.params[0] == 480.0
    dup = cam.copy()
    dup.params[1] = 2.0
    assert cam.params[1] == 470.0


def test_unknown_lens_name():
    with pytest.raises(ConfigurationError):
        lens_from_name("kannala")
