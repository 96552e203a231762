from __future__ import annotations

import numpy as np
import pytest

from rigcalib.calib.costs import ReprojectionCost
from rigcalib.cam import lens_from_name
from rigcalib.core.geometry import SE3
from rigcalib.core.manifold import SE3Manifold

INTRINSICS = {
    "linear": np.array([500.0, 495.0, 320.0, 240.0]),
    "fov": np.array([500.0, 495.0, 320.0, 240.0, 0.9]),
    "poly3": np.array([500.0, 495.0, 320.0, 240.0, -0.05, 0.01, 0.001]),
}


def _setup(name: str):
    lens = lens_from_name(name)
    T_kw = SE3.from_rotvec([0.05, -0.1, 0.02], [0.1, -0.2, 3.0])
    T_ck = SE3.from_rotvec([0.01, 0.03, -0.02], [-0.3, 0.01, 0.02])
    point = np.array([0.4, -0.3, 0.2])
    pixel = lens.project(INTRINSICS[name], (T_ck * T_kw).act(point)) + np.array([0.7, -1.1])
    cost = ReprojectionCost(lens, point, pixel)
    return cost, [T_kw.data.copy(), T_ck.data.copy(), INTRINSICS[name].copy()]


@pytest.mark.parametrize("name", sorted(INTRINSICS))
def test_residual_is_projection_minus_observation(name: str):
    cost, params = _setup(name)
    r, J = cost.evaluate(params)
    assert J is None
    assert np.allclose(r, [-0.7, 1.1], atol=1e-9)
    assert cost.parameter_block_sizes == (7, 7, len(INTRINSICS[name]))


@pytest.mark.parametrize("name", sorted(INTRINSICS))
def test_pose_jacobians_match_finite_differences_in_tangent_space(name: str):
    cost, params = _setup(name)
    m = SE3Manifold()
    _r, J = cost.evaluate(params, jacobians=True)
    h = 1e-6
    for block in (0, 1):
        J_tangent = J[block] @ m.plus_jacobian(params[block])
        for i in range(6):
            e = np.zeros(6)
            e[i] = h
            plus = list(params)
            minus = list(params)
            plus[block] = m.plus(params[block], e)
            minus[block] = m.plus(params[block], -e)
            fd = (cost.evaluate(plus)[0] - cost.evaluate(minus)[0]) / (2.0 * h)
            assert np.allclose(J_tangent[:, i], fd, atol=1e-4)


@pytest.mark.parametrize("name", sorted(INTRINSICS))
def test_intrinsics_jacobian_matches_finite_differences(name: str):
    cost, params = _setup(name)
    _r, J = cost.evaluate(params, jacobians=True)
    h = 1e-7
    for i in range(params[2].size):
        plus = [p.copy() for p in params]
        minus = [p.copy() for p in params]
        plus[2][i] += h
        minus[2][i] -= h
        fd = (cost.evaluate(plus)[0] - cost.evaluate(minus)[0]) / (2.0 * h)
        assert np.allclose(J[2][:, i], fd, rtol=1e-5, atol=1e-4)
