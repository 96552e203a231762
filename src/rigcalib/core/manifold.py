from __future__ import annotations

import numpy as np

from rigcalib.core.geometry import SE3


def _quat_increment_jacobian(q: np.ndarray) -> np.ndarray:
    """
    d(q * [w/2, 1]) / dw at w = 0, shape (4,3).

    Rows follow the [qx, qy, qz, qw] storage order.
    """
    x, y, z, w = (float(c) for c in q)
    return 0.5 * np.array(
        [
            [w, -z, y],
            [z, w, -x],
            [-y, x, w],
            [-x, -y, -z],
        ],
        dtype=np.float64,
    )


class SE3Manifold:
    """
    Right-multiplicative update for 7-vector SE3 blocks: x [+] d = x * exp(d).

    The rotation stays a unit quaternion after any update, which plain vector
    addition on the stored quaternion would not guarantee.
    """

    ambient_size = 7
    tangent_size = 6

    def plus(self, x: np.ndarray, delta: np.ndarray) -> np.ndarray:
        return SE3(x).plus(delta).data

    def minus(self, y: np.ndarray, x: np.ndarray) -> np.ndarray:
        return (SE3(x).inverse() * SE3(y)).log()

    def plus_jacobian(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x, dtype=np.float64).reshape(7)
        J = np.zeros((7, 6), dtype=np.float64)
        J[:4, 3:] = _quat_increment_jacobian(x[:4])
        J[4:, :3] = SE3(x).rotation_matrix()
        return J
