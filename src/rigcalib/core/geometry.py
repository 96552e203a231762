from __future__ import annotations

import numpy as np
from scipy.spatial.transform import Rotation

_SMALL_ANGLE = 1e-8


def skew(v: np.ndarray) -> np.ndarray:
    """Cross-product matrix [v]x such that [v]x @ w == v x w."""
    x, y, z = (float(c) for c in np.asarray(v, dtype=np.float64).reshape(3))
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]], dtype=np.float64)


def _left_jacobian_so3(w: np.ndarray) -> np.ndarray:
    """V(w) in exp([v, w]) = (exp(w), V(w) v)."""
    theta = float(np.linalg.norm(w))
    K = skew(w)
    if theta < _SMALL_ANGLE:
        return np.eye(3) + 0.5 * K + (K @ K) / 6.0
    a = (1.0 - np.cos(theta)) / theta**2
    b = (theta - np.sin(theta)) / theta**3
    return np.eye(3) + a * K + b * (K @ K)


def _left_jacobian_so3_inv(w: np.ndarray) -> np.ndarray:
    theta = float(np.linalg.norm(w))
    K = skew(w)
    if theta < _SMALL_ANGLE:
        return np.eye(3) - 0.5 * K + (K @ K) / 12.0
    c = (1.0 - theta * np.sin(theta) / (2.0 * (1.0 - np.cos(theta)))) / theta**2
    return np.eye(3) - 0.5 * K + c * (K @ K)


class SE3:
    """
    Rigid transform stored as a 7-vector `[qx, qy, qz, qw, tx, ty, tz]`.

    The quaternion is scalar-last (scipy convention). `T_ab * p` maps a point
    from frame b into frame a. Tangent vectors are ordered `[v, w]`
    (translation part first, then rotation vector).
    """

    __slots__ = ("data",)

    def __init__(self, data: np.ndarray | None = None):
        if data is None:
            data = np.array([0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0], dtype=np.float64)
        self.data = np.array(data, dtype=np.float64).reshape(7)

    @classmethod
    def identity(cls) -> "SE3":
        return cls()

    @classmethod
    def from_rotation_translation(cls, rotation: Rotation, translation: np.ndarray) -> "SE3":
        q = rotation.as_quat()
        t = np.asarray(translation, dtype=np.float64).reshape(3)
        return cls(np.concatenate([q, t]))

    @classmethod
    def from_rotvec(cls, rvec: np.ndarray, tvec: np.ndarray | None = None) -> "SE3":
        t = np.zeros(3) if tvec is None else tvec
        return cls.from_rotation_translation(Rotation.from_rotvec(np.asarray(rvec, dtype=np.float64).reshape(3)), t)

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> "SE3":
        T = np.asarray(T, dtype=np.float64)
        if T.shape not in ((4, 4), (3, 4)):
            raise ValueError("T must be 4x4 or 3x4")
        return cls.from_rotation_translation(Rotation.from_matrix(T[:3, :3]), T[:3, 3])

    @classmethod
    def exp(cls, xi: np.ndarray) -> "SE3":
        xi = np.asarray(xi, dtype=np.float64).reshape(6)
        v, w = xi[:3], xi[3:]
        t = _left_jacobian_so3(w) @ v
        return cls.from_rotation_translation(Rotation.from_rotvec(w), t)

    def log(self) -> np.ndarray:
        w = self.rotation.as_rotvec()
        v = _left_jacobian_so3_inv(w) @ self.translation
        return np.concatenate([v, w])

    @property
    def quaternion(self) -> np.ndarray:
        return self.data[:4]

    @property
    def translation(self) -> np.ndarray:
        return self.data[4:]

    @property
    def rotation(self) -> Rotation:
        return Rotation.from_quat(self.data[:4])

    def rotation_matrix(self) -> np.ndarray:
        return self.rotation.as_matrix()

    def matrix(self) -> np.ndarray:
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation_matrix()
        T[:3, 3] = self.translation
        return T

    def matrix3x4(self) -> np.ndarray:
        return self.matrix()[:3, :]

    def inverse(self) -> "SE3":
        r_inv = self.rotation.inv()
        return SE3.from_rotation_translation(r_inv, -r_inv.apply(self.translation))

    def act(self, points: np.ndarray) -> np.ndarray:
        """Apply the transform to points shaped (3,) or (N,3)."""
        points = np.asarray(points, dtype=np.float64)
        return self.rotation.apply(points) + self.translation

    def plus(self, delta: np.ndarray) -> "SE3":
        return self * SE3.exp(delta)

    def copy(self) -> "SE3":
        return SE3(self.data)

    def __mul__(self, other: "SE3") -> "SE3":
        if not isinstance(other, SE3):
            return NotImplemented
        r = self.rotation * other.rotation
        t = self.rotation.apply(other.translation) + self.translation
        return SE3.from_rotation_translation(r, t)

    def __repr__(self) -> str:
        q = ", ".join(f"{c:.6g}" for c in self.quaternion)
        t = ", ".join(f"{c:.6g}" for c in self.translation)
        return f"SE3(q=[{q}], t=[{t}])"


def rotate_point_dquat(q: np.ndarray, p: np.ndarray) -> np.ndarray:
    """
    Derivative (3,4) of R(q) p with respect to q = [qx, qy, qz, qw].

    Uses R(q) p = p + 2 qw (u x p) + 2 u x (u x p), u = q[:3], which matches
    the normalized rotation on the unit sphere.
    """
    q = np.asarray(q, dtype=np.float64).reshape(4)
    p = np.asarray(p, dtype=np.float64).reshape(3)
    u = q[:3]
    qw = q[3]
    J = np.empty((3, 4), dtype=np.float64)
    J[:, :3] = -2.0 * qw * skew(p) + 2.0 * (float(u @ p) * np.eye(3) + np.outer(u, p) - 2.0 * np.outer(p, u))
    J[:, 3] = 2.0 * np.cross(u, p)
    return J
