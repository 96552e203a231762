from __future__ import annotations

from dataclasses import dataclass

import numpy as np

_EPS_R = 1e-12


@dataclass(frozen=True)
class FovDistortion:
    """
    Field-of-view (arctan) radial distortion on normalized coordinates.

      r_d = atan(2 r tan(w/2)) / w

    `factor(r)` returns r_d / r so that x_d = x * factor(r).
    """

    w: float

    def _is_identity(self) -> bool:
        return abs(self.w) < 1e-5

    def factor(self, r: np.ndarray) -> np.ndarray:
        r = np.asarray(r, dtype=np.float64)
        if self._is_identity():
            return np.ones_like(r)
        a = 2.0 * np.tan(self.w / 2.0)
        safe = np.where(r > _EPS_R, r, 1.0)
        return np.where(r > _EPS_R, np.arctan(a * safe) / (self.w * safe), a / self.w)

    def dfactor_dr(self, r: np.ndarray) -> np.ndarray:
        r = np.asarray(r, dtype=np.float64)
        if self._is_identity():
            return np.zeros_like(r)
        a = 2.0 * np.tan(self.w / 2.0)
        big = r > 1e-4
        safe = np.where(big, r, 1.0)
        exact = (a * safe / (1.0 + (a * safe) ** 2) - np.arctan(a * safe)) / (self.w * safe * safe)
        series = -2.0 * a**3 * r / (3.0 * self.w)
        return np.where(big, exact, series)

    def undistort_factor(self, rd: np.ndarray) -> np.ndarray:
        """r / r_d for a distorted radius r_d (closed form)."""
        rd = np.asarray(rd, dtype=np.float64)
        if self._is_identity():
            return np.ones_like(rd)
        a = 2.0 * np.tan(self.w / 2.0)
        safe = np.where(rd > _EPS_R, rd, 1.0)
        return np.where(rd > _EPS_R, np.tan(safe * self.w) / (a * safe), self.w / a)


@dataclass(frozen=True)
class PolyDistortion:
    """
    Odd polynomial radial distortion on normalized coordinates.

      r_d = r (1 + k1 r^2 + k2 r^4 + k3 r^6)
    """

    k1: float = 0.0
    k2: float = 0.0
    k3: float = 0.0

    def factor(self, r: np.ndarray) -> np.ndarray:
        r2 = np.asarray(r, dtype=np.float64) ** 2
        return 1.0 + r2 * (self.k1 + r2 * (self.k2 + r2 * self.k3))

    def dfactor_dr(self, r: np.ndarray) -> np.ndarray:
        r = np.asarray(r, dtype=np.float64)
        r2 = r * r
        return r * (2.0 * self.k1 + r2 * (4.0 * self.k2 + 6.0 * self.k3 * r2))

    def undistort_factor(self, rd: np.ndarray, iterations: int = 12) -> np.ndarray:
        """
        Newton inverse of r -> r * factor(r), valid on the monotonic range.
        """
        rd = np.asarray(rd, dtype=np.float64)
        r = rd.copy()
        for _ in range(int(iterations)):
            g = r * self.factor(r) - rd
            dg = self.factor(r) + r * self.dfactor_dr(r)
            r = r - g / np.where(np.abs(dg) > _EPS_R, dg, 1.0)
        safe = np.where(rd > _EPS_R, rd, 1.0)
        return np.where(rd > _EPS_R, r / safe, 1.0)
