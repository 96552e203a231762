from __future__ import annotations

from typing import Iterator

from rigcalib.cam.camera import CameraModel
from rigcalib.core.geometry import SE3


class Rig:
    """
    Ordered, append-only set of cameras with their camera-to-rig poses T_wc.

    Cameras added here belong to the rig; there is no removal.
    """

    def __init__(self) -> None:
        self.cameras: list[CameraModel] = []
        self.T_wc: list[SE3] = []

    def add_camera(self, camera: CameraModel, T_wc: SE3 | None = None) -> int:
        self.cameras.append(camera)
        self.T_wc.append(SE3() if T_wc is None else T_wc.copy())
        return len(self.cameras) - 1

    def __len__(self) -> int:
        return len(self.cameras)

    def __iter__(self) -> Iterator[tuple[CameraModel, SE3]]:
        return iter(zip(self.cameras, self.T_wc))

    def __getitem__(self, i: int) -> tuple[CameraModel, SE3]:
        return self.cameras[i], self.T_wc[i]
