"""
Camera models: the primitive lens contract, the camera wrapper and the rig.
"""

from rigcalib.cam.camera import CameraModel
from rigcalib.cam.lens import LENS_MODELS, FovLens, LensModel, LinearLens, Poly3Lens, lens_from_name
from rigcalib.cam.rig import Rig

__all__ = [
    "CameraModel",
    "LensModel",
    "LinearLens",
    "FovLens",
    "Poly3Lens",
    "LENS_MODELS",
    "lens_from_name",
    "Rig",
]
