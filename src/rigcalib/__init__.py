from rigcalib import config
from rigcalib.calib import Calibrator, CameraPose
from rigcalib.cam import CameraModel, FovLens, LensModel, LinearLens, Poly3Lens, Rig, lens_from_name
from rigcalib.config import CalibratorConfig, RetryPolicy, SolverOptions
from rigcalib.core.geometry import SE3
from rigcalib.core.manifold import SE3Manifold
from rigcalib.errors import ConfigurationError, NumericalFailure

__all__ = [
    "config",
    "Calibrator",
    "CameraPose",
    "CameraModel",
    "LensModel",
    "LinearLens",
    "FovLens",
    "Poly3Lens",
    "Rig",
    "lens_from_name",
    "CalibratorConfig",
    "RetryPolicy",
    "SolverOptions",
    "SE3",
    "SE3Manifold",
    "ConfigurationError",
    "NumericalFailure",
]
