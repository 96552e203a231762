"""
Incremental multi-camera calibration engine.
"""

from rigcalib.calib.arena import BlockArena
from rigcalib.calib.calibrator import GAUGE_CAMERA_ID, CameraPose, Calibrator, CostTerm
from rigcalib.calib.costs import ReprojectionCost

__all__ = [
    "BlockArena",
    "Calibrator",
    "CameraPose",
    "CostTerm",
    "GAUGE_CAMERA_ID",
    "ReprojectionCost",
]
