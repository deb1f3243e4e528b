"""
Layer 1 — Detection
Live card detection: frame sources, sharpness scoring, contour-based
card detection, temporal stability and the detection loop session.
"""
from .camera import CameraHandler, decode_image, read_image_file
from .quality import (
    laplacian_sharpness,
    byte_difference_sharpness,
    file_sharpness,
)
from .detector import (
    Boundary,
    CardDetector,
    DetectionProfile,
    DetectionSample,
    LIVE_PROFILE,
    STILL_PROFILE,
)
from .stability import StabilityConfig, StabilityFilter, StableDetectionState
from .session import DetectionLoopConfig, DetectorSession

__all__ = [
    'CameraHandler',
    'decode_image',
    'read_image_file',
    'laplacian_sharpness',
    'byte_difference_sharpness',
    'file_sharpness',
    'Boundary',
    'CardDetector',
    'DetectionProfile',
    'DetectionSample',
    'LIVE_PROFILE',
    'STILL_PROFILE',
    'StabilityConfig',
    'StabilityFilter',
    'StableDetectionState',
    'DetectionLoopConfig',
    'DetectorSession',
]
