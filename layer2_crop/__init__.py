"""
Layer 2 — Capture & Crop
Crops captured stills to the card while preserving the original for
extraction, and saves both for traceability.
"""
from .cascade import (
    CardImage,
    CardSide,
    CaptureResult,
    CropCascade,
    CropConfig,
    CropStrategy,
)
from .saver import ImageSaver

__all__ = [
    'CardImage',
    'CardSide',
    'CaptureResult',
    'CropCascade',
    'CropConfig',
    'CropStrategy',
    'ImageSaver',
]
