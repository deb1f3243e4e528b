"""
Layer 1 — Sharpness Estimation
Focus quality scores (0-100) for live frames and whole image files.

Two estimators with separate calibration:
- laplacian_sharpness: second-derivative variance, used on live frames
- file_sharpness: average neighbouring-pixel luminance difference, used for
  whole-file quality triage before any cropping
"""
import cv2
import numpy as np
import logging
from typing import Optional

logger = logging.getLogger(__name__)

# Score returned when pixel data cannot be decoded
DEFAULT_SCORE = 50

# Laplacian variance is divided by this before clamping at 100
LAPLACIAN_SCALE = 100.0

# Mean inter-pixel luminance difference is multiplied by this
BYTE_DIFF_SCALE = 10.0


def to_gray(frame: np.ndarray) -> np.ndarray:
    """Convert a grayscale, BGR or BGRA frame to single-channel grayscale."""
    if frame.ndim == 2:
        return frame
    channels = frame.shape[2]
    if channels == 1:
        return frame[:, :, 0]
    if channels == 4:
        return cv2.cvtColor(frame, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)


def _clamp_score(value: float) -> int:
    return int(max(0, min(100, round(value))))


def _is_decodable(frame: Optional[np.ndarray]) -> bool:
    return (
        isinstance(frame, np.ndarray)
        and frame.ndim in (2, 3)
        and frame.shape[0] > 0
        and frame.shape[1] > 0
    )


def laplacian_sharpness(frame: Optional[np.ndarray]) -> int:
    """
    Score a live frame by the variance of its Laplacian response.

    Args:
        frame: Grayscale, BGR or BGRA image

    Returns:
        int: 0-100 focus score, DEFAULT_SCORE if the frame is unusable
    """
    if not _is_decodable(frame):
        logger.debug("Laplacian sharpness: frame not decodable, using default score")
        return DEFAULT_SCORE

    try:
        gray = to_gray(frame)
        laplacian = cv2.Laplacian(gray, cv2.CV_64F)
        variance = float(laplacian.var())
    except cv2.error as e:
        logger.warning(f"Laplacian sharpness failed: {e}")
        return DEFAULT_SCORE

    return _clamp_score(min(100.0, variance / LAPLACIAN_SCALE))


def byte_difference_sharpness(frame: Optional[np.ndarray]) -> int:
    """
    Score an image by the mean absolute luminance difference between each
    pixel and the next one in row-major order.

    Luminance here is the plain channel average, not the weighted grayscale
    conversion, and the scan runs across row boundaries.

    Args:
        frame: Grayscale, BGR or BGRA image

    Returns:
        int: 0-100 focus score, DEFAULT_SCORE if the frame is unusable
    """
    if not _is_decodable(frame):
        return DEFAULT_SCORE

    if frame.ndim == 3:
        # Alpha never contributes to luminance
        luminance = frame[:, :, :3].astype(np.float64).mean(axis=2)
    else:
        luminance = frame.astype(np.float64)

    flat = luminance.ravel()
    pixel_count = flat.size
    if pixel_count < 2:
        return 0

    total_difference = float(np.abs(np.diff(flat)).sum())
    return _clamp_score(min(100.0, (total_difference / pixel_count) * BYTE_DIFF_SCALE))


def file_sharpness(data: Optional[bytes]) -> int:
    """
    Whole-file quality triage: decode an encoded image and score it with
    the byte-difference estimator.

    Args:
        data: Encoded image bytes (JPEG, PNG, ...)

    Returns:
        int: 0-100 score, DEFAULT_SCORE if the bytes cannot be decoded
    """
    if not data:
        logger.debug("File sharpness: no data, using default score")
        return DEFAULT_SCORE

    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
    if image is None:
        logger.warning("File sharpness: could not decode image, using default score")
        return DEFAULT_SCORE

    return byte_difference_sharpness(to_8bit(image))


def to_8bit(image: np.ndarray) -> np.ndarray:
    """Rescale 16-bit or float decodes to 0-255 so calibration holds."""
    if image.dtype == np.uint8:
        return image
    if np.issubdtype(image.dtype, np.integer):
        alpha = 255.0 / np.iinfo(image.dtype).max
    else:
        alpha = 255.0  # Float images decode as 0..1
    return cv2.convertScaleAbs(image, alpha=alpha)
