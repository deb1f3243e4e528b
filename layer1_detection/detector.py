"""
Layer 1 — Geometric Card Detection
Responsibility: Find the best card-shaped rectangle in a frame
Output: DetectionSample (found flag, axis-aligned Boundary, score)

Two tuned profiles share one pipeline:
- LIVE_PROFILE: per-frame detection on the camera stream
- STILL_PROFILE: last-resort pass over a captured still, more lenient and
  retrying several Canny threshold pairs
"""
import math
import cv2
import numpy as np
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .quality import laplacian_sharpness, to_gray

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Boundary:
    """Axis-aligned card region in frame pixel coordinates."""
    x: int
    y: int
    width: int
    height: int

    def is_within(self, frame_width: int, frame_height: int) -> bool:
        """Check the boundary is non-empty and lies inside the frame."""
        return (
            self.width > 0
            and self.height > 0
            and self.x >= 0
            and self.y >= 0
            and self.x + self.width <= frame_width
            and self.y + self.height <= frame_height
        )

    def to_dict(self) -> Dict:
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}

    @classmethod
    def from_dict(cls, data: Dict) -> 'Boundary':
        return cls(
            x=int(data['x']),
            y=int(data['y']),
            width=int(data['width']),
            height=int(data['height'])
        )


@dataclass
class DetectionSample:
    """Single-frame detector output."""
    found: bool
    boundary: Optional[Boundary] = None
    score: float = 0.0
    focus_quality: int = 0
    contour: Optional[np.ndarray] = field(default=None, repr=False)

    def to_dict(self) -> Dict:
        return {
            'found': self.found,
            'boundary': self.boundary.to_dict() if self.boundary else None,
            'score': round(self.score, 2),
            'focus_quality': self.focus_quality
        }


@dataclass(frozen=True)
class DetectionProfile:
    """Thresholds for one detection pass."""
    name: str
    blur_kernel: int
    canny_thresholds: Tuple[Tuple[int, int], ...]
    adaptive_threshold: bool = True
    adaptive_block_size: int = 15
    adaptive_c: int = 2
    close_kernel: int = 3
    min_area_ratio: float = 0.08
    max_area_ratio: float = 0.92
    min_fill_ratio: float = 0.70
    min_aspect_ratio: float = 1.3
    max_aspect_ratio: float = 2.0
    approx_epsilons: Tuple[float, ...] = (0.01, 0.02, 0.03, 0.04)
    min_vertices: int = 4
    max_vertices: int = 8
    measure_focus: bool = True


LIVE_PROFILE = DetectionProfile(
    name='live',
    blur_kernel=5,
    canny_thresholds=((25, 75),),
)

# Looser fill and aspect limits than LIVE_PROFILE; runs once per captured still.
STILL_PROFILE = DetectionProfile(
    name='still',
    blur_kernel=7,
    canny_thresholds=((30, 100), (50, 150), (25, 75)),
    adaptive_threshold=False,
    min_fill_ratio=0.60,
    min_aspect_ratio=1.2,
    max_aspect_ratio=2.5,
    measure_focus=False,
)


class CardDetector:
    """
    Contour-based ID card detector.

    Every contour inside the area window is considered; the candidate with
    the highest area x compactness wins.
    """

    def __init__(self, live_profile: DetectionProfile = LIVE_PROFILE,
                 still_profile: DetectionProfile = STILL_PROFILE):
        """
        Initialize card detector

        Args:
            live_profile: Thresholds for per-frame detection
            still_profile: Thresholds for the captured-still fallback pass
        """
        self.live_profile = live_profile
        self.still_profile = still_profile

        logger.info("CardDetector initialized")
        logger.debug(f"  Live profile: {live_profile}")
        logger.debug(f"  Still profile: {still_profile}")

    def detect(self, frame: np.ndarray) -> DetectionSample:
        """
        Detect a card in a live video frame.

        Args:
            frame: Grayscale, BGR or BGRA frame

        Returns:
            DetectionSample: found flag plus boundary/score when found
        """
        return self._run_profile(frame, self.live_profile)

    def detect_still(self, frame: np.ndarray) -> DetectionSample:
        """
        Lenient multi-threshold detection for a captured still image.
        Stops at the first Canny pair that yields an accepted candidate.
        """
        return self._run_profile(frame, self.still_profile)

    def _run_profile(self, frame: np.ndarray, profile: DetectionProfile) -> DetectionSample:
        height, width = frame.shape[:2]
        frame_area = float(height * width)
        focus = laplacian_sharpness(frame) if profile.measure_focus else 0

        if frame_area == 0:
            return DetectionSample(found=False, focus_quality=focus)

        prepared = self._prepare(frame, profile)

        for low, high in profile.canny_thresholds:
            edges = cv2.Canny(prepared, low, high)
            contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)

            logger.debug(f"[{profile.name}] Canny({low},{high}): {len(contours)} contours")

            best = self._select_best(contours, frame_area, profile)
            if best is not None:
                contour, boundary, score = best
                logger.debug(f"[{profile.name}] Card found: {boundary} score={score:.0f}")
                return DetectionSample(
                    found=True,
                    boundary=boundary,
                    score=score,
                    focus_quality=focus,
                    contour=contour
                )

        return DetectionSample(found=False, focus_quality=focus)

    def _prepare(self, frame: np.ndarray, profile: DetectionProfile) -> np.ndarray:
        """Grayscale, blur and (for live frames) threshold + close."""
        gray = to_gray(frame)
        if gray.dtype != np.uint8:
            gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)

        k = profile.blur_kernel
        blurred = cv2.GaussianBlur(gray, (k, k), 0)

        if not profile.adaptive_threshold:
            return blurred

        # Larger neighbourhood than the usual 11 to ride over sensor noise
        adaptive = cv2.adaptiveThreshold(
            blurred, 255,
            cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
            cv2.THRESH_BINARY,
            profile.adaptive_block_size,
            profile.adaptive_c
        )

        kernel = cv2.getStructuringElement(
            cv2.MORPH_RECT, (profile.close_kernel, profile.close_kernel)
        )
        return cv2.morphologyEx(adaptive, cv2.MORPH_CLOSE, kernel)

    def _select_best(self, contours, frame_area: float,
                     profile: DetectionProfile) -> Optional[Tuple[np.ndarray, Boundary, float]]:
        """Evaluate every eligible contour and keep the highest score."""
        min_area = frame_area * profile.min_area_ratio
        max_area = frame_area * profile.max_area_ratio

        best = None
        best_score = 0.0

        for contour in contours:
            try:
                area = cv2.contourArea(contour)
                if area < min_area or area > max_area:
                    continue

                perimeter = cv2.arcLength(contour, True)
                if perimeter <= 0:
                    continue

                if not self._has_card_polygon(contour, perimeter, profile):
                    continue

                x, y, w, h = cv2.boundingRect(contour)
                if not self._is_valid_card(area, w, h, frame_area, profile):
                    continue

                compactness = (4 * math.pi * area) / (perimeter * perimeter)
                score = area * compactness

                if score > best_score:
                    best_score = score
                    best = (contour, Boundary(int(x), int(y), int(w), int(h)), score)
            except cv2.error as e:
                logger.debug(f"Skipping malformed contour: {e}")
                continue

        return best

    def _has_card_polygon(self, contour, perimeter: float, profile: DetectionProfile) -> bool:
        """
        True if some tolerance approximates the contour with 4-8 vertices.
        Four for sharp corners, up to eight for rounded ones.
        """
        for eps in profile.approx_epsilons:
            approx = cv2.approxPolyDP(contour, eps * perimeter, True)
            if profile.min_vertices <= len(approx) <= profile.max_vertices:
                return True
        return False

    def _is_valid_card(self, area: float, width: int, height: int,
                       frame_area: float, profile: DetectionProfile) -> bool:
        """Fill ratio, aspect ratio and area ratio must all pass."""
        if width <= 0 or height <= 0:
            return False

        fill_ratio = area / float(width * height)
        aspect_ratio = max(width, height) / float(min(width, height))
        area_ratio = area / frame_area

        is_good_fill = profile.min_fill_ratio <= fill_ratio <= 1.0
        is_valid_aspect = profile.min_aspect_ratio <= aspect_ratio <= profile.max_aspect_ratio
        is_valid_size = profile.min_area_ratio <= area_ratio <= profile.max_area_ratio

        logger.debug(
            f"Card validation: aspect={aspect_ratio:.2f} ({is_valid_aspect}), "
            f"fill={fill_ratio:.2f} ({is_good_fill}), "
            f"area={area_ratio:.4f} ({is_valid_size})"
        )

        return is_good_fill and is_valid_aspect and is_valid_size

    def draw_overlay(self, frame: np.ndarray, sample: DetectionSample) -> np.ndarray:
        """
        Draw the detected card on a copy of the frame for live preview.

        Args:
            frame: BGR frame
            sample: Detection result for this frame

        Returns:
            numpy.ndarray: Annotated copy of the frame
        """
        overlay_frame = frame.copy()
        if overlay_frame.ndim == 2:
            overlay_frame = cv2.cvtColor(overlay_frame, cv2.COLOR_GRAY2BGR)
        elif overlay_frame.shape[2] == 4:
            overlay_frame = cv2.cvtColor(overlay_frame, cv2.COLOR_BGRA2BGR)

        if not sample.found or sample.boundary is None:
            return overlay_frame

        if sample.contour is not None:
            cv2.drawContours(overlay_frame, [sample.contour], -1, (0, 255, 0), 3)

        b = sample.boundary
        top_left = (b.x, b.y)
        bottom_right = (b.x + b.width - 1, b.y + b.height - 1)
        cv2.rectangle(overlay_frame, top_left, bottom_right, (255, 0, 0), 2)

        # Semi-transparent fill over the card region
        highlight = overlay_frame.copy()
        cv2.rectangle(highlight, top_left, bottom_right, (0, 255, 0), -1)
        cv2.addWeighted(overlay_frame, 0.7, highlight, 0.3, 0, overlay_frame)

        return overlay_frame
