"""
Layer 2 — Capture & Crop Cascade
Responsibility: Turn a captured still into a card-only display image while
keeping the untouched original for the extraction service.

Cropping strategies, in order:
1. Last known boundary + 5% padding
2. Still-image fallback detection + 5% padding
3. Entire frame (never fails)
"""
import time
import cv2
import numpy as np
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple

from error_handlers import CropError, ImageDecodeError
from layer1_detection import Boundary, CardDetector

logger = logging.getLogger(__name__)


class CardSide(str, Enum):
    FRONT = 'front'
    BACK = 'back'


class CropStrategy(str, Enum):
    BOUNDARY = 'boundary'
    FALLBACK_DETECTION = 'fallback_detection'
    FULL_FRAME = 'full_frame'


@dataclass
class CropConfig:
    """Configuration for the crop cascade."""
    padding_ratio: float = 0.05          # Context kept around the card
    display_max_width: Optional[int] = None
    jpeg_quality: int = 100              # Maximum quality for OCR


@dataclass
class CardImage:
    """
    Finalized still image of one card side.

    Pixel data is read-only once created. `encoded` holds the original file
    bytes for uploads so they are submitted without re-encoding.
    """
    pixels: np.ndarray = field(repr=False)
    side: CardSide
    cropped: bool
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))
    encoded: Optional[bytes] = field(default=None, repr=False)
    jpeg_quality: int = 100

    def __post_init__(self):
        self.side = CardSide(self.side)
        view = self.pixels.view()
        view.setflags(write=False)
        self.pixels = view

    @property
    def filename(self) -> str:
        """Display copies and submission originals are told apart by name."""
        if self.cropped:
            return f"card-{self.side.value}-{self.timestamp}.jpg"
        return f"card-{self.side.value}-original-{self.timestamp}.jpg"

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def to_bytes(self) -> bytes:
        """
        Encoded image bytes.

        Raises:
            ImageDecodeError: If the pixels cannot be JPEG-encoded
        """
        if self.encoded is not None:
            return self.encoded

        ok, buffer = cv2.imencode(
            '.jpg', np.ascontiguousarray(self.pixels),
            [int(cv2.IMWRITE_JPEG_QUALITY), self.jpeg_quality]
        )
        if not ok:
            raise ImageDecodeError(self.filename, reason="JPEG encoding failed")
        self.encoded = buffer.tobytes()
        return self.encoded

    def to_dict(self) -> Dict:
        return {
            'filename': self.filename,
            'side': self.side.value,
            'cropped': self.cropped,
            'width': self.width,
            'height': self.height
        }


@dataclass
class CaptureResult:
    """Display copy plus submission original for one captured side."""
    cropped: CardImage
    original: CardImage
    strategy: CropStrategy
    boundary: Optional[Boundary] = None

    def to_dict(self) -> Dict:
        return {
            'strategy': self.strategy.value,
            'boundary': self.boundary.to_dict() if self.boundary else None,
            'cropped': self.cropped.to_dict(),
            'original': self.original.to_dict()
        }


class CropCascade:
    """
    Crops captured stills to the card region with graceful degradation.
    capture() always returns an image; the worst case is the full frame.
    """

    def __init__(self, detector: Optional[CardDetector] = None,
                 config: Optional[CropConfig] = None):
        """
        Initialize crop cascade

        Args:
            detector: Detector used for the still-image fallback pass
            config: Crop configuration
        """
        self.detector = detector or CardDetector()
        self.config = config or CropConfig()

        logger.info("CropCascade initialized")
        logger.debug(f"  Padding ratio: {self.config.padding_ratio}")
        logger.debug(f"  Display max width: {self.config.display_max_width}")

    def capture(self, frame: np.ndarray, side, boundary: Optional[Boundary] = None,
                encoded: Optional[bytes] = None) -> CaptureResult:
        """
        Produce the display crop and the untouched original for one side.

        Args:
            frame: Captured still (BGR)
            side: 'front' or 'back'
            boundary: Last trusted boundary from live detection, if any
            encoded: Original file bytes when the still came from an upload

        Returns:
            CaptureResult: cropped display image, original image, strategy used

        Raises:
            ImageDecodeError: If frame is not an image array at all
        """
        if not isinstance(frame, np.ndarray) or frame.ndim not in (2, 3) or frame.size == 0:
            raise ImageDecodeError("capture", reason="frame has no pixel data")

        timestamp = int(time.time() * 1000)
        original = CardImage(
            pixels=frame,
            side=side,
            cropped=False,
            timestamp=timestamp,
            encoded=encoded,
            jpeg_quality=self.config.jpeg_quality
        )

        cropped_pixels, strategy, used_boundary = self._run_cascade(frame, boundary)
        cropped_pixels = self._resample_for_display(cropped_pixels)

        cropped = CardImage(
            pixels=cropped_pixels,
            side=side,
            cropped=True,
            timestamp=timestamp,
            jpeg_quality=self.config.jpeg_quality
        )

        logger.info(f"Captured {original.side.value} side using {strategy.value} "
                    f"({cropped.width}x{cropped.height} from {original.width}x{original.height})")

        return CaptureResult(
            cropped=cropped,
            original=original,
            strategy=strategy,
            boundary=used_boundary
        )

    def _run_cascade(self, frame: np.ndarray,
                     boundary: Optional[Boundary]) -> Tuple[np.ndarray, CropStrategy, Optional[Boundary]]:
        if boundary is not None:
            try:
                region = self.padded_region(boundary, frame.shape[1], frame.shape[0])
                return self._slice(frame, region), CropStrategy.BOUNDARY, region
            except CropError as e:
                logger.warning(f"Failed to crop with detected boundary, trying edge detection: {e.message}")
        else:
            logger.debug("No card boundary supplied, using edge detection fallback")

        try:
            sample = self.detector.detect_still(frame)
            if sample.found and sample.boundary is not None:
                region = self.padded_region(sample.boundary, frame.shape[1], frame.shape[0])
                return self._slice(frame, region), CropStrategy.FALLBACK_DETECTION, region
            logger.warning("No card contour detected, using full image as fallback")
        except CropError as e:
            logger.warning(f"Fallback crop failed, using full image: {e.message}")
        except Exception as e:
            logger.warning(f"Error in edge detection, using full image: {e}")

        return frame, CropStrategy.FULL_FRAME, None

    def padded_region(self, boundary: Boundary, frame_width: int, frame_height: int) -> Boundary:
        """
        Expand a boundary by the padding ratio on every side, clamped to
        the frame.

        Raises:
            CropError: If nothing of the boundary remains inside the frame
        """
        if boundary.width <= 0 or boundary.height <= 0:
            raise CropError("boundary has no area", boundary.to_dict())

        padding_x = int(boundary.width * self.config.padding_ratio)
        padding_y = int(boundary.height * self.config.padding_ratio)

        x = max(0, boundary.x - padding_x)
        y = max(0, boundary.y - padding_y)
        width = min(frame_width - x, boundary.width + padding_x * 2)
        height = min(frame_height - y, boundary.height + padding_y * 2)

        region = Boundary(x, y, width, height)
        if not region.is_within(frame_width, frame_height):
            raise CropError("boundary lies outside the frame", boundary.to_dict())

        return region

    def _slice(self, frame: np.ndarray, region: Boundary) -> np.ndarray:
        return frame[region.y:region.y + region.height,
                     region.x:region.x + region.width].copy()

    def _resample_for_display(self, pixels: np.ndarray) -> np.ndarray:
        """Downscale wide crops with area interpolation; never upscales."""
        max_width = self.config.display_max_width
        if not max_width or pixels.shape[1] <= max_width:
            return pixels

        scale = max_width / float(pixels.shape[1])
        new_size = (max_width, max(1, int(round(pixels.shape[0] * scale))))
        try:
            return cv2.resize(pixels, new_size, interpolation=cv2.INTER_AREA)
        except cv2.error as e:
            logger.warning(f"Display resample failed, keeping full resolution: {e}")
            return pixels
