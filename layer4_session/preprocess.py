"""
Layer 4 — Preprocessing Bridge
Passthrough layer between capture and remote extraction.

Contrast/brightness adjustment measurably lowered extraction accuracy, so
the bridge hands the original images through untouched by default. The
seam stays so enhancements can be switched back on per deployment.
"""
import numpy as np
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from layer2_crop import CardImage

logger = logging.getLogger(__name__)


@dataclass
class EnhancementConfig:
    """Configuration for image enhancements."""
    enable_contrast: bool = False
    contrast_gain: float = 1.2      # Stretch around mid-gray
    contrast_pivot: float = 128.0


class ImageBridge:
    """
    Image processing bridge between capture and extraction.
    Acts as passthrough unless an enhancement is enabled.
    """

    def __init__(self, config: Optional[EnhancementConfig] = None):
        """
        Initialize image bridge.

        Args:
            config: Enhancement configuration (passthrough if None)
        """
        self.config = config or EnhancementConfig()
        self._stats = {
            'images_processed': 0,
            'images_enhanced': 0
        }

        logger.info("ImageBridge initialized")
        logger.debug(f"Enhancements enabled: contrast={self.config.enable_contrast}")

    def process(self, image: CardImage) -> CardImage:
        """
        Process one card image ahead of extraction.

        Args:
            image: Uncropped original card image

        Returns:
            CardImage: The same object in passthrough mode, else a new image
        """
        self._stats['images_processed'] += 1

        if not self.config.enable_contrast:
            logger.debug(f"Skipping preprocessing for {image.filename}")
            return image

        pixels = self._stretch_contrast(np.asarray(image.pixels))
        self._stats['images_enhanced'] += 1

        return CardImage(
            pixels=pixels,
            side=image.side,
            cropped=image.cropped,
            timestamp=image.timestamp,
            jpeg_quality=image.jpeg_quality
        )

    def _stretch_contrast(self, pixels: np.ndarray) -> np.ndarray:
        cfg = self.config
        stretched = (pixels.astype(np.float32) - cfg.contrast_pivot) * cfg.contrast_gain + cfg.contrast_pivot
        return np.clip(stretched, 0, 255).astype(np.uint8)

    def get_stats(self) -> Dict:
        """Get processing statistics."""
        return self._stats.copy()
