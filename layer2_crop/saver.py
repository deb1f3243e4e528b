"""
Layer 2 — Capture & Crop Cascade
Component: Image and JSON saver
Responsibility: Save captured card images and scan results for traceability
"""
import os
import json
import logging
from datetime import datetime

logger = logging.getLogger(__name__)


class ImageSaver:
    """Handles saving captured card images and scan results"""

    def __init__(self, base_dir="captured_cards"):
        """
        Initialize saver

        Args:
            base_dir: Base directory (default: "captured_cards")

        Directory structure:
            captured_cards/
            ├── captured_images/  # display crops and submission originals
            └── captured_json/    # scan session results
        """
        self.base_dir = base_dir
        self.images_dir = os.path.join(base_dir, "captured_images")
        self.json_dir = os.path.join(base_dir, "captured_json")

        self._ensure_directories()

        logger.info("ImageSaver initialized")
        logger.debug(f"  Images dir: {self.images_dir}")
        logger.debug(f"  JSON dir: {self.json_dir}")

    def _ensure_directories(self):
        """Create directory structure if it doesn't exist"""
        for directory in [self.base_dir, self.images_dir, self.json_dir]:
            if not os.path.exists(directory):
                os.makedirs(directory)
                logger.info(f"Created directory: {directory}")

    def save_image(self, card_image):
        """
        Save one CardImage under its own filename

        Returns:
            str: Path of the written file
        """
        filepath = os.path.join(self.images_dir, card_image.filename)

        logger.info(f"Saving image to: {filepath}")
        with open(filepath, 'wb') as f:
            f.write(card_image.to_bytes())

        return filepath

    def save_capture(self, capture_result):
        """
        Save both variants of a captured side

        Args:
            capture_result: CaptureResult from the crop cascade

        Returns:
            dict: Paths of the display copy and the submission original
        """
        cropped_path = self.save_image(capture_result.cropped)
        original_path = self.save_image(capture_result.original)

        return {
            "timestamp": capture_result.original.timestamp,
            "cropped_path": cropped_path,
            "original_path": original_path,
            "strategy": capture_result.strategy.value
        }

    def save_result_json(self, result_data, session_id):
        """
        Save scan session result to captured_json/ folder

        Args:
            result_data: Dictionary containing the session result
            session_id: Identifier used for the filename

        Returns:
            str: Path to saved JSON file
        """
        json_filename = f"scan_{session_id}.json"
        json_filepath = os.path.join(self.json_dir, json_filename)

        full_data = {
            **result_data,
            "saved_at": datetime.now().isoformat()
        }

        logger.info(f"Saving JSON to: {json_filepath}")
        with open(json_filepath, 'w', encoding='utf-8') as f:
            json.dump(full_data, f, indent=2, ensure_ascii=False)

        return json_filepath
