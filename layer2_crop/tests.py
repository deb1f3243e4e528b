"""
Tests for the capture & crop cascade and image saving.
"""
import json
import os
from unittest.mock import Mock

import numpy as np
import pytest

from error_handlers import ImageDecodeError
from layer1_detection import Boundary
from layer2_crop import (
    CardImage,
    CardSide,
    CropCascade,
    CropConfig,
    CropStrategy,
    ImageSaver,
)


class TestCropCascade:
    """Test the three-step crop cascade."""

    def test_crop_with_boundary_adds_padding(self, card_frame):
        result = CropCascade().capture(card_frame, 'front', boundary=Boundary(160, 140, 320, 200))

        assert result.strategy is CropStrategy.BOUNDARY
        assert result.boundary == Boundary(144, 130, 352, 220)
        assert result.cropped.pixels.shape == (220, 352, 3)

    def test_padding_clamped_to_frame(self, card_frame):
        result = CropCascade().capture(card_frame, 'front', boundary=Boundary(0, 0, 320, 200))

        assert result.boundary == Boundary(0, 0, 352, 220)
        assert result.boundary.is_within(640, 480)

    def test_original_is_untouched(self, card_frame):
        result = CropCascade().capture(card_frame, 'back', boundary=Boundary(160, 140, 320, 200))

        assert np.array_equal(result.original.pixels, card_frame)
        assert not result.original.cropped
        assert result.cropped.cropped
        assert not result.original.pixels.flags.writeable
        assert not result.cropped.pixels.flags.writeable

    def test_invalid_boundary_falls_back_to_detection(self, card_frame):
        result = CropCascade().capture(card_frame, 'front', boundary=Boundary(700, 500, 100, 60))

        assert result.strategy is CropStrategy.FALLBACK_DETECTION
        assert result.boundary.is_within(640, 480)

    def test_no_boundary_uses_still_detection(self, card_frame):
        result = CropCascade().capture(card_frame, 'front')

        assert result.strategy is CropStrategy.FALLBACK_DETECTION
        assert result.cropped.width < card_frame.shape[1]

    def test_nothing_detected_returns_full_frame(self, blank_frame):
        result = CropCascade().capture(blank_frame, 'front')

        assert result.strategy is CropStrategy.FULL_FRAME
        assert result.boundary is None
        assert np.array_equal(result.cropped.pixels, blank_frame)

    def test_detector_failure_returns_full_frame(self, card_frame):
        detector = Mock()
        detector.detect_still.side_effect = RuntimeError("detector crashed")

        result = CropCascade(detector=detector).capture(card_frame, 'front')

        assert result.strategy is CropStrategy.FULL_FRAME
        assert result.cropped.pixels.shape == card_frame.shape

    def test_display_resample_never_upscales(self, card_frame):
        cascade = CropCascade(config=CropConfig(display_max_width=176))
        result = cascade.capture(card_frame, 'front', boundary=Boundary(160, 140, 320, 200))
        assert result.cropped.width == 176
        assert result.cropped.height == 110
        assert result.original.width == 640

        wide = CropCascade(config=CropConfig(display_max_width=2000))
        result = wide.capture(card_frame, 'front', boundary=Boundary(160, 140, 320, 200))
        assert result.cropped.width == 352

    def test_non_image_input_raises(self):
        with pytest.raises(ImageDecodeError):
            CropCascade().capture(None, 'front')
        with pytest.raises(ImageDecodeError):
            CropCascade().capture(np.zeros((0, 0, 3), dtype=np.uint8), 'front')

    def test_upload_bytes_kept_for_original(self, card_frame, card_jpeg):
        result = CropCascade().capture(card_frame, 'front', encoded=card_jpeg)
        assert result.original.to_bytes() is card_jpeg
        assert result.cropped.to_bytes() != card_jpeg


class TestCardImage:
    """Test card image naming and encoding."""

    def test_filenames_distinguish_variants(self, card_frame):
        cropped = CardImage(pixels=card_frame, side='front', cropped=True, timestamp=1700000000000)
        original = CardImage(pixels=card_frame, side=CardSide.BACK, cropped=False, timestamp=1700000000000)

        assert cropped.filename == "card-front-1700000000000.jpg"
        assert original.filename == "card-back-original-1700000000000.jpg"

    def test_to_bytes_encodes_jpeg(self, card_frame):
        data = CardImage(pixels=card_frame, side='front', cropped=True).to_bytes()
        assert data[:2] == b'\xff\xd8'

    def test_invalid_side_rejected(self, card_frame):
        with pytest.raises(ValueError):
            CardImage(pixels=card_frame, side='left', cropped=True)


class TestImageSaver:
    """Test capture persistence."""

    def test_creates_directories(self, tmp_path):
        saver = ImageSaver(base_dir=str(tmp_path / "cards"))
        assert os.path.isdir(saver.images_dir)
        assert os.path.isdir(saver.json_dir)

    def test_save_capture_writes_both_variants(self, tmp_path, card_frame):
        saver = ImageSaver(base_dir=str(tmp_path))
        result = CropCascade().capture(card_frame, 'front', boundary=Boundary(160, 140, 320, 200))

        saved = saver.save_capture(result)

        assert os.path.basename(saved["cropped_path"]) == result.cropped.filename
        assert os.path.basename(saved["original_path"]) == result.original.filename
        assert os.path.getsize(saved["original_path"]) > 0
        assert saved["strategy"] == "boundary"

    def test_save_result_json(self, tmp_path):
        saver = ImageSaver(base_dir=str(tmp_path))
        path = saver.save_result_json({"state": "complete"}, "abc123")

        with open(path, encoding='utf-8') as f:
            data = json.load(f)
        assert os.path.basename(path) == "scan_abc123.json"
        assert data["state"] == "complete"
        assert "saved_at" in data
