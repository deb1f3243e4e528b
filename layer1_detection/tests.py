"""
Tests for live card detection: sharpness, detector, stability and the
detector session.
"""
import threading
from unittest.mock import Mock

import cv2
import numpy as np
import pytest

from error_handlers import CameraNotInitializedError, ImageDecodeError
from layer1_detection import (
    Boundary,
    CameraHandler,
    CardDetector,
    DetectionLoopConfig,
    DetectionSample,
    DetectorSession,
    StabilityConfig,
    StabilityFilter,
    byte_difference_sharpness,
    decode_image,
    file_sharpness,
    laplacian_sharpness,
)


def sample(found, x=10):
    if found:
        return DetectionSample(found=True, boundary=Boundary(x, 10, 160, 100), score=1.0, focus_quality=70)
    return DetectionSample(found=False, focus_quality=20)


class TestSharpness:
    """Test both sharpness estimators."""

    def test_laplacian_blank_frame_is_zero(self, blank_frame):
        assert laplacian_sharpness(blank_frame) == 0

    def test_laplacian_undecodable_frame_is_default(self):
        assert laplacian_sharpness(None) == 50
        assert laplacian_sharpness(np.zeros((0, 0, 3), dtype=np.uint8)) == 50

    def test_laplacian_noise_is_sharp(self):
        rng = np.random.default_rng(0)
        noise = rng.integers(0, 256, size=(120, 160, 3), dtype=np.uint8)
        assert laplacian_sharpness(noise) == 100

    def test_scores_within_bounds(self, card_frame):
        for score in (laplacian_sharpness(card_frame), byte_difference_sharpness(card_frame)):
            assert 0 <= score <= 100

    def test_byte_difference_blank_is_zero(self, blank_frame):
        assert byte_difference_sharpness(blank_frame) == 0

    def test_byte_difference_stripes_saturate(self):
        stripes = np.zeros((10, 10), dtype=np.uint8)
        stripes[:, ::2] = 255
        assert byte_difference_sharpness(stripes) == 100

    def test_byte_difference_ignores_alpha(self):
        bgra = np.zeros((10, 10, 4), dtype=np.uint8)
        bgra[:, :, 3] = np.arange(10, dtype=np.uint8) * 25
        assert byte_difference_sharpness(bgra) == 0

    def test_file_sharpness_undecodable_is_default(self):
        assert file_sharpness(b'') == 50
        assert file_sharpness(b'not an image') == 50

    def test_file_sharpness_decodes_jpeg(self, card_jpeg):
        assert 0 <= file_sharpness(card_jpeg) <= 100

    def test_file_sharpness_16bit_matches_8bit(self):
        """16-bit PNGs are scored on the same 8-bit scale."""
        stripes = np.full((10, 10), 100, dtype=np.uint8)
        stripes[:, 1::2] = 102
        ok8, png8 = cv2.imencode('.png', stripes)
        ok16, png16 = cv2.imencode('.png', stripes.astype(np.uint16) * 257)
        assert ok8 and ok16

        assert file_sharpness(png8.tobytes()) == 20
        assert file_sharpness(png16.tobytes()) == 20


class TestCardDetector:
    """Test geometric card detection."""

    def test_detects_card(self, card_frame):
        result = CardDetector().detect(card_frame)
        assert result.found
        b = result.boundary
        assert b.is_within(640, 480)
        assert abs(b.x - 160) <= 15 and abs(b.y - 140) <= 15
        assert 1.3 <= b.width / b.height <= 2.0
        assert result.score > 0

    def test_blank_frame_not_found(self, blank_frame):
        result = CardDetector().detect(blank_frame)
        assert not result.found
        assert result.boundary is None

    def test_still_profile_detects_card(self, card_frame):
        result = CardDetector().detect_still(card_frame)
        assert result.found
        assert result.boundary.is_within(640, 480)
        assert abs(result.boundary.width - 320) <= 20

    def test_rejects_square(self):
        frame = np.full((480, 640, 3), 40, dtype=np.uint8)
        frame[90:390, 170:470] = 200
        assert not CardDetector().detect(frame).found

    def test_rejects_tiny_card(self):
        frame = np.full((480, 640, 3), 40, dtype=np.uint8)
        frame[200:240, 280:344] = 200
        assert not CardDetector().detect(frame).found

    def test_accepts_grayscale_and_bgra(self, card_frame):
        detector = CardDetector()
        gray = card_frame[:, :, 0].copy()
        bgra = np.dstack([card_frame, np.full((480, 640), 255, dtype=np.uint8)])
        assert detector.detect(gray).found
        assert detector.detect(bgra).found

    def test_draw_overlay_returns_copy(self, card_frame):
        detector = CardDetector()
        result = detector.detect(card_frame)
        overlay = detector.draw_overlay(card_frame, result)
        assert overlay.shape == card_frame.shape
        assert not np.array_equal(overlay, card_frame)
        assert card_frame[0, 0, 0] == 40


class TestStabilityFilter:
    """Test the 2-of-3 stability window."""

    @pytest.mark.parametrize("sequence", [
        [True, True, True],
        [False, True, True],
        [True, False, True],
    ])
    def test_stable_on_third_sample(self, sequence):
        f = StabilityFilter()
        for found in sequence:
            state = f.update(sample(found))
        assert state.is_stable
        assert state.boundary is not None

    def test_single_positive_is_not_stable(self):
        f = StabilityFilter()
        for found in [False, False, True]:
            state = f.update(sample(found))
        assert not state.is_stable
        assert state.boundary is None
        assert state.stable_streak == 0

    def test_negative_sample_clears_boundary(self):
        f = StabilityFilter()
        f.update(sample(True))
        f.update(sample(True))
        state = f.update(sample(False))
        assert not state.is_stable
        assert state.boundary is None
        assert state.stable_streak == 0

    def test_streak_counts_consecutive_stable_frames(self):
        f = StabilityFilter()
        for _ in range(4):
            f.update(sample(True))
        assert f.stable_streak == 3
        assert f.is_trusted()

    def test_history_is_bounded(self):
        f = StabilityFilter(StabilityConfig(history_size=3))
        for found in [True, True, False, False, True]:
            f.update(sample(found))
        assert f.history == [False, False, True]

    def test_focus_tracks_current_sample(self):
        f = StabilityFilter()
        assert f.update(sample(False)).focus_quality == 20
        assert f.update(sample(True)).focus_quality == 70

    def test_reset(self):
        f = StabilityFilter()
        f.update(sample(True))
        f.update(sample(True))
        f.reset()
        assert f.history == []
        assert f.stable_streak == 0
        assert not f.state.is_stable
        assert f.state.boundary is None


class TestDetectorSession:
    """Test the detection loop session."""

    def make_detector(self, results):
        detector = Mock()
        detector.detect.side_effect = list(results)
        return detector

    def test_start_disabled_by_default(self):
        session = DetectorSession(frame_source=lambda: None)
        assert session.start() is False
        assert not session.is_detecting

    def test_process_frame_notifies_listeners(self, blank_frame):
        detector = self.make_detector([sample(True), sample(True)])
        session = DetectorSession(detector=detector)
        states = []
        session.subscribe(states.append)

        session.process_frame(blank_frame)
        session.process_frame(blank_frame)

        assert [s.is_stable for s in states] == [False, True]
        assert session.trusted_boundary() == Boundary(10, 10, 160, 100)

    def test_card_detected_callback(self, blank_frame):
        detector = self.make_detector([sample(True), sample(True), sample(True, x=12)])
        session = DetectorSession(detector=detector)
        boundaries = []
        unsubscribe = session.on_card_detected(boundaries.append)

        session.process_frame(blank_frame)
        session.process_frame(blank_frame)
        unsubscribe()
        session.process_frame(blank_frame)

        assert boundaries == [Boundary(10, 10, 160, 100)]

    def test_loop_frame_after_stop_is_discarded(self, blank_frame):
        """A detect call still running when stop() fires must not refill state."""
        session = DetectorSession(
            frame_source=lambda: blank_frame,
            config=DetectionLoopConfig(auto_capture_enabled=True)
        )
        states = []
        session.subscribe(states.append)

        def detect_then_stop(frame):
            session._stop_event.set()
            return sample(True)

        session.detector = Mock()
        session.detector.detect.side_effect = detect_then_stop

        session._run()

        assert session.detector.detect.call_count == 1
        assert session.filter.history == []
        assert session.last_sample is None
        assert states == []

    def test_manual_frames_accepted_after_stop(self, blank_frame):
        session = DetectorSession(detector=self.make_detector([sample(True)]))
        session.stop()
        state = session.process_frame(blank_frame)
        assert session.filter.history == [True]
        assert state.focus_quality == 70

    def test_failing_listener_does_not_break_detection(self, blank_frame):
        detector = self.make_detector([sample(True)])
        session = DetectorSession(detector=detector)
        session.subscribe(Mock(side_effect=RuntimeError("listener broke")))
        state = session.process_frame(blank_frame)
        assert not state.is_stable

    def test_loop_runs_and_stop_resets(self, card_frame):
        seen = threading.Event()
        session = DetectorSession(
            frame_source=lambda: card_frame,
            config=DetectionLoopConfig(auto_capture_enabled=True)
        )
        session.on_card_detected(lambda boundary: seen.set())

        assert session.start() is True
        assert seen.wait(timeout=5.0)
        session.stop()

        assert not session.is_detecting
        assert session.state.boundary is None
        assert session.last_sample is None
        assert session.trusted_boundary() is None

    def test_loop_waits_when_no_frame(self):
        source = Mock(return_value=None)
        session = DetectorSession(
            frame_source=source,
            config=DetectionLoopConfig(auto_capture_enabled=True, idle_delay_ms=5)
        )
        with session:
            called = threading.Event()
            source.side_effect = lambda: called.set()
            assert called.wait(timeout=2.0)
        assert not session.is_detecting
        assert not session.state.is_stable


class TestFrameSources:
    """Test camera and still-image sources."""

    def test_decode_image(self, card_jpeg):
        frame = decode_image(card_jpeg)
        assert frame.shape == (480, 640, 3)

    def test_decode_image_rejects_garbage(self):
        with pytest.raises(ImageDecodeError):
            decode_image(b'not an image')
        with pytest.raises(ImageDecodeError):
            decode_image(b'')

    def test_camera_requires_initialize(self):
        camera = CameraHandler(camera_index=99)
        with pytest.raises(CameraNotInitializedError):
            camera.get_frame()
        assert not camera.is_opened()
