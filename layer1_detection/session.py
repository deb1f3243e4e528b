"""
Layer 1 — Detector Session
Owns the live detection loop and all per-session detection state
(stability history, streak, last trusted boundary).

The loop runs one frame at a time: the next iteration is only scheduled
after the previous detect call returns, so throughput follows the
device's real processing speed. Manual-capture flows keep the loop off
(auto_capture_enabled=False); capture then falls back to still-image
detection.
"""
import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional

import numpy as np

from .detector import Boundary, CardDetector, DetectionSample
from .stability import StabilityConfig, StabilityFilter, StableDetectionState

logger = logging.getLogger(__name__)

FrameSource = Callable[[], Optional[np.ndarray]]
StateListener = Callable[[StableDetectionState], None]
BoundaryListener = Callable[[Boundary], None]


@dataclass
class DetectionLoopConfig:
    """Configuration for the live detection loop."""
    auto_capture_enabled: bool = False   # Manual capture only by default
    idle_delay_ms: int = 50              # Wait when the source has no frame
    join_timeout_s: float = 2.0


class DetectorSession:
    """
    Live card detection with an explicit create / start / stop lifecycle.

    Listeners are notified with the StableDetectionState after every
    processed frame and once more after a reset.
    """

    def __init__(self,
                 frame_source: Optional[FrameSource] = None,
                 detector: Optional[CardDetector] = None,
                 config: Optional[DetectionLoopConfig] = None,
                 stability: Optional[StabilityConfig] = None):
        """
        Initialize detector session

        Args:
            frame_source: Callable returning the next frame (None if not ready)
            detector: Card detector (default thresholds if not provided)
            config: Loop configuration
            stability: Stability filter configuration
        """
        self.frame_source = frame_source
        self.detector = detector or CardDetector()
        self.config = config or DetectionLoopConfig()
        self.filter = StabilityFilter(stability)

        self._listeners: List[StateListener] = []
        self._card_listeners: List[BoundaryListener] = []
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_sample: Optional[DetectionSample] = None

        logger.info("DetectorSession created")
        logger.debug(f"  Auto capture enabled: {self.config.auto_capture_enabled}")

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, callback: StateListener) -> Callable[[], None]:
        """Register a state listener; returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def on_card_detected(self, callback: BoundaryListener) -> Callable[[], None]:
        """Register a listener fired with the boundary of each trusted frame."""
        self._card_listeners.append(callback)

        def unsubscribe():
            if callback in self._card_listeners:
                self._card_listeners.remove(callback)

        return unsubscribe

    def _notify(self, state: StableDetectionState):
        for cb in list(self._listeners):
            try:
                cb(state)
            except Exception as e:
                logger.warning(f"Detection listener failed: {e}")

    def _notify_card(self, boundary: Boundary):
        for cb in list(self._card_listeners):
            try:
                cb(boundary)
            except Exception as e:
                logger.warning(f"Card-detected listener failed: {e}")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> StableDetectionState:
        return self.filter.state

    @property
    def last_sample(self) -> Optional[DetectionSample]:
        return self._last_sample

    @property
    def is_detecting(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def trusted_boundary(self) -> Optional[Boundary]:
        """Boundary usable for cropping, or None until a stable frame is seen."""
        with self._lock:
            if self.filter.is_trusted():
                return self.filter.state.boundary
            return None

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    def process_frame(self, frame: np.ndarray) -> StableDetectionState:
        """
        Run detection on one frame and fold it into the stability window.

        Args:
            frame: Frame owned by the caller for the duration of the call

        Returns:
            StableDetectionState: Updated externally visible state
        """
        return self._process(frame, from_loop=False)

    def _process(self, frame: np.ndarray, from_loop: bool) -> StableDetectionState:
        sample = self.detector.detect(frame)

        with self._lock:
            # A loop frame finishing after stop() must not undo the reset
            if from_loop and self._stop_event.is_set():
                logger.debug("Discarding loop frame that finished after stop")
                return self.filter.state
            self._last_sample = sample
            state = self.filter.update(sample)
            trusted = self.filter.is_trusted()

        self._notify(state)
        if trusted and state.boundary is not None:
            self._notify_card(state.boundary)

        return state

    # ------------------------------------------------------------------
    # Loop lifecycle
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """
        Start the live detection loop.

        Returns:
            bool: True if the loop is running, False when auto capture is
            disabled or no frame source is configured
        """
        if not self.config.auto_capture_enabled:
            logger.info("Live detection disabled (manual capture only)")
            return False

        if self.frame_source is None:
            logger.warning("No frame source configured, detection not started")
            return False

        if self.is_detecting:
            return True

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="card-detection", daemon=True
        )
        self._thread.start()
        logger.info("Live detection started")
        return True

    def _run(self):
        idle_delay = self.config.idle_delay_ms / 1000.0

        while not self._stop_event.is_set():
            try:
                frame = self.frame_source()
            except Exception as e:
                logger.debug(f"Frame source failed: {e}")
                frame = None

            if frame is None:
                self._stop_event.wait(idle_delay)
                continue

            if self._stop_event.is_set():
                break

            try:
                self._process(frame, from_loop=True)
            except Exception as e:
                logger.error(f"Error in card detection: {e}")

        logger.debug("Detection loop exited")

    def stop(self):
        """
        Stop the loop and reset all detection state.
        Returns after the loop thread has exited.
        """
        self._stop_event.set()

        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.config.join_timeout_s)
            if thread.is_alive():
                logger.warning("Detection loop did not exit within timeout")
        self._thread = None

        self.reset()
        logger.info("Live detection stopped")

    def reset(self):
        """Clear history, streak, boundary and focus score."""
        with self._lock:
            self.filter.reset()
            self._last_sample = None
            state = self.filter.state
        self._notify(state)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False
