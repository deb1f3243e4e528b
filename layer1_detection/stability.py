"""
Layer 1 — Temporal Stability
Majority vote over the last few detector samples to stop the boundary
from flickering on and off between frames.
"""
import logging
from collections import deque
from dataclasses import dataclass
from typing import Dict, Optional

from .detector import Boundary, DetectionSample

logger = logging.getLogger(__name__)


@dataclass
class StabilityConfig:
    """Configuration for the stability filter."""
    history_size: int = 3        # Samples kept in the rolling window
    min_positive: int = 2        # Positives required inside the window
    min_stable_frames: int = 1   # Streak before a boundary is trusted


@dataclass
class StableDetectionState:
    """Externally visible detection state, recomputed every frame."""
    is_stable: bool = False
    boundary: Optional[Boundary] = None
    focus_quality: int = 0
    stable_streak: int = 0

    def to_dict(self) -> Dict:
        return {
            'is_stable': self.is_stable,
            'boundary': self.boundary.to_dict() if self.boundary else None,
            'focus_quality': self.focus_quality,
            'stable_streak': self.stable_streak
        }


class StabilityFilter:
    """
    Rolling-window filter over DetectionSample found flags.

    A frame is stable only if the current sample is positive and at least
    min_positive of the last history_size samples were positive.
    """

    def __init__(self, config: Optional[StabilityConfig] = None):
        self.config = config or StabilityConfig()
        self._history = deque(maxlen=self.config.history_size)
        self._stable_streak = 0
        self._state = StableDetectionState()

    @property
    def state(self) -> StableDetectionState:
        return self._state

    @property
    def stable_streak(self) -> int:
        return self._stable_streak

    @property
    def history(self):
        return list(self._history)

    def update(self, sample: DetectionSample) -> StableDetectionState:
        """
        Fold one detector sample into the window.

        Args:
            sample: Current frame's detection result

        Returns:
            StableDetectionState: boundary is cleared unless stable
        """
        self._history.append(bool(sample.found))

        recent_detections = sum(1 for found in self._history if found)
        is_stable = sample.found and recent_detections >= self.config.min_positive

        if is_stable:
            self._stable_streak += 1
        else:
            self._stable_streak = 0

        self._state = StableDetectionState(
            is_stable=is_stable,
            boundary=sample.boundary if is_stable else None,
            focus_quality=sample.focus_quality,
            stable_streak=self._stable_streak
        )

        logger.debug(
            f"Stability: found={sample.found} recent={recent_detections}/"
            f"{len(self._history)} stable={is_stable} streak={self._stable_streak}"
        )
        return self._state

    def is_trusted(self) -> bool:
        """True once enough consecutive stable frames have been seen."""
        return (
            self._state.is_stable
            and self._stable_streak >= self.config.min_stable_frames
        )

    def reset(self):
        """Clear history, streak, boundary and focus score."""
        self._history.clear()
        self._stable_streak = 0
        self._state = StableDetectionState()
