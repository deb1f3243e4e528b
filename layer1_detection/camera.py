"""
Layer 1 — Frame Sources
Live camera frames (V4L2) and decoded still images (file upload).
Only pixel dimensions and raw pixel access are required downstream.
"""
import cv2
import logging
import os
from typing import Optional, Tuple
import numpy as np

from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError,
    ImageDecodeError,
)

logger = logging.getLogger(__name__)


class CameraHandler:
    """
    USB camera handler with V4L2 backend.
    Minimal buffering so each read returns the most recent frame.
    """

    # Default camera configuration
    DEFAULT_CONFIG = {
        'width': 1920,
        'height': 1080,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,  # Minimal buffer for low latency
    }

    def __init__(
        self,
        camera_index: int = 0,
        config: Optional[dict] = None
    ):
        """
        Initialize camera handler.

        Args:
            camera_index: V4L2 device index (e.g., 0 for /dev/video0)
            config: Optional configuration override
        """
        self.camera_index = camera_index
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None
        self._is_initialized = False

        # Actual resolution (may differ from requested)
        self.actual_width = 0
        self.actual_height = 0

        logger.info(f"CameraHandler created for /dev/video{camera_index}")

    def _check_device_exists(self) -> bool:
        """Check if camera device file exists."""
        device_path = f"/dev/video{self.camera_index}"
        exists = os.path.exists(device_path)
        if not exists:
            logger.error(f"Camera device not found: {device_path}")
        return exists

    def initialize(self) -> bool:
        """
        Initialize and configure the camera.

        Returns:
            bool: True if successful

        Raises:
            CameraNotFoundError: If camera device doesn't exist
            CameraInitError: If camera fails to initialize
        """
        if self._is_initialized and self.camera is not None:
            logger.debug("Camera already initialized")
            return True

        if not self._check_device_exists():
            raise CameraNotFoundError(self.camera_index)

        logger.info(f"Initializing camera at /dev/video{self.camera_index}")

        try:
            self.camera = cv2.VideoCapture(self.camera_index, cv2.CAP_V4L2)
        except cv2.error as e:
            logger.error(f"Camera initialization failed: {e}")
            raise CameraInitError(self.camera_index, reason=str(e))

        if not self.camera.isOpened():
            self.camera = None
            raise CameraInitError(self.camera_index, reason="Failed to open camera device")

        self._configure_camera()

        self.actual_width = int(self.camera.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.actual_height = int(self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT))
        self._is_initialized = True

        logger.info(f"Camera initialized: {self.actual_width}x{self.actual_height}")
        return True

    def _configure_camera(self):
        """Apply camera configuration settings."""
        cfg = self.config

        fourcc = cv2.VideoWriter_fourcc(*cfg['codec'])
        self.camera.set(cv2.CAP_PROP_FOURCC, fourcc)
        self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, cfg['width'])
        self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg['height'])
        self.camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
        self.camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])

        logger.debug(f"Camera configured: {cfg['width']}x{cfg['height']} @ {cfg['fps']}fps")

    def get_frame(self) -> np.ndarray:
        """
        Capture a single frame from the camera.

        Returns:
            numpy.ndarray: Raw BGR frame

        Raises:
            CameraNotInitializedError: If camera not initialized
            FrameCaptureError: If frame capture fails
        """
        if not self._is_initialized or self.camera is None:
            raise CameraNotInitializedError()

        ret, frame = self.camera.read()

        if not ret or frame is None:
            raise FrameCaptureError()

        return frame

    def get_resolution(self) -> Tuple[int, int]:
        """Get actual camera resolution."""
        return (self.actual_width, self.actual_height)

    def is_opened(self) -> bool:
        """Check if camera is currently open and initialized."""
        return self._is_initialized and self.camera is not None and self.camera.isOpened()

    def release(self):
        """Release camera resources."""
        if self.camera is not None:
            self.camera.release()
            self.camera = None
        self._is_initialized = False
        logger.info("Camera released")

    def __enter__(self):
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def decode_image(data: bytes, source: str = "upload") -> np.ndarray:
    """
    Decode an uploaded still image into a BGR frame.

    Args:
        data: Encoded image bytes
        source: Label used in error details

    Returns:
        numpy.ndarray: Decoded BGR frame

    Raises:
        ImageDecodeError: If the bytes are empty or not an image
    """
    if not data:
        raise ImageDecodeError(source, reason="empty image data")

    buffer = np.frombuffer(data, dtype=np.uint8)
    frame = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if frame is None:
        raise ImageDecodeError(source, reason="unsupported or corrupt image")

    logger.debug(f"Decoded {source}: {frame.shape[1]}x{frame.shape[0]}")
    return frame


def read_image_file(path: str) -> Tuple[np.ndarray, bytes]:
    """
    Read a still image from disk.

    Returns:
        tuple: (decoded BGR frame, original file bytes)

    Raises:
        ImageDecodeError: If the file is missing or not an image
    """
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise ImageDecodeError(path, reason=str(e))

    return decode_image(data, source=path), data
