"""
Layer 1 — Capture
Responsibility: Camera initialization and still capture for the face session
Output: Raw numpy.ndarray frame
"""
import cv2
import logging
import os
import threading
from typing import Optional

import numpy as np

from error_handlers import (
    CameraError,
    CameraInitError,
    CameraNotFoundError,
    CameraNotInitializedError,
    FrameCaptureError
)

logger = logging.getLogger(__name__)


class Camera:
    """Handles front camera initialization and photo capture"""

    # Default camera configuration
    DEFAULT_CONFIG = {
        'width': 1280,
        'height': 720,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,  # Minimal buffer so a photo is the latest frame
    }

    def __init__(self, camera_index=0, config=None):
        """
        Initialize camera handler

        Args:
            camera_index: V4L2 device index (default: 0 for /dev/video0)
            config: Optional configuration override
        """
        self.camera_index = camera_index
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None
        self._read_lock = threading.Lock()
        logger.info(f"Camera handler created for device index {camera_index}")

    def _check_camera_exists(self):
        """Check if camera device exists"""
        device_path = f"/dev/video{self.camera_index}"
        if not os.path.exists(device_path):
            logger.error(f"Camera device not found: {device_path}")
            raise CameraNotFoundError(self.camera_index)
        return True

    def initialize(self):
        """
        Initialize and configure the camera

        Returns:
            bool: True if successful

        Raises:
            CameraNotFoundError: If camera device doesn't exist
            CameraInitError: If camera fails to initialize
        """
        logger.info(f"Attempting to initialize camera at index {self.camera_index}")

        if self.is_opened():
            logger.debug("Camera already initialized")
            return True

        self._check_camera_exists()

        try:
            self.camera = cv2.VideoCapture(self.camera_index, cv2.CAP_V4L2)

            if not self.camera.isOpened():
                logger.error(f"Failed to open camera at index {self.camera_index}")
                raise CameraInitError(
                    self.camera_index,
                    reason="Camera opened but isOpened() returned False"
                )

            cfg = self.config
            self.camera.set(cv2.CAP_PROP_FOURCC, cv2.VideoWriter_fourcc(*cfg['codec']))
            self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, cfg['width'])
            self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg['height'])
            self.camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
            self.camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])

            actual_width = self.camera.get(cv2.CAP_PROP_FRAME_WIDTH)
            actual_height = self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT)
            actual_fps = self.camera.get(cv2.CAP_PROP_FPS)

            logger.info("Camera initialized successfully")
            logger.debug(f"Resolution: {actual_width}x{actual_height}")
            logger.debug(f"FPS: {actual_fps}")

            return True

        except CameraError:
            raise
        except Exception as e:
            logger.error(f"Error initializing camera: {e}")
            raise CameraInitError(self.camera_index, reason=str(e))

    def get_frame(self) -> np.ndarray:
        """
        Capture a single frame from the camera

        Returns:
            numpy.ndarray: Raw frame

        Raises:
            CameraNotInitializedError: If camera not initialized
            FrameCaptureError: If frame capture fails
        """
        with self._read_lock:
            return self._read_locked()

    def _read_locked(self) -> np.ndarray:
        """Read one frame; caller holds _read_lock"""
        if not self.is_opened():
            logger.warning("Camera not initialized when getting frame")
            raise CameraNotInitializedError()

        ret, frame = self.camera.read()

        if not ret or frame is None:
            logger.warning("Failed to read frame from camera")
            raise FrameCaptureError()

        return frame

    def take_photo(self) -> np.ndarray:
        """
        Take a still photo

        The first read flushes the buffered frame so the photo reflects the
        moment of the request.
        """
        with self._read_lock:
            if self.config['buffer_size'] > 0 and self.is_opened():
                self.camera.grab()
            frame = self._read_locked()
        logger.info(f"Photo taken - Shape: {frame.shape}")
        return frame

    def is_opened(self):
        """Check if camera is currently open"""
        return self.camera is not None and self.camera.isOpened()

    def release(self):
        """Release camera resources"""
        logger.info("Releasing camera")

        # Waits for an in-flight read so the handle is never released under it
        with self._read_lock:
            if self.camera is not None:
                self.camera.release()
                self.camera = None
                logger.info("Camera released successfully")
