"""
Tests for the camera handler, using VideoCapture doubles.
"""
import threading
import time
from unittest.mock import MagicMock

import numpy as np
import pytest

from error_handlers import CameraNotFoundError, CameraNotInitializedError, FrameCaptureError
from layer1_capture import Camera
from layer1_capture import camera as camera_module


class SlowVideoCapture:
    """VideoCapture double whose read blocks long enough to race a release."""

    def __init__(self, delay=0.2):
        self.delay = delay
        self.reading = False
        self.read_started = threading.Event()
        self.released = False
        self.released_during_read = None

    def isOpened(self):
        return not self.released

    def grab(self):
        return True

    def read(self):
        self.reading = True
        self.read_started.set()
        time.sleep(self.delay)
        self.reading = False
        return True, np.zeros((720, 1280, 3), dtype=np.uint8)

    def release(self):
        self.released_during_read = self.reading
        self.released = True


@pytest.fixture
def capture_device():
    """Opened VideoCapture double returning a black frame."""
    device = MagicMock()
    device.isOpened.return_value = True
    device.read.return_value = (True, np.zeros((720, 1280, 3), dtype=np.uint8))
    return device


@pytest.fixture
def camera(capture_device):
    """Camera handler wired to the VideoCapture double."""
    camera = Camera(camera_index=0)
    camera.camera = capture_device
    return camera


class TestUninitializedCamera:
    """Test reads before the camera is opened."""

    def test_get_frame_requires_initialize(self):
        """Test get_frame on an unopened camera raises."""
        with pytest.raises(CameraNotInitializedError) as exc_info:
            Camera().get_frame()
        assert exc_info.value.error_code == 'CAMERA_NOT_INITIALIZED'

    def test_take_photo_requires_initialize(self):
        """Test take_photo on an unopened camera raises."""
        with pytest.raises(CameraNotInitializedError):
            Camera().take_photo()

    def test_read_after_release_raises(self, camera):
        """Test a released camera can no longer be read."""
        camera.release()
        with pytest.raises(CameraNotInitializedError):
            camera.get_frame()

    def test_missing_device(self, monkeypatch):
        """Test initialize fails fast when /dev/videoN is absent."""
        monkeypatch.setattr(camera_module.os.path, 'exists', lambda path: False)
        with pytest.raises(CameraNotFoundError) as exc_info:
            Camera(camera_index=3).initialize()
        assert exc_info.value.details['camera_index'] == 3


class TestFrameReads:
    """Test frame and photo reads."""

    def test_get_frame_returns_frame(self, camera):
        """Test a good read returns the frame."""
        assert camera.get_frame().shape == (720, 1280, 3)

    def test_failed_read_raises(self, camera, capture_device):
        """Test an empty read raises FrameCaptureError."""
        capture_device.read.return_value = (False, None)
        with pytest.raises(FrameCaptureError):
            camera.get_frame()

    def test_take_photo_flushes_buffer(self, camera, capture_device):
        """Test take_photo drops the buffered frame before reading."""
        camera.take_photo()
        capture_device.grab.assert_called_once()
        capture_device.read.assert_called_once()

    def test_take_photo_without_buffer(self, capture_device):
        """Test no flush when the buffer is disabled."""
        camera = Camera(config={'buffer_size': 0})
        camera.camera = capture_device
        camera.take_photo()
        capture_device.grab.assert_not_called()


class TestReleaseDuringRead:
    """Test release racing an in-flight read."""

    def test_release_waits_for_read(self):
        """Test release never frees the device while a read is running."""
        device = SlowVideoCapture()
        camera = Camera()
        camera.camera = device
        frames = []
        reader = threading.Thread(target=lambda: frames.append(camera.get_frame()))
        reader.start()
        assert device.read_started.wait(1)

        camera.release()
        reader.join(1)

        assert device.released_during_read is False
        assert device.released
        assert camera.camera is None
        assert frames[0].shape == (720, 1280, 3)

    def test_release_waits_for_photo(self):
        """Test the same holds for take_photo."""
        device = SlowVideoCapture()
        camera = Camera()
        camera.camera = device
        reader = threading.Thread(target=camera.take_photo)
        reader.start()
        assert device.read_started.wait(1)

        camera.release()
        reader.join(1)

        assert device.released_during_read is False
        assert camera.camera is None
