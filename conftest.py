"""
Pytest configuration and fixtures for face auto-capture tests.
"""
import os
import sys
from unittest.mock import MagicMock

import numpy as np
import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(__file__))


@pytest.fixture
def good_face():
    """Detector output for a face that passes every quality check."""
    return {
        'leftEyeOpenProbability': 0.9,
        'rightEyeOpenProbability': 0.9,
        'smilingProbability': 0.8,
        'rollAngle': 0,
        'yawAngle': 0,
        'pitchAngle': 0,
        'bounds': {'width': 0.4, 'height': 0.4}
    }


@pytest.fixture
def good_observation(good_face):
    """Parsed acceptable face observation."""
    from layer2_face_quality import FaceObservation
    return FaceObservation.from_dict(good_face)


@pytest.fixture
def bad_observation(good_face):
    """Parsed observation with both eyes closed."""
    from layer2_face_quality import FaceObservation
    face = dict(good_face, leftEyeOpenProbability=0.1, rightEyeOpenProbability=0.1)
    return FaceObservation.from_dict(face)


@pytest.fixture
def scheduler():
    """Virtual-clock scheduler."""
    from layer3_auto_capture import VirtualScheduler
    return VirtualScheduler()


@pytest.fixture
def fake_camera():
    """Camera double that always returns a black 720p frame."""
    camera = MagicMock()
    camera.is_opened.return_value = True
    camera.take_photo.return_value = np.zeros((720, 1280, 3), dtype=np.uint8)
    return camera


@pytest.fixture
def coordinator(fake_camera, scheduler):
    """Capture coordinator wired to the fake camera and virtual clock."""
    from app import CaptureCoordinator
    from layer3_auto_capture import AutoCaptureConfig
    return CaptureCoordinator(
        camera=fake_camera,
        config=AutoCaptureConfig(),
        scheduler_factory=lambda: scheduler
    )


@pytest.fixture
def app(coordinator, monkeypatch):
    """Create Flask test application."""
    import app as app_module
    monkeypatch.setattr(app_module, 'coordinator', coordinator)
    app_module.app.config['TESTING'] = True
    return app_module.app


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()
