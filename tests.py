"""
Tests for the face auto-capture Flask application.
"""
import json
import time
from concurrent.futures import Future, ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest

from error_handlers import CameraNotFoundError, FrameCaptureError


def post_frame(client, faces):
    return client.post('/api/frames', json={'faces': faces})


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'


class TestSessionLifecycle:
    """Test session start/stop endpoints."""

    def test_start_session(self, client, fake_camera):
        """Test starting a session opens the camera."""
        response = client.post('/api/session/start')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['success'] is True
        assert data['started'] is True
        fake_camera.initialize.assert_called_once()

    def test_start_session_twice(self, client):
        """Test a second start keeps the running session."""
        client.post('/api/session/start')
        response = client.post('/api/session/start')
        assert json.loads(response.data)['started'] is False

    def test_start_session_camera_missing(self, client, fake_camera):
        """Test camera errors map to 503."""
        fake_camera.initialize.side_effect = CameraNotFoundError(0)
        response = client.post('/api/session/start')
        assert response.status_code == 503
        data = json.loads(response.data)
        assert data['error_code'] == 'CAMERA_NOT_FOUND'

    def test_stop_session_releases_camera(self, client, fake_camera, coordinator):
        """Test stopping closes the engine and releases the camera."""
        client.post('/api/session/start')
        engine = coordinator.engine
        response = client.post('/api/session/stop')
        assert response.status_code == 200
        assert engine.closed
        assert coordinator.engine is None
        fake_camera.release.assert_called_once()


class TestFramesEndpoint:
    """Test per-frame submission."""

    def test_frames_require_session(self, client, good_face):
        """Test frames without a session return 409."""
        response = post_frame(client, [good_face])
        assert response.status_code == 409
        assert json.loads(response.data)['error_code'] == 'SESSION_NOT_ACTIVE'

    def test_frame_updates_counter(self, client, good_face):
        """Test an acceptable face advances the streak."""
        client.post('/api/session/start')
        response = post_frame(client, [good_face])
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['engine']['consecutive_acceptable_count'] == 1
        assert data['engine']['phase'] == 'accumulating'

    def test_empty_frame_resets(self, client, good_face):
        """Test an empty face list resets the streak."""
        client.post('/api/session/start')
        post_frame(client, [good_face])
        data = json.loads(post_frame(client, []).data)
        assert data['engine']['consecutive_acceptable_count'] == 0

    def test_invalid_observation_returns_400(self, client, good_face):
        """Test malformed faces are rejected."""
        client.post('/api/session/start')
        del good_face['bounds']
        response = post_frame(client, [good_face])
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_OBSERVATION'

    def test_invalid_json_returns_400(self, client):
        """Test invalid JSON returns 400."""
        response = client.post(
            '/api/frames',
            data='{"faces": [',
            content_type='application/json'
        )
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_REQUEST'

    def test_non_json_body_returns_400(self, client):
        """Test a non-JSON body returns 400."""
        response = client.post('/api/frames', data='faces', content_type='text/plain')
        assert response.status_code == 400


class TestAutoCaptureFlow:
    """Test auto-capture through the HTTP surface."""

    def test_ten_frames_trigger_capture(self, client, good_face, scheduler, fake_camera):
        """Test 10 acceptable frames plus the debounce take one photo."""
        client.post('/api/session/start')
        for _ in range(10):
            post_frame(client, [good_face])
        fake_camera.take_photo.assert_not_called()

        scheduler.advance(0.3)
        fake_camera.take_photo.assert_called_once()

        data = json.loads(client.get('/api/status').data)
        assert data['session_active'] is False
        assert data['last_capture']['success'] is True
        assert data['last_capture']['trigger'] == 'auto'
        assert data['last_capture']['photo'] == {'shape': [720, 1280, 3]}

    def test_stop_before_debounce_prevents_capture(self, client, good_face, scheduler, fake_camera):
        """Test closing the session cancels an armed capture."""
        client.post('/api/session/start')
        for _ in range(10):
            post_frame(client, [good_face])
        client.post('/api/session/stop')
        scheduler.advance(1)
        fake_camera.take_photo.assert_not_called()

    def test_camera_failure_resets_engine(self, client, good_face, scheduler, fake_camera):
        """Test a failed photo is reported and the engine recovers."""
        fake_camera.take_photo.side_effect = FrameCaptureError()
        client.post('/api/session/start')
        for _ in range(10):
            post_frame(client, [good_face])
        scheduler.advance(0.3)

        data = json.loads(client.get('/api/status').data)
        assert data['last_capture']['success'] is False
        assert data['engine']['capture_in_progress'] is False
        assert data['engine']['consecutive_acceptable_count'] == 0

    def test_success_ends_session(self, client, good_face, scheduler, fake_camera):
        """Test a successful photo closes the session and blocks a second capture."""
        client.post('/api/session/start')
        for _ in range(10):
            post_frame(client, [good_face])
        scheduler.advance(0.3)
        fake_camera.release.assert_called_once()

        for _ in range(10):
            response = post_frame(client, [good_face])
            assert response.status_code == 409
        scheduler.advance(1)

        fake_camera.take_photo.assert_called_once()
        data = json.loads(client.get('/api/status').data)
        assert data['session_active'] is False
        assert data['engine'] is None

    def test_failed_capture_keeps_session(self, client, good_face, scheduler, fake_camera):
        """Test a failed photo leaves the session open for the next streak."""
        photo = fake_camera.take_photo.return_value
        fake_camera.take_photo.side_effect = FrameCaptureError()
        client.post('/api/session/start')
        for _ in range(10):
            post_frame(client, [good_face])
        scheduler.advance(0.3)

        data = json.loads(client.get('/api/status').data)
        assert data['session_active'] is True
        fake_camera.release.assert_not_called()

        fake_camera.take_photo.side_effect = None
        fake_camera.take_photo.return_value = photo
        for _ in range(10):
            post_frame(client, [good_face])
        scheduler.advance(0.3)

        assert fake_camera.take_photo.call_count == 2
        data = json.loads(client.get('/api/status').data)
        assert data['session_active'] is False
        assert data['last_capture']['success'] is True


class TestManualCapture:
    """Test manual capture endpoint."""

    def test_manual_capture_requires_session(self, client):
        """Test manual capture without a session returns 409."""
        response = client.post('/api/capture')
        assert response.status_code == 409

    def test_manual_capture(self, client, fake_camera):
        """Test a manual capture takes a photo."""
        client.post('/api/session/start')
        response = client.post('/api/capture')
        data = json.loads(response.data)
        assert data['accepted'] is True
        fake_camera.take_photo.assert_called_once()

        status = json.loads(client.get('/api/status').data)
        assert status['last_capture']['trigger'] == 'manual'
        assert status['session_active'] is False

    def test_method_not_allowed(self, client):
        """Test wrong HTTP method returns error."""
        response = client.get('/api/capture')
        assert response.status_code == 405


class TestStatusEndpoint:
    """Test status endpoint."""

    def test_status_without_session(self, client):
        """Test status before any session."""
        data = json.loads(client.get('/api/status').data)
        assert data['success'] is True
        assert data['session_active'] is False
        assert data['engine'] is None
        assert data['last_capture'] is None

    def test_missing_endpoint_returns_404(self, client):
        """Test missing endpoint returns 404."""
        response = client.get('/api/nonexistent')
        assert response.status_code == 404


class TestCaptureCoordinatorExecutor:
    """Test the coordinator with a background capture executor."""

    def test_executor_capture_settles(self, fake_camera, scheduler):
        """Test a capture run on an executor still resets the engine."""
        from app import CaptureCoordinator
        from layer3_auto_capture import AutoCaptureConfig

        with ThreadPoolExecutor(max_workers=1) as executor:
            coordinator = CaptureCoordinator(
                camera=fake_camera,
                config=AutoCaptureConfig(),
                scheduler_factory=lambda: scheduler,
                executor=executor
            )
            coordinator.start_session()
            engine = coordinator.engine
            assert coordinator.manual_capture() is True

        for _ in range(100):
            if coordinator.engine is None:
                break
            time.sleep(0.01)
        assert engine.state.capture_in_progress is False
        assert engine.closed
        assert coordinator.engine is None
        assert coordinator.last_result.success is True
        fake_camera.take_photo.assert_called_once()
        fake_camera.release.assert_called_once()

    def test_late_result_from_closed_session_ignored(self, fake_camera, scheduler):
        """Test a photo finishing after its session was replaced is not recorded."""
        from app import CaptureCoordinator
        from layer3_auto_capture import AutoCaptureConfig

        pending = Future()
        executor = MagicMock()
        executor.submit.return_value = pending
        coordinator = CaptureCoordinator(
            camera=fake_camera,
            config=AutoCaptureConfig(),
            scheduler_factory=lambda: scheduler,
            executor=executor
        )
        coordinator.start_session()
        assert coordinator.manual_capture() is True
        coordinator.stop_session()
        coordinator.start_session()
        current = coordinator.engine

        pending.set_result(fake_camera.take_photo.return_value)

        assert coordinator.last_result is None
        assert coordinator.engine is current
        assert not current.closed
        assert fake_camera.release.call_count == 1


class TestShutdown:
    """Test process exit cleanup."""

    def test_shutdown_stops_session_and_executor(self, app, coordinator, fake_camera, monkeypatch):
        """Test shutdown closes the session and the capture executor."""
        import app as app_module
        executor = MagicMock()
        monkeypatch.setattr(app_module, 'capture_executor', executor)
        coordinator.start_session()
        engine = coordinator.engine

        app_module.shutdown()

        assert engine.closed
        assert coordinator.engine is None
        fake_camera.release.assert_called_once()
        executor.shutdown.assert_called_once_with(wait=False)
