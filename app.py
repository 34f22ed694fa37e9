"""
Face Auto-Capture Web Application
Thin coordinator for the layered face capture system.

Provides REST API for:
- Capture session lifecycle (camera view open / closed)
- Per-frame face detection results from the client-side detector
- Manual capture through the same guard as automatic capture
- Session status and last capture outcome
"""
from flask import Flask, jsonify, request
from flask_cors import CORS
from concurrent.futures import ThreadPoolExecutor
from functools import partial
import atexit
import logging
import os
import threading

# Import layers
from layer1_capture import Camera
from layer2_face_quality import parse_faces
from layer3_auto_capture import AutoCaptureEngine, AutoCaptureConfig, ThreadingScheduler

# Import error handling
from error_handlers import (
    CaptureServiceError,
    CameraError,
    ObservationError,
    SessionError,
    SessionNotActiveError,
    handle_error
)

# Setup logging
logging.basicConfig(
    level=logging.DEBUG if os.environ.get('DEBUG') else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for the capture client
CORS(app, origins=["*"])

# Configuration
CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX', 0))
PORT = int(os.environ.get('PORT', 5000))


class CaptureCoordinator:
    """
    Coordinates one capture session across layers
    Thin wrapper that delegates to layer-specific components
    """

    def __init__(self, camera, config=None, scheduler_factory=ThreadingScheduler, executor=None):
        """
        Args:
            camera: Layer 1 camera used to take the photo
            config: AutoCaptureConfig for each session's engine
            scheduler_factory: Builds the debounce scheduler for a session
            executor: Runs photo capture off the request thread (inline if None)
        """
        logger.info("Initializing CaptureCoordinator")
        self.camera = camera
        self.config = config or AutoCaptureConfig.from_env()
        self.scheduler_factory = scheduler_factory
        self.executor = executor

        self.engine = None
        self.last_result = None
        self._lock = threading.Lock()

    def start_session(self):
        """
        Open the camera and start a fresh auto-capture engine

        Returns:
            bool: False if a session was already running
        """
        with self._lock:
            if self.engine is not None:
                logger.debug("Session already active")
                return False

            self.camera.initialize()
            engine = AutoCaptureEngine(
                capture_action=self._capture_action,
                config=self.config,
                scheduler=self.scheduler_factory()
            )
            engine.on_capture_complete = partial(self._on_capture_complete, engine)
            self.engine = engine
            logger.info("Capture session started")
            return True

    def stop_session(self):
        """Tear down the engine and release the camera"""
        with self._lock:
            engine, self.engine = self.engine, None

        if engine is not None:
            engine.close()
        self.camera.release()
        logger.info("Capture session stopped")

    def _require_engine(self):
        engine = self.engine
        if engine is None:
            raise SessionNotActiveError()
        return engine

    def process_frame(self, faces_payload):
        """
        Feed one frame's detected faces to the engine

        Returns:
            dict: Engine status after the frame
        """
        faces = parse_faces(faces_payload)
        engine = self._require_engine()
        engine.process_faces(faces)
        return engine.status()

    def manual_capture(self):
        """
        Request a capture from the user

        Returns:
            bool: True if the capture started, False if one was already running
        """
        return self._require_engine().trigger_manual_capture()

    def _capture_action(self):
        if self.executor is not None:
            return self.executor.submit(self.camera.take_photo)
        return self.camera.take_photo()

    def _on_capture_complete(self, engine, result):
        """
        Record a capture outcome; a successful photo ends the session

        A failed capture keeps the session open so the next streak can retry.
        """
        with self._lock:
            if engine is not self.engine:
                logger.info(f"Ignoring {result.trigger} capture result from a closed session")
                return
            self.last_result = result

        logger.info(f"Capture finished: {result.trigger} success={result.success}")
        if result.success:
            self.stop_session()

    def status(self):
        """Session status for API responses"""
        engine = self.engine
        return {
            "session_active": engine is not None,
            "camera_opened": self.camera.is_opened(),
            "engine": engine.status() if engine is not None else None,
            "last_capture": self.last_result.to_dict() if self.last_result else None
        }


# Initialize capture coordinator
logger.info("Starting application initialization")

capture_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='capture')

coordinator = CaptureCoordinator(
    camera=Camera(camera_index=CAMERA_INDEX),
    executor=capture_executor
)


def shutdown():
    """Stop any running session and the capture executor"""
    logger.info("Shutting down capture service")
    coordinator.stop_session()
    capture_executor.shutdown(wait=False)


atexit.register(shutdown)


def error_response(error):
    """Map a known error to its JSON body and HTTP status"""
    if isinstance(error, ObservationError):
        status = 400
    elif isinstance(error, SessionError):
        status = 409
    elif isinstance(error, CameraError):
        status = 503
    else:
        status = 500
    return jsonify(handle_error(error)), status


def read_json_body():
    """Return the request's JSON object, or None if it isn't one"""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None
    return data


# ============================================================================
# API Endpoints
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "face-capture-service",
        "version": "1.0.0"
    })


@app.route('/api/session/start', methods=['POST'])
def start_session():
    """Open the camera view and start auto-capture"""
    logger.info("Start session request received")

    try:
        started = coordinator.start_session()
        return jsonify({"success": True, "started": started})
    except CaptureServiceError as e:
        return error_response(e)
    except Exception as e:
        return jsonify(handle_error(e)), 500


@app.route('/api/session/stop', methods=['POST'])
def stop_session():
    """Close the camera view; cancels any scheduled capture"""
    logger.info("Stop session request received")
    coordinator.stop_session()
    return jsonify({"success": True})


@app.route('/api/frames', methods=['POST'])
def submit_frame():
    """
    Submit one frame's detected faces.

    Request:
        {"faces": [{"leftEyeOpenProbability": 0.9, ..., "bounds": {...}}]}

    Response:
        {"success": true, "engine": { ... engine status ... }}
    """
    data = read_json_body()
    if data is None:
        return jsonify({
            "success": False,
            "error": "Request body must be a JSON object",
            "error_code": "INVALID_REQUEST"
        }), 400

    try:
        status = coordinator.process_frame(data.get('faces', []))
        return jsonify({"success": True, "engine": status})
    except CaptureServiceError as e:
        return error_response(e)
    except Exception as e:
        return jsonify(handle_error(e)), 500


@app.route('/api/capture', methods=['POST'])
def manual_capture():
    """Manual capture request from the user"""
    logger.info("Manual capture request received from client")

    try:
        accepted = coordinator.manual_capture()
        return jsonify({"success": True, "accepted": accepted})
    except CaptureServiceError as e:
        return error_response(e)
    except Exception as e:
        return jsonify(handle_error(e)), 500


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get session status and last capture"""
    return jsonify({"success": True, **coordinator.status()})


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    print("\n" + "=" * 60)
    print("FACE AUTO-CAPTURE SERVICE")
    print("=" * 60)
    print("\n📁 Project Structure:")
    print("  layer1_capture/      - Camera handling")
    print("  layer2_face_quality/ - Face observations + quality gate")
    print("  layer3_auto_capture/ - Streak counter, debounce, capture gate")
    print("\n📡 API Endpoints:")
    print("  GET  /health             - Health check")
    print("  POST /api/session/start  - Open camera session")
    print("  POST /api/session/stop   - Close camera session")
    print("  POST /api/frames         - Submit detected faces for one frame")
    print("  POST /api/capture        - Manual capture")
    print("  GET  /api/status         - Session status")
    print("\n🎥 Camera:")
    print(f"  Device: /dev/video{CAMERA_INDEX}")
    print(f"  Streak: {coordinator.config.required_frames} frames")
    print(f"  Debounce: {coordinator.config.debounce_ms} ms")
    print("\n" + "=" * 60)
    print("Server starting... Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=PORT, threaded=True)
