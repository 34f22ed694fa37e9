"""
Error Handling System
Provides consistent error responses across all layers
"""
import logging

logger = logging.getLogger(__name__)


class CaptureServiceError(Exception):
    """Base exception for face capture service errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Camera
class CameraError(CaptureServiceError):
    """Camera-related errors"""
    pass


class CameraNotFoundError(CameraError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and CAMERA_INDEX"
            }
        )


class CameraInitError(CameraError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at /dev/video{camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class CameraNotInitializedError(CameraError):
    """Attempting to use camera before initialization"""
    def __init__(self):
        super().__init__(
            message="Camera not initialized. Please start a capture session first.",
            error_code="CAMERA_NOT_INITIALIZED",
            details={
                "suggestion": "Call /api/session/start first"
            }
        )


class FrameCaptureError(CameraError):
    """Failed to capture frame"""
    def __init__(self):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "suggestion": "Check camera connection or restart the session"
            }
        )


# Layer 2 Errors - Face observations
class ObservationError(CaptureServiceError):
    """Face observation errors"""
    pass


class InvalidObservationError(ObservationError):
    """Face observation payload is malformed"""
    def __init__(self, field, reason):
        super().__init__(
            message=f"Invalid face observation: {field} {reason}",
            error_code="INVALID_OBSERVATION",
            details={
                "field": field,
                "reason": reason,
                "suggestion": "Send the detector output with eye, smile, angle and bounds fields"
            }
        )


# Layer 3 Errors - Capture session
class SessionError(CaptureServiceError):
    """Capture session errors"""
    pass


class SessionNotActiveError(SessionError):
    """No capture session is running"""
    def __init__(self):
        super().__init__(
            message="No active capture session",
            error_code="SESSION_NOT_ACTIVE",
            details={
                "suggestion": "Call /api/session/start before sending frames"
            }
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, CaptureServiceError):
        # Known service error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }
