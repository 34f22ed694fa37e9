"""
Layer 2 — Face Observation
One detected face per frame, as reported by the face detector.
"""
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from error_handlers import InvalidObservationError

logger = logging.getLogger(__name__)

# Detector JSON key -> FaceObservation field
_PROBABILITY_KEYS = {
    'leftEyeOpenProbability': 'left_eye_open_probability',
    'rightEyeOpenProbability': 'right_eye_open_probability',
    'smilingProbability': 'smiling_probability',
}
_ANGLE_KEYS = {
    'rollAngle': 'roll_angle',
    'yawAngle': 'yaw_angle',
    'pitchAngle': 'pitch_angle',
}

# Detector value for "could not classify the mouth"
SMILE_UNDETERMINED = -1.0


@dataclass
class FaceObservation:
    """Probabilities and geometry of one detected face."""
    left_eye_open_probability: float
    right_eye_open_probability: float
    smiling_probability: float         # -1 when undetermined
    bounds_width: float                # Fraction of frame width
    bounds_height: float               # Fraction of frame height
    roll_angle: Optional[float] = None  # Degrees, None treated as 0
    yaw_angle: Optional[float] = None
    pitch_angle: Optional[float] = None

    @property
    def angles(self) -> Dict[str, float]:
        """Head angles with absent readings defaulted to 0."""
        return {
            'roll': self.roll_angle or 0.0,
            'yaw': self.yaw_angle or 0.0,
            'pitch': self.pitch_angle or 0.0,
        }

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FaceObservation':
        """
        Build an observation from detector JSON.

        Accepts the detector's camelCase keys with a nested ``bounds`` object,
        or the snake_case field names used by this class.

        Raises:
            InvalidObservationError: If a required field is missing or not numeric
        """
        if not isinstance(data, dict):
            raise InvalidObservationError('face', 'must be an object')

        values = {}
        for camel, field_name in _PROBABILITY_KEYS.items():
            values[field_name] = _number(data, camel, field_name, required=True)
        for camel, field_name in _ANGLE_KEYS.items():
            values[field_name] = _number(data, camel, field_name, required=False)

        bounds = data.get('bounds')
        if bounds is not None:
            if not isinstance(bounds, dict):
                raise InvalidObservationError('bounds', 'must be an object')
            values['bounds_width'] = _number(bounds, 'width', 'width', required=True)
            values['bounds_height'] = _number(bounds, 'height', 'height', required=True)
        else:
            values['bounds_width'] = _number(data, 'boundsWidth', 'bounds_width', required=True)
            values['bounds_height'] = _number(data, 'boundsHeight', 'bounds_height', required=True)

        return cls(**values)


def _number(data: Dict[str, Any], camel: str, snake: str, required: bool) -> Optional[float]:
    """Read a numeric field under either key spelling."""
    value = data.get(camel, data.get(snake))
    if value is None:
        if required:
            raise InvalidObservationError(camel, 'is required')
        return None
    if isinstance(value, bool):
        raise InvalidObservationError(camel, 'must be a number')
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidObservationError(camel, 'must be a number')


def parse_faces(payload: Any) -> List[FaceObservation]:
    """
    Parse one frame's list of detected faces.

    Args:
        payload: List of face dicts (may be empty)

    Returns:
        List[FaceObservation]: Parsed faces in detector order
    """
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise InvalidObservationError('faces', 'must be a list')

    faces = [FaceObservation.from_dict(item) for item in payload]
    if len(faces) > 1:
        logger.debug(f"{len(faces)} faces in frame, only the first is evaluated")
    return faces
