"""
Layer 2 — Face Quality Evaluator
Per-frame gate: is this face good enough to photograph?
Both eyes open, mouth expression readable, head roughly frontal,
and the face large enough in the frame.
"""
import logging
from typing import Dict, Optional, Tuple
from dataclasses import dataclass

from .observation import FaceObservation, SMILE_UNDETERMINED

logger = logging.getLogger(__name__)


@dataclass
class QualityVerdict:
    """Outcome of evaluating one face observation."""
    accepted: bool
    reason: str

    def __bool__(self) -> bool:
        return self.accepted

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {'accepted': self.accepted, 'reason': self.reason}


class FaceQualityEvaluator:
    """
    Stateless face quality gate.
    Every check must pass; thresholds are strict inequalities.
    """

    THRESHOLDS = {
        'min_eye_open_probability': 0.5,  # Each eye must exceed this
        'max_angle_degrees': 20.0,        # |roll|, |yaw|, |pitch| must stay below
        'min_bounds_fraction': 0.3,       # Width and height must exceed this
    }

    def __init__(self, thresholds: Optional[Dict] = None):
        """
        Initialize face quality evaluator.

        Args:
            thresholds: Optional custom thresholds
        """
        self.thresholds = {**self.THRESHOLDS, **(thresholds or {})}

    def is_acceptable(self, observation: FaceObservation) -> Tuple[bool, str]:
        """
        Check one observation against every threshold.

        Args:
            observation: Detected face

        Returns:
            Tuple of (is_acceptable, reason_if_rejected)
        """
        t = self.thresholds
        min_eye = t['min_eye_open_probability']

        if not observation.left_eye_open_probability > min_eye:
            return False, f"Left eye closed ({observation.left_eye_open_probability:.2f} <= {min_eye})"

        if not observation.right_eye_open_probability > min_eye:
            return False, f"Right eye closed ({observation.right_eye_open_probability:.2f} <= {min_eye})"

        if observation.smiling_probability == SMILE_UNDETERMINED:
            return False, "Mouth expression undetermined"

        max_angle = t['max_angle_degrees']
        for name, angle in observation.angles.items():
            if not abs(angle) < max_angle:
                return False, f"Head {name} too large ({angle:.1f} deg)"

        min_size = t['min_bounds_fraction']
        if not observation.bounds_width > min_size:
            return False, f"Face too narrow ({observation.bounds_width:.2f} <= {min_size})"

        if not observation.bounds_height > min_size:
            return False, f"Face too short ({observation.bounds_height:.2f} <= {min_size})"

        return True, "Face acceptable"

    def verdict(self, observation: FaceObservation) -> QualityVerdict:
        """Evaluate and wrap the result."""
        accepted, reason = self.is_acceptable(observation)
        return QualityVerdict(accepted=accepted, reason=reason)

    def evaluate(self, observation: FaceObservation) -> bool:
        """Boolean form of ``is_acceptable``."""
        accepted, reason = self.is_acceptable(observation)
        if not accepted:
            logger.debug(f"Face rejected: {reason}")
        return accepted


_default_evaluator = FaceQualityEvaluator()


def evaluate(observation: FaceObservation) -> bool:
    """Evaluate an observation with the default thresholds."""
    return _default_evaluator.evaluate(observation)
