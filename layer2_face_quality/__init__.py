"""
Layer 2 — Face Quality
Parses detector output into face observations and decides, one frame at a
time, whether the face is good enough for an automatic photo.
"""
from .observation import FaceObservation, parse_faces
from .evaluator import FaceQualityEvaluator, QualityVerdict, evaluate

__all__ = [
    'FaceObservation',
    'parse_faces',
    'FaceQualityEvaluator',
    'QualityVerdict',
    'evaluate'
]
