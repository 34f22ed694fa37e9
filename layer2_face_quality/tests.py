"""
Tests for face observation parsing and the face quality gate.
"""
import pytest
from dataclasses import replace

from error_handlers import InvalidObservationError
from layer2_face_quality import FaceObservation, FaceQualityEvaluator, evaluate, parse_faces


class TestFaceObservationParsing:
    """Test detector JSON parsing."""

    def test_parses_camel_case_detector_output(self, good_face):
        """Test the detector's camelCase keys and nested bounds."""
        face = FaceObservation.from_dict(good_face)
        assert face.left_eye_open_probability == 0.9
        assert face.smiling_probability == 0.8
        assert face.bounds_width == 0.4
        assert face.bounds_height == 0.4

    def test_parses_snake_case_fields(self):
        """Test snake_case field names are accepted."""
        face = FaceObservation.from_dict({
            'left_eye_open_probability': 0.7,
            'right_eye_open_probability': 0.8,
            'smiling_probability': 0.1,
            'bounds_width': 0.5,
            'bounds_height': 0.6,
            'yaw_angle': -5,
        })
        assert face.right_eye_open_probability == 0.8
        assert face.yaw_angle == -5.0

    def test_missing_angles_default_to_zero(self, good_face):
        """Test absent angles are treated as 0, not rejected."""
        del good_face['rollAngle']
        del good_face['yawAngle']
        del good_face['pitchAngle']
        face = FaceObservation.from_dict(good_face)
        assert face.roll_angle is None
        assert face.angles == {'roll': 0.0, 'yaw': 0.0, 'pitch': 0.0}
        assert evaluate(face) is True

    def test_missing_probability_rejected(self, good_face):
        """Test a required probability must be present."""
        del good_face['leftEyeOpenProbability']
        with pytest.raises(InvalidObservationError) as exc:
            FaceObservation.from_dict(good_face)
        assert exc.value.error_code == 'INVALID_OBSERVATION'
        assert exc.value.details['field'] == 'leftEyeOpenProbability'

    def test_non_numeric_value_rejected(self, good_face):
        """Test non-numeric values are rejected."""
        good_face['bounds'] = {'width': 'wide', 'height': 0.4}
        with pytest.raises(InvalidObservationError):
            FaceObservation.from_dict(good_face)

    def test_boolean_value_rejected(self, good_face):
        """Test booleans are not silently treated as numbers."""
        good_face['smilingProbability'] = True
        with pytest.raises(InvalidObservationError):
            FaceObservation.from_dict(good_face)

    def test_parse_faces_keeps_detector_order(self, good_face):
        """Test a multi-face frame keeps order."""
        second = dict(good_face, leftEyeOpenProbability=0.2)
        faces = parse_faces([good_face, second])
        assert len(faces) == 2
        assert faces[1].left_eye_open_probability == 0.2

    def test_parse_faces_empty_and_none(self):
        """Test empty frames parse to an empty list."""
        assert parse_faces([]) == []
        assert parse_faces(None) == []

    def test_parse_faces_requires_list(self, good_face):
        """Test a single object is not accepted as a frame."""
        with pytest.raises(InvalidObservationError):
            parse_faces(good_face)


class TestFaceQualityEvaluator:
    """Test each acceptance rule."""

    def test_good_face_accepted(self, good_observation):
        """Test the reference face passes every check."""
        assert evaluate(good_observation) is True

    @pytest.mark.parametrize('left,right', [
        (0.5, 0.9), (0.9, 0.5), (0.0, 0.9), (0.9, 0.49), (0.3, 0.3),
    ])
    def test_closed_eye_rejected(self, good_observation, left, right):
        """Test either eye at or below 0.5 rejects."""
        face = replace(good_observation,
                       left_eye_open_probability=left,
                       right_eye_open_probability=right)
        assert evaluate(face) is False

    def test_eye_just_above_threshold_accepted(self, good_observation):
        """Test strict inequality on eye probability."""
        face = replace(good_observation,
                       left_eye_open_probability=0.51,
                       right_eye_open_probability=0.51)
        assert evaluate(face) is True

    def test_undetermined_smile_rejected(self, good_observation):
        """Test smiling probability -1 rejects regardless of other fields."""
        face = replace(good_observation, smiling_probability=-1)
        assert evaluate(face) is False

    @pytest.mark.parametrize('smile', [0.0, 0.01, 0.5, 1.0])
    def test_any_determinate_smile_accepted(self, good_observation, smile):
        """Test the smile value is otherwise unconstrained."""
        face = replace(good_observation, smiling_probability=smile)
        assert evaluate(face) is True

    @pytest.mark.parametrize('field', ['roll_angle', 'yaw_angle', 'pitch_angle'])
    @pytest.mark.parametrize('angle', [20, -20, 35.5, -90])
    def test_large_angle_rejected(self, good_observation, field, angle):
        """Test |angle| >= 20 on any axis rejects."""
        face = replace(good_observation, **{field: angle})
        assert evaluate(face) is False

    @pytest.mark.parametrize('field', ['roll_angle', 'yaw_angle', 'pitch_angle'])
    def test_angle_just_inside_accepted(self, good_observation, field):
        """Test 19.9 degrees still passes."""
        face = replace(good_observation, **{field: -19.9})
        assert evaluate(face) is True

    @pytest.mark.parametrize('width,height', [(0.3, 0.4), (0.4, 0.3), (0.1, 0.9), (0.9, 0.0)])
    def test_small_face_rejected(self, good_observation, width, height):
        """Test width or height at or below 0.3 rejects."""
        face = replace(good_observation, bounds_width=width, bounds_height=height)
        assert evaluate(face) is False

    def test_nan_reading_rejected(self, good_observation):
        """Test a NaN probability never passes."""
        face = replace(good_observation, left_eye_open_probability=float('nan'))
        assert evaluate(face) is False

    def test_reason_names_first_failure(self, good_observation):
        """Test is_acceptable explains the rejection."""
        evaluator = FaceQualityEvaluator()
        face = replace(good_observation, yaw_angle=45)
        accepted, reason = evaluator.is_acceptable(face)
        assert accepted is False
        assert 'yaw' in reason

    def test_verdict_is_truthy_when_accepted(self, good_observation):
        """Test QualityVerdict behaves as a boolean."""
        verdict = FaceQualityEvaluator().verdict(good_observation)
        assert verdict
        assert verdict.to_dict() == {'accepted': True, 'reason': 'Face acceptable'}

    def test_custom_thresholds(self, good_observation):
        """Test thresholds can be overridden per instance."""
        strict = FaceQualityEvaluator(thresholds={'min_bounds_fraction': 0.5})
        assert strict.evaluate(good_observation) is False
        assert strict.thresholds['max_angle_degrees'] == 20.0
