"""
Face quality assessment module.

Evaluates whether a detected face is usable for recognition or enrollment:
- Size (face area as a share of the frame)
- Pose (yaw/pitch from the detector, or yaw estimated from landmarks)
- Lighting (mean gray level of the face crop)
- Sharpness (Laplacian variance)
- Detector confidence
"""

import math
from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from ..config import Config


@dataclass(frozen=True)
class FaceRegion:
    """A detected face with its geometry and crop."""
    bbox: np.ndarray
    frame_width: int
    frame_height: int
    crop: Optional[np.ndarray] = None
    det_score: float = 1.0
    pose: Optional[Tuple[float, float, float]] = None  # pitch, yaw, roll in degrees
    landmarks: Optional[np.ndarray] = None  # 5 points: eyes, nose, mouth corners


@dataclass(frozen=True)
class QualityAssessment:
    score: float
    is_good: bool
    reason: str


def compute_blur_score(gray_face: np.ndarray) -> float:
    """
    Compute blur score using Laplacian variance.

    Higher values indicate sharper images.
    """
    return float(cv2.Laplacian(gray_face, cv2.CV_64F).var())


def estimate_yaw_from_landmarks(landmarks: np.ndarray) -> float:
    """
    Estimate head yaw in degrees from 5-point landmarks.

    The horizontal offset of the nose tip from the midpoint between the eyes,
    relative to the eye distance, grows with head rotation.
    """
    left_eye, right_eye, nose = landmarks[0], landmarks[1], landmarks[2]
    eye_distance = float(np.linalg.norm(right_eye - left_eye))
    if eye_distance == 0:
        return 90.0
    offset = float(nose[0] - (left_eye[0] + right_eye[0]) / 2.0)
    return math.degrees(math.atan2(2.0 * offset, eye_distance))


def _head_pose(region: FaceRegion) -> Tuple[float, float]:
    if region.pose is not None:
        pitch, yaw, _ = region.pose
        return float(yaw), float(pitch)
    if region.landmarks is not None:
        return estimate_yaw_from_landmarks(np.asarray(region.landmarks, dtype=float)), 0.0
    return 0.0, 0.0


def assess_face_quality(region: FaceRegion, config: Config) -> QualityAssessment:
    """
    Score a detected face region for usability.

    Args:
        region: Detected face with bbox, frame size and optional crop/pose
        config: Service configuration (thresholds)

    Returns:
        QualityAssessment with score in [0, 1], verdict and a short
        instruction for the person in front of the camera
    """
    try:
        x1, y1, x2, y2 = np.asarray(region.bbox, dtype=float)
        frame_area = float(region.frame_width * region.frame_height)
        face_ratio = max(0.0, x2 - x1) * max(0.0, y2 - y1) / frame_area if frame_area else 0.0

        if face_ratio < config.min_face_ratio:
            return QualityAssessment(0.3, False, 'Please move closer to the camera')
        if face_ratio > config.max_face_ratio:
            return QualityAssessment(0.3, False, 'Please move back from the camera')

        yaw, pitch = _head_pose(region)
        if abs(yaw) > config.max_yaw_degrees or abs(pitch) > config.max_pitch_degrees:
            return QualityAssessment(0.4, False, 'Please face the camera directly')

        if region.det_score < config.min_detection_score:
            return QualityAssessment(0.5, False, 'Please ensure good lighting')

        brightness_score = 1.0
        sharpness_score = 1.0
        if region.crop is not None and region.crop.size > 0:
            gray = region.crop
            if gray.ndim == 3:
                gray = cv2.cvtColor(gray, cv2.COLOR_BGR2GRAY)
            brightness = float(np.mean(gray))
            if brightness < config.min_brightness:
                return QualityAssessment(0.5, False, 'Too dark, please ensure good lighting')
            if brightness > config.max_brightness:
                return QualityAssessment(0.5, False, 'Too bright, please avoid direct light')

            blur = compute_blur_score(gray)
            if blur < config.min_blur_variance:
                return QualityAssessment(0.5, False, 'Please hold still')

            middle = (config.min_brightness + config.max_brightness) / 2.0
            half_range = (config.max_brightness - config.min_brightness) / 2.0
            brightness_score = 1.0 - abs(brightness - middle) / half_range
            sharpness_score = min(1.0, blur / (2.0 * config.min_blur_variance))

        pose_score = 1.0 - 0.5 * max(
            abs(yaw) / config.max_yaw_degrees,
            abs(pitch) / config.max_pitch_degrees,
        )
        sub_scores = (pose_score, brightness_score, sharpness_score, min(1.0, region.det_score))
        score = 0.6 + 0.4 * float(np.mean(sub_scores))
        return QualityAssessment(round(min(1.0, score), 3), True, 'Face quality is good')

    except (cv2.error, ValueError, TypeError) as e:
        return QualityAssessment(0.0, False, f'Face could not be assessed: {e}')
