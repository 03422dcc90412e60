"""
InsightFace initialization module.

Provides face detection, head pose and descriptors using InsightFace models.
"""

from typing import List

import numpy as np
from insightface.app import FaceAnalysis

from .errors import DescriptorExtractionError, ModelLoadError
from .logging_config import get_logger
from .recognition.extractor import DetectedFace, crop_face
from .recognition.quality import FaceRegion

logger = get_logger(__name__)

DET_SIZE = (640, 640)


def initialize_face_app(det_size=DET_SIZE) -> FaceAnalysis:
    """
    Initialize InsightFace FaceAnalysis.

    Raises:
        ModelLoadError: If the models cannot be downloaded or prepared
    """
    logger.info('Initializing InsightFace AI...')

    try:
        face_app = FaceAnalysis(
            allowed_modules=['detection', 'landmark_3d_68', 'recognition'],
            providers=['CPUExecutionProvider'],
        )
        face_app.prepare(ctx_id=0, det_size=det_size)
    except Exception as e:
        raise ModelLoadError(f'InsightFace models failed to load: {e}') from e

    logger.info(f'✅ InsightFace initialized (det_size={det_size})')
    return face_app


class InsightFaceExtractor:
    """DescriptorExtractor backed by an InsightFace FaceAnalysis instance."""

    def __init__(self, face_app: FaceAnalysis):
        self.face_app = face_app

    @classmethod
    def load(cls) -> 'InsightFaceExtractor':
        return cls(initialize_face_app())

    def detect(self, frame: np.ndarray) -> List[DetectedFace]:
        height, width = frame.shape[:2]
        detected = []
        for face in self.face_app.get(frame):
            pose = getattr(face, 'pose', None)
            region = FaceRegion(
                bbox=np.asarray(face.bbox, dtype=float),
                frame_width=width,
                frame_height=height,
                crop=crop_face(frame, face.bbox),
                det_score=float(face.det_score),
                pose=tuple(float(v) for v in pose) if pose is not None else None,
                landmarks=getattr(face, 'kps', None),
            )
            detected.append(DetectedFace(region=region, embedding=getattr(face, 'normed_embedding', None)))
        return detected

    def extract(self, face: DetectedFace) -> np.ndarray:
        if face.embedding is None:
            raise DescriptorExtractionError('Recognition model produced no embedding for this face')
        embedding = np.asarray(face.embedding, dtype=np.float32)
        if not np.all(np.isfinite(embedding)):
            raise DescriptorExtractionError('Embedding contains non-finite values')
        return embedding
