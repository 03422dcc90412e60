"""
Descriptor extractor capability.

The embedding model is an external capability; the engine only relies on
this interface so matching and enrollment can run without it.
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol

import numpy as np

from .quality import FaceRegion


@dataclass(frozen=True)
class DetectedFace:
    region: FaceRegion
    embedding: Optional[np.ndarray] = None


class DescriptorExtractor(Protocol):
    """Detects faces in a frame and turns one into a fixed-length descriptor."""

    def detect(self, frame: np.ndarray) -> List[DetectedFace]:
        ...

    def extract(self, face: DetectedFace) -> np.ndarray:
        """Raises DescriptorExtractionError when no descriptor can be produced."""
        ...


def crop_face(frame: np.ndarray, bbox: np.ndarray) -> np.ndarray:
    """Crop a bbox out of a frame, clipped to the frame bounds."""
    height, width = frame.shape[:2]
    x1, y1, x2, y2 = np.asarray(bbox, dtype=float).astype(int)
    x1, y1 = max(0, x1), max(0, y1)
    x2, y2 = min(width, x2), min(height, y2)
    return frame[y1:y2, x1:x2]


def largest_face(faces: List[DetectedFace]) -> Optional[DetectedFace]:
    """The kiosk serves one person at a time: the closest (largest) face."""
    if not faces:
        return None

    def area(face: DetectedFace) -> float:
        x1, y1, x2, y2 = np.asarray(face.region.bbox, dtype=float)
        return (x2 - x1) * (y2 - y1)

    return max(faces, key=area)
