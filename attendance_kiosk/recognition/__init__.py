"""
Recognition algorithms package.

Contains modules for:
- Face quality assessment
- Descriptor extraction interface
- Template matching
- Per-employee cooldown
- Face enrollment
"""

from .quality import FaceRegion, QualityAssessment, assess_face_quality, compute_blur_score
from .extractor import DescriptorExtractor, DetectedFace, largest_face
from .matching import NO_MATCH, Matcher, MatchResult
from .cooldown import CooldownTracker
from .enrollment import EnrollmentStep, EnrollmentWorkflow

__all__ = [
    'FaceRegion',
    'QualityAssessment',
    'assess_face_quality',
    'compute_blur_score',
    'DescriptorExtractor',
    'DetectedFace',
    'largest_face',
    'NO_MATCH',
    'Matcher',
    'MatchResult',
    'CooldownTracker',
    'EnrollmentStep',
    'EnrollmentWorkflow',
]
