"""
Descriptor matching module.

Nearest-template classification: the probe is compared against every
enrolled descriptor of every employee and the global minimum wins, provided
it is under the threshold and no other employee is nearly as close.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np

from ..config import Config
from ..employees import TemplateStore
from ..logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class MatchResult:
    employee_id: Optional[str]
    confidence: float
    distance: float
    ambiguous: bool = False

    @property
    def matched(self) -> bool:
        return self.employee_id is not None


NO_MATCH = MatchResult(employee_id=None, confidence=0.0, distance=float('inf'))


def compute_distances(probe: np.ndarray, gallery: np.ndarray, metric: str) -> np.ndarray:
    """
    Distance from a probe to each gallery row.

    Args:
        probe: Descriptor [D]
        gallery: Descriptors [M, D]
        metric: 'cosine' (1 - cosine similarity) or 'euclidean'

    Returns:
        Distances [M]
    """
    if metric == 'cosine':
        probe_n = probe / (np.linalg.norm(probe) + 1e-9)
        gallery_n = gallery / (np.linalg.norm(gallery, axis=1, keepdims=True) + 1e-9)
        return 1.0 - gallery_n @ probe_n
    return np.linalg.norm(gallery - probe, axis=1)


class Matcher:
    """Matches probe descriptors against the template store."""

    def __init__(self, store: TemplateStore, metric: str = 'cosine',
                 threshold: float = 0.6, ambiguity_epsilon: float = 0.05):
        self.store = store
        self.metric = metric
        self.threshold = threshold
        self.ambiguity_epsilon = ambiguity_epsilon

    @classmethod
    def from_config(cls, store: TemplateStore, config: Config) -> 'Matcher':
        return cls(
            store,
            metric=config.match_metric,
            threshold=config.match_threshold,
            ambiguity_epsilon=config.match_ambiguity_epsilon,
        )

    def match(self, probe: np.ndarray) -> MatchResult:
        """
        Match a probe descriptor.

        Multi-descriptor templates are not averaged: each enrolled pose is a
        separate neighbour. When the closest two employees are within the
        ambiguity epsilon of each other nobody is returned.

        Returns:
            MatchResult; confidence is 1 - distance clipped to [0, 1]
        """
        gallery, owners = self.store.descriptor_matrix()
        if gallery.shape[0] == 0:
            return NO_MATCH

        probe = np.asarray(probe, dtype=np.float32).ravel()
        if probe.shape[0] != gallery.shape[1]:
            logger.warning(
                f'Probe has {probe.shape[0]} dimensions, templates have {gallery.shape[1]}'
            )
            return NO_MATCH

        distances = compute_distances(probe, gallery, self.metric)

        employee_ids, inverse = np.unique(np.asarray(owners), return_inverse=True)
        per_employee = np.full(len(employee_ids), np.inf)
        np.minimum.at(per_employee, inverse, distances)

        order = np.argsort(per_employee)
        best = float(per_employee[order[0]])

        if best >= self.threshold:
            logger.debug(f'No match (best distance {best:.3f} >= {self.threshold})')
            return MatchResult(None, 0.0, best)

        if len(order) > 1:
            runner_up = float(per_employee[order[1]])
            if runner_up - best < self.ambiguity_epsilon:
                logger.info(
                    f'Ambiguous match between {employee_ids[order[0]]} and '
                    f'{employee_ids[order[1]]} ({best:.3f} vs {runner_up:.3f})'
                )
                return MatchResult(None, 0.0, best, ambiguous=True)

        confidence = float(np.clip(1.0 - best, 0.0, 1.0))
        return MatchResult(str(employee_ids[order[0]]), confidence, best)
