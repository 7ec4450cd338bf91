"""
Face Matcher

Nearest-neighbour search of a submitted descriptor over enrolled templates.

Distances are Euclidean in the descriptor space of the upstream feature
extractor; lower is more similar. A descriptor matches when the smallest distance
is strictly below the threshold. The search is a full linear scan, which is
fine for small populations; the Matcher interface lets an indexed search
replace it without touching callers.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .models import BiometricTemplate

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.6


@dataclass(frozen=True)
class MatchResult:
    """Outcome of one match attempt."""
    template: Optional[BiometricTemplate]
    distance: Optional[float]
    threshold: float
    candidates: int

    @property
    def matched(self) -> bool:
        return self.template is not None

    @property
    def user_id(self) -> Optional[str]:
        return self.template.user_id if self.template else None


def as_descriptor(descriptor) -> Optional[np.ndarray]:
    """
    Coerce a submitted descriptor into a float vector.

    Returns None when there is nothing usable to match: no descriptor, an
    empty one, a non-numeric one, or one containing NaN/inf.
    """
    if descriptor is None:
        return None
    try:
        sample = np.asarray(descriptor, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if sample.ndim != 1 or sample.size == 0 or not np.all(np.isfinite(sample)):
        return None
    return sample


class Matcher(ABC):
    @abstractmethod
    def match(self, sample, candidates: Sequence[BiometricTemplate], threshold: float) -> MatchResult:
        """Find the candidate closest to sample if it is within threshold."""


class LinearScanMatcher(Matcher):
    """Exhaustive Euclidean search; the first candidate wins exact ties."""

    def match(self, sample, candidates: Sequence[BiometricTemplate], threshold: float = DEFAULT_THRESHOLD) -> MatchResult:
        sample = np.asarray(sample, dtype=np.float64)

        # Templates from a different extractor cannot be compared
        comparable = [t for t in candidates if len(t.vector) == sample.shape[0]]
        if len(comparable) != len(candidates):
            logger.warning(
                f"Skipped {len(candidates) - len(comparable)} templates with a descriptor length other than {sample.shape[0]}"
            )
        if not comparable:
            return MatchResult(template=None, distance=None, threshold=threshold, candidates=0)

        matrix = np.asarray([t.vector for t in comparable], dtype=np.float64)
        distances = np.linalg.norm(matrix - sample, axis=1)
        best = int(np.argmin(distances))
        best_distance = float(distances[best])

        if best_distance < threshold:
            logger.info(f"Face matched user {comparable[best].user_id} at distance {best_distance:.4f}")
            return MatchResult(
                template=comparable[best], distance=best_distance, threshold=threshold, candidates=len(comparable)
            )

        logger.info(f"No face match: best distance {best_distance:.4f} >= threshold {threshold}")
        return MatchResult(template=None, distance=best_distance, threshold=threshold, candidates=len(comparable))
