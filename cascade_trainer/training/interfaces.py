"""
Collaborator interfaces consumed by the training-data engine.

The cascade evaluator, weak classifiers and shape-indexed features are trained
and evaluated elsewhere; the miner and the training sets only depend on the
small surfaces declared here.
"""

from typing import NamedTuple, Optional, Protocol

import numpy as np


class CascadeResult(NamedTuple):
    """Outcome of running a patch through the stages trained so far."""

    survives: bool
    score: float
    shape: Optional[np.ndarray] = None


class CascadeEvaluator(Protocol):
    """
    Partially trained joint cascade.

    ``test`` is called concurrently from every mining worker, so it must only
    read the cascade's trained parameters.
    """

    def test(self, patch: np.ndarray) -> CascadeResult:
        ...


class WeakClassifier(Protocol):
    """One boosting round's regression tree."""

    def evaluate(self, image: np.ndarray, image_half: np.ndarray,
                 image_quarter: np.ndarray, shape: np.ndarray) -> float:
        ...


class Feature(Protocol):
    """Shape-indexed feature from the feature pool."""

    def calc(self, image: np.ndarray, image_half: np.ndarray,
             image_quarter: np.ndarray, shape: np.ndarray) -> int:
        ...
