"""
Training data engine for Cascade Trainer.

Implements the data side of cascade boosting with:
- Parallel hard negative mining over a background corpus
- Positive/negative training sets with scores, weights and shapes
- Threshold selection and pruning between boosting rounds
- Versioned checkpoints of the training set pair
"""

from .interfaces import CascadeResult, CascadeEvaluator, WeakClassifier, Feature
from .background import BackgroundCorpus, BackgroundImageError
from .mining_cursor import MiningCursor, ScanSettings
from .find_hard_negatives import HardNegativeMiner, MiningResult, MiningStatistics
from .dataset import TrainingSet, ShapePerturbation, MiningReport
from .checkpoint import CheckpointError, snapshot, resume, save_checkpoint, load_checkpoint

__all__ = [
    "CascadeResult",
    "CascadeEvaluator",
    "WeakClassifier",
    "Feature",
    "BackgroundCorpus",
    "BackgroundImageError",
    "MiningCursor",
    "ScanSettings",
    "HardNegativeMiner",
    "MiningResult",
    "MiningStatistics",
    "TrainingSet",
    "ShapePerturbation",
    "MiningReport",
    "CheckpointError",
    "snapshot",
    "resume",
    "save_checkpoint",
    "load_checkpoint"
]
