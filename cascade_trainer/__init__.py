"""
Cascade Trainer

Training-data engine for a joint cascade face detector and aligner: hard
negative mining over background images and the bookkeeping of the positive
and negative training sets between boosting rounds.

References:
- Chen, D., Ren, S., Wei, Y., Cao, X., & Sun, J. (2014). Joint Cascade Face
  Detection and Alignment. ECCV.
- Viola, P., & Jones, M. (2001). Rapid Object Detection using a Boosted
  Cascade of Simple Features. CVPR.
"""

__version__ = "1.0.0"
__author__ = "Cascade Trainer Team"
__email__ = "contact@example.com"

# Core modules
from . import config
from . import data_preparation
from . import training

__all__ = [
    "config",
    "data_preparation",
    "training"
]
