"""
Data preparation utilities for Cascade Trainer.

Implements reproducible data handling with:
- Seeded random number generators
- Atomic file operations
- Image integrity validation
- Positive list and background corpus loading
"""

from .utils import (
    ReproducibilityManager,
    AtomicFileWriter,
    DataIntegrityValidator,
    SystemMonitor,
    FileHasher
)
from .build_dataset import DatasetBuilder

__all__ = [
    "ReproducibilityManager",
    "AtomicFileWriter",
    "DataIntegrityValidator",
    "SystemMonitor",
    "FileHasher",
    "DatasetBuilder"
]
