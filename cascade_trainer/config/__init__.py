"""
Configuration management for the Cascade Trainer.

Provides centralized configuration handling with support for:
- Training data locations (positive list, background manifests)
- Sliding-window mining geometry and worker pool size
- Reproducibility settings
"""

from .config import Config, SUPPORTED_TRANSFORMS

__all__ = ["Config", "SUPPORTED_TRANSFORMS"]
