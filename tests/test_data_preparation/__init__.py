"""
Test package for data preparation modules.

This package contains tests for the shared utilities and the dataset loaders
of the Cascade Trainer.
"""
