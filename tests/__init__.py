"""
Test suite for Cascade Trainer.

Testing framework covering:
- Real image files for backgrounds and positives
- Reproducibility of scans and random shapes
- Concurrency of hard negative mining
- Checkpoint integrity
"""
