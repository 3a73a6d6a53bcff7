"""
Test package for the training data engine.

Covers scan cursors, hard negative mining, training set bookkeeping and
checkpoints.
"""
