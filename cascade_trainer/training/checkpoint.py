"""
Snapshot and restore of a positive/negative training set pair.

A checkpoint is a small fixed header followed by a compressed NumPy archive:

    magic (8 bytes) | format version (uint32, little endian) | SHA-256 of payload (32 bytes) | payload

The payload never contains pickled objects. Half and quarter resolution
caches are derived data and are rebuilt on resume.

Author: Cascade Trainer Team
"""

import io
import logging
import struct
import zipfile
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import numpy as np

from ..data_preparation.utils import AtomicFileWriter, FileHasher
from .dataset import TrainingSet, downscale
from .find_hard_negatives import HardNegativeMiner

logger = logging.getLogger(__name__)

MAGIC = b"CTCKPT\0\0"
FORMAT_VERSION = 1
_HEADER = struct.Struct('<8sI32s')

_ARRAY_FIELDS = ('gt_shapes', 'shape_mask', 'current_shapes', 'scores', 'last_scores', 'weights')


class CheckpointError(Exception):
    """A checkpoint is corrupted, truncated or written by another format version."""


def _pack_set(prefix: str, training_set: TrainingSet, arrays: Dict[str, np.ndarray]) -> None:
    if training_set.images:
        patch_shape = training_set.images[0].shape
        if any(image.shape != patch_shape for image in training_set.images):
            raise CheckpointError(f"{prefix} set holds patches of different sizes")
        images = np.stack(training_set.images)
    else:
        images = np.zeros((0, 0, 0), dtype=np.uint8)

    arrays[f'{prefix}_images'] = images
    for name in _ARRAY_FIELDS:
        arrays[f'{prefix}_{name}'] = getattr(training_set, name)
    arrays[f'{prefix}_is_positive'] = np.array(training_set.is_positive)
    arrays[f'{prefix}_is_sorted'] = np.array(training_set.is_sorted)
    arrays[f'{prefix}_n_landmarks'] = np.array(training_set.n_landmarks)
    arrays[f'{prefix}_has_mean_shape'] = np.array(training_set.mean_shape is not None)
    arrays[f'{prefix}_mean_shape'] = (training_set.mean_shape if training_set.mean_shape is not None
                                      else np.zeros(2 * training_set.n_landmarks))


def _unpack_set(prefix: str, archive, expect_positive: bool, config=None,
                miner: Optional[HardNegativeMiner] = None) -> TrainingSet:
    is_positive = bool(archive[f'{prefix}_is_positive'])
    if is_positive != expect_positive:
        raise CheckpointError(f"{prefix} set stored with is_positive={is_positive}")

    training_set = TrainingSet(is_positive, config=config,
                               n_landmarks=int(archive[f'{prefix}_n_landmarks']), miner=miner)

    images = archive[f'{prefix}_images']
    training_set.images = [np.ascontiguousarray(image) for image in images]
    training_set.images_half = [downscale(image, 2) for image in training_set.images]
    training_set.images_quarter = [downscale(image, 4) for image in training_set.images]
    for name in _ARRAY_FIELDS:
        setattr(training_set, name, archive[f'{prefix}_{name}'])

    if bool(archive[f'{prefix}_has_mean_shape']):
        training_set.mean_shape = archive[f'{prefix}_mean_shape']
    training_set.is_sorted = bool(archive[f'{prefix}_is_sorted'])

    try:
        training_set.check_consistency()
    except RuntimeError as e:
        raise CheckpointError(f"Inconsistent {prefix} set: {e}") from e

    width = 2 * training_set.n_landmarks
    if training_set.gt_shapes.shape[1:] != (width,) or training_set.current_shapes.shape[1:] != (width,):
        raise CheckpointError(f"{prefix} shapes do not have {width} coordinates")
    return training_set


def snapshot(pos: TrainingSet, neg: TrainingSet) -> bytes:
    """
    Serialize both training sets to a self-checking blob.

    Raises:
        ValueError: If ``pos`` is not positive or ``neg`` is not negative
    """
    if not pos.is_positive or neg.is_positive:
        raise ValueError("snapshot expects a positive and a negative training set")

    arrays: Dict[str, np.ndarray] = {}
    _pack_set('pos', pos, arrays)
    _pack_set('neg', neg, arrays)

    buffer = io.BytesIO()
    np.savez_compressed(buffer, **arrays)
    payload = buffer.getvalue()

    digest = FileHasher.hash_bytes(payload, 'sha256')
    return _HEADER.pack(MAGIC, FORMAT_VERSION, digest) + payload


def resume(blob: bytes, config=None,
           miner: Optional[HardNegativeMiner] = None) -> Tuple[TrainingSet, TrainingSet]:
    """
    Rebuild the training set pair written by ``snapshot``.

    Args:
        blob: Checkpoint bytes
        config: Configuration handed to the rebuilt sets
        miner: Miner attached to the rebuilt negative set

    Returns:
        (positive set, negative set)

    Raises:
        CheckpointError: If the blob is not a valid checkpoint of this format version
    """
    if len(blob) < _HEADER.size:
        raise CheckpointError(f"Checkpoint truncated: {len(blob)} bytes")

    magic, version, digest = _HEADER.unpack_from(blob)
    if magic != MAGIC:
        raise CheckpointError("Not a training set checkpoint (bad magic)")
    if version != FORMAT_VERSION:
        raise CheckpointError(f"Unsupported checkpoint version {version}, expected {FORMAT_VERSION}")

    payload = blob[_HEADER.size:]
    if FileHasher.hash_bytes(payload, 'sha256') != digest:
        raise CheckpointError("Checkpoint payload digest mismatch")

    try:
        with np.load(io.BytesIO(payload), allow_pickle=False) as archive:
            pos = _unpack_set('pos', archive, True, config)
            neg = _unpack_set('neg', archive, False, config, miner)
    except KeyError as e:
        raise CheckpointError(f"Checkpoint is missing field {e}") from e
    except (ValueError, zipfile.BadZipFile) as e:
        raise CheckpointError(f"Checkpoint payload cannot be decoded: {e}") from e

    logger.info(f"Resumed checkpoint with {pos.size} positive and {neg.size} negative samples")
    return pos, neg


def save_checkpoint(path: Union[str, Path], pos: TrainingSet, neg: TrainingSet) -> Path:
    """Write ``snapshot(pos, neg)`` to ``path`` atomically."""
    path = Path(path)
    blob = snapshot(pos, neg)
    with AtomicFileWriter.atomic_write(path, 'wb') as f:
        f.write(blob)

    logger.info(f"Saved checkpoint to {path} ({len(blob)} bytes)")
    return path


def load_checkpoint(path: Union[str, Path], config=None,
                    miner: Optional[HardNegativeMiner] = None) -> Tuple[TrainingSet, TrainingSet]:
    """
    Read a checkpoint file written by ``save_checkpoint``.

    Raises:
        FileNotFoundError: If the file does not exist
        CheckpointError: If the file is not a valid checkpoint
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Checkpoint not found: {path}")
    return resume(path.read_bytes(), config, miner)


def main():
    """
    Dump the training sets stored in a checkpoint for inspection.

    Writes one PNG per sample plus an index CSV per set to the dump directory.
    """
    import sys
    import argparse

    parser = argparse.ArgumentParser(description='Dump Cascade Trainer checkpoint')
    parser.add_argument('--config', type=str, help='Path to configuration file')
    parser.add_argument('--checkpoint', type=str, help='Checkpoint file (default: checkpoint.path)')
    parser.add_argument('--dump-dir', type=str, help='Output directory (default: checkpoint.dump_dir)')
    parser.add_argument('--verbose', action='store_true', help='Verbose logging')

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        from ..config import Config

        config = Config(args.config)
        data_paths = config.get_data_paths()
        checkpoint_path = Path(args.checkpoint) if args.checkpoint else data_paths['checkpoint']
        dump_dir = Path(args.dump_dir) if args.dump_dir else data_paths['dump_dir']

        pos, neg = load_checkpoint(checkpoint_path, config)
        pos_index = pos.dump(dump_dir)
        neg_index = neg.dump(dump_dir)

        logger.info("Checkpoint dump completed successfully!")
        logger.info(f"Positive samples: {pos.size} ({pos_index})")
        logger.info(f"Negative samples: {neg.size} ({neg_index})")

    except Exception as e:
        logger.error(f"Checkpoint dump failed: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
