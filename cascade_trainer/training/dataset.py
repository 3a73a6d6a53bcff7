"""
Training set bookkeeping for joint cascade boosting.

A TrainingSet holds one class of samples (faces or non-faces) as parallel
per-sample arrays: patches and their half/quarter resolution caches, ground
truth and current shapes, the shape mask, scores, last scores and weights.
Every public mutation keeps all of them the same length and in the same order.

Shapes are flat ``(x1, y1, ..., xL, yL)`` vectors in the patch's normalized
frame. Scores are the cumulative cascade outputs ``f_i`` and weights follow
``w_i = exp(-y_i * f_i)`` with ``y_i = +1`` for faces and ``-1`` otherwise.

Author: Cascade Trainer Team
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import pandas as pd

from ..data_preparation.utils import AtomicFileWriter, FileHasher
from .find_hard_negatives import HardNegativeMiner
from .interfaces import CascadeEvaluator, Feature, WeakClassifier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShapePerturbation:
    """
    Bounds of the random similarity transform applied to the mean shape.

    Scale, rotation (degrees) and translation (fraction of the mean shape's
    bounding-box extent, per axis) are drawn independently and uniformly from
    ``[1 - scale, 1 + scale]``, ``[-rotation, rotation]`` and
    ``[-translation, translation]``.
    """

    scale: float = 0.1
    rotation: float = 10.0
    translation: float = 0.05

    @classmethod
    def from_config(cls, config) -> 'ShapePerturbation':
        return cls(
            scale=float(config.get('training.random_shape.scale', cls.scale)),
            rotation=float(config.get('training.random_shape.rotation', cls.rotation)),
            translation=float(config.get('training.random_shape.translation', cls.translation)),
        )


@dataclass(frozen=True)
class MiningReport:
    """Outcome of a replenish request on a negative training set."""

    target: int
    requested: int
    accepted: int
    size: int

    @property
    def shortfall(self) -> int:
        return max(0, self.target - self.size)


def downscale(image: np.ndarray, factor: int) -> np.ndarray:
    height, width = image.shape[:2]
    size = (max(1, width // factor), max(1, height // factor))
    return cv2.resize(image, size, interpolation=cv2.INTER_AREA)


class TrainingSet:
    """
    Positive or negative training data with boosting state.

    Some operations only make sense on one kind of set: ground truth shapes
    exist only for faces, and only the negative set is replenished by mining.
    Faces without a ground truth shape are kept with ``shape_mask == -1`` so
    they still count for detection.

    Not thread-safe; the training loop calls these methods between rounds.
    """

    def __init__(self, is_positive: bool, config=None, n_landmarks: Optional[int] = None,
                 miner: Optional[HardNegativeMiner] = None,
                 rng: Optional[np.random.Generator] = None):
        """
        Initialize an empty training set.

        Args:
            is_positive: True for faces, False for non-faces; fixed for life
            config: Optional configuration object
            n_landmarks: Landmarks per shape (default: ``data.landmarks``)
            miner: Hard negative miner used by ``more_neg_samples``
            rng: Generator for random shapes (default: seeded from ``training.random_seed``)
        """
        self._is_positive = bool(is_positive)
        self.config = config

        if n_landmarks is None:
            n_landmarks = config.get('data.landmarks', 5) if config is not None else 5
        self.n_landmarks = int(n_landmarks)
        if self.n_landmarks < 1:
            raise ValueError(f"n_landmarks must be >= 1, got {self.n_landmarks}")

        self.miner = miner
        self.perturbation = ShapePerturbation.from_config(config) if config is not None else ShapePerturbation()
        if rng is None:
            seed = config.get('training.random_seed', None) if config is not None else None
            rng = np.random.default_rng(seed)
        self.rng = rng

        self.clear()

    @property
    def is_positive(self) -> bool:
        return self._is_positive

    @property
    def size(self) -> int:
        return len(self.scores)

    def __len__(self) -> int:
        return self.size

    def __repr__(self) -> str:
        kind = 'positive' if self._is_positive else 'negative'
        return f"TrainingSet({kind}, size={self.size}, sorted={self.is_sorted})"

    def clear(self) -> None:
        """Drop every sample and the mean shape."""
        width = 2 * self.n_landmarks
        self.images: List[np.ndarray] = []
        self.images_half: List[np.ndarray] = []
        self.images_quarter: List[np.ndarray] = []
        self.gt_shapes = np.zeros((0, width), dtype=np.float64)
        self.shape_mask = np.zeros(0, dtype=np.int32)
        self.current_shapes = np.zeros((0, width), dtype=np.float64)
        self.scores = np.zeros(0, dtype=np.float64)
        self.last_scores = np.zeros(0, dtype=np.float64)
        self.weights = np.zeros(0, dtype=np.float64)
        self.mean_shape: Optional[np.ndarray] = None
        self.is_sorted = False

    def check_consistency(self) -> bool:
        """
        Verify that every per-sample array has ``size`` entries.

        Raises:
            RuntimeError: If the parallel arrays disagree
        """
        lengths = {
            'images': len(self.images),
            'images_half': len(self.images_half),
            'images_quarter': len(self.images_quarter),
            'gt_shapes': len(self.gt_shapes),
            'shape_mask': len(self.shape_mask),
            'current_shapes': len(self.current_shapes),
            'scores': len(self.scores),
            'last_scores': len(self.last_scores),
            'weights': len(self.weights)
        }
        if len(set(lengths.values())) != 1:
            raise RuntimeError(f"Training set arrays out of sync: {lengths}")
        return True

    def _shape_rows(self, shapes, count: int, name: str) -> np.ndarray:
        shapes = np.asarray(shapes, dtype=np.float64).reshape(count, -1) if count else \
            np.zeros((0, 2 * self.n_landmarks), dtype=np.float64)
        if shapes.shape[1] != 2 * self.n_landmarks:
            raise ValueError(f"{name} must have {2 * self.n_landmarks} coordinates per sample, "
                             f"got {shapes.shape[1]}")
        return shapes

    def append_samples(self, images: Sequence[np.ndarray], gt_shapes=None, shape_mask=None,
                       current_shapes=None, scores=None, weights=None) -> None:
        """
        Append samples to every parallel array.

        Missing fields default to: zero ground truth, mask -1, current shape
        equal to the mean shape (or zeros), score 0 and weight 0. Negative
        sets always get mask -1.
        """
        count = len(images)
        if count == 0:
            return
        width = 2 * self.n_landmarks

        patches = [np.ascontiguousarray(image, dtype=np.uint8) for image in images]
        gt = self._shape_rows(gt_shapes, count, 'gt_shapes') if gt_shapes is not None else \
            np.zeros((count, width), dtype=np.float64)
        if current_shapes is not None:
            current = self._shape_rows(current_shapes, count, 'current_shapes')
        elif self.mean_shape is not None:
            current = np.tile(self.mean_shape, (count, 1))
        else:
            current = np.zeros((count, width), dtype=np.float64)

        if shape_mask is None or not self._is_positive:
            mask = np.full(count, -1, dtype=np.int32)
        else:
            mask = np.where(np.asarray(shape_mask).reshape(count) > 0, 1, -1).astype(np.int32)

        new_scores = np.zeros(count) if scores is None else np.asarray(scores, dtype=np.float64).reshape(count)
        new_weights = np.zeros(count) if weights is None else np.asarray(weights, dtype=np.float64).reshape(count)

        self.images.extend(patches)
        self.images_half.extend(downscale(patch, 2) for patch in patches)
        self.images_quarter.extend(downscale(patch, 4) for patch in patches)
        self.gt_shapes = np.vstack([self.gt_shapes, gt])
        self.shape_mask = np.concatenate([self.shape_mask, mask])
        self.current_shapes = np.vstack([self.current_shapes, current])
        self.scores = np.concatenate([self.scores, new_scores])
        self.last_scores = np.concatenate([self.last_scores, new_scores])
        self.weights = np.concatenate([self.weights, new_weights])
        self.is_sorted = False
        self.check_consistency()

    def _take(self, indices: np.ndarray) -> None:
        """Gather every parallel array with the same index vector."""
        indices = np.asarray(indices, dtype=np.intp)
        self.images = [self.images[i] for i in indices]
        self.images_half = [self.images_half[i] for i in indices]
        self.images_quarter = [self.images_quarter[i] for i in indices]
        self.gt_shapes = self.gt_shapes[indices]
        self.shape_mask = self.shape_mask[indices]
        self.current_shapes = self.current_shapes[indices]
        self.scores = self.scores[indices]
        self.last_scores = self.last_scores[indices]
        self.weights = self.weights[indices]
        self.check_consistency()

    def has_gt_shape(self, index: int) -> bool:
        return bool(self._is_positive and self.shape_mask[index] > 0)

    # Feature and shape computations

    def calc_feature_values(self, feature_pool: Sequence[Feature], indices: Sequence[int]) -> np.ndarray:
        """
        Evaluate every feature on the selected samples.

        Args:
            feature_pool: Features to evaluate
            indices: Sample indices

        Returns:
            int32 matrix with ``values[i, j] = feature_pool[i](sample indices[j])``
        """
        values = np.empty((len(feature_pool), len(indices)), dtype=np.int32)
        for j, index in enumerate(indices):
            sample = (self.images[index], self.images_half[index],
                      self.images_quarter[index], self.current_shapes[index])
            for i, feature in enumerate(feature_pool):
                values[i, j] = feature.calc(*sample)
        return values

    def calc_shape_residual(self, indices: Sequence[int], landmark_id: Optional[int] = None) -> np.ndarray:
        """
        Ground truth minus current shape for the selected faces.

        Args:
            indices: Sample indices, all with a ground truth shape
            landmark_id: Restrict the residual to one landmark's (dx, dy)

        Returns:
            ``[len(indices), 2L]`` matrix, or ``[len(indices), 2]`` for one landmark

        Raises:
            ValueError: If any selected sample has no ground truth shape
            IndexError: If ``landmark_id`` is out of range
        """
        indices = np.asarray(indices, dtype=np.intp)
        missing = [int(i) for i in indices if not self.has_gt_shape(i)]
        if missing:
            raise ValueError(f"Shape residual requested for samples without ground truth: {missing[:10]}")

        residual = self.gt_shapes[indices] - self.current_shapes[indices]
        if landmark_id is None:
            return residual
        if not 0 <= landmark_id < self.n_landmarks:
            raise IndexError(f"landmark_id {landmark_id} out of range [0, {self.n_landmarks})")
        return residual[:, 2 * landmark_id:2 * landmark_id + 2]

    def calc_mean_shape(self) -> np.ndarray:
        """
        Mean ground truth shape over faces that have one; also stored as ``mean_shape``.

        Raises:
            ValueError: On a negative set or when no face has a ground truth shape
        """
        if not self._is_positive:
            raise ValueError("Mean shape is only defined on a positive training set")
        with_shape = self.shape_mask > 0
        if not np.any(with_shape):
            raise ValueError("No positive sample has a ground truth shape")

        self.mean_shape = self.gt_shapes[with_shape].mean(axis=0)
        logger.debug(f"Mean shape computed over {int(with_shape.sum())} faces")
        return self.mean_shape.copy()

    @staticmethod
    def random_shape(mean_shape: np.ndarray, rng: Optional[np.random.Generator] = None,
                     perturbation: Optional[ShapePerturbation] = None) -> np.ndarray:
        """
        Random similarity perturbation of ``mean_shape`` about its centroid.

        Args:
            mean_shape: Flat ``(x1, y1, ..., xL, yL)`` shape
            rng: Random generator; identical seeds give identical shapes
            perturbation: Jitter bounds (default: ShapePerturbation())

        Returns:
            Perturbed flat shape
        """
        rng = rng if rng is not None else np.random.default_rng()
        p = perturbation if perturbation is not None else ShapePerturbation()

        points = np.asarray(mean_shape, dtype=np.float64).reshape(-1, 2)
        center = points.mean(axis=0)
        extent = points.max(axis=0) - points.min(axis=0)

        scale = rng.uniform(1.0 - p.scale, 1.0 + p.scale)
        angle = np.deg2rad(rng.uniform(-p.rotation, p.rotation))
        shift = rng.uniform(-p.translation, p.translation, size=2) * extent

        rotation = np.array([[np.cos(angle), -np.sin(angle)],
                             [np.sin(angle), np.cos(angle)]])
        moved = scale * (points - center) @ rotation.T + center + shift
        return moved.reshape(-1)

    @staticmethod
    def random_shapes(mean_shape: np.ndarray, count: int, rng: Optional[np.random.Generator] = None,
                      perturbation: Optional[ShapePerturbation] = None) -> np.ndarray:
        """``count`` independent draws of ``random_shape``, one per row."""
        rng = rng if rng is not None else np.random.default_rng()
        width = np.asarray(mean_shape).size
        if count <= 0:
            return np.zeros((0, width), dtype=np.float64)
        return np.vstack([TrainingSet.random_shape(mean_shape, rng, perturbation) for _ in range(count)])

    def init_current_shapes(self, mean_shape: Optional[np.ndarray] = None) -> None:
        """Reset every current shape to a random perturbation of the mean shape."""
        mean_shape = self.mean_shape if mean_shape is None else np.asarray(mean_shape, dtype=np.float64)
        if mean_shape is None:
            raise ValueError("No mean shape available, call calc_mean_shape() first")
        self.current_shapes = self.random_shapes(mean_shape, self.size, self.rng, self.perturbation)

    # Boosting updates

    def update_weights(self) -> None:
        """``w_i = exp(-y_i * f_i)`` with ``y_i`` given by the set's label."""
        label = 1.0 if self._is_positive else -1.0
        self.weights = np.exp(-label * self.scores)

    @staticmethod
    def update_weights_jointly(pos: 'TrainingSet', neg: 'TrainingSet') -> float:
        """
        Update both sets' weights, then scale them to sum to one over both sets.

        Returns:
            Total weight before normalization

        Raises:
            FloatingPointError: If scores overflow the exponential
        """
        pos.update_weights()
        neg.update_weights()
        total = float(pos.weights.sum() + neg.weights.sum())
        if total == 0.0:
            return total
        if not np.isfinite(total):
            raise FloatingPointError("Sample weights overflowed; normalize scores with apply_mean_and_std()")

        pos.weights /= total
        neg.weights /= total
        return total

    def update_scores(self, cart: WeakClassifier) -> None:
        """``f_i += cart(sample_i)``; the previous scores stay available to ``reset_scores``."""
        deltas = np.array([
            cart.evaluate(self.images[i], self.images_half[i], self.images_quarter[i], self.current_shapes[i])
            for i in range(self.size)
        ], dtype=np.float64)

        self.last_scores = self.scores.copy()
        self.scores = self.scores + deltas
        self.is_sorted = False

    def reset_scores(self) -> None:
        """Roll back the last ``update_scores``."""
        self.scores = self.last_scores.copy()
        self.is_sorted = False

    @staticmethod
    def calc_mean_and_std(pos: 'TrainingSet', neg: 'TrainingSet') -> Tuple[float, float]:
        """Mean and population standard deviation of the scores of both sets together."""
        scores = np.concatenate([pos.scores, neg.scores])
        if scores.size == 0:
            raise ValueError("Cannot compute score statistics of two empty training sets")
        return float(scores.mean()), float(scores.std())

    def apply_mean_and_std(self, mean: float, std: float) -> None:
        """
        Standardize scores; ordering is unchanged so ``is_sorted`` is kept.

        ``last_scores`` get the same transform so ``reset_scores`` stays on
        the standardized scale.
        """
        if not std > 0.0:
            raise ValueError(f"Standard deviation must be positive, got {std}")
        self.scores = (self.scores - mean) / std
        self.last_scores = (self.last_scores - mean) / std

    # Ordering and pruning

    def swap(self, i: int, j: int) -> None:
        """Exchange every attribute of samples ``i`` and ``j``."""
        for index in (i, j):
            if not 0 <= index < self.size:
                raise IndexError(f"Sample index {index} out of range [0, {self.size})")
        if i == j:
            return

        for seq in (self.images, self.images_half, self.images_quarter):
            seq[i], seq[j] = seq[j], seq[i]
        for arr in (self.gt_shapes, self.shape_mask, self.current_shapes,
                    self.scores, self.last_scores, self.weights):
            arr[[i, j]] = arr[[j, i]]
        self.is_sorted = False

    def qsort(self) -> None:
        """Sort every array by descending score; ties keep their current order."""
        order = np.lexsort((np.arange(self.size), -self.scores))
        self._take(order)
        self.is_sorted = True

    def calc_threshold_by_number(self, remove: int) -> float:
        """
        Threshold with exactly ``remove`` samples scoring below it.

        The threshold is the midpoint between the highest score to remove and
        the lowest score to keep; tied scores at that boundary are all kept.
        Sorts the set first if needed.

        Returns:
            The threshold; ``-inf`` for ``remove <= 0`` and ``+inf`` for
            ``remove >= size``
        """
        if not self.is_sorted:
            self.qsort()

        size = self.size
        if remove <= 0:
            return float('-inf')
        if remove >= size:
            return float('inf')

        lowest_kept = self.scores[size - remove - 1]
        highest_removed = self.scores[size - remove]
        return float((lowest_kept + highest_removed) / 2.0)

    def calc_threshold_by_rate(self, rate: float) -> float:
        """Threshold with ``floor(rate * size)`` samples scoring below it."""
        if not 0.0 <= rate <= 1.0:
            raise ValueError(f"rate must be within [0, 1], got {rate}")
        return self.calc_threshold_by_number(int(np.floor(rate * self.size)))

    def pre_remove(self, threshold: float) -> int:
        """Number of samples ``remove(threshold)`` would delete."""
        return int(np.count_nonzero(self.scores < threshold))

    def remove(self, threshold: float) -> int:
        """
        Delete every sample with ``score < threshold``, keeping the survivors' order.

        Returns:
            Number of samples removed
        """
        keep = np.flatnonzero(self.scores >= threshold)
        removed = self.size - keep.size
        if removed:
            was_sorted = self.is_sorted
            self._take(keep)
            self.is_sorted = was_sorted
        logger.info(f"Removed {removed} {'positive' if self._is_positive else 'negative'} samples "
                    f"below {threshold:.6f}, {self.size} left")
        return removed

    # Negative replenishing

    def more_neg_samples(self, pos_size: int, rate: float, cascade: CascadeEvaluator) -> MiningReport:
        """
        Mine negatives until the set holds ``int(pos_size * rate)`` samples.

        A corpus that runs dry leaves the set undersized; the report's
        ``shortfall`` tells the training loop by how much.

        Args:
            pos_size: Current number of positive samples
            rate: Wanted ratio N(negative) / N(positive)
            cascade: Cascade under training

        Returns:
            MiningReport describing the request and the resulting size

        Raises:
            ValueError: On a positive set or without an attached miner
        """
        if self._is_positive:
            raise ValueError("more_neg_samples is only valid on a negative training set")
        if self.miner is None:
            raise ValueError("No HardNegativeMiner attached to the negative training set")

        target = int(pos_size * rate)
        deficit = target - self.size
        if deficit <= 0:
            logger.info(f"Negative set already holds {self.size}/{target} samples, no mining needed")
            return MiningReport(target=target, requested=0, accepted=0, size=self.size)

        result = self.miner.generate(cascade, deficit)
        if result.accepted_count:
            stub = self.mean_shape if self.mean_shape is not None else np.zeros(2 * self.n_landmarks)
            shapes = [stub if shape is None else np.asarray(shape, dtype=np.float64).reshape(-1)
                      for shape in result.shapes]
            self.append_samples(result.images, current_shapes=np.vstack(shapes), scores=result.scores)

        report = MiningReport(target=target, requested=deficit, accepted=result.accepted_count, size=self.size)
        if report.shortfall:
            logger.warning(f"Negative set undersized: {self.size}/{target} samples "
                           f"({report.shortfall} missing after mining)")
        else:
            logger.info(f"Negative set replenished with {result.accepted_count} samples, size {self.size}")
        return report

    # Inspection

    def dump(self, directory: Union[str, Path]) -> Path:
        """
        Write every patch as PNG plus an index CSV of file digests, scores and weights.

        Args:
            directory: Output directory, created if needed

        Returns:
            Path of the written index

        Raises:
            IOError: If a patch cannot be written
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        prefix = 'pos' if self._is_positive else 'neg'

        files, digests = [], []
        for i, image in enumerate(self.images):
            filename = f"{prefix}_{i:06d}.png"
            if not cv2.imwrite(str(directory / filename), image):
                raise IOError(f"Failed to write sample {i} to {directory / filename}")
            files.append(filename)
            digests.append(FileHasher.generate_file_hash(directory / filename))

        index = pd.DataFrame({
            'file': files,
            'sha256': digests,
            'score': self.scores,
            'weight': self.weights,
            'has_gt_shape': [self.has_gt_shape(i) for i in range(self.size)]
        })
        index_path = directory / f"{prefix}_index.csv"
        with AtomicFileWriter.atomic_write(index_path) as f:
            index.to_csv(f, index=False)

        logger.info(f"Dumped {len(files)} {prefix} samples to {directory}")
        return index_path
