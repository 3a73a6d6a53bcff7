"""
Dataset construction for the Cascade Trainer.

Builds the initial positive and negative training sets from the files named in
the configuration: a positive list of annotated face images and the background
manifests that feed the hard negative miner.

Positive list format, one face per line:

    image_path x y w h x1 y1 x2 y2 ... xL yL

``x y w h`` is the face box in image pixels and ``xi yi`` are the landmarks in
image pixels. A face whose landmarks are unknown is written with negative
coordinates and is kept for detection only.

Key Features:
- Clamped face crops resized to ``data.face_size``
- Landmarks mapped into the patch's normalized [0, 1] frame
- Background corpus plus hard negative reserve for mining
- Reproducible initial shapes seeded from the configuration

Author: Cascade Trainer Team
"""

import logging
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from tqdm import tqdm

from .utils import ReproducibilityManager, DataIntegrityValidator
from ..training.background import read_grayscale
from ..training.dataset import TrainingSet
from ..training.find_hard_negatives import HardNegativeMiner
from ..training.interfaces import CascadeEvaluator

logger = logging.getLogger(__name__)


class DatasetBuilder:
    """
    Loader for the positive and negative training sets.

    The builder owns the HardNegativeMiner of the negative set, so later
    ``more_neg_samples`` calls keep scanning the same corpus.
    """

    def __init__(self, config):
        """
        Initialize dataset builder with configuration.

        Args:
            config: Configuration object with data paths and parameters
        """
        self.config = config
        self.data_paths = config.get_data_paths()
        self.validator = DataIntegrityValidator(config)
        self.global_seed = config.get('data.global_random_seed', 42)
        self.face_size = int(config.get('data.face_size', 80))
        self.n_landmarks = int(config.get('data.landmarks', 5))
        self.miner: Optional[HardNegativeMiner] = None

        ReproducibilityManager.set_seed(self.global_seed)

        logger.info(f"Initialized DatasetBuilder with seed={self.global_seed}")
        logger.info(f"Data paths: {self.data_paths}")

    def _parse_line(self, line: str, list_path: Path, line_no: int) -> Tuple[Path, np.ndarray, np.ndarray]:
        fields = line.split()
        expected = 5 + 2 * self.n_landmarks
        if len(fields) != expected:
            raise ValueError(f"{list_path}:{line_no}: expected {expected} fields, got {len(fields)}")

        try:
            values = np.array([float(v) for v in fields[1:]], dtype=np.float64)
        except ValueError:
            raise ValueError(f"{list_path}:{line_no}: non-numeric box or landmark value")

        image_path = Path(fields[0])
        if not image_path.is_absolute():
            image_path = list_path.parent / image_path
        return image_path, values[:4], values[4:]

    def _crop_face(self, image: np.ndarray, box: np.ndarray,
                   landmarks: np.ndarray) -> Tuple[np.ndarray, np.ndarray, bool]:
        """
        Cut the face box out of ``image`` and express landmarks in the patch frame.

        Returns:
            (patch, normalized shape, whether the shape is ground truth)
        """
        height, width = image.shape[:2]
        x, y, w, h = box
        x0 = int(np.clip(np.floor(x), 0, width - 1))
        y0 = int(np.clip(np.floor(y), 0, height - 1))
        x1 = int(np.clip(np.ceil(x + w), x0 + 1, width))
        y1 = int(np.clip(np.ceil(y + h), y0 + 1, height))

        crop = image[y0:y1, x0:x1]
        patch = cv2.resize(crop, (self.face_size, self.face_size), interpolation=cv2.INTER_AREA)

        if np.any(landmarks < 0):
            return patch, np.zeros(2 * self.n_landmarks), False

        points = landmarks.reshape(-1, 2)
        shape = np.empty_like(points)
        shape[:, 0] = (points[:, 0] - x0) / (x1 - x0)
        shape[:, 1] = (points[:, 1] - y0) / (y1 - y0)
        return patch, shape.reshape(-1), True

    def load_positive_dataset(self, list_path: Union[str, Path]) -> TrainingSet:
        """
        Load the faces listed in ``list_path`` into a positive training set.

        Args:
            list_path: Positive list file

        Returns:
            Positive TrainingSet; faces without landmarks have ``shape_mask == -1``

        Raises:
            FileNotFoundError: If the list or a listed image does not exist
            IOError: If a listed image cannot be decoded
            ValueError: If a line is malformed
        """
        list_path = Path(list_path)
        if not list_path.is_file():
            raise FileNotFoundError(f"Positive list not found: {list_path}")

        with open(list_path, 'r', encoding='utf-8') as f:
            entries = [(line_no, line.strip()) for line_no, line in enumerate(f, start=1)]
        entries = [(line_no, line) for line_no, line in entries if line and not line.startswith('#')]

        patches, shapes, mask = [], [], []
        for line_no, line in tqdm(entries, desc="Loading positives", unit="face"):
            image_path, box, landmarks = self._parse_line(line, list_path, line_no)
            if not image_path.is_file():
                raise FileNotFoundError(f"Positive image not found: {image_path} ({list_path}:{line_no})")

            patch, shape, has_shape = self._crop_face(read_grayscale(image_path), box, landmarks)
            patches.append(patch)
            shapes.append(shape)
            mask.append(1 if has_shape else -1)

        positives = TrainingSet(True, self.config, n_landmarks=self.n_landmarks)
        if patches:
            positives.append_samples(patches, gt_shapes=np.vstack(shapes), shape_mask=np.array(mask))

        with_shape = sum(1 for m in mask if m > 0)
        logger.info(f"Loaded {positives.size} positive faces from {list_path} "
                    f"({with_shape} with landmarks)")
        return positives

    def load_negative_dataset(self, manifests: Sequence[Union[str, Path]],
                              hard_manifests: Sequence[Union[str, Path]] = ()) -> TrainingSet:
        """
        Create an empty negative training set backed by a hard negative miner.

        Args:
            manifests: Background manifests for the miner's corpus
            hard_manifests: Manifests of pre-cut hard negatives tried first

        Returns:
            Negative TrainingSet with the miner attached

        Raises:
            FileNotFoundError: If a manifest cannot be opened
        """
        self.miner = HardNegativeMiner(self.config)
        corpus = self.miner.load(manifests)
        if hard_manifests:
            corpus.load_hard_negatives(hard_manifests, self.miner.settings.patch_size)

        logger.info(f"Negative set backed by {corpus}")
        return TrainingSet(False, self.config, n_landmarks=self.n_landmarks, miner=self.miner)

    def load_dataset(self, cascade: Optional[CascadeEvaluator] = None) -> Tuple[TrainingSet, TrainingSet]:
        """
        Load both training sets from the configured paths.

        The positive set gets its mean shape and random initial shapes. With a
        cascade, the negative set is filled to ``training.neg_pos_ratio``
        times the number of positives; without one it starts empty.

        Returns:
            (positive set, negative set)
        """
        logger.info("Starting dataset loading process")

        try:
            logger.info("Step 1/3: Loading positive faces")
            positives = self.load_positive_dataset(self.data_paths['positive_list'])

            logger.info("Step 2/3: Initializing shapes")
            mean_shape = positives.calc_mean_shape()
            positives.init_current_shapes(mean_shape)

            logger.info("Step 3/3: Preparing negatives")
            negatives = self.load_negative_dataset(self.data_paths['background_manifests'],
                                                   self.data_paths['hard_negative_manifests'])
            negatives.mean_shape = mean_shape.copy()

            if cascade is not None:
                ratio = float(self.config.get('training.neg_pos_ratio', 1.0))
                negatives.more_neg_samples(positives.size, ratio, cascade)

            logger.info(f"Dataset loading completed: {positives.size} positives, {negatives.size} negatives")
            return positives, negatives

        except Exception as e:
            logger.error(f"Dataset loading failed: {e}")
            raise


def main():
    """
    Main entry point for dataset building.

    Loads the configured positives and background corpus and writes the
    initial checkpoint that training resumes from.
    """
    import sys
    import argparse

    parser = argparse.ArgumentParser(description='Build Cascade Trainer initial dataset')
    parser.add_argument('--config', type=str, help='Path to configuration file')
    parser.add_argument('--output', type=str, help='Checkpoint file (default: checkpoint.path)')
    parser.add_argument('--verbose', action='store_true', help='Verbose logging')

    args = parser.parse_args()

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s - %(levelname)s - %(message)s')

    try:
        from ..config import Config
        from ..training.checkpoint import save_checkpoint

        config = Config(args.config)

        validation_results = config.validate()
        if not validation_results['valid']:
            logger.error("Configuration validation failed:")
            for error in validation_results['errors']:
                logger.error(f"  - {error}")
            sys.exit(1)

        builder = DatasetBuilder(config)
        positives, negatives = builder.load_dataset()

        output = Path(args.output) if args.output else builder.data_paths['checkpoint']
        save_checkpoint(output, positives, negatives)

        logger.info("Dataset building completed successfully!")
        logger.info(f"Checkpoint: {output}")

    except Exception as e:
        logger.error(f"Dataset building failed: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == "__main__":
    main()
