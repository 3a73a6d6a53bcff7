"""
Per-worker scan state over the background corpus.

A cursor turns the corpus into a lazy stream of candidate patches: first the
reserve of known hard negatives, then a sliding window over every background
image at increasing scales and under each configured transform. Each worker
owns one cursor, so ``advance`` needs no synchronization.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import cv2
import numpy as np

from ..config import SUPPORTED_TRANSFORMS
from .background import BackgroundCorpus, fit_patch

logger = logging.getLogger(__name__)

TRANSFORMS: Dict[str, Callable[[np.ndarray], np.ndarray]] = {
    'identity': lambda image: image,
    'hflip': lambda image: cv2.flip(image, 1),
    'vflip': lambda image: cv2.flip(image, 0),
    'rot90': lambda image: cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE),
    'rot180': lambda image: cv2.rotate(image, cv2.ROTATE_180),
    'rot270': lambda image: cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE),
}


@dataclass(frozen=True)
class ScanSettings:
    """Sliding-window geometry shared by all cursors of one miner."""

    patch_size: Tuple[int, int] = (80, 80)     # (width, height) of emitted patches
    window_size: int = 80
    step: int = 20
    scale_step: float = 1.3
    max_scales: Optional[int] = None
    transforms: Tuple[str, ...] = ('identity', 'hflip')

    def __post_init__(self):
        if self.window_size < 1 or self.step < 1:
            raise ValueError("window_size and step must be >= 1")
        if self.scale_step <= 1.0:
            raise ValueError(f"scale_step must be > 1.0, got {self.scale_step}")
        if self.max_scales is not None and self.max_scales < 1:
            raise ValueError(f"max_scales must be >= 1 or None, got {self.max_scales}")
        if not self.transforms:
            raise ValueError("at least one transform is required")
        unknown = [t for t in self.transforms if t not in SUPPORTED_TRANSFORMS]
        if unknown:
            raise ValueError(f"Unknown transforms {unknown}, supported: {SUPPORTED_TRANSFORMS}")

    @classmethod
    def from_config(cls, config) -> 'ScanSettings':
        face_size = int(config.get('data.face_size', 80))
        max_scales = config.get('mining.max_scales', None)
        return cls(
            patch_size=(face_size, face_size),
            window_size=int(config.get('mining.window_size', face_size)),
            step=int(config.get('mining.step', 20)),
            scale_step=float(config.get('mining.scale_step', 1.3)),
            max_scales=int(max_scales) if max_scales is not None else None,
            transforms=tuple(config.get('mining.transforms', ['identity', 'hflip'])),
        )


class MiningCursor:
    """
    Restartable candidate stream for one mining worker.

    Worker ``k`` of ``W`` visits reserve entries and background images
    ``k, k+W, k+2W, ...``, so cursors of one miner never overlap. For every
    image the cursor cycles through the transforms; for every transform it
    slides the window row by row, then grows window and stride by
    ``scale_step`` until the window no longer fits or ``max_scales`` is hit.
    """

    def __init__(self, corpus: BackgroundCorpus, settings: ScanSettings,
                 worker_id: int = 0, num_workers: int = 1):
        if num_workers < 1 or not 0 <= worker_id < num_workers:
            raise ValueError(f"Invalid worker {worker_id} of {num_workers}")

        self.corpus = corpus
        self.settings = settings
        self.worker_id = worker_id
        self.num_workers = num_workers
        self.reset()

    def reset(self) -> None:
        """Rewind to the first reserve entry and the first background image."""
        self.image_index = self.worker_id
        self.hard_index = self.worker_id
        self.scale_index = 0
        self.scale_factor = 1.0
        self.x = 0
        self.y = 0
        self.window_size = self.settings.window_size
        self.step = self.settings.step
        self.transform_kind = 0
        self.needs_reset = True
        self.loaded_image: Optional[np.ndarray] = None
        self._source_image: Optional[np.ndarray] = None
        self.images_used = 0
        self.candidates = 0

    @property
    def exhausted(self) -> bool:
        return (self.hard_index >= len(self.corpus.hard_reserve)
                and self.needs_reset
                and self.image_index >= len(self.corpus))

    def advance(self) -> Optional[np.ndarray]:
        """
        Produce the next candidate patch.

        Returns:
            A ``patch_size`` grayscale patch, or None once the reserve and the
            corpus are both exhausted for this worker

        Raises:
            BackgroundImageError: If the next background image cannot be decoded
        """
        if self.hard_index < len(self.corpus.hard_reserve):
            patch = self.corpus.hard_reserve[self.hard_index]
            self.hard_index += self.num_workers
            self.candidates += 1
            return fit_patch(patch, self.settings.patch_size)

        while True:
            if self.needs_reset and not self._load_current():
                return None
            patch = self._next_window()
            if patch is not None:
                self.candidates += 1
                return patch

    def _load_current(self) -> bool:
        if self.image_index >= len(self.corpus):
            return False

        if self._source_image is None:
            self._source_image = self.corpus.read_image(self.image_index)
            self.images_used += 1
            logger.debug(f"Worker {self.worker_id} scanning background {self.image_index}: "
                         f"{self.corpus.paths[self.image_index]}")

        transform = TRANSFORMS[self.settings.transforms[self.transform_kind]]
        self.loaded_image = transform(self._source_image)
        self.scale_index = 0
        self.scale_factor = 1.0
        self.window_size = self.settings.window_size
        self.step = self.settings.step
        self.x = 0
        self.y = 0
        self.needs_reset = False
        return True

    def _next_window(self) -> Optional[np.ndarray]:
        height, width = self.loaded_image.shape[:2]
        while True:
            if self.x + self.window_size > width:
                self.x = 0
                self.y += self.step
            if self.y + self.window_size > height:
                if not self._next_scale():
                    return None
                continue

            window = self.loaded_image[self.y:self.y + self.window_size,
                                       self.x:self.x + self.window_size]
            self.x += self.step
            return fit_patch(window, self.settings.patch_size)

    def _next_scale(self) -> bool:
        settings = self.settings
        self.scale_index += 1
        self.scale_factor = settings.scale_step ** self.scale_index
        self.window_size = int(round(settings.window_size * self.scale_factor))
        self.step = max(1, int(round(settings.step * self.scale_factor)))
        self.x = 0
        self.y = 0

        height, width = self.loaded_image.shape[:2]
        out_of_scales = settings.max_scales is not None and self.scale_index >= settings.max_scales
        if out_of_scales or self.window_size > min(height, width):
            self._next_transform()
            return False
        return True

    def _next_transform(self) -> None:
        self.transform_kind += 1
        if self.transform_kind >= len(self.settings.transforms):
            self.transform_kind = 0
            self.image_index += self.num_workers
            self._source_image = None
        self.loaded_image = None
        self.needs_reset = True

    def __repr__(self) -> str:
        return (f"MiningCursor(worker={self.worker_id}/{self.num_workers}, image={self.image_index}, "
                f"hard={self.hard_index}, scale={self.scale_factor:.3f}, x={self.x}, y={self.y}, "
                f"transform={self.transform_kind})")
