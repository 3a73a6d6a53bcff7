"""
Background corpus for hard negative mining.

The corpus is the ordered list of background image paths scanned by the mining
cursors, plus a reserve of pre-cut hard negative patches that the cursors try
before falling back to raw scanning.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
from tqdm import tqdm

from ..data_preparation.utils import DataIntegrityValidator

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class BackgroundImageError(IOError):
    """A background image or hard negative patch could not be decoded."""

    def __init__(self, path: PathLike, reason: str = "OpenCV cannot read image"):
        self.path = str(path)
        super().__init__(f"{reason}: {self.path}")


def read_manifest(manifest: PathLike) -> List[str]:
    """
    Read one manifest, one image path per line.

    Blank lines and ``#`` comments are skipped; relative paths are resolved
    against the manifest's directory.

    Raises:
        FileNotFoundError: If the manifest cannot be opened
    """
    manifest = Path(manifest)
    if not manifest.is_file():
        raise FileNotFoundError(f"Background manifest not found: {manifest}")

    paths = []
    with open(manifest, 'r', encoding='utf-8') as f:
        for line in f:
            entry = line.strip()
            if not entry or entry.startswith('#'):
                continue
            path = Path(entry)
            if not path.is_absolute():
                path = manifest.parent / path
            paths.append(str(path))
    return paths


def read_grayscale(path: PathLike) -> np.ndarray:
    """Decode an image as 8-bit grayscale or raise BackgroundImageError."""
    image = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if image is None:
        raise BackgroundImageError(path)
    return image


def fit_patch(image: np.ndarray, patch_size: Tuple[int, int]) -> np.ndarray:
    """Resize ``image`` to ``patch_size`` given as (width, height); always a new array."""
    if image.shape[1] == patch_size[0] and image.shape[0] == patch_size[1]:
        return image.copy()
    return cv2.resize(image, patch_size, interpolation=cv2.INTER_AREA)


class BackgroundCorpus:
    """
    Ordered, read-only list of background images plus a hard negative reserve.

    Cursors only read from the corpus. ``hard_reserve`` may grow between
    ``generate`` calls, never during one.
    """

    def __init__(self, paths: Iterable[PathLike] = (),
                 hard_reserve: Iterable[np.ndarray] = ()):
        self._paths: Tuple[str, ...] = tuple(str(p) for p in paths)
        self.hard_reserve: List[np.ndarray] = list(hard_reserve)

    @property
    def paths(self) -> Tuple[str, ...]:
        return self._paths

    def __len__(self) -> int:
        return len(self._paths)

    def __repr__(self) -> str:
        return f"BackgroundCorpus(images={len(self._paths)}, hard_reserve={len(self.hard_reserve)})"

    @classmethod
    def load(cls, manifests: Sequence[PathLike], config=None) -> 'BackgroundCorpus':
        """
        Build a corpus from background manifests.

        Each manifest is a text file listing one background image per line.
        Loading is all-or-nothing: a missing manifest or listed image raises,
        and with ``data.validate_backgrounds`` enabled so does any image that
        cannot be decoded.

        Args:
            manifests: Manifest paths, read in order
            config: Optional configuration object

        Returns:
            Loaded corpus

        Raises:
            FileNotFoundError: If a manifest or a listed image does not exist
            ValueError: If background validation is enabled and fails
        """
        if isinstance(manifests, (str, Path)):
            manifests = [manifests]

        paths: List[str] = []
        for manifest in manifests:
            entries = read_manifest(manifest)
            missing = [p for p in entries if not Path(p).is_file()]
            if missing:
                raise FileNotFoundError(
                    f"Background image not found: {missing[0]} (listed in {manifest}, "
                    f"{len(missing)} missing)"
                )
            logger.info(f"Loaded {len(entries)} background paths from {manifest}")
            paths.extend(entries)

        if config is not None and config.get('data.validate_backgrounds', False):
            validator = DataIntegrityValidator(config)
            results = [validator.validate_image_file(p)
                       for p in tqdm(paths, desc="Validating backgrounds", unit="img")]
            summary = validator.get_validation_summary(results)
            if summary['invalid_paths']:
                raise ValueError(
                    f"{len(summary['invalid_paths'])} invalid background images, "
                    f"first: {summary['invalid_paths'][0]}"
                )

        if not paths:
            logger.warning("Background corpus is empty, mining will only use the hard reserve")

        logger.info(f"Background corpus ready with {len(paths)} images")
        return cls(paths)

    def load_hard_negatives(self, manifests: Sequence[PathLike],
                            patch_size: Tuple[int, int]) -> int:
        """
        Append pre-cut hard negative patches listed in ``manifests`` to the reserve.

        Args:
            manifests: Manifest paths listing patch images
            patch_size: (width, height) every patch is resized to

        Returns:
            Number of patches added

        Raises:
            FileNotFoundError: If a manifest cannot be opened
            BackgroundImageError: If a listed patch cannot be decoded
        """
        if isinstance(manifests, (str, Path)):
            manifests = [manifests]

        patches = []
        for manifest in manifests:
            for path in read_manifest(manifest):
                patches.append(fit_patch(read_grayscale(path), patch_size))

        self.hard_reserve.extend(patches)
        logger.info(f"Added {len(patches)} hard negatives to the reserve ({len(self.hard_reserve)} total)")
        return len(patches)

    def add_hard_negatives(self, patches: Iterable[np.ndarray],
                           patch_size: Optional[Tuple[int, int]] = None) -> int:
        """Append in-memory patches to the reserve, resizing when ``patch_size`` is given."""
        added = 0
        for patch in patches:
            self.hard_reserve.append(fit_patch(patch, patch_size) if patch_size else np.array(patch))
            added += 1
        return added

    def read_image(self, index: int) -> np.ndarray:
        """Decode background ``index`` as grayscale."""
        return read_grayscale(self._paths[index])
