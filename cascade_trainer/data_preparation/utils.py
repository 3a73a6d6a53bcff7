"""
Data preparation utilities for the Cascade Trainer.

This module implements the shared utilities used by the dataset loaders, the
hard negative miner and the checkpoint tooling.

Key Features:
- Reproducibility management for every stochastic step (random shapes, scans)
- Atomic file operations for checkpoints, dumps and mining logs
- Image integrity validation for background corpora
- System monitoring snapshots for mining logs
- Hashing for checkpoint integrity

Author: Cascade Trainer Team
"""

import os
import random
import hashlib
import shutil
import logging
try:
    import fcntl
except ImportError:
    # fcntl is not available on Windows
    fcntl = None
import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Union, List, Dict, Optional
from contextlib import contextmanager
import psutil
from PIL import Image
import cv2

logger = logging.getLogger(__name__)


class ReproducibilityManager:
    """
    Ensures reproducibility across all stochastic processes.

    Random shape initialization and any OpenCV-side randomness must be
    deterministic across runs so that a resumed training run reproduces the
    same sample stream.
    """

    @staticmethod
    def set_seed(seed: int = 42) -> None:
        """
        Set random seed for all relevant libraries.

        Args:
            seed: Random seed value (default: 42 as specified in config)

        Note:
            Call this before loading data so that random shape initialization
            is deterministic.
        """
        logger.info(f"Setting global random seed to {seed} for reproducibility")

        random.seed(seed)
        np.random.seed(seed)
        cv2.setRNGSeed(seed)

        os.environ['PYTHONHASHSEED'] = str(seed)

        logger.debug(f"Environment variables set: PYTHONHASHSEED={seed}")


class AtomicFileWriter:
    """
    Thread-safe file writing to prevent race conditions.

    Checkpoints and dump indexes are written to a temporary file and moved into
    place, so a crash mid-write never leaves a truncated checkpoint behind.
    """

    @staticmethod
    @contextmanager
    def atomic_write(filepath: Union[str, Path], mode: str = 'w', encoding: Optional[str] = 'utf-8'):
        """
        Context manager for atomic file writing with file locking.

        A ``.lock`` file guards the target while data is written to a ``.tmp``
        sibling, which is then moved over the target.

        Args:
            filepath: Target file path
            mode: File open mode (default: 'w'); binary modes are supported
            encoding: File encoding (default: 'utf-8', ignored for binary modes)

        Yields:
            File handle for writing

        Raises:
            IOError: If lock cannot be acquired

        Example:
            >>> with AtomicFileWriter.atomic_write('train_data.ckpt', 'wb') as f:
            ...     f.write(blob)
        """
        filepath = Path(filepath)
        lock_path = filepath.with_suffix(filepath.suffix + '.lock')
        temp_path = filepath.with_suffix(filepath.suffix + '.tmp')
        file_encoding = None if 'b' in mode else encoding

        filepath.parent.mkdir(parents=True, exist_ok=True)

        # Append mode must see the current content
        if 'a' in mode and filepath.exists():
            shutil.copyfile(str(filepath), str(temp_path))

        try:
            with open(lock_path, 'w', encoding='utf-8') as lock_file:
                try:
                    if fcntl is not None:
                        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        logger.debug(f"Acquired file lock for {filepath}")
                    else:
                        logger.debug(f"Using file existence lock for {filepath}")

                    with open(temp_path, mode, encoding=file_encoding) as temp_file:
                        yield temp_file

                    shutil.move(str(temp_path), str(filepath))
                    logger.debug(f"Atomically wrote {filepath}")

                except BlockingIOError as e:
                    logger.error(f"Could not acquire lock for {filepath}: {e}")
                    raise IOError(f"File lock acquisition failed: {e}")

                finally:
                    if fcntl is not None:
                        try:
                            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
                        except Exception as e:
                            logger.warning(f"Failed to release lock: {e}")

        except Exception as e:
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except Exception as cleanup_error:
                    logger.warning(f"Failed to cleanup temp file {temp_path}: {cleanup_error}")

            logger.error(f"Atomic write failed for {filepath}: {e}")
            raise

        finally:
            try:
                if lock_path.exists():
                    lock_path.unlink()
            except Exception as e:
                logger.warning(f"Failed to cleanup lock file {lock_path}: {e}")


class DataIntegrityValidator:
    """
    Image validation for background corpora and positive samples.

    A corpus is either loaded completely or not at all, so every listed
    background can be checked up front instead of failing deep inside a
    mining worker.
    """

    def __init__(self, config):
        """
        Initialize data integrity validator.

        Args:
            config: Configuration object containing validation parameters
        """
        self.config = config
        self.min_image_size = config.get('data.min_image_size', [80, 80])
        self.max_image_size = config.get('data.max_image_size', [4096, 4096])
        self.valid_extensions = config.get('data.image_extensions', ['.jpg', '.jpeg', '.png', '.bmp'])

        logger.debug(f"Initialized DataIntegrityValidator with min_size={self.min_image_size}, "
                     f"max_size={self.max_image_size}, extensions={self.valid_extensions}")

    def validate_image_file(self, image_path: Union[str, Path]) -> Dict[str, Any]:
        """
        Validate a single image file for integrity and basic properties.

        Args:
            image_path: Path to image file

        Returns:
            Dictionary with validation results containing:
            - path: File path
            - exists: Whether file exists
            - valid: Overall validation status
            - errors: List of validation errors
            - properties: Image properties (if readable)
        """
        image_path = Path(image_path)

        validation_result = {
            'path': str(image_path),
            'exists': image_path.exists(),
            'valid': False,
            'errors': [],
            'warnings': [],
            'properties': {}
        }

        if not validation_result['exists']:
            validation_result['errors'].append('File does not exist')
            return validation_result

        try:
            file_extension = image_path.suffix.lower()
            if file_extension not in self.valid_extensions:
                validation_result['errors'].append(
                    f'Invalid extension: {file_extension}. '
                    f'Allowed: {", ".join(self.valid_extensions)}'
                )

            with Image.open(image_path) as img:
                img.verify()

            # Reopen to get properties (verify closes the image)
            with Image.open(image_path) as img:
                width, height = img.size

                validation_result['properties'] = {
                    'width': width,
                    'height': height,
                    'mode': img.mode,
                    'format': img.format,
                    'file_size': image_path.stat().st_size
                }

                if width < self.min_image_size[0] or height < self.min_image_size[1]:
                    validation_result['errors'].append(
                        f'Image too small: {width}x{height}, '
                        f'minimum: {self.min_image_size[0]}x{self.min_image_size[1]}'
                    )

                if width > self.max_image_size[0] or height > self.max_image_size[1]:
                    validation_result['warnings'].append(
                        f'Image large: {width}x{height}, '
                        f'maximum recommended: {self.max_image_size[0]}x{self.max_image_size[1]}'
                    )

            # The miners decode with OpenCV, so OpenCV must be able to read it too
            if cv2.imread(str(image_path), cv2.IMREAD_GRAYSCALE) is None:
                validation_result['errors'].append('OpenCV cannot read image')

            validation_result['valid'] = len(validation_result['errors']) == 0

        except Exception as e:
            validation_result['errors'].append(f'Image validation error: {str(e)}')
            logger.warning(f"Validation failed for {image_path}: {e}")

        return validation_result

    def get_validation_summary(self, validation_results: List[Dict]) -> Dict[str, Any]:
        """
        Generate summary statistics from validation results.

        Args:
            validation_results: List of validation result dictionaries

        Returns:
            Summary statistics dictionary
        """
        if not validation_results:
            return {
                'total_images': 0,
                'valid_images': 0,
                'validation_rate': 0.0,
                'invalid_paths': []
            }

        total_images = len(validation_results)
        valid_images = sum(1 for r in validation_results if r.get('valid', False))

        return {
            'total_images': total_images,
            'valid_images': valid_images,
            'validation_rate': valid_images / total_images,
            'invalid_paths': [r['path'] for r in validation_results if not r.get('valid', False)]
        }


class SystemMonitor:
    """Snapshot of system resources, attached to mining log entries."""

    @staticmethod
    def get_system_info() -> Dict[str, Any]:
        """
        Get CPU, memory and disk information.

        Returns:
            Dictionary with system information including CPU, memory, and disk usage
        """
        try:
            cpu_info = {
                'cpu_count_logical': psutil.cpu_count(logical=True),
                'cpu_count_physical': psutil.cpu_count(logical=False),
                # Non-blocking sample, compared against the previous call
                'cpu_percent': psutil.cpu_percent(interval=None, percpu=True),
                'load_average': None
            }

            try:
                if hasattr(os, 'getloadavg'):
                    cpu_info['load_average'] = os.getloadavg()
            except OSError:
                pass

            memory = psutil.virtual_memory()
            memory_info = {
                'total': memory.total,
                'available': memory.available,
                'percent': memory.percent,
                'used_gb': memory.used / (1024**3),
                'available_gb': memory.available / (1024**3)
            }

            disk = psutil.disk_usage('/')
            disk_info = {
                'total': disk.total,
                'free': disk.free,
                'percent': (disk.used / disk.total) * 100,
                'free_gb': disk.free / (1024**3)
            }

            return {
                'cpu': cpu_info,
                'memory': memory_info,
                'disk': disk_info,
                'timestamp': pd.Timestamp.now().isoformat()
            }

        except Exception as e:
            logger.error(f"Failed to get system info: {e}")
            return {
                'error': str(e),
                'timestamp': pd.Timestamp.now().isoformat()
            }


class FileHasher:
    """
    Generate and verify hashes for data integrity tracking.

    Checkpoints embed a digest of their payload so a corrupted file is
    rejected instead of resuming from partially decoded state.
    """

    @staticmethod
    def hash_bytes(data: bytes, algorithm: str = 'sha256') -> bytes:
        """
        Digest of an in-memory buffer.

        Raises:
            ValueError: If algorithm is not supported
        """
        try:
            hash_obj = hashlib.new(algorithm)
        except ValueError:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")

        hash_obj.update(data)
        return hash_obj.digest()

    @staticmethod
    def generate_file_hash(filepath: Union[str, Path],
                           algorithm: str = 'sha256') -> str:
        """
        Generate cryptographic hash for a file.

        Args:
            filepath: Path to file
            algorithm: Hashing algorithm ('sha256', 'md5', 'sha1')

        Returns:
            Hexadecimal hash string

        Raises:
            FileNotFoundError: If file does not exist
            ValueError: If algorithm is not supported
        """
        filepath = Path(filepath)

        if not filepath.exists():
            raise FileNotFoundError(f"File not found: {filepath}")

        if not filepath.is_file():
            raise ValueError(f"Path is not a file: {filepath}")

        try:
            hash_obj = hashlib.new(algorithm)
        except ValueError:
            raise ValueError(f"Unsupported hash algorithm: {algorithm}")

        with open(filepath, 'rb') as f:
            for chunk in iter(lambda: f.read(8192), b''):
                hash_obj.update(chunk)

        return hash_obj.hexdigest()
