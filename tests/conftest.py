"""
Pytest configuration and fixtures for Cascade Trainer tests.

Backgrounds and positives are real image files written with OpenCV into a
temporary directory; cascades, weak classifiers and features are small
deterministic stand-ins for the trained models.

Author: Cascade Trainer Team
"""

import copy
import threading
import pytest
import tempfile
import shutil
import numpy as np
import cv2
from pathlib import Path
import logging

from cascade_trainer.training.interfaces import CascadeResult

# Disable logging during tests unless explicitly needed
logging.getLogger().setLevel(logging.WARNING)


@pytest.fixture(scope="session")
def test_config():
    """
    Provide test configuration.

    Same structure as the main configuration, with a scan geometry small
    enough that every candidate can be counted by hand: 40x40 backgrounds,
    a 10 pixel window with stride 10, two scales with factor 2 and the
    identity transform give 16 + 4 = 20 candidates per background.
    """
    return {
        'project': {
            'name': 'cascade_trainer_test',
            'version': '1.0.0-test'
        },
        'data': {
            'face_size': 10,
            'landmarks': 2,
            'validate_backgrounds': False,
            'image_extensions': ['.jpg', '.jpeg', '.png', '.bmp'],
            'min_image_size': [10, 10],
            'max_image_size': [1024, 1024],
            'global_random_seed': 42,
            'hard_negative_manifests': []
        },
        'mining': {
            'num_workers': 1,
            'window_size': 10,
            'step': 10,
            'scale_step': 2.0,
            'max_scales': 2,
            'transforms': ['identity'],
            'resume_scan': True,
            'progress_bar': False,
            'mining_log_file': None
        },
        'training': {
            'neg_pos_ratio': 1.0,
            'random_seed': 7,
            'random_shape': {
                'scale': 0.1,
                'rotation': 10.0,
                'translation': 0.05
            }
        },
        'logging': {
            'level': 'WARNING',  # Suppress logs during testing
            'console_level': 'ERROR'
        }
    }


@pytest.fixture
def temp_directory():
    """
    Create temporary directory for tests with automatic cleanup.

    Yields:
        Path: Temporary directory path that will be cleaned up after test
    """
    temp_dir = tempfile.mkdtemp(prefix='cascade_trainer_test_')
    yield Path(temp_dir)

    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def mock_config_class():
    """
    Provide a mock configuration class for testing.

    This provides a simplified config interface for tests that don't
    need the full configuration system.
    """
    class MockConfig:
        def __init__(self, config_dict=None, data_paths=None):
            self.config = copy.deepcopy(config_dict or {})
            self.data_paths = data_paths or {}

        def get(self, key, default=None):
            keys = key.split('.')
            value = self.config
            for k in keys:
                if isinstance(value, dict) and k in value:
                    value = value[k]
                else:
                    return default
            return value

        def set(self, key, value):
            keys = key.split('.')
            ref = self.config
            for k in keys[:-1]:
                ref = ref.setdefault(k, {})
            ref[keys[-1]] = value

        def get_data_paths(self):
            return dict(self.data_paths)

        def validate(self):
            return {'valid': True, 'errors': [], 'warnings': []}

    return MockConfig


@pytest.fixture
def mock_config(mock_config_class, test_config):
    """Mutable MockConfig built from ``test_config``."""
    return mock_config_class(test_config)


def write_backgrounds(directory: Path, count: int = 3, size=(40, 40), seed: int = 0):
    """Write ``count`` random grayscale PNG backgrounds and return their paths."""
    rng = np.random.default_rng(seed)
    directory.mkdir(parents=True, exist_ok=True)
    paths = []
    for i in range(count):
        image = rng.integers(0, 256, size=(size[1], size[0]), dtype=np.uint8)
        path = directory / f"background_{i}.png"
        assert cv2.imwrite(str(path), image)
        paths.append(path)
    return paths


@pytest.fixture
def background_factory():
    return write_backgrounds


@pytest.fixture
def background_images(temp_directory):
    """Three 40x40 grayscale backgrounds."""
    return write_backgrounds(temp_directory / "backgrounds")


@pytest.fixture
def background_manifest(temp_directory, background_images):
    """
    Manifest listing the background images with paths relative to it.

    Returns:
        Path to the manifest
    """
    manifest = temp_directory / "background.txt"
    lines = ["# test backgrounds", ""]
    lines += [str(p.relative_to(temp_directory)) for p in background_images]
    manifest.write_text("\n".join(lines) + "\n", encoding='utf-8')
    return manifest


@pytest.fixture
def positive_list(temp_directory):
    """
    Positive list with three faces in two 60x60 images.

    The first two faces carry landmarks, the third is marked as lacking them.

    Returns:
        Dictionary with the list path and the raw annotations
    """
    faces_dir = temp_directory / "faces"
    faces_dir.mkdir()
    rng = np.random.default_rng(1)
    for name in ("face_0.png", "face_1.png"):
        image = rng.integers(0, 256, size=(60, 60), dtype=np.uint8)
        assert cv2.imwrite(str(faces_dir / name), image)

    annotations = [
        ("faces/face_0.png", (10, 10, 20, 20), (15, 15, 25, 15)),
        ("faces/face_1.png", (0, 0, 40, 40), (10, 20, 30, 20)),
        ("faces/face_1.png", (20, 20, 30, 30), (-1, -1, -1, -1)),
    ]
    list_path = temp_directory / "face.txt"
    with open(list_path, 'w', encoding='utf-8') as f:
        for path, box, landmarks in annotations:
            f.write(" ".join([path] + [str(v) for v in box + landmarks]) + "\n")

    return {'path': list_path, 'annotations': annotations}


class AcceptAllCascade:
    """Every patch survives with score 1."""

    def test(self, patch):
        return CascadeResult(True, 1.0)


class RejectAllCascade:
    """Every patch is rejected by the first stage."""

    def test(self, patch):
        return CascadeResult(False, -1.0)


class EveryNthCascade:
    """Accepts every ``n``-th tested patch; safe to call from several threads."""

    def __init__(self, n, shape=None):
        self.n = n
        self.shape = shape
        self.calls = 0
        self._lock = threading.Lock()

    def test(self, patch):
        with self._lock:
            self.calls += 1
            call = self.calls
        return CascadeResult(call % self.n == 0, float(call), self.shape)


class BrightPatchCascade:
    """Accepts patches whose mean intensity exceeds ``threshold``."""

    def __init__(self, threshold=127.0):
        self.threshold = threshold

    def test(self, patch):
        mean = float(patch.mean())
        return CascadeResult(mean > self.threshold, mean - self.threshold)


class FailingCascade:
    """Raises on the ``fail_at``-th call."""

    def __init__(self, fail_at=3):
        self.fail_at = fail_at
        self.calls = 0
        self._lock = threading.Lock()

    def test(self, patch):
        with self._lock:
            self.calls += 1
            call = self.calls
        if call >= self.fail_at:
            raise RuntimeError("cascade evaluation failed")
        return CascadeResult(False, 0.0)


class ConstantCart:
    """Weak classifier adding the same value to every sample."""

    def __init__(self, value):
        self.value = value

    def evaluate(self, image, image_half, image_quarter, shape):
        return self.value


class PixelFeature:
    """Intensity at the first landmark of the current shape, in patch coordinates."""

    def calc(self, image, image_half, image_quarter, shape):
        h, w = image.shape[:2]
        x = int(np.clip(shape[0] * (w - 1), 0, w - 1))
        y = int(np.clip(shape[1] * (h - 1), 0, h - 1))
        return int(image[y, x])


class MeanFeature:
    """Mean intensity of the quarter resolution patch, rounded."""

    def calc(self, image, image_half, image_quarter, shape):
        return int(round(float(image_quarter.mean())))


@pytest.fixture
def cascades():
    """Namespace of stand-in cascades."""
    return {
        'accept_all': AcceptAllCascade,
        'reject_all': RejectAllCascade,
        'every_nth': EveryNthCascade,
        'bright': BrightPatchCascade,
        'failing': FailingCascade
    }


@pytest.fixture
def constant_cart():
    return ConstantCart


@pytest.fixture
def features():
    return {'pixel': PixelFeature, 'mean': MeanFeature}


@pytest.fixture(scope="session")
def system_info():
    """
    Provide system information for hardware-dependent tests.

    Returns:
        Dictionary with system specifications
    """
    import psutil

    return {
        'cpu_count': psutil.cpu_count(logical=True),
        'memory_gb': psutil.virtual_memory().total / (1024**3)
    }


# Pytest markers for categorizing tests
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "cpu: mark test as CPU-only"
    )
    config.addinivalue_line(
        "markers", "data_dependent: mark test as requiring real data"
    )


# Custom test collection modifications
def pytest_collection_modifyitems(config, items):
    """Modify test collection to add automatic markers."""
    for item in items:
        item.add_marker(pytest.mark.cpu)

        # Mark slow tests based on name patterns
        if "slow" in item.name or "integration" in item.name:
            item.add_marker(pytest.mark.slow)

        # Mark data-dependent tests
        if "data" in item.name or "validation" in item.name:
            item.add_marker(pytest.mark.data_dependent)
