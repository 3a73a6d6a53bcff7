"""
Tests for dataset loading.

Author: Cascade Trainer Team
"""

import sys
import pytest
import numpy as np
import cv2
import yaml

from cascade_trainer.data_preparation.build_dataset import DatasetBuilder, main
from cascade_trainer.training.background import BackgroundImageError
from cascade_trainer.training.checkpoint import load_checkpoint


@pytest.fixture
def data_paths(temp_directory, positive_list, background_manifest):
    return {
        'positive_list': positive_list['path'],
        'background_manifests': [background_manifest],
        'hard_negative_manifests': [],
        'checkpoint': temp_directory / "train_data.ckpt",
        'dump_dir': temp_directory / "dump",
        'logs': temp_directory / "logs"
    }


@pytest.fixture
def dataset_builder(mock_config_class, test_config, data_paths):
    return DatasetBuilder(mock_config_class(test_config, data_paths))


class TestDatasetBuilder:
    """Test positive and negative set loading."""

    @pytest.mark.unit
    def test_init(self, dataset_builder):
        assert dataset_builder.face_size == 10
        assert dataset_builder.n_landmarks == 2
        assert dataset_builder.global_seed == 42
        assert dataset_builder.miner is None

    @pytest.mark.unit
    @pytest.mark.data_dependent
    def test_load_positive_dataset(self, dataset_builder, positive_list, temp_directory):
        positives = dataset_builder.load_positive_dataset(positive_list['path'])

        assert positives.is_positive
        assert positives.size == 3
        np.testing.assert_array_equal(positives.shape_mask, [1, 1, -1])
        np.testing.assert_allclose(positives.gt_shapes[0], [0.25, 0.25, 0.75, 0.25])
        np.testing.assert_allclose(positives.gt_shapes[1], [0.25, 0.5, 0.75, 0.5])
        np.testing.assert_array_equal(positives.gt_shapes[2], np.zeros(4))
        assert all(image.shape == (10, 10) for image in positives.images)

        source = cv2.imread(str(temp_directory / "faces" / "face_0.png"), cv2.IMREAD_GRAYSCALE)
        expected = cv2.resize(source[10:30, 10:30], (10, 10), interpolation=cv2.INTER_AREA)
        np.testing.assert_array_equal(positives.images[0], expected)

    @pytest.mark.unit
    @pytest.mark.data_dependent
    def test_face_box_is_clamped(self, dataset_builder, temp_directory, positive_list):
        list_path = temp_directory / "clamped.txt"
        list_path.write_text("faces/face_0.png 50 50 30 30 55 55 58 55\n", encoding='utf-8')

        positives = dataset_builder.load_positive_dataset(list_path)

        source = cv2.imread(str(temp_directory / "faces" / "face_0.png"), cv2.IMREAD_GRAYSCALE)
        np.testing.assert_array_equal(positives.images[0], source[50:60, 50:60])
        np.testing.assert_allclose(positives.gt_shapes[0], [0.5, 0.5, 0.8, 0.5])

    @pytest.mark.unit
    def test_missing_positive_list(self, dataset_builder, temp_directory):
        with pytest.raises(FileNotFoundError):
            dataset_builder.load_positive_dataset(temp_directory / "none.txt")

    @pytest.mark.unit
    def test_missing_positive_image(self, dataset_builder, temp_directory):
        list_path = temp_directory / "missing.txt"
        list_path.write_text("faces/none.png 0 0 10 10 1 1 2 2\n", encoding='utf-8')

        with pytest.raises(FileNotFoundError, match="none.png"):
            dataset_builder.load_positive_dataset(list_path)

    @pytest.mark.unit
    def test_unreadable_positive_image(self, dataset_builder, temp_directory):
        (temp_directory / "broken.png").write_text("junk", encoding='utf-8')
        list_path = temp_directory / "broken.txt"
        list_path.write_text("broken.png 0 0 10 10 1 1 2 2\n", encoding='utf-8')

        with pytest.raises(BackgroundImageError):
            dataset_builder.load_positive_dataset(list_path)

    @pytest.mark.unit
    @pytest.mark.parametrize("line", [
        "faces/face_0.png 0 0 10 10 1 1 2",
        "faces/face_0.png 0 0 ten 10 1 1 2 2",
    ])
    def test_malformed_line(self, dataset_builder, temp_directory, positive_list, line):
        list_path = temp_directory / "bad.txt"
        list_path.write_text("# header\n" + line + "\n", encoding='utf-8')

        with pytest.raises(ValueError, match="bad.txt:2"):
            dataset_builder.load_positive_dataset(list_path)

    @pytest.mark.unit
    def test_load_negative_dataset(self, dataset_builder, background_manifest, temp_directory, background_images):
        hard = temp_directory / "hard.txt"
        hard.write_text(f"{background_images[0]}\n", encoding='utf-8')

        negatives = dataset_builder.load_negative_dataset([background_manifest], [hard])

        assert not negatives.is_positive
        assert negatives.size == 0
        assert negatives.miner is dataset_builder.miner
        assert len(negatives.miner.corpus) == 3
        assert len(negatives.miner.corpus.hard_reserve) == 1
        assert negatives.miner.corpus.hard_reserve[0].shape == (10, 10)

    @pytest.mark.integration
    def test_load_dataset_integration(self, dataset_builder, cascades):
        positives, negatives = dataset_builder.load_dataset(cascades['accept_all']())

        assert positives.size == 3
        assert negatives.size == 3
        np.testing.assert_allclose(positives.mean_shape, [0.25, 0.375, 0.75, 0.375])
        np.testing.assert_allclose(negatives.mean_shape, positives.mean_shape)
        assert not np.allclose(positives.current_shapes, positives.gt_shapes)
        np.testing.assert_allclose(negatives.current_shapes, np.tile(positives.mean_shape, (3, 1)))

    @pytest.mark.unit
    def test_load_dataset_without_cascade(self, dataset_builder):
        positives, negatives = dataset_builder.load_dataset()

        assert positives.size == 3
        assert negatives.size == 0

    @pytest.mark.unit
    def test_load_dataset_is_reproducible(self, mock_config_class, test_config, data_paths):
        first, _ = DatasetBuilder(mock_config_class(test_config, data_paths)).load_dataset()
        second, _ = DatasetBuilder(mock_config_class(test_config, data_paths)).load_dataset()

        np.testing.assert_array_equal(first.current_shapes, second.current_shapes)

    @pytest.mark.integration
    def test_build_command_integration(self, temp_directory, positive_list, background_manifest, monkeypatch):
        output = temp_directory / "initial.ckpt"
        config_path = temp_directory / "config.yaml"
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump({
                'data': {
                    'positive_list': str(positive_list['path']),
                    'background_manifests': [str(background_manifest)],
                    'face_size': 10,
                    'landmarks': 2
                },
                'mining': {'num_workers': 1, 'progress_bar': False},
                'logging': {'level': 'WARNING'}
            }, f)

        monkeypatch.setattr(sys, 'argv', ['cascade-trainer-build-dataset', '--config', str(config_path),
                                          '--output', str(output)])
        main()

        positives, negatives = load_checkpoint(output)
        assert positives.size == 3
        assert negatives.size == 0
        assert positives.mean_shape is not None
