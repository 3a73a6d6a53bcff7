"""
Centralized configuration management for the Cascade Trainer.

This module implements the configuration system shared by the dataset loaders,
the hard negative miner and the checkpoint tooling. Parameters live in a YAML
file that is deep-merged over the built-in defaults below.

References:
- Chen, D., Ren, S., Wei, Y., Cao, X., & Sun, J. (2014). Joint Cascade Face
  Detection and Alignment. ECCV.
- Viola, P., & Jones, M. (2001). Rapid Object Detection using a Boosted Cascade
  of Simple Features. CVPR.

Author: Cascade Trainer Team
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional, Union

logger = logging.getLogger(__name__)

SUPPORTED_TRANSFORMS = ('identity', 'hflip', 'vflip', 'rot90', 'rot180', 'rot270')


class Config:
    """
    Centralized configuration management for the Cascade Trainer.

    This class manages every tunable of the training-data engine:

    - Positive sample list and background corpus manifests
    - Sliding-window scan geometry used by the mining cursors
    - Worker pool size for parallel hard negative mining
    - Random shape perturbation used to initialize current shapes
    - Checkpoint location and logging

    Values are read with dot notation, e.g. ``config.get('mining.num_workers')``.
    """

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        """
        Initialize configuration manager.

        Args:
            config_path: Optional path to custom configuration file.
                        If None, uses default config.yaml in project root.
        """
        self.project_root = Path(__file__).parent.parent.parent
        self.config_path = Path(config_path) if config_path else self.project_root / "config.yaml"
        self.config = self._load_config()

        # Set up logging after config is loaded
        self._setup_logging()

    def _load_config(self) -> Dict[str, Any]:
        """
        Load configuration from YAML file merged over the defaults.

        Returns:
            Dictionary containing all configuration parameters
        """
        default_config = self._get_default_config()

        if self.config_path.exists():
            try:
                with open(self.config_path, 'r', encoding='utf-8') as f:
                    file_config = yaml.safe_load(f) or {}

                # Deep merge configurations (file overrides defaults)
                merged_config = self._deep_merge(default_config, file_config)
                logger.info(f"Configuration loaded from {self.config_path}")
                return merged_config

            except Exception as e:
                logger.warning(f"Failed to load config from {self.config_path}: {e}")
                logger.info("Using default configuration")

        else:
            # Save default config for reference
            self._save_config(default_config)
            logger.info(f"Created default configuration at {self.config_path}")

        return default_config

    def _get_default_config(self) -> Dict[str, Any]:
        """
        Generate the default configuration.

        Returns:
            Dictionary with default configuration parameters
        """
        return {
            'project': {
                'name': 'cascade_trainer',
                'version': '0.3.0',
                'description': 'Hard negative mining and training-set bookkeeping for joint cascades',
            },

            # Training data
            'data': {
                # Text file, one face per line: path x y w h x1 y1 ... xL yL
                'positive_list': str(self.project_root / 'data' / 'face.txt'),
                # Text files, one background image path per line
                'background_manifests': [str(self.project_root / 'data' / 'background.txt')],
                # Text files listing pre-cut hard negative patches
                'hard_negative_manifests': [],

                'face_size': 80,                   # side of a training patch in pixels
                'landmarks': 5,
                'validate_backgrounds': False,     # PIL/OpenCV check of every background at load
                'image_extensions': ['.jpg', '.jpeg', '.png', '.bmp'],
                'min_image_size': [80, 80],
                'max_image_size': [4096, 4096],
                'global_random_seed': 42
            },

            # Sliding-window hard negative mining
            'mining': {
                'num_workers': 4,
                'window_size': 80,                 # window side at the first scale, background pixels
                'step': 20,                        # window stride at the first scale
                'scale_step': 1.3,                 # window growth between scales
                'max_scales': None,                # None scans until the window no longer fits
                'transforms': ['identity', 'hflip'],
                'resume_scan': True,               # keep cursor positions between generate() calls
                'progress_bar': True,
                'mining_log_file': None
            },

            # Boosting bookkeeping
            'training': {
                'neg_pos_ratio': 1.0,              # N(negative) / N(positive)
                'random_seed': 42,
                'random_shape': {
                    'scale': 0.1,                  # uniform scale jitter, +-fraction
                    'rotation': 10.0,              # uniform rotation jitter, +-degrees
                    'translation': 0.05            # uniform shift, +-fraction of shape extent
                }
            },

            'checkpoint': {
                'path': str(self.project_root / 'checkpoints' / 'train_data.ckpt'),
                'dump_dir': str(self.project_root / 'dump')
            },

            'logging': {
                'level': 'INFO',
                'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                'date_format': '%Y-%m-%d %H:%M:%S'
            },

            'paths': {
                'project_root': str(self.project_root),
                'data_dir': str(self.project_root / 'data'),
                'checkpoints_dir': str(self.project_root / 'checkpoints'),
                'logs_dir': str(self.project_root / 'logs')
            }
        }

    def _deep_merge(self, dict1: Dict[str, Any], dict2: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep merge two dictionaries, with dict2 values taking precedence.

        Args:
            dict1: Base dictionary
            dict2: Override dictionary

        Returns:
            Merged dictionary
        """
        result = dict1.copy()

        for key, value in dict2.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def _save_config(self, config: Dict[str, Any]) -> None:
        """
        Save configuration to YAML file.

        Args:
            config: Configuration dictionary to save
        """
        try:
            os.makedirs(self.config_path.parent, exist_ok=True)

            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.dump(
                    config,
                    f,
                    default_flow_style=False,
                    indent=2,
                    sort_keys=False,
                    allow_unicode=True
                )

        except Exception as e:
            logger.error(f"Failed to save configuration: {e}")

    def _setup_logging(self) -> None:
        """Set up logging configuration based on config parameters."""
        log_level = getattr(logging, self.get('logging.level', 'INFO').upper())
        log_format = self.get('logging.format', '%(asctime)s - %(name)s - %(levelname)s - %(message)s')

        logging.basicConfig(
            level=log_level,
            format=log_format,
            datefmt=self.get('logging.date_format', '%Y-%m-%d %H:%M:%S')
        )

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in dot notation (e.g., 'mining.num_workers')
            default: Default value if key not found

        Returns:
            Configuration value or default

        Examples:
            >>> config = Config()
            >>> workers = config.get('mining.num_workers')
            >>> ratio = config.get('training.neg_pos_ratio', 1.0)
        """
        keys = key.split('.')
        value = self.config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in dot notation
            value: Value to set
        """
        keys = key.split('.')
        config_ref = self.config

        for k in keys[:-1]:
            if k not in config_ref:
                config_ref[k] = {}
            config_ref = config_ref[k]

        config_ref[keys[-1]] = value

    def update(self, updates: Dict[str, Any]) -> None:
        """
        Update multiple configuration values.

        Args:
            updates: Dictionary of key-value pairs to update
        """
        for key, value in updates.items():
            self.set(key, value)

    def save(self) -> None:
        """Save current configuration to file."""
        self._save_config(self.config)
        logger.info(f"Configuration saved to {self.config_path}")

    def validate(self) -> Dict[str, Any]:
        """
        Validate configuration parameters for consistency and correctness.

        Returns:
            Dictionary with validation results
        """
        validation_results = {
            'valid': True,
            'errors': [],
            'warnings': []
        }

        try:
            positive_list = Path(self.get('data.positive_list', ''))
            if not positive_list.exists():
                validation_results['warnings'].append(f"Positive list does not exist: {positive_list}")

            for manifest in self.get('data.background_manifests', []) or []:
                if not Path(manifest).exists():
                    validation_results['errors'].append(f"Background manifest does not exist: {manifest}")
                    validation_results['valid'] = False

            if self.get('data.landmarks', 5) < 1:
                validation_results['errors'].append("data.landmarks must be >= 1")
                validation_results['valid'] = False

            if self.get('data.face_size', 80) < 4:
                validation_results['errors'].append("data.face_size must be >= 4")
                validation_results['valid'] = False

            num_workers = self.get('mining.num_workers', 4)
            if num_workers < 1:
                validation_results['errors'].append("mining.num_workers must be >= 1")
                validation_results['valid'] = False
            elif num_workers > (os.cpu_count() or 1):
                validation_results['warnings'].append(
                    f"mining.num_workers ({num_workers}) > cpu_count ({os.cpu_count()})"
                )

            if self.get('mining.window_size', 80) < 1 or self.get('mining.step', 20) < 1:
                validation_results['errors'].append("mining.window_size and mining.step must be >= 1")
                validation_results['valid'] = False

            if self.get('mining.scale_step', 1.3) <= 1.0:
                validation_results['errors'].append("mining.scale_step must be > 1.0")
                validation_results['valid'] = False

            unknown = [t for t in self.get('mining.transforms', []) or [] if t not in SUPPORTED_TRANSFORMS]
            if unknown or not self.get('mining.transforms'):
                validation_results['errors'].append(
                    f"mining.transforms must be a non-empty subset of {SUPPORTED_TRANSFORMS}, got unknown {unknown}"
                )
                validation_results['valid'] = False

            if self.get('training.neg_pos_ratio', 1.0) <= 0.0:
                validation_results['errors'].append("training.neg_pos_ratio must be > 0")
                validation_results['valid'] = False

        except Exception as e:
            validation_results['errors'].append(f"Validation error: {str(e)}")
            validation_results['valid'] = False

        return validation_results

    def get_data_paths(self) -> Dict[str, Any]:
        """
        Get all relevant data paths as Path objects.

        Returns:
            Dictionary mapping path names to Path objects (lists for manifests)
        """
        return {
            'positive_list': Path(self.get('data.positive_list')),
            'background_manifests': [Path(p) for p in self.get('data.background_manifests', []) or []],
            'hard_negative_manifests': [Path(p) for p in self.get('data.hard_negative_manifests', []) or []],
            'checkpoint': Path(self.get('checkpoint.path')),
            'dump_dir': Path(self.get('checkpoint.dump_dir')),
            'logs': Path(self.get('paths.logs_dir'))
        }

    def __str__(self) -> str:
        """String representation of configuration."""
        return f"Config(project={self.get('project.name')}, version={self.get('project.version')})"

    def __repr__(self) -> str:
        """Detailed string representation."""
        return f"Config(config_path='{self.config_path}', loaded={self.config_path.exists()})"
