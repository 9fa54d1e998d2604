"""
Configuration Manager for Smart GIF Converter
Handles loading and managing configuration from YAML files and programmatic overrides
"""

import os
import logging
from typing import Dict, Any, List, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILES = [
    'cache_settings.yaml',
    'duplicate_detection.yaml',
    'learning.yaml',
    'workflow.yaml',
    'logging.yaml',
]


class ConfigManager:
    def __init__(self, config_dir: str = "config"):
        self.config_dir = config_dir
        self.config: Dict[str, Any] = {}
        self._config_file_timestamps: Dict[str, float] = {}
        self._load_all_configs()

    def _load_all_configs(self):
        """Load packaged defaults, then overlay files from the config directory"""
        package_dir = os.path.abspath(os.path.dirname(__file__))
        for config_file in CONFIG_FILES:
            packaged_path = os.path.join(package_dir, 'config', config_file)
            if os.path.exists(packaged_path):
                self._merge_file(packaged_path, config_file)
                logger.debug(f"Loaded packaged default config from {packaged_path}")

            config_path = os.path.join(self.config_dir, config_file)
            if os.path.abspath(config_path) != packaged_path and os.path.exists(config_path):
                self._merge_file(config_path, config_file)
                logger.debug(f"Loaded config from {config_path}")

    def _merge_file(self, path: str, config_file: str):
        try:
            with open(path, 'r', encoding='utf-8') as file:
                config_data = yaml.safe_load(file)
        except yaml.YAMLError as e:
            logger.error(f"Error parsing configuration file {path}: {e}")
            raise
        if config_data:
            self._deep_merge(self.config, config_data)
        self._config_file_timestamps[config_file] = os.path.getmtime(path)

    def _deep_merge(self, base: Dict, update: Dict) -> None:
        """Deep merge configuration dictionaries."""
        for key, value in update.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation
        Example: get('learning.learning_rate')
        """
        keys = key_path.split('.')
        value = self.config

        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            logger.debug(f"Configuration key '{key_path}' not found, using default: {default}")
            return default

    def get_path(self, key_path: str, default: str) -> str:
        """Get a filesystem path setting with '~' expanded"""
        return os.path.expanduser(str(self.get(key_path, default)))

    def update_from_args(self, args_dict: Dict[str, Any]):
        """Update configuration with explicit overrides (dot-notation keys)"""
        overrides_applied = []
        for key, value in args_dict.items():
            if value is not None:
                old_value = self.get(key)
                self._set_nested_value(key, value)
                overrides_applied.append(f"{key}: {old_value} → {value}")
                logger.info(f"Configuration override applied: {key} = {value} (was: {old_value})")

        if overrides_applied:
            logger.info(f"Applied {len(overrides_applied)} configuration overrides")
        else:
            logger.debug("No configuration overrides to apply")

    def _set_nested_value(self, key_path: str, value: Any):
        """Set nested configuration value using dot notation"""
        keys = key_path.split('.')
        config_section = self.config

        for key in keys[:-1]:
            if key not in config_section or not isinstance(config_section[key], dict):
                config_section[key] = {}
            config_section = config_section[key]

        config_section[keys[-1]] = value

    def validate_config(self) -> bool:
        """Validate that required configuration values are present and in range"""
        errors = self.get_validation_errors()
        for error in errors:
            logger.error(error)
        if errors:
            return False
        logger.info("Configuration validation passed")
        return True

    def get_validation_errors(self) -> List[str]:
        errors: List[str] = []

        learning_rate = self.get('learning.learning_rate')
        if not _is_number(learning_rate) or not 0 < learning_rate <= 1:
            errors.append(f"Invalid learning.learning_rate: {learning_rate} (must be in (0, 1])")

        min_confidence = self.get('learning.min_confidence')
        if not _is_number(min_confidence) or not 0 <= min_confidence <= 1:
            errors.append(f"Invalid learning.min_confidence: {min_confidence} (must be in [0, 1])")

        min_samples = self.get('learning.min_samples')
        if not isinstance(min_samples, int) or isinstance(min_samples, bool) or min_samples < 1:
            errors.append(f"Invalid learning.min_samples: {min_samples} (must be a positive integer)")

        max_workers = self.get('workflow.max_workers')
        if not isinstance(max_workers, int) or isinstance(max_workers, bool) or max_workers < 1:
            errors.append(f"Invalid workflow.max_workers: {max_workers} (must be a positive integer)")

        max_age = self.get('cache.max_age_hours')
        if not _is_number(max_age) or max_age <= 0:
            errors.append(f"Invalid cache.max_age_hours: {max_age} (must be positive number)")

        tiers = self.get('duplicate_detection.tiers', {})
        if not isinstance(tiers, dict):
            errors.append("duplicate_detection.tiers must be a dictionary")
        else:
            for name, ratio in tiers.items():
                if not _is_number(ratio) or not 0 < ratio < 1:
                    errors.append(f"Invalid duplicate_detection.tiers.{name}: {ratio} (must be between 0 and 1)")

        duration_ratio = self.get('duplicate_detection.plausibility.duration_tolerance_ratio')
        if not _is_number(duration_ratio) or not 0 < duration_ratio < 1:
            errors.append(
                f"Invalid duplicate_detection.plausibility.duration_tolerance_ratio: {duration_ratio} "
                f"(must be between 0 and 1)"
            )

        mode = self.get('duplicate_detection.disposition.mode')
        if mode not in ('delete', 'quarantine'):
            errors.append(f"Invalid duplicate_detection.disposition.mode: {mode} (must be 'delete' or 'quarantine')")

        return errors

    def check_for_config_changes(self) -> bool:
        """Check if any configuration files have been modified since last load"""
        for config_file in CONFIG_FILES:
            config_path = os.path.join(self.config_dir, config_file)
            if not os.path.exists(config_path):
                continue
            current_mtime = os.path.getmtime(config_path)
            stored_mtime = self._config_file_timestamps.get(config_file, 0)
            if current_mtime > stored_mtime:
                logger.info(f"Configuration file {config_file} has been modified")
                return True
        return False

    def reload_config_if_changed(self) -> bool:
        """Reload configuration if files have been modified. Returns True if reloaded."""
        if self.check_for_config_changes():
            logger.info("Reloading configuration due to file changes")
            self.config = {}
            self._config_file_timestamps = {}
            self._load_all_configs()
            return True
        return False

    def log_active_configuration(self, sections: Optional[List[str]] = None):
        """Log active configuration values for debugging"""
        logger.info("=== Active Configuration Values ===")
        for section in sections or ['cache', 'duplicate_detection', 'learning', 'workflow']:
            logger.info(f"{section}: {self.get(section, {})}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
