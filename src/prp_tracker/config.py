"""
Configuration management for the PRP change tracker.

Handles loading and managing configuration from defaults, a YAML file and
environment variables.
"""

from __future__ import annotations

import logging
import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)

TRUE_VALUES = ('true', '1', 'yes', 'on')


@dataclass
class TrackerConfig:
    """Settings for a change tracker instance."""

    base_dir: Path = Path("./data")
    changes_dir: str = ".changes"
    max_version_history: int = 50
    enable_diff_generation: bool = True

    # Advisory only: change logs are always written as plain JSON
    compression_enabled: bool = True

    # "positional" or "sequence"
    diff_algorithm: str = "positional"
    store_snapshots: bool = True

    log_level: str = "WARNING"

    def __post_init__(self):
        self.base_dir = Path(self.base_dir)
        if self.max_version_history < 1:
            raise ValueError("max_version_history must be at least 1")

    @property
    def changes_path(self) -> Path:
        return self.base_dir / self.changes_dir

    def to_dict(self) -> Dict[str, Any]:
        return {
            'base_dir': str(self.base_dir),
            'changes_dir': self.changes_dir,
            'max_version_history': self.max_version_history,
            'enable_diff_generation': self.enable_diff_generation,
            'compression_enabled': self.compression_enabled,
            'diff_algorithm': self.diff_algorithm,
            'store_snapshots': self.store_snapshots,
            'log_level': self.log_level,
        }


class ConfigManager:
    """Manages tracker configuration from multiple sources."""

    ENV_PREFIX = 'PRP_TRACKER_'

    def __init__(self, config_file: Optional[Path] = None):
        self.config_dir = Path.home() / '.prp-tracker'
        self.config_file = Path(config_file) if config_file else self.config_dir / 'config.yaml'
        self._config: Optional[TrackerConfig] = None

    def load_config(self) -> TrackerConfig:
        """Load configuration from all sources."""
        if self._config:
            return self._config

        settings: Dict[str, Any] = {}

        if self.config_file.exists():
            settings.update(self._load_from_file())

        settings.update(self._load_from_env())

        self._config = self._build_config(settings)
        return self._config

    def _load_from_file(self) -> Dict[str, Any]:
        """Load configuration from YAML file."""
        try:
            with open(self.config_file, 'r') as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not load config file {self.config_file}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring config file {self.config_file}: expected a mapping")
            return {}
        return data

    def _load_from_env(self) -> Dict[str, Any]:
        """Load configuration from environment variables."""
        env_config: Dict[str, Any] = {}

        for key in ('base_dir', 'changes_dir', 'diff_algorithm', 'log_level'):
            value = os.getenv(f'{self.ENV_PREFIX}{key.upper()}')
            if value:
                env_config[key] = value

        max_history = os.getenv(f'{self.ENV_PREFIX}MAX_VERSION_HISTORY')
        if max_history:
            try:
                env_config['max_version_history'] = int(max_history)
            except ValueError:
                logger.warning(f"Ignoring non-integer {self.ENV_PREFIX}MAX_VERSION_HISTORY={max_history!r}")

        flags = {
            'ENABLE_DIFF': 'enable_diff_generation',
            'COMPRESSION': 'compression_enabled',
            'STORE_SNAPSHOTS': 'store_snapshots',
        }
        for env_name, key in flags.items():
            value = os.getenv(f'{self.ENV_PREFIX}{env_name}')
            if value:
                env_config[key] = value.lower() in TRUE_VALUES

        return env_config

    def _build_config(self, settings: Dict[str, Any]) -> TrackerConfig:
        """Apply known settings on top of the defaults."""
        config = TrackerConfig()

        if 'base_dir' in settings:
            config.base_dir = Path(settings['base_dir'])
        if 'changes_dir' in settings:
            config.changes_dir = str(settings['changes_dir'])
        if 'max_version_history' in settings:
            max_history = int(settings['max_version_history'])
            if max_history < 1:
                raise ValueError("max_version_history must be at least 1")
            config.max_version_history = max_history
        for key in ('enable_diff_generation', 'compression_enabled', 'store_snapshots'):
            if key in settings:
                value = settings[key]
                setattr(config, key, value if isinstance(value, bool) else str(value).lower() in TRUE_VALUES)
        if 'diff_algorithm' in settings:
            config.diff_algorithm = str(settings['diff_algorithm']).lower()
        if 'log_level' in settings:
            config.log_level = str(settings['log_level']).upper()

        return config

    def save_config(self, config: TrackerConfig) -> None:
        """Save configuration to file."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_file, 'w') as f:
            yaml.dump(config.to_dict(), f, default_flow_style=False, indent=2)

        self._config = config

    def get_config_info(self) -> Dict[str, Any]:
        """Get information about current configuration."""
        config = self.load_config()

        return {
            'config_file': str(self.config_file),
            'config_exists': self.config_file.exists(),
            **config.to_dict(),
        }


# Global config manager instance
_config_manager: Optional[ConfigManager] = None

def get_config_manager() -> ConfigManager:
    """Get the global config manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager

def load_config() -> TrackerConfig:
    """Load the current configuration."""
    return get_config_manager().load_config()
