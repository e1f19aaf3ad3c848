"""
Configuration loading for code-link.

Builds a validated SyncConfig from, in increasing precedence: defaults,
global settings, the project's ``.code-link.json``, environment variables
and explicit overrides.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Union
import logging

from core.models.config import GlobalSettings, SyncConfig
from .defaults import ENV_VAR_MAPPING, PROJECT_CONFIG_FILE, get_default_sync_config

logger = logging.getLogger(__name__)

# Keyword overrides that live in a nested section
OVERRIDE_PATHS = {
    'host': 'connection.host',
    'port': 'connection.port',
    'delete_timeout_s': 'connection.pending_delete_timeout_s',
    'send_timeout_s': 'connection.send_timeout_s',
    'read_timeout_s': 'watcher.read_timeout_s',
    'write_timeout_s': 'watcher.write_timeout_s',
}


class ConfigurationLoader:
    """Load and save per-project sync configuration"""

    def __init__(self, global_settings: Optional[GlobalSettings] = None):
        self.global_settings = global_settings or GlobalSettings()

    def load_sync_config(
        self,
        project_hash: str,
        project_dir: Optional[Union[str, Path]] = None,
        **overrides: Any
    ) -> SyncConfig:
        """
        Build the sync configuration for a project.

        Args:
            project_hash: Full project hash or short id
            project_dir: Project directory, if already known
            **overrides: Explicit values (``None`` values are ignored), either
                top-level SyncConfig fields or one of OVERRIDE_PATHS

        Returns:
            Validated SyncConfig

        Raises:
            pydantic.ValidationError: If the merged values are invalid
        """
        config_data = get_default_sync_config()
        config_data['connection']['host'] = self.global_settings.default_host
        config_data['connection']['pending_delete_timeout_s'] = self.global_settings.default_delete_timeout_s

        if project_dir is not None:
            config_file = Path(project_dir) / PROJECT_CONFIG_FILE
            if config_file.exists():
                self._deep_merge(config_data, self._load_config_file(config_file))

        config_data = self._apply_env_overrides(config_data)

        for key, value in overrides.items():
            if value is None:
                continue
            self._set_nested_value(config_data, OVERRIDE_PATHS.get(key, key), value)

        config_data['project_id'] = project_hash
        config_data['project_dir'] = Path(project_dir) if project_dir is not None else None

        return SyncConfig(**config_data)

    def _load_config_file(self, config_file: Path) -> Dict[str, Any]:
        """Load a project config file; an unreadable file contributes nothing"""
        try:
            with open(config_file, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load config from {config_file}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.error(f"Ignoring {config_file}: expected a JSON object")
            return {}

        # The file never decides which project or directory it belongs to
        data.pop('project_id', None)
        data.pop('project_dir', None)
        return data

    def _deep_merge(self, base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
        for key, value in updates.items():
            if isinstance(value, dict) and isinstance(base.get(key), dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value
        return base

    def _apply_env_overrides(self, config_data: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration"""
        for env_var, config_path in ENV_VAR_MAPPING.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                self._set_nested_value(config_data, config_path, self._convert_env_value(env_value))

        return config_data

    def _set_nested_value(self, data: Dict[str, Any], path: str, value: Any) -> None:
        """Set nested dictionary value using dot notation path"""
        keys = path.split('.')
        current = data

        for key in keys[:-1]:
            if key not in current:
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to appropriate type"""
        # Boolean conversion
        if value.lower() in ('true', 'yes', 'on'):
            return True
        elif value.lower() in ('false', 'no', 'off'):
            return False

        # Numeric conversion
        try:
            if '.' in value:
                return float(value)
            else:
                return int(value)
        except ValueError:
            pass

        # Return as string
        return value

    def save_project_config(self, config: SyncConfig) -> bool:
        """Save the configuration to the project's ``.code-link.json``"""
        if config.project_dir is None:
            logger.error("Cannot save configuration without a project directory")
            return False

        config_file = config.project_dir / PROJECT_CONFIG_FILE
        config_data = config.to_dict()
        config_data.pop('project_dir', None)

        try:
            config.project_dir.mkdir(parents=True, exist_ok=True)
            with open(config_file, 'w', encoding='utf-8') as f:
                json.dump(config_data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Failed to save config to {config_file}: {e}")
            return False

        logger.info(f"Saved configuration to {config_file}")
        return True
