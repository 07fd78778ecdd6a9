"""
Configuration management for the Store Edge Hub.
Loads and validates settings from a JSON (or YAML) config file.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


# Default configuration path
DEFAULT_CONFIG_PATH = '/etc/edge-hub/config.json'

# Default configuration values
DEFAULT_CONFIG = {
    'cloud_url': 'https://cloud.example.com',
    'host_id': '',
    'host_token': '',
    'storage_path': '/var/edge-hub',
    'log_path': '/var/log/edge-hub',
    'install_root': '/opt/edge-hub',
    'port': 3001,
    'request_timeout_seconds': 30,
    'sync_interval_seconds': 5,
    'sync_batch_size': 10,
    'sync_backoff_seconds': 30,
    'sync_max_attempts': 10,
    'lock_duration_seconds': 300,
    'deployment_poll_minutes': 5,
    'deployment_initial_retry_seconds': 60,
    'deployment_max_retry_seconds': 600,
    'status_pub_port': None,
}

# Environment variable -> (config key, type)
ENV_OVERRIDES = {
    'EDGE_HUB_CLOUD_URL': ('cloud_url', str),
    'EDGE_HUB_HOST_ID': ('host_id', str),
    'EDGE_HUB_HOST_TOKEN': ('host_token', str),
    'EDGE_HUB_STORAGE_PATH': ('storage_path', str),
    'EDGE_HUB_LOG_PATH': ('log_path', str),
    'EDGE_HUB_INSTALL_ROOT': ('install_root', str),
    'EDGE_HUB_PORT': ('port', int),
    'EDGE_HUB_STATUS_PUB_PORT': ('status_pub_port', int),
}


class HubConfig:
    """Manages hub configuration from JSON or YAML files."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config file. If None, uses /etc/edge-hub/config.json
        """
        if config_path is None:
            config_path = os.environ.get('EDGE_HUB_CONFIG', DEFAULT_CONFIG_PATH)

        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = dict(DEFAULT_CONFIG)
        self._loaded = False
        self.load()

    @property
    def is_yaml(self) -> bool:
        """True when the config file uses YAML syntax."""
        return self.config_path.suffix.lower() in ('.yaml', '.yml')

    def load(self) -> None:
        """Load configuration from file."""
        if self.config_path.exists():
            with open(self.config_path, 'r') as f:
                if self.is_yaml:
                    file_config = yaml.safe_load(f) or {}
                else:
                    file_config = json.load(f)
                # Merge file config with defaults
                self._config.update(file_config)
            self._loaded = True

        self._apply_env_overrides()

    def _apply_env_overrides(self) -> None:
        """Override config values from EDGE_HUB_* environment variables."""
        for env_name, (key, cast) in ENV_OVERRIDES.items():
            if env_name in os.environ:
                self._config[key] = cast(os.environ[env_name])

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'cloud_url' or 'nested.key')
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            >>> config = HubConfig()
            >>> config.get('sync_batch_size')
            10
        """
        keys = key.split('.')
        value = self._config

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
            key: Configuration key (e.g., 'host_token')
            value: Value to set
        """
        keys = key.split('.')
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    def save(self, path: Optional[str] = None) -> None:
        """
        Save configuration to file, keeping the format of the target path.

        Args:
            path: Path to save to. If None, uses original config_path
        """
        save_path = Path(path) if path else self.config_path
        save_path.parent.mkdir(parents=True, exist_ok=True)

        with open(save_path, 'w') as f:
            if save_path.suffix.lower() in ('.yaml', '.yml'):
                yaml.safe_dump(self._config, f, default_flow_style=False, indent=2)
            else:
                json.dump(self._config, f, indent=2)

    @property
    def cloud_url(self) -> str:
        """Get control plane base URL."""
        return self.get('cloud_url', DEFAULT_CONFIG['cloud_url'])

    @property
    def host_id(self) -> str:
        """Get this hub's identifier at the control plane."""
        return self.get('host_id', '')

    @property
    def host_token(self) -> str:
        """Get this hub's authentication token."""
        return self.get('host_token', '')

    @property
    def storage_path(self) -> str:
        """Get local storage root path."""
        return self.get('storage_path', DEFAULT_CONFIG['storage_path'])

    @property
    def log_path(self) -> str:
        """Get log directory path."""
        return self.get('log_path', DEFAULT_CONFIG['log_path'])

    @property
    def install_root(self) -> str:
        """Get the install root passed to package scripts."""
        return self.get('install_root', DEFAULT_CONFIG['install_root'])

    @property
    def port(self) -> int:
        """Get server port."""
        return self.get('port', DEFAULT_CONFIG['port'])

    @property
    def request_timeout_seconds(self) -> int:
        return self.get('request_timeout_seconds', DEFAULT_CONFIG['request_timeout_seconds'])

    @property
    def sync_interval_seconds(self) -> int:
        """Get interval between sync queue upload cycles."""
        return self.get('sync_interval_seconds', DEFAULT_CONFIG['sync_interval_seconds'])

    @property
    def sync_batch_size(self) -> int:
        return self.get('sync_batch_size', DEFAULT_CONFIG['sync_batch_size'])

    @property
    def sync_backoff_seconds(self) -> int:
        """Get the linear backoff unit for sync queue retries."""
        return self.get('sync_backoff_seconds', DEFAULT_CONFIG['sync_backoff_seconds'])

    @property
    def sync_max_attempts(self) -> int:
        return self.get('sync_max_attempts', DEFAULT_CONFIG['sync_max_attempts'])

    @property
    def lock_duration_seconds(self) -> int:
        """Get default check lock lease in seconds."""
        return self.get('lock_duration_seconds', DEFAULT_CONFIG['lock_duration_seconds'])

    @property
    def deployment_poll_minutes(self) -> int:
        """Get pending deployment poll interval in minutes."""
        return self.get('deployment_poll_minutes', DEFAULT_CONFIG['deployment_poll_minutes'])

    @property
    def deployment_initial_retry_seconds(self) -> int:
        return self.get(
            'deployment_initial_retry_seconds',
            DEFAULT_CONFIG['deployment_initial_retry_seconds'],
        )

    @property
    def deployment_max_retry_seconds(self) -> int:
        return self.get(
            'deployment_max_retry_seconds',
            DEFAULT_CONFIG['deployment_max_retry_seconds'],
        )

    @property
    def status_pub_port(self) -> Optional[int]:
        """Get ZeroMQ port for local status publishing (None disables it)."""
        return self.get('status_pub_port')

    @property
    def packages_path(self) -> str:
        """Get root directory for installed packages and the manifest."""
        return os.path.join(self.storage_path, 'packages')

    @property
    def db_path(self) -> str:
        """Get SQLite database path."""
        return os.path.join(self.storage_path, 'hub.db')

    def __repr__(self) -> str:
        """String representation."""
        return f"HubConfig(path={self.config_path}, loaded={self._loaded})"


# Global config instance (can be imported by other modules)
_global_config: Optional[HubConfig] = None


def load_config(config_path: Optional[str] = None) -> HubConfig:
    """
    Load and return the configuration instance.

    On first call, it creates a new HubConfig instance. Subsequent calls
    return the cached instance.

    Args:
        config_path: Path to config file (only used on first call)

    Returns:
        HubConfig instance
    """
    global _global_config

    if _global_config is None:
        _global_config = HubConfig(config_path)

    return _global_config


def get_config(config_path: Optional[str] = None) -> HubConfig:
    """Alias for load_config for consistency with other modules."""
    return load_config(config_path)


def reset_config() -> None:
    """
    Reset the global config instance.

    Useful for testing when you need to reload configuration.
    """
    global _global_config
    _global_config = None
