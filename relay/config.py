"""
Configuration management supporting both file-based and environment variable configurations.
"""
import os
import json
import logging
from typing import Any, Dict, Optional
from pathlib import Path


class Config:
    """Configuration manager with defaults and environment variable support"""

    # Default configuration values
    DEFAULTS = {
        # Server settings
        'server': {
            'host': '127.0.0.1',
            'port': 5000,
            'backlog': 5,
        },

        # Relay behaviour
        'relay': {
            'topic_aware': True,
            'default_topic': 'default',  # used when topic_aware is off
            'prune_empty_topics': False,
        },

        # Logging
        'logging': {
            'level': 'INFO',
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            'file': None,  # None means console only
        }
    }

    def __init__(self, config_file: Optional[str] = None):
        self._config = self._deep_copy(self.DEFAULTS)

        if config_file and os.path.exists(config_file):
            self._load_from_file(config_file)

        self._load_from_env()

        self._ensure_directories()

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.
        Example: config.get('server.port') returns the port value
        """
        keys = key_path.split('.')
        value = self._config

        try:
            for key in keys:
                value = value[key]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key_path: str, value: Any) -> None:
        """Set configuration value using dot notation"""
        keys = key_path.split('.')
        config = self._config

        for key in keys[:-1]:
            if key not in config:
                config[key] = {}
            config = config[key]

        config[keys[-1]] = value

    def _load_from_file(self, config_file: str) -> None:
        """Load configuration from JSON file"""
        try:
            with open(config_file, 'r') as f:
                file_config = json.load(f)
            self._merge_config(self._config, file_config)
        except (OSError, ValueError) as e:
            logging.warning(f"Failed to load config file {config_file}: {e}")

    def _load_from_env(self) -> None:
        """Load configuration from environment variables"""
        env_mappings = {
            'RELAY_SERVER_HOST': ('server.host', str),
            'RELAY_SERVER_PORT': ('server.port', int),
            'RELAY_SERVER_BACKLOG': ('server.backlog', int),
            'RELAY_TOPIC_AWARE': ('relay.topic_aware', bool),
            'RELAY_DEFAULT_TOPIC': ('relay.default_topic', str),
            'RELAY_PRUNE_EMPTY_TOPICS': ('relay.prune_empty_topics', bool),
            'RELAY_LOG_LEVEL': ('logging.level', str),
            'RELAY_LOG_FILE': ('logging.file', str),
        }

        for env_var, (config_key, value_type) in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue
            try:
                self.set(config_key, self._convert_env_value(env_value, value_type))
            except ValueError as e:
                logging.warning(f"Ignoring {env_var}={env_value!r}: {e}")

    def _convert_env_value(self, value: str, value_type: type) -> Any:
        """Convert an environment variable string to the type of its setting"""
        if value_type is bool:
            if value.strip().lower() in ('true', '1', 'yes', 'on'):
                return True
            if value.strip().lower() in ('false', '0', 'no', 'off'):
                return False
            raise ValueError("expected a boolean")
        if value_type is int:
            return int(value)
        return value

    def _merge_config(self, base: Dict, override: Dict) -> None:
        """Recursively merge configuration dictionaries"""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._merge_config(base[key], value)
            else:
                base[key] = value

    def _deep_copy(self, obj: Any) -> Any:
        """Deep copy configuration"""
        if isinstance(obj, dict):
            return {k: self._deep_copy(v) for k, v in obj.items()}
        elif isinstance(obj, list):
            return [self._deep_copy(item) for item in obj]
        else:
            return obj

    def _ensure_directories(self) -> None:
        """Ensure the log file directory exists"""
        log_file = self.get('logging.file')
        if log_file:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)


# Global configuration instance
_config_instance: Optional[Config] = None

def get_config() -> Config:
    """Get global configuration instance"""
    global _config_instance
    if _config_instance is None:
        config_file = os.getenv('RELAY_CONFIG_FILE', 'config/relay.json')
        _config_instance = Config(config_file)
    return _config_instance

def initialize_config(config_file: Optional[str] = None) -> Config:
    """Initialize global configuration"""
    global _config_instance
    _config_instance = Config(config_file)
    return _config_instance
