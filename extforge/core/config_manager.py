from __future__ import annotations

import json
import logging
import os
import pathlib
from copy import deepcopy
from typing import Any, Dict, List, Optional, Set, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, model_validator

from extforge.utils.exceptions import ConfigurationError


DEFAULT_CONFIG_FILE = 'extforge.yaml'
DEFAULT_ENV_PREFIX = 'EXTFORGE_'


class ConfigSchema(BaseModel):
    """Schema for validating configuration data.

    This model defines the expected structure and default values for the
    build pipeline configuration.
    """
    project: Dict[str, Any] = Field(
        default_factory=lambda: {
            'root': '.',
            'extension_dir': 'extension',
            'manifest': 'extension.yaml',
            'dist_dir': 'dist',
            'staging_dir': '.extforge/staging',
        },
        description='Project layout',
    )
    credentials: Dict[str, Any] = Field(
        default_factory=lambda: {
            'developer_key': 'certificates/developer.key',
            'developer_certificate': 'certificates/developer.pem',
            'key_password': None,
        },
        description='Developer key material used for signing',
    )
    registry: Dict[str, Any] = Field(
        default_factory=lambda: {
            'url': '',
            'token': '',
            'timeout': 30.0,
            'verify_ssl': True,
        },
        description='Extension registry connection',
    )
    upload: Dict[str, Any] = Field(
        default_factory=lambda: {
            'version_ceiling': 10,
            'retry_delay': 1.0,
            'max_attempts': 120,
        },
        description='Upload quota and retry settings',
    )
    sdk: Dict[str, Any] = Field(
        default_factory=lambda: {
            'command': 'dt-sdk',
            'python_path': None,
            'extra_platform': None,
        },
        description='External SDK used to build Python extensions',
    )
    logging: Dict[str, Any] = Field(
        default_factory=lambda: {
            'level': 'INFO',
            'format': 'console',
            'file': {
                'enabled': False,
                'path': 'logs/extforge.log',
                'rotation': '10 MB',
                'retention': '5 files',
            },
            'console': {
                'enabled': True,
                'level': 'INFO',
            },
        },
        description='Logging settings',
    )

    @model_validator(mode='after')
    def validate_upload(self) -> 'ConfigSchema':
        """Validate the upload retry settings."""
        ceiling = self.upload.get('version_ceiling')
        if not isinstance(ceiling, int) or ceiling < 1:
            raise ValueError('upload.version_ceiling must be a positive integer.')
        attempts = self.upload.get('max_attempts')
        if not isinstance(attempts, int) or attempts < 1:
            raise ValueError('upload.max_attempts must be a positive integer.')
        delay = self.upload.get('retry_delay')
        if not isinstance(delay, (int, float)) or delay < 0:
            raise ValueError('upload.retry_delay must be a non-negative number.')
        return self

    @model_validator(mode='after')
    def validate_logging_format(self) -> 'ConfigSchema':
        """Validate the logging output format."""
        if str(self.logging.get('format', 'console')).lower() not in ('json', 'console'):
            raise ValueError("logging.format must be 'json' or 'console'.")
        return self


class ConfigManager:
    """Manages the pipeline configuration.

    Values come from the schema defaults, then an optional YAML or JSON file,
    then environment variables. Environment variable names are the prefix
    followed by the dotted key path with ``__`` between levels, for example
    ``EXTFORGE_REGISTRY__URL`` for ``registry.url``.

    Attributes:
        _config_path: Path to the configuration file
        _env_prefix: Prefix for environment variables
        _config: Current configuration
        _loaded_from_file: Whether the configuration was loaded from file
        _env_vars_applied: Set of applied environment variables
    """

    def __init__(
            self,
            config_path: Optional[Union[str, pathlib.Path]] = None,
            env_prefix: str = DEFAULT_ENV_PREFIX,
            overrides: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize the configuration manager.

        Args:
            config_path: Path to the configuration file
            env_prefix: Prefix for environment variables
            overrides: Values applied last, keyed by dotted path
        """
        self._config_path = pathlib.Path(config_path) if config_path else pathlib.Path(DEFAULT_CONFIG_FILE)
        self._env_prefix = env_prefix
        self._overrides = overrides or {}
        self._config: Dict[str, Any] = {}
        self._loaded_from_file = False
        self._env_vars_applied: Set[str] = set()
        self._initialized = False
        self._logger = logging.getLogger(__name__)

    @property
    def initialized(self) -> bool:
        """Check if the manager is initialized."""
        return self._initialized

    def initialize(self) -> None:
        """Load configuration from defaults, file, environment and overrides.

        Raises:
            ConfigurationError: If the file cannot be parsed or the result is invalid
        """
        self._config = ConfigSchema().model_dump()
        self._load_from_file()
        self._apply_env_vars()
        for key, value in self._overrides.items():
            self._set_nested_value(self._config, key.split('.'), value)
        self._validate_config()
        self._initialized = True

    def _load_from_file(self) -> None:
        """Load configuration from a file.

        Raises:
            ConfigurationError: If the file cannot be parsed
        """
        if not self._config_path.exists():
            return

        try:
            content = self._config_path.read_text(encoding='utf-8')
            if self._config_path.suffix.lower() in ('.yaml', '.yml'):
                file_config = yaml.safe_load(content)
            elif self._config_path.suffix.lower() == '.json':
                file_config = json.loads(content)
            else:
                raise ConfigurationError(
                    f'Unsupported config file format: {self._config_path.suffix}',
                    config_key='config_path'
                )
        except (yaml.YAMLError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigurationError(
                f'Error parsing config file {self._config_path}: {str(e)}',
                config_key='config_path'
            ) from e
        except OSError as e:
            raise ConfigurationError(
                f'Error reading config file {self._config_path}: {str(e)}',
                config_key='config_path'
            ) from e

        if file_config:
            if not isinstance(file_config, dict):
                raise ConfigurationError(
                    f'Config file {self._config_path} must contain a mapping',
                    config_key='config_path'
                )
            self._merge_config(file_config)
            self._loaded_from_file = True

    def _apply_env_vars(self) -> None:
        """Apply environment variables to the configuration."""
        for env_name, env_value in os.environ.items():
            if not env_name.startswith(self._env_prefix):
                continue

            config_path = env_name[len(self._env_prefix):].lower().split('__')
            self._set_nested_value(self._config, config_path, self._parse_env_value(env_value))
            self._env_vars_applied.add(env_name)

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """Parse environment variable values into appropriate types.

        Args:
            value: The string value from the environment

        Returns:
            The parsed value (bool, int, float, or string)
        """
        if value.lower() in ('true', 'yes', 'on'):
            return True
        if value.lower() in ('false', 'no', 'off'):
            return False

        try:
            if value.isdigit() or (value.startswith('-') and value[1:].isdigit()):
                return int(value)
            return float(value)
        except ValueError:
            return value

    def _set_nested_value(self, config: Dict[str, Any], path: List[str], value: Any) -> None:
        """Set a nested value in the configuration dictionary.

        Args:
            config: The configuration dictionary
            path: List of keys forming the path to the value
            value: The value to set
        """
        if not path:
            return

        if len(path) == 1:
            config[path[0]] = value
            return

        key = path[0]
        if not isinstance(config.get(key), dict):
            config[key] = {}

        self._set_nested_value(config[key], path[1:], value)

    def _validate_config(self) -> None:
        """Validate the configuration against the schema.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        try:
            self._config = ConfigSchema(**self._config).model_dump()
        except ValidationError as e:
            errors = e.errors()
            error_details = ', '.join(
                f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}"
                for error in errors
            )
            raise ConfigurationError(
                f'Invalid configuration: {error_details}',
                details={'validation_errors': errors}
            ) from e

    def _merge_config(
            self,
            from_config: Dict[str, Any],
            to_config: Optional[Dict[str, Any]] = None
    ) -> None:
        """Merge a configuration dictionary into another.

        Args:
            from_config: The source configuration
            to_config: The target configuration (defaults to self._config)
        """
        if to_config is None:
            to_config = self._config

        for key, value in from_config.items():
            if isinstance(to_config.get(key), dict) and isinstance(value, dict):
                self._merge_config(value, to_config[key])
            elif value not in [None, '', {}]:
                to_config[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by key.

        Args:
            key: The configuration key (dot-separated for nested values)
            default: Default value if the key doesn't exist

        Returns:
            The configuration value or default

        Raises:
            ConfigurationError: If the manager isn't initialized
        """
        if not self._initialized:
            raise ConfigurationError(
                'Cannot access configuration before initialization',
                config_key=key
            )

        result: Any = self._config
        try:
            for part in key.split('.'):
                result = result[part]
            return result
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set a configuration value by key.

        Args:
            key: The configuration key (dot-separated for nested values)
            value: The value to set

        Raises:
            ConfigurationError: If the manager isn't initialized or the value is invalid
        """
        if not self._initialized:
            raise ConfigurationError(
                'Cannot modify configuration before initialization',
                config_key=key
            )

        new_config = deepcopy(self._config)
        self._set_nested_value(new_config, key.split('.'), value)

        try:
            self._config = ConfigSchema(**new_config).model_dump()
        except ValidationError as e:
            raise ConfigurationError(
                f'Invalid configuration value for {key}: {str(e)}',
                config_key=key,
                details={'validation_errors': e.errors()}
            ) from e

    def as_dict(self) -> Dict[str, Any]:
        """Return a deep copy of the full configuration."""
        return deepcopy(self._config)

    def status(self) -> Dict[str, Any]:
        """Get the status of the configuration manager.

        Returns:
            Dictionary with status information
        """
        return {
            'name': 'config_manager',
            'initialized': self._initialized,
            'config_file': str(self._config_path) if self._loaded_from_file else None,
            'loaded_from_file': self._loaded_from_file,
            'env_vars_applied': len(self._env_vars_applied),
        }
