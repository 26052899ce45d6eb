"""Core package containing configuration and logging."""

from extforge.core.config_manager import ConfigManager, ConfigSchema
from extforge.core.logging_manager import LoggingManager, get_logger
