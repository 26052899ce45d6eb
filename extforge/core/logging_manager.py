from __future__ import annotations

import logging
import logging.handlers
import os
import pathlib
import sys
from typing import Any, Dict, List, Optional, Union

import structlog
from pythonjsonlogger import jsonlogger

from extforge.utils.exceptions import ConfigurationError

# LogRecord attributes that cannot be passed through ``extra``
RESERVED_RECORD_KEYS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _rename_reserved_keys(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key in [k for k in event_dict if k in RESERVED_RECORD_KEYS]:
        event_dict[f"{key}_"] = event_dict.pop(key)
    return event_dict


class LoggingManager:
    """Configures stdlib logging and structlog for the pipeline.

    Console and file handlers are attached to the root logger. With the
    ``json`` format every record is rendered by python-json-logger and
    structlog loggers hand their event dicts to it; with ``console`` a
    plain text formatter is used.
    """

    # Mapping from string log levels to logging module constants
    LOG_LEVELS = {
        "debug": logging.DEBUG,
        "info": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
        "critical": logging.CRITICAL,
    }

    def __init__(self, config_manager: Any) -> None:
        """Initialize the Logging Manager.

        Args:
            config_manager: The Configuration Manager to use for logging settings.
        """
        self._config_manager = config_manager
        self._root_logger: Optional[logging.Logger] = None
        self._handlers: List[logging.Handler] = []
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Set up handlers and structlog according to the ``logging`` section.

        Raises:
            ConfigurationError: If the log file cannot be opened.
        """
        logging_config: Dict[str, Any] = self._config_manager.get("logging", {})
        log_level = self.LOG_LEVELS.get(str(logging_config.get("level", "INFO")).lower(), logging.INFO)
        log_format = str(logging_config.get("format", "console")).lower()

        self._root_logger = logging.getLogger()
        self._root_logger.setLevel(log_level)
        self.shutdown()

        if log_format == "json":
            formatter = self._create_json_formatter()
        else:
            formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        console_config = logging_config.get("console", {})
        if console_config.get("enabled", True):
            console_level = self.LOG_LEVELS.get(str(console_config.get("level", "INFO")).lower(), logging.INFO)
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setLevel(console_level)
            console_handler.setFormatter(formatter)
            self._add_handler(console_handler)

        file_config = logging_config.get("file", {})
        if file_config.get("enabled", False):
            file_path = pathlib.Path(file_config.get("path", "logs/extforge.log"))
            max_bytes, backup_count = self._parse_rotation(
                file_config.get("rotation", "10 MB"), file_config.get("retention", "5 files")
            )
            try:
                os.makedirs(file_path.parent, exist_ok=True)
                file_handler = logging.handlers.RotatingFileHandler(
                    file_path, maxBytes=max_bytes, backupCount=backup_count
                )
            except OSError as e:
                raise ConfigurationError(
                    f"Cannot open log file {file_path}: {e}", config_key="logging.file.path"
                ) from e
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self._add_handler(file_handler)

        self._configure_structlog(json_output=log_format == "json")
        self._initialized = True

    def _add_handler(self, handler: logging.Handler) -> None:
        if self._root_logger is None:
            raise ConfigurationError("Logging is not initialized", config_key="logging")
        self._root_logger.addHandler(handler)
        self._handlers.append(handler)

    @staticmethod
    def _parse_rotation(rotation: Any, retention: Any) -> tuple[int, int]:
        # "10 MB" / "5 files"
        max_bytes = 10 * 1024 * 1024
        backup_count = 5
        if isinstance(rotation, str) and "MB" in rotation:
            max_bytes = int(rotation.split()[0]) * 1024 * 1024
        if isinstance(retention, str) and retention.split() and retention.split()[0].isdigit():
            backup_count = int(retention.split()[0])
        return max_bytes, backup_count

    def _create_json_formatter(self) -> logging.Formatter:
        """Create a JSON formatter for log records.

        Returns:
            logging.Formatter: A formatter that outputs logs in JSON format.
        """
        return jsonlogger.JsonFormatter(
            fmt="%(asctime)s %(name)s %(levelname)s %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S%z",
            json_ensure_ascii=False,
        )

    def _configure_structlog(self, json_output: bool) -> None:
        """Configure structlog for structured logging."""
        # json: key/values travel as ``extra`` and the JsonFormatter renders them
        renderers: List[Any] = (
            [_rename_reserved_keys, structlog.stdlib.render_to_log_kwargs]
            if json_output
            else [structlog.dev.ConsoleRenderer(colors=False)]
        )
        structlog.configure(
            processors=[
                structlog.stdlib.filter_by_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_logger_name,
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.UnicodeDecoder(),
                *renderers,
            ],
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )

    def get_logger(self, name: str) -> Union[logging.Logger, Any]:
        """Get a logger for a specific component.

        Args:
            name: The name of the component requesting a logger.

        Returns:
            A structlog bound logger.
        """
        return get_logger(name)

    def shutdown(self) -> None:
        """Detach and close the handlers installed by this manager."""
        root = self._root_logger or logging.getLogger()
        for handler in self._handlers:
            root.removeHandler(handler)
            handler.close()
        self._handlers = []
        self._initialized = False

    def status(self) -> Dict[str, Any]:
        return {
            "name": "logging_manager",
            "initialized": self._initialized,
            "handlers": [type(h).__name__ for h in self._handlers],
        }


def get_logger(name: str) -> Any:
    """Return a structlog logger for ``name``.

    Works before :class:`LoggingManager` is initialized; structlog then uses
    its default configuration.
    """
    return structlog.get_logger(name)
