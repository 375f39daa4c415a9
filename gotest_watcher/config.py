"""Configuration management for gotest-watcher.

This module loads configuration from defaults, config files, environment
variables and CLI arguments, in a strict priority order. Supports
XDG_CONFIG_HOME (Linux/macOS), APPDATA (Windows), and ~/.config fallback.

The watched command itself (``go test -v ./...``) is fixed and is not part
of the configuration.

Priority Order:
    1. CLI Arguments
    2. Environment Variables
    3. Config File
    4. Defaults

Supported Environment Variables:
    * ``GOTEST_WATCHER_WATCH_PATH``: Directory to watch and run the tests in.
    * ``GOTEST_WATCHER_LOG_FILE``: Path to the log file.
    * ``GOTEST_WATCHER_LOG_LEVEL``: Logging level.
    * ``GOTEST_WATCHER_QUEUE_SIZE``: Capacity of the restart queue.
    * ``GOTEST_WATCHER_SEND_TIMEOUT``: Seconds a change notification may block on a full queue.
    * ``GOTEST_WATCHER_GRACE_PERIOD``: Seconds between SIGTERM and SIGKILL for a cancelled run.
"""

from __future__ import annotations

import logging
import os
from configparser import ConfigParser, Error as ConfigParserError
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

__all__ = ["Config", "load_config"]

APP_NAME = "gotest-watcher"


@dataclass
class Config:
    """Define the application configuration structure.

    Attributes:
        watch_path (str): Absolute path of the directory to watch. Defaults to
            the current directory.
        log_file (Optional[str]): Absolute path to the log file. Defaults to None.
        log_level (str): Logging level (e.g., INFO, DEBUG). Defaults to "INFO".
        queue_size (int): Capacity of the restart queue. Defaults to 16.
        send_timeout (float): Seconds a notification may block on a full queue
            before being dropped. Defaults to 1.0.
        grace_period (float): Seconds between SIGTERM and SIGKILL when a stale
            run is cancelled. Defaults to 2.0.
    """

    watch_path: str
    log_file: Optional[str]
    log_level: str
    queue_size: int
    send_timeout: float
    grace_period: float


def _get_config_file_paths() -> List[str]:
    """Return a list of potential config file paths in order of priority.

    Checks the following locations:
    1. Local `config.ini` (current working directory).
    2. `$XDG_CONFIG_HOME/gotest-watcher/config.ini` (Linux/macOS).
    3. `%APPDATA%\\gotest-watcher\\config.ini` (Windows).
    4. `~/.config/gotest-watcher/config.ini` (Fallback).

    Returns:
        List[str]: A list of file paths to check for configuration.
    """
    paths = ["config.ini"]

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        paths.append(os.path.join(os.path.expanduser(xdg_config_home), APP_NAME, "config.ini"))
    elif os.name == "nt" and os.environ.get("APPDATA"):
        paths.append(os.path.join(os.path.expanduser(os.environ["APPDATA"]), APP_NAME, "config.ini"))
    else:
        paths.append(os.path.join(os.path.expanduser("~"), ".config", APP_NAME, "config.ini"))
    return paths


def _validate_watch_path(path_str: str) -> str:
    """Resolve the watch path and ensure it is an existing directory.

    Args:
        path_str (str): The raw path string (``~`` is expanded).

    Returns:
        str: The resolved absolute directory path.

    Raises:
        ValueError: If the path does not exist or is not a directory.
    """
    path = Path(os.path.expanduser(path_str))
    try:
        resolved = path.resolve(strict=True)
    except FileNotFoundError as e:
        raise ValueError(f"Watch directory not found: {path}") from e
    except (RuntimeError, OSError) as e:
        raise ValueError(f"Error resolving path {path}: {e}") from e

    if not resolved.is_dir():
        raise ValueError(f"Invalid path: Watch path is not a directory: {resolved}")
    return str(resolved)


def _validate_log_path(path_str: str) -> str:
    """Resolve the log file path and verify it can be written.

    Args:
        path_str (str): The raw path string (``~`` is expanded).

    Returns:
        str: The resolved absolute file path.

    Raises:
        ValueError: If the parent directory is missing, the path is not a
            regular file, or it cannot be opened for appending.
    """
    path = Path(os.path.expanduser(path_str))
    try:
        resolved = path.parent.resolve(strict=True) / path.name
    except (FileNotFoundError, RuntimeError, OSError) as e:
        raise ValueError(f"Invalid path (parent directory not found): {path}") from e

    if resolved.exists() and not resolved.is_file():
        raise ValueError(f"Invalid path: Log file is not a regular file: {resolved}")
    try:
        with resolved.open("a"):
            pass
    except PermissionError as e:
        raise ValueError(f"Write permission denied for log file: {resolved}") from e
    except OSError as e:
        raise ValueError(f"Cannot create log file: {e}") from e
    return str(resolved)


def _coerce(values: Dict[str, Any], key: str, cast: Any) -> None:
    try:
        values[key] = cast(values[key])
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid {cast.__name__} for {key}: {values[key]}") from e


def load_config(args: Dict[str, Any]) -> Config:
    """Load and validate configuration with strict priority, returning a Config object.

    Args:
        args (Dict[str, Any]): Dictionary of parsed CLI arguments, typically
            ``vars(parser.parse_args())``. Keys match Config attributes.
            Values of None are ignored so lower-priority sources apply.

    Returns:
        Config: The fully resolved and validated configuration object.

    Raises:
        ValueError: If a numeric value is invalid or out of range, the log
            level is unknown, or path validation fails.

    Examples:
        >>> config = load_config({"queue_size": 32})
        >>> config.queue_size
        32

        >>> import os
        >>> os.environ["GOTEST_WATCHER_GRACE_PERIOD"] = "5"
        >>> load_config({}).grace_period
        5.0
        >>> del os.environ["GOTEST_WATCHER_GRACE_PERIOD"]
    """
    # 1. Defaults
    config_values: Dict[str, Any] = {
        "watch_path": None,
        "log_file": None,
        "log_level": "INFO",
        "queue_size": 16,
        "send_timeout": 1.0,
        "grace_period": 2.0,
    }

    # 2. Config File
    for path in _get_config_file_paths():
        if os.path.isfile(path):
            logger.debug(f"Loading config from {path}")
            parser = ConfigParser(interpolation=None)
            try:
                parser.read(path, encoding="utf-8-sig")
                if APP_NAME in parser:
                    for key, value in parser[APP_NAME].items():
                        if value is not None and value != "":
                            config_values[key] = value
            except (ConfigParserError, UnicodeDecodeError, OSError) as e:
                logger.error(f"Failed to parse config file {path}: {e}")
            break

    # 3. Environment Variables
    env_map = {
        "GOTEST_WATCHER_WATCH_PATH": "watch_path",
        "GOTEST_WATCHER_LOG_FILE": "log_file",
        "GOTEST_WATCHER_LOG_LEVEL": "log_level",
        "GOTEST_WATCHER_QUEUE_SIZE": "queue_size",
        "GOTEST_WATCHER_SEND_TIMEOUT": "send_timeout",
        "GOTEST_WATCHER_GRACE_PERIOD": "grace_period",
    }
    for env_var, config_key in env_map.items():
        val = os.getenv(env_var)
        if val is not None and val != "":
            config_values[config_key] = val

    # 4. CLI Arguments (override if not None)
    for key, value in args.items():
        if value is not None:
            config_values[key] = value

    _coerce(config_values, "queue_size", int)
    if not (1 <= config_values["queue_size"] <= 1024):
        raise ValueError(f"queue_size must be between 1 and 1024, got {config_values['queue_size']}")

    _coerce(config_values, "send_timeout", float)
    if config_values["send_timeout"] < 0:
        raise ValueError(f"send_timeout must be non-negative, got {config_values['send_timeout']}")

    _coerce(config_values, "grace_period", float)
    if config_values["grace_period"] <= 0:
        raise ValueError(f"grace_period must be positive, got {config_values['grace_period']}")

    config_values["watch_path"] = _validate_watch_path(str(config_values["watch_path"] or "."))

    if config_values["log_file"]:
        config_values["log_file"] = _validate_log_path(str(config_values["log_file"]))

    if args.get("debug"):
        config_values["log_level"] = "DEBUG"

    config_values["log_level"] = str(config_values["log_level"]).upper()
    if not isinstance(getattr(logging, config_values["log_level"], None), int):
        raise ValueError(f"Invalid log level: {config_values['log_level']}")

    # Filter out keys that are not in Config fields (e.g. 'debug' from CLI)
    config_fields = {f.name for f in fields(Config)}
    filtered_values = {k: v for k, v in config_values.items() if k in config_fields}

    return Config(**filtered_values)
