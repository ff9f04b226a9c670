"""Loading of YAML configuration files and logging setup."""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .config_schema import ConfigValidator

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent.parent.parent / "configs" / "default.yaml"
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

# (section, key) pairs under ``reconciliation`` that YAML may leave as strings such as "1e-6"
_FLOAT_FIELDS = (('solver', 'tolerance'), ('iterative', 'tolerance'))


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    validate_schema: bool = True
) -> Dict[str, Any]:
    """
    Load and validate configuration from YAML file.

    Args:
        config_path: Path to configuration file. If None, uses default config.
        validate_schema: Whether to perform schema validation and apply defaults.

    Returns:
        Configuration dictionary, normalized with defaults when validated.

    Raises:
        FileNotFoundError: If config file is not found.
        yaml.YAMLError: If YAML parsing fails.
        ValueError: If configuration validation fails.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    try:
        config = yaml.safe_load(path.read_text(encoding='utf-8'))
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Error parsing YAML configuration {path}: {e}") from e

    if config is None:
        raise ValueError(f"Configuration file is empty: {path}")
    if not isinstance(config, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")

    reconciliation = config.get('reconciliation') or {}
    for section, key in _FLOAT_FIELDS:
        values = reconciliation.get(section) or {}
        if isinstance(values.get(key), str):
            try:
                values[key] = float(values[key])
            except ValueError as e:
                raise ValueError(f"reconciliation.{section}.{key} is not a number: {values[key]!r}") from e

    if validate_schema:
        config = ConfigValidator().validate(config)

    logging.getLogger(__name__).info(f"Loaded configuration from {path}")
    return config


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    format_string: Optional[str] = None,
    console: bool = True
) -> None:
    """
    Configure the root logger.

    Existing root handlers are replaced so repeated calls do not duplicate
    output.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Path to log file, created with its directory. None disables file logging.
        format_string: Custom log format string.
        console: Whether to log to stderr.

    Raises:
        ValueError: If invalid logging level is provided.
    """
    level = level.upper()
    if level not in LOG_LEVELS:
        raise ValueError(f"Invalid logging level: {level}")

    handlers = []
    if console:
        handlers.append(logging.StreamHandler())
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    formatter = logging.Formatter(format_string or DEFAULT_LOG_FORMAT)
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(level)

    logging.getLogger(__name__).debug(f"Logging configured at {level} ({len(handlers)} handlers)")


def configure_logging(config: Dict[str, Any], level: Optional[str] = None) -> None:
    """Apply the ``logging`` section of a loaded configuration, optionally overriding its level."""
    section = config.get('logging') or {}
    setup_logging(
        level=level or section.get('level', 'INFO'),
        log_file=section.get('file'),
        format_string=section.get('format')
    )
