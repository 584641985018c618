"""
Configuration loader for engine policy settings.

Handles loading and validating engine configuration files.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from .bands import DEFAULT_BAND, DEFAULT_BAND_TABLE
from .models import EngineConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "engine_config.json"


def load_config(config_path: Optional[Path] = None) -> EngineConfig:
    """
    Load engine configuration from a JSON file.

    Args:
        config_path: Path to the configuration file. If None, looks for
                    'engine_config.json' in the current directory.

    Returns:
        EngineConfig object with validated configuration

    Raises:
        ValueError: If the file is not valid JSON or the config is invalid
    """
    if config_path is None:
        config_path = Path.cwd() / DEFAULT_CONFIG_NAME
    config_path = Path(config_path)

    if not config_path.exists():
        logger.warning("Config file '%s' not found. Using default configuration.", config_path)
        return EngineConfig.default()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")
    except OSError as e:
        raise ValueError(f"Error reading config file: {e}")

    if not isinstance(data, dict):
        raise ValueError("Invalid configuration: top level must be an object")

    try:
        config = EngineConfig.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid configuration: {e}")

    is_valid, error_message = config.validate()
    if not is_valid:
        raise ValueError(f"Invalid configuration: {error_message}")

    return config


def create_sample_config(output_path: Path):
    """
    Create a sample configuration file for administrators.

    Args:
        output_path: Path where to save the sample config
    """
    sample_config = {
        "autosave_interval_seconds": 30,
        "clock_tick_seconds": 1,
        "persist_retry_attempts": 3,
        "persist_retry_delay_seconds": 0.5,
        "weak_area_threshold": 50,
        "manual_modules": ["writing", "speaking"],
        "band_table": [list(row) for row in DEFAULT_BAND_TABLE],
        "default_band": DEFAULT_BAND,
        "tab_switch_flag_threshold": 5,
        "event_log_dir": "session_logs",
        "_comment": "This is a sample engine configuration. Adjust values as needed.",
        "_instructions": {
            "autosave_interval_seconds": "Seconds between background saves of in-progress answers",
            "clock_tick_seconds": "Seconds between deadline checks of a running session",
            "persist_retry_attempts": "Attempts for store calls made while submitting",
            "persist_retry_delay_seconds": "Delay before the first retry; doubled for each further retry",
            "weak_area_threshold": "Question types scoring below this percentage are reported as weak areas",
            "manual_modules": "Modules graded by a reviewer instead of automatically",
            "band_table": "Rows of [minimum percentage, band], highest first",
            "default_band": "Band for percentages below the lowest table row",
            "tab_switch_flag_threshold": "Tab switches after which a session is flagged for review",
            "event_log_dir": "Directory for per-session event logs (null disables file logs)"
        }
    }

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(sample_config, f, indent=2)

    logger.info("Sample configuration created at: %s", output_path)
