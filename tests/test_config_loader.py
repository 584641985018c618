"""
Tests for configuration loading and validation.
"""

import json
import logging
import pytest
from pathlib import Path

# Add parent directory to path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from examengine.config_loader import load_config, create_sample_config
from examengine.models import EngineConfig


class TestLoadConfig:
    """Test reading configuration files."""

    def test_missing_file_uses_defaults(self, tmp_path, caplog):
        """Test that a missing file falls back to the default configuration."""
        with caplog.at_level(logging.WARNING, logger="examengine.config_loader"):
            config = load_config(tmp_path / "missing.json")

        assert config == EngineConfig.default()
        assert "not found" in caplog.text

    def test_defaults(self):
        """Test the documented default values."""
        config = EngineConfig.default()

        assert config.autosave_interval_seconds == 30
        assert config.persist_retry_attempts == 3
        assert config.manual_modules == ["writing", "speaking"]
        assert config.default_band == 2.5
        assert config.band_table[0] == [90, 9.0]
        assert config.tab_switch_flag_threshold == 5

    def test_partial_file_merges_defaults(self, tmp_path):
        """Test that unspecified keys keep their defaults."""
        path = tmp_path / "engine_config.json"
        path.write_text(json.dumps({"weak_area_threshold": 60}), encoding="utf-8")

        config = load_config(path)

        assert config.weak_area_threshold == 60
        assert config.clock_tick_seconds == 1

    def test_invalid_json(self, tmp_path):
        """Test that malformed JSON raises ValueError."""
        path = tmp_path / "engine_config.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(ValueError, match="Invalid JSON"):
            load_config(path)

    @pytest.mark.parametrize("data", [
        {"autosave_interval_seconds": 0},
        {"persist_retry_attempts": 0},
        {"weak_area_threshold": 150},
        {"manual_modules": ["drawing"]},
        {"band_table": [[90, 9.7]]},
        {"band_table": []},
        {"tab_switch_flag_threshold": 0},
    ])
    def test_invalid_values(self, tmp_path, data):
        """Test that inconsistent settings raise ValueError."""
        path = tmp_path / "engine_config.json"
        path.write_text(json.dumps(data), encoding="utf-8")

        with pytest.raises(ValueError, match="Invalid configuration"):
            load_config(path)

    def test_sample_config_loads(self, tmp_path):
        """Test that the generated sample is a valid configuration."""
        path = tmp_path / "sample.json"
        create_sample_config(path)

        config = load_config(path)

        assert config.event_log_dir == "session_logs"
        assert config.validate() == (True, "")
