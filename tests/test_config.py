"""
Tests for configuration loading and validation.
"""

from pathlib import Path

import pytest

from dualspec.config import DEFAULT_CONFIG, load_config, validate_config
from dualspec.errors import ConfigError


class TestLoadConfig:
    """Test defaults, YAML files and overrides."""

    def test_defaults(self):
        """Test that no file and no overrides gives the defaults."""
        config = load_config()

        assert config == DEFAULT_CONFIG
        assert config is not DEFAULT_CONFIG

    def test_yaml_file(self, tmp_path):
        """Test that YAML values replace defaults, nested keys included."""
        path = tmp_path / "config.yaml"
        path.write_text(
            "max_new_tokens: 32\n"
            "controller: fixed\n"
            "initial_k: 5\n"
            "fake:\n"
            "  draft_perturb_every: 2\n"
        )

        config = load_config(str(path))

        assert config["max_new_tokens"] == 32
        assert config["controller"] == "fixed"
        assert config["fake"]["draft_perturb_every"] == 2
        assert config["fake"]["vocab_size"] == 260

    def test_overrides_win(self, tmp_path):
        """Test that explicit overrides beat the file and None is ignored."""
        path = tmp_path / "config.yaml"
        path.write_text("max_new_tokens: 32\nmax_k: 6\n")

        config = load_config(str(path), {"max_new_tokens": 8, "max_k": None})

        assert config["max_new_tokens"] == 8
        assert config["max_k"] == 6

    def test_missing_file_uses_defaults(self, tmp_path):
        """Test that a missing file falls back to the defaults."""
        config = load_config(str(tmp_path / "missing.yaml"))

        assert config == DEFAULT_CONFIG

    def test_malformed_yaml_uses_defaults(self, tmp_path):
        """Test that unparsable YAML falls back to the defaults."""
        path = tmp_path / "broken.yaml"
        path.write_text("max_new_tokens: [1, 2\n")

        assert load_config(str(path)) == DEFAULT_CONFIG

    def test_non_mapping_file(self, tmp_path):
        """Test that a YAML list is rejected."""
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")

        with pytest.raises(ConfigError, match="mapping"):
            load_config(str(path))

    def test_config_error_is_value_error(self):
        """Test that callers catching ValueError still see config problems."""
        with pytest.raises(ValueError):
            load_config(overrides={"max_new_tokens": 0})


class TestValidateConfig:
    """Test validation rules."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"implementation": "onnx"},
            {"controller": "pid"},
            {"max_new_tokens": 0},
            {"min_k": 0},
            {"min_k": 5, "max_k": 3},
            {"initial_k": 9},
            {"adjust_window": 0},
            {"high_threshold": 0.3, "low_threshold": 0.5},
            {"high_threshold": 1.5},
            {"stop_token_ids": 1},
        ],
    )
    def test_invalid(self, overrides):
        """Test rejected settings."""
        config = dict(DEFAULT_CONFIG, **overrides)

        with pytest.raises(ConfigError):
            validate_config(config)

    def test_fixed_controller_ignores_bounds(self):
        """Test that a fixed K outside the adaptive bounds is allowed."""
        config = dict(DEFAULT_CONFIG, controller="fixed", initial_k=12)

        validate_config(config)


class TestShippedConfig:
    """Test the example configuration file in the repository."""

    def test_specdec_yaml(self):
        """Test that configs/specdec.yaml loads and validates."""
        path = Path(__file__).resolve().parents[1] / "configs" / "specdec.yaml"

        config = load_config(str(path))

        assert config["implementation"] == "hf"
        assert config["adjust_window"] == 12
        assert config["stop_token_ids"] is None
