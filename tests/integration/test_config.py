"""Tests for perp_risk/integration/config.py."""

from __future__ import annotations

import io

import pytest
from loguru import logger

from perp_risk.integration.config import EngineConfig, configure_logging, load_config


class TestLoadConfig:
    def test_defaults(self):
        config = load_config()
        assert config == EngineConfig()
        assert config.display_places == 20

    def test_from_mapping(self):
        config = load_config({"l2_depth": 3, "impact_quantity_lots": 50})
        assert config.l2_depth == 3
        assert config.impact_quantity_lots == 50

    def test_from_yaml_file(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("display_places: 6\nquote_decimals: 9\nlog_level: debug\n", encoding="utf-8")
        config = load_config(path)
        assert config.display_places == 6
        assert config.quote_decimals == 9
        assert config.log_level == "debug"

    def test_empty_yaml_is_default(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(str(path)) == EngineConfig()

    def test_yaml_must_be_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(TypeError):
            load_config(path)

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError, match="unknown config keys"):
            load_config({"l2_depht": 3})

    @pytest.mark.parametrize(
        ("key", "value", "error"),
        [
            ("l2_depth", "10", TypeError),
            ("l2_depth", True, TypeError),
            ("l2_depth", -1, ValueError),
            ("impact_quantity_lots", 0, ValueError),
            ("log_level", "LOUD", ValueError),
            ("log_level", 10, TypeError),
        ],
    )
    def test_bad_values(self, key, value, error):
        with pytest.raises(error):
            load_config({key: value})

    def test_bad_source_type(self):
        with pytest.raises(TypeError):
            load_config(42)  # type: ignore[arg-type]


class TestConfigureLogging:
    def test_level_filters(self):
        sink = io.StringIO()
        handler_id = configure_logging(EngineConfig(log_level="WARNING"), sink)
        try:
            logger.info("hidden")
            logger.warning("shown")
        finally:
            logger.remove(handler_id)
        output = sink.getvalue()
        assert "shown" in output
        assert "hidden" not in output
