"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for ledger configs.
"""

import os
import tempfile

import pytest
import yaml

from video_ledger.config.loader import (
    BudgetPeriod,
    BudgetThreshold,
    LedgerConfig,
    LogBackend,
    ScopeKind,
    load_config,
    parse_threshold,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a full configuration loads correctly."""
        config_path = self._write_config({
            "database": {"path": "/tmp/ledger.db"},
            "event_log": {
                "backend": "redis",
                "group": "cost-tracker",
                "consumer_name": "worker-1",
                "batch_size": 50,
                "start_id": 0,
            },
            "pricing": {
                "gemini-flash:input": 0.35,
                "acme:render": {"price_usd": 1.5, "per_units": 10, "unit_label": "per 10 renders"},
            },
            "budgets": {
                "period": "day",
                "scopes": [
                    {"scope": "total", "cap_usd": 100},
                    {"scope": "provider", "name": "heygen", "cap_usd": 50, "thresholds": ["50%", 45]},
                    {"scope": "service", "name": "tts", "cap_usd": 10},
                ],
            },
            "default_channel_id": "main",
        })
        config = load_config(config_path)

        assert config.database.path == "/tmp/ledger.db"
        assert config.event_log.backend == LogBackend.REDIS
        assert config.event_log.consumer_name == "worker-1"
        assert config.event_log.batch_size == 50
        assert config.event_log.start_id == "0"
        assert config.pricing["gemini-flash:input"].price_usd == 0.35
        assert config.pricing["acme:render"].per_units == 10
        assert config.budgets.period == BudgetPeriod.DAY
        assert [s.key for s in config.budgets.scopes] == ["total", "provider:heygen", "service:tts"]
        heygen = config.budgets.scopes[1]
        assert heygen.scope == ScopeKind.PROVIDER
        assert heygen.thresholds == (BudgetThreshold(percent=50.0), BudgetThreshold(amount_usd=45.0))
        assert config.default_channel_id == "main"

    def test_no_path_returns_defaults(self, monkeypatch):
        """Test that defaults are used when no file is given."""
        monkeypatch.delenv("VIDEO_LEDGER_CONFIG", raising=False)
        config = load_config()
        assert config == LedgerConfig(event_log=config.event_log)
        assert config.event_log.backend == LogBackend.MEMORY
        assert config.event_log.group == "cost-tracker"
        assert config.budgets.scopes == ()

    def test_path_from_environment(self, monkeypatch):
        """Test that the environment variable names the file."""
        config_path = self._write_config({"database": {"path": "env.db"}})
        monkeypatch.setenv("VIDEO_LEDGER_CONFIG", config_path)
        assert load_config().database.path == "env.db"

    def test_empty_file_returns_defaults(self):
        """Test that an empty file is the same as no file."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, "w").close()
        assert load_config(config_path).database.path == "video_ledger.db"

    def test_missing_file_raises(self):
        """Test that a missing file is reported."""
        with pytest.raises(FileNotFoundError, match="not found"):
            load_config(os.path.join(self.temp_dir, "nope.yaml"))

    def test_invalid_yaml_raises(self):
        """Test that invalid YAML is reported."""
        config_path = os.path.join(self.temp_dir, "bad.yaml")
        with open(config_path, "w") as f:
            f.write("database: [unclosed\n")
        with pytest.raises(yaml.YAMLError):
            load_config(config_path)

    def test_unknown_top_level_key_rejected(self):
        """Test that typos are not silently ignored."""
        with pytest.raises(ValueError, match="Unknown keys in configuration"):
            load_config(self._write_config({"budget": {}}))

    def test_unknown_event_log_key_rejected(self):
        with pytest.raises(ValueError, match="Unknown keys in event_log"):
            load_config(self._write_config({"event_log": {"batchsize": 10}}))

    def test_invalid_backend_rejected(self):
        with pytest.raises(ValueError, match="must be one of"):
            load_config(self._write_config({"event_log": {"backend": "kafka"}}))

    def test_invalid_batch_size_rejected(self):
        with pytest.raises(ValueError, match="batch_size must be > 0"):
            load_config(self._write_config({"event_log": {"batch_size": 0}}))

    def test_max_deliveries_loaded(self):
        config = load_config(self._write_config({"event_log": {"max_deliveries": 3}}))
        assert config.event_log.max_deliveries == 3

    def test_invalid_max_deliveries_rejected(self):
        with pytest.raises(ValueError, match="max_deliveries must be >= 1"):
            load_config(self._write_config({"event_log": {"max_deliveries": 0}}))

    def test_invalid_pricing_key_rejected(self):
        with pytest.raises(ValueError, match="provider:unit_type"):
            load_config(self._write_config({"pricing": {"heygen": 0.5}}))

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError, match="price_usd must be >= 0"):
            load_config(self._write_config({"pricing": {"heygen:minutes": -1}}))

    def test_price_mapping_requires_price(self):
        with pytest.raises(ValueError, match="Missing required 'price_usd'"):
            load_config(self._write_config({"pricing": {"heygen:minutes": {"per_units": 1}}}))

    def test_budget_scope_requires_name(self):
        with pytest.raises(ValueError, match="requires a name"):
            load_config(self._write_config({
                "budgets": {"scopes": [{"scope": "provider", "cap_usd": 10}]},
            }))

    def test_budget_service_name_validated(self):
        with pytest.raises(ValueError, match="service budget name"):
            load_config(self._write_config({
                "budgets": {"scopes": [{"scope": "service", "name": "video", "cap_usd": 10}]},
            }))

    def test_budget_cap_required(self):
        with pytest.raises(ValueError, match="Missing required 'cap_usd'"):
            load_config(self._write_config({"budgets": {"scopes": [{"scope": "total"}]}}))

    def test_duplicate_budget_scope_rejected(self):
        with pytest.raises(ValueError, match="Duplicate budget scope"):
            load_config(self._write_config({
                "budgets": {"scopes": [
                    {"scope": "total", "cap_usd": 10},
                    {"scope": "total", "cap_usd": 20},
                ]},
            }))

    def test_invalid_period_rejected(self):
        with pytest.raises(ValueError, match="budgets.period"):
            load_config(self._write_config({"budgets": {"period": "week"}}))


class TestThresholds:
    """Test budget threshold parsing."""

    def test_percent_threshold(self):
        threshold = parse_threshold("80%")
        assert threshold.percent == 80.0
        assert threshold.usd(100.0) == pytest.approx(80.0)
        assert threshold.label() == "80%"

    def test_absolute_threshold(self):
        threshold = parse_threshold(25)
        assert threshold.amount_usd == 25.0
        assert threshold.usd(100.0) == 25.0
        assert threshold.label() == "$25.00"

    @pytest.mark.parametrize("value", ["abc%", "0%", -5, True, None, "x"])
    def test_invalid_threshold(self, value):
        with pytest.raises(ValueError):
            parse_threshold(value)
