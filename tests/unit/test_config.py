"""
Unit tests for Configuration Manager (core/config.py)

Tests:
- YAML parsing
- Environment variable substitution
- Configuration validation
- Error handling
"""

import pytest
import yaml

from ore_learner.core.config import (
    AppConfig,
    ConfigurationManager,
    LearningConfig,
    OptimizerConfig,
)
from ore_learner.core.constants import ORE_PROGRAM_ID


def _write(tmp_path, data, name="config.yml"):
    path = tmp_path / name
    with open(path, 'w') as f:
        yaml.dump(data, f)
    return str(path)


class TestConfigurationManager:
    """Test configuration loading and validation"""

    def test_load_valid_config(self, test_config_file):
        """Test loading a valid configuration file"""
        app_config = ConfigurationManager(test_config_file).load_config()

        assert isinstance(app_config, AppConfig)
        assert len(app_config.rpc_config.endpoints) == 2
        assert app_config.rpc_config.failover_threshold_errors == 3
        assert app_config.log_config.level == "DEBUG"
        assert app_config.optimizer_config.max_bet_per_round_sol == 0.04
        assert app_config.decoder_config.program_id == ORE_PROGRAM_ID

    def test_rpc_endpoint_priority_sorting(self, test_config_file):
        """Endpoints come back sorted by priority (0 first)"""
        endpoints = ConfigurationManager(test_config_file).load_config().rpc_config.endpoints

        assert endpoints[0].priority == 0
        assert endpoints[1].priority == 1
        assert endpoints[0].label == "solana_labs_devnet"

    def test_missing_sections_use_defaults(self, tmp_path):
        path = _write(tmp_path, {"rpc": {"endpoints": [{"url": "http://localhost:8899"}]}})

        app_config = ConfigurationManager(path).load_config()

        assert app_config.learning_config == LearningConfig()
        assert app_config.optimizer_config == OptimizerConfig()
        assert app_config.rpc_config.endpoints[0].label == "endpoint_0"
        assert app_config.storage_config.db_path == "data/ore_learner.db"

    def test_missing_config_file(self, tmp_path):
        config_manager = ConfigurationManager(str(tmp_path / "nonexistent.yml"))

        with pytest.raises(FileNotFoundError):
            config_manager.load_config()

    def test_get_before_load(self, test_config_file):
        with pytest.raises(RuntimeError):
            ConfigurationManager(test_config_file).get("optimizer.sizing_mode")

    def test_get_dot_notation(self, test_config_file):
        config_manager = ConfigurationManager(test_config_file)
        config_manager.load_config()

        assert config_manager.get("optimizer.sizing_mode") == "even"
        assert config_manager.get("optimizer.missing", "x") == "x"


class TestEnvironmentSubstitution:

    def test_full_and_embedded_values(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ORE_RPC_URL", "https://rpc.example")
        monkeypatch.setenv("ORE_API_KEY", "secret")
        path = _write(tmp_path, {"rpc": {"endpoints": [
            {"url": "${ORE_RPC_URL}", "priority": 0, "label": "primary"},
            {"url": "https://backup.example/?key=${ORE_API_KEY}", "priority": 1, "label": "backup"},
        ]}})

        endpoints = ConfigurationManager(path).load_config().rpc_config.endpoints

        assert endpoints[0].url == "https://rpc.example"
        assert endpoints[1].url == "https://backup.example/?key=secret"

    def test_missing_variable(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ORE_UNSET_VAR", raising=False)
        path = _write(tmp_path, {"rpc": {"endpoints": [{"url": "${ORE_UNSET_VAR}"}]}})

        with pytest.raises(ValueError, match="ORE_UNSET_VAR"):
            ConfigurationManager(path).load_config()


class TestValidation:

    def test_no_endpoints(self, tmp_path):
        path = _write(tmp_path, {"rpc": {"endpoints": []}})

        with pytest.raises(ValueError, match="No RPC endpoints"):
            ConfigurationManager(path).load_config()

    @pytest.mark.parametrize("section,values", [
        ("optimizer", {"sizing_mode": "martingale"}),
        ("optimizer", {"kelly_fraction": 0}),
        ("optimizer", {"max_bet_per_round_sol": 0}),
        ("optimizer", {"tier_thresholds_sol": [1, 1, 2, 3]}),
        ("learning", {"analysis_interval": 0}),
        ("learning", {"full_win_threshold_sol": -1}),
        ("learning", {"unknown_key": 1}),
        ("decoder", {"program_id": "not-a-pubkey"}),
        ("ingest", {"signature_batch_size": 1001}),
        ("ingest", {"max_backfill_pages": 0}),
    ])
    def test_invalid_sections(self, test_config_dict, tmp_path, section, values):
        test_config_dict[section] = values
        path = _write(tmp_path, test_config_dict)

        with pytest.raises(ValueError):
            ConfigurationManager(path).load_config()

    def test_non_mapping_root(self, tmp_path):
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n")

        with pytest.raises(ValueError):
            ConfigurationManager(str(path)).load_config()

    def test_lamport_properties(self):
        assert OptimizerConfig(min_wallet_sol=0.05).min_wallet_lamports == 50_000_000
        assert LearningConfig(full_win_threshold_sol=2.0).full_win_threshold_lamports == 2_000_000_000
