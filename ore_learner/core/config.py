"""
Configuration Manager for ORE Learner
Loads configuration from YAML files with environment variable support
"""

import os
import re
import yaml
from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from pathlib import Path

from solders.pubkey import Pubkey

from ore_learner.core.constants import LAMPORTS_PER_SOL, ORE_PROGRAM_ID


_ENV_PATTERN = re.compile(r'\$\{([^}]+)\}')

SIZING_MODES = ("even", "kelly")


@dataclass
class RPCEndpoint:
    """JSON-RPC endpoint"""
    url: str
    priority: int
    label: str
    timeout_ms: int = 10000


@dataclass
class RPCConfig:
    """RPC client configuration"""
    endpoints: List[RPCEndpoint]
    failover_threshold_errors: int = 3
    commitment: str = "confirmed"


@dataclass
class LogConfig:
    """Logging configuration"""
    level: str = "INFO"
    format: str = "json"
    output_file: Optional[str] = None


@dataclass
class MetricsConfig:
    """Metrics configuration"""
    enable_histogram: bool = True
    window_size: int = 10000


@dataclass
class DecoderConfig:
    """Which program the decoder tracks"""
    program_id: str = ORE_PROGRAM_ID


@dataclass
class LearningConfig:
    """Learning engine thresholds"""
    analysis_interval: int = 50  # re-run detectors every N recorded wins
    min_samples_for_strategy: int = 20
    max_win_history: int = 10000
    max_recorded_rounds: int = 5000
    full_win_threshold_sol: float = 2.0

    @property
    def full_win_threshold_lamports(self) -> int:
        return int(self.full_win_threshold_sol * LAMPORTS_PER_SOL)


@dataclass
class OptimizerConfig:
    """EV optimizer tunables"""
    min_wallet_sol: float = 0.05
    max_bet_per_round_sol: float = 0.04
    exploration_min_samples: int = 5
    cost_per_square_sol: float = 0.001
    consensus_confidence_threshold: float = 0.4
    high_tier_min_confidence: float = 0.6
    strategy_min_confidence: float = 0.5
    sizing_mode: str = "even"
    kelly_fraction: float = 0.5
    # Upper bounds (SOL) of the VeryLow, Low, Medium and High tiers
    tier_thresholds_sol: List[float] = field(
        default_factory=lambda: [0.5, 2.0, 10.0, 50.0]
    )

    @property
    def min_wallet_lamports(self) -> int:
        return int(self.min_wallet_sol * LAMPORTS_PER_SOL)

    @property
    def max_bet_per_round_lamports(self) -> int:
        return int(self.max_bet_per_round_sol * LAMPORTS_PER_SOL)


@dataclass
class StorageConfig:
    """SQLite snapshot store"""
    db_path: str = "data/ore_learner.db"


@dataclass
class IngestConfig:
    """Round ingestor settings"""
    signature_batch_size: int = 100
    # Pages walked on a first poll with no cursor
    max_backfill_pages: int = 10


@dataclass
class AppConfig:
    """Complete learner configuration"""
    rpc_config: RPCConfig
    log_config: LogConfig = field(default_factory=LogConfig)
    metrics_config: MetricsConfig = field(default_factory=MetricsConfig)
    decoder_config: DecoderConfig = field(default_factory=DecoderConfig)
    learning_config: LearningConfig = field(default_factory=LearningConfig)
    optimizer_config: OptimizerConfig = field(default_factory=OptimizerConfig)
    storage_config: StorageConfig = field(default_factory=StorageConfig)
    ingest_config: IngestConfig = field(default_factory=IngestConfig)


class ConfigurationManager:
    """Manages learner configuration from YAML files and environment variables"""

    def __init__(self, config_path: str):
        """
        Initialize configuration manager

        Args:
            config_path: Path to YAML configuration file
        """
        self.config_path = Path(config_path)
        self._config_data: Optional[Dict[str, Any]] = None
        self._app_config: Optional[AppConfig] = None

    def load_config(self) -> AppConfig:
        """
        Load and validate configuration from file

        Returns:
            AppConfig: Validated configuration object

        Raises:
            FileNotFoundError: If config file doesn't exist
            ValueError: If config is invalid
        """
        if not self.config_path.exists():
            raise FileNotFoundError(
                f"Configuration file not found: {self.config_path}"
            )

        with open(self.config_path, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        if not isinstance(raw_config, dict):
            raise ValueError("Configuration root must be a mapping")

        self._config_data = self._substitute_env_vars(raw_config)
        self._app_config = self._parse_config(self._config_data)

        return self._app_config

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key

        Args:
            key: Dot-notation key (e.g., "optimizer.min_wallet_sol")
            default: Default value if key not found
        """
        if self._config_data is None:
            raise RuntimeError("Configuration not loaded. Call load_config() first.")

        value: Any = self._config_data
        for k in key.split('.'):
            if not isinstance(value, dict):
                return default
            value = value.get(k)
            if value is None:
                return default

        return value

    def _substitute_env_vars(self, config: Any) -> Any:
        """
        Recursively substitute ${VAR_NAME} references

        Both full-value ("${RPC_URL}") and embedded
        ("https://rpc.example/?key=${API_KEY}") forms are supported.

        Raises:
            ValueError: If a referenced variable is not set
        """
        if isinstance(config, dict):
            return {k: self._substitute_env_vars(v) for k, v in config.items()}
        if isinstance(config, list):
            return [self._substitute_env_vars(item) for item in config]
        if isinstance(config, str):
            def replace_var(match):
                var_name = match.group(1)
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(
                        f"Environment variable {var_name} not found"
                    )
                return value

            return _ENV_PATTERN.sub(replace_var, config)
        return config

    def _parse_config(self, config: Dict[str, Any]) -> AppConfig:
        """
        Parse raw configuration into typed sections

        Raises:
            ValueError: If configuration is invalid
        """
        rpc_data = config.get('rpc') or {}
        endpoints_data = rpc_data.get('endpoints') or []

        if not endpoints_data:
            raise ValueError("No RPC endpoints configured")

        endpoints = [
            RPCEndpoint(
                url=ep['url'],
                priority=ep.get('priority', index),
                label=ep.get('label', f"endpoint_{index}"),
                timeout_ms=ep.get('timeout_ms', 10000)
            )
            for index, ep in enumerate(endpoints_data)
        ]
        # 0 = highest priority
        endpoints.sort(key=lambda ep: ep.priority)

        rpc_config = RPCConfig(
            endpoints=endpoints,
            failover_threshold_errors=rpc_data.get('failover_threshold_errors', 3),
            commitment=rpc_data.get('commitment', 'confirmed')
        )

        log_data = config.get('logging') or {}
        log_config = LogConfig(
            level=log_data.get('level', 'INFO'),
            format=log_data.get('format', 'json'),
            output_file=log_data.get('output_file')
        )

        metrics_data = config.get('metrics') or {}
        metrics_config = MetricsConfig(
            enable_histogram=metrics_data.get('enable_histogram', True),
            window_size=metrics_data.get('window_size', 10000)
        )

        decoder_data = config.get('decoder') or {}
        decoder_config = DecoderConfig(
            program_id=decoder_data.get('program_id', ORE_PROGRAM_ID)
        )
        try:
            Pubkey.from_string(decoder_config.program_id)
        except ValueError as e:
            raise ValueError(f"Invalid decoder.program_id: {decoder_config.program_id}") from e

        learning_config = self._parse_section(LearningConfig, config, "learning")
        optimizer_config = self._parse_section(OptimizerConfig, config, "optimizer")
        storage_config = self._parse_section(StorageConfig, config, "storage")
        ingest_config = self._parse_section(IngestConfig, config, "ingest")

        self._validate_learning(learning_config)
        self._validate_optimizer(optimizer_config)
        self._validate_ingest(ingest_config)

        return AppConfig(
            rpc_config=rpc_config,
            log_config=log_config,
            metrics_config=metrics_config,
            decoder_config=decoder_config,
            learning_config=learning_config,
            optimizer_config=optimizer_config,
            storage_config=storage_config,
            ingest_config=ingest_config
        )

    @staticmethod
    def _parse_section(section_cls, config: Dict[str, Any], name: str):
        """Build a flat dataclass section, rejecting unknown keys"""
        data = config.get(name) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Section {name} must be a mapping")
        try:
            return section_cls(**data)
        except TypeError as e:
            raise ValueError(f"Invalid {name} section: {e}") from e

    @staticmethod
    def _validate_learning(learning: LearningConfig) -> None:
        if learning.analysis_interval < 1:
            raise ValueError("learning.analysis_interval must be >= 1")
        if learning.min_samples_for_strategy < 1:
            raise ValueError("learning.min_samples_for_strategy must be >= 1")
        if learning.max_win_history < 1:
            raise ValueError("learning.max_win_history must be >= 1")
        if learning.full_win_threshold_sol <= 0:
            raise ValueError("learning.full_win_threshold_sol must be positive")

    @staticmethod
    def _validate_ingest(ingest: IngestConfig) -> None:
        if not 1 <= ingest.signature_batch_size <= 1000:
            raise ValueError("ingest.signature_batch_size must be between 1 and 1000")
        if ingest.max_backfill_pages < 1:
            raise ValueError("ingest.max_backfill_pages must be >= 1")

    @staticmethod
    def _validate_optimizer(optimizer: OptimizerConfig) -> None:
        if optimizer.min_wallet_sol < 0:
            raise ValueError("optimizer.min_wallet_sol must be >= 0")
        if optimizer.max_bet_per_round_sol <= 0:
            raise ValueError("optimizer.max_bet_per_round_sol must be positive")
        if optimizer.sizing_mode not in SIZING_MODES:
            raise ValueError(
                f"optimizer.sizing_mode must be one of {SIZING_MODES}, got {optimizer.sizing_mode!r}"
            )
        if not 0 < optimizer.kelly_fraction <= 1:
            raise ValueError("optimizer.kelly_fraction must be in (0, 1]")
        thresholds = optimizer.tier_thresholds_sol
        if len(thresholds) != 4 or any(b <= a for a, b in zip(thresholds, thresholds[1:])):
            raise ValueError("optimizer.tier_thresholds_sol must be 4 strictly increasing values")
