"""
Configuration loader with Pydantic validation.

Supports:
- YAML file loading
- Secrets from environment (API token, Telegram)
- Cross-field validation, so bad combinations fail before a session starts
"""

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DIGIT_CLASSES = 10


class APIConfig(BaseModel):
    """API endpoint configuration."""

    model_config = ConfigDict(frozen=True)

    ws_url: str = "wss://ws.derivws.com/websockets/v3"
    app_id: str = "1089"

    @property
    def endpoint(self) -> str:
        return f"{self.ws_url}?app_id={self.app_id}"


class ExecutionConfig(BaseModel):
    """Transport and execution parameters."""

    model_config = ConfigDict(frozen=True)

    connect_timeout_s: float = 10.0
    request_timeout_s: float = 10.0
    ws_reconnect_initial_ms: int = 1000
    ws_reconnect_max_ms: int = 30000
    ws_reconnect_multiplier: float = 2.0
    ws_reconnect_jitter: float = 0.2
    ws_max_reconnect_attempts: int = 5
    use_proposal: bool = True  # price/validate before buying

    @field_validator("connect_timeout_s", "request_timeout_s")
    @classmethod
    def validate_timeouts(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("ws_max_reconnect_attempts")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("ws_max_reconnect_attempts must be at least 1")
        return v


class InstrumentConfig(BaseModel):
    """Static per-instrument parameters."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    decimals: int = 2  # quote precision; the last of these digits is the outcome class
    history_size: int = 1000
    contract_type: str = "DIGITDIFF"
    duration: int = 1
    duration_unit: str = "t"
    currency: str = "USD"

    @field_validator("decimals")
    @classmethod
    def validate_decimals(cls, v: int) -> int:
        if not 1 <= v <= 8:
            raise ValueError("decimals must be between 1 and 8")
        return v

    @field_validator("history_size", "duration")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class SignalWeights(BaseModel):
    """Weights of the composite confidence score."""

    model_config = ConfigDict(frozen=True)

    pattern: float = 0.40
    frequency: float = 0.20
    streak: float = 0.15
    repetition: float = 0.15
    entropy: float = 0.10

    @model_validator(mode="after")
    def validate_weights(self) -> "SignalWeights":
        values = self.as_dict().values()
        if any(w < 0 for w in values):
            raise ValueError("signal weights must be non-negative")
        if sum(values) <= 0:
            raise ValueError("at least one signal weight must be positive")
        return self

    def as_dict(self) -> dict[str, float]:
        return {
            "pattern": self.pattern,
            "frequency": self.frequency,
            "streak": self.streak,
            "repetition": self.repetition,
            "entropy": self.entropy,
        }


class StrategyConfig(BaseModel):
    """Signal engine parameters; one engine, selected by `method`."""

    model_config = ConfigDict(frozen=True)

    method: Literal["pattern", "frequency", "streak", "hybrid"] = "hybrid"
    num_classes: int = DIGIT_CLASSES
    min_history: int = 100  # below this, never a signal
    min_confidence: float = 0.60
    min_sample_size: int = 20
    pattern_length: int = 2
    max_safe_occurrences: int = 0
    frequency_window: int = 1000
    entropy_window: int = 200
    z_threshold: float = 2.0
    max_repetition_rate: float = 0.12
    streak_saturation: int = 10
    min_run_length: int = 2
    max_entropy: float = 0.98
    entropy_penalty: float = 0.05
    weights: SignalWeights = Field(default_factory=SignalWeights)

    @field_validator("min_confidence", "max_repetition_rate", "max_entropy")
    @classmethod
    def validate_unit_interval(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("must be in (0, 1]")
        return v

    @field_validator("num_classes")
    @classmethod
    def validate_classes(cls, v: int) -> int:
        # outcome classes are last decimal digits
        if v != DIGIT_CLASSES:
            raise ValueError(f"num_classes must be {DIGIT_CLASSES}, one class per decimal digit")
        return v

    @field_validator(
        "min_history", "min_sample_size", "pattern_length", "frequency_window",
        "entropy_window", "streak_saturation", "min_run_length",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v

    @field_validator("z_threshold")
    @classmethod
    def validate_z(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("z_threshold must be positive")
        return v


class StakeConfig(BaseModel):
    """Staking policy parameters."""

    model_config = ConfigDict(frozen=True)

    policy: Literal["martingale", "grid"] = "martingale"
    initial_stake: float = 0.35
    multiplier: float = 2.0
    stake_increment: float = 0.01
    min_stake: float = 0.35
    max_stake: float = 500.0
    grid_factor: float = 0.5
    grid_layers: int = 3

    @model_validator(mode="after")
    def validate_bounds(self) -> "StakeConfig":
        if self.stake_increment <= 0:
            raise ValueError("stake_increment must be positive")
        if not 0 < self.min_stake <= self.initial_stake <= self.max_stake:
            raise ValueError("require 0 < min_stake <= initial_stake <= max_stake")
        if self.multiplier < 1:
            raise ValueError("martingale multiplier must be >= 1")
        if not 0 < self.grid_factor < 1:
            raise ValueError("grid_factor must be between 0 and 1 (exclusive)")
        if self.grid_layers < 1:
            raise ValueError("grid_layers must be at least 1")
        if self.policy == "grid":
            from tickbot.risk.stake_policy import bound_stake, grid_stakes

            ladder = [
                bound_stake(s, self)
                for s in grid_stakes(self.initial_stake, self.grid_factor, self.grid_layers)
            ]
            total = round(sum(ladder), 8)
            if total > self.max_stake:
                raise ValueError(
                    f"grid ladder {ladder} sums to {total:.2f}, above max_stake {self.max_stake:.2f}"
                )
        return self


class RiskConfig(BaseModel):
    """Risk guard parameters."""

    model_config = ConfigDict(frozen=True)

    max_consecutive_losses: int = 3
    daily_loss_limit: float = 50.0  # stop loss, as a positive amount
    take_profit_target: float = 100.0
    max_concurrent_positions: int = 1
    cooldown_seconds: float = 2.0
    rate_limit_delay_seconds: float = 10.0
    market_closed_delay_seconds: float = 300.0
    max_suspended_instruments: int = 3  # suspended after a loss; oldest reactivated first, 0 disables

    @field_validator("daily_loss_limit", "take_profit_target")
    @classmethod
    def validate_limits(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("loss limit and take profit must be positive")
        return v

    @field_validator("max_consecutive_losses", "max_concurrent_positions")
    @classmethod
    def validate_counts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator(
        "cooldown_seconds", "rate_limit_delay_seconds", "market_closed_delay_seconds"
    )
    @classmethod
    def validate_delays(cls, v: float) -> float:
        if v < 0:
            raise ValueError("delays must be non-negative")
        return v

    @field_validator("max_suspended_instruments")
    @classmethod
    def validate_suspended(cls, v: int) -> int:
        if v < 0:
            raise ValueError("max_suspended_instruments must be non-negative")
        return v


class ObservabilityConfig(BaseModel):
    """Logging, metrics and notification configuration."""

    model_config = ConfigDict(frozen=True)

    log_level: str = "INFO"
    log_format: str = "json"  # json, text or clean
    metrics_enabled: bool = False
    metrics_port: int = 9090
    telegram_enabled: bool = False
    summary_interval_seconds: float = 3600.0  # periodic performance alert, 0 disables

    @field_validator("summary_interval_seconds")
    @classmethod
    def validate_interval(cls, v: float) -> float:
        if v < 0:
            raise ValueError("summary_interval_seconds must be non-negative")
        return v


class SecretsConfig(BaseSettings):
    """
    Secrets loaded exclusively from environment variables.
    Never logged or persisted.
    """

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    deriv_api_token: str = ""
    deriv_app_id: str = ""  # overrides api.app_id when set
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""


class AppConfig(BaseModel):
    """Complete application configuration, resolved once at startup."""

    model_config = ConfigDict(frozen=True)

    config_version: str = "1.0.0"
    environment: str = "demo"

    api: APIConfig = Field(default_factory=APIConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    instruments: list[InstrumentConfig] = Field(
        default_factory=lambda: [InstrumentConfig(symbol="R_50", decimals=4)]
    )
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    stake: StakeConfig = Field(default_factory=StakeConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)

    @model_validator(mode="after")
    def validate_instruments(self) -> "AppConfig":
        if not self.instruments:
            raise ValueError("at least one instrument is required")
        symbols = [i.symbol for i in self.instruments]
        if len(set(symbols)) != len(symbols):
            raise ValueError("instrument symbols must be unique")
        for inst in self.instruments:
            if inst.history_size < self.strategy.min_history:
                raise ValueError(
                    f"{inst.symbol}: history_size {inst.history_size} is below "
                    f"strategy.min_history {self.strategy.min_history}"
                )
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def instrument(self, symbol: str) -> InstrumentConfig:
        for inst in self.instruments:
            if inst.symbol == symbol:
                return inst
        raise KeyError(symbol)

    def diff_from_defaults(self) -> dict[str, Any]:
        """
        Get configuration differences from defaults.

        Useful for logging what's been customized.
        """
        current = self.model_dump()
        default_dict = AppConfig().model_dump()

        def diff_dict(d1: dict, d2: dict, path: str = "") -> dict:
            differences = {}
            for key in set(d1.keys()) | set(d2.keys()):
                full_key = f"{path}.{key}" if path else key
                v1 = d1.get(key)
                v2 = d2.get(key)

                if isinstance(v1, dict) and isinstance(v2, dict):
                    differences.update(diff_dict(v1, v2, full_key))
                elif v1 != v2:
                    differences[full_key] = {"current": v1, "default": v2}

            return differences

        return diff_dict(current, default_dict)


def load_yaml_config(path: Path) -> dict[str, Any]:
    """Load configuration from YAML file."""
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_config(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from YAML file.

    Priority (highest to lowest):
    1. Explicit overrides (CLI)
    2. Specified config file
    3. Defaults

    Raises:
        pydantic.ValidationError: if the resolved configuration is invalid
    """
    config_dict: dict[str, Any] = {}

    if config_path:
        config_dict = load_yaml_config(Path(config_path))

    if overrides:
        config_dict = deep_merge(config_dict, overrides)

    return AppConfig(**config_dict)


def load_secrets() -> SecretsConfig:
    """Load secrets from environment variables."""
    return SecretsConfig()


def init_config(config_path: str | Path | None = None) -> tuple[AppConfig, SecretsConfig]:
    """Resolve configuration and secrets once at startup."""
    return load_config(config_path), load_secrets()
