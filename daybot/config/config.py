"""
Configuration models for the daybot execution engine.

Uses Pydantic for validation and type safety.
"""
from datetime import time
from typing import List, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

from daybot.utils.secret_manager import get_secret


def _unset(value: Optional[str]) -> bool:
    """True for empty values and unexpanded ${VAR} placeholders."""
    return value is None or not str(value).strip() or str(value).startswith("${")


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "daybot"
    version: str = "1.0.0"
    dry_run: bool = False  # If True, brackets are logged, never sent


class ScheduleConfig(BaseSettings):
    """Exchange session and named window configuration (exchange-local times)."""
    model_config = SettingsConfigDict(extra="ignore")

    timezone: str = "America/New_York"
    session_open: time = time(9, 30)
    session_close: time = time(16, 0)

    entry_window_start: time = time(11, 5)
    entry_window_seconds: int = Field(default=120, ge=10, le=3600, description="Length of the daily entry window")
    prewarm_seconds: int = Field(default=30, ge=0, le=600, description="Pre-warm window immediately before entry")
    mandatory_exit_time: time = time(15, 55)

    # Final N seconds of the entry window in which a stale claim may be released
    failsafe_seconds: int = Field(default=30, ge=5, le=600)
    claim_stale_seconds: int = Field(default=45, ge=5, le=3600, description="Claim age before failsafe may release it")

    @model_validator(mode="after")
    def validate_window_order(self) -> "ScheduleConfig":
        if not (self.session_open <= self.entry_window_start < self.mandatory_exit_time <= self.session_close):
            raise ValueError("Expected session_open <= entry_window_start < mandatory_exit_time <= session_close")
        if self.failsafe_seconds >= self.entry_window_seconds:
            raise ValueError("failsafe_seconds must be shorter than the entry window")
        return self


class ExecutionConfig(BaseSettings):
    """Entry sizing and bracket order configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    starting_cash: float = Field(default=4000.0, gt=0.0)
    budget_cap: float = Field(default=4000.0, gt=0.0, description="Max notional committed per entry")
    target_pct: float = Field(default=0.10, gt=0.0, le=1.0, description="Take-profit offset from entry limit")
    stop_pct: float = Field(default=-0.05, ge=-0.5, lt=0.0, description="Stop-loss offset from entry limit (negative)")
    slippage_steps: List[float] = Field(default_factory=lambda: [0.003, 0.006, 0.010])
    time_in_force: Literal["day", "gtc"] = "day"
    order_timeout_seconds: float = Field(default=5.0, ge=1.0, le=60.0)

    # Size each attempt on its entry limit instead of the reference price.
    size_on_entry_limit: bool = False

    @field_validator("slippage_steps")
    @classmethod
    def validate_slippage_steps(cls, v: List[float]) -> List[float]:
        if not v:
            raise ValueError("slippage_steps must contain at least one step")
        if any(step < 0 or step > 0.10 for step in v):
            raise ValueError("slippage steps must be within [0, 0.10]")
        if any(b <= a for a, b in zip(v, v[1:])):
            raise ValueError("slippage_steps must be strictly ascending")
        return v


class RecommendationConfig(BaseSettings):
    """Pick-a-ticker advisory service configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    service_url: Optional[str] = None
    burst_attempts: int = Field(default=6, ge=1, le=30)
    burst_delay_seconds: float = Field(default=0.5, ge=0.0, le=5.0)
    request_timeout_seconds: float = Field(default=8.0, ge=0.5, le=60.0)
    top_candidates: int = Field(default=8, ge=1, le=50)

    @model_validator(mode="after")
    def fill_from_env(self) -> "RecommendationConfig":
        if _unset(self.service_url):
            self.service_url = get_secret("RECOMMENDATION_URL")
        return self


class BrokerConfig(BaseSettings):
    """Brokerage REST configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    base_url: str = "https://paper-api.alpaca.markets"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    request_timeout_seconds: float = Field(default=10.0, ge=1.0, le=60.0)
    max_retries: int = Field(default=2, ge=0, le=5)

    @model_validator(mode="after")
    def fill_from_env(self) -> "BrokerConfig":
        env_base = get_secret("ALPACA_BASE_URL")
        if env_base:
            self.base_url = env_base
        # The client appends /v2 itself
        self.base_url = re.sub(r"/v2/?$", "", self.base_url.rstrip("/"))
        if _unset(self.api_key):
            self.api_key = get_secret("ALPACA_API_KEY_ID", "ALPACA_API_KEY")
        if _unset(self.api_secret):
            self.api_secret = get_secret("ALPACA_API_SECRET_KEY", "ALPACA_SECRET_KEY")
        return self

    @property
    def key_last4(self) -> Optional[str]:
        return self.api_key[-4:] if self.api_key else None


class MarketDataConfig(BaseSettings):
    """Quote / movers provider configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    base_url: str = "https://financialmodelingprep.com"
    api_key: Optional[str] = None
    request_timeout_seconds: float = Field(default=5.0, ge=0.5, le=60.0)
    snapshot_ttl_seconds: float = Field(default=15.0, ge=0.0, le=600.0, description="Per-instance movers cache")

    @model_validator(mode="after")
    def fill_from_env(self) -> "MarketDataConfig":
        if _unset(self.api_key):
            self.api_key = get_secret("FMP_API_KEY")
        return self


class ReconciliationConfig(BaseSettings):
    """Fill sync range configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    default_window_minutes: int = Field(default=90, ge=15, le=10080)
    min_window_minutes: int = Field(default=15, ge=1)
    max_window_minutes: int = Field(default=10080, le=60 * 24 * 31)
    order_page_limit: int = Field(default=200, ge=1, le=500)

    @model_validator(mode="after")
    def validate_bounds(self) -> "ReconciliationConfig":
        if not (self.min_window_minutes <= self.default_window_minutes <= self.max_window_minutes):
            raise ValueError("default_window_minutes must lie within [min_window_minutes, max_window_minutes]")
        return self


class ApiConfig(BaseSettings):
    """HTTP surface configuration: shared secrets and tick coalescing."""
    model_config = SettingsConfigDict(extra="ignore")

    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)

    webhook_secret: Optional[str] = None
    panic_passkey: Optional[str] = None
    reset_key: Optional[str] = None
    scheduler_signature_skew_seconds: int = Field(default=300, ge=10, le=3600)

    tick_min_interval_ms: int = Field(default=300, ge=0, le=60000, description="Serve cached tick result within this window")
    tick_timeout_seconds: float = Field(default=120.0, ge=1.0, le=600.0)

    @model_validator(mode="after")
    def fill_from_env(self) -> "ApiConfig":
        if _unset(self.webhook_secret):
            self.webhook_secret = get_secret("ALPACA_WEBHOOK_SECRET", "WEBHOOK_SECRET")
        if _unset(self.panic_passkey):
            self.panic_passkey = get_secret("PANIC_PASSKEY")
        if _unset(self.reset_key):
            self.reset_key = get_secret("RESET_KEY")
        return self


class DataConfig(BaseSettings):
    """Ledger storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None

    @field_validator("database_url")
    @classmethod
    def drop_placeholder(cls, v: Optional[str]) -> Optional[str]:
        return None if _unset(v) else v


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    recommendation: RecommendationConfig = Field(default_factory=RecommendationConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    reconciliation: ReconciliationConfig = Field(default_factory=ReconciliationConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "paper", "prod"] = "prod"

    def worst_case_tick_seconds(self) -> float:
        """
        Longest a single tick pass can legitimately run: the pre-warm call, the
        full recommendation burst, then every broker/quote call bounded by the
        order timeout (clock check, reference quote, one submit and one re-quote
        per slippage step, holding mark, mandatory exit).
        """
        rec = self.recommendation
        ex = self.execution
        recommendation = rec.request_timeout_seconds + rec.burst_attempts * (
            rec.request_timeout_seconds + rec.burst_delay_seconds
        )
        broker_calls = 2 * len(ex.slippage_steps) + 4
        return recommendation + broker_calls * ex.order_timeout_seconds

    @model_validator(mode="after")
    def validate_tick_budget(self) -> "Config":
        worst = self.worst_case_tick_seconds()
        if worst > self.api.tick_timeout_seconds:
            raise ValueError(
                f"api.tick_timeout_seconds={self.api.tick_timeout_seconds} is below the worst-case "
                f"tick duration {worst:.1f}s; an entry could be cancelled mid-submission"
            )
        return self

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # Regex to find ${VAR} or $VAR
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url and _unset(config_dict.get("data", {}).get("database_url")):
            config_dict.setdefault("data", {})["database_url"] = db_url

        # DRY_RUN env var overrides outside prod
        if config_dict.get("environment") != "prod":
            env_dry_run = os.getenv("DRY_RUN")
            if env_dry_run is not None:
                config_dict.setdefault("system", {})["dry_run"] = env_dry_run in ("1", "true", "True", "TRUE")

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Cross-section checks that single sections cannot see."""
        if self.execution.budget_cap > self.execution.starting_cash * 10:
            raise ValueError("execution.budget_cap is more than 10x starting_cash; refusing to start")
        if self.environment == "prod" and self.data.database_url and self.data.database_url.startswith("sqlite"):
            raise ValueError("SQLite ledger is not allowed in prod (multiple instances share the ledger)")


def load_config(config_path: str | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses daybot/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()

    return config
