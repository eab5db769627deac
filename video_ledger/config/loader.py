"""
Configuration management and loading.

Builds the single, explicit configuration object that every component
receives at construction time.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

CONFIG_ENV_VAR = "VIDEO_LEDGER_CONFIG"


class LogBackend(Enum):
    """Event log implementations the consumer can attach to."""
    MEMORY = "memory"
    REDIS = "redis"


class ScopeKind(Enum):
    """What a budget scope sums over."""
    TOTAL = "total"
    PROVIDER = "provider"
    SERVICE = "service"


class BudgetPeriod(Enum):
    """Calendar period a budget resets on (UTC)."""
    DAY = "day"
    MONTH = "month"


SERVICE_NAMES = ("llm", "tts", "media", "image", "storage", "other")


@dataclass(frozen=True)
class DatabaseConfig:
    """Location of the relational store."""
    path: str = "video_ledger.db"


@dataclass(frozen=True)
class EventLogConfig:
    """Connection and consumer-group settings for the shared event log."""
    backend: LogBackend = LogBackend.MEMORY
    redis_url: str = "redis://localhost:6379"
    stream_key: str = "ai-pipeline:events"
    group: str = "cost-tracker"
    consumer_name: str = field(default_factory=lambda: f"cost-tracker-{os.getpid()}")
    start_id: str = "0"
    batch_size: int = 20
    block_ms: int = 5000
    backoff_seconds: float = 2.0
    claim_idle_ms: int = 60000
    claim_interval_seconds: float = 30.0
    max_deliveries: int = 5

    def __post_init__(self):
        """Validate consumer settings are usable."""
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.block_ms < 0:
            raise ValueError("block_ms must be >= 0")
        if self.backoff_seconds < 0:
            raise ValueError("backoff_seconds must be >= 0")
        if self.claim_idle_ms <= 0:
            raise ValueError("claim_idle_ms must be > 0")
        if self.max_deliveries < 1:
            raise ValueError("max_deliveries must be >= 1")


@dataclass(frozen=True)
class PriceOverride:
    """A configured unit price; unset fields fall back to the unit type's defaults."""
    price_usd: float
    per_units: Optional[int] = None
    unit_label: Optional[str] = None

    def __post_init__(self):
        if self.price_usd < 0:
            raise ValueError("price_usd must be >= 0")
        if self.per_units is not None and self.per_units <= 0:
            raise ValueError("per_units must be > 0")


@dataclass(frozen=True)
class BudgetThreshold:
    """Alert line expressed as a percent of the cap or as absolute USD."""
    percent: Optional[float] = None
    amount_usd: Optional[float] = None

    def usd(self, cap_usd: float) -> float:
        if self.amount_usd is not None:
            return self.amount_usd
        return cap_usd * (self.percent or 0.0) / 100.0

    def label(self) -> str:
        if self.amount_usd is not None:
            return f"${self.amount_usd:,.2f}"
        return f"{self.percent:g}%"


DEFAULT_THRESHOLDS = (BudgetThreshold(percent=80.0), BudgetThreshold(percent=100.0))


@dataclass(frozen=True)
class BudgetScopeConfig:
    """One tracked budget scope."""
    scope: ScopeKind
    cap_usd: float
    name: Optional[str] = None
    thresholds: Tuple[BudgetThreshold, ...] = DEFAULT_THRESHOLDS

    def __post_init__(self):
        if self.cap_usd <= 0:
            raise ValueError("cap_usd must be > 0")
        if self.scope != ScopeKind.TOTAL and not self.name:
            raise ValueError(f"'{self.scope.value}' budget scope requires a name")
        if self.scope == ScopeKind.SERVICE and self.name not in SERVICE_NAMES:
            raise ValueError(f"service budget name must be one of: {list(SERVICE_NAMES)}")
        if not self.thresholds:
            raise ValueError("at least one threshold is required")

    @property
    def key(self) -> str:
        """Stable identifier used to persist alert state."""
        if self.scope == ScopeKind.TOTAL:
            return "total"
        return f"{self.scope.value}:{self.name}"


@dataclass(frozen=True)
class BudgetConfig:
    """Budget alerting configuration."""
    period: BudgetPeriod = BudgetPeriod.MONTH
    scopes: Tuple[BudgetScopeConfig, ...] = ()


@dataclass(frozen=True)
class LedgerConfig:
    """Complete process configuration, constructed once at start-up."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    event_log: EventLogConfig = field(default_factory=EventLogConfig)
    pricing: Dict[str, PriceOverride] = field(default_factory=dict)
    budgets: BudgetConfig = field(default_factory=BudgetConfig)
    default_channel_id: str = "default"


def load_config(path: Optional[str] = None) -> LedgerConfig:
    """Load and validate ledger configuration from a YAML file.

    Strict validation ensures no silent misconfigurations: unknown keys are
    rejected at every level.

    Args:
        path: Path to YAML configuration file. Falls back to the
            ``VIDEO_LEDGER_CONFIG`` environment variable, then to defaults.

    Returns:
        Validated LedgerConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    path = path or os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return LedgerConfig()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Ledger config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if raw_config is None:
        return LedgerConfig()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> LedgerConfig:
    """Validate an already-parsed configuration mapping."""
    allowed_top_keys = {'database', 'event_log', 'pricing', 'budgets', 'default_channel_id'}
    _reject_unknown(raw_config, allowed_top_keys, "configuration")

    database = DatabaseConfig(**_section(raw_config, 'database', {'path'}))

    log_data = _section(raw_config, 'event_log', {
        'backend', 'redis_url', 'stream_key', 'group', 'consumer_name', 'start_id',
        'batch_size', 'block_ms', 'backoff_seconds', 'claim_idle_ms', 'claim_interval_seconds',
        'max_deliveries',
    })
    if 'backend' in log_data:
        try:
            log_data['backend'] = LogBackend(str(log_data['backend']).lower())
        except ValueError:
            valid = [b.value for b in LogBackend]
            raise ValueError(f"'event_log.backend' must be one of: {valid}")
    if 'start_id' in log_data:
        log_data['start_id'] = str(log_data['start_id'])
    event_log = EventLogConfig(**log_data)

    pricing_data = raw_config.get('pricing') or {}
    if not isinstance(pricing_data, dict):
        raise ValueError("'pricing' must be a dictionary")
    pricing = {str(key): _parse_price(value, f"pricing.{key}") for key, value in pricing_data.items()}
    for key in pricing:
        provider, sep, unit_type = key.partition(":")
        if not sep or not provider or not unit_type:
            raise ValueError(f"Pricing key '{key}' must look like 'provider:unit_type'")

    budgets = _parse_budgets(raw_config.get('budgets') or {})

    default_channel_id = raw_config.get('default_channel_id', "default")
    if not isinstance(default_channel_id, str) or not default_channel_id:
        raise ValueError("'default_channel_id' must be a non-empty string")

    return LedgerConfig(
        database=database,
        event_log=event_log,
        pricing=pricing,
        budgets=budgets,
        default_channel_id=default_channel_id,
    )


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _section(raw_config: Dict, name: str, allowed: set) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    _reject_unknown(data, allowed, name)
    return dict(data)


def _parse_price(value: Any, path: str) -> PriceOverride:
    """Parse a price given either as a bare number or as a mapping."""
    if isinstance(value, bool):
        raise ValueError(f"'{path}' must be a number or a dictionary")
    if isinstance(value, (int, float)):
        return PriceOverride(price_usd=float(value))
    if not isinstance(value, dict):
        raise ValueError(f"'{path}' must be a number or a dictionary")

    _reject_unknown(value, {'price_usd', 'per_units', 'unit_label'}, path)
    if 'price_usd' not in value:
        raise ValueError(f"Missing required 'price_usd' in {path}")
    price = value['price_usd']
    if not isinstance(price, (int, float)) or isinstance(price, bool):
        raise ValueError(f"'price_usd' in {path} must be a number")

    return PriceOverride(
        price_usd=float(price),
        per_units=int(value['per_units']) if 'per_units' in value else None,
        unit_label=value.get('unit_label'),
    )


def _parse_budgets(data: Dict) -> BudgetConfig:
    if not isinstance(data, dict):
        raise ValueError("'budgets' must be a dictionary")
    _reject_unknown(data, {'period', 'scopes'}, "budgets")

    try:
        period = BudgetPeriod(str(data.get('period', 'month')).lower())
    except ValueError:
        valid = [p.value for p in BudgetPeriod]
        raise ValueError(f"'budgets.period' must be one of: {valid}")

    scopes_data = data.get('scopes') or []
    if not isinstance(scopes_data, list):
        raise ValueError("'budgets.scopes' must be a list")

    scopes = []
    seen = set()
    for index, scope_data in enumerate(scopes_data):
        path = f"budgets.scopes[{index}]"
        if not isinstance(scope_data, dict):
            raise ValueError(f"'{path}' must be a dictionary")
        _reject_unknown(scope_data, {'scope', 'name', 'cap_usd', 'thresholds'}, path)

        try:
            kind = ScopeKind(str(scope_data.get('scope', '')).lower())
        except ValueError:
            valid = [k.value for k in ScopeKind]
            raise ValueError(f"'scope' in {path} must be one of: {valid}")

        if 'cap_usd' not in scope_data:
            raise ValueError(f"Missing required 'cap_usd' in {path}")
        cap = scope_data['cap_usd']
        if not isinstance(cap, (int, float)) or isinstance(cap, bool):
            raise ValueError(f"'cap_usd' in {path} must be a number")

        thresholds = DEFAULT_THRESHOLDS
        if 'thresholds' in scope_data:
            raw_thresholds = scope_data['thresholds']
            if not isinstance(raw_thresholds, list):
                raise ValueError(f"'thresholds' in {path} must be a list")
            thresholds = tuple(parse_threshold(t, path) for t in raw_thresholds)

        scope = BudgetScopeConfig(
            scope=kind,
            name=scope_data.get('name'),
            cap_usd=float(cap),
            thresholds=thresholds,
        )
        if scope.key in seen:
            raise ValueError(f"Duplicate budget scope '{scope.key}'")
        seen.add(scope.key)
        scopes.append(scope)

    return BudgetConfig(period=period, scopes=tuple(scopes))


def parse_threshold(value: Any, path: str = "threshold") -> BudgetThreshold:
    """Parse ``"80%"`` as a percent of the cap and ``25`` as absolute USD."""
    if isinstance(value, str) and value.strip().endswith("%"):
        try:
            percent = float(value.strip()[:-1])
        except ValueError:
            raise ValueError(f"Invalid percent threshold '{value}' in {path}")
        if percent <= 0:
            raise ValueError(f"Thresholds in {path} must be > 0")
        return BudgetThreshold(percent=percent)
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"Invalid threshold '{value}' in {path}")
    try:
        amount = float(value)
    except ValueError:
        raise ValueError(f"Invalid threshold '{value}' in {path}")
    if amount <= 0:
        raise ValueError(f"Thresholds in {path} must be > 0")
    return BudgetThreshold(amount_usd=amount)
