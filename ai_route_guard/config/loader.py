"""
Configuration management and loading.

Reads the router's YAML configuration with strict validation: unknown keys
are rejected and every value is range-checked, so a typo can never silently
route premium-only work to a cheap backend.
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from ai_route_guard.core.complexity import DEFAULT_HIGH_QUALITY_TASK_TYPES
from ai_route_guard.core.guardrails import (
    DEFAULT_KIND_FLOORS,
    GuardrailPolicy,
    KindFloorRule,
)
from ai_route_guard.core.pricing import BackendPricing
from ai_route_guard.core.types import BackendKind, ComplexityLevel, Objective

BACKEND_PROTOCOLS = ("openai", "openai-compatible", "ollama", "custom")
PROJECTION_ESTIMATORS = ("linear-day", "elapsed-time")


@dataclass(frozen=True)
class BackendConfig:
    """One configured inference backend."""
    id: str
    name: str
    kind: BackendKind
    protocol: str
    endpoint: str
    model: Optional[str] = None
    api_key_env: Optional[str] = None
    cost_per_call: float = 0.0
    pricing: Optional[BackendPricing] = None

    def __post_init__(self):
        if self.protocol not in BACKEND_PROTOCOLS:
            raise ValueError(f"protocol must be one of: {list(BACKEND_PROTOCOLS)}")
        if self.cost_per_call < 0:
            raise ValueError("cost_per_call cannot be negative")

    @property
    def credential(self) -> Optional[str]:
        """Resolve the API key from the configured environment variable."""
        if not self.api_key_env:
            return None
        return os.environ.get(self.api_key_env)


@dataclass(frozen=True)
class BudgetConfig:
    """Monthly budget and alert thresholds (percent of budget)."""
    monthly: float = 100.0
    warn_threshold: float = 80.0
    critical_threshold: float = 95.0
    alert_cooldown_minutes: float = 60.0
    check_interval_minutes: float = 5.0
    projection: str = "linear-day"
    alerts_enabled: bool = True

    def __post_init__(self):
        if self.monthly <= 0:
            raise ValueError("monthly budget must be > 0")
        if not 0 < self.warn_threshold < self.critical_threshold <= 100:
            raise ValueError("thresholds must satisfy 0 < warn_threshold < critical_threshold <= 100")
        if self.alert_cooldown_minutes < 0:
            raise ValueError("alert_cooldown_minutes cannot be negative")
        if self.check_interval_minutes <= 0:
            raise ValueError("check_interval_minutes must be > 0")
        if self.projection not in PROJECTION_ESTIMATORS:
            raise ValueError(f"projection must be one of: {list(PROJECTION_ESTIMATORS)}")


@dataclass(frozen=True)
class ObjectiveConfig:
    """Objective used at startup and how often the optimizer revisits it."""
    default: Objective = Objective.BALANCED
    optimizer_interval_minutes: float = 60.0
    auto_optimize: bool = True

    def __post_init__(self):
        if self.optimizer_interval_minutes <= 0:
            raise ValueError("optimizer_interval_minutes must be > 0")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff schedule and sweep settings for the retry queue."""
    initial_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 600.0
    max_attempts: int = 3
    sweep_interval_minutes: float = 5.0
    sweep_batch_size: int = 10
    cleanup_after_days: int = 30

    def __post_init__(self):
        if self.initial_delay_seconds <= 0:
            raise ValueError("initial_delay_seconds must be > 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")
        if self.max_delay_seconds < self.initial_delay_seconds:
            raise ValueError("max_delay_seconds must be >= initial_delay_seconds")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.sweep_interval_minutes <= 0:
            raise ValueError("sweep_interval_minutes must be > 0")
        if self.sweep_batch_size < 1:
            raise ValueError("sweep_batch_size must be >= 1")


@dataclass(frozen=True)
class HealthConfig:
    """Probe schedule and rolling-window settings."""
    probe_interval_minutes: float = 5.0
    probe_timeout_seconds: float = 10.0
    window_size: int = 100
    degraded_below: Optional[float] = None
    degraded_min_samples: int = 10

    def __post_init__(self):
        if self.probe_interval_minutes <= 0:
            raise ValueError("probe_interval_minutes must be > 0")
        if self.probe_timeout_seconds <= 0:
            raise ValueError("probe_timeout_seconds must be > 0")
        if self.window_size < 1:
            raise ValueError("window_size must be >= 1")
        if self.degraded_below is not None and not 0 < self.degraded_below <= 100:
            raise ValueError("degraded_below must be within (0, 100]")


@dataclass(frozen=True)
class DispatchConfig:
    """Timeouts and worker pool size for dispatch."""
    attempt_timeout_seconds: float = 20.0
    request_timeout_seconds: float = 60.0
    max_workers: int = 8

    def __post_init__(self):
        if self.attempt_timeout_seconds <= 0:
            raise ValueError("attempt_timeout_seconds must be > 0")
        # Each attempt must leave room for failover before the caller gives up
        if self.attempt_timeout_seconds >= self.request_timeout_seconds:
            raise ValueError("attempt_timeout_seconds must be shorter than request_timeout_seconds")
        if self.max_workers < 1:
            raise ValueError("max_workers must be >= 1")


@dataclass(frozen=True)
class LedgerConfig:
    retention_days: int = 90
    retention_interval_hours: float = 24.0

    def __post_init__(self):
        if self.retention_days < 1:
            raise ValueError("retention_days must be >= 1")
        if self.retention_interval_hours <= 0:
            raise ValueError("retention_interval_hours must be > 0")


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = False
    ttl_seconds: float = 3600.0
    max_entries: int = 1000

    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if self.max_entries < 1:
            raise ValueError("max_entries must be >= 1")


@dataclass(frozen=True)
class AlertsConfig:
    webhook_url: Optional[str] = None
    timeout_seconds: float = 5.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "INFO"
    json: bool = False


@dataclass(frozen=True)
class RouterConfig:
    """Complete router configuration."""
    premium_backend: str
    backends: Tuple[BackendConfig, ...] = ()
    database_path: str = "ai_route_guard.db"
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    objective: ObjectiveConfig = field(default_factory=ObjectiveConfig)
    guardrails: GuardrailPolicy = field(default_factory=GuardrailPolicy)
    retry: RetryConfig = field(default_factory=RetryConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    alerts: AlertsConfig = field(default_factory=AlertsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def get_backend(self, backend_id: str) -> Optional[BackendConfig]:
        for backend in self.backends:
            if backend.id == backend_id:
                return backend
        return None


def default_config(database_path: str = "ai_route_guard.db") -> RouterConfig:
    """Configuration with every default and no backends."""
    return RouterConfig(premium_backend="premium", database_path=database_path)


def load_config(path: str) -> RouterConfig:
    """Load and validate router configuration from a YAML file.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated RouterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Router config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    return parse_config(raw_config)


def parse_config(raw_config: Dict[str, Any]) -> RouterConfig:
    """Validate an already-parsed configuration mapping."""
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {
        'database', 'logging', 'premium_backend', 'backends', 'budget',
        'objective', 'guardrails', 'retry', 'health', 'dispatch', 'ledger',
        'cache', 'alerts',
    }
    _reject_unknown(raw_config, allowed_top_keys, "configuration")

    if 'premium_backend' not in raw_config:
        raise ValueError("Missing required 'premium_backend'")
    premium_backend = raw_config['premium_backend']
    if not isinstance(premium_backend, str) or not premium_backend.strip():
        raise ValueError("'premium_backend' must be a non-empty string")

    if 'backends' not in raw_config:
        raise ValueError("Missing required 'backends' section")
    backends_data = raw_config['backends']
    if not isinstance(backends_data, list) or not backends_data:
        raise ValueError("'backends' must be a non-empty list")

    backends = []
    seen_ids = set()
    for index, backend_data in enumerate(backends_data):
        backend = _parse_backend(backend_data, f"backends[{index}]")
        if backend.id in seen_ids:
            raise ValueError(f"Duplicate backend id: {backend.id}")
        seen_ids.add(backend.id)
        backends.append(backend)

    premium = next((b for b in backends if b.id == premium_backend), None)
    if premium is None:
        raise ValueError(f"premium_backend '{premium_backend}' is not a configured backend")
    if premium.kind != BackendKind.PREMIUM:
        raise ValueError(f"premium_backend '{premium_backend}' must have kind 'premium'")

    database = _section(raw_config, 'database', {'path'})
    logging_section = _section(raw_config, 'logging', {'level', 'json'})
    alerts = _section(raw_config, 'alerts', {'webhook_url', 'timeout_seconds'})

    return RouterConfig(
        premium_backend=premium_backend,
        backends=tuple(backends),
        database_path=str(database.get('path', "ai_route_guard.db")),
        budget=_parse_budget(_section(raw_config, 'budget', {
            'monthly', 'warn_threshold', 'critical_threshold',
            'alert_cooldown_minutes', 'check_interval_minutes', 'projection', 'alerts_enabled',
        })),
        objective=_parse_objective(_section(raw_config, 'objective', {
            'default', 'optimizer_interval_minutes', 'auto_optimize',
        })),
        guardrails=_parse_guardrails(_section(raw_config, 'guardrails', {
            'high_quality_task_types', 'kind_floors',
        })),
        retry=RetryConfig(**_numbers(_section(raw_config, 'retry', {
            'initial_delay_seconds', 'backoff_multiplier', 'max_delay_seconds',
            'max_attempts', 'sweep_interval_minutes', 'sweep_batch_size',
            'cleanup_after_days',
        }), "retry", integers={'max_attempts', 'sweep_batch_size', 'cleanup_after_days'})),
        health=HealthConfig(**_numbers(_section(raw_config, 'health', {
            'probe_interval_minutes', 'probe_timeout_seconds', 'window_size',
            'degraded_below', 'degraded_min_samples',
        }), "health", integers={'window_size', 'degraded_min_samples'})),
        dispatch=DispatchConfig(**_numbers(_section(raw_config, 'dispatch', {
            'attempt_timeout_seconds', 'request_timeout_seconds', 'max_workers',
        }), "dispatch", integers={'max_workers'})),
        ledger=LedgerConfig(**_numbers(_section(raw_config, 'ledger', {
            'retention_days', 'retention_interval_hours',
        }), "ledger", integers={'retention_days'})),
        cache=_parse_cache(_section(raw_config, 'cache', {'enabled', 'ttl_seconds', 'max_entries'})),
        alerts=AlertsConfig(
            webhook_url=alerts.get('webhook_url'),
            timeout_seconds=float(alerts.get('timeout_seconds', 5.0)),
        ),
        logging=LoggingConfig(
            level=str(logging_section.get('level', "INFO")).upper(),
            json=bool(logging_section.get('json', False)),
        ),
    )


def _reject_unknown(data: Dict[str, Any], allowed: set, path: str) -> None:
    unknown_keys = set(data.keys()) - allowed
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")


def _section(raw_config: Dict[str, Any], name: str, allowed: set) -> Dict[str, Any]:
    data = raw_config.get(name) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    _reject_unknown(data, allowed, name)
    return data


def _numbers(data: Dict[str, Any], path: str, integers: set = frozenset()) -> Dict[str, Any]:
    """Type-check numeric settings, keeping None for optional ones."""
    parsed = {}
    for key, value in data.items():
        if value is None:
            parsed[key] = None
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"'{key}' in {path} must be a number")
        if key in integers:
            if int(value) != value:
                raise ValueError(f"'{key}' in {path} must be an integer")
            parsed[key] = int(value)
        else:
            parsed[key] = float(value)
    return parsed


def _enum_value(enum_type, value: Any, key: str, path: str):
    if not isinstance(value, str):
        raise ValueError(f"'{key}' in {path} must be a string")
    try:
        return enum_type(value.lower())
    except ValueError:
        valid = [member.value for member in enum_type]
        raise ValueError(f"'{key}' in {path} must be one of: {valid}")


def _parse_backend(data: Any, path: str) -> BackendConfig:
    """Parse and validate a single backend entry.

    Args:
        data: Backend configuration data
        path: Path for error messages

    Returns:
        Validated BackendConfig

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {
        'id', 'name', 'kind', 'protocol', 'endpoint', 'model', 'api_key_env',
        'cost_per_call', 'pricing',
    }
    _reject_unknown(data, allowed_keys, path)

    for required in ('id', 'kind', 'protocol', 'endpoint'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {path}")

    backend_id = data['id']
    if not isinstance(backend_id, str) or not backend_id.strip():
        raise ValueError(f"'id' in {path} must be a non-empty string")

    cost = data.get('cost_per_call', 0.0)
    if isinstance(cost, bool) or not isinstance(cost, (int, float)) or cost < 0:
        raise ValueError(f"'cost_per_call' in {path} must be >= 0")

    pricing = None
    if data.get('pricing') is not None:
        pricing_data = data['pricing']
        if not isinstance(pricing_data, dict):
            raise ValueError(f"'pricing' in {path} must be a dictionary")
        _reject_unknown(pricing_data, {'prompt_cost_per_1k', 'completion_cost_per_1k'}, f"{path}.pricing")
        try:
            pricing = BackendPricing(
                prompt_cost_per_1k=Decimal(str(pricing_data['prompt_cost_per_1k'])),
                completion_cost_per_1k=Decimal(str(pricing_data['completion_cost_per_1k'])),
            )
        except KeyError as e:
            raise ValueError(f"Missing required {e} in {path}.pricing")

    protocol = data['protocol']
    if protocol not in BACKEND_PROTOCOLS:
        raise ValueError(f"'protocol' in {path} must be one of: {list(BACKEND_PROTOCOLS)}")

    return BackendConfig(
        id=backend_id,
        name=str(data.get('name', backend_id)),
        kind=_enum_value(BackendKind, data['kind'], 'kind', path),
        protocol=protocol,
        endpoint=str(data['endpoint']),
        model=data.get('model'),
        api_key_env=data.get('api_key_env'),
        cost_per_call=float(cost),
        pricing=pricing,
    )


def _parse_budget(data: Dict[str, Any]) -> BudgetConfig:
    numbers = _numbers(
        {k: v for k, v in data.items() if k not in ('projection', 'alerts_enabled')},
        "budget",
    )
    return BudgetConfig(
        projection=str(data.get('projection', "linear-day")),
        alerts_enabled=bool(data.get('alerts_enabled', True)),
        **numbers,
    )


def _parse_objective(data: Dict[str, Any]) -> ObjectiveConfig:
    kwargs: Dict[str, Any] = {}
    if 'default' in data:
        kwargs['default'] = _enum_value(Objective, data['default'], 'default', "objective")
    if 'optimizer_interval_minutes' in data:
        kwargs.update(_numbers({'optimizer_interval_minutes': data['optimizer_interval_minutes']}, "objective"))
    if 'auto_optimize' in data:
        kwargs['auto_optimize'] = bool(data['auto_optimize'])
    return ObjectiveConfig(**kwargs)


def _parse_cache(data: Dict[str, Any]) -> CacheConfig:
    numbers = _numbers(
        {k: v for k, v in data.items() if k != 'enabled'},
        "cache",
        integers={'max_entries'},
    )
    return CacheConfig(enabled=bool(data.get('enabled', False)), **numbers)


def _parse_guardrails(data: Dict[str, Any]) -> GuardrailPolicy:
    """Parse the guardrail policy, validating each rule once at load time."""
    task_types = data.get('high_quality_task_types', sorted(DEFAULT_HIGH_QUALITY_TASK_TYPES))
    if not isinstance(task_types, list) or not all(isinstance(t, str) for t in task_types):
        raise ValueError("'high_quality_task_types' in guardrails must be a list of strings")

    if 'kind_floors' not in data:
        floors = DEFAULT_KIND_FLOORS
    else:
        floors_data = data['kind_floors'] or []
        if not isinstance(floors_data, list):
            raise ValueError("'kind_floors' in guardrails must be a list")
        floors = tuple(
            _parse_kind_floor(rule, f"guardrails.kind_floors[{index}]")
            for index, rule in enumerate(floors_data)
        )

    return GuardrailPolicy(
        high_quality_task_types=frozenset(task_types),
        kind_floors=floors,
    )


def _parse_kind_floor(data: Any, path: str) -> KindFloorRule:
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")
    _reject_unknown(data, {'name', 'objectives', 'levels', 'minimum_kind'}, path)

    for required in ('name', 'objectives', 'levels', 'minimum_kind'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {path}")

    if not isinstance(data['objectives'], list) or not isinstance(data['levels'], list):
        raise ValueError(f"'objectives' and 'levels' in {path} must be lists")

    return KindFloorRule(
        name=str(data['name']),
        objectives=frozenset(_enum_value(Objective, o, 'objectives', path) for o in data['objectives']),
        levels=frozenset(_enum_value(ComplexityLevel, lv, 'levels', path) for lv in data['levels']),
        minimum_kind=_enum_value(BackendKind, data['minimum_kind'], 'minimum_kind', path),
    )
