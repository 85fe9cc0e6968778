"""Configuration dataclasses and ``.toolloop.yml`` loading.

All durations are in seconds. Defaults are resolved once, at
construction; nothing reads configuration lazily during a run.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, fields
from enum import StrEnum
from pathlib import Path
from typing import Any

from toolloop.errors import ConfigurationError

CONFIG_FILENAME = ".toolloop.yml"


class CompactionStrategyName(StrEnum):
    SLIDING_WINDOW = "sliding_window"
    SEMANTIC_COMPRESSION = "semantic_compression"
    HIERARCHICAL = "hierarchical"
    IMPORTANCE_BASED = "importance_based"


def _update_scalars(config: Any, data: dict[str, Any]) -> None:
    """Copy known scalar keys from ``data`` onto a config dataclass, coercing types."""
    for f in fields(config):
        if f.name not in data:
            continue
        current = getattr(config, f.name)
        value = data[f.name]
        if isinstance(current, bool):
            setattr(config, f.name, bool(value))
        elif isinstance(current, int) and not isinstance(current, bool):
            setattr(config, f.name, int(value))
        elif isinstance(current, float):
            setattr(config, f.name, float(value))
        elif isinstance(current, str) or current is None:
            setattr(config, f.name, value)


@dataclass
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ConfigurationError("retry.max_retries must be >= 0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ConfigurationError("retry.jitter must be within [0, 1]")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("retry delays must be >= 0")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryConfig:
        config = cls()
        _update_scalars(config, data)
        config.__post_init__()
        return config


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker thresholds.

    ``failure_filter`` decides whether an error counts towards opening the
    circuit; errors it rejects are neither successes nor failures.
    ``on_state_change`` is called with ``(old_state, new_state)``.
    """

    failure_threshold: int = 5
    reset_timeout: float = 30.0
    success_threshold: int = 2
    failure_filter: Callable[[BaseException], bool] | None = None
    on_state_change: Callable[[Any, Any], None] | None = None

    def __post_init__(self) -> None:
        if self.failure_threshold < 1 or self.success_threshold < 1:
            raise ConfigurationError("circuit breaker thresholds must be >= 1")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CircuitBreakerConfig:
        config = cls()
        _update_scalars(config, data)
        config.__post_init__()
        return config


@dataclass
class BulkheadConfig:
    max_concurrent: int = 10
    max_queue: int = 100
    queue_timeout: float = 30.0

    def __post_init__(self) -> None:
        if self.max_concurrent < 1:
            raise ConfigurationError("bulkhead.max_concurrent must be >= 1")
        if self.max_queue < 0:
            raise ConfigurationError("bulkhead.max_queue must be >= 0")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BulkheadConfig:
        config = cls()
        _update_scalars(config, data)
        config.__post_init__()
        return config


@dataclass
class ResilienceConfig:
    retry: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    bulkhead: BulkheadConfig = field(default_factory=BulkheadConfig)
    dedup_ttl: float = 5.0
    deduplicate: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResilienceConfig:
        config = cls()
        _update_scalars(config, data)
        if "retry" in data:
            config.retry = RetryConfig.from_dict(data["retry"] or {})
        if "circuit_breaker" in data:
            config.circuit_breaker = CircuitBreakerConfig.from_dict(data["circuit_breaker"] or {})
        if "bulkhead" in data:
            config.bulkhead = BulkheadConfig.from_dict(data["bulkhead"] or {})
        return config


@dataclass
class CompactionConfig:
    """Token budget for the request view sent to the backend.

    The usable budget is ``max_tokens - reserve_tokens``; the reserve is
    left for the backend's reply.
    """

    enabled: bool = True
    strategy: CompactionStrategyName = CompactionStrategyName.SLIDING_WINDOW
    max_tokens: int = 8000
    reserve_tokens: int = 2000
    min_messages_before_compaction: int = 10
    preserve_recent_count: int = 5
    tokenizer: str = "heuristic"
    summarize_dropped: bool = False

    def __post_init__(self) -> None:
        self.strategy = CompactionStrategyName(self.strategy)
        if self.tokenizer not in ("heuristic", "tiktoken"):
            raise ConfigurationError(f"Unknown tokenizer: {self.tokenizer}")
        if self.reserve_tokens >= self.max_tokens:
            raise ConfigurationError("compaction.reserve_tokens must be below max_tokens")
        if self.preserve_recent_count < 0:
            raise ConfigurationError("compaction.preserve_recent_count must be >= 0")

    @property
    def budget(self) -> int:
        return self.max_tokens - self.reserve_tokens

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompactionConfig:
        config = cls()
        _update_scalars(config, data)
        if "strategy" in data:
            try:
                config.strategy = CompactionStrategyName(data["strategy"])
            except ValueError as e:
                raise ConfigurationError(f"Unknown compaction strategy: {data['strategy']}") from e
        config.__post_init__()
        return config


@dataclass
class AgentConfig:
    """Settings for one ``AgentExecutionLoop``."""

    model_name: str = "gpt-4o-mini"
    system_prompt: str | None = None
    max_iterations: int = 10
    temperature: float | None = None
    max_tokens: int | None = None
    tool_timeout: float = 30.0
    call_timeout: float = 60.0
    parallel_tools: bool = False
    compaction: CompactionConfig = field(default_factory=CompactionConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ConfigurationError("max_iterations must be >= 1")
        if self.tool_timeout <= 0 or self.call_timeout <= 0:
            raise ConfigurationError("timeouts must be positive")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentConfig:
        """Create config from a dictionary (e.g. from .toolloop.yml)."""
        config = cls()
        _update_scalars(config, data)
        if "model" in data:
            config.model_name = str(data["model"])
        if "temperature" in data and data["temperature"] is not None:
            config.temperature = float(data["temperature"])
        if "max_tokens" in data and data["max_tokens"] is not None:
            config.max_tokens = int(data["max_tokens"])
        if "compaction" in data:
            config.compaction = CompactionConfig.from_dict(data["compaction"] or {})
        if "resilience" in data:
            config.resilience = ResilienceConfig.from_dict(data["resilience"] or {})
        config.__post_init__()
        return config


def load_config(cwd: str) -> dict[str, Any] | None:
    """Load config from .toolloop.yml if it exists, else return None."""
    import yaml

    config_path = Path(cwd) / CONFIG_FILENAME
    if not config_path.exists():
        return None
    with config_path.open() as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else None


def load_agent_config(cwd: str, **overrides: Any) -> AgentConfig:
    """Build an ``AgentConfig`` from .toolloop.yml, then apply non-None overrides."""
    data = load_config(cwd) or {}
    data.update({k: v for k, v in overrides.items() if v is not None})
    return AgentConfig.from_dict(data)
