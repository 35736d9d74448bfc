"""应用程序配置管理模块。

该模块负责从TOML配置文件中加载调度核心的各项配置，
包括工作器池、重试策略、Frontier、去重、协调存储与生命周期。
支持通过环境变量覆盖配置（例如 RETRY__MAX_ATTEMPTS=5）。
"""

import os
import socket
import tomllib
from pathlib import Path
from typing import Any, Literal
from urllib.parse import quote_plus

from pydantic import BaseModel, Field, RedisDsn, ValidationError, computed_field, model_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .errors import ConfigError

CONFIG_ENV_VAR = "CRAWLQUEUE_CONFIG"


class CrawlerConfig(BaseModel):
    """工作器池与抓取配置模型"""

    worker_count: int = Field(8, gt=0)
    fetch_timeout: float = Field(30.0, gt=0)
    max_depth: int | None = Field(3, ge=0)
    seeds: list[str] = []
    same_host_only: bool = True
    user_agent: str = "crawlqueue/1.0"


class RetryConfig(BaseModel):
    """重试策略配置模型"""

    max_attempts: int = Field(3, ge=0)
    base_backoff: float = Field(1.0, ge=0)
    max_backoff: float = Field(60.0, ge=0)
    jitter: float = Field(0.0, ge=0, le=0.5)

    @model_validator(mode="after")
    def check_backoff_bounds(self) -> "RetryConfig":
        if self.max_backoff < self.base_backoff:
            raise ValueError("max_backoff must be >= base_backoff")
        return self


class FrontierConfig(BaseModel):
    """Frontier 配置模型"""

    capacity: int = Field(10000, ge=0)
    full_policy: Literal["block", "reject"] = "reject"
    ordering: Literal["strict", "round_robin"] = "strict"


class DedupConfig(BaseModel):
    """去重配置模型"""

    backend: Literal["memory", "redis"] = "memory"
    ttl_seconds: int | None = Field(None, gt=0)
    key_prefix: str = "crawlqueue:seen"
    consistency_window_seconds: float = Field(0.0, ge=0)


class RedisConfig(BaseModel):
    """Redis配置模型"""

    host: str = "localhost"
    port: int = 6379
    username: str = ""
    password: str = ""
    db: int = 0


class CoordinationConfig(BaseModel):
    """分布式协调配置模型"""

    enabled: bool = False
    node_id: str = Field(default_factory=lambda: f"{socket.gethostname()}-{os.getpid()}")
    key_prefix: str = "crawlqueue"
    lease_duration: float = Field(60.0, gt=0)
    poll_interval: float = Field(1.0, gt=0)
    on_error: Literal["raise", "pause", "fallback"] = "raise"
    pause_seconds: float = Field(5.0, gt=0)
    pause_attempts: int = Field(3, ge=0)


class LifecycleConfig(BaseModel):
    """生命周期配置模型"""

    grace_period: float = Field(30.0, ge=0)


class RateLimitConfig(BaseModel):
    """请求频率限制配置模型"""

    rps: float = Field(10.0, gt=0)


class SinkConfig(BaseModel):
    """结果输出配置"""

    transport: Literal["log", "redis"] = "log"
    max_len: int = Field(10000, gt=0)
    max_retries: int = Field(3, gt=0)
    retry_backoff_ms: int = Field(200, ge=0)


class MetricsConfig(BaseModel):
    """Prometheus 指标配置"""

    enabled: bool = False
    port: int = 9108
    monitor_interval: float = Field(5.0, gt=0)


class PydanticConfig(BaseSettings):
    """Pydantic总配置模型"""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    frontier: FrontierConfig = Field(default_factory=FrontierConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    coordination: CoordinationConfig = Field(default_factory=CoordinationConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    sink: SinkConfig = Field(default_factory=SinkConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @model_validator(mode="after")
    def check_lease_covers_fetch(self) -> "PydanticConfig":
        if self.coordination.enabled and self.coordination.lease_duration <= self.crawler.fetch_timeout:
            raise ValueError("coordination.lease_duration must be greater than crawler.fetch_timeout")
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    @computed_field
    @property
    def redis_url(self) -> RedisDsn:
        """生成Redis连接URL"""
        if self.redis.username and self.redis.password:
            return RedisDsn(
                f"redis://{quote_plus(self.redis.username)}:{quote_plus(self.redis.password)}"
                f"@{self.redis.host}:{self.redis.port}/{self.redis.db}"
            )
        if self.redis.password:
            return RedisDsn(
                f"redis://:{quote_plus(self.redis.password)}@{self.redis.host}:{self.redis.port}/{self.redis.db}"
            )
        return RedisDsn(f"redis://{self.redis.host}:{self.redis.port}/{self.redis.db}")


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """TOML 配置文件加载源

    优先读取环境变量 CRAWLQUEUE_CONFIG 指向的文件，否则读取项目根目录的 config.toml。
    """

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        raise NotImplementedError

    def __call__(self) -> dict[str, Any]:
        env_path = os.getenv(CONFIG_ENV_VAR)
        config_file = Path(env_path) if env_path else Path(__file__).resolve().parent.parent.parent / "config.toml"
        if not config_file.exists():
            return {}
        try:
            with config_file.open("rb") as f:
                return tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {config_file}: {e}") from e


class Config:
    """应用程序配置类。

    负责加载和管理调度核心的所有配置项，并以扁平属性对外暴露
    （worker_count、max_attempts、base_backoff、max_backoff、frontier_capacity、
    lease_duration、grace_period 等）。

    Attributes:
        pydantic_config (PydanticConfig): Pydantic应用配置模型
        mode (str): 运行模式('local'或'distributed')
    """

    pydantic_config: PydanticConfig
    mode: Literal["local", "distributed"]

    def __init__(self, mode: Literal["local", "distributed"] | None = None, **overrides: Any):
        """初始化配置对象。

        配置加载优先级：
        1. 显式传入的 overrides（按配置段嵌套，例如 retry={"max_attempts": 5}）
        2. 环境变量 (例如 RETRY__MAX_ATTEMPTS)
        3. config.toml 配置文件

        Args:
            mode: 运行模式。未提供时由 coordination.enabled 决定。

        Raises:
            ConfigError: 配置校验失败。
        """
        try:
            self.pydantic_config = PydanticConfig(**overrides)
        except ValidationError as e:
            raise ConfigError(f"配置验证失败: {e}") from e

        if mode is None:
            mode = "distributed" if self.pydantic_config.coordination.enabled else "local"
        self.mode = mode

    # crawler
    @property
    def worker_count(self) -> int:
        return self.pydantic_config.crawler.worker_count

    @property
    def fetch_timeout(self) -> float:
        return self.pydantic_config.crawler.fetch_timeout

    @property
    def max_depth(self) -> int | None:
        return self.pydantic_config.crawler.max_depth

    @property
    def seeds(self) -> list[str]:
        return self.pydantic_config.crawler.seeds

    @property
    def same_host_only(self) -> bool:
        return self.pydantic_config.crawler.same_host_only

    @property
    def user_agent(self) -> str:
        return self.pydantic_config.crawler.user_agent

    # retry
    @property
    def max_attempts(self) -> int:
        return self.pydantic_config.retry.max_attempts

    @property
    def base_backoff(self) -> float:
        return self.pydantic_config.retry.base_backoff

    @property
    def max_backoff(self) -> float:
        return self.pydantic_config.retry.max_backoff

    @property
    def jitter(self) -> float:
        return self.pydantic_config.retry.jitter

    # frontier
    @property
    def frontier_capacity(self) -> int:
        return self.pydantic_config.frontier.capacity

    @property
    def full_policy(self) -> Literal["block", "reject"]:
        return self.pydantic_config.frontier.full_policy

    @property
    def ordering(self) -> Literal["strict", "round_robin"]:
        return self.pydantic_config.frontier.ordering

    # dedup
    @property
    def dedup_backend(self) -> Literal["memory", "redis"]:
        return self.pydantic_config.dedup.backend

    @property
    def dedup_ttl_seconds(self) -> int | None:
        return self.pydantic_config.dedup.ttl_seconds

    @property
    def dedup_key_prefix(self) -> str:
        return self.pydantic_config.dedup.key_prefix

    @property
    def consistency_window(self) -> float:
        return self.pydantic_config.dedup.consistency_window_seconds

    # redis
    @property
    def redis_url(self) -> str:
        return str(self.pydantic_config.redis_url)

    # coordination
    @property
    def coordination_config(self) -> CoordinationConfig:
        return self.pydantic_config.coordination

    @property
    def node_id(self) -> str:
        return self.pydantic_config.coordination.node_id

    @property
    def lease_duration(self) -> float:
        return self.pydantic_config.coordination.lease_duration

    @property
    def poll_interval(self) -> float:
        return self.pydantic_config.coordination.poll_interval

    @property
    def on_coordination_error(self) -> Literal["raise", "pause", "fallback"]:
        return self.pydantic_config.coordination.on_error

    # lifecycle
    @property
    def grace_period(self) -> float:
        return self.pydantic_config.lifecycle.grace_period

    # rate limit
    @property
    def rps_limit(self) -> float:
        return self.pydantic_config.rate_limit.rps

    # sink
    @property
    def sink_config(self) -> SinkConfig:
        return self.pydantic_config.sink

    # metrics
    @property
    def metrics_enabled(self) -> bool:
        return self.pydantic_config.metrics.enabled

    @property
    def metrics_port(self) -> int:
        return self.pydantic_config.metrics.port

    @property
    def monitor_interval(self) -> float:
        return self.pydantic_config.metrics.monitor_interval

    @property
    def uses_redis(self) -> bool:
        return (
            self.mode == "distributed"
            or self.dedup_backend == "redis"
            or self.pydantic_config.sink.transport == "redis"
        )
