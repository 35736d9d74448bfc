"""依赖注入容器模块。

该模块实现了应用程序的依赖注入容器，负责统一管理和初始化
各种外部资源和服务，包括 Redis 客户端、限流器、Fetcher、去重器、
协调存储适配器与结果输出。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import redis.asyncio as redis
from aiolimiter import AsyncLimiter
from loguru import logger

from .coordination import RedisCoordinationAdapter
from .dedup import MemoryDeduplicator, RedisDeduplicator
from .fetcher import AiohttpFetcher, HrefLinkExtractor
from .sinks import LoggingDeadLetterSink, LoggingResultSink, RedisStreamsSink

if TYPE_CHECKING:
    from .config import Config
    from .coordination import CoordinationAdapter
    from .dedup import Deduplicator
    from .fetcher import LinkExtractor
    from .sinks import DeadLetterSink, ResultSink


class Container:
    """依赖注入容器。

    负责管理应用程序的所有外部依赖，提供统一的资源初始化和清理接口。

    Attributes:
        config (Config): 应用程序配置对象
        limiter (AsyncLimiter): 漏桶算法实现的异步限流器
        redis_client (redis.Redis): Redis异步客户端，仅在需要时创建
        fetcher (AiohttpFetcher): 共享 HTTP 抓取器
        link_extractor (LinkExtractor): 链接提取器
        deduplicator (Deduplicator): 去重器
        coordination (CoordinationAdapter): 协调存储适配器，仅分布式模式
        result_sink (ResultSink): 成功结果输出
        dead_letter_sink (DeadLetterSink): 死信输出
    """

    def __init__(self, config: Config):
        """初始化容器。

        Args:
            config: 应用程序的配置对象。
        """
        self.config = config

        self.limiter: AsyncLimiter | None = None
        self.redis_client: redis.Redis | None = None
        self.fetcher: AiohttpFetcher | None = None
        self.link_extractor: LinkExtractor | None = None
        self.deduplicator: Deduplicator | None = None
        self.coordination: CoordinationAdapter | None = None
        self.result_sink: ResultSink | None = None
        self.dead_letter_sink: DeadLetterSink | None = None

    async def setup(self):
        """异步初始化容器资源。

        依次初始化以下资源：
        1. AsyncLimiter - 用于全局请求限流
        2. Redis异步客户端连接（分布式模式、Redis 去重或 Redis 输出时）
        3. 去重器与协调存储适配器
        4. AiohttpFetcher 与链接提取器
        5. 结果与死信输出

        如果任何步骤失败，会自动调用teardown()清理已初始化的资源。

        Raises:
            Exception: 当资源初始化失败时抛出异常。
        """
        logger.info("Initializing container resources...")
        config = self.config
        try:
            self.limiter = AsyncLimiter(1, time_period=1 / config.rps_limit)
            logger.info("AioLimiter initialized with a rate of {} RPS.", config.rps_limit)

            if config.uses_redis:
                self.redis_client = redis.from_url(config.redis_url, decode_responses=True)
                await self.redis_client.ping()  # type: ignore
                logger.info("Redis client connected successfully.")

            if config.dedup_backend == "redis" or config.mode == "distributed":
                assert self.redis_client is not None
                self.deduplicator = RedisDeduplicator(
                    self.redis_client,
                    prefix=config.dedup_key_prefix,
                    ttl=config.dedup_ttl_seconds,
                    consistency_window=config.consistency_window,
                )
            else:
                self.deduplicator = MemoryDeduplicator(ttl=config.dedup_ttl_seconds)
            logger.info("Deduplicator ready: {}", type(self.deduplicator).__name__)

            if config.mode == "distributed":
                assert self.redis_client is not None
                self.coordination = RedisCoordinationAdapter(
                    self.redis_client, prefix=config.coordination_config.key_prefix
                )
                logger.info("Redis coordination adapter ready (node_id={}).", config.node_id)

            self.fetcher = await AiohttpFetcher(
                limiter=self.limiter,
                headers={"User-Agent": config.user_agent},
            ).__aenter__()
            self.link_extractor = HrefLinkExtractor(same_host=config.same_host_only)
            logger.info("Aiohttp fetcher started.")

            if config.sink_config.transport == "redis":
                assert self.redis_client is not None
                sink = RedisStreamsSink(
                    self.redis_client,
                    prefix=config.coordination_config.key_prefix,
                    maxlen=config.sink_config.max_len,
                    max_retries=config.sink_config.max_retries,
                    retry_backoff_ms=config.sink_config.retry_backoff_ms,
                )
                self.result_sink = sink
                self.dead_letter_sink = sink
            else:
                self.result_sink = LoggingResultSink()
                self.dead_letter_sink = LoggingDeadLetterSink()

            logger.info("Container resources initialized successfully.")

        except Exception as e:
            logger.exception("Failed to initialize container resources: {}", e)
            await self.teardown()
            raise

    async def teardown(self):
        """异步关闭并清理所有资源。

        按相反顺序安全关闭所有已初始化的资源：
        1. AiohttpFetcher
        2. Redis客户端连接

        该方法是幂等的，可以安全地多次调用。
        """
        logger.info("Tearing down container resources...")

        if self.fetcher:
            await self.fetcher.close()
            self.fetcher = None
            logger.info("Aiohttp fetcher closed.")

        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("Redis client closed.")

        logger.info("Container resources torn down successfully.")
