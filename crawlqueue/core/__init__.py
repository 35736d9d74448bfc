"""核心模块包。

包含调度系统的核心组件：
- config: 应用配置
- container: 依赖注入容器，管理所有外部资源
- initialize: 应用初始化逻辑
- coordination / dedup: 跨进程协调存储与去重
- fetcher / sinks: 外部协作者的参考适配器

本包只导出不依赖调度层的名称。
"""

from .config import Config
from .errors import ConfigError, CoordinationError, CrawlError

__all__ = ["Config", "ConfigError", "CoordinationError", "CrawlError"]
