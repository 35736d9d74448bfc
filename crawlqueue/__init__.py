"""crawlqueue: 爬虫任务分发与调度核心。"""

__version__ = "0.1.0"
