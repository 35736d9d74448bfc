"""调度模块包。

包含调度核心的执行组件：
- Frontier / DistributedFrontier: 任务队列（单进程 / 跨进程共享）
- RetryPolicy: 重试与死信决策
- WorkerPool: 固定大小的工作器池
- LifecycleController: 启动、协作式取消与优雅排空
- Scheduler: 种子调度器
"""

from .cancel import CancelToken
from .distributed import DistributedFrontier
from .frontier import Frontier
from .lifecycle import LifecycleController, LifecycleState, ShutdownReport
from .retry import DeadLetter, RetryAfter, RetryPolicy, classify_error
from .scheduler import Scheduler
from .tasks import DeadLetterReason, EnqueueResult, EnqueueSource, Priority, Task
from .worker import Worker, WorkerPool

__all__ = [
    "CancelToken",
    "DeadLetter",
    "DeadLetterReason",
    "DistributedFrontier",
    "EnqueueResult",
    "EnqueueSource",
    "Frontier",
    "LifecycleController",
    "LifecycleState",
    "Priority",
    "RetryAfter",
    "RetryPolicy",
    "Scheduler",
    "ShutdownReport",
    "Task",
    "Worker",
    "WorkerPool",
    "classify_error",
]
