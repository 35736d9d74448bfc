from prometheus_client import Counter, Gauge, Histogram

# Frontier 入队结果统计
FRONTIER_ENQUEUED = Counter(
    "crawlqueue_frontier_enqueued_total",
    "Total number of frontier admissions by result",
    ["source", "result"],  # source: seed, discovery, retry; result: accepted, rejected_full, ...
)

# Frontier 当前积压（背压）
FRONTIER_SIZE = Gauge(
    "crawlqueue_frontier_size",
    "Current number of tasks queued in the frontier",
    ["state"],  # state: ready, delayed (local); pending, leased (distributed)
)

# 进行中的任务数
IN_FLIGHT = Gauge(
    "crawlqueue_in_flight_tasks",
    "Number of tasks currently leased by a worker",
)

# 活跃 Worker 数量
ACTIVE_WORKERS = Gauge(
    "crawlqueue_active_workers",
    "Number of currently running workers",
)

# 抓取耗时分布
FETCH_DURATION = Histogram(
    "crawlqueue_fetch_duration_seconds",
    "Time spent inside the external fetcher",
    ["status"],  # status: success, transient, permanent, cancelled
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

# 任务最终结果统计
TASK_OUTCOMES = Counter(
    "crawlqueue_task_outcomes_total",
    "Total number of task outcomes",
    ["outcome"],  # outcome: success, retry, dead_letter, abandoned
)

# 重试延迟分布
RETRY_DELAY = Histogram(
    "crawlqueue_retry_delay_seconds",
    "Backoff delay scheduled for retried tasks",
    buckets=(0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 64.0, 128.0),
)

# 死信统计
DEAD_LETTERS = Counter(
    "crawlqueue_dead_letters_total",
    "Total number of dead-lettered tasks",
    ["reason"],  # reason: permanent, exhausted
)

# 外部 sink / extractor 错误统计
COLLABORATOR_ERRORS = Counter(
    "crawlqueue_collaborator_errors_total",
    "Total number of errors raised by external collaborators",
    ["component"],  # component: result_sink, dead_letter_sink, link_extractor
)

# 协调存储错误统计
COORDINATION_ERRORS = Counter(
    "crawlqueue_coordination_errors_total",
    "Total number of coordination store failures",
    ["operation"],
)

# 过期租约导致的重新投递
LEASES_RECLAIMED = Counter(
    "crawlqueue_leases_reclaimed_total",
    "Total number of expired leases made eligible for re-delivery",
)

# 迟到的 ack / nack（租约已失效）
STALE_ACKS = Counter(
    "crawlqueue_stale_acks_total",
    "Total number of acknowledgments ignored because the lease was no longer held",
    ["operation"],  # operation: ack, nack
)

# 事件循环延迟
EVENT_LOOP_LAG = Histogram(
    "crawlqueue_event_loop_lag_seconds",
    "Event loop lag (delay in scheduled wakeup)",
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0),
)
