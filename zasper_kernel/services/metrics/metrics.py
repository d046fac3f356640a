from prometheus_client import Counter, Histogram

KERNEL_MESSAGES_RECEIVED_TOTAL = Counter(
    "kernel_messages_received_total",
    "counter for decoded shell messages labeled by msg_type",
    ["msg_type"],
)

KERNEL_MESSAGES_REJECTED_TOTAL = Counter(
    "kernel_messages_rejected_total",
    "counter for shell messages dropped before dispatch labeled by reason",
    ["reason"],
)

KERNEL_EXECUTIONS_TOTAL = Counter(
    "kernel_executions_total",
    "counter for execute requests labeled by reply status",
    ["status"],
)

KERNEL_EXECUTION_DURATION_SECONDS = Histogram(
    "kernel_execution_duration_seconds",
    "duration in seconds of code evaluation",
)
