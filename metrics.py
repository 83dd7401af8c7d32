from prometheus_client import Counter, Gauge, Histogram

# Node execution counters
NODE_EXECUTION_COUNT = Counter(
    "workflow_node_execution_total",
    "Total number of times a workflow node was executed",
    ["node_name", "status"]
)

# Processing time
NODE_DURATION = Histogram(
    "workflow_node_duration_seconds",
    "Time spent in each workflow node",
    ["node_name"]
)

# Scanner decisions per candidate
SCAN_OUTCOME_COUNT = Counter(
    "scanner_candidates_total",
    "Video candidates inspected by the batch scanner",
    ["outcome"]
)

CURSOR_OFFSET = Gauge(
    "scanner_cursor_offset",
    "Current persisted scan offset"
)

# Which caption strategy produced the result
CAPTION_STRATEGY_COUNT = Counter(
    "caption_strategy_total",
    "Caption resolutions by winning strategy",
    ["strategy"]
)

# Terminal publish failures
PUBLISH_FAILURE_COUNT = Counter(
    "publish_failure_total",
    "Videos recorded as permanently failed",
    ["reason"]
)

STATE_LOAD_ERRORS = Counter(
    "state_load_errors_total",
    "State files that could not be read and were reset to empty",
    ["store"]
)
