from prometheus_client import Counter, Gauge, Histogram

# === Common HTTP Metrics ===

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "endpoint", "method", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["service", "endpoint", "method"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
)

service_health_status = Gauge(
    "service_health_status",
    "Current health status of the service (2=healthy, 1=degraded, 0=down)",
    ["service"],
)

tutor_errors_total = Counter(
    "tutor_errors_total",
    "Total errors surfaced by request handlers",
    ["error_type"],
)

# === Skill Graph Metrics ===

tutor_skill_graph_loads_total = Counter(
    "tutor_skill_graph_loads_total",
    "Skill graph load attempts",
    ["status"],  # success, failure
)

# === Adaptive Branching Metrics ===

tutor_branch_decisions_total = Counter(
    "tutor_branch_decisions_total",
    "Branch decisions made, by reason (none = stay on current problem)",
    ["reason"],
)

tutor_branch_selections_total = Counter(
    "tutor_branch_selections_total",
    "Outcomes of prerequisite skill selection",
    ["outcome"],  # selected, no_candidate, alternative_help
)

tutor_stuck_level = Histogram(
    "tutor_stuck_level",
    "Detected learner stuck level per chat turn",
    buckets=[0, 1, 2, 3],
)

# === Response Validation Metrics ===

tutor_validation_violations_total = Counter(
    "tutor_validation_violations_total",
    "Tutor replies rejected for leaking an answer",
    ["violation_type"],
)

tutor_regenerations_total = Counter(
    "tutor_regenerations_total",
    "Tutor replies regenerated with the stricter prompt",
)

tutor_fallbacks_total = Counter(
    "tutor_fallbacks_total",
    "Tutor replies replaced with a Socratic fallback",
    ["cause"],  # still_invalid, regeneration_failed
)

# === Language Model Metrics ===

tutor_llm_calls_total = Counter(
    "tutor_llm_calls_total",
    "Total LLM calls made",
    ["purpose"],
)

tutor_llm_duration_seconds = Histogram(
    "tutor_llm_duration_seconds",
    "LLM call duration in seconds",
    ["purpose"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

tutor_llm_errors_total = Counter(
    "tutor_llm_errors_total",
    "LLM call failures after all retries",
    ["error_type"],
)

# === Session Metrics ===

tutor_session_operations_total = Counter(
    "tutor_session_operations_total",
    "Session state machine operations",
    ["operation"],
)

tutor_active_sessions = Gauge(
    "tutor_active_sessions",
    "Number of session managers holding an in-memory session",
)

tutor_store_writes_total = Counter(
    "tutor_store_writes_total",
    "Session writes to the document store",
    ["policy"],  # immediate, debounced, flush
)

tutor_sessions_abandoned_total = Counter(
    "tutor_sessions_abandoned_total",
    "Sessions marked abandoned",
    ["source"],  # sweep, recovery, decline
)

tutor_proficiency_updates_total = Counter(
    "tutor_proficiency_updates_total",
    "Proficiency record updates",
    ["level"],
)
