from prometheus_client import Counter

duty_ticks = Counter(
    "jobwarden_duty_ticks_total",
    "Duty firings by outcome",
    labelnames=["duty", "outcome"],
)
launches = Counter(
    "jobwarden_launches_total",
    "Launch attempts by result",
    labelnames=["kind", "result"],
)
transitions = Counter(
    "jobwarden_transitions_total",
    "Lifecycle transitions written",
    labelnames=["state"],
)
sessions_killed = Counter("jobwarden_sessions_killed_total", "Sessions killed on timeout")
