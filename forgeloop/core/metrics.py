from __future__ import annotations

from prometheus_client import Counter, Histogram

ENGINE_RUNS_TOTAL = Counter(
    "forgeloop_engine_runs_total",
    "Execution engine invocations grouped by outcome (cache_hit/computed/model_error)",
    labelnames=("outcome", "policy"),
)

MODEL_CALL_LATENCY_SECONDS = Histogram(
    "forgeloop_model_call_latency_seconds",
    "Latency of chat calls made against model collaborators",
    labelnames=("model",),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, float("inf")),
)

TOOL_INVOCATIONS_TOTAL = Counter(
    "forgeloop_tool_invocations_total",
    "Tool invocations grouped by outcome",
    labelnames=("tool", "outcome"),
)

TOOL_LATENCY_SECONDS = Histogram(
    "forgeloop_tool_latency_seconds",
    "Latency for tool invocations",
    labelnames=("tool",),
)

GENERATION_RETRIES_TOTAL = Counter(
    "forgeloop_generation_retries_total",
    "Generation builder retries grouped by reason",
    labelnames=("reason",),
)

GENERATION_OUTCOMES_TOTAL = Counter(
    "forgeloop_generation_outcomes_total",
    "Generation builder terminal outcomes",
    labelnames=("status",),
)

SEARCH_DECISIONS_TOTAL = Counter(
    "forgeloop_search_decisions_total",
    "Search controller decisions (expand/reuse)",
    labelnames=("decision",),
)

ARTIFACT_WRITES_TOTAL = Counter(
    "forgeloop_artifact_writes_total",
    "Artifact store writes grouped by store and outcome",
    labelnames=("store", "outcome"),
)


def record_engine_run(*, outcome: str, policy: str) -> None:
    ENGINE_RUNS_TOTAL.labels(outcome=outcome, policy=policy).inc()


def observe_model_call(*, model: str, latency: float) -> None:
    MODEL_CALL_LATENCY_SECONDS.labels(model=model).observe(max(0.0, latency))


def observe_tool_invocation(*, tool: str, outcome: str, latency: float) -> None:
    TOOL_INVOCATIONS_TOTAL.labels(tool=tool, outcome=outcome).inc()
    TOOL_LATENCY_SECONDS.labels(tool=tool).observe(max(0.0, latency))


def increment_generation_retry(*, reason: str) -> None:
    GENERATION_RETRIES_TOTAL.labels(reason=reason).inc()


def record_generation_outcome(*, status: str) -> None:
    GENERATION_OUTCOMES_TOTAL.labels(status=status).inc()


def record_search_decision(*, decision: str) -> None:
    SEARCH_DECISIONS_TOTAL.labels(decision=decision).inc()


def record_artifact_write(*, store: str, outcome: str) -> None:
    ARTIFACT_WRITES_TOTAL.labels(store=store, outcome=outcome).inc()
