"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNTER = Counter(
	"umpsa_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"umpsa_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

WORKFLOW_RECORDS_CREATED_TOTAL = Counter(
	"umpsa_workflow_records_created_total",
	"Workflow records created",
	["kind"],
)

WORKFLOW_TRANSITIONS_TOTAL = Counter(
	"umpsa_workflow_transitions_total",
	"Committed workflow transitions",
	["kind", "action"],
)

WORKFLOW_REJECTED_TOTAL = Counter(
	"umpsa_workflow_rejected_total",
	"Workflow operations refused by business rules",
	["kind", "reason"],
)

WORKFLOW_CONFLICTS_TOTAL = Counter(
	"umpsa_workflow_conflicts_total",
	"Optimistic concurrency conflicts detected on write",
	["kind", "outcome"],
)

WORKFLOW_TRANSITION_LATENCY_SECONDS = Histogram(
	"umpsa_workflow_transition_latency_seconds",
	"Latency of a workflow read-modify-write",
	["kind"],
	buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

WORKFLOW_EVENTS_FAILED_TOTAL = Counter(
	"umpsa_workflow_events_failed_total",
	"Workflow events that could not be published",
)

WORKFLOW_SWEEP_TRANSITIONS_TOTAL = Counter(
	"umpsa_workflow_sweep_transitions_total",
	"Records transitioned by the expiration sweeper",
	["kind", "to_status"],
)

WORKFLOW_SWEEP_SKIPPED_TOTAL = Counter(
	"umpsa_workflow_sweep_skipped_total",
	"Sweep candidates that needed no transition",
	["kind"],
)

WORKFLOW_SWEEP_FAILURES_TOTAL = Counter(
	"umpsa_workflow_sweep_failures_total",
	"Sweep candidates that failed to transition",
	["kind"],
)

RETENTION_PURGED_TOTAL = Counter(
	"umpsa_retention_purged_total",
	"Records removed by retention jobs",
	["table"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)
