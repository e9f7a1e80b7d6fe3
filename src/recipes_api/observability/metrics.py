"""Prometheus metrics for the recipes service."""

from __future__ import annotations

from prometheus_client import Counter, Info, start_http_server

SYSTEM_INFO = Info("recipes_system", "Recipes service information")

MUTATIONS_TOTAL = Counter(
    "recipes_mutations_total",
    "Store mutations by outcome",
    ["strategy", "operation", "outcome"],
)

NOTIFICATIONS_TOTAL = Counter(
    "recipes_notifications_total",
    "Lifecycle notifications published",
    ["event"],
)

ALLOCATION_FAILURES = Counter(
    "recipes_id_allocation_failures_total",
    "Failed identity allocation requests",
)


def start_metrics_server(port: int, strategy: str = "unknown") -> None:
    """Start the Prometheus exporter on *port*."""
    SYSTEM_INFO.info({"store_strategy": strategy})
    start_http_server(port)


def record_mutation(strategy: str, operation: str, outcome: str) -> None:
    MUTATIONS_TOTAL.labels(
        strategy=strategy, operation=operation, outcome=outcome
    ).inc()


def record_notification(event: str) -> None:
    NOTIFICATIONS_TOTAL.labels(event=event).inc()


def record_allocation_failure() -> None:
    ALLOCATION_FAILURES.inc()
