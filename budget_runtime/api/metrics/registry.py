"""
budget_runtime/api/metrics/registry.py
Central Prometheus metrics registry for the API process.
"""

from prometheus_client import (
    CollectorRegistry, Counter, Gauge, generate_latest
)
import psutil

# Global registry instance
REGISTRY = CollectorRegistry(auto_describe=True)

# =============================
# Metric definitions
# =============================
DB_INIT_ATTEMPTS = Counter(
    "budget_db_init_attempts_total",
    "Database initialization attempts by outcome",
    ["outcome"],
    registry=REGISTRY,
)

DB_STATE = Gauge(
    "budget_db_state",
    "1 for the current database lifecycle state, 0 for the others",
    ["state"],
    registry=REGISTRY,
)

BACKUPS_CREATED = Counter(
    "budget_db_backups_created_total",
    "Database backups created, by reason",
    ["reason"],
    registry=REGISTRY,
)

STALE_LOCKS_CLEARED = Counter(
    "budget_db_stale_locks_cleared_total",
    "Stale engine lock files removed",
    registry=REGISTRY,
)

PROCESS_CPU = Gauge(
    "budget_process_cpu_percent",
    "CPU utilization of the API process",
    registry=REGISTRY,
)

PROCESS_RSS = Gauge(
    "budget_process_memory_rss_bytes",
    "Resident memory of the API process",
    registry=REGISTRY,
)

_process = psutil.Process()

# =============================
# Updater helpers
# =============================

def update_process_metrics():
    """Refresh process resource gauges."""
    PROCESS_CPU.set(_process.cpu_percent(interval=None))
    PROCESS_RSS.set(_process.memory_info().rss)


def track_db_init(outcome: str):
    """Record an initialization attempt ("ready", "open_failed", "schema_failed")."""
    DB_INIT_ATTEMPTS.labels(outcome=outcome).inc()


def set_db_state(state: str, all_states):
    """Set the one-hot lifecycle state gauge."""
    for name in all_states:
        DB_STATE.labels(state=name).set(1 if name == state else 0)


def track_backup(reason: str):
    BACKUPS_CREATED.labels(reason=reason).inc()


def track_stale_lock_cleared():
    STALE_LOCKS_CLEARED.inc()


def render_prometheus_metrics():
    """Return text for Prometheus scrape endpoint."""
    update_process_metrics()
    return generate_latest(REGISTRY)
