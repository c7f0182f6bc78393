"""Prometheus metrics definitions for r2gate.

All custom metrics use the ``r2gate_`` prefix. These are access-control
level metrics; ``prometheus-fastapi-instrumentator`` provides the
HTTP-level request count, duration and size metrics.

Counters reset to zero on restart. The active-grants gauge is populated
from the metadata store on startup and refreshed whenever a grant is
created or deactivated.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# Permission decisions (labels: action, outcome)
access_checks_total: Counter | None = None

# Writes refused by quota (labels: resource)
quota_rejections_total: Counter | None = None

# Object-store calls (labels: operation, status)
store_operations_total: Counter | None = None

# Payload bytes (labels: direction = in | out)
bytes_transferred_total: Counter | None = None

# Access-log or audit writes that failed
access_log_failures_total: Counter | None = None

active_grants: Gauge | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Call once when metrics are enabled. When metrics are disabled the
    module-level references stay ``None`` and nothing is registered in
    the global registry; every increment site checks for ``None``.
    """
    global _initialized
    global access_checks_total, quota_rejections_total, store_operations_total
    global bytes_transferred_total, access_log_failures_total, active_grants

    if _initialized:
        return

    access_checks_total = Counter(
        "r2gate_access_checks_total",
        "Permission decisions by action and outcome",
        ["action", "outcome"],
    )

    quota_rejections_total = Counter(
        "r2gate_quota_rejections_total",
        "Writes rejected by a quota ceiling",
        ["resource"],
    )

    store_operations_total = Counter(
        "r2gate_store_operations_total",
        "Object store calls by operation and outcome",
        ["operation", "status"],
    )

    bytes_transferred_total = Counter(
        "r2gate_bytes_transferred_total",
        "Object payload bytes moved through the gateway",
        ["direction"],
    )

    access_log_failures_total = Counter(
        "r2gate_access_log_failures_total",
        "Access-log and audit records that could not be persisted",
    )

    active_grants = Gauge(
        "r2gate_active_grants",
        "Number of active access grants",
    )

    _initialized = True
