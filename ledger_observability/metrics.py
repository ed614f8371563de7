"""
Prometheus metrics for the lending ledger.

This module does NOT start a standalone HTTP server on import. Hosts that
already serve HTTP should mount the ASGI exporter:

    from prometheus_client import make_asgi_app
    app.mount("/metrics", make_asgi_app())

Batch jobs (invoice expiry, LTV monitoring) can set METRICS_HTTP_SERVER=1 and
call maybe_start_http_server().
"""

import os
import threading
from typing import Any, Dict, Tuple, Type

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ----------------------------
# Optional standalone server
# ----------------------------
_METRICS_PORT = int(os.getenv("METRICS_PORT", "8001"))
_server_started = False
_server_lock = threading.Lock()


def maybe_start_http_server() -> None:
    """
    Start a sidecar metrics HTTP server exactly once, but only if
    METRICS_HTTP_SERVER=1 is set in the environment.
    """
    global _server_started
    if _server_started or os.getenv("METRICS_HTTP_SERVER") != "1":
        return
    with _server_lock:
        if not _server_started and os.getenv("METRICS_HTTP_SERVER") == "1":
            start_http_server(_METRICS_PORT)
            _server_started = True


# ----------------------------
# Registration helper (avoid duplicate collectors)
# ----------------------------
_METRICS: Dict[Tuple[Type[Any], str], Any] = {}


def get_metric(cls: Type[Any], name: str, *args, **kwargs):
    key = (cls, name)
    if key in _METRICS:
        return _METRICS[key]
    metric = cls(name, *args, **kwargs)
    _METRICS[key] = metric
    return metric


# ----------------------------
# Ledger metrics
# ----------------------------

# State-machine operations by entity, action and outcome (success/rejected/error)
ledger_transitions_total = get_metric(
    Counter,
    "ledger_transitions_total",
    "State-machine operations executed by the ledger",
    ["entity", "action", "outcome"],
)

ledger_operation_latency_seconds = get_metric(
    Histogram,
    "ledger_operation_latency_seconds",
    "Latency of ledger operations in seconds",
    ["entity", "action"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2),
)

ledger_invoices_created_total = get_metric(
    Counter,
    "ledger_invoices_created_total",
    "Invoices created, by invoice type",
    ["invoice_type"],
)

ledger_account_mutations_total = get_metric(
    Counter,
    "ledger_account_mutations_total",
    "Account mutations appended, by mutation type",
    ["mutation_type"],
)

# Set by each LTV monitoring pass
loan_ltv_breaches = get_metric(
    Gauge,
    "loan_ltv_breaches",
    "Loans whose current LTV ratio exceeds the monitoring threshold",
)
