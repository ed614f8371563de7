"""Prometheus metrics for the lending ledger."""

from .metrics import (ledger_account_mutations_total,
                      ledger_invoices_created_total,
                      ledger_operation_latency_seconds,
                      ledger_transitions_total, loan_ltv_breaches)

__all__ = [
    "ledger_transitions_total",
    "ledger_operation_latency_seconds",
    "ledger_invoices_created_total",
    "ledger_account_mutations_total",
    "loan_ltv_breaches",
]
