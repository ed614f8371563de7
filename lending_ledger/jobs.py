"""Periodic maintenance: expire stale offers, applications and invoices; monitor LTV.

Usage:
    python -m lending_ledger.jobs --as-of 2025-01-31T00:00:00Z
    python -m lending_ledger.jobs --as-of 2025-01-31T00:00:00Z --only monitor --ltv-threshold 0.8
"""
from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

from sqlmodel import Session

from common.datetime import DateLike, to_utc_naive
from common.logging import configure_logging
from ledger_observability.metrics import maybe_start_http_server
from lending_ledger.applications import LoanApplicationService
from lending_ledger.db import get_session, init_db
from lending_ledger.invoices import InvoiceService
from lending_ledger.offers import LoanOfferService
from lending_ledger.origination import LoanOriginationService, LtvMonitorResult

logger = logging.getLogger(__name__)

TASKS = ("expire", "monitor")


@dataclass(slots=True)
class MaintenanceReport:
    as_of: datetime
    expired_offers: List[str] = field(default_factory=list)
    expired_applications: List[str] = field(default_factory=list)
    expired_invoices: List[str] = field(default_factory=list)
    ltv: Optional[LtvMonitorResult] = None


def run_maintenance(
    session: Session,
    as_of: DateLike,
    *,
    tasks: Sequence[str] = TASKS,
    ltv_threshold: Optional[Decimal] = None,
) -> MaintenanceReport:
    """Run the selected tasks; each commits on its own."""
    report = MaintenanceReport(as_of=to_utc_naive(as_of))
    if "expire" in tasks:
        report.expired_offers = LoanOfferService(session).expire_due_offers(report.as_of)
        report.expired_applications = LoanApplicationService(session).expire_due_applications(report.as_of)
        report.expired_invoices = InvoiceService(session).expire_overdue_invoices(report.as_of)
    if "monitor" in tasks:
        report.ltv = LoanOriginationService(session).monitor_ltv(report.as_of, ltv_threshold)
    logger.info(
        "maintenance as of %s: %d offers, %d applications, %d invoices expired",
        report.as_of.isoformat(),
        len(report.expired_offers),
        len(report.expired_applications),
        len(report.expired_invoices),
        extra={"operation": "maintenance"},
    )
    return report


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Lending ledger maintenance jobs")
    ap.add_argument("--as-of", default=None, help="ISO-8601 instant (default: now, UTC)")
    ap.add_argument("--only", choices=TASKS, action="append", help="Run only these tasks")
    ap.add_argument("--ltv-threshold", type=Decimal, default=None, help="LTV ratio, e.g. 0.8")
    return ap.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(service_name="lending_ledger")
    maybe_start_http_server()
    init_db()
    as_of = args.as_of or datetime.now(timezone.utc)
    with get_session() as session:
        report = run_maintenance(
            session, as_of, tasks=args.only or TASKS, ltv_threshold=args.ltv_threshold
        )
    if report.ltv is not None:
        for breach in report.ltv.breaches:
            print(f"{breach.loan_id}\t{breach.current_ltv_ratio}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
