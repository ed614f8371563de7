from datetime import timedelta
from decimal import Decimal

from lending_ledger import jobs
from lending_ledger.models import Invoice, LoanApplication, LoanOffer
from tests.factories import BNB, T0, USDC, add_rate


def test_parse_args_defaults():
    args = jobs.parse_args([])
    assert args.as_of is None
    assert args.only is None
    assert args.ltv_threshold is None


def test_parse_args_selection():
    args = jobs.parse_args(
        ["--as-of", "2025-02-01T00:00:00Z", "--only", "monitor", "--ltv-threshold", "0.8"]
    )
    assert args.as_of == "2025-02-01T00:00:00Z"
    assert args.only == ["monitor"]
    assert args.ltv_threshold == Decimal("0.8")


def test_maintenance_expires_stale_rows(flow):
    offer = flow.create_offer().offer
    application = flow.create_application().application

    report = jobs.run_maintenance(flow.session, T0 + timedelta(days=40), tasks=("expire",))

    assert report.expired_offers == [offer.id]
    assert report.expired_applications == [application.id]
    # both invoices were cancelled along with their owners
    assert report.expired_invoices == []
    assert report.ltv is None
    assert flow.session.get(LoanOffer, offer.id).status == "Expired"
    assert flow.session.get(LoanApplication, application.id).status == "Expired"


def test_maintenance_expires_orphaned_invoices(flow):
    loan = flow.active_loan()
    requested = flow.loans.repay(loan.id, "borrower-1", T0 + timedelta(days=10))

    report = jobs.run_maintenance(flow.session, T0 + timedelta(days=18), tasks=("expire",))
    assert report.expired_invoices == [requested.invoice.id]
    assert flow.session.get(Invoice, requested.invoice.id).status == "Expired"


def test_maintenance_monitors_ltv(flow):
    loan = flow.active_loan()
    add_rate(flow.session, BNB, USDC, "1500.0", source_date=T0 + timedelta(days=4))

    report = jobs.run_maintenance(
        flow.session, "2025-01-06T00:00:00Z", tasks=("monitor",), ltv_threshold=Decimal("0.75")
    )
    assert report.expired_offers == []
    assert [breach.loan_id for breach in report.ltv.breaches] == [loan.id]
