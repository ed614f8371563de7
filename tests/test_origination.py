from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlmodel import select

from lending_ledger.balances import BalanceProjector
from lending_ledger.errors import (DuplicateError, InvalidAmountError,
                                   InvalidTransitionError)
from lending_ledger.models import Account, Loan, LoanOffer, LoanValuation
from lending_ledger.states import AccountType
from tests.factories import BNB, BORROWER, LENDER, T0, USDC, add_rate


def _usdc_account(session, user_id, account_type=AccountType.USER):
    return session.exec(
        select(Account).where(
            Account.user_id == user_id,
            Account.currency_token_id == USDC,
            Account.account_type == account_type.value,
        )
    ).one()


def test_match_reserves_principal(flow):
    offer = flow.published_offer()
    application = flow.published_application()
    matched = flow.origination.match_application(application.id, offer.id, T0 + timedelta(days=3))

    assert matched.status == "Matched"
    assert matched.matched_loan_offer_id == offer.id
    assert matched.matched_collateral_valuation_amount == 3_333_334_000
    assert matched.matched_ltv_ratio == Decimal("0.5999")

    stored = flow.session.get(LoanOffer, offer.id)
    assert stored.reserved_principal_amount == 2_000_000_000
    assert stored.available_principal_amount == 8_000_000_000


def test_match_requires_published_offer(flow):
    funding = flow.create_offer().offer
    application = flow.published_application()
    with pytest.raises(InvalidTransitionError) as exc:
        flow.origination.match_application(application.id, funding.id, T0 + timedelta(days=3))
    assert exc.value.current_status == "Funding"


def test_match_requires_published_application(flow):
    offer = flow.published_offer()
    pending = flow.create_application().application
    with pytest.raises(InvalidTransitionError):
        flow.origination.match_application(pending.id, offer.id, T0 + timedelta(days=3))


@pytest.mark.parametrize(
    "application_overrides",
    [
        dict(max_interest_rate=Decimal("10")),
        dict(term_in_months=9),
        dict(principal_amount=500_000_000),
        dict(borrower_user_id=LENDER),
    ],
)
def test_match_rejects_incompatible_pairs(flow, application_overrides):
    offer = flow.published_offer()
    application = flow.published_application(**application_overrides)
    with pytest.raises(InvalidAmountError):
        flow.origination.match_application(application.id, offer.id, T0 + timedelta(days=3))
    assert flow.session.get(LoanOffer, offer.id).reserved_principal_amount == 0


def test_originate_loan_amounts(flow):
    loan = flow.originated_loan()

    assert loan.status == "Originated"
    assert loan.borrower_user_id == BORROWER
    assert loan.lender_user_id == LENDER
    assert loan.principal_amount == 2_000_000_000
    assert loan.provision_amount == 60_000_000
    assert loan.interest_amount == 125_000_000
    assert loan.repayment_amount == 2_185_000_000
    assert loan.redelivery_amount == 2_112_500_000
    assert loan.collateral_amount == 1_666_667
    assert loan.current_ltv_ratio == Decimal("0.5999")
    assert loan.maturity_date == datetime(2025, 7, 4)

    offer = flow.session.get(LoanOffer, loan.loan_offer_id)
    assert offer.reserved_principal_amount == 0
    assert offer.disbursed_principal_amount == 2_000_000_000
    assert offer.available_principal_amount == 8_000_000_000


def test_originate_twice_is_duplicate(flow):
    loan = flow.originated_loan()
    with pytest.raises(DuplicateError):
        flow.origination.originate_loan(loan.loan_application_id, T0 + timedelta(days=4))


def test_disburse_moves_principal_net_of_provision(flow):
    loan = flow.active_loan()
    assert loan.status == "Active"
    assert loan.disbursement_date == T0 + timedelta(days=3)

    projector = BalanceProjector(flow.session)
    escrow = _usdc_account(flow.session, "platform", AccountType.PLATFORM_ESCROW)
    fees = _usdc_account(flow.session, "platform", AccountType.PLATFORM_FEES)
    borrower = _usdc_account(flow.session, BORROWER)
    assert projector.account_balance(escrow.id) == 8_000_000_000
    assert projector.account_balance(borrower.id) == 1_940_000_000
    assert projector.account_balance(fees.id) == 60_000_000

    with pytest.raises(InvalidTransitionError):
        flow.origination.disburse_principal(loan.id, T0 + timedelta(days=4))


def test_update_valuation_tracks_rate(flow):
    loan = flow.active_loan()
    add_rate(flow.session, BNB, USDC, "1500.0", source_date=T0 + timedelta(days=4))

    valuation = flow.origination.update_valuation(loan.id, T0 + timedelta(days=5))
    assert valuation.collateral_valuation_amount == 2_500_000_500
    assert valuation.ltv_ratio == Decimal("0.7999")
    assert flow.session.get(Loan, loan.id).current_ltv_ratio == Decimal("0.7999")

    again = flow.origination.update_valuation(loan.id, T0 + timedelta(days=6))
    assert again.id == valuation.id
    assert len(flow.session.exec(select(LoanValuation)).all()) == 1


def test_monitor_ltv_reports_breaches(flow):
    loan = flow.active_loan()
    add_rate(flow.session, BNB, USDC, "1500.0", source_date=T0 + timedelta(days=4))

    result = flow.origination.monitor_ltv(T0 + timedelta(days=5))
    assert result.threshold == Decimal("0.7")
    assert result.processed == 1
    assert [breach.loan_id for breach in result.breaches] == [loan.id]
    assert result.breaches[0].current_ltv_ratio == Decimal("0.7999")

    relaxed = flow.origination.monitor_ltv(T0 + timedelta(days=5), Decimal("0.85"))
    assert relaxed.breaches == []


def test_monitor_ltv_skips_loans_without_rate(flow):
    flow.active_loan()
    result = flow.origination.monitor_ltv(T0 - timedelta(days=1), Decimal("0.7"))
    assert result.processed == 0
    assert result.breaches == []
