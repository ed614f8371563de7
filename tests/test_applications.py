from datetime import timedelta
from decimal import Decimal

import pytest
from sqlmodel import select

from lending_ledger.applications import ACTION_CANCEL, ACTION_MODIFY
from lending_ledger.balances import BalanceProjector
from lending_ledger.errors import (ConfigNotFoundError, CurrencyPairNotFoundError,
                                   InvalidActionError, InvalidAmountError,
                                   InvalidTransitionError, NotFoundError,
                                   RateNotFoundError)
from lending_ledger.models import (Account, Currency, Invoice, Loan,
                                   LoanApplication, LoanOffer)
from lending_ledger.states import AccountType
from tests.factories import (BNB, BORROWER, BSC, LENDER, T0, USDC, add_currency,
                             add_rate)


def _count(session, model):
    return len(session.exec(select(model)).all())


def test_create_application_sizes_collateral_and_provision(flow):
    created = flow.create_application()
    application, invoice = created.application, created.invoice

    assert application.status == "PendingCollateral"
    assert application.provision_amount == 60_000_000
    # 2000 USDC at 60 % LTV against BNB at 2000 -> 1.6666667 BNB rounded up
    assert application.collateral_deposit_amount == 1_666_667
    assert application.min_ltv_ratio == Decimal("60.0")
    assert application.max_ltv_ratio == Decimal("70.0")
    assert application.expiration_date == T0 + timedelta(days=8)
    assert application.collateral_deposit_exchange_rate_id

    assert invoice.invoice_type == "LoanCollateral"
    assert invoice.currency_token_id == BNB
    assert invoice.invoiced_amount == 1_666_667
    assert invoice.due_date == application.expiration_date


def test_calculate_matches_create(flow):
    quote = flow.applications.calculate(
        principal_blockchain_key=BSC,
        principal_token_id=USDC,
        collateral_blockchain_key=BSC,
        collateral_token_id=BNB,
        principal_amount=2_000_000_000,
        term_in_months=6,
        as_of=T0 + timedelta(days=1),
    )
    created = flow.create_application()
    assert quote.required_collateral_amount == created.application.collateral_deposit_amount
    assert quote.provision_amount == created.application.provision_amount
    assert _count(flow.session, LoanApplication) == 1


def test_missing_pair_leaves_no_rows(flow):
    with pytest.raises(CurrencyPairNotFoundError):
        flow.create_application(collateral_token_id="slip44:0")
    assert _count(flow.session, LoanApplication) == 0
    assert _count(flow.session, Invoice) == 0


def test_missing_config_leaves_no_rows(flow):
    with pytest.raises(ConfigNotFoundError):
        flow.create_application(applied_date=T0 - timedelta(days=1))
    assert _count(flow.session, LoanApplication) == 0
    assert _count(flow.session, Invoice) == 0


def test_missing_rate_leaves_no_rows(flow):
    add_currency(flow.session, "slip44:0", decimals=8)
    with pytest.raises(RateNotFoundError):
        flow.create_application(collateral_token_id="slip44:0")
    assert _count(flow.session, LoanApplication) == 0
    assert _count(flow.session, Invoice) == 0


def test_principal_bounds_from_currency(flow):
    currency = flow.session.get(Currency, (BSC, USDC))
    currency.max_application_principal_amount = 1_000_000_000
    flow.session.add(currency)
    flow.session.commit()
    with pytest.raises(InvalidAmountError):
        flow.create_application()


def test_application_against_offer_must_fit(flow):
    offer = flow.create_offer().offer
    with pytest.raises(InvalidAmountError):
        flow.create_application(loan_offer_id=offer.id, term_in_months=9)
    with pytest.raises(InvalidAmountError):
        flow.create_application(loan_offer_id=offer.id, principal_amount=6_000_000_000)
    with pytest.raises(NotFoundError):
        flow.create_application(loan_offer_id="01MISSINGOFFER00000000000")
    created = flow.create_application(loan_offer_id=offer.id)
    assert created.application.loan_offer_id == offer.id


def test_collateral_is_frozen_after_rate_moves(flow):
    created = flow.create_application()
    add_rate(flow.session, BNB, USDC, "1000.0", source_date=T0 + timedelta(hours=30))
    flow.applications.update_application(
        created.application.id,
        BORROWER,
        ACTION_MODIFY,
        T0 + timedelta(days=2),
        expiration_date=T0 + timedelta(days=20),
    )
    application = flow.session.get(LoanApplication, created.application.id)
    assert application.collateral_deposit_amount == 1_666_667
    assert application.provision_amount == 60_000_000


def test_unknown_action_is_rejected_before_lookup(flow):
    with pytest.raises(InvalidActionError) as exc:
        flow.applications.update_application("anything", BORROWER, "approve", T0)
    assert exc.value.action == "approve"


def test_cancel_pending_application_cancels_invoice(flow):
    created = flow.create_application()
    application = flow.applications.update_application(
        created.application.id, BORROWER, ACTION_CANCEL, T0 + timedelta(days=2),
        closure_reason="found another lender",
    )
    assert application.status == "Closed"
    assert application.closure_reason == "found another lender"
    assert flow.session.get(Invoice, created.invoice.id).status == "Cancelled"


def test_cancel_published_application_releases_collateral(flow):
    application = flow.published_application()
    assert application.collateral_prepaid_amount == 1_666_667

    flow.applications.update_application(
        application.id, BORROWER, ACTION_CANCEL, T0 + timedelta(days=3)
    )
    borrower = flow.session.exec(
        select(Account).where(Account.user_id == BORROWER, Account.currency_token_id == BNB)
    ).one()
    escrow = flow.session.exec(
        select(Account).where(
            Account.account_type == AccountType.PLATFORM_ESCROW.value,
            Account.currency_token_id == BNB,
        )
    ).one()
    projector = BalanceProjector(flow.session)
    assert projector.account_balance(borrower.id) == 1_666_667
    assert projector.account_balance(escrow.id) == 0


def test_cancel_closed_application_fails(flow):
    created = flow.create_application()
    flow.applications.update_application(created.application.id, BORROWER, ACTION_CANCEL, T0)
    with pytest.raises(InvalidTransitionError) as exc:
        flow.applications.update_application(created.application.id, BORROWER, ACTION_CANCEL, T0)
    assert exc.value.current_status == "Closed"


def test_modify_only_extends(flow):
    created = flow.create_application()
    with pytest.raises(InvalidAmountError):
        flow.applications.update_application(
            created.application.id, BORROWER, ACTION_MODIFY, T0 + timedelta(days=2),
            expiration_date=T0 + timedelta(days=3),
        )
    flow.applications.update_application(
        created.application.id, BORROWER, ACTION_MODIFY, T0 + timedelta(days=2),
        expiration_date=T0 + timedelta(days=14),
    )
    assert flow.session.get(Invoice, created.invoice.id).due_date == T0 + timedelta(days=14)


def test_modify_published_application_fails(flow):
    application = flow.published_application()
    with pytest.raises(InvalidTransitionError):
        flow.applications.update_application(
            application.id, BORROWER, ACTION_MODIFY, T0 + timedelta(days=3),
            expiration_date=T0 + timedelta(days=30),
        )


def test_update_by_other_user_looks_like_not_found(flow):
    created = flow.create_application()
    with pytest.raises(NotFoundError) as exc:
        flow.applications.update_application(created.application.id, "mallory", ACTION_CANCEL, T0)
    assert str(exc.value) == "Loan application not found"


def test_expire_due_applications(flow):
    pending = flow.create_application()
    published = flow.published_application()
    expired = flow.applications.expire_due_applications(T0 + timedelta(days=8))
    assert sorted(expired) == sorted([pending.application.id, published.id])
    assert flow.session.get(Invoice, pending.invoice.id).status == "Cancelled"

    borrower = flow.session.exec(
        select(Account).where(Account.user_id == BORROWER, Account.currency_token_id == BNB)
    ).one()
    assert BalanceProjector(flow.session).account_balance(borrower.id) == 1_666_667


def test_list_applications_newest_first(flow):
    first = flow.create_application().application
    second = flow.create_application(applied_date=T0 + timedelta(days=2)).application
    page = flow.applications.list_applications(borrower_user_id=BORROWER)
    assert [row.id for row in page.items] == [second.id, first.id]
    assert flow.applications.get_application(first.id, BORROWER).id == first.id


def _balance(session, token_id, *, user_id=None, account_type=AccountType.USER):
    stmt = select(Account).where(
        Account.currency_token_id == token_id,
        Account.account_type == account_type.value,
    )
    if user_id is not None:
        stmt = stmt.where(Account.user_id == user_id)
    return BalanceProjector(session).account_balance(session.exec(stmt).one().id)


def _matched(flow):
    offer = flow.published_offer()
    application = flow.published_application()
    flow.origination.match_application(application.id, offer.id, T0 + timedelta(days=3))
    return offer, application


def test_expire_matched_application_releases_offer_and_collateral(flow):
    offer, application = _matched(flow)
    assert flow.session.get(LoanOffer, offer.id).reserved_principal_amount == 2_000_000_000

    flow.applications.expire_application(application.id, T0 + timedelta(days=9))

    assert flow.session.get(LoanApplication, application.id).status == "Expired"
    offer = flow.session.get(LoanOffer, offer.id)
    assert offer.reserved_principal_amount == 0
    assert offer.available_principal_amount == 10_000_000_000
    assert _balance(flow.session, BNB, user_id=BORROWER) == 1_666_667
    assert _balance(flow.session, BNB, account_type=AccountType.PLATFORM_ESCROW) == 0


def test_expire_matched_application_of_closed_offer_returns_principal(flow):
    offer, application = _matched(flow)
    flow.offers.close_offer(offer.id, LENDER, T0 + timedelta(days=4))
    assert _balance(flow.session, USDC, user_id=LENDER) == 8_000_000_000

    flow.applications.expire_application(application.id, T0 + timedelta(days=9))

    offer = flow.session.get(LoanOffer, offer.id)
    assert offer.reserved_principal_amount == 0
    assert offer.available_principal_amount == 0
    assert _balance(flow.session, USDC, user_id=LENDER) == 10_000_000_000
    assert _balance(flow.session, USDC, account_type=AccountType.PLATFORM_ESCROW) == 0


def test_matched_application_with_loan_cannot_expire(flow):
    loan = flow.active_loan()

    with pytest.raises(InvalidTransitionError) as exc:
        flow.applications.expire_application(loan.loan_application_id, T0 + timedelta(days=9))
    assert str(exc.value) == "Cannot expire application from status: Matched"

    assert flow.session.get(LoanApplication, loan.loan_application_id).status == "Matched"
    assert flow.session.get(Loan, loan.id).status == "Active"
    assert _balance(flow.session, BNB, account_type=AccountType.PLATFORM_ESCROW) == 1_666_667
