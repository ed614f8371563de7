from datetime import timedelta

import pytest
from sqlmodel import select

from lending_ledger.balances import BalanceProjector
from lending_ledger.config import LedgerPolicy
from lending_ledger.errors import (CurrencyNotFoundError, DuplicateError,
                                   InsufficientBalanceError, InvalidActionError,
                                   InvalidAmountError, InvalidTransitionError,
                                   NotFoundError, WithdrawalLimitExceededError)
from lending_ledger.ledger import get_or_create_account, post_mutation
from lending_ledger.models import Currency, Withdrawal
from lending_ledger.schemas import RequestWithdrawalParams
from lending_ledger.states import MutationType
from lending_ledger.withdrawals import WithdrawalService
from tests.factories import BSC, T0, USDC

USER = "user-7"


@pytest.fixture()
def service(seeded, policy):
    return WithdrawalService(seeded, policy)


@pytest.fixture()
def account(seeded):
    acct = get_or_create_account(seeded, USER, BSC, USDC)
    post_mutation(seeded, acct, MutationType.INVOICE_RECEIVED, 5_000_000_000, T0)
    seeded.commit()
    return acct


@pytest.fixture()
def beneficiary(service, account):
    return service.register_beneficiary(USER, BSC, USDC, "0xabc0000000000000000000000000000000000001")


def _request(service, beneficiary, amount, when=T0 + timedelta(hours=1), user_id=USER):
    return service.request_withdrawal(
        RequestWithdrawalParams(
            user_id=user_id, beneficiary_id=beneficiary.id, amount=amount, request_date=when
        )
    )


def _set_limits(session, **limits):
    currency = session.get(Currency, (BSC, USDC))
    for key, value in limits.items():
        setattr(currency, key, value)
    session.add(currency)
    session.commit()


def test_register_beneficiary_requires_currency(service):
    with pytest.raises(CurrencyNotFoundError):
        service.register_beneficiary(USER, BSC, "erc20:nope", "0x1")


def test_request_debits_account(service, beneficiary, account, seeded):
    view = _request(service, beneficiary, 1_000_000_000)
    assert view.state == "requested"
    assert view.status == "Requested"
    assert view.request_amount == 1_000_000_000
    assert view.network_fee is None
    assert view.platform_fee == 0
    assert BalanceProjector(seeded).account_balance(account.id) == 4_000_000_000


def test_request_over_balance_is_refused(service, beneficiary, seeded):
    with pytest.raises(InsufficientBalanceError) as exc:
        _request(service, beneficiary, 5_000_000_001)
    assert exc.value.available == 5_000_000_000
    assert seeded.exec(select(Withdrawal)).all() == []


def test_foreign_beneficiary_looks_like_not_found(service, beneficiary):
    with pytest.raises(NotFoundError) as exc:
        _request(service, beneficiary, 1_000, user_id="user-8")
    assert str(exc.value) == "Beneficiary not found"


@pytest.mark.parametrize("amount", [50_000_000, 3_000_000_000])
def test_per_request_limits(service, beneficiary, seeded, amount):
    _set_limits(seeded, min_withdrawal_amount=100_000_000, max_withdrawal_amount=2_000_000_000)
    with pytest.raises(WithdrawalLimitExceededError):
        _request(service, beneficiary, amount)


def test_daily_limit_counts_same_utc_day(service, beneficiary, seeded):
    _set_limits(seeded, max_daily_withdrawal_amount=2_500_000_000)
    _request(service, beneficiary, 2_000_000_000, T0 + timedelta(hours=1))
    with pytest.raises(WithdrawalLimitExceededError):
        _request(service, beneficiary, 1_000_000_000, T0 + timedelta(hours=23))
    view = _request(service, beneficiary, 1_000_000_000, T0 + timedelta(days=1))
    assert view.state == "requested"


def test_daily_limit_ignores_failed_withdrawals(service, beneficiary, seeded):
    _set_limits(seeded, max_daily_withdrawal_amount=2_500_000_000)
    first = _request(service, beneficiary, 2_000_000_000, T0 + timedelta(hours=1))
    service.fail_withdrawal(first.id, T0 + timedelta(hours=2), "rpc timeout")
    _request(service, beneficiary, 2_000_000_000, T0 + timedelta(hours=3))


def test_send_then_confirm(service, beneficiary):
    requested = _request(service, beneficiary, 1_000_000_000)
    sent = service.send_withdrawal(requested.id, 998_000_000, "0xtx1", T0 + timedelta(hours=2))
    assert sent.state == "sent"
    assert sent.network_fee == 2_000_000

    confirmed = service.confirm_withdrawal(requested.id, T0 + timedelta(hours=3))
    assert confirmed.state == "confirmed"
    with pytest.raises(InvalidTransitionError):
        service.fail_withdrawal(requested.id, T0 + timedelta(hours=4), "late")


@pytest.mark.parametrize("sent_amount", [0, 1_100_000_001])
def test_sent_amount_bounds(service, beneficiary, sent_amount):
    requested = _request(service, beneficiary, 1_000_000_000)
    with pytest.raises(InvalidAmountError):
        service.send_withdrawal(requested.id, sent_amount, "0xtx1", T0 + timedelta(hours=2))


def test_sent_amount_may_exceed_request_by_ten_percent(service, beneficiary):
    requested = _request(service, beneficiary, 1_000_000_000)
    sent = service.send_withdrawal(requested.id, 1_100_000_000, "0xtx1", T0 + timedelta(hours=2))
    assert sent.network_fee == -100_000_000


def test_sent_hash_is_unique(service, beneficiary):
    first = _request(service, beneficiary, 1_000_000_000)
    second = _request(service, beneficiary, 1_000_000_000)
    service.send_withdrawal(first.id, 1_000_000_000, "0xtx1", T0 + timedelta(hours=2))
    with pytest.raises(DuplicateError):
        service.send_withdrawal(second.id, 1_000_000_000, "0xtx1", T0 + timedelta(hours=2))
    assert service.get_withdrawal(second.id, USER).state == "requested"


def test_refund_approval_restores_balance(service, beneficiary, account, seeded):
    requested = _request(service, beneficiary, 1_000_000_000)
    service.send_withdrawal(requested.id, 1_000_000_000, "0xtx1", T0 + timedelta(hours=2))
    failed = service.fail_withdrawal(requested.id, T0 + timedelta(hours=3), "reverted")
    assert failed.state == "failed"
    assert failed.failure_reason == "reverted"

    asked = service.request_refund(requested.id, USER, T0 + timedelta(hours=4))
    assert asked.state == "failed"
    assert asked.status == "Failed"
    assert asked.refund_requested_date == T0 + timedelta(hours=4)

    approved = service.approve_refund(requested.id, "admin-1", T0 + timedelta(hours=5))
    assert approved.state == "refund_approved"
    assert approved.failure_refund_reviewer_user_id == "admin-1"
    assert BalanceProjector(seeded).account_balance(account.id) == 5_000_000_000


def test_refund_is_decided_once(service, beneficiary):
    requested = _request(service, beneficiary, 1_000_000_000)
    service.fail_withdrawal(requested.id, T0 + timedelta(hours=2), "reverted")
    service.approve_refund(requested.id, "admin-1", T0 + timedelta(hours=3))
    with pytest.raises(InvalidTransitionError):
        service.approve_refund(requested.id, "admin-2", T0 + timedelta(hours=4))
    with pytest.raises(InvalidTransitionError):
        service.reject_refund(requested.id, "admin-2", T0 + timedelta(hours=4), "changed mind")


def test_reject_refund(service, beneficiary, account, seeded):
    requested = _request(service, beneficiary, 1_000_000_000)
    service.fail_withdrawal(requested.id, T0 + timedelta(hours=2), "reverted")
    service.request_refund(requested.id, USER, T0 + timedelta(hours=3))
    rejected = service.reject_refund(requested.id, "admin-1", T0 + timedelta(hours=4), "funds arrived")
    assert rejected.state == "refund_rejected"
    assert rejected.failure_refund_rejection_reason == "funds arrived"
    assert BalanceProjector(seeded).account_balance(account.id) == 4_000_000_000


def test_refund_request_needs_failed_withdrawal(service, beneficiary):
    requested = _request(service, beneficiary, 1_000_000_000)
    with pytest.raises(InvalidTransitionError):
        service.request_refund(requested.id, USER, T0 + timedelta(hours=2))
    with pytest.raises(NotFoundError):
        service.request_refund(requested.id, "user-8", T0 + timedelta(hours=2))


def test_refund_is_requested_once(service, beneficiary):
    requested = _request(service, beneficiary, 1_000_000_000)
    service.fail_withdrawal(requested.id, T0 + timedelta(hours=2), "reverted")
    service.request_refund(requested.id, USER, T0 + timedelta(hours=3))
    with pytest.raises(InvalidTransitionError) as exc:
        service.request_refund(requested.id, USER, T0 + timedelta(hours=4))
    assert "Failed" in str(exc.value)


def test_refund_decision_only_from_failed(service, beneficiary, seeded):
    requested = _request(service, beneficiary, 1_000_000_000)
    with pytest.raises(InvalidTransitionError):
        service.approve_refund(requested.id, "admin-1", T0 + timedelta(hours=2))

    row = seeded.get(Withdrawal, requested.id)
    row.status = "RefundRequested"
    row.failed_date = T0 + timedelta(hours=2)
    seeded.add(row)
    seeded.commit()
    with pytest.raises(InvalidTransitionError) as exc:
        service.approve_refund(requested.id, "admin-1", T0 + timedelta(hours=3))
    assert str(exc.value) == "Cannot approve refund for withdrawal from status: RefundRequested"
    with pytest.raises(InvalidTransitionError):
        service.reject_refund(requested.id, "admin-1", T0 + timedelta(hours=3), "late")


def test_list_withdrawals_by_state(service, beneficiary):
    first = _request(service, beneficiary, 1_000_000_000, T0 + timedelta(hours=1))
    second = _request(service, beneficiary, 1_000_000_000, T0 + timedelta(hours=2))
    service.fail_withdrawal(first.id, T0 + timedelta(hours=3), "reverted")

    everything = service.list_withdrawals(USER)
    assert [view.id for view in everything.items] == [second.id, first.id]
    assert [view.id for view in service.list_withdrawals(USER, state="failed").items] == [first.id]
    assert [view.id for view in service.list_withdrawals(USER, state="requested").items] == [second.id]
    assert service.list_withdrawals(USER, state="confirmed").items == []
    with pytest.raises(InvalidActionError):
        service.list_withdrawals(USER, state="lost")


def test_platform_fee_comes_from_policy(seeded, beneficiary):
    service = WithdrawalService(seeded, LedgerPolicy(withdrawal_platform_fee=5))
    view = _request(service, beneficiary, 1_000)
    assert view.platform_fee == 5
