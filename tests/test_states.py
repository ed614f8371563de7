import itertools
from datetime import datetime

import pytest

from lending_ledger.errors import InvalidTransitionError
from lending_ledger.states import (LOAN_TRANSITIONS, OFFER_TRANSITIONS,
                                   WITHDRAWAL_TRANSITIONS, WithdrawalStatus,
                                   derive_withdrawal_state, ensure_transition)

D = datetime(2025, 1, 1)


def _expected(status, sent, confirmed, failed):
    refund = {
        "RefundRequested": "refund_requested",
        "RefundApproved": "refund_approved",
        "RefundRejected": "refund_rejected",
    }
    if status in refund:
        return refund[status]
    if failed:
        return "failed"
    if confirmed:
        return "confirmed"
    if sent:
        return "sent"
    return "requested"


@pytest.mark.parametrize("status", [s.value for s in WithdrawalStatus])
@pytest.mark.parametrize("dates", list(itertools.product([False, True], repeat=4)))
def test_derived_state_precedence(status, dates):
    requested, sent, confirmed, failed = dates
    state = derive_withdrawal_state(
        status=status,
        request_date=D if requested else None,
        sent_date=D if sent else None,
        confirmed_date=D if confirmed else None,
        failed_date=D if failed else None,
    )
    if not any((requested, sent, confirmed, failed)) and status not in (
        "RefundRequested", "RefundApproved", "RefundRejected"
    ):
        # nothing populated: fall back to the stored status
        assert state == {
            "Requested": "requested",
            "Sent": "sent",
            "Confirmed": "confirmed",
            "Failed": "failed",
        }[status]
    else:
        assert state == _expected(status, sent, confirmed, failed)


def test_unknown_status_is_lower_cased():
    state = derive_withdrawal_state(
        status="OnHold", request_date=None, sent_date=None, confirmed_date=None, failed_date=None
    )
    assert state == "onhold"


@pytest.mark.parametrize(
    "table,current,target",
    [
        (OFFER_TRANSITIONS, "Funding", "Published"),
        (OFFER_TRANSITIONS, "Published", "Closed"),
        (LOAN_TRANSITIONS, "Originated", "Active"),
        (LOAN_TRANSITIONS, "Defaulted", "Liquidated"),
        (WITHDRAWAL_TRANSITIONS, "Failed", "RefundApproved"),
    ],
)
def test_legal_transitions(table, current, target):
    ensure_transition(table, entity="x", action="move", current=current, target=target)


@pytest.mark.parametrize(
    "table,current,target",
    [
        (OFFER_TRANSITIONS, "Closed", "Closed"),
        (OFFER_TRANSITIONS, "Expired", "Published"),
        (LOAN_TRANSITIONS, "Repaid", "Liquidated"),
        (LOAN_TRANSITIONS, "Originated", "Repaid"),
        (WITHDRAWAL_TRANSITIONS, "Confirmed", "Failed"),
        (WITHDRAWAL_TRANSITIONS, "RefundApproved", "RefundRejected"),
        (WITHDRAWAL_TRANSITIONS, "Failed", "RefundRequested"),
        (WITHDRAWAL_TRANSITIONS, "RefundRequested", "RefundApproved"),
    ],
)
def test_illegal_transitions_name_current_status(table, current, target):
    with pytest.raises(InvalidTransitionError) as exc:
        ensure_transition(table, entity="offer", action="close", current=current, target=target)
    assert str(exc.value) == f"Cannot close offer from status: {current}"
