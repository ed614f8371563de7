"""Status enums, legal transitions and derived withdrawal state."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, Mapping, Optional

from lending_ledger.errors import InvalidTransitionError

__all__ = [
    "LoanOfferStatus",
    "LoanApplicationStatus",
    "LoanStatus",
    "LiquidationMode",
    "LiquidationStatus",
    "RepaymentInitiator",
    "InvoiceType",
    "InvoiceStatus",
    "WithdrawalStatus",
    "WithdrawalState",
    "AccountType",
    "MutationType",
    "OFFER_TRANSITIONS",
    "APPLICATION_TRANSITIONS",
    "LOAN_TRANSITIONS",
    "WITHDRAWAL_TRANSITIONS",
    "ensure_transition",
    "derive_withdrawal_state",
]


class LoanOfferStatus(str, Enum):
    FUNDING = "Funding"
    PUBLISHED = "Published"
    CLOSED = "Closed"
    EXPIRED = "Expired"


class LoanApplicationStatus(str, Enum):
    PENDING_COLLATERAL = "PendingCollateral"
    PUBLISHED = "Published"
    MATCHED = "Matched"
    CLOSED = "Closed"
    EXPIRED = "Expired"


class LoanStatus(str, Enum):
    ORIGINATED = "Originated"
    ACTIVE = "Active"
    REPAID = "Repaid"
    LIQUIDATED = "Liquidated"
    DEFAULTED = "Defaulted"


class LiquidationMode(str, Enum):
    PARTIAL = "Partial"
    FULL = "Full"


class LiquidationStatus(str, Enum):
    PENDING = "Pending"
    FULFILLED = "Fulfilled"
    FAILED = "Failed"


class RepaymentInitiator(str, Enum):
    BORROWER = "Borrower"
    SYSTEM = "System"


class InvoiceType(str, Enum):
    LOAN_PRINCIPAL = "LoanPrincipal"
    LOAN_COLLATERAL = "LoanCollateral"
    LOAN_REPAYMENT = "LoanRepayment"
    LOAN_EARLY_REPAYMENT = "LoanEarlyRepayment"


class InvoiceStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    EXPIRED = "Expired"
    CANCELLED = "Cancelled"


class WithdrawalStatus(str, Enum):
    REQUESTED = "Requested"
    SENT = "Sent"
    CONFIRMED = "Confirmed"
    FAILED = "Failed"
    REFUND_REQUESTED = "RefundRequested"
    REFUND_APPROVED = "RefundApproved"
    REFUND_REJECTED = "RefundRejected"


class WithdrawalState(str, Enum):
    REQUESTED = "requested"
    SENT = "sent"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REFUND_REQUESTED = "refund_requested"
    REFUND_APPROVED = "refund_approved"
    REFUND_REJECTED = "refund_rejected"


class AccountType(str, Enum):
    USER = "User"
    PLATFORM_ESCROW = "PlatformEscrow"
    PLATFORM_FEES = "PlatformFees"


class MutationType(str, Enum):
    INVOICE_RECEIVED = "InvoiceReceived"
    # lender side
    LOAN_OFFER_PRINCIPAL_ESCROWED = "LoanOfferPrincipalEscrowed"
    LOAN_PRINCIPAL_FUNDED = "LoanPrincipalFunded"
    LOAN_PRINCIPAL_RETURNED = "LoanPrincipalReturned"
    LOAN_REPAYMENT_RECEIVED = "LoanRepaymentReceived"
    # borrower side
    LOAN_COLLATERAL_DEPOSIT = "LoanCollateralDeposit"
    LOAN_COLLATERAL_RELEASED = "LoanCollateralReleased"
    LOAN_PRINCIPAL_DISBURSEMENT = "LoanPrincipalDisbursement"
    LOAN_REPAYMENT = "LoanRepayment"
    # platform side
    LOAN_DISBURSEMENT_PRINCIPAL = "LoanDisbursementPrincipal"
    LOAN_DISBURSEMENT_FEE = "LoanDisbursementFee"
    LOAN_RETURN_FEE = "LoanReturnFee"
    # withdrawals
    WITHDRAWAL_REQUESTED = "WithdrawalRequested"
    WITHDRAWAL_REFUNDED = "WithdrawalRefunded"


# ---------------------------------------------------------------------------
# Legal transitions (current status -> allowed targets)
# ---------------------------------------------------------------------------

OFFER_TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    LoanOfferStatus.FUNDING.value: frozenset(
        {LoanOfferStatus.PUBLISHED.value, LoanOfferStatus.CLOSED.value, LoanOfferStatus.EXPIRED.value}
    ),
    LoanOfferStatus.PUBLISHED.value: frozenset(
        {LoanOfferStatus.CLOSED.value, LoanOfferStatus.EXPIRED.value}
    ),
}

APPLICATION_TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    LoanApplicationStatus.PENDING_COLLATERAL.value: frozenset(
        {
            LoanApplicationStatus.PUBLISHED.value,
            LoanApplicationStatus.CLOSED.value,
            LoanApplicationStatus.EXPIRED.value,
        }
    ),
    LoanApplicationStatus.PUBLISHED.value: frozenset(
        {
            LoanApplicationStatus.MATCHED.value,
            LoanApplicationStatus.CLOSED.value,
            LoanApplicationStatus.EXPIRED.value,
        }
    ),
    LoanApplicationStatus.MATCHED.value: frozenset(
        {LoanApplicationStatus.CLOSED.value, LoanApplicationStatus.EXPIRED.value}
    ),
}

LOAN_TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    LoanStatus.ORIGINATED.value: frozenset({LoanStatus.ACTIVE.value, LoanStatus.LIQUIDATED.value}),
    LoanStatus.ACTIVE.value: frozenset(
        {LoanStatus.REPAID.value, LoanStatus.LIQUIDATED.value, LoanStatus.DEFAULTED.value}
    ),
    LoanStatus.DEFAULTED.value: frozenset({LoanStatus.LIQUIDATED.value}),
}

WITHDRAWAL_TRANSITIONS: Mapping[str, FrozenSet[str]] = {
    WithdrawalStatus.REQUESTED.value: frozenset(
        {WithdrawalStatus.SENT.value, WithdrawalStatus.FAILED.value}
    ),
    WithdrawalStatus.SENT.value: frozenset(
        {WithdrawalStatus.CONFIRMED.value, WithdrawalStatus.FAILED.value}
    ),
    # refunds are decided on the Failed withdrawal itself
    WithdrawalStatus.FAILED.value: frozenset(
        {WithdrawalStatus.REFUND_APPROVED.value, WithdrawalStatus.REFUND_REJECTED.value}
    ),
}


def ensure_transition(
    table: Mapping[str, FrozenSet[str]],
    *,
    entity: str,
    action: str,
    current: str,
    target: str,
) -> None:
    """Raise :class:`InvalidTransitionError` unless *current* -> *target* is legal."""
    if target not in table.get(current, frozenset()):
        raise InvalidTransitionError(entity, action, current)


# ---------------------------------------------------------------------------
# Withdrawal state derivation
# ---------------------------------------------------------------------------

_REFUND_STATES: Dict[str, str] = {
    WithdrawalStatus.REFUND_REQUESTED.value: WithdrawalState.REFUND_REQUESTED.value,
    WithdrawalStatus.REFUND_APPROVED.value: WithdrawalState.REFUND_APPROVED.value,
    WithdrawalStatus.REFUND_REJECTED.value: WithdrawalState.REFUND_REJECTED.value,
}

_STATUS_TO_STATE: Dict[str, str] = {
    WithdrawalStatus.REQUESTED.value: WithdrawalState.REQUESTED.value,
    WithdrawalStatus.SENT.value: WithdrawalState.SENT.value,
    WithdrawalStatus.CONFIRMED.value: WithdrawalState.CONFIRMED.value,
    WithdrawalStatus.FAILED.value: WithdrawalState.FAILED.value,
    **_REFUND_STATES,
}


def derive_withdrawal_state(
    *,
    status: str,
    request_date: Optional[datetime],
    sent_date: Optional[datetime],
    confirmed_date: Optional[datetime],
    failed_date: Optional[datetime],
) -> str:
    """Return the user-facing state of a withdrawal.

    Evaluated in order, first match wins:

    1. refund status (requested/approved/rejected)
    2. ``failed_date`` set -> ``failed``
    3. ``confirmed_date`` set -> ``confirmed``
    4. ``sent_date`` set -> ``sent``
    5. ``request_date`` set and ``sent_date`` unset -> ``requested``
    6. raw ``status`` mapped to its state, or lower-cased when unknown
    """
    if status in _REFUND_STATES:
        return _REFUND_STATES[status]
    if failed_date is not None:
        return WithdrawalState.FAILED.value
    if confirmed_date is not None:
        return WithdrawalState.CONFIRMED.value
    if sent_date is not None:
        return WithdrawalState.SENT.value
    if request_date is not None:
        return WithdrawalState.REQUESTED.value
    return _STATUS_TO_STATE.get(status, status.lower())
