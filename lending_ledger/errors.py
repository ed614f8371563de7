"""Typed failures raised by ledger operations.

Every error aborts the enclosing transaction; none is caught and suppressed
inside the ledger. Callers map these to transport-level responses.
"""
from __future__ import annotations

from typing import Optional

__all__ = [
    "LedgerError",
    "NotFoundError",
    "CurrencyNotFoundError",
    "CurrencyPairNotFoundError",
    "ConfigNotFoundError",
    "RateNotFoundError",
    "LoanOfferNotFoundError",
    "LoanApplicationNotFoundError",
    "LoanNotFoundError",
    "InvoiceNotFoundError",
    "WithdrawalNotFoundError",
    "BeneficiaryNotFoundError",
    "AccountNotFoundError",
    "AuthorizationMismatchError",
    "InvalidTransitionError",
    "LoanNotActiveError",
    "InvalidActionError",
    "DuplicateError",
    "DuplicateLiquidationError",
    "DuplicateRepaymentError",
    "DuplicatePaymentError",
    "InvalidRequestError",
    "InvalidAmountError",
    "WithdrawalLimitExceededError",
    "InsufficientBalanceError",
    "EarlyRepaymentError",
]


class LedgerError(Exception):
    """Base class for all ledger failures."""

    @property
    def log_message(self) -> str:
        """Message for internal logs; may carry more detail than ``str(exc)``."""
        return str(self)


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(LedgerError):
    pass


class CurrencyNotFoundError(NotFoundError):
    def __init__(self, blockchain_key: str, token_id: str) -> None:
        super().__init__(f"Currency not found: {blockchain_key}/{token_id}")
        self.blockchain_key = blockchain_key
        self.token_id = token_id


class CurrencyPairNotFoundError(NotFoundError):
    pass


class ConfigNotFoundError(NotFoundError):
    pass


class RateNotFoundError(NotFoundError):
    pass


class LoanOfferNotFoundError(NotFoundError):
    pass


class LoanApplicationNotFoundError(NotFoundError):
    pass


class LoanNotFoundError(NotFoundError):
    pass


class InvoiceNotFoundError(NotFoundError):
    pass


class WithdrawalNotFoundError(NotFoundError):
    pass


class BeneficiaryNotFoundError(NotFoundError):
    pass


class AccountNotFoundError(NotFoundError):
    pass


class AuthorizationMismatchError(NotFoundError):
    """The row exists but belongs to someone else.

    ``str(exc)`` is the same text a missing row would produce so callers cannot
    probe for foreign ids; the owner and caller ids stay available for logs.
    """

    def __init__(
        self,
        public_message: str,
        *,
        entity: str,
        entity_id: str,
        owner_id: str,
        caller_id: str,
    ) -> None:
        super().__init__(public_message)
        self.entity = entity
        self.entity_id = entity_id
        self.owner_id = owner_id
        self.caller_id = caller_id

    @property
    def log_message(self) -> str:
        return (
            f"{self.entity} {self.entity_id} owned by {self.owner_id}, "
            f"requested by {self.caller_id}"
        )


# ---------------------------------------------------------------------------
# Transitions and actions
# ---------------------------------------------------------------------------


class InvalidTransitionError(LedgerError):
    """Requested action is not legal from the entity's current status."""

    def __init__(self, entity: str, action: str, current_status: str) -> None:
        super().__init__(f"Cannot {action} {entity} from status: {current_status}")
        self.entity = entity
        self.action = action
        self.current_status = current_status


class LoanNotActiveError(InvalidTransitionError):
    def __init__(self, action: str, current_status: str) -> None:
        super().__init__("loan", action, current_status)


class InvalidActionError(LedgerError):
    def __init__(self, action: str) -> None:
        super().__init__(f"Invalid action: {action}")
        self.action = action


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class DuplicateError(LedgerError):
    pass


class DuplicateLiquidationError(DuplicateError):
    def __init__(self, loan_id: str) -> None:
        super().__init__(f"Liquidation request already exists for loan {loan_id}")
        self.loan_id = loan_id


class DuplicateRepaymentError(DuplicateError):
    def __init__(self, loan_id: str) -> None:
        super().__init__(f"Repayment already settled for loan {loan_id}")
        self.loan_id = loan_id


class DuplicatePaymentError(DuplicateError):
    pass


# ---------------------------------------------------------------------------
# Input / business-rule refusals
# ---------------------------------------------------------------------------


class InvalidRequestError(LedgerError):
    pass


class InvalidAmountError(InvalidRequestError):
    pass


class WithdrawalLimitExceededError(InvalidRequestError):
    pass


class InsufficientBalanceError(InvalidRequestError):
    def __init__(self, required: int, available: int) -> None:
        super().__init__(f"Insufficient balance: required {required}, available {available}")
        self.required = required
        self.available = available


class EarlyRepaymentError(LedgerError):
    """Unexpected failure while requesting early repayment; see ``__cause__``."""

    def __init__(self, cause: Optional[BaseException]) -> None:
        super().__init__(f"Early repayment request failed: {cause}")
