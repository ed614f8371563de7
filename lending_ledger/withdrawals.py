"""Withdrawals to registered beneficiaries and the failure-refund review.

The stored ``status`` column records the last transition; the state users see
is derived from the populated dates by
:func:`lending_ledger.states.derive_withdrawal_state`.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from common.datetime import DateLike, day_bounds, to_utc_naive
from ledger_observability.tracking import track_operation
from lending_ledger.access import ensure_owner, load_for_update
from lending_ledger.config import POLICY, LedgerPolicy
from lending_ledger.db import AuditAction, get_session, log_audit, transaction
from lending_ledger.errors import (BeneficiaryNotFoundError, DuplicateError,
                                   InsufficientBalanceError, InvalidActionError,
                                   InvalidAmountError, InvalidTransitionError,
                                   WithdrawalLimitExceededError,
                                   WithdrawalNotFoundError)
from lending_ledger.ledger import account_balance, get_or_create_account, post_mutation
from lending_ledger.models import Account, Beneficiary, Withdrawal
from lending_ledger.pagination import Page, paginate
from lending_ledger.resolvers import get_currency
from lending_ledger.schemas import RequestWithdrawalParams
from lending_ledger.states import (WITHDRAWAL_TRANSITIONS, MutationType,
                                   WithdrawalState, WithdrawalStatus,
                                   derive_withdrawal_state, ensure_transition)

logger = logging.getLogger(__name__)

_NOT_FOUND = "Withdrawal not found"
_BENEFICIARY_NOT_FOUND = "Beneficiary not found"

# sent amount may exceed the request by at most 10 %
_MAX_SENT_NUMERATOR, _MAX_SENT_DENOMINATOR = 11, 10

_REFUND_STATUSES = (
    WithdrawalStatus.REFUND_REQUESTED.value,
    WithdrawalStatus.REFUND_APPROVED.value,
    WithdrawalStatus.REFUND_REJECTED.value,
)


@dataclass(slots=True, frozen=True)
class WithdrawalView:
    """Read model returned to callers."""

    id: str
    user_id: str
    beneficiary_id: str
    currency_blockchain_key: str
    currency_token_id: str
    state: str
    status: str
    request_amount: int
    sent_amount: Optional[int]
    sent_hash: Optional[str]
    network_fee: Optional[int]
    platform_fee: int
    request_date: datetime
    sent_date: Optional[datetime]
    confirmed_date: Optional[datetime]
    failed_date: Optional[datetime]
    failure_reason: Optional[str]
    refund_requested_date: Optional[datetime]
    failure_refund_reviewer_user_id: Optional[str]
    failure_refund_approved_date: Optional[datetime]
    failure_refund_rejected_date: Optional[datetime]
    failure_refund_rejection_reason: Optional[str]

    @classmethod
    def from_row(cls, row: Withdrawal, platform_fee: int) -> "WithdrawalView":
        return cls(
            id=row.id,
            user_id=row.user_id,
            beneficiary_id=row.beneficiary_id,
            currency_blockchain_key=row.currency_blockchain_key,
            currency_token_id=row.currency_token_id,
            state=derive_withdrawal_state(
                status=row.status,
                request_date=row.request_date,
                sent_date=row.sent_date,
                confirmed_date=row.confirmed_date,
                failed_date=row.failed_date,
            ),
            status=row.status,
            request_amount=row.request_amount,
            sent_amount=row.sent_amount,
            sent_hash=row.sent_hash,
            network_fee=None if row.sent_amount is None else row.request_amount - row.sent_amount,
            platform_fee=platform_fee,
            request_date=row.request_date,
            sent_date=row.sent_date,
            confirmed_date=row.confirmed_date,
            failed_date=row.failed_date,
            failure_reason=row.failure_reason,
            refund_requested_date=row.refund_requested_date,
            failure_refund_reviewer_user_id=row.failure_refund_reviewer_user_id,
            failure_refund_approved_date=row.failure_refund_approved_date,
            failure_refund_rejected_date=row.failure_refund_rejected_date,
            failure_refund_rejection_reason=row.failure_refund_rejection_reason,
        )


def _state_clause(state: str):
    """SQL condition selecting rows whose derived state is *state*."""
    if state in (
        WithdrawalState.REFUND_REQUESTED.value,
        WithdrawalState.REFUND_APPROVED.value,
        WithdrawalState.REFUND_REJECTED.value,
    ):
        status = {
            WithdrawalState.REFUND_REQUESTED.value: WithdrawalStatus.REFUND_REQUESTED.value,
            WithdrawalState.REFUND_APPROVED.value: WithdrawalStatus.REFUND_APPROVED.value,
            WithdrawalState.REFUND_REJECTED.value: WithdrawalStatus.REFUND_REJECTED.value,
        }[state]
        return Withdrawal.status == status

    not_refund = Withdrawal.status.not_in(_REFUND_STATUSES)
    if state == WithdrawalState.FAILED.value:
        return and_(not_refund, Withdrawal.failed_date.is_not(None))
    if state == WithdrawalState.CONFIRMED.value:
        return and_(not_refund, Withdrawal.failed_date.is_(None), Withdrawal.confirmed_date.is_not(None))
    if state == WithdrawalState.SENT.value:
        return and_(
            not_refund,
            Withdrawal.failed_date.is_(None),
            Withdrawal.confirmed_date.is_(None),
            Withdrawal.sent_date.is_not(None),
        )
    if state == WithdrawalState.REQUESTED.value:
        return and_(
            not_refund,
            Withdrawal.failed_date.is_(None),
            Withdrawal.confirmed_date.is_(None),
            Withdrawal.sent_date.is_(None),
        )
    raise InvalidActionError(state)


class WithdrawalService:
    def __init__(self, session: Session | None = None, policy: LedgerPolicy | None = None):
        self.session = session or get_session()
        self.policy = policy or POLICY

    # ---------------------------------------------------------------------
    def register_beneficiary(
        self, user_id: str, blockchain_key: str, token_id: str, address: str
    ) -> Beneficiary:
        with transaction(self.session) as session:
            get_currency(session, blockchain_key, token_id)
            beneficiary = Beneficiary(
                user_id=user_id,
                currency_blockchain_key=blockchain_key,
                currency_token_id=token_id,
                address=address,
            )
            session.add(beneficiary)
        return beneficiary

    @track_operation("withdrawal", "request")
    def request_withdrawal(self, params: RequestWithdrawalParams) -> WithdrawalView:
        """Debit the user's account and record a Requested withdrawal.

        Checks, in order: beneficiary ownership, per-request min/max, the
        daily limit, then the account balance. The account row is locked so
        concurrent requests cannot both spend the same balance.
        """
        requested_at = params.request_date
        with transaction(self.session) as session:
            beneficiary = session.get(Beneficiary, params.beneficiary_id)
            if beneficiary is None:
                raise BeneficiaryNotFoundError(_BENEFICIARY_NOT_FOUND)
            ensure_owner(
                entity="beneficiary",
                entity_id=beneficiary.id,
                owner_id=beneficiary.user_id,
                caller_id=params.user_id,
                message=_BENEFICIARY_NOT_FOUND,
            )
            currency = get_currency(
                session, beneficiary.currency_blockchain_key, beneficiary.currency_token_id
            )
            amount = params.amount
            if currency.min_withdrawal_amount and amount < currency.min_withdrawal_amount:
                raise WithdrawalLimitExceededError(
                    f"Withdrawal amount below minimum {currency.min_withdrawal_amount}"
                )
            if currency.max_withdrawal_amount and amount > currency.max_withdrawal_amount:
                raise WithdrawalLimitExceededError(
                    f"Withdrawal amount above maximum {currency.max_withdrawal_amount}"
                )
            if currency.max_daily_withdrawal_amount:
                used = self._withdrawn_on_day(params.user_id, beneficiary, requested_at)
                if used + amount > currency.max_daily_withdrawal_amount:
                    raise WithdrawalLimitExceededError(
                        f"Daily withdrawal limit {currency.max_daily_withdrawal_amount} exceeded"
                    )

            account = get_or_create_account(
                session, params.user_id, beneficiary.currency_blockchain_key, beneficiary.currency_token_id
            )
            session.exec(select(Account).where(Account.id == account.id).with_for_update()).one()
            available = account_balance(session, account.id)
            if available < amount:
                raise InsufficientBalanceError(amount, available)

            withdrawal = Withdrawal(
                beneficiary_id=beneficiary.id,
                user_id=params.user_id,
                currency_blockchain_key=beneficiary.currency_blockchain_key,
                currency_token_id=beneficiary.currency_token_id,
                request_amount=amount,
                status=WithdrawalStatus.REQUESTED.value,
                request_date=requested_at,
            )
            session.add(withdrawal)
            session.flush()
            post_mutation(
                session, account, MutationType.WITHDRAWAL_REQUESTED,
                -amount, requested_at, withdrawal_id=withdrawal.id,
            )
            log_audit(
                session,
                action=AuditAction.WITHDRAWAL_REQUESTED,
                entity_type="withdrawal",
                entity_id=withdrawal.id,
                event_ts=requested_at,
                actor=params.user_id,
                payload={"amount": str(amount), "beneficiary_id": beneficiary.id},
            )
        return self._view(withdrawal)

    @track_operation("withdrawal", "send")
    def send_withdrawal(
        self, withdrawal_id: str, sent_amount: int, sent_hash: str, sent_date: DateLike
    ) -> WithdrawalView:
        sent_at = to_utc_naive(sent_date)
        with transaction(self.session) as session:
            withdrawal = self._transition(withdrawal_id, "send", WithdrawalStatus.SENT)
            if sent_amount <= 0 or (
                sent_amount * _MAX_SENT_DENOMINATOR
                > withdrawal.request_amount * _MAX_SENT_NUMERATOR
            ):
                raise InvalidAmountError(
                    f"Sent amount {sent_amount} out of range for request {withdrawal.request_amount}"
                )
            clash = session.exec(
                select(Withdrawal.id).where(Withdrawal.sent_hash == sent_hash)
            ).first()
            if clash is not None:
                raise DuplicateError(f"Transaction hash {sent_hash} already used")
            withdrawal.status = WithdrawalStatus.SENT.value
            withdrawal.sent_amount = sent_amount
            withdrawal.sent_hash = sent_hash
            withdrawal.sent_date = sent_at
            session.add(withdrawal)
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateError(f"Transaction hash {sent_hash} already used") from exc
            self._audit(withdrawal, AuditAction.WITHDRAWAL_SENT, sent_at, {"sent_hash": sent_hash})
        return self._view(withdrawal)

    @track_operation("withdrawal", "confirm")
    def confirm_withdrawal(self, withdrawal_id: str, confirmed_date: DateLike) -> WithdrawalView:
        confirmed_at = to_utc_naive(confirmed_date)
        with transaction(self.session) as session:
            withdrawal = self._transition(withdrawal_id, "confirm", WithdrawalStatus.CONFIRMED)
            withdrawal.status = WithdrawalStatus.CONFIRMED.value
            withdrawal.confirmed_date = confirmed_at
            session.add(withdrawal)
            self._audit(withdrawal, AuditAction.WITHDRAWAL_CONFIRMED, confirmed_at)
        return self._view(withdrawal)

    @track_operation("withdrawal", "fail")
    def fail_withdrawal(
        self, withdrawal_id: str, failed_date: DateLike, failure_reason: str
    ) -> WithdrawalView:
        failed_at = to_utc_naive(failed_date)
        with transaction(self.session) as session:
            withdrawal = self._transition(withdrawal_id, "fail", WithdrawalStatus.FAILED)
            withdrawal.status = WithdrawalStatus.FAILED.value
            withdrawal.failed_date = failed_at
            withdrawal.failure_reason = failure_reason
            session.add(withdrawal)
            self._audit(withdrawal, AuditAction.WITHDRAWAL_FAILED, failed_at, {"reason": failure_reason})
        logger.warning(
            "withdrawal %s failed: %s",
            withdrawal.id,
            failure_reason,
            extra={"entity": "withdrawal", "entity_id": withdrawal.id, "user_id": withdrawal.user_id},
        )
        return self._view(withdrawal)

    # ---------------------------------------------------------------------
    # Refund review
    # ---------------------------------------------------------------------
    @track_operation("withdrawal", "request_refund")
    def request_refund(self, withdrawal_id: str, user_id: str, request_date: DateLike) -> WithdrawalView:
        """Flag a Failed withdrawal for refund review.

        The withdrawal stays Failed; only the date is recorded, once.
        """
        requested_at = to_utc_naive(request_date)
        with transaction(self.session) as session:
            withdrawal = self._lock(withdrawal_id)
            self._ensure_user(withdrawal, user_id)
            if (
                withdrawal.status != WithdrawalStatus.FAILED.value
                or withdrawal.refund_requested_date is not None
            ):
                raise InvalidTransitionError("withdrawal", "request refund for", withdrawal.status)
            withdrawal.refund_requested_date = requested_at
            session.add(withdrawal)
            self._audit(withdrawal, AuditAction.REFUND_REQUESTED, requested_at, actor=user_id)
        return self._view(withdrawal)

    @track_operation("withdrawal", "approve_refund")
    def approve_refund(
        self, withdrawal_id: str, reviewer_user_id: str, approved_date: DateLike
    ) -> WithdrawalView:
        """Credit the failed amount back to the user. One decision per withdrawal."""
        approved_at = to_utc_naive(approved_date)
        with transaction(self.session) as session:
            withdrawal = self._lock_for_review(
                withdrawal_id, "approve refund for", WithdrawalStatus.REFUND_APPROVED
            )
            withdrawal.status = WithdrawalStatus.REFUND_APPROVED.value
            withdrawal.failure_refund_reviewer_user_id = reviewer_user_id
            withdrawal.failure_refund_approved_date = approved_at
            session.add(withdrawal)
            account = get_or_create_account(
                session, withdrawal.user_id, withdrawal.currency_blockchain_key, withdrawal.currency_token_id
            )
            post_mutation(
                session, account, MutationType.WITHDRAWAL_REFUNDED,
                withdrawal.request_amount, approved_at, withdrawal_id=withdrawal.id,
            )
            self._audit(withdrawal, AuditAction.REFUND_APPROVED, approved_at, actor=reviewer_user_id)
        return self._view(withdrawal)

    @track_operation("withdrawal", "reject_refund")
    def reject_refund(
        self,
        withdrawal_id: str,
        reviewer_user_id: str,
        rejected_date: DateLike,
        rejection_reason: str,
    ) -> WithdrawalView:
        rejected_at = to_utc_naive(rejected_date)
        with transaction(self.session) as session:
            withdrawal = self._lock_for_review(
                withdrawal_id, "reject refund for", WithdrawalStatus.REFUND_REJECTED
            )
            withdrawal.status = WithdrawalStatus.REFUND_REJECTED.value
            withdrawal.failure_refund_reviewer_user_id = reviewer_user_id
            withdrawal.failure_refund_rejected_date = rejected_at
            withdrawal.failure_refund_rejection_reason = rejection_reason
            session.add(withdrawal)
            self._audit(
                withdrawal, AuditAction.REFUND_REJECTED, rejected_at,
                {"reason": rejection_reason}, actor=reviewer_user_id,
            )
        return self._view(withdrawal)

    # ---------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------
    def get_withdrawal(self, withdrawal_id: str, user_id: str) -> WithdrawalView:
        withdrawal = self.session.get(Withdrawal, withdrawal_id)
        if withdrawal is None:
            raise WithdrawalNotFoundError(_NOT_FOUND)
        self._ensure_user(withdrawal, user_id)
        return self._view(withdrawal)

    def list_withdrawals(
        self,
        user_id: str,
        *,
        state: Optional[str] = None,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
    ) -> Page:
        """User's withdrawals newest first, optionally filtered by derived state."""
        stmt = select(Withdrawal).where(Withdrawal.user_id == user_id)
        if state is not None:
            stmt = stmt.where(_state_clause(state))
        stmt = stmt.order_by(Withdrawal.request_date.desc(), Withdrawal.id.desc())
        result = paginate(self.session, stmt, page, limit)
        result.items = [self._view(row) for row in result.items]
        return result

    # ------------------------------------------------------------------
    def _view(self, withdrawal: Withdrawal) -> WithdrawalView:
        return WithdrawalView.from_row(withdrawal, self.policy.withdrawal_platform_fee)

    def _lock(self, withdrawal_id: str) -> Withdrawal:
        return load_for_update(
            self.session, Withdrawal, Withdrawal.id, withdrawal_id,
            error=WithdrawalNotFoundError, message=_NOT_FOUND,
        )

    def _transition(self, withdrawal_id: str, action: str, target: WithdrawalStatus) -> Withdrawal:
        withdrawal = self._lock(withdrawal_id)
        ensure_transition(
            WITHDRAWAL_TRANSITIONS,
            entity="withdrawal",
            action=action,
            current=withdrawal.status,
            target=target.value,
        )
        return withdrawal

    def _lock_for_review(self, withdrawal_id: str, action: str, target: WithdrawalStatus) -> Withdrawal:
        withdrawal = self._transition(withdrawal_id, action, target)
        if (
            withdrawal.failure_refund_approved_date is not None
            or withdrawal.failure_refund_rejected_date is not None
        ):
            raise InvalidTransitionError("withdrawal", action, withdrawal.status)
        return withdrawal

    @staticmethod
    def _ensure_user(withdrawal: Withdrawal, user_id: str) -> None:
        ensure_owner(
            entity="withdrawal",
            entity_id=withdrawal.id,
            owner_id=withdrawal.user_id,
            caller_id=user_id,
            message=_NOT_FOUND,
        )

    def _withdrawn_on_day(self, user_id: str, beneficiary: Beneficiary, on: datetime) -> int:
        start, end = day_bounds(on)
        amounts = self.session.exec(
            select(Withdrawal.request_amount)
            .where(Withdrawal.user_id == user_id)
            .where(Withdrawal.currency_blockchain_key == beneficiary.currency_blockchain_key)
            .where(Withdrawal.currency_token_id == beneficiary.currency_token_id)
            .where(Withdrawal.request_date >= start)
            .where(Withdrawal.request_date < end)
            .where(
                Withdrawal.status.not_in(
                    [WithdrawalStatus.FAILED.value, WithdrawalStatus.REFUND_APPROVED.value]
                )
            )
        ).all()
        return sum(amounts)

    def _audit(self, withdrawal: Withdrawal, action: AuditAction, at: datetime,
               payload: Optional[dict] = None, *, actor: str = "system") -> None:
        log_audit(
            self.session,
            action=action,
            entity_type="withdrawal",
            entity_id=withdrawal.id,
            event_ts=at,
            actor=actor,
            payload=payload,
        )
