"""Active loan contract: repayment, liquidation, default."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from common.datetime import DateLike, add_days, to_utc_naive
from ledger_observability.tracking import track_operation
from lending_ledger.access import ensure_owner, load_for_update
from lending_ledger.calculator import (EarlyLiquidationEstimate, EarlyRepaymentQuote,
                                       calculate_early_repayment,
                                       estimate_early_liquidation,
                                       liquidation_target_amount)
from lending_ledger.config import POLICY, LedgerPolicy
from lending_ledger.db import AuditAction, get_session, log_audit, transaction
from lending_ledger.errors import (DuplicateLiquidationError,
                                   DuplicateRepaymentError, EarlyRepaymentError,
                                   InvalidAmountError, InvalidRequestError,
                                   InvalidTransitionError, LedgerError,
                                   LoanNotActiveError, LoanNotFoundError)
from lending_ledger.invoicing import cancel_if_pending, create_invoice
from lending_ledger.ledger import get_or_create_account, post_mutation, transfer
from lending_ledger.models import Invoice, Loan, LoanLiquidation, LoanRepayment
from lending_ledger.pagination import Page, paginate
from lending_ledger.resolvers import get_currency, resolve_exchange_rate
from lending_ledger.states import (LOAN_TRANSITIONS, AccountType, InvoiceStatus,
                                   InvoiceType, LiquidationStatus, LoanStatus,
                                   MutationType, RepaymentInitiator,
                                   ensure_transition)

logger = logging.getLogger(__name__)

_NOT_FOUND = "Loan not found"
_LIQUIDATABLE = (LoanStatus.ACTIVE.value, LoanStatus.ORIGINATED.value)


@dataclass(slots=True)
class RepaymentRequested:
    loan: Loan
    invoice: Invoice
    repayment: LoanRepayment


@dataclass(slots=True)
class EarlyRepaymentRequested:
    loan: Loan
    invoice: Invoice
    repayment: LoanRepayment
    quote: EarlyRepaymentQuote


def _epoch_seconds(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class LoanService:
    """Borrower and settlement operations on loans."""

    def __init__(self, session: Session | None = None, policy: LedgerPolicy | None = None):
        self.session = session or get_session()
        self.policy = policy or POLICY

    # ---------------------------------------------------------------------
    # Queries
    # ---------------------------------------------------------------------
    def get_loan(self, loan_id: str, borrower_user_id: str) -> Loan:
        loan = self.session.get(Loan, loan_id)
        if loan is None:
            raise LoanNotFoundError(_NOT_FOUND)
        self._ensure_borrower(loan, borrower_user_id)
        return loan

    def list_loans(
        self,
        *,
        borrower_user_id: Optional[str] = None,
        lender_user_id: Optional[str] = None,
        status: Optional[str] = None,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
    ) -> Page:
        stmt = select(Loan)
        if borrower_user_id is not None:
            stmt = stmt.where(Loan.borrower_user_id == borrower_user_id)
        if lender_user_id is not None:
            stmt = stmt.where(Loan.lender_user_id == lender_user_id)
        if status is not None:
            stmt = stmt.where(Loan.status == status)
        stmt = stmt.order_by(Loan.origination_date.desc(), Loan.id.desc())
        return paginate(self.session, stmt, page, limit)

    def estimate_early_liquidation(
        self, loan_id: str, borrower_user_id: str, estimate_date: DateLike
    ) -> EarlyLiquidationEstimate:
        """What liquidating now would yield; reads only."""
        estimated_at = to_utc_naive(estimate_date)
        loan = self.get_loan(loan_id, borrower_user_id)
        if loan.status not in _LIQUIDATABLE:
            raise InvalidTransitionError("loan", "estimate liquidation for", loan.status)

        principal_currency = get_currency(
            self.session, loan.principal_blockchain_key, loan.principal_token_id
        )
        collateral_currency = get_currency(
            self.session, loan.collateral_blockchain_key, loan.collateral_token_id
        )
        rate = resolve_exchange_rate(
            self.session,
            collateral_currency.blockchain_key,
            collateral_currency.token_id,
            principal_currency.token_id,
            as_of=estimated_at,
        )
        return estimate_early_liquidation(
            principal_amount=loan.principal_amount,
            interest_amount=loan.interest_amount,
            premi_amount=loan.premi_amount,
            liquidation_fee_amount=loan.liquidation_fee_amount,
            collateral_amount=loan.collateral_amount,
            bid_price=rate.bid_price,
            slippage=self.policy.liquidation_slippage,
            principal_decimals=principal_currency.decimals,
            collateral_decimals=collateral_currency.decimals,
        )

    # ---------------------------------------------------------------------
    # Repayment
    # ---------------------------------------------------------------------
    @track_operation("loan", "repay")
    def repay(self, loan_id: str, borrower_user_id: str, request_date: DateLike) -> RepaymentRequested:
        """Invoice the full repayment amount of an Active loan."""
        requested_at = to_utc_naive(request_date)
        with transaction(self.session) as session:
            loan = self._lock(loan_id)
            self._ensure_borrower(loan, borrower_user_id)
            if loan.status != LoanStatus.ACTIVE.value:
                raise LoanNotActiveError("repay", loan.status)
            invoice, repayment = self._request_repayment(
                loan,
                InvoiceType.LOAN_REPAYMENT,
                requested_at,
                add_days(requested_at, self.policy.repayment_invoice_due_days),
            )
            log_audit(
                session,
                action=AuditAction.REPAYMENT_REQUESTED,
                entity_type="loan",
                entity_id=loan.id,
                event_ts=requested_at,
                actor=borrower_user_id,
                payload={"invoice_id": invoice.id, "amount": str(invoice.invoiced_amount)},
            )
        return RepaymentRequested(loan=loan, invoice=invoice, repayment=repayment)

    @track_operation("loan", "early_repayment")
    def request_early_repayment(
        self,
        loan_id: str,
        borrower_user_id: str,
        request_date: DateLike,
        *,
        acknowledgment: bool = True,
    ) -> EarlyRepaymentRequested:
        """Invoice an Active loan for settlement before maturity.

        The full ``repayment_amount`` is charged whatever the elapsed term;
        ``remaining_term_days`` on the quote is informational. Unexpected
        failures are re-raised as :class:`EarlyRepaymentError` after rollback.
        """
        if not acknowledgment:
            raise InvalidRequestError("You must acknowledge the terms and conditions")
        requested_at = to_utc_naive(request_date)
        try:
            with transaction(self.session) as session:
                loan = self._lock(loan_id)
                self._ensure_borrower(loan, borrower_user_id)
                if loan.status != LoanStatus.ACTIVE.value:
                    raise LoanNotActiveError("request early repayment for", loan.status)
                quote = calculate_early_repayment(
                    loan.repayment_amount, loan.origination_date, loan.maturity_date, requested_at
                )
                invoice, repayment = self._request_repayment(
                    loan,
                    InvoiceType.LOAN_EARLY_REPAYMENT,
                    requested_at,
                    add_days(requested_at, self.policy.early_repayment_invoice_due_days),
                )
                log_audit(
                    session,
                    action=AuditAction.EARLY_REPAYMENT_REQUESTED,
                    entity_type="loan",
                    entity_id=loan.id,
                    event_ts=requested_at,
                    actor=borrower_user_id,
                    payload={
                        "invoice_id": invoice.id,
                        "amount": str(quote.repayment_amount),
                        "remaining_term_days": quote.remaining_term_days,
                    },
                )
        except LedgerError:
            raise
        except Exception as exc:
            raise EarlyRepaymentError(exc) from exc
        return EarlyRepaymentRequested(loan=loan, invoice=invoice, repayment=repayment, quote=quote)

    @track_operation("loan", "settle_repayment")
    def settle_repayment(self, loan_id: str, settled_date: DateLike) -> Loan:
        """Active -> Repaid once the repayment invoice is paid.

        The borrower pays ``repayment_amount``; the lender receives the
        redelivery amount, the platform keeps the remainder, and the
        collateral leaves escrow back to the borrower.
        """
        settled_at = to_utc_naive(settled_date)
        with transaction(self.session) as session:
            loan = self._lock(loan_id)
            if loan.status != LoanStatus.ACTIVE.value:
                raise LoanNotActiveError("settle repayment for", loan.status)
            key, token = loan.principal_blockchain_key, loan.principal_token_id
            borrower = get_or_create_account(session, loan.borrower_user_id, key, token)
            lender = get_or_create_account(session, loan.lender_user_id, key, token)
            fees = get_or_create_account(
                session, self.policy.platform_user_id, key, token, AccountType.PLATFORM_FEES
            )
            post_mutation(
                session, borrower, MutationType.LOAN_REPAYMENT,
                -loan.repayment_amount, settled_at, loan_id=loan.id,
            )
            post_mutation(
                session, lender, MutationType.LOAN_REPAYMENT_RECEIVED,
                loan.redelivery_amount, settled_at, loan_id=loan.id,
            )
            platform_share = loan.repayment_amount - loan.redelivery_amount
            if platform_share:
                post_mutation(
                    session, fees, MutationType.LOAN_RETURN_FEE,
                    platform_share, settled_at, loan_id=loan.id,
                )

            escrow = get_or_create_account(
                session,
                self.policy.platform_user_id,
                loan.collateral_blockchain_key,
                loan.collateral_token_id,
                AccountType.PLATFORM_ESCROW,
            )
            collateral_owner = get_or_create_account(
                session, loan.borrower_user_id, loan.collateral_blockchain_key, loan.collateral_token_id
            )
            transfer(
                session,
                source=escrow,
                source_type=MutationType.LOAN_COLLATERAL_RELEASED,
                destination=collateral_owner,
                destination_type=MutationType.LOAN_COLLATERAL_RELEASED,
                amount=loan.collateral_amount,
                mutation_date=settled_at,
                loan_id=loan.id,
            )

            loan.status = LoanStatus.REPAID.value
            loan.concluded_date = settled_at
            loan.conclusion_reason = "Repaid"
            session.add(loan)
            log_audit(
                session,
                action=AuditAction.LOAN_REPAID,
                entity_type="loan",
                entity_id=loan.id,
                event_ts=settled_at,
                payload={"redelivery": str(loan.redelivery_amount), "platform": str(platform_share)},
            )
        logger.info(
            "loan %s repaid",
            loan.id,
            extra={"entity": "loan", "entity_id": loan.id, "user_id": loan.borrower_user_id},
        )
        return loan

    # ---------------------------------------------------------------------
    # Liquidation
    # ---------------------------------------------------------------------
    @track_operation("loan", "early_liquidation")
    def request_early_liquidation(
        self,
        loan_id: str,
        borrower_user_id: str,
        request_date: DateLike,
        *,
        acknowledgment: bool = True,
    ) -> LoanLiquidation:
        """Borrower asks for their collateral to be sold. At most once per loan."""
        if not acknowledgment:
            raise InvalidRequestError("You must acknowledge the terms and conditions")
        requested_at = to_utc_naive(request_date)
        with transaction(self.session):
            loan = self._lock(loan_id)
            self._ensure_borrower(loan, borrower_user_id)
            if loan.status not in _LIQUIDATABLE:
                raise InvalidTransitionError("loan", "request liquidation for", loan.status)
            liquidation = self._insert_liquidation(
                loan,
                RepaymentInitiator.BORROWER,
                requested_at,
                f"borrower_liquidation_{loan.id}_{_epoch_seconds(requested_at)}",
            )
        return liquidation

    @track_operation("loan", "liquidation")
    def request_liquidation(self, loan_id: str, request_date: DateLike) -> LoanLiquidation:
        """Platform-initiated liquidation, also allowed for Defaulted loans."""
        requested_at = to_utc_naive(request_date)
        with transaction(self.session):
            loan = self._lock(loan_id)
            ensure_transition(
                LOAN_TRANSITIONS,
                entity="loan",
                action="request liquidation for",
                current=loan.status,
                target=LoanStatus.LIQUIDATED.value,
            )
            liquidation = self._insert_liquidation(
                loan,
                RepaymentInitiator.SYSTEM,
                requested_at,
                f"system_liquidation_{loan.id}_{_epoch_seconds(requested_at)}",
            )
        return liquidation

    @track_operation("loan", "liquidation_outcome")
    def record_liquidation_outcome(
        self,
        loan_id: str,
        outcome_date: DateLike,
        fulfilled: bool,
        *,
        order_quantity: Optional[int] = None,
        order_price: Optional[Decimal] = None,
        failure_reason: Optional[str] = None,
    ) -> LoanLiquidation:
        """Settle a Pending liquidation as Fulfilled (loan -> Liquidated) or Failed.

        Only the order outcome is recorded. A Liquidated loan's collateral stays
        in platform escrow until the market sale is settled externally.
        """
        outcome_at = to_utc_naive(outcome_date)
        with transaction(self.session) as session:
            loan = self._lock(loan_id)
            liquidation = session.exec(
                select(LoanLiquidation).where(LoanLiquidation.loan_id == loan.id).with_for_update()
            ).first()
            if liquidation is None:
                raise LoanNotFoundError(f"No liquidation requested for loan {loan.id}")
            if liquidation.status != LiquidationStatus.PENDING.value:
                raise InvalidTransitionError("liquidation", "settle", liquidation.status)

            if fulfilled:
                ensure_transition(
                    LOAN_TRANSITIONS,
                    entity="loan",
                    action="liquidate",
                    current=loan.status,
                    target=LoanStatus.LIQUIDATED.value,
                )
                liquidation.status = LiquidationStatus.FULFILLED.value
                liquidation.fulfilled_date = outcome_at
                liquidation.order_quantity = order_quantity
                liquidation.order_price = order_price
                loan.status = LoanStatus.LIQUIDATED.value
                loan.concluded_date = outcome_at
                loan.conclusion_reason = "Liquidated"
                session.add(loan)
            else:
                liquidation.status = LiquidationStatus.FAILED.value
                liquidation.failed_date = outcome_at
                liquidation.failure_reason = failure_reason
            session.add(liquidation)
            log_audit(
                session,
                action=AuditAction.LIQUIDATION_SETTLED,
                entity_type="loan",
                entity_id=loan.id,
                event_ts=outcome_at,
                payload={"status": liquidation.status, "reason": failure_reason},
            )
        return liquidation

    @track_operation("loan", "default")
    def mark_defaulted(self, loan_id: str, default_date: DateLike) -> Loan:
        """Active loan past maturity -> Defaulted."""
        defaulted_at = to_utc_naive(default_date)
        with transaction(self.session) as session:
            loan = self._lock(loan_id)
            ensure_transition(
                LOAN_TRANSITIONS,
                entity="loan",
                action="default",
                current=loan.status,
                target=LoanStatus.DEFAULTED.value,
            )
            if loan.maturity_date > defaulted_at:
                raise InvalidAmountError(f"Loan {loan.id} has not reached maturity")
            loan.status = LoanStatus.DEFAULTED.value
            loan.concluded_date = defaulted_at
            loan.conclusion_reason = "Defaulted"
            session.add(loan)
            log_audit(
                session,
                action=AuditAction.LOAN_DEFAULTED,
                entity_type="loan",
                entity_id=loan.id,
                event_ts=defaulted_at,
            )
        logger.warning(
            "loan %s defaulted",
            loan.id,
            extra={"entity": "loan", "entity_id": loan.id, "user_id": loan.borrower_user_id},
        )
        return loan

    # ------------------------------------------------------------------
    def _lock(self, loan_id: str) -> Loan:
        return load_for_update(
            self.session, Loan, Loan.id, loan_id, error=LoanNotFoundError, message=_NOT_FOUND
        )

    @staticmethod
    def _ensure_borrower(loan: Loan, borrower_user_id: str) -> None:
        ensure_owner(
            entity="loan",
            entity_id=loan.id,
            owner_id=loan.borrower_user_id,
            caller_id=borrower_user_id,
            message=_NOT_FOUND,
        )

    def _request_repayment(
        self,
        loan: Loan,
        invoice_type: InvoiceType,
        requested_at: datetime,
        due_date: datetime,
    ) -> tuple[Invoice, LoanRepayment]:
        """Create the repayment invoice and insert or overwrite the loan's repayment row.

        An earlier request whose invoice is still pending is cancelled and
        replaced; one already paid is a duplicate.
        """
        session = self.session
        existing = session.exec(
            select(LoanRepayment).where(LoanRepayment.loan_id == loan.id).with_for_update()
        ).first()
        if existing is not None:
            previous = session.get(Invoice, existing.repayment_invoice_id)
            if previous is not None and previous.status == InvoiceStatus.PAID.value:
                raise DuplicateRepaymentError(loan.id)
            cancel_if_pending(session, previous, requested_at)

        invoice = create_invoice(
            session,
            invoice_type=invoice_type,
            user_id=loan.borrower_user_id,
            blockchain_key=loan.principal_blockchain_key,
            token_id=loan.principal_token_id,
            amount=loan.repayment_amount,
            invoice_date=requested_at,
            due_date=due_date,
            loan_id=loan.id,
        )
        if existing is None:
            repayment = LoanRepayment(
                loan_id=loan.id,
                repayment_initiator=RepaymentInitiator.BORROWER.value,
                repayment_invoice_id=invoice.id,
                repayment_invoice_date=requested_at,
            )
        else:
            repayment = existing
            repayment.repayment_initiator = RepaymentInitiator.BORROWER.value
            repayment.repayment_invoice_id = invoice.id
            repayment.repayment_invoice_date = requested_at
        session.add(repayment)
        try:
            session.flush()
        except IntegrityError as exc:
            raise DuplicateRepaymentError(loan.id) from exc
        return invoice, repayment

    def _insert_liquidation(
        self,
        loan: Loan,
        initiator: RepaymentInitiator,
        requested_at: datetime,
        order_ref: str,
    ) -> LoanLiquidation:
        existing = self.session.exec(
            select(LoanLiquidation.loan_id).where(LoanLiquidation.loan_id == loan.id)
        ).first()
        if existing is not None:
            raise DuplicateLiquidationError(loan.id)

        liquidation = LoanLiquidation(
            loan_id=loan.id,
            liquidation_initiator=initiator.value,
            liquidation_target_amount=liquidation_target_amount(
                loan.repayment_amount, loan.premi_amount, loan.liquidation_fee_amount
            ),
            market_provider=self.policy.liquidation_market_provider,
            market_symbol=self.policy.liquidation_market_symbol,
            order_ref=order_ref,
            status=LiquidationStatus.PENDING.value,
            order_date=requested_at,
        )
        self.session.add(liquidation)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise DuplicateLiquidationError(loan.id) from exc
        log_audit(
            self.session,
            action=AuditAction.LIQUIDATION_REQUESTED,
            entity_type="loan",
            entity_id=loan.id,
            event_ts=requested_at,
            actor=loan.borrower_user_id if initiator is RepaymentInitiator.BORROWER else "system",
            payload={
                "order_ref": order_ref,
                "target": str(liquidation.liquidation_target_amount),
            },
        )
        logger.info(
            "liquidation %s requested for loan %s",
            order_ref,
            loan.id,
            extra={"entity": "loan", "entity_id": loan.id},
        )
        return liquidation
