"""Loan offer lifecycle: Funding -> Published -> Closed / Expired."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlmodel import Session, select

from common.datetime import DateLike, add_days, to_utc_naive
from ledger_observability.tracking import track_operation
from lending_ledger.access import ensure_owner, load_for_update
from lending_ledger.config import POLICY, LedgerPolicy
from lending_ledger.db import AuditAction, get_session, log_audit, transaction
from lending_ledger.errors import InvalidAmountError, LoanOfferNotFoundError
from lending_ledger.invoicing import cancel_if_pending, create_invoice
from lending_ledger.ledger import get_or_create_account, transfer
from lending_ledger.models import Invoice, LoanOffer
from lending_ledger.pagination import Page, paginate
from lending_ledger.resolvers import get_currency
from lending_ledger.schemas import CreateLoanOfferParams
from lending_ledger.states import (OFFER_TRANSITIONS, AccountType, InvoiceType,
                                   LoanOfferStatus, MutationType,
                                   ensure_transition)

logger = logging.getLogger(__name__)

_NOT_FOUND = "Loan offer not found"


@dataclass(slots=True)
class OfferCreated:
    offer: LoanOffer
    invoice: Invoice


def refresh_available(offer: LoanOffer) -> None:
    """Recompute ``available = offered - disbursed - reserved`` and check bounds.

    Closed and expired offers have already returned their unreserved principal,
    so nothing stays available on them.
    """
    available = (
        offer.offered_principal_amount
        - offer.disbursed_principal_amount
        - offer.reserved_principal_amount
    )
    if available < 0 or available > offer.offered_principal_amount:
        raise InvalidAmountError(
            f"Loan offer {offer.id} available principal out of bounds: {available}"
        )
    if offer.status in (LoanOfferStatus.CLOSED.value, LoanOfferStatus.EXPIRED.value):
        available = 0
    offer.available_principal_amount = available


# ---------------------------------------------------------------------------
# Service class
# ---------------------------------------------------------------------------


class LoanOfferService:
    """Lender-side operations on loan offers."""

    def __init__(self, session: Session | None = None, policy: LedgerPolicy | None = None):
        self.session = session or get_session()
        self.policy = policy or POLICY

    # ---------------------------------------------------------------------
    @track_operation("loan_offer", "create")
    def create_offer(self, params: CreateLoanOfferParams) -> OfferCreated:
        """Insert a Funding offer together with its LoanPrincipal invoice."""
        with transaction(self.session) as session:
            currency = get_currency(
                session, params.principal_blockchain_key, params.principal_token_id
            )
            offered = params.offered_principal_amount
            max_amount = params.max_loan_principal_amount or offered
            min_amount = params.min_loan_principal_amount or min(
                self.policy.default_min_loan_principal_units * 10**currency.decimals,
                max_amount,
            )
            if not 0 < min_amount <= max_amount <= offered:
                raise InvalidAmountError(
                    "Loan bounds must satisfy 0 < min <= max <= offered principal"
                )

            created = params.created_date
            expiration = params.expiration_date or add_days(created, self.policy.offer_expiration_days)
            if expiration <= created:
                raise InvalidAmountError("Expiration date must be after creation date")

            offer = LoanOffer(
                lender_user_id=params.lender_user_id,
                principal_blockchain_key=currency.blockchain_key,
                principal_token_id=currency.token_id,
                offered_principal_amount=offered,
                disbursed_principal_amount=0,
                reserved_principal_amount=0,
                available_principal_amount=offered,
                min_loan_principal_amount=min_amount,
                max_loan_principal_amount=max_amount,
                interest_rate=params.interest_rate,
                term_in_months_options=list(params.term_in_months_options),
                status=LoanOfferStatus.FUNDING.value,
                created_date=created,
                expiration_date=expiration,
            )
            session.add(offer)
            session.flush()

            invoice = create_invoice(
                session,
                invoice_type=InvoiceType.LOAN_PRINCIPAL,
                user_id=offer.lender_user_id,
                blockchain_key=offer.principal_blockchain_key,
                token_id=offer.principal_token_id,
                amount=offered,
                invoice_date=created,
                due_date=expiration,
                loan_offer_id=offer.id,
            )
            log_audit(
                session,
                action=AuditAction.OFFER_CREATED,
                entity_type="loan_offer",
                entity_id=offer.id,
                event_ts=created,
                actor=offer.lender_user_id,
                payload={"offered": str(offered), "invoice_id": invoice.id},
            )
        logger.info(
            "loan offer %s created for %s",
            offer.id,
            offered,
            extra={"entity": "loan_offer", "entity_id": offer.id, "user_id": offer.lender_user_id},
        )
        return OfferCreated(offer=offer, invoice=invoice)

    # ---------------------------------------------------------------------
    @track_operation("loan_offer", "close")
    def close_offer(
        self,
        offer_id: str,
        lender_user_id: str,
        closed_date: DateLike,
        closure_reason: Optional[str] = None,
    ) -> LoanOffer:
        """Lender closes a Funding or Published offer.

        A pending funding invoice is cancelled. For a Published offer the
        unreserved escrowed principal goes back to the lender.
        """
        closed_at = to_utc_naive(closed_date)
        with transaction(self.session) as session:
            offer = self._lock(offer_id)
            ensure_owner(
                entity="loan_offer",
                entity_id=offer.id,
                owner_id=offer.lender_user_id,
                caller_id=lender_user_id,
                message=_NOT_FOUND,
            )
            ensure_transition(
                OFFER_TRANSITIONS,
                entity="offer",
                action="close",
                current=offer.status,
                target=LoanOfferStatus.CLOSED.value,
            )

            if offer.status == LoanOfferStatus.FUNDING.value:
                cancel_if_pending(session, self._funding_invoice(offer.id), closed_at)
            else:
                self._return_escrow(offer, closed_at)

            offer.status = LoanOfferStatus.CLOSED.value
            offer.closed_date = closed_at
            offer.closure_reason = closure_reason
            session.add(offer)
            log_audit(
                session,
                action=AuditAction.OFFER_CLOSED,
                entity_type="loan_offer",
                entity_id=offer.id,
                event_ts=closed_at,
                actor=lender_user_id,
                payload={"reason": closure_reason},
            )
        return offer

    # ---------------------------------------------------------------------
    @track_operation("loan_offer", "publish")
    def publish_offer(self, offer_id: str, published_date: DateLike) -> LoanOffer:
        """Funding -> Published; triggered when the funding invoice is paid."""
        published_at = to_utc_naive(published_date)
        with transaction(self.session) as session:
            offer = self._lock(offer_id)
            ensure_transition(
                OFFER_TRANSITIONS,
                entity="offer",
                action="publish",
                current=offer.status,
                target=LoanOfferStatus.PUBLISHED.value,
            )
            lender = get_or_create_account(
                session, offer.lender_user_id, offer.principal_blockchain_key, offer.principal_token_id
            )
            escrow = get_or_create_account(
                session,
                self.policy.platform_user_id,
                offer.principal_blockchain_key,
                offer.principal_token_id,
                AccountType.PLATFORM_ESCROW,
            )
            transfer(
                session,
                source=lender,
                source_type=MutationType.LOAN_OFFER_PRINCIPAL_ESCROWED,
                destination=escrow,
                destination_type=MutationType.LOAN_PRINCIPAL_FUNDED,
                amount=offer.offered_principal_amount,
                mutation_date=published_at,
                loan_offer_id=offer.id,
            )
            offer.status = LoanOfferStatus.PUBLISHED.value
            offer.published_date = published_at
            session.add(offer)
            log_audit(
                session,
                action=AuditAction.OFFER_PUBLISHED,
                entity_type="loan_offer",
                entity_id=offer.id,
                event_ts=published_at,
            )
        return offer

    # ---------------------------------------------------------------------
    @track_operation("loan_offer", "expire")
    def expire_offer(self, offer_id: str, expired_date: DateLike) -> LoanOffer:
        expired_at = to_utc_naive(expired_date)
        with transaction(self.session) as session:
            offer = self._lock(offer_id)
            self._expire(offer, expired_at)
        return offer

    def expire_due_offers(self, as_of: DateLike) -> List[str]:
        """Expire every non-terminal offer whose expiration date has passed."""
        as_of_at = to_utc_naive(as_of)
        with transaction(self.session) as session:
            due = session.exec(
                select(LoanOffer)
                .where(
                    LoanOffer.status.in_(
                        [LoanOfferStatus.FUNDING.value, LoanOfferStatus.PUBLISHED.value]
                    )
                )
                .where(LoanOffer.expiration_date <= as_of_at)
                .with_for_update()
            ).all()
            for offer in due:
                self._expire(offer, as_of_at)
        expired = [offer.id for offer in due]
        if expired:
            logger.info("expired %d loan offers", len(expired), extra={"entity": "loan_offer"})
        return expired

    # ---------------------------------------------------------------------
    def get_offer(self, offer_id: str, lender_user_id: str) -> LoanOffer:
        offer = self.session.get(LoanOffer, offer_id)
        if offer is None:
            raise LoanOfferNotFoundError(_NOT_FOUND)
        ensure_owner(
            entity="loan_offer",
            entity_id=offer.id,
            owner_id=offer.lender_user_id,
            caller_id=lender_user_id,
            message=_NOT_FOUND,
        )
        return offer

    def list_offers(
        self,
        *,
        lender_user_id: Optional[str] = None,
        status: Optional[str] = None,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
    ) -> Page:
        """Offers newest first, optionally filtered by lender and status."""
        stmt = select(LoanOffer)
        if lender_user_id is not None:
            stmt = stmt.where(LoanOffer.lender_user_id == lender_user_id)
        if status is not None:
            stmt = stmt.where(LoanOffer.status == status)
        stmt = stmt.order_by(LoanOffer.created_date.desc(), LoanOffer.id.desc())
        return paginate(self.session, stmt, page, limit)

    # ------------------------------------------------------------------
    def _lock(self, offer_id: str) -> LoanOffer:
        return load_for_update(
            self.session, LoanOffer, LoanOffer.id, offer_id,
            error=LoanOfferNotFoundError, message=_NOT_FOUND,
        )

    def _funding_invoice(self, offer_id: str) -> Optional[Invoice]:
        return self.session.exec(
            select(Invoice)
            .where(Invoice.loan_offer_id == offer_id)
            .where(Invoice.invoice_type == InvoiceType.LOAN_PRINCIPAL.value)
        ).first()

    def _return_escrow(self, offer: LoanOffer, returned_at: datetime) -> None:
        refundable = offer.available_principal_amount
        if refundable <= 0:
            return
        escrow = get_or_create_account(
            self.session,
            self.policy.platform_user_id,
            offer.principal_blockchain_key,
            offer.principal_token_id,
            AccountType.PLATFORM_ESCROW,
        )
        lender = get_or_create_account(
            self.session, offer.lender_user_id, offer.principal_blockchain_key, offer.principal_token_id
        )
        transfer(
            self.session,
            source=escrow,
            source_type=MutationType.LOAN_PRINCIPAL_RETURNED,
            destination=lender,
            destination_type=MutationType.LOAN_PRINCIPAL_RETURNED,
            amount=refundable,
            mutation_date=returned_at,
            loan_offer_id=offer.id,
        )
        offer.available_principal_amount = 0

    def _expire(self, offer: LoanOffer, expired_at: datetime) -> None:
        ensure_transition(
            OFFER_TRANSITIONS,
            entity="offer",
            action="expire",
            current=offer.status,
            target=LoanOfferStatus.EXPIRED.value,
        )
        if offer.expiration_date > expired_at:
            raise InvalidAmountError(f"Loan offer {offer.id} has not reached its expiration date")
        if offer.status == LoanOfferStatus.FUNDING.value:
            cancel_if_pending(self.session, self._funding_invoice(offer.id), expired_at)
        else:
            self._return_escrow(offer, expired_at)
        offer.status = LoanOfferStatus.EXPIRED.value
        offer.expired_date = expired_at
        self.session.add(offer)
        log_audit(
            self.session,
            action=AuditAction.OFFER_EXPIRED,
            entity_type="loan_offer",
            entity_id=offer.id,
            event_ts=expired_at,
        )
