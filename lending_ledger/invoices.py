"""Invoice payments and expiry.

A fully paid invoice drives its owner forward in the same transaction:

* ``LoanPrincipal``      -> offer published, principal escrowed
* ``LoanCollateral``     -> application published, collateral escrowed
* ``LoanRepayment`` / ``LoanEarlyRepayment`` -> loan settled
"""
from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from common.datetime import DateLike, to_utc_naive
from ledger_observability.tracking import track_operation
from lending_ledger.access import load_for_update
from lending_ledger.applications import LoanApplicationService
from lending_ledger.config import POLICY, LedgerPolicy
from lending_ledger.db import AuditAction, get_session, log_audit, transaction
from lending_ledger.errors import (DuplicatePaymentError, InvalidAmountError,
                                   InvalidTransitionError, InvoiceNotFoundError)
from lending_ledger.invoicing import credit_partial_payment
from lending_ledger.ledger import get_or_create_account, post_mutation
from lending_ledger.loans import LoanService
from lending_ledger.models import Invoice, InvoicePayment
from lending_ledger.offers import LoanOfferService
from lending_ledger.pagination import Page, paginate
from lending_ledger.states import InvoiceStatus, InvoiceType, MutationType

logger = logging.getLogger(__name__)

_NOT_FOUND = "Invoice not found"


class InvoiceService:
    def __init__(self, session: Session | None = None, policy: LedgerPolicy | None = None):
        self.session = session or get_session()
        self.policy = policy or POLICY

    @track_operation("invoice", "pay")
    def record_payment(
        self,
        invoice_id: str,
        amount: int,
        payment_hash: str,
        payment_date: DateLike,
    ) -> Invoice:
        """Append a payment; settle the invoice and its owner once fully paid.

        Over-payment is accepted and recorded as paid; only the invoiced
        amount moves the owner forward.
        """
        if amount <= 0:
            raise InvalidAmountError("Payment amount must be positive")
        paid_at = to_utc_naive(payment_date)

        with transaction(self.session) as session:
            invoice = load_for_update(
                session, Invoice, Invoice.id, invoice_id,
                error=InvoiceNotFoundError, message=_NOT_FOUND,
            )
            if invoice.status != InvoiceStatus.PENDING.value:
                raise InvalidTransitionError("invoice", "pay", invoice.status)
            seen = session.exec(
                select(InvoicePayment.id).where(InvoicePayment.payment_hash == payment_hash)
            ).first()
            if seen is not None:
                raise DuplicatePaymentError(f"Payment {payment_hash} already recorded")

            session.add(
                InvoicePayment(
                    invoice_id=invoice.id,
                    payment_hash=payment_hash,
                    amount=amount,
                    payment_date=paid_at,
                )
            )
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicatePaymentError(f"Payment {payment_hash} already recorded") from exc

            invoice.paid_amount += amount
            log_audit(
                session,
                action=AuditAction.INVOICE_PAYMENT_RECORDED,
                entity_type="invoice",
                entity_id=invoice.id,
                event_ts=paid_at,
                payload={"payment_hash": payment_hash, "amount": str(amount)},
            )
            if invoice.paid_amount >= invoice.invoiced_amount:
                self._settle(invoice, paid_at)
            session.add(invoice)
        return invoice

    def expire_overdue_invoices(self, as_of: DateLike) -> List[str]:
        """Pending invoices whose due date has passed -> Expired.

        Partial payments on an expiring invoice are credited to its user.
        """
        as_of_at = to_utc_naive(as_of)
        with transaction(self.session) as session:
            overdue = session.exec(
                select(Invoice)
                .where(Invoice.status == InvoiceStatus.PENDING.value)
                .where(Invoice.due_date < as_of_at)
                .with_for_update()
            ).all()
            for invoice in overdue:
                invoice.status = InvoiceStatus.EXPIRED.value
                invoice.expired_date = as_of_at
                credit_partial_payment(session, invoice, as_of_at)
                session.add(invoice)
                log_audit(
                    session,
                    action=AuditAction.INVOICE_EXPIRED,
                    entity_type="invoice",
                    entity_id=invoice.id,
                    event_ts=as_of_at,
                )
        if overdue:
            logger.info("expired %d invoices", len(overdue), extra={"entity": "invoice"})
        return [invoice.id for invoice in overdue]

    def get_invoice(self, invoice_id: str) -> Invoice:
        invoice = self.session.get(Invoice, invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(_NOT_FOUND)
        return invoice

    def list_invoices(
        self,
        *,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
    ) -> Page:
        stmt = select(Invoice)
        if user_id is not None:
            stmt = stmt.where(Invoice.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Invoice.status == status)
        stmt = stmt.order_by(Invoice.invoice_date.desc(), Invoice.id.desc())
        return paginate(self.session, stmt, page, limit)

    # ------------------------------------------------------------------
    def _settle(self, invoice: Invoice, paid_at) -> None:
        invoice.status = InvoiceStatus.PAID.value
        invoice.paid_date = paid_at
        account = get_or_create_account(
            self.session, invoice.user_id, invoice.currency_blockchain_key, invoice.currency_token_id
        )
        post_mutation(
            self.session,
            account,
            MutationType.INVOICE_RECEIVED,
            invoice.paid_amount,
            paid_at,
            invoice_id=invoice.id,
            loan_offer_id=invoice.loan_offer_id,
            loan_application_id=invoice.loan_application_id,
            loan_id=invoice.loan_id,
        )

        invoice_type = InvoiceType(invoice.invoice_type)
        if invoice_type is InvoiceType.LOAN_PRINCIPAL:
            LoanOfferService(self.session, self.policy).publish_offer(invoice.loan_offer_id, paid_at)
        elif invoice_type is InvoiceType.LOAN_COLLATERAL:
            LoanApplicationService(self.session, self.policy).publish_application(
                invoice.loan_application_id, paid_at
            )
        else:
            LoanService(self.session, self.policy).settle_repayment(invoice.loan_id, paid_at)
        logger.info(
            "invoice %s paid",
            invoice.id,
            extra={"entity": "invoice", "entity_id": invoice.id, "user_id": invoice.user_id},
        )
