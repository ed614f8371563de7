"""Invoice creation and cancellation inside an owner's transaction."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Session

from ledger_observability.metrics import ledger_invoices_created_total
from lending_ledger.ledger import get_or_create_account, post_mutation
from lending_ledger.models import Invoice
from lending_ledger.states import InvoiceStatus, InvoiceType, MutationType


def create_invoice(
    session: Session,
    *,
    invoice_type: InvoiceType,
    user_id: str,
    blockchain_key: str,
    token_id: str,
    amount: int,
    invoice_date: datetime,
    due_date: datetime,
    loan_offer_id: Optional[str] = None,
    loan_application_id: Optional[str] = None,
    loan_id: Optional[str] = None,
) -> Invoice:
    invoice = Invoice(
        user_id=user_id,
        currency_blockchain_key=blockchain_key,
        currency_token_id=token_id,
        invoice_type=invoice_type.value,
        invoiced_amount=amount,
        paid_amount=0,
        status=InvoiceStatus.PENDING.value,
        invoice_date=invoice_date,
        due_date=due_date,
        loan_offer_id=loan_offer_id,
        loan_application_id=loan_application_id,
        loan_id=loan_id,
    )
    session.add(invoice)
    session.flush()
    ledger_invoices_created_total.labels(invoice_type=invoice_type.value).inc()
    return invoice


def credit_partial_payment(session: Session, invoice: Invoice, credited_date: datetime) -> int:
    """Credit whatever was already paid on an invoice that will never settle.

    Returns the amount credited to the invoiced user's account.
    """
    if invoice.paid_amount <= 0:
        return 0
    account = get_or_create_account(
        session, invoice.user_id, invoice.currency_blockchain_key, invoice.currency_token_id
    )
    post_mutation(
        session,
        account,
        MutationType.INVOICE_RECEIVED,
        invoice.paid_amount,
        credited_date,
        invoice_id=invoice.id,
        loan_offer_id=invoice.loan_offer_id,
        loan_application_id=invoice.loan_application_id,
        loan_id=invoice.loan_id,
    )
    return invoice.paid_amount


def cancel_if_pending(session: Session, invoice: Optional[Invoice], cancelled_date: datetime) -> bool:
    """Cancel *invoice* when it is still awaiting payment. Returns whether it did.

    Partial payments already received are credited back to the payer.
    """
    if invoice is None or invoice.status != InvoiceStatus.PENDING.value:
        return False
    invoice.status = InvoiceStatus.CANCELLED.value
    invoice.cancelled_date = cancelled_date
    credit_partial_payment(session, invoice, cancelled_date)
    session.add(invoice)
    return True
