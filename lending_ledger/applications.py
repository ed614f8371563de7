"""Loan application lifecycle: PendingCollateral -> Published -> Matched.

Collateral deposit and provision are sized once, at creation, from the
exchange rate and platform config in force at ``applied_date``. Nothing
later rewrites them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlmodel import Session, select

from common.datetime import DateLike, add_days, to_utc_naive
from ledger_observability.tracking import track_operation
from lending_ledger.access import ensure_owner, load_for_update
from lending_ledger.calculator import LoanRequirements, calculate_requirements
from lending_ledger.config import POLICY, LedgerPolicy
from lending_ledger.db import AuditAction, get_session, log_audit, transaction
from lending_ledger.errors import (InvalidActionError, InvalidAmountError,
                                   InvalidTransitionError,
                                   LoanApplicationNotFoundError,
                                   LoanOfferNotFoundError)
from lending_ledger.invoicing import cancel_if_pending, create_invoice
from lending_ledger.ledger import get_or_create_account, transfer
from lending_ledger.models import (Currency, Invoice, Loan, LoanApplication,
                                   LoanOffer)
from lending_ledger.offers import refresh_available
from lending_ledger.pagination import Page, paginate
from lending_ledger.resolvers import (ResolvedRate, get_currency_pair,
                                      resolve_exchange_rate,
                                      resolve_platform_config)
from lending_ledger.schemas import CreateLoanApplicationParams
from lending_ledger.states import (APPLICATION_TRANSITIONS, AccountType,
                                   InvoiceType, LoanApplicationStatus,
                                   LoanOfferStatus, MutationType,
                                   ensure_transition)

logger = logging.getLogger(__name__)

_NOT_FOUND = "Loan application not found"

ACTION_CANCEL = "cancel"
ACTION_MODIFY = "modify"


@dataclass(slots=True)
class ApplicationCreated:
    application: LoanApplication
    invoice: Invoice
    requirements: LoanRequirements


@dataclass(slots=True)
class _Quote:
    principal: Currency
    collateral: Currency
    rate: ResolvedRate
    requirements: LoanRequirements


class LoanApplicationService:
    """Borrower-side operations on loan applications."""

    def __init__(self, session: Session | None = None, policy: LedgerPolicy | None = None):
        self.session = session or get_session()
        self.policy = policy or POLICY

    # ---------------------------------------------------------------------
    def calculate(
        self,
        *,
        principal_blockchain_key: str,
        principal_token_id: str,
        collateral_blockchain_key: str,
        collateral_token_id: str,
        principal_amount: int,
        term_in_months: int,
        as_of: DateLike,
    ) -> LoanRequirements:
        """Read-only quote for a prospective application."""
        return self._quote(
            principal=(principal_blockchain_key, principal_token_id),
            collateral=(collateral_blockchain_key, collateral_token_id),
            principal_amount=principal_amount,
            term_in_months=term_in_months,
            as_of=to_utc_naive(as_of),
        ).requirements

    # ---------------------------------------------------------------------
    @track_operation("loan_application", "create")
    def create_application(self, params: CreateLoanApplicationParams) -> ApplicationCreated:
        """Insert a PendingCollateral application plus its LoanCollateral invoice.

        Currency pair, config and rate are all resolved before the first
        write, so a missing one leaves no trace.
        """
        applied = params.applied_date
        with transaction(self.session) as session:
            quote = self._quote(
                principal=(params.principal_blockchain_key, params.principal_token_id),
                collateral=(params.collateral_blockchain_key, params.collateral_token_id),
                principal_amount=params.principal_amount,
                term_in_months=params.term_in_months,
                as_of=applied,
            )
            self._check_principal_bounds(quote.principal, params.principal_amount)
            if params.loan_offer_id is not None:
                self._check_against_offer(params)

            expiration = params.expiration_date or add_days(
                applied, self.policy.application_expiration_days
            )
            if expiration <= applied:
                raise InvalidAmountError("Expiration date must be after applied date")

            requirements = quote.requirements
            application = LoanApplication(
                borrower_user_id=params.borrower_user_id,
                loan_offer_id=params.loan_offer_id,
                principal_blockchain_key=quote.principal.blockchain_key,
                principal_token_id=quote.principal.token_id,
                collateral_blockchain_key=quote.collateral.blockchain_key,
                collateral_token_id=quote.collateral.token_id,
                principal_amount=params.principal_amount,
                provision_amount=requirements.provision_amount,
                max_interest_rate=params.max_interest_rate,
                min_ltv_ratio=requirements.min_ltv_ratio,
                max_ltv_ratio=requirements.max_ltv_ratio,
                term_in_months=params.term_in_months,
                liquidation_mode=params.liquidation_mode.value,
                collateral_deposit_amount=requirements.required_collateral_amount,
                collateral_deposit_exchange_rate_id=quote.rate.exchange_rate_id,
                status=LoanApplicationStatus.PENDING_COLLATERAL.value,
                applied_date=applied,
                expiration_date=expiration,
            )
            session.add(application)
            session.flush()

            invoice = create_invoice(
                session,
                invoice_type=InvoiceType.LOAN_COLLATERAL,
                user_id=application.borrower_user_id,
                blockchain_key=application.collateral_blockchain_key,
                token_id=application.collateral_token_id,
                amount=application.collateral_deposit_amount,
                invoice_date=applied,
                due_date=expiration,
                loan_application_id=application.id,
            )
            log_audit(
                session,
                action=AuditAction.APPLICATION_CREATED,
                entity_type="loan_application",
                entity_id=application.id,
                event_ts=applied,
                actor=application.borrower_user_id,
                payload={
                    "principal": str(application.principal_amount),
                    "collateral": str(application.collateral_deposit_amount),
                    "provision": str(application.provision_amount),
                    "exchange_rate_id": quote.rate.exchange_rate_id,
                },
            )
        logger.info(
            "loan application %s created, collateral %s",
            application.id,
            application.collateral_deposit_amount,
            extra={"entity": "loan_application", "entity_id": application.id},
        )
        return ApplicationCreated(application=application, invoice=invoice, requirements=requirements)

    # ---------------------------------------------------------------------
    @track_operation("loan_application", "update")
    def update_application(
        self,
        application_id: str,
        borrower_user_id: str,
        action: str,
        update_date: DateLike,
        *,
        closure_reason: Optional[str] = None,
        expiration_date: Optional[DateLike] = None,
    ) -> LoanApplication:
        """``cancel`` (PendingCollateral/Published -> Closed) or ``modify``.

        ``modify`` is only allowed while collateral is pending and can only
        push the expiration date later; every other field is frozen.
        """
        if action not in (ACTION_CANCEL, ACTION_MODIFY):
            raise InvalidActionError(action)
        updated_at = to_utc_naive(update_date)

        with transaction(self.session) as session:
            application = self._lock(application_id)
            ensure_owner(
                entity="loan_application",
                entity_id=application.id,
                owner_id=application.borrower_user_id,
                caller_id=borrower_user_id,
                message=_NOT_FOUND,
            )
            if action == ACTION_CANCEL:
                self._cancel(application, updated_at, closure_reason)
            else:
                self._modify(application, updated_at, expiration_date)
        return application

    # ---------------------------------------------------------------------
    @track_operation("loan_application", "publish")
    def publish_application(self, application_id: str, published_date: DateLike) -> LoanApplication:
        """PendingCollateral -> Published once the collateral invoice is paid."""
        published_at = to_utc_naive(published_date)
        with transaction(self.session) as session:
            application = self._lock(application_id)
            ensure_transition(
                APPLICATION_TRANSITIONS,
                entity="application",
                action="publish",
                current=application.status,
                target=LoanApplicationStatus.PUBLISHED.value,
            )
            borrower = get_or_create_account(
                session,
                application.borrower_user_id,
                application.collateral_blockchain_key,
                application.collateral_token_id,
            )
            escrow = get_or_create_account(
                session,
                self.policy.platform_user_id,
                application.collateral_blockchain_key,
                application.collateral_token_id,
                AccountType.PLATFORM_ESCROW,
            )
            transfer(
                session,
                source=borrower,
                source_type=MutationType.LOAN_COLLATERAL_DEPOSIT,
                destination=escrow,
                destination_type=MutationType.LOAN_COLLATERAL_DEPOSIT,
                amount=application.collateral_deposit_amount,
                mutation_date=published_at,
                loan_application_id=application.id,
            )
            application.status = LoanApplicationStatus.PUBLISHED.value
            application.published_date = published_at
            application.collateral_prepaid_amount = application.collateral_deposit_amount
            session.add(application)
            log_audit(
                session,
                action=AuditAction.APPLICATION_PUBLISHED,
                entity_type="loan_application",
                entity_id=application.id,
                event_ts=published_at,
            )
        return application

    # ---------------------------------------------------------------------
    @track_operation("loan_application", "expire")
    def expire_application(self, application_id: str, expired_date: DateLike) -> LoanApplication:
        expired_at = to_utc_naive(expired_date)
        with transaction(self.session):
            application = self._lock(application_id)
            self._expire(application, expired_at)
        return application

    def expire_due_applications(self, as_of: DateLike) -> List[str]:
        """Expire PendingCollateral/Published applications past their expiration."""
        as_of_at = to_utc_naive(as_of)
        with transaction(self.session) as session:
            due = session.exec(
                select(LoanApplication)
                .where(
                    LoanApplication.status.in_(
                        [
                            LoanApplicationStatus.PENDING_COLLATERAL.value,
                            LoanApplicationStatus.PUBLISHED.value,
                        ]
                    )
                )
                .where(LoanApplication.expiration_date <= as_of_at)
                .with_for_update()
            ).all()
            for application in due:
                self._expire(application, as_of_at)
        return [application.id for application in due]

    # ---------------------------------------------------------------------
    def get_application(self, application_id: str, borrower_user_id: str) -> LoanApplication:
        application = self.session.get(LoanApplication, application_id)
        if application is None:
            raise LoanApplicationNotFoundError(_NOT_FOUND)
        ensure_owner(
            entity="loan_application",
            entity_id=application.id,
            owner_id=application.borrower_user_id,
            caller_id=borrower_user_id,
            message=_NOT_FOUND,
        )
        return application

    def list_applications(
        self,
        *,
        borrower_user_id: Optional[str] = None,
        status: Optional[str] = None,
        page: Optional[int] = 1,
        limit: Optional[int] = None,
    ) -> Page:
        """Applications newest first (by applied date)."""
        stmt = select(LoanApplication)
        if borrower_user_id is not None:
            stmt = stmt.where(LoanApplication.borrower_user_id == borrower_user_id)
        if status is not None:
            stmt = stmt.where(LoanApplication.status == status)
        stmt = stmt.order_by(LoanApplication.applied_date.desc(), LoanApplication.id.desc())
        return paginate(self.session, stmt, page, limit)

    # ------------------------------------------------------------------
    def _quote(
        self,
        *,
        principal: tuple,
        collateral: tuple,
        principal_amount: int,
        term_in_months: int,
        as_of: datetime,
    ) -> _Quote:
        principal_currency, collateral_currency = get_currency_pair(self.session, principal, collateral)
        config = resolve_platform_config(self.session, as_of)
        rate = resolve_exchange_rate(
            self.session,
            collateral_currency.blockchain_key,
            collateral_currency.token_id,
            principal_currency.token_id,
            as_of=as_of,
        )
        requirements = calculate_requirements(
            principal_amount,
            term_in_months,
            config,
            rate,
            principal_decimals=principal_currency.decimals,
            collateral_decimals=collateral_currency.decimals,
        )
        return _Quote(principal_currency, collateral_currency, rate, requirements)

    @staticmethod
    def _check_principal_bounds(currency: Currency, amount: int) -> None:
        low = currency.min_application_principal_amount
        high = currency.max_application_principal_amount
        if low and amount < low:
            raise InvalidAmountError(f"Principal amount below minimum {low}")
        if high and amount > high:
            raise InvalidAmountError(f"Principal amount above maximum {high}")

    def _check_against_offer(self, params: CreateLoanApplicationParams) -> None:
        offer = self.session.get(LoanOffer, params.loan_offer_id)
        if offer is None:
            raise LoanOfferNotFoundError("Loan offer not found")
        if (offer.principal_blockchain_key, offer.principal_token_id) != (
            params.principal_blockchain_key,
            params.principal_token_id,
        ):
            raise InvalidAmountError("Loan offer uses a different principal currency")
        if params.term_in_months not in offer.term_in_months_options:
            raise InvalidAmountError(
                f"Term {params.term_in_months} not offered; options: {offer.term_in_months_options}"
            )
        if not offer.min_loan_principal_amount <= params.principal_amount <= offer.max_loan_principal_amount:
            raise InvalidAmountError("Principal amount outside the loan offer bounds")

    def _lock(self, application_id: str) -> LoanApplication:
        return load_for_update(
            self.session, LoanApplication, LoanApplication.id, application_id,
            error=LoanApplicationNotFoundError, message=_NOT_FOUND,
        )

    def _collateral_invoice(self, application_id: str) -> Optional[Invoice]:
        return self.session.exec(
            select(Invoice)
            .where(Invoice.loan_application_id == application_id)
            .where(Invoice.invoice_type == InvoiceType.LOAN_COLLATERAL.value)
        ).first()

    def _release_collateral(self, application: LoanApplication, released_at: datetime) -> None:
        if application.collateral_prepaid_amount <= 0:
            return
        escrow = get_or_create_account(
            self.session,
            self.policy.platform_user_id,
            application.collateral_blockchain_key,
            application.collateral_token_id,
            AccountType.PLATFORM_ESCROW,
        )
        borrower = get_or_create_account(
            self.session,
            application.borrower_user_id,
            application.collateral_blockchain_key,
            application.collateral_token_id,
        )
        transfer(
            self.session,
            source=escrow,
            source_type=MutationType.LOAN_COLLATERAL_RELEASED,
            destination=borrower,
            destination_type=MutationType.LOAN_COLLATERAL_RELEASED,
            amount=application.collateral_prepaid_amount,
            mutation_date=released_at,
            loan_application_id=application.id,
        )

    def _release_reservation(self, application: LoanApplication, released_at: datetime) -> None:
        """Give a matched application's reserved principal back to its offer.

        A closed or expired offer no longer lends, so the principal returns to
        the lender instead.
        """
        offer = load_for_update(
            self.session, LoanOffer, LoanOffer.id, application.matched_loan_offer_id,
            error=LoanOfferNotFoundError, message="Loan offer not found",
        )
        offer.reserved_principal_amount -= application.principal_amount
        if offer.status in (LoanOfferStatus.CLOSED.value, LoanOfferStatus.EXPIRED.value):
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
                amount=application.principal_amount,
                mutation_date=released_at,
                loan_offer_id=offer.id,
                loan_application_id=application.id,
            )
        refresh_available(offer)
        self.session.add(offer)

    def _wind_down(self, application: LoanApplication, at: datetime) -> None:
        """Undo the money side of an application that will never become a loan."""
        if application.status == LoanApplicationStatus.PENDING_COLLATERAL.value:
            cancel_if_pending(self.session, self._collateral_invoice(application.id), at)
        elif application.status == LoanApplicationStatus.PUBLISHED.value:
            self._release_collateral(application, at)
        elif application.status == LoanApplicationStatus.MATCHED.value:
            originated = self.session.exec(
                select(Loan.id).where(Loan.loan_application_id == application.id)
            ).first()
            if originated is not None:
                raise InvalidTransitionError("application", "expire", application.status)
            self._release_reservation(application, at)
            self._release_collateral(application, at)

    def _cancel(self, application: LoanApplication, closed_at: datetime, reason: Optional[str]) -> None:
        if application.status not in (
            LoanApplicationStatus.PENDING_COLLATERAL.value,
            LoanApplicationStatus.PUBLISHED.value,
        ):
            raise InvalidTransitionError("application", "cancel", application.status)
        self._wind_down(application, closed_at)
        application.status = LoanApplicationStatus.CLOSED.value
        application.closed_date = closed_at
        application.closure_reason = reason
        self.session.add(application)
        log_audit(
            self.session,
            action=AuditAction.APPLICATION_CANCELLED,
            entity_type="loan_application",
            entity_id=application.id,
            event_ts=closed_at,
            actor=application.borrower_user_id,
            payload={"reason": reason},
        )

    def _modify(
        self,
        application: LoanApplication,
        modified_at: datetime,
        expiration_date: Optional[DateLike],
    ) -> None:
        if application.status != LoanApplicationStatus.PENDING_COLLATERAL.value:
            raise InvalidTransitionError("application", "modify", application.status)
        if expiration_date is None:
            return
        new_expiration = to_utc_naive(expiration_date)
        if new_expiration <= application.expiration_date:
            raise InvalidAmountError("Expiration date can only be extended")
        previous = application.expiration_date
        application.expiration_date = new_expiration
        self.session.add(application)
        invoice = self._collateral_invoice(application.id)
        if invoice is not None and invoice.due_date == previous:
            invoice.due_date = new_expiration
            self.session.add(invoice)
        log_audit(
            self.session,
            action=AuditAction.APPLICATION_MODIFIED,
            entity_type="loan_application",
            entity_id=application.id,
            event_ts=modified_at,
            actor=application.borrower_user_id,
            payload={"expiration_date": new_expiration.isoformat()},
        )

    def _expire(self, application: LoanApplication, expired_at: datetime) -> None:
        ensure_transition(
            APPLICATION_TRANSITIONS,
            entity="application",
            action="expire",
            current=application.status,
            target=LoanApplicationStatus.EXPIRED.value,
        )
        if application.expiration_date > expired_at:
            raise InvalidAmountError(
                f"Loan application {application.id} has not reached its expiration date"
            )
        self._wind_down(application, expired_at)
        application.status = LoanApplicationStatus.EXPIRED.value
        application.expired_date = expired_at
        self.session.add(application)
        log_audit(
            self.session,
            action=AuditAction.APPLICATION_EXPIRED,
            entity_type="loan_application",
            entity_id=application.id,
            event_ts=expired_at,
        )
