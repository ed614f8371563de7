"""Platform-side loan flow: match, originate, disburse, value, monitor."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from fractions import Fraction
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from common.datetime import DateLike, add_months, to_utc_naive
from ledger_observability.metrics import loan_ltv_breaches
from ledger_observability.tracking import track_operation
from lending_ledger.access import load_for_update
from lending_ledger.calculator import (calculate_loan_amounts, collateral_valuation,
                                       ratio_to_decimal)
from lending_ledger.config import POLICY, LedgerPolicy
from lending_ledger.db import AuditAction, get_session, log_audit, transaction
from lending_ledger.errors import (DuplicateError, InvalidAmountError,
                                   InvalidTransitionError,
                                   LoanApplicationNotFoundError,
                                   LoanNotFoundError, LoanOfferNotFoundError,
                                   RateNotFoundError)
from lending_ledger.ledger import get_or_create_account, post_mutation
from lending_ledger.models import Loan, LoanApplication, LoanOffer, LoanValuation
from lending_ledger.offers import refresh_available
from lending_ledger.resolvers import (get_currency, resolve_exchange_rate,
                                      resolve_platform_config)
from lending_ledger.states import (APPLICATION_TRANSITIONS, LOAN_TRANSITIONS,
                                   AccountType, LoanApplicationStatus,
                                   LoanOfferStatus, LoanStatus, MutationType,
                                   ensure_transition)

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class LtvBreach:
    loan_id: str
    borrower_user_id: str
    current_ltv_ratio: Decimal
    collateral_valuation_amount: int


@dataclass(slots=True)
class LtvMonitorResult:
    threshold: Decimal
    processed: int = 0
    breaches: List[LtvBreach] = field(default_factory=list)


class LoanOriginationService:
    """Operations the platform runs between a published application and an active loan."""

    def __init__(self, session: Session | None = None, policy: LedgerPolicy | None = None):
        self.session = session or get_session()
        self.policy = policy or POLICY

    # ---------------------------------------------------------------------
    @track_operation("loan_application", "match")
    def match_application(
        self, application_id: str, loan_offer_id: str, matched_date: DateLike
    ) -> LoanApplication:
        """Pair a Published application with a Published offer and reserve principal."""
        matched_at = to_utc_naive(matched_date)
        with transaction(self.session) as session:
            application = load_for_update(
                session, LoanApplication, LoanApplication.id, application_id,
                error=LoanApplicationNotFoundError, message="Loan application not found",
            )
            offer = load_for_update(
                session, LoanOffer, LoanOffer.id, loan_offer_id,
                error=LoanOfferNotFoundError, message="Loan offer not found",
            )
            ensure_transition(
                APPLICATION_TRANSITIONS,
                entity="application",
                action="match",
                current=application.status,
                target=LoanApplicationStatus.MATCHED.value,
            )
            if offer.status != LoanOfferStatus.PUBLISHED.value:
                raise InvalidTransitionError("offer", "match", offer.status)
            self._check_compatible(application, offer)

            principal_currency = get_currency(
                session, application.principal_blockchain_key, application.principal_token_id
            )
            collateral_currency = get_currency(
                session, application.collateral_blockchain_key, application.collateral_token_id
            )
            rate = resolve_exchange_rate(
                session,
                collateral_currency.blockchain_key,
                collateral_currency.token_id,
                principal_currency.token_id,
                as_of=matched_at,
            )
            valuation = collateral_valuation(
                application.collateral_deposit_amount,
                rate.bid_price,
                principal_decimals=principal_currency.decimals,
                collateral_decimals=collateral_currency.decimals,
            )
            if valuation <= 0:
                raise InvalidAmountError("Collateral valuation must be positive to match")

            application.status = LoanApplicationStatus.MATCHED.value
            application.matched_date = matched_at
            application.matched_loan_offer_id = offer.id
            application.matched_collateral_valuation_amount = valuation
            application.matched_ltv_ratio = ratio_to_decimal(
                Fraction(application.principal_amount, valuation)
            )
            offer.reserved_principal_amount += application.principal_amount
            refresh_available(offer)
            session.add(application)
            session.add(offer)
            log_audit(
                session,
                action=AuditAction.APPLICATION_MATCHED,
                entity_type="loan_application",
                entity_id=application.id,
                event_ts=matched_at,
                payload={
                    "loan_offer_id": offer.id,
                    "ltv_ratio": str(application.matched_ltv_ratio),
                    "exchange_rate_id": rate.exchange_rate_id,
                },
            )
        logger.info(
            "application %s matched with offer %s",
            application.id,
            offer.id,
            extra={"entity": "loan_application", "entity_id": application.id},
        )
        return application

    # ---------------------------------------------------------------------
    @track_operation("loan", "originate")
    def originate_loan(self, application_id: str, origination_date: DateLike) -> Loan:
        """Create the Originated loan for a Matched application.

        Fee rates come from the platform config in force at origination; the
        provision is the one frozen on the application.
        """
        originated_at = to_utc_naive(origination_date)
        with transaction(self.session) as session:
            application = load_for_update(
                session, LoanApplication, LoanApplication.id, application_id,
                error=LoanApplicationNotFoundError, message="Loan application not found",
            )
            if application.status != LoanApplicationStatus.MATCHED.value:
                raise InvalidTransitionError("application", "originate", application.status)
            existing = session.exec(
                select(Loan).where(Loan.loan_application_id == application.id)
            ).first()
            if existing is not None:
                raise DuplicateError(f"Loan already originated for application {application.id}")

            offer = load_for_update(
                session, LoanOffer, LoanOffer.id, application.matched_loan_offer_id,
                error=LoanOfferNotFoundError, message="Loan offer not found",
            )
            config = resolve_platform_config(session, originated_at)
            amounts = calculate_loan_amounts(
                application.principal_amount,
                application.provision_amount,
                offer.interest_rate,
                application.term_in_months,
                config,
            )
            loan = Loan(
                loan_offer_id=offer.id,
                loan_application_id=application.id,
                borrower_user_id=application.borrower_user_id,
                lender_user_id=offer.lender_user_id,
                principal_blockchain_key=application.principal_blockchain_key,
                principal_token_id=application.principal_token_id,
                principal_amount=amounts.principal_amount,
                provision_amount=amounts.provision_amount,
                interest_amount=amounts.interest_amount,
                repayment_amount=amounts.repayment_amount,
                redelivery_fee_amount=amounts.redelivery_fee_amount,
                redelivery_amount=amounts.redelivery_amount,
                premi_amount=amounts.premi_amount,
                liquidation_fee_amount=amounts.liquidation_fee_amount,
                min_collateral_valuation=amounts.min_collateral_valuation,
                mc_ltv_ratio=amounts.mc_ltv_ratio,
                collateral_blockchain_key=application.collateral_blockchain_key,
                collateral_token_id=application.collateral_token_id,
                collateral_amount=application.collateral_deposit_amount,
                liquidation_mode=application.liquidation_mode,
                status=LoanStatus.ORIGINATED.value,
                origination_date=originated_at,
                maturity_date=add_months(originated_at, application.term_in_months),
                current_ltv_ratio=application.matched_ltv_ratio,
            )
            session.add(loan)
            try:
                session.flush()
            except IntegrityError as exc:
                raise DuplicateError(
                    f"Loan already originated for application {application.id}"
                ) from exc

            offer.reserved_principal_amount -= application.principal_amount
            offer.disbursed_principal_amount += application.principal_amount
            refresh_available(offer)
            session.add(offer)
            log_audit(
                session,
                action=AuditAction.LOAN_ORIGINATED,
                entity_type="loan",
                entity_id=loan.id,
                event_ts=originated_at,
                payload={
                    "loan_application_id": application.id,
                    "loan_offer_id": offer.id,
                    "repayment": str(loan.repayment_amount),
                    "mc_ltv_ratio": str(loan.mc_ltv_ratio),
                },
            )
        logger.info(
            "loan %s originated, repayment %s due %s",
            loan.id,
            loan.repayment_amount,
            loan.maturity_date.isoformat(),
            extra={"entity": "loan", "entity_id": loan.id, "user_id": loan.borrower_user_id},
        )
        return loan

    # ---------------------------------------------------------------------
    @track_operation("loan", "disburse")
    def disburse_principal(self, loan_id: str, disbursement_date: DateLike) -> Loan:
        """Originated -> Active; principal leaves escrow net of provision."""
        disbursed_at = to_utc_naive(disbursement_date)
        with transaction(self.session) as session:
            loan = self._lock_loan(loan_id)
            ensure_transition(
                LOAN_TRANSITIONS,
                entity="loan",
                action="disburse",
                current=loan.status,
                target=LoanStatus.ACTIVE.value,
            )
            key, token = loan.principal_blockchain_key, loan.principal_token_id
            escrow = get_or_create_account(
                session, self.policy.platform_user_id, key, token, AccountType.PLATFORM_ESCROW
            )
            fees = get_or_create_account(
                session, self.policy.platform_user_id, key, token, AccountType.PLATFORM_FEES
            )
            borrower = get_or_create_account(session, loan.borrower_user_id, key, token)

            post_mutation(
                session, escrow, MutationType.LOAN_DISBURSEMENT_PRINCIPAL,
                -loan.principal_amount, disbursed_at, loan_id=loan.id,
            )
            post_mutation(
                session, borrower, MutationType.LOAN_PRINCIPAL_DISBURSEMENT,
                loan.principal_amount - loan.provision_amount, disbursed_at, loan_id=loan.id,
            )
            if loan.provision_amount:
                post_mutation(
                    session, fees, MutationType.LOAN_DISBURSEMENT_FEE,
                    loan.provision_amount, disbursed_at, loan_id=loan.id,
                )

            loan.status = LoanStatus.ACTIVE.value
            loan.disbursement_date = disbursed_at
            session.add(loan)
            log_audit(
                session,
                action=AuditAction.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan.id,
                event_ts=disbursed_at,
                payload={"provision": str(loan.provision_amount)},
            )
        return loan

    # ---------------------------------------------------------------------
    @track_operation("loan", "value")
    def update_valuation(self, loan_id: str, valuation_date: DateLike) -> LoanValuation:
        """Value the collateral at the latest rate and refresh ``current_ltv_ratio``.

        Valuing twice against the same rate observation returns the stored row.
        """
        valued_at = to_utc_naive(valuation_date)
        with transaction(self.session):
            loan = self._lock_loan(loan_id)
            valuation = self._value(loan, valued_at)
        return valuation

    def monitor_ltv(
        self, monitoring_date: DateLike, ltv_threshold: Optional[Decimal] = None
    ) -> LtvMonitorResult:
        """Revalue every Active/Originated loan and report those above the threshold.

        The default threshold is the configured maximum LTV (a percentage)
        as a ratio. Loans whose collateral has no rate are logged and skipped.
        """
        monitored_at = to_utc_naive(monitoring_date)
        with transaction(self.session) as session:
            if ltv_threshold is None:
                config = resolve_platform_config(session, monitored_at)
                ltv_threshold = Decimal(str(config.loan_max_ltv_ratio)) / 100
            result = LtvMonitorResult(threshold=Decimal(str(ltv_threshold)))

            loans = session.exec(
                select(Loan)
                .where(Loan.status.in_([LoanStatus.ACTIVE.value, LoanStatus.ORIGINATED.value]))
                .with_for_update()
            ).all()
            for loan in loans:
                try:
                    valuation = self._value(loan, monitored_at)
                except RateNotFoundError as exc:
                    logger.warning(
                        "skipping LTV check for loan %s: %s",
                        loan.id,
                        exc,
                        extra={"entity": "loan", "entity_id": loan.id},
                    )
                    continue
                result.processed += 1
                if valuation.ltv_ratio > result.threshold:
                    result.breaches.append(
                        LtvBreach(
                            loan_id=loan.id,
                            borrower_user_id=loan.borrower_user_id,
                            current_ltv_ratio=valuation.ltv_ratio,
                            collateral_valuation_amount=valuation.collateral_valuation_amount,
                        )
                    )

        result.breaches.sort(key=lambda breach: breach.current_ltv_ratio, reverse=True)
        loan_ltv_breaches.set(len(result.breaches))
        logger.info(
            "LTV monitoring processed %d loans, %d above %s",
            result.processed,
            len(result.breaches),
            result.threshold,
            extra={"entity": "loan", "operation": "monitor_ltv"},
        )
        return result

    # ------------------------------------------------------------------
    def _lock_loan(self, loan_id: str) -> Loan:
        return load_for_update(
            self.session, Loan, Loan.id, loan_id, error=LoanNotFoundError, message="Loan not found"
        )

    def _value(self, loan: Loan, valued_at: datetime) -> LoanValuation:
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
            as_of=valued_at,
        )
        existing = self.session.exec(
            select(LoanValuation)
            .where(LoanValuation.loan_id == loan.id)
            .where(LoanValuation.exchange_rate_id == rate.exchange_rate_id)
        ).first()
        if existing is not None:
            return existing

        amount = collateral_valuation(
            loan.collateral_amount,
            rate.bid_price,
            principal_decimals=principal_currency.decimals,
            collateral_decimals=collateral_currency.decimals,
        )
        if amount <= 0:
            raise InvalidAmountError(f"Collateral of loan {loan.id} is valued at zero")
        ltv = ratio_to_decimal(Fraction(loan.principal_amount, amount))
        valuation = LoanValuation(
            loan_id=loan.id,
            exchange_rate_id=rate.exchange_rate_id,
            valuation_date=valued_at,
            ltv_ratio=ltv,
            collateral_valuation_amount=amount,
        )
        loan.current_ltv_ratio = ltv
        self.session.add(valuation)
        self.session.add(loan)
        log_audit(
            self.session,
            action=AuditAction.LOAN_VALUED,
            entity_type="loan",
            entity_id=loan.id,
            event_ts=valued_at,
            payload={"ltv_ratio": str(ltv), "exchange_rate_id": rate.exchange_rate_id},
        )
        return valuation

    @staticmethod
    def _check_compatible(application: LoanApplication, offer: LoanOffer) -> None:
        if application.borrower_user_id == offer.lender_user_id:
            raise InvalidAmountError("Borrower cannot match their own loan offer")
        if (application.principal_blockchain_key, application.principal_token_id) != (
            offer.principal_blockchain_key,
            offer.principal_token_id,
        ):
            raise InvalidAmountError("Loan offer uses a different principal currency")
        if application.term_in_months not in offer.term_in_months_options:
            raise InvalidAmountError(f"Term {application.term_in_months} not offered")
        if Decimal(str(offer.interest_rate)) > Decimal(str(application.max_interest_rate)):
            raise InvalidAmountError("Offer interest rate exceeds the application maximum")
        if not offer.min_loan_principal_amount <= application.principal_amount <= offer.max_loan_principal_amount:
            raise InvalidAmountError("Principal amount outside the loan offer bounds")
        if offer.available_principal_amount < application.principal_amount:
            raise InvalidAmountError("Loan offer has insufficient available principal")
