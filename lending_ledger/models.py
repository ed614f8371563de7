from __future__ import annotations

"""SQLModel ORM definitions for the lending ledger.

All column names are explicit lowercase. Amounts are ``int`` in the currency's
smallest unit (see :mod:`lending_ledger.sa_types`); prices, rates and ratios
are ``Decimal``. Datetimes are naive UTC.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (CheckConstraint, Column, DateTime, ForeignKey, Index,
                        Integer, String, UniqueConstraint)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON as SA_JSON
from sqlmodel import Field, SQLModel
from ulid import ULID

from lending_ledger.sa_types import Amount, Price


def new_id() -> str:
    return str(ULID())


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------


class Currency(SQLModel, table=True):
    """On-chain asset identified by ``(blockchain_key, token_id)``."""

    __tablename__ = "currencies"

    blockchain_key: str = Field(sa_column=Column("blockchain_key", String(64), primary_key=True))
    token_id: str = Field(sa_column=Column("token_id", String(128), primary_key=True))
    name: str = Field(sa_column=Column("name", String(64), nullable=False))
    symbol: str = Field(sa_column=Column("symbol", String(16), nullable=False))
    decimals: int = Field(sa_column=Column("decimals", Integer, nullable=False))

    # withdrawal limits (0 = unbounded)
    withdrawal_fee_rate: Decimal = Field(
        default=Decimal("0"), sa_column=Column("withdrawal_fee_rate", Price, nullable=False)
    )
    min_withdrawal_amount: int = Field(
        default=0, sa_column=Column("min_withdrawal_amount", Amount, nullable=False)
    )
    max_withdrawal_amount: int = Field(
        default=0, sa_column=Column("max_withdrawal_amount", Amount, nullable=False)
    )
    max_daily_withdrawal_amount: int = Field(
        default=0, sa_column=Column("max_daily_withdrawal_amount", Amount, nullable=False)
    )

    # loan principal bounds (0 = unbounded)
    min_application_principal_amount: int = Field(
        default=0, sa_column=Column("min_application_principal_amount", Amount, nullable=False)
    )
    max_application_principal_amount: int = Field(
        default=0, sa_column=Column("max_application_principal_amount", Amount, nullable=False)
    )

    # LTV bounds, percentages
    max_ltv: Decimal = Field(default=Decimal("0"), sa_column=Column("max_ltv", Price, nullable=False))
    ltv_warning_threshold: Decimal = Field(
        default=Decimal("0"), sa_column=Column("ltv_warning_threshold", Price, nullable=False)
    )
    ltv_critical_threshold: Decimal = Field(
        default=Decimal("0"), sa_column=Column("ltv_critical_threshold", Price, nullable=False)
    )
    ltv_liquidation_threshold: Decimal = Field(
        default=Decimal("0"), sa_column=Column("ltv_liquidation_threshold", Price, nullable=False)
    )


class PriceFeed(SQLModel, table=True):
    """A base/quote pair on a blockchain; prices are quote units per base unit."""

    __tablename__ = "price_feeds"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    blockchain_key: str = Field(sa_column=Column("blockchain_key", String(64), nullable=False))
    base_currency_token_id: str = Field(
        sa_column=Column("base_currency_token_id", String(128), nullable=False)
    )
    quote_currency_token_id: str = Field(
        sa_column=Column("quote_currency_token_id", String(128), nullable=False)
    )
    source: str = Field(default="manual", sa_column=Column("source", String(64), nullable=False))

    __table_args__ = (
        UniqueConstraint(
            "blockchain_key",
            "base_currency_token_id",
            "quote_currency_token_id",
            name="price_feed_pair_uniq",
        ),
        {"extend_existing": True},
    )


class ExchangeRate(SQLModel, table=True):
    """Append-only observation for a price feed."""

    __tablename__ = "exchange_rates"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    price_feed_id: str = Field(
        sa_column=Column("price_feed_id", String(26), ForeignKey("price_feeds.id"), nullable=False)
    )
    bid_price: Decimal = Field(sa_column=Column("bid_price", Price, nullable=False))
    ask_price: Decimal = Field(sa_column=Column("ask_price", Price, nullable=False))
    retrieval_date: datetime = Field(sa_column=Column("retrieval_date", DateTime, nullable=False))
    source_date: datetime = Field(sa_column=Column("source_date", DateTime, nullable=False))

    __table_args__ = (
        Index("ix_exchange_rate_feed_source", "price_feed_id", "source_date"),
        {"extend_existing": True},
    )


class PlatformConfig(SQLModel, table=True):
    """Time-versioned platform parameters; rates and LTV bounds in percent."""

    __tablename__ = "platform_configs"

    effective_date: datetime = Field(sa_column=Column("effective_date", DateTime, primary_key=True))
    admin_user_id: Optional[str] = Field(default=None, sa_column=Column("admin_user_id", String(64)))
    loan_provision_rate: Decimal = Field(sa_column=Column("loan_provision_rate", Price, nullable=False))
    loan_individual_redelivery_fee_rate: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column("loan_individual_redelivery_fee_rate", Price, nullable=False),
    )
    loan_institution_redelivery_fee_rate: Decimal = Field(
        default=Decimal("0"),
        sa_column=Column("loan_institution_redelivery_fee_rate", Price, nullable=False),
    )
    loan_min_ltv_ratio: Decimal = Field(sa_column=Column("loan_min_ltv_ratio", Price, nullable=False))
    loan_max_ltv_ratio: Decimal = Field(sa_column=Column("loan_max_ltv_ratio", Price, nullable=False))
    loan_liquidation_premi_rate: Decimal = Field(
        default=Decimal("0"), sa_column=Column("loan_liquidation_premi_rate", Price, nullable=False)
    )
    loan_liquidation_fee_rate: Decimal = Field(
        default=Decimal("0"), sa_column=Column("loan_liquidation_fee_rate", Price, nullable=False)
    )
    loan_repayment_duration_in_days: int = Field(
        default=0, sa_column=Column("loan_repayment_duration_in_days", Integer, nullable=False)
    )


# ---------------------------------------------------------------------------
# Loan offers, applications, loans
# ---------------------------------------------------------------------------


class LoanOffer(SQLModel, table=True):
    """Lender capital commitment."""

    __tablename__ = "loan_offers"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    lender_user_id: str = Field(sa_column=Column("lender_user_id", String(64), nullable=False))
    principal_blockchain_key: str = Field(
        sa_column=Column("principal_blockchain_key", String(64), nullable=False)
    )
    principal_token_id: str = Field(sa_column=Column("principal_token_id", String(128), nullable=False))

    offered_principal_amount: int = Field(
        sa_column=Column("offered_principal_amount", Amount, nullable=False)
    )
    disbursed_principal_amount: int = Field(
        default=0, sa_column=Column("disbursed_principal_amount", Amount, nullable=False)
    )
    reserved_principal_amount: int = Field(
        default=0, sa_column=Column("reserved_principal_amount", Amount, nullable=False)
    )
    # offered - disbursed - reserved, zeroed when a published offer is closed
    available_principal_amount: int = Field(
        sa_column=Column("available_principal_amount", Amount, nullable=False)
    )
    min_loan_principal_amount: int = Field(
        sa_column=Column("min_loan_principal_amount", Amount, nullable=False)
    )
    max_loan_principal_amount: int = Field(
        sa_column=Column("max_loan_principal_amount", Amount, nullable=False)
    )
    interest_rate: Decimal = Field(sa_column=Column("interest_rate", Price, nullable=False))
    term_in_months_options: List[int] = Field(
        sa_column=Column(
            "term_in_months_options", SA_JSON().with_variant(JSONB, "postgresql"), nullable=False
        )
    )

    status: str = Field(default="Funding", sa_column=Column("status", String(32), nullable=False))
    created_date: datetime = Field(sa_column=Column("created_date", DateTime, nullable=False))
    published_date: Optional[datetime] = Field(default=None, sa_column=Column("published_date", DateTime))
    expiration_date: datetime = Field(sa_column=Column("expiration_date", DateTime, nullable=False))
    expired_date: Optional[datetime] = Field(default=None, sa_column=Column("expired_date", DateTime))
    closed_date: Optional[datetime] = Field(default=None, sa_column=Column("closed_date", DateTime))
    closure_reason: Optional[str] = Field(default=None, sa_column=Column("closure_reason", String))

    __table_args__ = (
        Index("ix_loan_offer_lender_created", "lender_user_id", "created_date"),
        Index("ix_loan_offer_status", "status"),
        {"extend_existing": True},
    )


class LoanApplication(SQLModel, table=True):
    """Borrower request; collateral and provision are frozen at creation."""

    __tablename__ = "loan_applications"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    borrower_user_id: str = Field(sa_column=Column("borrower_user_id", String(64), nullable=False))
    loan_offer_id: Optional[str] = Field(
        default=None, sa_column=Column("loan_offer_id", String(26), ForeignKey("loan_offers.id"))
    )
    principal_blockchain_key: str = Field(
        sa_column=Column("principal_blockchain_key", String(64), nullable=False)
    )
    principal_token_id: str = Field(sa_column=Column("principal_token_id", String(128), nullable=False))
    collateral_blockchain_key: str = Field(
        sa_column=Column("collateral_blockchain_key", String(64), nullable=False)
    )
    collateral_token_id: str = Field(sa_column=Column("collateral_token_id", String(128), nullable=False))

    principal_amount: int = Field(sa_column=Column("principal_amount", Amount, nullable=False))
    provision_amount: int = Field(sa_column=Column("provision_amount", Amount, nullable=False))
    max_interest_rate: Decimal = Field(sa_column=Column("max_interest_rate", Price, nullable=False))
    min_ltv_ratio: Decimal = Field(sa_column=Column("min_ltv_ratio", Price, nullable=False))
    max_ltv_ratio: Decimal = Field(sa_column=Column("max_ltv_ratio", Price, nullable=False))
    term_in_months: int = Field(sa_column=Column("term_in_months", Integer, nullable=False))
    liquidation_mode: str = Field(sa_column=Column("liquidation_mode", String(16), nullable=False))
    collateral_deposit_amount: int = Field(
        sa_column=Column("collateral_deposit_amount", Amount, nullable=False)
    )
    collateral_deposit_exchange_rate_id: str = Field(
        sa_column=Column(
            "collateral_deposit_exchange_rate_id",
            String(26),
            ForeignKey("exchange_rates.id"),
            nullable=False,
        )
    )
    collateral_prepaid_amount: int = Field(
        default=0, sa_column=Column("collateral_prepaid_amount", Amount, nullable=False)
    )

    status: str = Field(
        default="PendingCollateral", sa_column=Column("status", String(32), nullable=False)
    )
    applied_date: datetime = Field(sa_column=Column("applied_date", DateTime, nullable=False))
    published_date: Optional[datetime] = Field(default=None, sa_column=Column("published_date", DateTime))
    expiration_date: datetime = Field(sa_column=Column("expiration_date", DateTime, nullable=False))
    expired_date: Optional[datetime] = Field(default=None, sa_column=Column("expired_date", DateTime))
    matched_date: Optional[datetime] = Field(default=None, sa_column=Column("matched_date", DateTime))
    matched_loan_offer_id: Optional[str] = Field(
        default=None,
        sa_column=Column("matched_loan_offer_id", String(26), ForeignKey("loan_offers.id")),
    )
    matched_ltv_ratio: Optional[Decimal] = Field(default=None, sa_column=Column("matched_ltv_ratio", Price))
    matched_collateral_valuation_amount: Optional[int] = Field(
        default=None, sa_column=Column("matched_collateral_valuation_amount", Amount)
    )
    closed_date: Optional[datetime] = Field(default=None, sa_column=Column("closed_date", DateTime))
    closure_reason: Optional[str] = Field(default=None, sa_column=Column("closure_reason", String))

    __table_args__ = (
        Index("ix_loan_application_borrower_applied", "borrower_user_id", "applied_date"),
        Index("ix_loan_application_status", "status"),
        {"extend_existing": True},
    )


class Loan(SQLModel, table=True):
    """Active contract produced by a matched application."""

    __tablename__ = "loans"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    loan_offer_id: str = Field(
        sa_column=Column("loan_offer_id", String(26), ForeignKey("loan_offers.id"), nullable=False)
    )
    loan_application_id: str = Field(
        sa_column=Column(
            "loan_application_id", String(26), ForeignKey("loan_applications.id"), nullable=False
        )
    )
    borrower_user_id: str = Field(sa_column=Column("borrower_user_id", String(64), nullable=False))
    lender_user_id: str = Field(sa_column=Column("lender_user_id", String(64), nullable=False))

    principal_blockchain_key: str = Field(
        sa_column=Column("principal_blockchain_key", String(64), nullable=False)
    )
    principal_token_id: str = Field(sa_column=Column("principal_token_id", String(128), nullable=False))
    principal_amount: int = Field(sa_column=Column("principal_amount", Amount, nullable=False))
    provision_amount: int = Field(sa_column=Column("provision_amount", Amount, nullable=False))
    interest_amount: int = Field(sa_column=Column("interest_amount", Amount, nullable=False))
    repayment_amount: int = Field(sa_column=Column("repayment_amount", Amount, nullable=False))
    redelivery_fee_amount: int = Field(sa_column=Column("redelivery_fee_amount", Amount, nullable=False))
    redelivery_amount: int = Field(sa_column=Column("redelivery_amount", Amount, nullable=False))
    premi_amount: int = Field(sa_column=Column("premi_amount", Amount, nullable=False))
    liquidation_fee_amount: int = Field(
        sa_column=Column("liquidation_fee_amount", Amount, nullable=False)
    )
    min_collateral_valuation: int = Field(
        sa_column=Column("min_collateral_valuation", Amount, nullable=False)
    )
    mc_ltv_ratio: Decimal = Field(sa_column=Column("mc_ltv_ratio", Price, nullable=False))

    collateral_blockchain_key: str = Field(
        sa_column=Column("collateral_blockchain_key", String(64), nullable=False)
    )
    collateral_token_id: str = Field(sa_column=Column("collateral_token_id", String(128), nullable=False))
    collateral_amount: int = Field(sa_column=Column("collateral_amount", Amount, nullable=False))
    liquidation_mode: str = Field(sa_column=Column("liquidation_mode", String(16), nullable=False))

    status: str = Field(default="Originated", sa_column=Column("status", String(32), nullable=False))
    origination_date: datetime = Field(sa_column=Column("origination_date", DateTime, nullable=False))
    disbursement_date: Optional[datetime] = Field(
        default=None, sa_column=Column("disbursement_date", DateTime)
    )
    maturity_date: datetime = Field(sa_column=Column("maturity_date", DateTime, nullable=False))
    concluded_date: Optional[datetime] = Field(default=None, sa_column=Column("concluded_date", DateTime))
    conclusion_reason: Optional[str] = Field(default=None, sa_column=Column("conclusion_reason", String))
    current_ltv_ratio: Optional[Decimal] = Field(default=None, sa_column=Column("current_ltv_ratio", Price))

    __table_args__ = (
        UniqueConstraint("loan_application_id", name="loan_application_uniq"),
        Index("ix_loan_borrower", "borrower_user_id"),
        Index("ix_loan_status", "status"),
        {"extend_existing": True},
    )


class LoanRepayment(SQLModel, table=True):
    """At most one per loan; a later pending request overwrites the earlier one."""

    __tablename__ = "loan_repayments"

    loan_id: str = Field(
        sa_column=Column("loan_id", String(26), ForeignKey("loans.id"), primary_key=True)
    )
    repayment_initiator: str = Field(
        sa_column=Column("repayment_initiator", String(16), nullable=False)
    )
    repayment_invoice_id: str = Field(
        sa_column=Column("repayment_invoice_id", String(26), ForeignKey("invoices.id"), nullable=False)
    )
    repayment_invoice_date: datetime = Field(
        sa_column=Column("repayment_invoice_date", DateTime, nullable=False)
    )


class LoanLiquidation(SQLModel, table=True):
    """At most one per loan."""

    __tablename__ = "loan_liquidations"

    loan_id: str = Field(
        sa_column=Column("loan_id", String(26), ForeignKey("loans.id"), primary_key=True)
    )
    liquidation_initiator: str = Field(
        sa_column=Column("liquidation_initiator", String(16), nullable=False)
    )
    liquidation_target_amount: int = Field(
        sa_column=Column("liquidation_target_amount", Amount, nullable=False)
    )
    market_provider: str = Field(sa_column=Column("market_provider", String(64), nullable=False))
    market_symbol: str = Field(sa_column=Column("market_symbol", String(64), nullable=False))
    order_ref: str = Field(sa_column=Column("order_ref", String(128), nullable=False))
    order_quantity: Optional[int] = Field(default=None, sa_column=Column("order_quantity", Amount))
    order_price: Optional[Decimal] = Field(default=None, sa_column=Column("order_price", Price))
    status: str = Field(default="Pending", sa_column=Column("status", String(16), nullable=False))
    order_date: datetime = Field(sa_column=Column("order_date", DateTime, nullable=False))
    fulfilled_date: Optional[datetime] = Field(default=None, sa_column=Column("fulfilled_date", DateTime))
    failed_date: Optional[datetime] = Field(default=None, sa_column=Column("failed_date", DateTime))
    failure_reason: Optional[str] = Field(default=None, sa_column=Column("failure_reason", String))

    __table_args__ = (
        UniqueConstraint("order_ref", name="loan_liquidation_order_ref_uniq"),
        {"extend_existing": True},
    )


class LoanValuation(SQLModel, table=True):
    """Collateral valuation of a loan against one exchange-rate observation."""

    __tablename__ = "loan_valuations"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    loan_id: str = Field(sa_column=Column("loan_id", String(26), ForeignKey("loans.id"), nullable=False))
    exchange_rate_id: str = Field(
        sa_column=Column("exchange_rate_id", String(26), ForeignKey("exchange_rates.id"), nullable=False)
    )
    valuation_date: datetime = Field(sa_column=Column("valuation_date", DateTime, nullable=False))
    ltv_ratio: Decimal = Field(sa_column=Column("ltv_ratio", Price, nullable=False))
    collateral_valuation_amount: int = Field(
        sa_column=Column("collateral_valuation_amount", Amount, nullable=False)
    )

    __table_args__ = (
        UniqueConstraint("loan_id", "exchange_rate_id", name="loan_valuation_uniq"),
        {"extend_existing": True},
    )


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------


class Invoice(SQLModel, table=True):
    """Payment request owned by exactly one offer, application or loan."""

    __tablename__ = "invoices"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    user_id: str = Field(sa_column=Column("user_id", String(64), nullable=False))
    currency_blockchain_key: str = Field(
        sa_column=Column("currency_blockchain_key", String(64), nullable=False)
    )
    currency_token_id: str = Field(sa_column=Column("currency_token_id", String(128), nullable=False))
    invoice_type: str = Field(sa_column=Column("invoice_type", String(32), nullable=False))
    invoiced_amount: int = Field(sa_column=Column("invoiced_amount", Amount, nullable=False))
    paid_amount: int = Field(default=0, sa_column=Column("paid_amount", Amount, nullable=False))
    status: str = Field(default="Pending", sa_column=Column("status", String(16), nullable=False))
    invoice_date: datetime = Field(sa_column=Column("invoice_date", DateTime, nullable=False))
    due_date: datetime = Field(sa_column=Column("due_date", DateTime, nullable=False))
    paid_date: Optional[datetime] = Field(default=None, sa_column=Column("paid_date", DateTime))
    expired_date: Optional[datetime] = Field(default=None, sa_column=Column("expired_date", DateTime))
    cancelled_date: Optional[datetime] = Field(default=None, sa_column=Column("cancelled_date", DateTime))

    loan_offer_id: Optional[str] = Field(
        default=None, sa_column=Column("loan_offer_id", String(26), ForeignKey("loan_offers.id"))
    )
    loan_application_id: Optional[str] = Field(
        default=None,
        sa_column=Column("loan_application_id", String(26), ForeignKey("loan_applications.id")),
    )
    loan_id: Optional[str] = Field(
        default=None, sa_column=Column("loan_id", String(26), ForeignKey("loans.id"))
    )

    __table_args__ = (
        CheckConstraint(
            "(CASE WHEN loan_offer_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN loan_application_id IS NULL THEN 0 ELSE 1 END)"
            " + (CASE WHEN loan_id IS NULL THEN 0 ELSE 1 END) = 1",
            name="invoice_single_owner",
        ),
        Index("ix_invoice_status_due", "status", "due_date"),
        {"extend_existing": True},
    )


class InvoicePayment(SQLModel, table=True):
    __tablename__ = "invoice_payments"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    invoice_id: str = Field(
        sa_column=Column("invoice_id", String(26), ForeignKey("invoices.id"), nullable=False)
    )
    payment_hash: str = Field(sa_column=Column("payment_hash", String(128), nullable=False))
    amount: int = Field(sa_column=Column("amount", Amount, nullable=False))
    payment_date: datetime = Field(sa_column=Column("payment_date", DateTime, nullable=False))

    __table_args__ = (
        UniqueConstraint("payment_hash", name="invoice_payment_hash_uniq"),
        {"extend_existing": True},
    )


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------


class Beneficiary(SQLModel, table=True):
    """Registered withdrawal destination."""

    __tablename__ = "beneficiaries"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    user_id: str = Field(sa_column=Column("user_id", String(64), nullable=False))
    currency_blockchain_key: str = Field(
        sa_column=Column("currency_blockchain_key", String(64), nullable=False)
    )
    currency_token_id: str = Field(sa_column=Column("currency_token_id", String(128), nullable=False))
    address: str = Field(sa_column=Column("address", String(128), nullable=False))


class Withdrawal(SQLModel, table=True):
    """Withdrawal to a beneficiary; user-facing state is derived from the dates."""

    __tablename__ = "withdrawals"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    beneficiary_id: str = Field(
        sa_column=Column("beneficiary_id", String(26), ForeignKey("beneficiaries.id"), nullable=False)
    )
    user_id: str = Field(sa_column=Column("user_id", String(64), nullable=False))
    currency_blockchain_key: str = Field(
        sa_column=Column("currency_blockchain_key", String(64), nullable=False)
    )
    currency_token_id: str = Field(sa_column=Column("currency_token_id", String(128), nullable=False))
    request_amount: int = Field(sa_column=Column("request_amount", Amount, nullable=False))
    status: str = Field(default="Requested", sa_column=Column("status", String(20), nullable=False))
    request_date: datetime = Field(sa_column=Column("request_date", DateTime, nullable=False))
    sent_date: Optional[datetime] = Field(default=None, sa_column=Column("sent_date", DateTime))
    sent_amount: Optional[int] = Field(default=None, sa_column=Column("sent_amount", Amount))
    sent_hash: Optional[str] = Field(default=None, sa_column=Column("sent_hash", String(128)))
    confirmed_date: Optional[datetime] = Field(default=None, sa_column=Column("confirmed_date", DateTime))
    failed_date: Optional[datetime] = Field(default=None, sa_column=Column("failed_date", DateTime))
    failure_reason: Optional[str] = Field(default=None, sa_column=Column("failure_reason", String))
    refund_requested_date: Optional[datetime] = Field(
        default=None, sa_column=Column("refund_requested_date", DateTime)
    )
    failure_refund_reviewer_user_id: Optional[str] = Field(
        default=None, sa_column=Column("failure_refund_reviewer_user_id", String(64))
    )
    failure_refund_approved_date: Optional[datetime] = Field(
        default=None, sa_column=Column("failure_refund_approved_date", DateTime)
    )
    failure_refund_rejected_date: Optional[datetime] = Field(
        default=None, sa_column=Column("failure_refund_rejected_date", DateTime)
    )
    failure_refund_rejection_reason: Optional[str] = Field(
        default=None, sa_column=Column("failure_refund_rejection_reason", String)
    )

    __table_args__ = (
        UniqueConstraint("sent_hash", name="withdrawal_sent_hash_uniq"),
        Index("ix_withdrawal_user_request", "user_id", "request_date"),
        {"extend_existing": True},
    )


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


class Account(SQLModel, table=True):
    __tablename__ = "accounts"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    user_id: str = Field(sa_column=Column("user_id", String(64), nullable=False))
    currency_blockchain_key: str = Field(
        sa_column=Column("currency_blockchain_key", String(64), nullable=False)
    )
    currency_token_id: str = Field(sa_column=Column("currency_token_id", String(128), nullable=False))
    account_type: str = Field(default="User", sa_column=Column("account_type", String(32), nullable=False))

    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "currency_blockchain_key",
            "currency_token_id",
            "account_type",
            name="account_owner_currency_uniq",
        ),
        {"extend_existing": True},
    )


class AccountMutation(SQLModel, table=True):
    """Append-only signed ledger entry; balances are sums of these rows."""

    __tablename__ = "account_mutations"

    id: str = Field(default_factory=new_id, sa_column=Column("id", String(26), primary_key=True))
    account_id: str = Field(
        sa_column=Column("account_id", String(26), ForeignKey("accounts.id"), nullable=False)
    )
    mutation_type: str = Field(sa_column=Column("mutation_type", String(64), nullable=False))
    mutation_date: datetime = Field(sa_column=Column("mutation_date", DateTime, nullable=False))
    amount: int = Field(sa_column=Column("amount", Amount, nullable=False))

    invoice_id: Optional[str] = Field(
        default=None, sa_column=Column("invoice_id", String(26), ForeignKey("invoices.id"))
    )
    withdrawal_id: Optional[str] = Field(
        default=None, sa_column=Column("withdrawal_id", String(26), ForeignKey("withdrawals.id"))
    )
    loan_offer_id: Optional[str] = Field(
        default=None, sa_column=Column("loan_offer_id", String(26), ForeignKey("loan_offers.id"))
    )
    loan_application_id: Optional[str] = Field(
        default=None,
        sa_column=Column("loan_application_id", String(26), ForeignKey("loan_applications.id")),
    )
    loan_id: Optional[str] = Field(
        default=None, sa_column=Column("loan_id", String(26), ForeignKey("loans.id"))
    )

    __table_args__ = (
        Index("ix_account_mutation_account_date", "account_id", "mutation_date"),
        {"extend_existing": True},
    )
