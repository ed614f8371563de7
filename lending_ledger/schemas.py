"""Typed parameter objects for the create operations.

Amounts arrive as decimal strings or ints and are coerced to ``int``; rates
to ``Decimal``; datetimes are normalised to naive UTC.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from common.datetime import to_utc_naive
from lending_ledger.states import LiquidationMode


class _Params(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("*", mode="after")
    @classmethod
    def _normalise_datetimes(cls, value):
        if isinstance(value, datetime):
            return to_utc_naive(value)
        return value


class CreateLoanOfferParams(_Params):
    lender_user_id: str
    principal_blockchain_key: str
    principal_token_id: str
    offered_principal_amount: int = Field(gt=0)
    min_loan_principal_amount: Optional[int] = Field(default=None, gt=0)
    max_loan_principal_amount: Optional[int] = Field(default=None, gt=0)
    interest_rate: Decimal = Field(gt=0)
    term_in_months_options: List[int] = Field(min_length=1)
    created_date: datetime
    expiration_date: Optional[datetime] = None

    @field_validator("term_in_months_options")
    @classmethod
    def _terms_positive(cls, value: List[int]) -> List[int]:
        if any(term <= 0 for term in value):
            raise ValueError("term options must be positive")
        return sorted(set(value))


class CreateLoanApplicationParams(_Params):
    borrower_user_id: str
    principal_blockchain_key: str
    principal_token_id: str
    collateral_blockchain_key: str
    collateral_token_id: str
    principal_amount: int = Field(gt=0)
    max_interest_rate: Decimal = Field(gt=0)
    term_in_months: int = Field(gt=0)
    liquidation_mode: LiquidationMode = LiquidationMode.FULL
    loan_offer_id: Optional[str] = None
    applied_date: datetime
    expiration_date: Optional[datetime] = None


class RequestWithdrawalParams(_Params):
    user_id: str
    beneficiary_id: str
    amount: int = Field(gt=0)
    request_date: datetime
