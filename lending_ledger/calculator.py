"""Loan requirement, origination and settlement arithmetic.

All helpers are pure and deterministic. Amounts are ``int`` in smallest units;
rates and ratios given as percentages (``60`` = 60 %) come in as ``Decimal``
and are converted to exact :class:`~fractions.Fraction` before any product is
taken, so rounding happens exactly once per amount and always in the
direction that protects the platform:

* provisions and fees round *down* (never overcharge),
* collateral requirements round *up* (never under-collateralise).
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_DOWN, Decimal
from fractions import Fraction
from typing import Optional, Protocol, Union

from common.datetime import elapsed_days
from lending_ledger.errors import InvalidAmountError

__all__ = [
    "LoanRequirements",
    "LoanAmounts",
    "EarlyLiquidationEstimate",
    "EarlyRepaymentQuote",
    "floor_amount",
    "ceil_amount",
    "ratio_to_decimal",
    "calculate_requirements",
    "calculate_loan_amounts",
    "collateral_valuation",
    "estimate_early_liquidation",
    "calculate_early_repayment",
    "liquidation_target_amount",
]

Number = Union[int, float, Decimal, Fraction, str]

_HUNDRED = Fraction(100)
_RATIO_QUANTUM = Decimal("0.0001")


class RequirementConfig(Protocol):
    loan_provision_rate: Decimal
    loan_min_ltv_ratio: Decimal
    loan_max_ltv_ratio: Decimal


class FeeConfig(Protocol):
    loan_individual_redelivery_fee_rate: Decimal
    loan_liquidation_premi_rate: Decimal
    loan_liquidation_fee_rate: Decimal


class PricedRate(Protocol):
    bid_price: Fraction


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class LoanRequirements:
    principal_amount: int
    term_in_months: int
    required_collateral_amount: int
    provision_amount: int
    min_ltv_ratio: Decimal
    max_ltv_ratio: Decimal
    bid_price: Fraction


@dataclass(slots=True, frozen=True)
class LoanAmounts:
    principal_amount: int
    provision_amount: int
    interest_amount: int
    repayment_amount: int
    redelivery_fee_amount: int
    redelivery_amount: int
    premi_amount: int
    liquidation_fee_amount: int
    min_collateral_valuation: int
    mc_ltv_ratio: Decimal


@dataclass(slots=True, frozen=True)
class EarlyLiquidationEstimate:
    current_valuation_amount: int
    current_ltv_ratio: Optional[Decimal]
    total_outstanding_amount: int
    slippage: Decimal
    estimated_liquidation_amount: int
    estimated_surplus_deficit: int


@dataclass(slots=True, frozen=True)
class EarlyRepaymentQuote:
    repayment_amount: int
    total_term_days: int
    elapsed_days: int
    remaining_term_days: int
    full_interest_charged: bool = True


# ---------------------------------------------------------------------------
# Rounding primitives
# ---------------------------------------------------------------------------


def _exact(value: Number) -> Fraction:
    if isinstance(value, Fraction):
        return value
    if isinstance(value, (int, Decimal)):
        return Fraction(value)
    return Fraction(Decimal(str(value)))


def floor_amount(value: Fraction) -> int:
    return math.floor(value)


def ceil_amount(value: Fraction) -> int:
    return math.ceil(value)


def ratio_to_decimal(value: Fraction) -> Decimal:
    """Render an exact ratio as a 4-place Decimal, truncated."""
    return (Decimal(value.numerator) / Decimal(value.denominator)).quantize(
        _RATIO_QUANTUM, rounding=ROUND_DOWN
    )


def _decimal_scale(principal_decimals: Optional[int], collateral_decimals: Optional[int]) -> Fraction:
    """Factor converting principal smallest units into collateral smallest units."""
    if principal_decimals is None or collateral_decimals is None:
        return Fraction(1)
    return Fraction(10) ** (collateral_decimals - principal_decimals)


# ---------------------------------------------------------------------------
# Requirements (application time)
# ---------------------------------------------------------------------------


def calculate_requirements(
    principal_amount: int,
    term_in_months: int,
    config: RequirementConfig,
    exchange_rate: PricedRate,
    *,
    principal_decimals: Optional[int] = None,
    collateral_decimals: Optional[int] = None,
) -> LoanRequirements:
    """Collateral and provision for a prospective loan.

    Parameters
    ----------
    principal_amount
        Requested principal in principal smallest units.
    term_in_months
        Loan term; carried into the quote, it does not change either amount.
    config
        Platform configuration effective at application time.
    exchange_rate
        Collateral→principal rate; ``bid_price`` is principal per collateral.
    principal_decimals, collateral_decimals
        When both are given the collateral amount is rescaled from principal
        units to collateral units; otherwise both are assumed to share one
        precision.

    ``provision = floor(principal × provisionRate / 100)`` and
    ``collateral = ceil(principal / (minLtv / 100 × bid))``. The *minimum*
    LTV is used, which yields the largest collateral.
    """
    if principal_amount <= 0:
        raise InvalidAmountError("Principal amount must be positive")
    if term_in_months <= 0:
        raise InvalidAmountError("Term must be a positive number of months")

    min_ltv = _exact(config.loan_min_ltv_ratio) / _HUNDRED
    bid = _exact(exchange_rate.bid_price)
    if min_ltv <= 0:
        raise InvalidAmountError("Configured minimum LTV ratio must be positive")
    if bid <= 0:
        raise InvalidAmountError("Exchange rate bid price must be positive")

    provision = floor_amount(Fraction(principal_amount) * _exact(config.loan_provision_rate) / _HUNDRED)
    scale = _decimal_scale(principal_decimals, collateral_decimals)
    collateral = ceil_amount(Fraction(principal_amount) * scale / (min_ltv * bid))

    return LoanRequirements(
        principal_amount=principal_amount,
        term_in_months=term_in_months,
        required_collateral_amount=collateral,
        provision_amount=provision,
        min_ltv_ratio=Decimal(str(config.loan_min_ltv_ratio)),
        max_ltv_ratio=Decimal(str(config.loan_max_ltv_ratio)),
        bid_price=bid,
    )


# ---------------------------------------------------------------------------
# Origination
# ---------------------------------------------------------------------------


def calculate_loan_amounts(
    principal_amount: int,
    provision_amount: int,
    interest_rate: Number,
    term_in_months: int,
    config: FeeConfig,
) -> LoanAmounts:
    """Contract amounts at origination.

    ``interest = floor(principal × rate/100 × term/12)``;
    ``repayment = principal + provision + interest``;
    ``redelivery = principal + interest − floor(interest × redeliveryFeeRate/100)``;
    premi and liquidation fee are floored percentages of principal;
    ``minCollateralValuation = repayment + premi + liquidationFee`` and
    ``mcLtv = principal / minCollateralValuation``.
    """
    principal = Fraction(principal_amount)
    interest = floor_amount(principal * _exact(interest_rate) / _HUNDRED * Fraction(term_in_months, 12))
    repayment = principal_amount + provision_amount + interest
    redelivery_fee = floor_amount(
        Fraction(interest) * _exact(config.loan_individual_redelivery_fee_rate) / _HUNDRED
    )
    redelivery = principal_amount + interest - redelivery_fee
    premi = floor_amount(principal * _exact(config.loan_liquidation_premi_rate) / _HUNDRED)
    liquidation_fee = floor_amount(principal * _exact(config.loan_liquidation_fee_rate) / _HUNDRED)
    min_valuation = repayment + premi + liquidation_fee

    return LoanAmounts(
        principal_amount=principal_amount,
        provision_amount=provision_amount,
        interest_amount=interest,
        repayment_amount=repayment,
        redelivery_fee_amount=redelivery_fee,
        redelivery_amount=redelivery,
        premi_amount=premi,
        liquidation_fee_amount=liquidation_fee,
        min_collateral_valuation=min_valuation,
        mc_ltv_ratio=ratio_to_decimal(Fraction(principal_amount, min_valuation)),
    )


# ---------------------------------------------------------------------------
# Valuation, liquidation, early repayment
# ---------------------------------------------------------------------------


def collateral_valuation(
    collateral_amount: int,
    bid_price: Number,
    *,
    principal_decimals: Optional[int] = None,
    collateral_decimals: Optional[int] = None,
) -> int:
    """Collateral value in principal smallest units, floored."""
    scale = _decimal_scale(principal_decimals, collateral_decimals)
    return floor_amount(Fraction(collateral_amount) * _exact(bid_price) / scale)


def liquidation_target_amount(repayment_amount: int, premi_amount: int, liquidation_fee_amount: int) -> int:
    return repayment_amount + premi_amount + liquidation_fee_amount


def estimate_early_liquidation(
    *,
    principal_amount: int,
    interest_amount: int,
    premi_amount: int,
    liquidation_fee_amount: int,
    collateral_amount: int,
    bid_price: Number,
    slippage: Decimal = Decimal("0.02"),
    principal_decimals: Optional[int] = None,
    collateral_decimals: Optional[int] = None,
) -> EarlyLiquidationEstimate:
    """What selling the collateral now would roughly yield.

    A negative ``estimated_surplus_deficit`` is a shortfall.
    ``current_ltv_ratio`` is ``None`` when the collateral is worth nothing.
    """
    valuation = collateral_valuation(
        collateral_amount,
        bid_price,
        principal_decimals=principal_decimals,
        collateral_decimals=collateral_decimals,
    )
    outstanding = principal_amount + interest_amount + premi_amount + liquidation_fee_amount
    haircut = _exact(slippage)
    estimated = floor_amount(Fraction(valuation) * (1 - haircut))
    ltv = ratio_to_decimal(Fraction(principal_amount, valuation)) if valuation > 0 else None
    return EarlyLiquidationEstimate(
        current_valuation_amount=valuation,
        current_ltv_ratio=ltv,
        total_outstanding_amount=outstanding,
        slippage=Decimal(str(slippage)),
        estimated_liquidation_amount=estimated,
        estimated_surplus_deficit=estimated - outstanding,
    )


def calculate_early_repayment(
    repayment_amount: int,
    origination_date: datetime,
    maturity_date: datetime,
    request_date: datetime,
) -> EarlyRepaymentQuote:
    """Early settlement charges the full repayment amount.

    Interest is never discounted for early settlement; the remaining term is
    reported for information only.
    """
    total = elapsed_days(origination_date, maturity_date)
    elapsed = elapsed_days(origination_date, request_date)
    return EarlyRepaymentQuote(
        repayment_amount=repayment_amount,
        total_term_days=total,
        elapsed_days=elapsed,
        remaining_term_days=max(0, total - elapsed),
    )
