import math
from datetime import datetime
from decimal import Decimal
from fractions import Fraction
from types import SimpleNamespace

import pytest

from lending_ledger.calculator import (calculate_early_repayment,
                                       calculate_loan_amounts,
                                       calculate_requirements,
                                       collateral_valuation,
                                       estimate_early_liquidation,
                                       liquidation_target_amount)
from lending_ledger.errors import InvalidAmountError


def _config(**overrides):
    values = dict(
        loan_provision_rate=Decimal("3.0"),
        loan_min_ltv_ratio=Decimal("60.0"),
        loan_max_ltv_ratio=Decimal("70.0"),
        loan_individual_redelivery_fee_rate=Decimal("10.0"),
        loan_liquidation_premi_rate=Decimal("2.0"),
        loan_liquidation_fee_rate=Decimal("1.0"),
    )
    values.update(overrides)
    return SimpleNamespace(**values)


def _rate(bid):
    return SimpleNamespace(bid_price=Fraction(Decimal(str(bid))))


def test_requirement_scenario_usdc_bnb():
    req = calculate_requirements(10_000_000_000, 6, _config(), _rate("2000.0"))
    assert req.provision_amount == 300_000_000
    assert req.required_collateral_amount == math.ceil(Fraction(10_000_000_000) / Fraction(1200))
    assert req.required_collateral_amount == 8_333_334
    assert req.provision_amount > 0 and req.required_collateral_amount > 0
    assert req.min_ltv_ratio == Decimal("60.0")


@pytest.mark.parametrize(
    "principal,rate",
    [
        (1, "3.0"),
        (33, "3.0"),
        (999_999_999, "2.5"),
        (123_456_789_012_345_678_901, "0.75"),
        (10**30 + 7, "33.333"),
    ],
)
def test_provision_never_rounds_up(principal, rate):
    req = calculate_requirements(principal, 3, _config(loan_provision_rate=Decimal(rate)), _rate("1.5"))
    exact = Fraction(principal) * Fraction(Decimal(rate)) / 100
    assert req.provision_amount == math.floor(exact)
    assert req.provision_amount <= exact


@pytest.mark.parametrize(
    "principal,min_ltv,bid",
    [
        (1, "60", "2000"),
        (7, "50", "3"),
        (10_000_000_000, "60.0", "2000.0"),
        (999_999_999_999_999_999, "45.5", "0.0001"),
        (12_345, "80", "1.23456789"),
    ],
)
def test_collateral_never_rounds_down(principal, min_ltv, bid):
    req = calculate_requirements(
        principal, 12, _config(loan_min_ltv_ratio=Decimal(min_ltv)), _rate(bid)
    )
    exact = Fraction(principal) / (Fraction(Decimal(min_ltv)) / 100 * Fraction(Decimal(bid)))
    assert req.required_collateral_amount == math.ceil(exact)
    assert req.required_collateral_amount >= exact


def test_collateral_rescaled_between_decimals():
    # 1000 USDC (6 dp) against BTC (8 dp) at 50_000, min LTV 50 %
    req = calculate_requirements(
        1_000_000_000,
        3,
        _config(loan_min_ltv_ratio=Decimal("50")),
        _rate("50000"),
        principal_decimals=6,
        collateral_decimals=8,
    )
    # 1000 / (0.5 * 50000) = 0.04 BTC
    assert req.required_collateral_amount == 4_000_000


def test_float_config_values_are_exact():
    req = calculate_requirements(
        10_000_000_000, 6, _config(loan_provision_rate=3.0, loan_min_ltv_ratio=60.0), _rate(2000.0)
    )
    assert req.provision_amount == 300_000_000


@pytest.mark.parametrize(
    "principal,term,config,rate",
    [
        (0, 6, _config(), _rate("2000")),
        (100, 0, _config(), _rate("2000")),
        (100, 6, _config(loan_min_ltv_ratio=Decimal("0")), _rate("2000")),
        (100, 6, _config(), _rate("0")),
    ],
)
def test_requirements_reject_degenerate_inputs(principal, term, config, rate):
    with pytest.raises(InvalidAmountError):
        calculate_requirements(principal, term, config, rate)


def test_loan_amounts():
    amounts = calculate_loan_amounts(2_000_000_000, 60_000_000, Decimal("12.5"), 6, _config())
    assert amounts.interest_amount == 125_000_000
    assert amounts.repayment_amount == 2_185_000_000
    assert amounts.redelivery_fee_amount == 12_500_000
    assert amounts.redelivery_amount == 2_112_500_000
    assert amounts.premi_amount == 40_000_000
    assert amounts.liquidation_fee_amount == 20_000_000
    assert amounts.min_collateral_valuation == 2_245_000_000
    assert amounts.mc_ltv_ratio == Decimal("0.8908")


def test_interest_floors_partial_units():
    amounts = calculate_loan_amounts(1_000, 0, Decimal("10"), 1, _config())
    # 1000 * 0.10 / 12 = 8.33..
    assert amounts.interest_amount == 8


def test_liquidation_target():
    assert liquidation_target_amount(2_185_000_000, 40_000_000, 20_000_000) == 2_245_000_000


def test_collateral_valuation_floors():
    assert collateral_valuation(3, Fraction(1, 3)) == 1
    assert collateral_valuation(1_666_667, Decimal("2000")) == 3_333_334_000


def test_early_liquidation_estimate():
    estimate = estimate_early_liquidation(
        principal_amount=2_000_000_000,
        interest_amount=125_000_000,
        premi_amount=40_000_000,
        liquidation_fee_amount=20_000_000,
        collateral_amount=1_666_667,
        bid_price=Decimal("2000"),
    )
    assert estimate.current_valuation_amount == 3_333_334_000
    assert estimate.current_ltv_ratio == Decimal("0.5999")
    assert estimate.total_outstanding_amount == 2_185_000_000
    assert estimate.slippage == Decimal("0.02")
    assert estimate.estimated_liquidation_amount == 3_266_667_320
    assert estimate.estimated_surplus_deficit == 1_081_667_320


def test_early_liquidation_estimate_reports_deficit():
    estimate = estimate_early_liquidation(
        principal_amount=1_000,
        interest_amount=100,
        premi_amount=10,
        liquidation_fee_amount=10,
        collateral_amount=1_000,
        bid_price=Decimal("0.5"),
    )
    assert estimate.estimated_surplus_deficit < 0


def test_early_liquidation_estimate_worthless_collateral():
    estimate = estimate_early_liquidation(
        principal_amount=1_000,
        interest_amount=0,
        premi_amount=0,
        liquidation_fee_amount=0,
        collateral_amount=0,
        bid_price=Decimal("2000"),
    )
    assert estimate.current_ltv_ratio is None
    assert estimate.estimated_surplus_deficit == -1_000


def test_early_repayment_charges_full_interest():
    origination = datetime(2025, 1, 1)
    maturity = datetime(2025, 7, 1)
    early = calculate_early_repayment(2_185_000_000, origination, maturity, datetime(2025, 2, 1))
    late = calculate_early_repayment(2_185_000_000, origination, maturity, datetime(2025, 6, 30))
    assert early.repayment_amount == late.repayment_amount == 2_185_000_000
    assert early.full_interest_charged
    assert early.total_term_days == 181
    assert early.elapsed_days == 31
    assert early.remaining_term_days == 150
    assert late.remaining_term_days == 1


def test_early_repayment_after_maturity_has_no_remaining_days():
    quote = calculate_early_repayment(10, datetime(2025, 1, 1), datetime(2025, 2, 1), datetime(2025, 3, 1))
    assert quote.remaining_term_days == 0
