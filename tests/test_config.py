import json
from decimal import Decimal

from lending_ledger.config import POLICY, LedgerPolicy, load_policy


def test_shipped_policy_matches_defaults():
    assert POLICY == LedgerPolicy()


def test_load_policy_overrides_and_coerces(tmp_path):
    path = tmp_path / "policy.json"
    path.write_text(
        json.dumps(
            {
                "repayment_invoice_due_days": 14,
                "liquidation_slippage": 0.05,
                "withdrawal_platform_fee": "250",
                "not_a_knob": True,
            }
        )
    )
    policy = load_policy(path)
    assert policy.repayment_invoice_due_days == 14
    assert policy.liquidation_slippage == Decimal("0.05")
    assert policy.withdrawal_platform_fee == 250
    assert policy.offer_expiration_days == 30


def test_missing_policy_file_falls_back(tmp_path):
    assert load_policy(tmp_path / "absent.json") == LedgerPolicy()
