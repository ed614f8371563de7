"""Static ledger policy (durations, fees, market routing).

Time-versioned business parameters (LTV bounds, provision and fee rates) are
*not* here; they live in the ``PlatformConfig`` table and are resolved per
operation date by :func:`lending_ledger.resolvers.resolve_platform_config`.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Policy loading
# ---------------------------------------------------------------------------

_DEFAULT_POLICY: Dict[str, Any] = {
    "offer_expiration_days": 30,
    "application_expiration_days": 7,
    "repayment_invoice_due_days": 7,
    "early_repayment_invoice_due_days": 3,
    "liquidation_slippage": "0.02",
    "liquidation_market_provider": "DefaultProvider",
    "liquidation_market_symbol": "DEFAULT",
    "default_min_loan_principal_units": 1000,
    "withdrawal_platform_fee": 0,
    "platform_user_id": "platform",
    "usd_token_id": "iso4217:usd",
    "usd_decimals": 6,
    "default_page_limit": 20,
    "max_page_limit": 100,
}

_POLICY_PATH = Path(__file__).with_name("policy.json")


@dataclass(slots=True, frozen=True)
class LedgerPolicy:
    """Static knobs read once at start-up.

    Attributes
    ----------
    offer_expiration_days / application_expiration_days
        Default lifetime when the caller does not pass an expiration date.
    repayment_invoice_due_days / early_repayment_invoice_due_days
        Invoice due date offset for full and early repayment requests.
    liquidation_slippage
        Haircut applied to collateral valuation when estimating liquidation
        proceeds (``0.02`` = 2 %).
    withdrawal_platform_fee
        Flat fee (smallest units) reported on withdrawals. Zero by default.
    platform_user_id
        Owner id of the platform escrow and fee accounts.
    usd_token_id / usd_decimals
        Quote token used for USD valuations and its precision.
    """

    offer_expiration_days: int = 30
    application_expiration_days: int = 7
    repayment_invoice_due_days: int = 7
    early_repayment_invoice_due_days: int = 3
    liquidation_slippage: Decimal = Decimal("0.02")
    liquidation_market_provider: str = "DefaultProvider"
    liquidation_market_symbol: str = "DEFAULT"
    default_min_loan_principal_units: int = 1000
    withdrawal_platform_fee: int = 0
    platform_user_id: str = "platform"
    usd_token_id: str = "iso4217:usd"
    usd_decimals: int = 6
    default_page_limit: int = 20
    max_page_limit: int = 100

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "LedgerPolicy":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning("ignoring unknown policy keys: %s", ", ".join(sorted(unknown)))
        values = {k: v for k, v in data.items() if k in known}
        if "liquidation_slippage" in values:
            values["liquidation_slippage"] = Decimal(str(values["liquidation_slippage"]))
        for key in ("withdrawal_platform_fee", "default_min_loan_principal_units"):
            if key in values:
                values[key] = int(values[key])
        return cls(**values)


def _load_policy(path: Path | None = None) -> Dict[str, Any]:
    path = path or Path(os.getenv("LEDGER_POLICY_PATH", str(_POLICY_PATH)))
    try:
        with path.open() as fp:
            data = json.load(fp)
            return {**_DEFAULT_POLICY, **data}
    except FileNotFoundError:
        return dict(_DEFAULT_POLICY)


def load_policy(path: Path | None = None) -> LedgerPolicy:
    return LedgerPolicy.from_mapping(_load_policy(path))


POLICY = load_policy()
