"""Payout arithmetic for settled invoices.

Amounts are integer millisatoshis (msat). The only non-integer inputs are the
BTC totals reported by the settlement source and the configured fractions,
both handled as ``Decimal``; nothing here touches the network or the ledger.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

MSAT_PER_SAT = 1000
MSAT_PER_BTC = Decimal(10) ** 11
MIN_PAYOUT_MSAT = MSAT_PER_SAT


@dataclass(frozen=True)
class TipInfo:
    amount: Decimal
    subtotal: Optional[Decimal] = None
    total: Optional[Decimal] = None

    def fraction(self) -> Decimal:
        """Share of the payout owed to tip recipients.

        The tip is measured against the subtotal. When the tip exceeds the
        subtotal (the point-of-sale recorded it against the order total) or no
        usable subtotal exists, the order total is the base instead.
        """
        if self.amount <= 0:
            return Decimal("0")
        base = self.subtotal
        if base is None or base <= 0 or self.amount > base:
            base = self.total
        if base is None or base <= 0:
            raise ValueError("tip present without a usable subtotal or total")
        if self.amount > base:
            raise ValueError(f"tip {self.amount} exceeds order total {base}")
        return self.amount / base


@dataclass(frozen=True)
class SettlementAmounts:
    owner_payout_msat: int
    fee_retained_msat: int
    tip_msat: int
    off_ramp_msat: int

    def owner_after_off_ramp(self) -> int:
        return max(self.owner_payout_msat - self.off_ramp_msat, 0)


def round_half_up(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_HALF_UP))


def floor_to_sat(msat: int) -> int:
    return (msat // MSAT_PER_SAT) * MSAT_PER_SAT


def btc_to_msat(amount_btc: Decimal) -> int:
    if amount_btc < 0:
        raise ValueError("amount must be non-negative")
    return round_half_up(amount_btc * MSAT_PER_BTC)


def calculate_settlement(
    gross_msat: int,
    payout_fraction: Decimal,
    tip: Optional[TipInfo] = None,
    off_ramp_fraction: Decimal = Decimal("0"),
) -> SettlementAmounts:
    if gross_msat < 0:
        raise ValueError("gross_msat must be non-negative")
    if not Decimal("0") < payout_fraction <= Decimal("1"):
        raise ValueError("payout_fraction must be in (0, 1]")
    if not Decimal("0") <= off_ramp_fraction <= Decimal("1"):
        raise ValueError("off_ramp_fraction must be in [0, 1]")

    payout = floor_to_sat(round_half_up(Decimal(gross_msat) * payout_fraction))
    if payout < MIN_PAYOUT_MSAT:
        payout = MIN_PAYOUT_MSAT

    fee_retained = max(gross_msat - payout, 0)

    tip_msat = 0
    if tip is not None:
        tip_fraction = tip.fraction()
        if tip_fraction > 0:
            tip_msat = min(floor_to_sat(round_half_up(Decimal(payout) * tip_fraction)), payout)
            payout -= tip_msat

    off_ramp_msat = 0
    if off_ramp_fraction > 0:
        # Measured on the post-tip payout; subtracted only once the off-ramp leg succeeds.
        off_ramp_msat = floor_to_sat(round_half_up(Decimal(payout) * off_ramp_fraction))

    return SettlementAmounts(
        owner_payout_msat=payout,
        fee_retained_msat=fee_retained,
        tip_msat=tip_msat,
        off_ramp_msat=off_ramp_msat,
    )


def split_tip(tip_msat: int, recipients: int) -> List[int]:
    """Equal whole-satoshi shares; the remainder is not paid to anyone."""
    if recipients <= 0:
        return []
    share = floor_to_sat(tip_msat // recipients)
    return [share] * recipients


__all__ = [
    "MSAT_PER_SAT",
    "MIN_PAYOUT_MSAT",
    "SettlementAmounts",
    "TipInfo",
    "btc_to_msat",
    "calculate_settlement",
    "floor_to_sat",
    "split_tip",
]
