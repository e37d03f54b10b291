from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def _rate(value) -> Decimal:
    r = Decimal(str(value or 0))
    if r < 0:
        return Decimal("0")
    return r


@dataclass(frozen=True)
class ItemSplit:
    item_amount: float
    platform_fee: float
    partner_commission: float
    farmer_net: float
    platform_fee_rate: float
    commission_rate: float

    def to_dict(self) -> dict:
        return {
            "itemAmount": self.item_amount,
            "platformFee": self.platform_fee,
            "platformFeeRate": self.platform_fee_rate,
            "partnerCommission": self.partner_commission,
            "commissionRate": self.commission_rate,
            "farmerNet": self.farmer_net,
        }


def split_item_amount(price: float, quantity: float, platform_fee_rate: float, commission_rate: float = 0.0) -> ItemSplit:
    """price x quantity split into platform fee, partner commission and farmer net.

    Fee and commission are rounded to the kobo; the farmer gets the remainder,
    so fee + commission + net == item amount exactly at 2dp.
    """
    item_amount = (Decimal(str(price or 0)) * Decimal(str(quantity or 0))).quantize(CENT, rounding=ROUND_HALF_UP)
    fee = (item_amount * _rate(platform_fee_rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    commission = (item_amount * _rate(commission_rate)).quantize(CENT, rounding=ROUND_HALF_UP)
    net = item_amount - fee - commission
    return ItemSplit(
        item_amount=float(item_amount),
        platform_fee=float(fee),
        partner_commission=float(commission),
        farmer_net=float(net),
        platform_fee_rate=float(platform_fee_rate or 0.0),
        commission_rate=float(commission_rate or 0.0),
    )
