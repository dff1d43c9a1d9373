"""Platform commission split.

The commission is taken from the gross escrow amount when the ledger entry is
created; the provider's payable balance is the net amount.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from marketplace.config import settings

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class CommissionBreakdown:
    gross: Decimal
    rate: Decimal
    commission: Decimal
    net_amount: Decimal

    def to_dict(self) -> dict:
        return {
            "gross": str(self.gross),
            "rate": str(self.rate),
            "commission": str(self.commission),
            "net_amount": str(self.net_amount),
        }


def calculate_commission(gross: Decimal | int | str, rate: Decimal | None = None) -> CommissionBreakdown:
    """Split ``gross`` into commission and net, rounded to the cent."""
    if rate is None:
        rate = settings.commission_rate
    gross = Decimal(str(gross)).quantize(CENTS, rounding=ROUND_HALF_UP)
    commission = (gross * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
    return CommissionBreakdown(
        gross=gross,
        rate=rate,
        commission=commission,
        net_amount=gross - commission,
    )
