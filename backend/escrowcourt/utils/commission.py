from decimal import ROUND_HALF_UP, Decimal

# Default platform commission rates (overridable through PLATFORM_FEE_RATE)
RATES = {
    "escrow_release": 0.05,
}


def compute_platform_fee(amount: int, rate: float) -> int:
    """Fee in minor units, rounded half-up. Negative inputs count as zero."""
    a = Decimal(max(int(amount or 0), 0))
    r = Decimal(str(max(float(rate or 0.0), 0.0)))
    return int((a * r).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def net_of_fee(amount: int, rate: float) -> tuple[int, int]:
    fee = compute_platform_fee(amount, rate)
    return int(amount) - fee, fee
