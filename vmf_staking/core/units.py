"""Fixed-point token units.

VMF amounts are 18-decimal fixed point integers on the ledger:

    1 VMF = 10**18 base units

Everything authoritative (caps, balances, yield) stays an ``int`` in base
units. Decimal strings only appear at the CLI edge.
"""
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Union

TOKEN_DECIMALS = 18
BASE_UNITS = 10 ** TOKEN_DECIMALS
TOKEN_SYMBOL = "VMF"

SECONDS_PER_DAY = 86_400


def parse_units(value: Union[str, int, Decimal], decimals: int = TOKEN_DECIMALS) -> int:
    """Convert a token amount such as ``"12.5"`` to integer base units.

    Args:
        value: Amount in whole tokens
        decimals: Number of decimals of the token

    Returns:
        Amount in base units

    Raises:
        ValueError: If the value is not a number or has more precision
            than the token supports
    """
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"Invalid token amount: {value!r}")
    if not amount.is_finite():
        raise ValueError(f"Invalid token amount: {value!r}")

    scaled = amount.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise ValueError(f"{value} has more than {decimals} decimal places")
    return int(scaled)


def format_units(amount: int, decimals: int = TOKEN_DECIMALS) -> str:
    """Exact decimal string for an integer base-unit amount."""
    text = format(Decimal(amount).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


def format_amount(amount: int, places: int = 4, symbol: str = TOKEN_SYMBOL) -> str:
    """Human-readable amount, truncated (never rounded up) to ``places``."""
    value = Decimal(amount).scaleb(-TOKEN_DECIMALS)
    quantum = Decimal(1).scaleb(-places)
    truncated = value.quantize(quantum, rounding=ROUND_DOWN)
    return f"{truncated:,.{places}f} {symbol}"


def days_to_seconds(days: int) -> int:
    return int(days) * SECONDS_PER_DAY


def format_duration(seconds: int) -> str:
    """Format a duration like ``29d 4h 3m`` (``0m`` once elapsed)."""
    seconds = max(0, int(seconds))
    days, rest = divmod(seconds, SECONDS_PER_DAY)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes or not parts:
        parts.append(f"{minutes}m")
    return " ".join(parts)
