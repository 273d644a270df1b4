"""
Settlement calculator for staked sessions.

Settlement formula (profit based, markup always applied):
- profit = cashout - buy-in
- staker entitlement = profit * percentage * markup
- settlement amount = -(staker entitlement)

Sign convention, used by every caller:
- Negative: the staked player owes the staker (the session won)
- Positive: the staker owes the player (the staker absorbs their share of a loss)
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

from stakeledger.services.base import ValidationError

Amount = Union[Decimal, int, str]

CENT = Decimal("0.01")
MIN_MARKUP = Decimal("1.0")
MAX_PERCENTAGE = Decimal("1")

# Stored precision of the agreement and invite term columns
PERCENTAGE_QUANTUM = Decimal("0.000001")
MARKUP_QUANTUM = Decimal("0.0001")


def to_decimal(value: Amount, field_name: str = "amount") -> Decimal:
    """Convert an amount to Decimal without going through float."""
    if isinstance(value, bool):
        raise ValidationError(f"{field_name} must be a number")
    try:
        if isinstance(value, Decimal):
            result = value
        elif isinstance(value, float):
            result = Decimal(str(value))
        else:
            result = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{field_name} must be finite")
    return result


def validate_terms(percentage: Amount, markup: Amount) -> tuple[Decimal, Decimal]:
    """
    Validate a staker's terms.

    Terms are rounded to the precision the agreement columns store
    (6 places for percentage, 4 for markup), so the value handed back
    is the value a later read returns.

    Returns:
        (percentage, markup) as Decimals
    """
    pct = to_decimal(percentage, "percentage")
    mk = to_decimal(markup, "markup")
    if pct <= 0 or pct > MAX_PERCENTAGE:
        raise ValidationError(f"percentage must be in (0, 1], got {pct}")
    if mk < MIN_MARKUP:
        raise ValidationError(f"markup must be at least 1.0, got {mk}")

    pct = pct.quantize(PERCENTAGE_QUANTUM, rounding=ROUND_HALF_UP)
    mk = mk.quantize(MARKUP_QUANTUM, rounding=ROUND_HALF_UP)
    if pct <= 0:
        raise ValidationError(f"percentage {percentage} rounds to zero")
    return pct, mk


def normalize_terms(
    percentage: Optional[Decimal],
    markup: Optional[Decimal],
) -> tuple[Optional[Decimal], Optional[Decimal]]:
    """Round possibly-missing terms to stored precision without validating them."""
    if percentage is not None:
        percentage = percentage.quantize(PERCENTAGE_QUANTUM, rounding=ROUND_HALF_UP)
    if markup is not None:
        markup = markup.quantize(MARKUP_QUANTUM, rounding=ROUND_HALF_UP)
    return percentage, markup


def validate_results(buy_in: Amount, cashout: Amount) -> tuple[Decimal, Decimal]:
    """Validate final session results (both non-negative)."""
    b = to_decimal(buy_in, "buy_in")
    c = to_decimal(cashout, "cashout")
    if b < 0:
        raise ValidationError(f"buy_in must be non-negative, got {b}")
    if c < 0:
        raise ValidationError(f"cashout must be non-negative, got {c}")
    return b, c


def compute_settlement(
    buy_in: Amount,
    cashout: Amount,
    percentage: Amount,
    markup: Amount,
) -> Decimal:
    """
    Compute the signed transfer for one stake.

    Only call once buy-in and cashout are final for the session.

    Args:
        buy_in: Player's total buy-in for the session
        cashout: Player's cashout for the session
        percentage: Fraction of the result sold, in (0, 1]
        markup: Multiplier >= 1.0

    Returns:
        Signed amount in cents precision (negative = player owes staker)
    """
    b, c = validate_results(buy_in, cashout)
    pct, mk = validate_terms(percentage, markup)

    profit = c - b
    staker_share_of_profit = profit * pct
    staker_entitlement = staker_share_of_profit * mk

    amount = (-staker_entitlement).quantize(CENT, rounding=ROUND_HALF_UP)
    if not amount:
        # Break-even sessions settle at 0.00, never -0.00
        return Decimal("0.00")
    return amount


def settlement_direction(amount: Decimal) -> str:
    """Who pays whom for a signed settlement amount."""
    if amount < 0:
        return "player_pays_staker"
    if amount > 0:
        return "staker_pays_player"
    return "even"


def format_settlement(amount: Decimal) -> str:
    """
    Format a settlement for display.

    Examples:
        -50 -> "Player owes staker $50.00"
        100 -> "Staker owes player $100.00"
    """
    direction = settlement_direction(amount)
    value = abs(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    if direction == "player_pays_staker":
        return f"Player owes staker ${value:,.2f}"
    if direction == "staker_pays_player":
        return f"Staker owes player ${value:,.2f}"
    return "Even - nothing owed"
