"""
Pricing utilities for domain offers
Retail margin over registrar prices and currency formatting
"""

import logging
from typing import Union, Optional
from decimal import Decimal, ROUND_CEILING, ROUND_HALF_UP, InvalidOperation

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')


def to_decimal(amount: Union[float, int, str, Decimal]) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def format_money(amount: Union[float, int, Decimal], currency: str = "USD", show_currency: bool = True) -> str:
    """
    Format monetary amount for display

    Args:
        amount: Amount to format
        currency: Currency code (default: USD)
        show_currency: Whether to show currency symbol

    Returns:
        str: Formatted money string
    """
    rounded_amount = to_decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)
    formatted = f"{rounded_amount:.2f}"
    if not show_currency:
        return formatted

    currency_symbols = {'USD': '$', 'EUR': '€', 'GBP': '£'}
    symbol = currency_symbols.get(currency.upper())
    return f"{symbol}{formatted}" if symbol else f"{formatted} {currency.upper()}"


def apply_margin(base_price: Optional[Union[float, Decimal]], margin_percentage: float = 20.0) -> Optional[float]:
    """
    Retail price for a registrar price: base plus margin, rounded up to the cent

    Returns None when the registrar did not report a price.
    """
    if base_price is None:
        return None
    try:
        base = to_decimal(base_price)
    except InvalidOperation:
        logger.warning(f"⚠️ Unparseable registrar price: {base_price!r}")
        return None
    multiplier = Decimal('1') + to_decimal(margin_percentage) / Decimal('100')
    return float((base * multiplier).quantize(CENT, rounding=ROUND_CEILING))


def cents(amount: Union[float, Decimal]) -> int:
    """Amount in minor units for payment providers"""
    return int((to_decimal(amount) * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))
