"""Totals, the submission amount guard and the payment-intent URI."""
from decimal import Decimal, InvalidOperation
from typing import Optional
from urllib.parse import quote, urlencode

import config
from errors import AmountMismatchError, SelectionError
from resolver import EffectiveBillableSet

TWO_PLACES = Decimal("0.01")


def price(effective: EffectiveBillableSet) -> Decimal:
    """Sum of direct item prices plus each chosen combo's price."""
    total = Decimal("0")
    for line in effective.lines:
        total += line.price or Decimal("0")
    for combo in effective.combos:
        total += combo.price or Decimal("0")
    return total.quantize(TWO_PLACES)


def parse_amount(value) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise SelectionError(f"'{value}' is not a valid amount.")


def check_declared_amount(declared, effective: EffectiveBillableSet) -> Decimal:
    """Raise AmountMismatchError unless the declared amount matches the total to within 0.01."""
    declared = parse_amount(declared)
    computed = price(effective)
    if abs(declared - computed) > config.AMOUNT_EPSILON:
        raise AmountMismatchError(declared, computed)
    return computed


def payment_uri(total: Decimal, payee_id: str, currency: str, note: str,
                payee_name: Optional[str] = None) -> str:
    """Build the payment-intent URI shown as a QR code.

    Totals above PAYMENT_QR_AMOUNT_LIMIT leave the amount out so the payer
    types it in, instead of the app rejecting a prefilled large transfer.
    """
    params = [("payee", payee_id)]
    if payee_name:
        params.append(("name", payee_name))
    params += [("currency", currency), ("note", note)]
    total = Decimal(total)
    if total <= config.PAYMENT_QR_AMOUNT_LIMIT:
        params.append(("amount", f"{total.quantize(TWO_PLACES)}"))
    return f"{config.PAYMENT_URI_SCHEME}://pay?{urlencode(params, quote_via=quote)}"
