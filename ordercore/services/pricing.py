import secrets
import time
from decimal import Decimal, ROUND_HALF_UP

CENT = Decimal("0.01")

def money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)

def line_subtotal(price, discount_percentage, quantity: int) -> Decimal:
    """Price after the percentage discount, times quantity, rounded to cents."""
    unit = Decimal(str(price)) * (Decimal("100") - Decimal(str(discount_percentage or 0))) / Decimal("100")
    return money(unit * quantity)

def order_total(subtotal, shipping_cost, discount_amount) -> Decimal:
    return money(Decimal(str(subtotal)) + Decimal(str(shipping_cost)) - Decimal(str(discount_amount)))

def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.randbelow(1000):03d}"

def whole_units(value) -> Decimal:
    """Round to a whole currency unit, for providers that only take integer amounts."""
    return Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
