from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Union

CENT = Decimal("1")
HUNDRED = Decimal("100")

Number = Union[int, float, str, Decimal]


def to_cents(value: Decimal) -> int:
    """Redondea un valor expresado en centavos al centavo entero más cercano."""
    return int(Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP))


def euros_to_cents(value: Number) -> int:
    return to_cents(Decimal(str(value)) * HUNDRED)


def cents_to_euros(value: int) -> Decimal:
    return (Decimal(value) / HUNDRED).quantize(Decimal("0.01"))


def percent_of(amount_cents: int, percent: Number) -> int:
    """Aplica un porcentaje (6 = 6%) a un monto en centavos."""
    return to_cents(Decimal(amount_cents) * Decimal(str(percent)) / HUNDRED)


def remove_percent(amount_cents: int, percent: Number) -> int:
    """Quita un recargo ya incluido: amount / (1 + percent/100)."""
    divisor = Decimal(1) + Decimal(str(percent)) / HUNDRED
    return to_cents(Decimal(amount_cents) / divisor)


def parse_amount(value) -> Optional[int]:
    """
    Convierte el monto de una fila cruda a centavos.

    Acepta números y textos como "1.234,56 €" o "1,234.56". Devuelve None
    cuando el valor no se puede interpretar; nunca lo convierte en cero.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            parsed = Decimal(str(value))
        except InvalidOperation:
            return None
        return euros_to_cents(parsed) if parsed.is_finite() else None

    text = str(value).strip().replace(" ", "").replace("€", "").replace("$", "")
    if not text:
        return None
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        parsed = Decimal(text)
    except InvalidOperation:
        return None
    if not parsed.is_finite():
        return None
    return euros_to_cents(parsed)
