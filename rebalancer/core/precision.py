from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP, InvalidOperation

PERCENT_PLACES = 4
USDT_VALUE_PLACES = 4
BALANCE_PLACES = 8
QUOTE_AMOUNT_PLACES = 2
DEFAULT_BASE_PRECISION = 2


def to_decimal(value, default: Decimal = Decimal("0")) -> Decimal:
    """Lenient conversion for exchange strings ("" / None / garbage -> default)."""
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def round_half_up(value: Decimal, places: int = PERCENT_PLACES) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


def truncate(value: Decimal, places: int) -> Decimal:
    """Round toward zero. Quantities never get rounded up."""
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN)


def decimal_places(raw) -> int:
    """
    Number of decimal places allowed by a precision value.

    Strings are steps, as lotSizeFilter sends them: "0.0001" -> 4 and
    "1" -> 0 (whole units). A plain int is already a count of places.
    """
    if isinstance(raw, int) and not isinstance(raw, bool):
        return max(0, raw)
    step = to_decimal(raw)
    if not step.is_finite() or step <= 0:
        return DEFAULT_BASE_PRECISION
    return max(0, -step.normalize().as_tuple().exponent)


def format_plain(value: Decimal) -> str:
    """Plain notation without trailing zeros, as the order API expects."""
    normalized = value.normalize()
    if normalized == normalized.to_integral():
        return str(normalized.quantize(Decimal(1)))
    return format(normalized, "f")
