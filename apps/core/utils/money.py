from decimal import Decimal, ROUND_HALF_UP

ZERO = Decimal('0.00')


def to_decimal(value) -> Decimal:
    return Decimal(str(value or '0'))


def quantize_amount(value) -> Decimal:
    return to_decimal(value).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
