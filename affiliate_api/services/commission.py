"""
Расчёт комиссии партнёра

Чистая функция без побочных эффектов.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from shared.errors import InvalidInputError

CENT = Decimal("0.01")


def quantize_money(value: Decimal) -> Decimal:
    """Округление до копеек"""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def commission(sale_amount: Decimal, rate: Decimal, max_cap: Optional[Decimal] = None) -> Decimal:
    """
    commission = min(sale_amount * rate, max_cap или sale_amount)

    Args:
        sale_amount: Сумма продажи (>= 0)
        rate: Ставка, снятая с партнёра на момент создания реферала (0..1)
        max_cap: Верхняя граница комиссии (опционально)

    Returns:
        Комиссия в диапазоне [0, sale_amount], округлённая до копеек
    """
    sale_amount = Decimal(sale_amount)
    rate = Decimal(rate)

    if sale_amount < 0:
        raise InvalidInputError("Sale amount must not be negative")
    if rate < 0 or rate > 1:
        raise InvalidInputError(f"Commission rate must be between 0 and 1 (got {rate})")
    if max_cap is not None and Decimal(max_cap) < 0:
        raise InvalidInputError("Commission cap must not be negative")

    limit = sale_amount if max_cap is None else min(Decimal(max_cap), sale_amount)
    amount = min(quantize_money(sale_amount * rate), limit)

    return max(amount, Decimal("0"))
