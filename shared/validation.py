"""
Утилиты для валидации входных данных
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Tuple

from shared.config import PAYOUT_METHODS
from shared.errors import InvalidInputError

logger = logging.getLogger(__name__)

# Максимальная длина названия соревнования
MAX_COMPETITION_NAME_LENGTH = 100
MAX_REASON_LENGTH = 500

# Деньги хранятся в Numeric(12, 2)
CENT = Decimal("0.01")


def to_decimal(value: Any, field: str) -> Decimal:
    """
    Привести значение к Decimal

    Raises:
        InvalidInputError: если значение не число
    """
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            # через str, чтобы 0.1 не превращался в 0.1000000000000000055
            result = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidInputError(f"{field} must be a number", code="INVALID_NUMBER")

    if not result.is_finite():
        raise InvalidInputError(f"{field} must be a finite number", code="INVALID_NUMBER")
    return result


def to_naive_utc(value: datetime) -> datetime:
    """
    Даты хранятся в UTC без tzinfo; aware-даты переводятся в UTC
    """
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def has_cents_precision(amount: Decimal) -> bool:
    """Сумма представима в копейках без округления"""
    try:
        return amount == amount.quantize(CENT)
    except InvalidOperation:
        return False


def validate_sale_amount(amount: Decimal) -> Tuple[bool, str]:
    """
    Валидация суммы продажи

    Returns:
        (valid, error_message)
    """
    if amount <= 0:
        return False, "Sale amount must be greater than zero"
    if not has_cents_precision(amount):
        return False, "Sale amount must have at most two decimal places"
    return True, ""


def validate_commission_rate(rate: Decimal) -> Tuple[bool, str]:
    """
    Валидация ставки комиссии (доля от 0 до 1)
    """
    if rate < 0 or rate > 1:
        return False, f"Commission rate must be between 0 and 1 (got {rate})"
    return True, ""


def validate_date_range(start: datetime, end: datetime) -> Tuple[bool, str]:
    """
    Валидация окна соревнования
    """
    if start is None or end is None:
        return False, "Start and end dates are required"
    if end <= start:
        return False, "End date must be after start date"
    return True, ""


def validate_prize_pool(prize_pool: Decimal) -> Tuple[bool, str]:
    if prize_pool < 0:
        return False, "Prize pool must not be negative"
    if not has_cents_precision(prize_pool):
        return False, "Prize pool must have at most two decimal places"
    return True, ""


def validate_payout_method(method: str) -> Tuple[bool, str]:
    if method not in PAYOUT_METHODS:
        return False, f"Unsupported payout method. Available: {', '.join(PAYOUT_METHODS)}"
    return True, ""


def validate_competition_name(name: str) -> Tuple[bool, str]:
    if not name or not name.strip():
        return False, "Competition name must not be empty"
    if len(name) > MAX_COMPETITION_NAME_LENGTH:
        return False, f"Competition name is too long (max {MAX_COMPETITION_NAME_LENGTH})"
    return True, ""


def ensure_valid(result: Tuple[bool, str], code: str = "INVALID_INPUT"):
    """
    Превратить результат валидатора в исключение
    """
    valid, error = result
    if not valid:
        logger.info(f"Validation failed: {error}")
        raise InvalidInputError(error, code=code)


def sanitize_reason(reason: Optional[str]) -> Optional[str]:
    """
    Очистка текстового комментария (причина отмены, блокировки)
    """
    if reason is None:
        return None

    # Удаляем управляющие символы
    sanitized = "".join(char for char in reason if char.isprintable() or char.isspace())

    # Удаляем множественные пробелы
    sanitized = " ".join(sanitized.split())

    if len(sanitized) > MAX_REASON_LENGTH:
        sanitized = sanitized[:MAX_REASON_LENGTH]

    return sanitized.strip() or None
