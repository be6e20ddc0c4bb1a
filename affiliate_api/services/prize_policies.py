"""
Политики распределения призового фонда

Правила соревнования хранятся как JSON, например:

    {
        "prize_policy": {"type": "fixed_split", "version": 1, "splits": ["0.5", "0.3", "0.2"]},
        "min_sales": 1
    }

Политика выбирается по (type, version), поэтому старые соревнования
рассчитываются по той версии, с которой были созданы.
"""
from decimal import Decimal, ROUND_DOWN
from typing import Dict, List, Optional, Tuple

from shared.config import DEFAULT_PRIZE_SPLITS
from shared.errors import InvalidInputError
from shared.validation import to_decimal


CENT = Decimal("0.01")


def floor_money(value: Decimal) -> Decimal:
    """Округление вниз до копеек: сумма призов никогда не превышает фонд"""
    return value.quantize(CENT, rounding=ROUND_DOWN)


class PrizePolicy:
    """Базовая политика"""

    type = None
    version = 1

    def validate(self, params: dict):
        """Проверить параметры политики, InvalidInputError при ошибке"""

    def allocate(self, prize_pool: Decimal, revenues: List[Decimal], params: dict) -> List[Decimal]:
        """
        Распределить фонд между призёрами

        Args:
            prize_pool: Призовой фонд
            revenues: Выручка допущенных участников в порядке мест
            params: Параметры политики

        Returns:
            Приз для каждого участника (та же длина, что у revenues)
        """
        raise NotImplementedError


class FixedSplitPolicy(PrizePolicy):
    """Фиксированные доли по местам: [0.5, 0.3, 0.2]"""

    type = "fixed_split"

    def _splits(self, params: dict) -> List[Decimal]:
        raw = params.get("splits")
        if raw is None:
            return list(DEFAULT_PRIZE_SPLITS)
        if not isinstance(raw, list) or not raw:
            raise InvalidInputError("splits must be a non-empty list", code="INVALID_RULES")
        return [to_decimal(value, "split") for value in raw]

    def validate(self, params: dict):
        splits = self._splits(params)
        if any(split < 0 for split in splits):
            raise InvalidInputError("splits must not be negative", code="INVALID_RULES")
        if sum(splits) > 1:
            raise InvalidInputError("splits must not add up to more than 1", code="INVALID_RULES")

    def allocate(self, prize_pool, revenues, params):
        splits = self._splits(params)
        return [
            floor_money(prize_pool * splits[i]) if i < len(splits) else Decimal("0")
            for i in range(len(revenues))
        ]


class WinnerTakesAllPolicy(PrizePolicy):
    """Весь фонд первому месту"""

    type = "winner_takes_all"

    def allocate(self, prize_pool, revenues, params):
        return [floor_money(prize_pool) if i == 0 else Decimal("0") for i in range(len(revenues))]


class ProportionalPolicy(PrizePolicy):
    """Фонд делится между top_n пропорционально выручке"""

    type = "proportional"

    def validate(self, params: dict):
        top_n = params.get("top_n", 3)
        if not isinstance(top_n, int) or top_n < 1:
            raise InvalidInputError("top_n must be a positive integer", code="INVALID_RULES")

    def allocate(self, prize_pool, revenues, params):
        top_n = params.get("top_n", 3)
        winners = revenues[:top_n]
        total = sum(winners, Decimal("0"))
        if total <= 0:
            return [Decimal("0")] * len(revenues)
        return [
            floor_money(prize_pool * revenues[i] / total) if i < top_n else Decimal("0")
            for i in range(len(revenues))
        ]


# Реестр политик: (type, version) -> политика
POLICIES: Dict[Tuple[str, int], PrizePolicy] = {
    (policy.type, policy.version): policy
    for policy in (FixedSplitPolicy(), WinnerTakesAllPolicy(), ProportionalPolicy())
}

DEFAULT_POLICY = {"type": FixedSplitPolicy.type, "version": 1}


def resolve_policy(rules: Optional[dict]) -> Tuple[PrizePolicy, dict]:
    """
    Найти политику по правилам соревнования

    Raises:
        InvalidInputError: неизвестный тип или версия
    """
    params = dict((rules or {}).get("prize_policy") or DEFAULT_POLICY)
    key = (params.get("type"), params.get("version", 1))

    policy = POLICIES.get(key)
    if policy is None:
        raise InvalidInputError(
            f"Unknown prize policy {key[0]} v{key[1]}. Available: "
            f"{', '.join(f'{t} v{v}' for t, v in POLICIES)}",
            code="INVALID_RULES"
        )
    return policy, params


def min_sales(rules: Optional[dict]) -> int:
    """Минимум продаж для права на приз"""
    return int((rules or {}).get("min_sales", 1))


def validate_rules(rules: Optional[dict]) -> dict:
    """
    Проверить правила при создании соревнования и дополнить значениями по умолчанию
    """
    if rules is not None and not isinstance(rules, dict):
        raise InvalidInputError("rules must be an object", code="INVALID_RULES")

    rules = dict(rules or {})
    policy, params = resolve_policy(rules)
    policy.validate(params)

    if not isinstance(rules.get("min_sales", 1), int) or rules.get("min_sales", 1) < 0:
        raise InvalidInputError("min_sales must be a non-negative integer", code="INVALID_RULES")

    rules["prize_policy"] = params
    return rules
