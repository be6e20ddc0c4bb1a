import random
from decimal import Decimal

import pytest

from shared.errors import InvalidInputError
from affiliate_api.services.commission import commission


def test_basic_rate():
    assert commission(Decimal("200.00"), Decimal("0.10")) == Decimal("20.00")


def test_rounds_half_up_to_cents():
    assert commission(Decimal("0.05"), Decimal("0.10")) == Decimal("0.01")
    assert commission(Decimal("10.04"), Decimal("0.125")) == Decimal("1.26")


def test_cap_limits_commission():
    assert commission(Decimal("1000"), Decimal("0.5"), max_cap=Decimal("100")) == Decimal("100")


def test_cap_above_result_is_ignored():
    assert commission(Decimal("100"), Decimal("0.1"), max_cap=Decimal("500")) == Decimal("10.00")


def test_zero_rate_and_zero_amount():
    assert commission(Decimal("100"), Decimal("0")) == Decimal("0.00")
    assert commission(Decimal("0"), Decimal("0.3")) == Decimal("0.00")


def test_full_rate_never_exceeds_sale():
    assert commission(Decimal("0.005"), Decimal("1")) <= Decimal("0.005")


@pytest.mark.parametrize(
    "amount, rate, cap",
    [
        (Decimal("-1"), Decimal("0.1"), None),
        (Decimal("10"), Decimal("-0.1"), None),
        (Decimal("10"), Decimal("1.5"), None),
        (Decimal("10"), Decimal("0.1"), Decimal("-5")),
    ],
)
def test_invalid_inputs(amount, rate, cap):
    with pytest.raises(InvalidInputError):
        commission(amount, rate, cap)


def test_commission_bounded_by_sale_amount():
    rng = random.Random(7)
    for _ in range(500):
        amount = Decimal(rng.randint(0, 10_000_00)) / 100
        rate = Decimal(rng.randint(0, 10_000)) / 10_000
        cap = None if rng.random() < 0.5 else Decimal(rng.randint(0, 1000))
        result = commission(amount, rate, cap)
        assert Decimal("0") <= result <= amount
        if cap is not None:
            assert result <= cap
