import pytest

from csv_utils import parse_amount


@pytest.mark.parametrize(
    "raw, cents",
    [
        ("10", 1000),
        ("12,50", 1250),
        ("10.005", 1001),
        ("2.675", 268),
        ("0.005", 1),
        ("1 234,56 грн", 123456),
        ("₴ 99.9", 9990),
        ("15 UAH", 1500),
    ],
)
def test_parse_amount_converts_to_cents_rounding_half_up(raw: str, cents: int) -> None:
    assert parse_amount(raw) == cents


@pytest.mark.parametrize(
    "raw",
    ["0", "-5", "0.004", "", "abc", "nan", "inf", "-inf", "1e400"],
)
def test_parse_amount_rejects_non_positive_and_malformed(raw: str) -> None:
    with pytest.raises(ValueError):
        parse_amount(raw)
