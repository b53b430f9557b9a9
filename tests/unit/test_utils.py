"""Unit tests for amount, date and text helpers"""

import pytest
from datetime import date, datetime
from decimal import Decimal
from recon_gateway.utils.date_utils import date_window, days_between, parse_date
from recon_gateway.utils.money import from_cents, parse_amount, to_cents
from recon_gateway.utils.text_utils import jaccard, strip_accents, tokenize


@pytest.mark.parametrize(
    "value, expected",
    [
        ("1234.56", Decimal("1234.56")),
        ("1234,56", Decimal("1234.56")),
        ("1.234,56", Decimal("1234.56")),
        ("R$ 1.234,56", Decimal("1234.56")),
        ("1,234.56", Decimal("1234.56")),
        ("1.234", Decimal("1234")),
        (250, Decimal("250")),
        (89.9, Decimal("89.9")),
    ],
)
def test_parse_amount_formats(value, expected):
    assert parse_amount(value) == expected


@pytest.mark.parametrize(
    "value",
    ["", "abc", "1-2", True, None, [1], float("nan"), float("inf"), float("-inf"), Decimal("NaN"), Decimal("Infinity")],
)
def test_parse_amount_rejects(value):
    with pytest.raises(ValueError):
        parse_amount(value)


def test_cents_conversion_rounds_half_up():
    assert to_cents(Decimal("10.005")) == 1001
    assert from_cents(40003) == Decimal("400.03")


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2024-05-02", date(2024, 5, 2)),
        ("02/05/2024", date(2024, 5, 2)),
        ("02052024", date(2024, 5, 2)),
        ("2024-05-02T23:10:00Z", date(2024, 5, 2)),
        (datetime(2024, 5, 2, 8, 0), date(2024, 5, 2)),
    ],
)
def test_parse_date_formats(value, expected):
    assert parse_date(value) == expected


def test_parse_date_rejects_unknown_shape():
    with pytest.raises(ValueError):
        parse_date("May 2nd")


def test_days_between_is_symmetric():
    assert days_between(date(2024, 1, 1), date(2024, 1, 16)) == 15
    assert days_between(date(2024, 1, 16), date(2024, 1, 1)) == 15


def test_date_window():
    assert date_window(date(2024, 1, 16), 15) == (date(2024, 1, 1), date(2024, 1, 31))


def test_tokenize_strips_accents_and_case():
    assert strip_accents("Conciliação") == "Conciliacao"
    assert tokenize("Mercado Bom Preço", None, "PIX-123") == frozenset({"mercado", "bom", "preco", "pix", "123"})


def test_jaccard():
    assert jaccard(frozenset({"a", "b"}), frozenset({"b", "c"})) == pytest.approx(1 / 3)
    assert jaccard(frozenset(), frozenset({"a"})) == 0.0
