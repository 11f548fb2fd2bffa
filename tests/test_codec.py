import re
from decimal import Decimal

import pytest

from promptpay_checkout.codec import format_amount, make_reference, parse_reference, sanitize_reference
from promptpay_checkout.errors import InvalidAmount, InvalidReference


@pytest.mark.parametrize("value, expected", [
    (Decimal("250"), "250.00"),
    ("99.5", "99.50"),
    (12, "12.00"),
    (0.1, "0.10"),
    ("1.005", "1.01"),
    (0, "0.00"),
])
def test_format_amount(value, expected):
    assert format_amount(value) == expected


@pytest.mark.parametrize("value", ["abc", "NaN", "Infinity", float("inf"), -1, "-0.01", None, True])
def test_format_amount_rejects_bad_input(value):
    with pytest.raises(InvalidAmount):
        format_amount(value)


def test_format_amount_lenient_mode_never_raises():
    assert format_amount("abc", strict=False) == "0.00"
    assert format_amount(float("nan"), strict=False) == "0.00"
    assert format_amount("7", strict=False) == "7.00"


def test_make_reference_shape():
    assert make_reference(42) == "ORD0000000042"
    assert make_reference(42) == make_reference(42)
    for order_id in (0, 1, 99, 123456, 9999999999, 10 ** 15):
        reference = make_reference(order_id)
        assert len(reference) <= 20
        assert re.match(r"^[A-Z0-9]+$", reference)


def test_make_reference_is_injective_over_small_ids():
    references = {make_reference(i) for i in range(5000)}
    assert len(references) == 5000


@pytest.mark.parametrize("value", [-1, "42", 4.2, None, True])
def test_make_reference_rejects_non_ids(value):
    with pytest.raises(InvalidReference):
        make_reference(value)


def test_parse_reference_round_trips_formatted_and_bare_ids():
    assert parse_reference(make_reference(42)) == 42
    assert parse_reference("ord-0000000007") == 7
    assert parse_reference("15") == 15
    assert parse_reference(make_reference(0)) == 0


@pytest.mark.parametrize("value", ["", None, "INV42", "ORD"])
def test_parse_reference_rejects_foreign_references(value):
    with pytest.raises(InvalidReference):
        parse_reference(value)


def test_sanitize_reference_strips_and_truncates():
    assert sanitize_reference(" web-shop #1 ") == "WEBSHOP1"
    assert sanitize_reference("x" * 30) == "X" * 20
