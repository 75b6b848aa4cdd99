from decimal import Decimal

from rebalancer.core.precision import decimal_places, format_plain, round_half_up, to_decimal, truncate


def test_round_half_up_percentages():
    assert round_half_up(Decimal("55.55555")) == Decimal("55.5556")
    assert round_half_up(Decimal("12.34565")) == Decimal("12.3457")
    assert round_half_up(Decimal("1.00004")) == Decimal("1.0000")


def test_truncate_never_rounds_up():
    assert truncate(Decimal("0.0019999"), 3) == Decimal("0.001")
    assert truncate(Decimal("45.999"), 2) == Decimal("45.99")
    assert truncate(Decimal("5"), 2) == Decimal("5.00")


def test_truncated_quantity_is_at_most_the_raw_value():
    for raw in ("0.123456789", "1.99999999", "0.000049999", "12345.6789"):
        value = Decimal(raw)
        for places in range(0, 9):
            assert truncate(value, places) <= value


def test_decimal_places_from_step_or_count():
    assert decimal_places("0.000001") == 6
    assert decimal_places("0.01") == 2
    assert decimal_places("1") == 0
    assert decimal_places("10") == 0
    assert decimal_places(8) == 8
    assert decimal_places("abc") == 2
    assert decimal_places("1e-5") == 5
    assert decimal_places("") == 2
    assert decimal_places(None) == 2


def test_format_plain():
    assert format_plain(Decimal("300.00")) == "300"
    assert format_plain(Decimal("0.00100")) == "0.001"
    assert format_plain(Decimal("1E-7")) == "0.0000001"
    assert format_plain(Decimal("45.50")) == "45.5"


def test_to_decimal_is_lenient():
    assert to_decimal("1.5") == Decimal("1.5")
    assert to_decimal("") == Decimal("0")
    assert to_decimal(None) == Decimal("0")
    assert to_decimal("abc", Decimal("-1")) == Decimal("-1")
