import math
from datetime import timedelta

import pytest

from formgate.convert import (
    alphanumeric_key,
    format_duration,
    parse_bool,
    parse_duration,
    parse_float,
    parse_int,
)


@pytest.mark.parametrize("value", ["1", "t", "T", "TRUE", "true", "True"])
def test_parse_bool_true(value):
    assert parse_bool(value) is True


@pytest.mark.parametrize("value", ["0", "f", "F", "FALSE", "false", "False"])
def test_parse_bool_false(value):
    assert parse_bool(value) is False


@pytest.mark.parametrize("value", ["foo", "", "yes", "tRUE", " true"])
def test_parse_bool_invalid(value):
    with pytest.raises(ValueError, match="invalid syntax"):
        parse_bool(value)


def test_parse_int():
    assert parse_int("3") == 3
    assert parse_int("+7") == 7
    assert parse_int("-12") == -12


def test_parse_int_bounds():
    assert parse_int(str(2**63 - 1)) == 2**63 - 1
    assert parse_int(str(-(2**63))) == -(2**63)
    with pytest.raises(ValueError, match="out of range"):
        parse_int(str(2**63))


@pytest.mark.parametrize("value", ["foo", "", " 1", "1_000", "1.0", "0x10"])
def test_parse_int_invalid(value):
    with pytest.raises(ValueError, match="invalid syntax"):
        parse_int(value)


def test_parse_float():
    assert parse_float("3.5") == 3.5
    assert parse_float("2.5") == 2.5
    assert parse_float("-.5e1") == -5.0
    assert parse_float("0x1p-2") == 0.25


def test_parse_float_special():
    assert parse_float("inf") == math.inf
    assert parse_float("-Infinity") == -math.inf
    assert math.isnan(parse_float("NaN"))


@pytest.mark.parametrize("value", ["foo", "", " 1.0", "1_0", "1e", "+nan", "."])
def test_parse_float_invalid(value):
    with pytest.raises(ValueError, match="invalid syntax"):
        parse_float(value)


def test_parse_float_out_of_range():
    with pytest.raises(ValueError, match="out of range"):
        parse_float("1e400")


def test_parse_duration_seconds():
    assert parse_duration("1s") == timedelta(seconds=1)


def test_parse_duration_zero():
    assert parse_duration("0") == timedelta(0)
    assert parse_duration("-0") == timedelta(0)


def test_parse_duration_sign():
    assert parse_duration("-1s") == -parse_duration("1s")
    assert parse_duration("+1s") == parse_duration("1s")


def test_parse_duration_components_add_up():
    assert parse_duration("1h30m") == parse_duration("90m")
    assert parse_duration("1.5h") == parse_duration("90m")
    assert parse_duration("1m1s") == parse_duration("61s")
    assert parse_duration(".5s") == parse_duration("500ms")


def test_parse_duration_micro_units_agree():
    assert parse_duration("1us") == parse_duration("1\u00b5s") == parse_duration("1\u03bcs")
    assert parse_duration("1000us") == parse_duration("1ms")


@pytest.mark.parametrize("value", ["foo", "", "-", ".s", "1s.", "s"])
def test_parse_duration_invalid(value):
    with pytest.raises(ValueError, match="invalid duration"):
        parse_duration(value)


def test_parse_duration_missing_unit():
    with pytest.raises(ValueError, match="missing unit"):
        parse_duration("1")


def test_parse_duration_unknown_unit():
    with pytest.raises(ValueError, match="unknown unit"):
        parse_duration("1x")


def test_parse_duration_overflow():
    with pytest.raises(ValueError, match="invalid duration"):
        parse_duration("9999999999h")


@pytest.mark.parametrize("text", ["1s", "1m30s", "1h0m0s", "1.5s", "500ms", "-2m3s", "1\u00b5s"])
def test_format_duration_round_trip(text):
    assert format_duration(parse_duration(text)) == text


def test_format_duration_zero():
    assert format_duration(timedelta(0)) == "0s"


def test_parse_format_round_trip_from_timedelta():
    delta = timedelta(hours=3, minutes=4, seconds=5, microseconds=600)
    assert parse_duration(format_duration(delta)) == delta


def test_alphanumeric_key_orders_letters():
    assert alphanumeric_key("/a.pdf") < alphanumeric_key("/b.PDF")
    keys = [alphanumeric_key(name) for name in ["/b.PDF", "/a.pdf"]]
    assert keys[1] < keys[0]


def test_alphanumeric_key_orders_numbers_naturally():
    assert alphanumeric_key("file1.pdf") < alphanumeric_key("file2.pdf")
    assert alphanumeric_key("file2.pdf") < alphanumeric_key("file10.pdf")
    names = ["file10.pdf", "file2.pdf", "file1.pdf"]
    ordered = sorted(names, key=lambda name: alphanumeric_key(name))
    assert ordered == ["file1.pdf", "file2.pdf", "file10.pdf"]