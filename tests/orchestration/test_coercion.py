import pytest

from Claims_Pipeline.orchestration.coercion import (
    coerce_boolean,
    coerce_number,
    convert_value,
    to_text,
)


@pytest.mark.parametrize(
    ("value", "expected"),
    [(42, 42), (41.5, 42), ("41.6", 42), ("1,200", 1200), (-2.5, -3), (True, 1)],
)
def test_integral_coercion_rounds_half_up(value, expected):
    assert coerce_number(value, integral=True) == expected


def test_float_coercion_and_fallback():
    assert coerce_number("3", integral=False) == 3.0
    assert coerce_number("n/a", integral=False) == 0
    assert coerce_number(float("nan"), integral=True, fallback=None) is None


def test_convert_value_keeps_original_on_numeric_failure_by_default():
    assert convert_value("abc", "long") == "abc"
    assert convert_value("abc", "long", numeric_fallback=0) == 0


def test_convert_value_types():
    assert convert_value("yes", "boolean") is True
    assert convert_value({"a": 1}, "string") == '{"a": 1}'
    assert convert_value({"a": 1}, "json") == {"a": 1}
    assert convert_value("x", "custom") == "x"
    assert convert_value(None, "long") is None


def test_boolean_and_text_helpers():
    assert coerce_boolean(0) is False
    assert coerce_boolean("TRUE") is True
    assert to_text(False) == "false"
