#!/usr/bin/env python3
"""
Test: Conditions and value conversion
Purpose: Verify loose value conversion and condition operators

Tests:
- Wire values convert to native types
- Target column types decide how written values convert
- Loose equality across types and case
- Ordering operators on numbers and dates
- Text operators and emptiness checks
- Missing and unknown conditions
"""

import asyncio
import sys
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import Boolean, Date, DateTime, Integer, Numeric, REAL, String, Text

from fixtures import (
    print_info, run_tests,
    assert_equal, assert_true, assert_false
)

from requestflow.core.conditions import (
    convert_for_column,
    convert_value,
    convert_field_values,
    evaluate_condition,
    format_value_for_display,
    values_equal,
)


def condition(field_name, operator, value=None):
    return {"field_name": field_name, "operator": operator, "value": value}


async def test_convert_value_types():
    """Strings holding numbers, booleans and dates become native values"""
    assert_equal(convert_value("42"), 42)
    assert_equal(convert_value("-3"), -3)
    assert_equal(convert_value("12.50"), 12.5)
    assert_equal(convert_value("TRUE"), True)
    assert_equal(convert_value("false"), False)
    assert_equal(convert_value("2024-03-01"), datetime(2024, 3, 1))
    assert_equal(convert_value("2024-03-01T10:30:00"), datetime(2024, 3, 1, 10, 30))
    assert_equal(convert_value("hello"), "hello")


async def test_convert_value_keeps_codes_and_blanks():
    """Leading-zero codes and blank strings stay as they are"""
    assert_equal(convert_value("007"), "007", "Codes with leading zeros must survive")
    assert_equal(convert_value(""), "")
    assert_equal(convert_value(None), None)
    assert_equal(convert_value(5), 5)


async def test_convert_value_unwraps_value_objects():
    assert_equal(convert_value({"value": "5"}), 5)
    assert_equal(convert_value({"Value": "yes"}), "yes")
    assert_equal(convert_value({"other": "5"}), {"other": "5"}, "Only value wrappers are unwrapped")


async def test_convert_field_values_map():
    converted = convert_field_values({"Amount": "99.95", "Name": "Bob", "Active": "true"})
    assert_equal(converted, {"Amount": 99.95, "Name": "Bob", "Active": True})
    assert_equal(convert_field_values(None), {})


async def test_convert_for_column_types():
    assert_equal(convert_for_column("42", Integer()), 42)
    assert_equal(convert_for_column("true", Integer()), 1, "Flags stored as integers")
    assert_equal(convert_for_column("0.10", Numeric(10, 2)), Decimal("0.10"))
    assert_equal(str(convert_for_column("0.10", Numeric(10, 2))), "0.10", "Scale is preserved")
    assert_equal(convert_for_column("1.50", REAL()), Decimal("1.50"))
    assert_equal(convert_for_column("TRUE", Boolean()), True)
    assert_equal(convert_for_column("no", Boolean()), False)
    assert_equal(convert_for_column("2024-03-01", Date()), date(2024, 3, 1))
    assert_equal(convert_for_column("2024-03-01T10:30:00", DateTime()), datetime(2024, 3, 1, 10, 30))
    assert_equal(convert_for_column({"value": "5"}, Integer()), 5)


async def test_text_columns_keep_values():
    """Strings that merely look like numbers or flags are written as typed"""
    columns = {"Name": Text(), "Code": String(10), "Amount": REAL(), "Active": Integer()}
    converted = convert_field_values(
        {"Name": "TRUE", "Code": "1.50", "Amount": "0.10", "Active": "false", "Extra": "7"},
        columns,
    )
    assert_equal(converted["Name"], "TRUE")
    assert_equal(converted["Code"], "1.50")
    assert_equal(converted["Amount"], Decimal("0.10"))
    assert_equal(converted["Active"], 0)
    assert_equal(converted["Extra"], "7", "Unknown columns are left for the database to reject")

    assert_equal(convert_for_column("abc", Integer()), "abc", "Unparsable values reach the database unchanged")
    assert_equal(convert_for_column("", Numeric()), "")
    assert_equal(convert_for_column(12, Text()), 12)


async def test_loose_equality():
    """Equality ignores case, numeric representation and None/blank differences"""
    assert_true(values_equal("Alice", "alice"))
    assert_true(values_equal("10", 10.0))
    assert_true(values_equal(10, "10.00"))
    assert_true(values_equal(None, ""))
    assert_true(values_equal(True, "true"))
    assert_false(values_equal("10", "11"))
    assert_false(values_equal("Alice", "Alicia"))


async def test_ordering_operators():
    values = {"Amount": "15000", "Due": "2024-06-30"}

    assert_true(evaluate_condition(condition("Amount", "GREATER_THAN", "10000"), values))
    assert_true(evaluate_condition(condition("Amount", "GREATER_THAN_OR_EQUAL", 15000), values))
    assert_false(evaluate_condition(condition("Amount", "LESS_THAN", "10000"), values))
    assert_true(evaluate_condition(condition("Amount", "LESS_THAN_OR_EQUAL", "15000.0"), values))
    assert_true(evaluate_condition(condition("Due", "LESS_THAN", "2024-07-01"), values))
    assert_false(evaluate_condition(condition("Due", "GREATER_THAN", "2024-07-01"), values))


async def test_ordering_against_missing_field_is_false():
    """A missing value cannot be ordered against anything"""
    assert_false(evaluate_condition(condition("Amount", "GREATER_THAN", "0"), {}))
    assert_false(evaluate_condition(condition("Amount", "LESS_THAN", "0"), {}))


async def test_text_operators():
    values = {"Email": "Jane.Doe@Example.com"}

    assert_true(evaluate_condition(condition("Email", "CONTAINS", "example"), values))
    assert_false(evaluate_condition(condition("Email", "NOT_CONTAINS", "EXAMPLE"), values))
    assert_true(evaluate_condition(condition("Email", "STARTS_WITH", "jane"), values))
    assert_true(evaluate_condition(condition("Email", "ENDS_WITH", ".COM"), values))
    assert_true(evaluate_condition(condition("Email", "EQUALS", "jane.doe@example.com"), values))
    assert_true(evaluate_condition(condition("Email", "NOT_EQUALS", "someone@example.com"), values))


async def test_emptiness_operators():
    values = {"Blank": "   ", "Filled": "x"}

    assert_true(evaluate_condition(condition("Blank", "IS_EMPTY"), values))
    assert_true(evaluate_condition(condition("Missing", "IS_EMPTY"), values))
    assert_true(evaluate_condition(condition("Filled", "IS_NOT_EMPTY"), values))
    assert_false(evaluate_condition(condition("Missing", "IS_NOT_EMPTY"), values))


async def test_missing_and_unknown_conditions():
    """No condition always matches; an unknown operator never does"""
    assert_true(evaluate_condition(None, {"Amount": 1}))
    assert_true(evaluate_condition({}, {}))
    assert_false(evaluate_condition(condition("Amount", "ROUGHLY", 1), {"Amount": 1}))
    print_info("Unknown operators are logged and treated as no match")


async def test_display_formatting():
    assert_equal(format_value_for_display(None), "(empty)")
    assert_equal(format_value_for_display(True), "true")
    assert_equal(format_value_for_display(datetime(2024, 1, 2, 3, 4, 5)), "2024-01-02 03:04:05")
    assert_equal(format_value_for_display(12.5), "12.5")


async def main():
    """Run all condition tests"""
    return await run_tests("Condition Tests", [
        ("Convert value types", test_convert_value_types),
        ("Convert keeps codes and blanks", test_convert_value_keeps_codes_and_blanks),
        ("Convert unwraps value objects", test_convert_value_unwraps_value_objects),
        ("Convert field value map", test_convert_field_values_map),
        ("Convert by column type", test_convert_for_column_types),
        ("Text columns keep values verbatim", test_text_columns_keep_values),
        ("Loose equality", test_loose_equality),
        ("Ordering operators", test_ordering_operators),
        ("Ordering against missing field", test_ordering_against_missing_field_is_false),
        ("Text operators", test_text_operators),
        ("Emptiness operators", test_emptiness_operators),
        ("Missing and unknown conditions", test_missing_and_unknown_conditions),
        ("Display formatting", test_display_formatting),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
