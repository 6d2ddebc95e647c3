#!/usr/bin/env python3
"""
Test: Target data accessor
Purpose: Verify reflected INSERT/UPDATE/DELETE/SELECT on target tables

Tests:
- Primary-key discovery (single, composite, none)
- Inserts return the generated identity or a rendered key
- Identity columns are never written
- Updates never touch key columns and fail loudly on no match
- Deletes report whether anything was removed
- Unknown connections, tables and columns
"""

import asyncio
import sys

from fixtures import (
    run_tests, TestContext, TARGET_CONNECTION,
    assert_equal, assert_true, assert_false, assert_in, assert_raises_async
)

from requestflow.core.target_data import (
    NoRowsAffectedError,
    TargetDataError,
    UnknownConnectionError,
    render_key,
)


async def test_primary_key_discovery():
    async with TestContext(start_event_bus=False) as ctx:
        target = ctx.target_data
        assert_equal(await target.primary_key_columns(TARGET_CONNECTION, "customers"), ["Id"])
        assert_equal(await target.primary_key_columns(TARGET_CONNECTION, "order_lines"), ["OrderId", "LineNo"])
        assert_equal(await target.primary_key_columns(TARGET_CONNECTION, "audit_notes"), [])


async def test_insert_returns_identity():
    async with TestContext(start_event_bus=False) as ctx:
        result = await ctx.target_data.insert(
            TARGET_CONNECTION, "customers", None,
            {"Id": 999, "Name": "Jane Doe", "Email": "jane@example.com", "Amount": 1500.5, "IsActive": True},
        )

        assert_true(result.ok)
        assert_equal(result.generated_key, 42, "Identity value comes from the database")

        rows = await ctx.target_rows("customers", {"Id": 42})
        assert_equal(len(rows), 1)
        assert_equal(rows[0]["Name"], "Jane Doe")
        assert_equal(await ctx.target_rows("customers", {"Id": 999}), [], "Supplied identity values are ignored")


async def test_insert_composite_and_keyless_tables():
    async with TestContext(start_event_bus=False) as ctx:
        result = await ctx.target_data.insert(
            TARGET_CONNECTION, "order_lines", None, {"OrderId": 2, "LineNo": 1, "Sku": "C-300", "Quantity": 5}
        )
        assert_true(result.ok)
        assert_equal(result.generated_key, "OrderId=2, LineNo=1")

        result = await ctx.target_data.insert(TARGET_CONNECTION, "audit_notes", None, {"Note": "hello", "Author": "bob"})
        assert_true(result.ok)
        assert_equal(result.generated_key, "hello", "Keyless tables render their first column")


async def test_insert_unknown_column():
    async with TestContext(start_event_bus=False) as ctx:
        error = await assert_raises_async(
            TargetDataError,
            ctx.target_data.insert(TARGET_CONNECTION, "customers", None, {"Name": "X", "Nickname": "Y"}),
        )
        assert_in("Nickname", str(error))


async def test_update_by_key():
    async with TestContext(start_event_bus=False) as ctx:
        updated = await ctx.target_data.update(
            TARGET_CONNECTION, "customers", None,
            {"Id": 5000, "Email": "ada@newmail.example", "Amount": 120.0},
            {"Id": 41},
        )
        assert_true(updated)

        rows = await ctx.target_rows("customers", {"Id": 41})
        assert_equal(rows[0]["Email"], "ada@newmail.example")
        assert_equal(rows[0]["Amount"], 120.0)
        assert_equal(await ctx.target_rows("customers", {"Id": 5000}), [], "Key columns are never in SET")

        # Untouched neighbour
        grace = await ctx.target_rows("customers", {"Id": 7})
        assert_equal(grace[0]["Email"], "grace@example.com")


async def test_update_no_match_and_no_filter():
    async with TestContext(start_event_bus=False) as ctx:
        error = await assert_raises_async(
            NoRowsAffectedError,
            ctx.target_data.update(TARGET_CONNECTION, "customers", None, {"Email": "x@example.com"}, {"Id": 999}),
        )
        assert_equal(str(error), "No records found to update. WHERE conditions: Id=999")

        await assert_raises_async(
            TargetDataError,
            ctx.target_data.update(TARGET_CONNECTION, "customers", None, {"Email": "x@example.com"}, {}),
        )


async def test_update_with_only_key_values_is_a_no_op():
    async with TestContext(start_event_bus=False) as ctx:
        assert_true(await ctx.target_data.update(TARGET_CONNECTION, "customers", None, {"Id": 41}, {"Id": 41}))
        rows = await ctx.target_rows("customers", {"Id": 41})
        assert_equal(rows[0]["Name"], "Ada Lovelace")


async def test_delete():
    async with TestContext(start_event_bus=False) as ctx:
        assert_true(await ctx.target_data.delete(TARGET_CONNECTION, "order_lines", None, {"OrderId": 1, "LineNo": 2}))
        remaining = await ctx.target_rows("order_lines")
        assert_equal([(r["OrderId"], r["LineNo"]) for r in remaining], [(1, 1)], "Only the keyed row is removed")

        assert_false(await ctx.target_data.delete(TARGET_CONNECTION, "order_lines", None, {"OrderId": 9, "LineNo": 9}))
        await assert_raises_async(TargetDataError, ctx.target_data.delete(TARGET_CONNECTION, "order_lines", None, {}))


async def test_record_lookup():
    async with TestContext(start_event_bus=False) as ctx:
        record = await ctx.target_data.get_record_by_id(TARGET_CONNECTION, "customers", 41)
        assert_equal(record["Name"], "Ada Lovelace")
        assert_equal(await ctx.target_data.get_record_by_id(TARGET_CONNECTION, "customers", 12345), {})
        await assert_raises_async(
            TargetDataError,
            ctx.target_data.get_record_by_id(TARGET_CONNECTION, "order_lines", 1),
        )


async def test_unknown_connection_and_table():
    async with TestContext(start_event_bus=False) as ctx:
        await assert_raises_async(
            UnknownConnectionError,
            ctx.target_data.query("warehouse", "customers", None),
        )
        await assert_raises_async(
            TargetDataError,
            ctx.target_data.query(TARGET_CONNECTION, "no_such_table", None),
        )

        ctx.target_data.register_connection("crm_copy", ctx.target_data.connections[TARGET_CONNECTION])
        rows = await ctx.target_data.query("crm_copy", "customers", None)
        assert_equal(len(rows), 2)


async def test_render_key():
    assert_equal(render_key({"OrderId": 1, "LineNo": 2}), "OrderId=1, LineNo=2")
    assert_equal(render_key({"Id": 42}), "Id=42")


async def main():
    """Run all target data tests"""
    return await run_tests("Target Data Tests", [
        ("Primary key discovery", test_primary_key_discovery),
        ("Insert returns identity", test_insert_returns_identity),
        ("Insert into composite and keyless tables", test_insert_composite_and_keyless_tables),
        ("Insert unknown column", test_insert_unknown_column),
        ("Update by key", test_update_by_key),
        ("Update without match or filter", test_update_no_match_and_no_filter),
        ("Update with only key values", test_update_with_only_key_values_is_a_no_op),
        ("Delete", test_delete),
        ("Record lookup", test_record_lookup),
        ("Unknown connection and table", test_unknown_connection_and_table),
        ("Render key", test_render_key),
    ])


if __name__ == "__main__":
    exit_code = asyncio.run(main())
    sys.exit(exit_code)
