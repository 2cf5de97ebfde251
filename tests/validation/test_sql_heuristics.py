"""Lexical SQL scanning: placeholders, tables, columns and caveats."""

from __future__ import annotations

import pytest

from sqlgate.validation.sql_heuristics import (
    CAVEAT_COMMA_FROM,
    CAVEAT_CTE,
    CAVEAT_NO_FROM,
    CAVEAT_STAR,
    CAVEAT_SUBQUERY,
    TableRef,
    count_placeholders,
    extract_columns,
    extract_tables,
    mask_nested_expressions,
    scan_sql,
    translate_placeholders,
)
from tests._helpers.expect import expect_equal, expect_in, expect_not_in


def test_placeholders_in_literals_and_comments_are_ignored() -> None:
    """Only bare question marks count as placeholders."""
    sql = "SELECT * FROM t WHERE a = ? AND b = 'why?' -- any?\n AND c = ? /* ? */"
    expect_equal(count_placeholders(sql), 2)


def test_translate_qmark_is_identity() -> None:
    """qmark drivers receive the SQL unchanged."""
    sql = "SELECT * FROM t WHERE a = ?"
    expect_equal(translate_placeholders(sql, "qmark"), sql)


def test_translate_format_escapes_percent() -> None:
    """Percent signs are doubled so the driver does not read them as markers."""
    sql = "SELECT * FROM t WHERE a = ? AND b LIKE '10%'"
    expect_equal(
        translate_placeholders(sql, "format"),
        "SELECT * FROM t WHERE a = %s AND b LIKE '10%%'",
    )


@pytest.mark.parametrize(
    ("paramstyle", "expected"),
    [
        ("numeric", "SELECT * FROM t WHERE a = :1 AND b = :2"),
        ("named", "SELECT * FROM t WHERE a = :p1 AND b = :p2"),
    ],
)
def test_translate_numbered_styles(paramstyle: str, expected: str) -> None:
    """Numbered styles count placeholders left to right."""
    sql = "SELECT * FROM t WHERE a = ? AND b = ?"
    expect_equal(translate_placeholders(sql, paramstyle), expected)


def test_translate_keeps_question_marks_in_literals() -> None:
    """Literal question marks are not rewritten."""
    sql = "SELECT 'what?' FROM t WHERE a = ?"
    expect_equal(translate_placeholders(sql, "numeric"), "SELECT 'what?' FROM t WHERE a = :1")


def test_translate_rejects_unknown_paramstyle() -> None:
    """Unknown DBAPI styles are refused."""
    with pytest.raises(ValueError, match="Unsupported DBAPI paramstyle"):
        translate_placeholders("SELECT ?", "mystery")


def test_extract_tables_from_and_join() -> None:
    """Tables after FROM and JOIN are lower-cased and schema qualifiers kept."""
    sql = (
        "SELECT t.id FROM Analytics.Trades t "
        "JOIN users u ON u.id = t.user_id LEFT JOIN users x ON x.id = t.id"
    )
    expect_equal(
        extract_tables(sql),
        (TableRef(name="trades", schema="analytics"), TableRef(name="users")),
    )


def test_extract_tables_ignores_literals() -> None:
    """Keywords inside string literals do not produce tables."""
    sql = "SELECT id FROM trades WHERE note = 'from audit'"
    expect_equal(extract_tables(sql), (TableRef(name="trades"),))


def test_extract_columns_strips_aliases_qualifiers_and_functions() -> None:
    """Select-list aliases and function calls are dropped; WHERE columns are added."""
    sql = (
        "SELECT t.id, UPPER(symbol) AS sym, price AS p, quantity qty "
        "FROM stock_trades t WHERE trader_id = ? AND symbol LIKE ? ORDER BY id"
    )
    expect_equal(extract_columns(sql), ("id", "price", "quantity", "symbol", "trader_id"))


def test_scan_reports_star_and_counts_placeholders() -> None:
    """SELECT * yields no select-list columns and a caveat."""
    scan = scan_sql("SELECT * FROM stock_trades WHERE symbol = ? LIMIT ?")
    expect_in(CAVEAT_STAR, scan.caveats)
    expect_equal(scan.columns, ("symbol",))
    expect_equal(scan.placeholder_count, 2)


def test_scan_reports_cte() -> None:
    """A leading WITH is flagged; CTE names surface as tables."""
    scan = scan_sql("WITH recent AS (SELECT id FROM stock_trades) SELECT id FROM recent")
    expect_in(CAVEAT_CTE, scan.caveats)
    expect_in(CAVEAT_SUBQUERY, scan.caveats)
    expect_in(TableRef(name="recent"), scan.tables)


def test_scan_reports_subquery() -> None:
    """More than one SELECT is flagged as a nested query."""
    scan = scan_sql("SELECT id FROM trades WHERE id IN (SELECT trade_id FROM fills)")
    expect_in(CAVEAT_SUBQUERY, scan.caveats)
    expect_not_in(CAVEAT_CTE, scan.caveats)


def test_scan_reports_missing_from() -> None:
    """Statements without FROM have no tables."""
    scan = scan_sql("SELECT 1")
    expect_equal(scan.tables, ())
    expect_in(CAVEAT_NO_FROM, scan.caveats)


def test_scan_reports_comma_separated_from() -> None:
    """Comma joins are flagged since only the first table is extracted."""
    scan = scan_sql("SELECT a FROM t1, t2 WHERE t1.id = t2.id")
    expect_in(CAVEAT_COMMA_FROM, scan.caveats)
    expect_equal(scan.tables, (TableRef(name="t1"),))


def test_plain_query_has_no_caveats() -> None:
    """A simple single-table query scans cleanly."""
    scan = scan_sql("SELECT id, symbol FROM stock_trades WHERE id = ?")
    expect_equal(scan.caveats, ())
    expect_equal(scan.columns, ("id", "symbol"))


def test_from_inside_function_call_is_not_a_table() -> None:
    """EXTRACT(... FROM col) does not introduce a table reference."""
    scan = scan_sql("SELECT EXTRACT(YEAR FROM trade_date) AS y, symbol FROM stock_trades")

    expect_equal(scan.tables, (TableRef(name="stock_trades"),))
    expect_equal(scan.columns, ("symbol",))
    expect_equal(scan.caveats, ())


def test_nested_function_arguments_are_masked() -> None:
    """Inner groups are blanked before outer ones; subqueries stay readable."""
    text = "SELECT SUBSTRING(name FROM 1 FOR CAST(n AS INT)) FROM t WHERE id IN (SELECT id FROM u)"

    masked = mask_nested_expressions(text)

    expect_not_in("FROM 1", masked)
    expect_in("(SELECT id FROM u)", masked)
    expect_equal(len(masked), len(text))
    expect_equal(extract_tables(text), (TableRef(name="t"), TableRef(name="u")))
