"""Heuristic lexical scanning of author-supplied SQL.

This is not a SQL parser. It blanks out comments and string literals, then
uses regular expressions to pull out:

* table names following ``FROM`` / ``JOIN`` outside function-call
  parentheses;
* column names from the ``SELECT`` list and the ``WHERE`` clause, with
  aliases, table qualifiers and function calls stripped;
* the number of ``?`` placeholders.

It under- or over-matches on subqueries, common table expressions,
comma-separated ``FROM`` lists and unusual formatting. Every scan returns the
caveats it noticed so callers can surface them next to any verdict built on
top of it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_OPAQUE = re.compile(r"(--[^\n]*|/\*.*?\*/|'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\")", re.DOTALL)
_IDENT = r"[A-Za-z_][A-Za-z0-9_$]*"
_IDENT_RE = re.compile(rf"^{_IDENT}$")
_TABLE_RE = re.compile(rf"\b(?:FROM|JOIN)\s+({_IDENT}(?:\.{_IDENT})?)", re.IGNORECASE)
_COMMA_FROM_RE = re.compile(
    rf"\bFROM\s+{_IDENT}(?:\.{_IDENT})?(?:\s+(?:AS\s+)?{_IDENT})?\s*,", re.IGNORECASE
)
_SELECT_RE = re.compile(r"\bSELECT\s+(.*?)\s+FROM\b", re.IGNORECASE | re.DOTALL)
_WHERE_RE = re.compile(
    r"\bWHERE\s+(.*?)(?=\bORDER\b|\bGROUP\b|\bLIMIT\b|\bHAVING\b|\bOFFSET\b|$)",
    re.IGNORECASE | re.DOTALL,
)
_WHERE_COLUMN_RE = re.compile(
    rf"\b({_IDENT})\s*(?:=|<|>|!|\bLIKE\b|\bIN\b|\bBETWEEN\b|\bIS\b)", re.IGNORECASE
)
_ALIAS_RE = re.compile(r"\s+AS\s+", re.IGNORECASE)
_SELECT_PREFIX_RE = re.compile(r"^(?:DISTINCT|ALL)\s+", re.IGNORECASE)
_CTE_RE = re.compile(r"^\s*WITH\b", re.IGNORECASE)
_SUBQUERY_START_RE = re.compile(r"^\s*(?:SELECT|WITH)\b", re.IGNORECASE)
_SELECT_KEYWORD_RE = re.compile(r"\bSELECT\b", re.IGNORECASE)

_NON_COLUMN_WORDS = frozenset(
    {"and", "or", "not", "null", "true", "false", "is", "in", "like", "between", "case", "when",
     "then", "else", "end", "exists", "distinct"}
)

CAVEAT_SUBQUERY = "nested SELECT detected; inner query tables and columns are only partially extracted"
CAVEAT_CTE = "common table expression detected; CTE names are reported as tables"
CAVEAT_STAR = "SELECT * used; no columns extracted from the select list"
CAVEAT_NO_FROM = "no FROM clause found; no tables extracted"
CAVEAT_COMMA_FROM = "comma-separated FROM list; only the first table of the list is extracted"


@dataclass(frozen=True, order=True)
class TableRef:
    """Table name as written in SQL, optionally schema-qualified."""

    name: str
    schema: str | None = None

    def display(self) -> str:
        """
        Render as ``schema.name`` or ``name``.

        Returns
        -------
        str
            Display form of the reference.
        """
        return f"{self.schema}.{self.name}" if self.schema else self.name


@dataclass(frozen=True)
class SqlScan:
    """Result of a heuristic scan; ``caveats`` lists known blind spots hit."""

    tables: tuple[TableRef, ...]
    columns: tuple[str, ...]
    placeholder_count: int
    caveats: tuple[str, ...] = ()


def _split_opaque(sql: str) -> list[str]:
    """Split SQL into alternating code and opaque (comment/literal) segments."""
    return _OPAQUE.split(sql)


def blank_literals(sql: str) -> str:
    """
    Replace comments with whitespace and string literals with ``''``.

    Quoted identifiers are unquoted so they still read as names.

    Returns
    -------
    str
        SQL text safe for keyword and placeholder scanning.
    """
    parts = _split_opaque(sql)
    out: list[str] = []
    for index, part in enumerate(parts):
        if index % 2 == 0:
            out.append(part)
        elif part.startswith("'"):
            out.append("''")
        elif part.startswith('"'):
            out.append(part[1:-1].replace('""', '"'))
        else:
            out.append(" ")
    return "".join(out)


def mask_nested_expressions(text: str) -> str:
    """
    Blank the contents of parenthesized groups that are not subqueries.

    Function arguments such as ``EXTRACT(YEAR FROM trade_date)`` then no
    longer read as FROM clauses. Groups opening with SELECT or WITH are kept.

    Parameters
    ----------
    text
        SQL already passed through :func:`blank_literals`.

    Returns
    -------
    str
        Text of the same length with non-subquery groups blanked.
    """
    chars = list(text)
    opened: list[int] = []
    for index, char in enumerate(chars):
        if char == "(":
            opened.append(index)
        elif char == ")" and opened:
            start = opened.pop()
            if not _SUBQUERY_START_RE.match("".join(chars[start + 1 : index])):
                chars[start + 1 : index] = " " * (index - start - 1)
    return "".join(chars)


def count_placeholders(sql: str) -> int:
    """
    Count ``?`` placeholders outside comments and string literals.

    Returns
    -------
    int
        Number of positional placeholders.
    """
    return blank_literals(sql).count("?")


def translate_placeholders(sql: str, paramstyle: str) -> str:
    """
    Rewrite ``?`` placeholders into a DBAPI paramstyle.

    Parameters
    ----------
    sql
        SQL text using ``?`` placeholders.
    paramstyle
        Target DBAPI ``paramstyle`` (qmark, format, pyformat, numeric, named).

    Returns
    -------
    str
        SQL text for the driver. ``named`` style uses ``:p1``, ``:p2``, ...

    Raises
    ------
    ValueError
        If the paramstyle is unknown.
    """
    if paramstyle == "qmark":
        return sql
    if paramstyle not in {"format", "pyformat", "numeric", "named"}:
        message = f"Unsupported DBAPI paramstyle: {paramstyle}"
        raise ValueError(message)

    percent_style = paramstyle in {"format", "pyformat"}
    counter = 0

    def _marker() -> str:
        nonlocal counter
        counter += 1
        if percent_style:
            return "%s"
        if paramstyle == "numeric":
            return f":{counter}"
        return f":p{counter}"

    out: list[str] = []
    for index, part in enumerate(_split_opaque(sql)):
        text = part.replace("%", "%%") if percent_style else part
        if index % 2 == 0:
            pieces = text.split("?")
            rebuilt = pieces[0]
            for piece in pieces[1:]:
                rebuilt += _marker() + piece
            out.append(rebuilt)
        else:
            out.append(text)
    return "".join(out)


def _split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    current: list[str] = []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth = max(depth - 1, 0)
        if char == "," and depth == 0:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return parts


def _select_column(item: str) -> str | None:
    part = _SELECT_PREFIX_RE.sub("", item.strip())
    part = _ALIAS_RE.split(part, maxsplit=1)[0].strip()
    if "(" in part:
        return None
    # bare alias: "col alias"
    part = part.split()[0] if part.split() else ""
    if "." in part:
        part = part.rsplit(".", 1)[1]
    if part == "*" or not _IDENT_RE.match(part):
        return None
    lowered = part.lower()
    return None if lowered in _NON_COLUMN_WORDS else lowered


def extract_tables(sql: str) -> tuple[TableRef, ...]:
    """
    Extract table references following ``FROM`` and ``JOIN``.

    Returns
    -------
    tuple[TableRef, ...]
        Distinct, lower-cased references in sorted order.
    """
    text = mask_nested_expressions(blank_literals(sql))
    refs: set[TableRef] = set()
    for match in _TABLE_RE.finditer(text):
        raw = match.group(1).lower()
        if "." in raw:
            schema, name = raw.split(".", 1)
            refs.add(TableRef(name=name, schema=schema))
        else:
            refs.add(TableRef(name=raw))
    return tuple(sorted(refs, key=TableRef.display))


def extract_columns(sql: str) -> tuple[str, ...]:
    """
    Extract column names from the first SELECT list and the WHERE clause.

    Returns
    -------
    tuple[str, ...]
        Distinct, lower-cased column names in sorted order.
    """
    text = blank_literals(sql)
    columns: set[str] = set()
    select_match = _SELECT_RE.search(mask_nested_expressions(text))
    if select_match:
        for item in _split_top_level(select_match.group(1)):
            column = _select_column(item)
            if column is not None:
                columns.add(column)
    where_match = _WHERE_RE.search(text)
    if where_match:
        for match in _WHERE_COLUMN_RE.finditer(where_match.group(1)):
            column = match.group(1).lower()
            if column not in _NON_COLUMN_WORDS:
                columns.add(column)
    return tuple(sorted(columns))


def scan_sql(sql: str) -> SqlScan:
    """
    Run the heuristic scan and collect caveats encountered.

    Returns
    -------
    SqlScan
        Tables, columns, placeholder count and caveats.
    """
    text = blank_literals(sql)
    caveats: list[str] = []
    if _CTE_RE.search(text):
        caveats.append(CAVEAT_CTE)
    masked = mask_nested_expressions(text)
    if len(_SELECT_KEYWORD_RE.findall(text)) > 1:
        caveats.append(CAVEAT_SUBQUERY)
    select_match = _SELECT_RE.search(masked)
    if select_match and any(
        item.strip().endswith("*") for item in _split_top_level(select_match.group(1))
    ):
        caveats.append(CAVEAT_STAR)
    if _COMMA_FROM_RE.search(masked):
        caveats.append(CAVEAT_COMMA_FROM)
    tables = extract_tables(sql)
    if not tables:
        caveats.append(CAVEAT_NO_FROM)
    return SqlScan(
        tables=tables,
        columns=extract_columns(sql),
        placeholder_count=text.count("?"),
        caveats=tuple(caveats),
    )


__all__ = [
    "CAVEAT_COMMA_FROM",
    "CAVEAT_CTE",
    "CAVEAT_NO_FROM",
    "CAVEAT_STAR",
    "CAVEAT_SUBQUERY",
    "SqlScan",
    "TableRef",
    "blank_literals",
    "count_placeholders",
    "extract_columns",
    "extract_tables",
    "mask_nested_expressions",
    "scan_sql",
    "translate_placeholders",
]
