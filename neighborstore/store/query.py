"""
Query building for training searchers from arbitrary SQLite tables.

Table and column names come from the caller, so they are checked against a
strict identifier pattern before being quoted into SQL. Filter values are
always passed as bound parameters: a raw WHERE fragment may reference
columns and "?" placeholders but may not contain literals, comments or
statement separators.
"""

import math
import re
from typing import Any, Optional, Sequence

from neighborstore.errors import InvalidIdentifierError, NonNumericColumnError
from neighborstore.operators import is_range_filter, sql_operator

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_FORBIDDEN_TOKENS = (";", "--", "/*", "*/", "'", '"', "`")

# Standalone numeric literal, e.g. "0.5" but not the "0" in "embedding_0"
_NUMERIC_LITERAL_RE = re.compile(r"(?<![\w.])\d+(\.\d*)?([eE][+-]?\d+)?(?![\w.])")

# Keywords that would let a fragment read from other tables or databases
_FORBIDDEN_KEYWORDS_RE = re.compile(
    r"\b(UNION|SELECT|INTERSECT|EXCEPT|ATTACH)\b", re.IGNORECASE
)


def quote_identifier(name: str) -> str:
    """
    Validate a table or column name and return it double-quoted.

    Raises:
        InvalidIdentifierError: If name is not a plain SQL identifier.
    """
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise InvalidIdentifierError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def check_where_clause(where: str, where_args: Sequence[Any]) -> None:
    """
    Reject WHERE fragments that could smuggle values or statements into SQL.

    The fragment is wrapped in parentheses by build_training_query, so it
    must keep its own parentheses balanced and may not close that wrapper.

    Raises:
        InvalidIdentifierError: If the fragment contains a forbidden token,
            keyword or literal, has unbalanced parentheses, or its
            placeholder count does not match where_args.
    """
    for token in _FORBIDDEN_TOKENS:
        if token in where:
            raise InvalidIdentifierError(
                f"WHERE clause may not contain {token!r}; pass values as arguments"
            )
    if _NUMERIC_LITERAL_RE.search(where):
        raise InvalidIdentifierError(
            "WHERE clause may not contain numeric literals; pass values as arguments"
        )

    keyword = _FORBIDDEN_KEYWORDS_RE.search(where)
    if keyword:
        raise InvalidIdentifierError(
            f"WHERE clause may not contain {keyword.group(1).upper()}"
        )

    depth = 0
    for char in where:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                break
    if depth != 0:
        raise InvalidIdentifierError("WHERE clause has unbalanced parentheses")

    placeholders = where.count("?")
    if placeholders != len(where_args):
        raise InvalidIdentifierError(
            f"WHERE clause has {placeholders} placeholders "
            f"but {len(where_args)} arguments were given"
        )


def build_filter_clauses(filter_dict: dict[str, Any]) -> tuple[list[str], list[Any]]:
    """
    Turn a filter dictionary into SQL conditions and their parameters.

    Supported values:
        None: column IS NULL
        [(op, value), ...]: one comparison per tuple, op from OPERATORS
        anything else: column = value
    """
    conditions = []
    params = []

    for field, value in filter_dict.items():
        column = quote_identifier(field)
        if value is None:
            conditions.append(f"{column} IS NULL")
        elif is_range_filter(value):
            for op, op_value in value:
                conditions.append(f"{column} {sql_operator(op)} ?")
                params.append(op_value)
        else:
            conditions.append(f"{column} = ?")
            params.append(value)

    return conditions, params


def build_training_query(
    table_name: str,
    embedding_columns: Sequence[str],
    where: Optional[str] = None,
    where_args: Optional[Sequence[Any]] = None,
    filter_dict: Optional[dict[str, Any]] = None,
) -> tuple[str, list[Any]]:
    """
    Build the SELECT statement that reads training vectors from a table.

    Returns:
        A (sql, params) pair ready for cursor.execute().
    """
    if not embedding_columns:
        raise InvalidIdentifierError("At least one embedding column is required")

    table = quote_identifier(table_name)
    columns = ", ".join(quote_identifier(c) for c in embedding_columns)

    conditions = []
    params: list[Any] = []

    if where is not None:
        where_args = list(where_args) if where_args is not None else []
        check_where_clause(where, where_args)
        conditions.append(f"({where})")
        params.extend(where_args)
    elif where_args:
        raise InvalidIdentifierError("where_args given without a WHERE clause")

    if filter_dict:
        filter_conditions, filter_params = build_filter_clauses(filter_dict)
        conditions.extend(filter_conditions)
        params.extend(filter_params)

    sql = f"SELECT {columns} FROM {table}"
    if conditions:
        sql += " WHERE " + " AND ".join(conditions)

    return sql, params


def coerce_numeric(column: str, value: Any) -> float:
    """
    Convert a table cell to a finite float.

    Numbers pass through and numeric strings are parsed. Anything else,
    including malformed strings, NULL and non-finite values, fails fast.

    Raises:
        NonNumericColumnError: Naming the column and the offending value.
    """
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise NonNumericColumnError(column, value) from None
    else:
        raise NonNumericColumnError(column, value)

    if not math.isfinite(number):
        raise NonNumericColumnError(column, value)
    return number
