"""
Comparison operators accepted in training filters.

Filter values are always bound as parameters; only the SQL operator text
from this allow-list is ever interpolated into a query.
"""

from neighborstore.errors import InvalidIdentifierError

# Filter operator -> SQL operator
OPERATORS = {
    '>=': '>=',
    '>': '>',
    '<=': '<=',
    '<': '<',
    '==': '=',
    '=': '=',
    '!=': '!=',
}


def is_range_filter(value: object) -> bool:
    """
    Check if a value is a range filter such as [('>=', 0.5), ('<', 2)].

    Args:
        value: The value to check.

    Returns:
        True if value is a non-empty list of (operator, value) tuples.
    """
    return (
        isinstance(value, list)
        and len(value) > 0
        and all(isinstance(v, tuple) and len(v) == 2 for v in value)
    )


def sql_operator(op: str) -> str:
    """Return the SQL operator for a filter operator, rejecting anything unknown."""
    try:
        return OPERATORS[op]
    except (KeyError, TypeError):
        raise InvalidIdentifierError(f"Unsupported filter operator: {op!r}") from None
