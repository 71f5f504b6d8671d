"""
Helpers for shaping error messages and recognizing database errors.

Error text is truncated before it goes into audit entries or terminal
output, and unique-constraint violations are recognized across SQLite and
PostgreSQL drivers.
"""
from typing import Optional


def truncate_string(text: Optional[str], max_length: int) -> Optional[str]:
    """
    Truncate text to max_length characters, ending with "..." when cut.

    With max_length below 4 there is no room for the ellipsis, so the text is
    simply cut.
    """
    if text is None:
        return None
    if len(text) <= max_length:
        return text
    if max_length < 4:
        return text[:max_length]
    return text[: max_length - 3] + "..."


def truncate_error(error: Optional[str], max_length: int) -> Optional[str]:
    """Truncate an error message for storage or display. Alias kept for call-site clarity."""
    return truncate_string(error, max_length)


def is_unique_violation(exc: Exception, column: Optional[str] = None) -> bool:
    """
    Check whether a database exception is a unique-constraint violation.

    Works with both SQLite ("UNIQUE constraint failed: videos.file_code") and
    PostgreSQL ("duplicate key value violates unique constraint ...").

    Args:
        exc: The exception raised by the database driver
        column: Optional column name that must appear in the message

    Returns:
        True if the exception is a unique violation (on the column, if given)
    """
    message = str(exc).lower()
    is_unique = (
        "unique constraint" in message
        or "duplicate key" in message
        or type(exc).__name__ == "UniqueViolationError"
    )
    if not is_unique:
        return False
    if column is None:
        return True
    return column.lower() in message


