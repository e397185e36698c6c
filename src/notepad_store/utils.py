"""Utility functions for the NotePad store."""

import unicodedata
from typing import Optional


def fold_text(text: Optional[str]) -> Optional[str]:
    """Fold text for case- and diacritic-insensitive comparison.

    Decomposes the string, drops combining marks, and case-folds what
    remains, so "Café", "CAFE" and "cafe" all fold to "cafe".

    Registered as the ``fold`` SQL function on every SQLite connection so
    search predicates can apply the same folding to column values.

    Args:
        text: Text to fold. None passes through unchanged.

    Returns:
        The folded string, or None.
    """
    if text is None:
        return None
    decomposed = unicodedata.normalize("NFKD", text)
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return stripped.casefold()


def escape_like_pattern(value: str) -> str:
    """Escape SQL LIKE wildcards to treat them as literals.

    Prevents SQL LIKE pattern injection where user input containing
    '%' or '_' could match unintended patterns.

    Args:
        value: User input string that may contain LIKE wildcards

    Returns:
        String with '%', '_', and '\\' escaped for safe use in LIKE clauses

    Example:
        >>> escape_like_pattern("100% complete")
        '100\\% complete'
        >>> escape_like_pattern("file_name")
        'file\\_name'
    """
    escape_table = str.maketrans(
        {
            "\\": "\\\\",  # Escape backslash first
            "%": "\\%",
            "_": "\\_",
        }
    )
    return value.translate(escape_table)
