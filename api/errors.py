"""
Error message helpers.

Errors from ffmpeg and the storage SDK can be arbitrarily long; anything
stored in the database, logged as a summary or sent to the alert webhook is
truncated first.
"""

from typing import Optional

TRUNCATION_SUFFIX = "... [truncated]"


def truncate_error(error: Optional[str], max_length: int) -> Optional[str]:
    """
    Truncate an error message to at most max_length characters.

    Args:
        error: The error message (None passes through)
        max_length: Maximum length of the returned string, suffix included

    Returns:
        The original message if short enough, otherwise a truncated copy
        ending with TRUNCATION_SUFFIX
    """
    if error is None:
        return None
    if len(error) <= max_length:
        return error
    if max_length <= len(TRUNCATION_SUFFIX):
        return error[:max_length]
    return error[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def describe_exception(exc: BaseException) -> str:
    """Render an exception as 'TypeName: message' (or just the type name)."""
    message = str(exc)
    if message:
        return f"{type(exc).__name__}: {message}"
    return type(exc).__name__
