"""
Shared text utilities for the resolution engine

SECURITY: Supplier names come from uploaded spreadsheets; everything that
reaches a log line goes through sanitize_for_logging first.
"""

import re

_CONTROL_CHARS = re.compile(r'[\r\n\x00-\x1f\x7f-\x9f]')
_WHITESPACE = re.compile(r'\s+')


def sanitize_for_logging(text: str, max_length: int = 500) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text
        max_length: Maximum length of the returned text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = _CONTROL_CHARS.sub(' ', str(text))
    sanitized = _WHITESPACE.sub(' ', sanitized).strip()
    return sanitized[:max_length] if len(sanitized) > max_length else sanitized


def truncate(text: str, max_length: int) -> str:
    """Truncate text with a marker when it exceeds max_length"""
    if len(text) > max_length:
        return text[:max_length] + "...(truncated)"
    return text
