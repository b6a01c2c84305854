"""Text sanitization utilities to prevent XSS attacks."""

import html


def sanitize_text(value: str | None) -> str | None:
    """HTML-escape user-supplied text (order notes, cancellation reasons).

    These strings are rendered back in staff dashboards, so they are
    escaped before being stored. Surrounding whitespace is dropped.
    """
    if value is None:
        return None
    return html.escape(value.strip(), quote=True)
