"""Summary: HTML to plain-text conversion for email bodies.

Importance: Gives HTML-only messages a readable body without a rendering engine.
Alternatives: Use BeautifulSoup or html2text.
"""

from __future__ import annotations

import html
import re


BLOCK_TAGS = ("p", "div", "tr", "li", "h1", "h2", "h3", "h4", "h5", "h6", "table", "blockquote")

# Applied in order. Each entry is (pattern, replacement).
SUBSTITUTIONS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL), ""),
    (re.compile(r"<style\b[^>]*>.*?</style\s*>", re.IGNORECASE | re.DOTALL), ""),
    (re.compile(r"<!--.*?-->", re.DOTALL), ""),
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "\n"),
    (re.compile(r"</(?:%s)\s*>" % "|".join(BLOCK_TAGS), re.IGNORECASE), "\n"),
    (re.compile(r"<[^>]+>"), ""),
)

WHITESPACE_CLEANUP: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"[ \t\f\v\u00a0]+"), " "),
    (re.compile(r" *\n *"), "\n"),
    (re.compile(r"\n{3,}"), "\n\n"),
)


def html_to_plain_text(markup: str) -> str:
    """Summary: Convert an HTML fragment to plain text.

    Importance: Drops scripts and styles, maps block closes to newlines, strips tags,
    decodes entities, and collapses whitespace.
    Alternatives: Keep the HTML and render it client-side.
    """

    text = markup
    for pattern, replacement in SUBSTITUTIONS:
        text = pattern.sub(replacement, text)
    text = html.unescape(text)
    for pattern, replacement in WHITESPACE_CLEANUP:
        text = pattern.sub(replacement, text)
    return text.strip()


def truncate(text: str, limit: int) -> str:
    """Truncate text to at most ``limit`` characters."""

    if limit <= 0 or len(text) <= limit:
        return text
    return text[:limit].rstrip()
