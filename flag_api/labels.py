"""
Token replacement and escaping for flag labels.

Labels such as "Bookmark [node:label] ([flag:count])" are expanded with
values from contexts keyed by token type. Tokens with no known value are
left in place.
"""
import re

from markupsafe import Markup, escape

TOKEN_PATTERN = re.compile(r"\[([a-z_]+):([a-z0-9_-]+)\]")


def replace_tokens(text: str, contexts: dict) -> str:
    def _sub(match):
        token_type, name = match.group(1), match.group(2)
        values = contexts.get(token_type)
        if values is None or name not in values or values[name] is None:
            return match.group(0)
        return str(values[name])

    return TOKEN_PATTERN.sub(_sub, text)


def has_tokens(text: str) -> bool:
    return bool(text) and "[" in text and TOKEN_PATTERN.search(text) is not None


def sanitize(text) -> Markup:
    """Escape a processed label for HTML output."""
    if isinstance(text, Markup):
        return text
    return escape(text or "")
