"""
Chat text filter: turns bare image links into stickers and strips angle
brackets from everything else.
"""
import re

STICKER_TAG_RE = re.compile(r'^<img\s+class="inner-sticker"\s+src="https://[^"]+"\s*/?>$')
IMAGE_LINK_RE = re.compile(r"^https://.*\.(webp|png|jpg|jpeg|gif)$", re.IGNORECASE)


def sanitize(value):
    """Strip ``<`` and ``>`` unless the value is exactly one sticker tag.

    Non-string values are returned untouched.
    """
    if not isinstance(value, str):
        return value
    stripped = value.strip()
    if STICKER_TAG_RE.match(stripped):
        return stripped
    return re.sub(r"[<>]", "", value)


def to_sticker(message):
    if isinstance(message, str) and IMAGE_LINK_RE.match(message.strip()):
        return f'<img class="inner-sticker" src="{message.strip()}" />'
    return message


def clean_message(message) -> str:
    """Sticker conversion followed by sanitization, as applied to chat text."""
    cleaned = sanitize(to_sticker(message))
    return cleaned if isinstance(cleaned, str) else ""
