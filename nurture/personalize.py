"""Token substitution and body formatting for outgoing content."""

from __future__ import annotations

import html
import re
from typing import Dict, Optional

from . import constants
from .persistence.models import Contact, ContactState

_TOKEN = re.compile(r"\{\s*(\w+)\s*\}")
_HTML_TAG = re.compile(r"<\s*[a-z][\w-]*(\s[^>]*)?>", re.IGNORECASE)
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

TOKENS = (
    "first_name",
    "last_name",
    "name",
    "email",
    "company",
    "job_title",
    "sender_name",
    "sender_email",
)


def _text(value: object) -> str:
    return str(value or "").strip()


def replacements(
    contact: Contact,
    state: ContactState,
    sender_name: Optional[str] = None,
    sender_email: Optional[str] = None,
) -> Dict[str, str]:
    full_name = (
        _text(contact.full_name or state.full_name)
        or _text(state.lookup("name"))
        or _text(contact.email)
    )
    parts = full_name.split()
    return {
        "first_name": parts[0] if parts else "",
        "last_name": " ".join(parts[1:]),
        "name": full_name,
        "email": _text(contact.email),
        "company": _text(state.company),
        "job_title": _text(state.job_title),
        "sender_name": _text(sender_name),
        "sender_email": _text(sender_email),
    }


def personalize(
    text: str,
    contact: Contact,
    state: ContactState,
    sender_name: Optional[str] = None,
    sender_email: Optional[str] = None,
) -> str:
    """Replace ``{token}`` placeholders.

    Token names are matched case-insensitively and may be padded with
    whitespace. Unknown tokens render as an empty string.
    """
    values = replacements(contact, state, sender_name, sender_email)
    return _TOKEN.sub(lambda m: values.get(m.group(1).lower(), ""), text or "")


def looks_like_html(value: str) -> bool:
    return bool(_HTML_TAG.search(value or ""))


def plain_text_to_html(value: str) -> str:
    """Escape ``value`` and wrap blank-line separated blocks in paragraphs."""
    normalized = (value or "").replace("\r\n", "\n").strip()
    if not normalized:
        return ""
    blocks = [b.strip() for b in _PARAGRAPH_BREAK.split(normalized) if b.strip()]
    return "".join(
        "<p>" + html.escape(block, quote=True).replace("\n", "<br />") + "</p>"
        for block in blocks
    )


_TRUNCATED = "...(truncated)"


def truncate_text(value: str, limit: int = constants.WEBHOOK_MAX_BODY_CHARS) -> str:
    """Cut ``value`` so that the result, marker included, fits in ``limit``."""
    if len(value) <= limit:
        return value
    if limit <= len(_TRUNCATED):
        return value[:limit]
    return value[: limit - len(_TRUNCATED)] + _TRUNCATED
