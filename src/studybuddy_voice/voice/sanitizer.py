"""
Text cleanup applied before any text is spoken or billed.

Tutor responses are rendered as markdown with emoji; none of that should be
read aloud. ``sanitize`` is pure and idempotent, and its output length is the
billable character count of an utterance.
"""

import re
from typing import Optional

_EMOJI_RE = re.compile(
    "["
    "\U0001F600-\U0001F64F"  # emoticons
    "\U0001F300-\U0001F5FF"  # symbols & pictographs
    "\U0001F680-\U0001F6FF"  # transport & map
    "\U0001F1E0-\U0001F1FF"  # flags
    "\U00002600-\U000026FF"  # misc symbols
    "\U00002700-\U000027BF"  # dingbats
    "\U0001F900-\U0001F9FF"  # supplemental symbols
    "\U0001FA00-\U0001FA6F"  # chess, extended-A
    "\U0001FA70-\U0001FAFF"
    "\U0000FE00-\U0000FE0F"  # variation selectors
    "\U0000200D"             # zero width joiner
    "]+"
)

_CODE_FENCE_RE = re.compile(r"```[^\n`]*\n?(.*?)```", re.DOTALL)
_BOLD_RE = re.compile(r"(\*\*|__)(.+?)\1", re.DOTALL)
_ITALIC_STAR_RE = re.compile(r"\*(?!\s)([^*\n]+?)\*")
_ITALIC_UNDERSCORE_RE = re.compile(r"(?<![\w])_(?!\s)([^_\n]+?)_(?![\w])")
_INLINE_CODE_RE = re.compile(r"`([^`]*)`")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+", re.MULTILINE)
_LINK_RE = re.compile(r"!?\[([^\]]*)\]\([^)]*\)")
_LIST_MARKER_RE = re.compile(r"^\s*(?:[-*+]|\d+[.)])\s+", re.MULTILINE)
_BULLET_RE = re.compile(r"[•●○◦▪▫]")
# A lone "*" or "#" is content, e.g. "2 * 3" or "C#"
_STRAY_MARKUP_RE = re.compile(r"\*{2,}|#{2,}|`+")
_SPACES_RE = re.compile(r"\s+")


def sanitize(raw: Optional[str]) -> str:
    """Strip emoji, markdown and bullets; collapse whitespace.

    Args:
        raw: Text as produced by the tutor, possibly None.

    Returns:
        Speakable plain text, or "" when nothing speakable remains.
    """
    if not raw:
        return ""

    text = _strip(raw)
    # Stripping can expose new markup (e.g. "[a]**(b)"); run to a fixed point
    while True:
        again = _strip(text)
        if again == text:
            return text
        text = again


def _strip(raw: str) -> str:
    text = _EMOJI_RE.sub("", raw)
    text = _CODE_FENCE_RE.sub(r"\1", text)
    text = _LINK_RE.sub(r"\1", text)
    text = _BOLD_RE.sub(r"\2", text)
    text = _ITALIC_STAR_RE.sub(r"\1", text)
    text = _ITALIC_UNDERSCORE_RE.sub(r"\1", text)
    text = _INLINE_CODE_RE.sub(r"\1", text)
    text = _HEADING_RE.sub("", text)
    text = _LIST_MARKER_RE.sub("", text)
    text = _BULLET_RE.sub("", text)
    text = _STRAY_MARKUP_RE.sub("", text)

    text = _SPACES_RE.sub(" ", text)
    return text.strip()
