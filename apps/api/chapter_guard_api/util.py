from __future__ import annotations

import html
import re
import unicodedata
from datetime import datetime, timezone

from bs4 import BeautifulSoup


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def deep_merge(base: object, patch: object) -> object:
    """
    Recursively merge dictionaries.
    Non-dict values are replaced by patch.
    """
    if isinstance(base, dict) and isinstance(patch, dict):
        out = dict(base)
        for k, v in patch.items():
            out[k] = deep_merge(out.get(k), v)
        return out
    return patch


_THINK_BLOCK_RE = re.compile(r"<think>.*?</think>", flags=re.IGNORECASE | re.DOTALL)
_FENCE_OPEN_RE = re.compile(r"^```[a-zA-Z]*\n?")
_FENCE_CLOSE_RE = re.compile(r"```$")


def strip_think_blocks(text: str) -> str:
    """
    Local models (deepseek-r1, qwq, ...) may emit reasoning blocks like:
      <think>...</think>
    We never want to persist those into chapters or show them in review.
    """

    if not isinstance(text, str):
        return ""
    out = _THINK_BLOCK_RE.sub("", text)
    return out.lstrip()


def normalize_ai_output(text: str) -> str:
    out = strip_think_blocks(text).strip()
    out = _FENCE_OPEN_RE.sub("", out)
    out = _FENCE_CLOSE_RE.sub("", out)
    return out.strip()


def count_words(text: str | None) -> int:
    t = (text or "").strip()
    if not t:
        return 0
    return len(t.split())


_BLOCK_TAGS = ("p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "blockquote", "pre")


def strip_html(content: str | None) -> str:
    """Plain text of editor HTML, one blank line between blocks."""
    if not content:
        return ""
    soup = BeautifulSoup(content, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(_BLOCK_TAGS):
        tag.append("\n\n")
    text = soup.get_text()
    lines = [ln.rstrip() for ln in text.replace("\r\n", "\n").split("\n")]
    return re.sub(r"\n{3,}", "\n\n", "\n".join(lines)).strip()


def plain_text_to_html(value: str | None) -> str:
    trimmed = (value or "").strip()
    if not trimmed:
        return "<p></p>"
    blocks = re.split(r"\n\s*\n", trimmed)
    return "".join(f"<p>{html.escape(block, quote=True).replace(chr(10), '<br>')}</p>" for block in blocks)


def fold_text(value: str | None) -> str:
    """Lowercase, strip diacritics, keep letters/digits separated by single spaces."""
    t = unicodedata.normalize("NFD", (value or "").lower())
    t = "".join(ch for ch in t if not unicodedata.combining(ch))
    t = re.sub(r"[^\w\s]+", " ", t)
    t = t.replace("_", " ")
    return re.sub(r"\s+", " ", t).strip()
