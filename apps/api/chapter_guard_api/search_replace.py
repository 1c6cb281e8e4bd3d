"""Literal search/replace over editor HTML, touching text nodes only."""

from __future__ import annotations

import re
from dataclasses import dataclass

from bs4 import BeautifulSoup, NavigableString


@dataclass(frozen=True)
class SearchOptions:
    case_sensitive: bool = False
    whole_word: bool = False


def build_pattern(query: str, options: SearchOptions) -> re.Pattern[str]:
    escaped = re.escape(query)
    if options.whole_word:
        escaped = rf"\b{escaped}\b"
    return re.compile(escaped, 0 if options.case_sensitive else re.IGNORECASE)


def _text_nodes(soup: BeautifulSoup) -> list[NavigableString]:
    # Plain strings only: comments/doctype/CDATA are NavigableString subclasses.
    return [n for n in soup.find_all(string=True) if type(n) is NavigableString]


def count_matches_in_html(content: str, query: str, options: SearchOptions) -> int:
    q = (query or "").strip()
    if not q or not content:
        return 0
    pattern = build_pattern(q, options)
    soup = BeautifulSoup(content, "html.parser")
    return sum(len(pattern.findall(str(node))) for node in _text_nodes(soup))


def replace_matches_in_html(
    content: str, query: str, replacement: str, options: SearchOptions
) -> tuple[str, int]:
    """(new_html, replacements). Unchanged input is returned as-is."""
    q = (query or "").strip()
    if not q or not content:
        return content, 0
    pattern = build_pattern(q, options)
    soup = BeautifulSoup(content, "html.parser")
    total = 0
    for node in _text_nodes(soup):
        new_text, n = pattern.subn(lambda _m: replacement, str(node))
        if n:
            node.replace_with(NavigableString(new_text))
            total += n
    if total == 0:
        return content, 0
    return str(soup), total


def build_sample(text: str, query: str, options: SearchOptions, radius: int = 60) -> str:
    flat = re.sub(r"\s+", " ", text or "").strip()
    q = (query or "").strip()
    if not q:
        return flat[:180]
    m = build_pattern(q, options).search(flat)
    if not m:
        return flat[:180]
    start = max(0, m.start() - radius)
    end = min(len(flat), m.end() + radius)
    return flat[start:end].strip()
