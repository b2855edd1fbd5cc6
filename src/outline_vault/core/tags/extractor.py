"""Derive the normalized tag set of a node from its title and content."""

import json
import re
from typing import Any

from bs4 import BeautifulSoup

_TAG_SCAN_RE = re.compile(r"(?:^|(?<=[^0-9A-Za-z_/]))#([a-zA-Z0-9][\w-]{0,63})\b", re.ASCII)


def extract_tags_from_string(text: str) -> list[str]:
    """Return the sorted, lowercased, unique ``#tags`` found in text."""
    if not isinstance(text, str) or not text:
        return []
    return sorted({m.group(1).lower() for m in _TAG_SCAN_RE.finditer(text)})


def _collect_text(nodes: list[Any], out: list[str]) -> list[str]:
    for node in nodes:
        if not isinstance(node, dict):
            continue
        if isinstance(node.get("text"), str):
            out.append(node["text"])
        if isinstance(node.get("content"), list):
            _collect_text(node["content"], out)
    return out


def extract_tags_from_nodes(nodes: list[Any]) -> list[str]:
    """Return the tags found in the text leaves of a rich-text node tree."""
    if not isinstance(nodes, list):
        return []
    parts = _collect_text(nodes, [])
    if not parts:
        return []
    return extract_tags_from_string(" ".join(parts))


def html_to_text(html: str) -> str:
    """Visible text of an HTML fragment, with entities decoded."""
    if "<" not in html and "&" not in html:
        return html
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text(" ")


def compute_tags(title: str, content: str | list[Any] | None) -> tuple[str, ...]:
    """Compute node tags from title plus content.

    Content is either a rich-text node list, a serialized node list, or an
    HTML/plain string (markup is stripped before scanning).
    """
    tags = set(extract_tags_from_string(title or ""))
    if isinstance(content, list):
        tags.update(extract_tags_from_nodes(content))
    elif isinstance(content, str) and content:
        nodes = None
        if content.lstrip().startswith("["):
            try:
                parsed = json.loads(content)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                nodes = parsed
        if nodes is not None:
            tags.update(extract_tags_from_nodes(nodes))
        else:
            tags.update(extract_tags_from_string(html_to_text(content)))
    return tuple(sorted(tags))


def parse_tags_field(raw: Any) -> tuple[str, ...]:
    """Decode a stored tags column (JSON list) into a sorted tuple."""
    if not raw:
        return ()
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return ()
    if not isinstance(raw, list):
        return ()
    return tuple(sorted({str(v).lower() for v in raw if v}))
