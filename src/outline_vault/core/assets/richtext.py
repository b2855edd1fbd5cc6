"""Rich-text content helpers: parsing, image walking and inline-asset sanitizing.

Node content is stored as a string. It is either a serialized rich-text node
list (``[{"type": "paragraph", "content": [...]}, ...]``) or an HTML/plain
string. Only ``image`` nodes and ``<img src>`` attributes are interpreted.
"""

import copy
import json
import re
from collections.abc import Callable
from typing import Any

from bs4 import BeautifulSoup
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter
from loguru import logger

from outline_vault.errors import OutlineVaultError
from outline_vault.protocols import ContentStoreProtocol

DATA_URI_RE = re.compile(r"^data:([^;,]+);base64,(.*)$", re.IGNORECASE | re.DOTALL)
_ABSOLUTE_FILE_URL_RE = re.compile(r"^https?://[^/]+(/files/[^\s?#]+)$", re.IGNORECASE)
_FILE_ID_RE = re.compile(r"/files/(\d+)(?:/|$)", re.IGNORECASE)
_HTML_REF_ATTRS = ("src", "data-file-path")

# Void elements come out as ``<img ...>``; text outside &, < and > is left as is.
_HTML_FORMATTER = HTMLFormatter(
    entity_substitution=EntitySubstitution.substitute_xml, void_element_close_prefix=None
)

ImageRewriter = Callable[[dict[str, Any]], dict[str, Any]]


def is_data_uri(value: Any) -> bool:
    return isinstance(value, str) and DATA_URI_RE.match(value) is not None


def parse_maybe_json(value: Any) -> list[Any]:
    """Return a rich-text node list from a list or serialized list, else []."""
    if not value:
        return []
    if isinstance(value, list):
        return copy.deepcopy(value)
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except ValueError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


def is_node_list(content: Any) -> bool:
    """Whether stored content is a serialized rich-text node list."""
    if isinstance(content, list):
        return True
    if not isinstance(content, str) or not content.lstrip().startswith("["):
        return False
    try:
        return isinstance(json.loads(content), list)
    except ValueError:
        return False


def stringify_nodes(nodes: list[Any] | None) -> str:
    return json.dumps(nodes or [], ensure_ascii=False, separators=(",", ":"))


def extract_file_path(value: Any) -> str | None:
    """Return the ``/files/...`` path of a live storage URL, absolute or relative."""
    if not isinstance(value, str) or not value:
        return None
    if value.startswith("/files/"):
        return value
    m = _ABSOLUTE_FILE_URL_RE.match(value)
    return m.group(1) if m else None


def extract_file_id(value: Any) -> int | None:
    """Return the asset id referenced by a live storage URL."""
    if not isinstance(value, str):
        return None
    m = _FILE_ID_RE.search(value)
    if not m:
        return None
    file_id = int(m.group(1))
    return file_id if file_id > 0 else None


def rewrite_images(nodes: list[Any], rewrite: ImageRewriter) -> list[Any]:
    """Return a copy of a node tree with every image node's attrs rewritten."""
    out: list[Any] = []
    for node in nodes:
        if not isinstance(node, dict):
            out.append(node)
            continue
        node_copy = dict(node)
        if node_copy.get("type") == "image":
            node_copy["attrs"] = rewrite(dict(node_copy.get("attrs") or {}))
        if isinstance(node_copy.get("content"), list):
            node_copy["content"] = rewrite_images(node_copy["content"], rewrite)
        out.append(node_copy)
    return out


def _parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser", multi_valued_attributes=None)


def _serialize_html(soup: BeautifulSoup) -> str:
    return soup.decode(formatter=_HTML_FORMATTER)


def rewrite_html_refs(html: str, rewrite: Callable[[str, str], str | None]) -> str:
    """Rewrite the ``src``/``data-file-path`` attributes of ``<img>`` tags.

    ``rewrite(attr, value)`` returns the replacement value, or None to keep it.
    HTML without a changed reference is returned untouched.
    """
    if not isinstance(html, str) or "<img" not in html.lower():
        return html
    soup = _parse_html(html)
    changed = False
    for img in soup.find_all("img"):
        for attr in _HTML_REF_ATTRS:
            value = img.get(attr)
            if not isinstance(value, str) or not value:
                continue
            new_value = rewrite(attr, value)
            if new_value is not None and new_value != value:
                img[attr] = new_value
                changed = True
    return _serialize_html(soup) if changed else html


def sanitize_rich_text(
    nodes: list[Any],
    store: ContentStoreProtocol,
    *,
    title: str | None = None,
) -> list[Any]:
    """Move inline ``data:`` images into the store and normalize file references."""

    def _rewrite(attrs: dict[str, Any]) -> dict[str, Any]:
        src = attrs.get("src")
        if is_data_uri(src):
            stored = store.put_data_uri(
                src, original_name=attrs.get("name") or attrs.get("alt") or title
            )
            if stored is not None:
                attrs["src"] = stored.url
                attrs["data-file-path"] = stored.url
                attrs["data-file-id"] = str(stored.id)
            return attrs
        explicit = attrs.get("data-file-path")
        relative = explicit if isinstance(explicit, str) else extract_file_path(src)
        if relative:
            attrs["src"] = relative
            attrs["data-file-path"] = relative
            file_id = attrs.get("data-file-id") or extract_file_id(relative)
            if file_id:
                attrs["data-file-id"] = str(file_id)
        return attrs

    return rewrite_images(nodes, _rewrite)


def sanitize_html_content(html: str, store: ContentStoreProtocol) -> str:
    """Move inline ``<img src="data:...">`` payloads into the store."""
    if not isinstance(html, str) or "data:" not in html:
        return html
    soup = _parse_html(html)
    changed = False
    for img in soup.find_all("img"):
        src = img.get("src")
        if not is_data_uri(src):
            continue
        stored = store.put_data_uri(src, original_name=img.get("alt") or None)
        if stored is None:
            continue
        img["src"] = stored.url
        img["data-file-id"] = str(stored.id)
        img["data-file-path"] = stored.url
        changed = True
    return _serialize_html(soup) if changed else html


def sanitize_content(content: str, store: ContentStoreProtocol, *, title: str | None = None) -> str:
    """Sanitize stored node content of either format, returning the new string."""
    if not content or "data:" not in content:
        return content
    try:
        if is_node_list(content):
            nodes = sanitize_rich_text(parse_maybe_json(content), store, title=title)
            return stringify_nodes(nodes)
        return sanitize_html_content(content, store)
    except OutlineVaultError as e:
        logger.warning("Leaving inline assets in place: {}", e)
        return content
