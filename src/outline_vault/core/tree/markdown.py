"""Render an outline forest as markdown."""

import io
from collections.abc import Iterable

from outline_vault.core.assets.richtext import is_node_list, parse_maybe_json
from outline_vault.core.tags.extractor import html_to_text
from outline_vault.models.node import TreeNode

_CHECKBOX = {"todo": "[ ] ", "in-progress": "[~] ", "done": "[x] "}


def content_text(content: str) -> str:
    """Plain text of stored content, one line per block."""
    if not content:
        return ""
    if not is_node_list(content):
        return " ".join(html_to_text(content).split())

    lines: list[str] = []

    def _walk(nodes: list, buf: list[str]) -> None:
        for node in nodes:
            if not isinstance(node, dict):
                continue
            if isinstance(node.get("text"), str):
                buf.append(node["text"])
            if isinstance(node.get("content"), list):
                if node.get("type") in ("paragraph", "heading", "listItem", "codeBlock"):
                    inner: list[str] = []
                    _walk(node["content"], inner)
                    if inner:
                        lines.append("".join(inner))
                else:
                    _walk(node["content"], buf)

    top: list[str] = []
    _walk(parse_maybe_json(content), top)
    if top:
        lines.append("".join(top))
    return "\n".join(line for line in lines if line.strip())


def render_forest_as_markdown(
    roots: Iterable[TreeNode],
    *,
    max_depth: int | None = None,
    include_content: bool = True,
) -> str:
    """Render a forest as an indented markdown checklist.

    Args:
        roots: Root TreeNodes, as returned by build_forest.
        max_depth: Max levels below the roots to include (None = unlimited).
        include_content: Whether to include node content as quoted lines.

    Returns:
        Markdown string with bullet-list hierarchy.
    """
    out = io.StringIO()
    stack: list[tuple[TreeNode, int]] = [(r, 0) for r in reversed(list(roots))]
    while stack:
        tree, depth = stack.pop()
        n = tree.node
        indent = "    " * depth
        prefix = "- " + _CHECKBOX.get(n.status, "")
        suffix = f" ({', '.join(tree.own_worked_on_dates)})" if tree.own_worked_on_dates else ""
        out.write(f"{indent}{prefix}{n.title}{suffix}\n")

        if include_content:
            for line in content_text(n.content).split("\n"):
                if line:
                    out.write(f"{indent}  > {line}\n")

        if max_depth is not None and depth >= max_depth:
            if tree.children:
                count = len(tree.children)
                noun = "child" if count == 1 else "children"
                out.write(f"{indent}    - ... ({count} more {noun}, id={n.id})\n")
            continue
        stack.extend((c, depth + 1) for c in reversed(tree.children))

    return out.getvalue()
