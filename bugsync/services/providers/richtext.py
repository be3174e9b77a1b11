"""Plain text <-> provider rich text.

Conversions are deliberately minimal and lossy on read: formatting is
dropped, text and paragraph breaks survive.
"""

import html
import re
from typing import Any, Dict, List


def text_to_adf(text: str) -> Dict[str, Any]:
    """Wrap plain text in the smallest valid Atlassian Document Format doc."""
    content: List[Dict[str, Any]] = []
    for block in re.split(r"\n{2,}", text or ""):
        if not block:
            continue
        inline: List[Dict[str, Any]] = []
        for i, line in enumerate(block.split("\n")):
            if i:
                inline.append({"type": "hardBreak"})
            if line:
                inline.append({"type": "text", "text": line})
        paragraph: Dict[str, Any] = {"type": "paragraph"}
        if inline:
            paragraph["content"] = inline
        content.append(paragraph)
    return {"type": "doc", "version": 1, "content": content}


def adf_to_text(doc: Any) -> str:
    """Flatten an ADF document (or a legacy plain string) to text."""
    if doc is None:
        return ""
    if isinstance(doc, str):
        return doc
    if not isinstance(doc, dict):
        return str(doc)

    def inline_text(node: Any) -> str:
        if not isinstance(node, dict):
            return ""
        node_type = node.get("type")
        if node_type == "text":
            return node.get("text", "")
        if node_type == "hardBreak":
            return "\n"
        return "".join(inline_text(child) for child in node.get("content", []) or [])

    blocks = []
    for block in doc.get("content", []) or []:
        if isinstance(block, dict) and block.get("type") in ("bulletList", "orderedList"):
            for item in block.get("content", []) or []:
                blocks.append("- " + inline_text(item))
        else:
            blocks.append(inline_text(block))
    return "\n\n".join(b for b in blocks if b is not None)


def text_to_html(text: str) -> str:
    """Escape plain text for an HTML rich-text field, keeping line breaks."""
    if not text:
        return ""
    return html.escape(text).replace("\n", "<br>")


_BREAK_RE = re.compile(r"<\s*br\s*/?\s*>", re.IGNORECASE)
_BLOCK_END_RE = re.compile(r"</\s*(p|div|li|h[1-6])\s*>", re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")


def html_to_text(value: Any) -> str:
    if not value:
        return ""
    text = _BREAK_RE.sub("\n", str(value))
    text = _BLOCK_END_RE.sub("\n\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip("\n")
