"""Sync reference footer embedded in every item we create.

The footer lets reconciliation find the local bug behind an external item
even when the ExternalLink write failed after the provider confirmed the
create. Pulls strip it again so it never reaches the bug store.
"""

import base64
import json
import re
from typing import Any, Dict, Optional

MARKER_PREFIX = "bugsync-ref:"
_SEPARATOR = "\n\n---\n"

_MARKER_RE = re.compile(r"bugsync-ref:(?P<b64>[A-Za-z0-9+/=]+)")
_FOOTER_RE = re.compile(r"(?:\s*-{3,}\s*)?bugsync-ref:[A-Za-z0-9+/=]+\s*$")


def _b64_json(data: Dict[str, Any]) -> str:
    raw = json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def _b64_json_load(value: str) -> Optional[Dict[str, Any]]:
    try:
        raw = base64.b64decode(value.encode("ascii"), validate=True)
        obj = json.loads(raw.decode("utf-8"))
        return obj if isinstance(obj, dict) else None
    except Exception:
        return None


def build_marker(*, tenant_id: str, bug_id: str) -> str:
    payload = {"v": 1, "tenant_id": str(tenant_id), "bug_id": str(bug_id)}
    return f"{MARKER_PREFIX}{_b64_json(payload)}"


def append_marker(description: Optional[str], marker: str) -> str:
    """Add the footer once; an existing footer is replaced, not duplicated."""
    body = strip_marker(description or "")
    if not body:
        return marker
    return f"{body}{_SEPARATOR}{marker}"


def strip_marker(description: Optional[str]) -> str:
    if not description:
        return ""
    return _FOOTER_RE.sub("", description).rstrip()


def parse_marker(description: Optional[str]) -> Optional[Dict[str, str]]:
    """Return {'tenant_id', 'bug_id'} from a description footer, if present."""
    if not description:
        return None
    m = None
    for m in _MARKER_RE.finditer(description):
        pass
    if m is None:
        return None
    data = _b64_json_load(m.group("b64"))
    if not data or "bug_id" not in data or "tenant_id" not in data:
        return None
    return {"tenant_id": str(data["tenant_id"]), "bug_id": str(data["bug_id"])}
