from __future__ import annotations

import re

from .types import Diagnostics

# "r(198);" as printed after a failing command, or the "{search r(198), ...}" help link.
RC_RE = re.compile(r"(?<![A-Za-z0-9_])r\((\d+)\);|\{search\s+r\((\d+)\)")
ERR_SPAN_RE = re.compile(r"\{err\}(.*?)(?=\{txt\}|\{res\}|\{com\}|\Z)", flags=re.DOTALL)
INTERNAL_ERR_MARKER = "capture log close"
ERROR_PREFIX = "Error: "


def parse_return_code(text: str | None) -> int | None:
    if not text:
        return None
    rc: int | None = None
    for match in RC_RE.finditer(text):
        rc = int(match.group(1) or match.group(2))
    return rc


def _with_error_prefix(span: str) -> str:
    if span.lower().startswith("error"):
        return span
    return f"{ERROR_PREFIX}{span}"


def parse_error_context(text: str | None) -> str | None:
    if not text:
        return None
    spans: list[str] = []
    for match in ERR_SPAN_RE.finditer(text):
        content = match.group(1).strip()
        if not content or INTERNAL_ERR_MARKER in content:
            continue
        spans.append(_with_error_prefix(content))
    if not spans:
        return None
    return "\n".join(spans)


def parse_diagnostics(text: str | None) -> Diagnostics:
    """Extract the last return code and the ``{err}`` context from SMCL text."""
    return Diagnostics(rc=parse_return_code(text), error_context=parse_error_context(text))
