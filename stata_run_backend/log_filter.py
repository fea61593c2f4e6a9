from __future__ import annotations

import re

LINE_SPLIT_RE = re.compile(r"\r?\n")

INTERNAL_PATTERNS: tuple[re.Pattern[str], ...] = (
    # Log/return bracket commands, even when echoed as ". capture ..." or "{com}capture ...".
    re.compile(r"capture\s+log\s+close\s+_mcp_smcl_", re.IGNORECASE),
    re.compile(r"capture\s+_return\s+hold\s+mcp_hold_", re.IGNORECASE),
    # Log header metadata, possibly behind {txt}/{res} style tags.
    re.compile(r"^\s*(\{smcl\})?\s*$", re.IGNORECASE),
    re.compile(r"(\s*\{[^}]+\})*\s*log\s+type:\s+.*smcl", re.IGNORECASE),
    re.compile(r"(\s*\{[^}]+\})*\s*opened\s+on:\s+", re.IGNORECASE),
    re.compile(r"(\s*\{[^}]+\})*\s*log:\s+.*(mcp_smcl_|<unnamed>)", re.IGNORECASE),
    re.compile(r"(\s*\{[^}]+\})*\s*name:\s+.*(_mcp_smcl_|<unnamed>)", re.IGNORECASE),
    re.compile(r"\{txt\}\{sf\}\{ul off\}\{\.-\}", re.IGNORECASE),
)


def is_internal_line(line: str) -> bool:
    if not line.strip():
        return False
    return any(pattern.search(line) for pattern in INTERNAL_PATTERNS)


def filter_internal_lines(text: str | None) -> str:
    """Drop internal bookkeeping lines from a block of SMCL or plain log text.

    Line order and blank lines are preserved; the output is joined with ``\\n``.
    """
    if not text:
        return ""
    lines = LINE_SPLIT_RE.split(text)
    return "\n".join(line for line in lines if not is_internal_line(line))
