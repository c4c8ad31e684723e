"""Plain-text normalization and interactive-prompt detection for shell output."""
from __future__ import annotations

import re

# CSI (colors, cursor moves), OSC (titles, hyperlinks), and two-byte ESC sequences.
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
# An escape sequence that has started but not yet terminated at end of text.
_PARTIAL_ESCAPE_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*\x1b?)?\Z")
# Longest unterminated sequence held back before it is flushed as-is.
MAX_PARTIAL_ESCAPE = 4096

DEFAULT_SCAN_LINES = 10

# Any hit here means the tail is a failure report, not a question.
EXCLUSION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"error:", re.IGNORECASE),
    re.compile(r"\bfailed\b", re.IGNORECASE),
    re.compile(r"\bcannot\b", re.IGNORECASE),
    re.compile(r"[✓✔✗✘✖✅❌⚠]"),
)

INCLUSION_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\[y/n\]\s*:?\s*$", re.IGNORECASE),
    re.compile(r"\(y/n\)\s*:?\s*$", re.IGNORECASE),
    re.compile(r"\[yes/no\]\s*:?\s*$", re.IGNORECASE),
    re.compile(r"\(yes/no\)\s*:?\s*$", re.IGNORECASE),
    re.compile(r"password\s*:\s*$", re.IGNORECASE),
    re.compile(r"passphrase[^:]*:\s*$", re.IGNORECASE),
    re.compile(r"press enter to continue", re.IGNORECASE),
    re.compile(r"press any key", re.IGNORECASE),
    re.compile(r"\(use arrow keys\)", re.IGNORECASE),
    re.compile(r"^\s*[❯›]\s*\S"),
    re.compile(r"\?\s*$"),
)


def strip_ansi(text: str) -> str:
    """Remove escape and control sequences so output is plain text."""
    if not text:
        return ""
    text = _ANSI_RE.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "")
    return _CONTROL_RE.sub("", text)


def split_partial_escape(text: str) -> tuple[str, str]:
    """Split off a trailing escape sequence that is still incomplete.

    Returns ``(complete, pending)``. Output arrives in arbitrary chunks,
    so the pending part is prepended to the next chunk before stripping.
    """
    match = _PARTIAL_ESCAPE_RE.search(text)
    if match is None or len(text) - match.start() > MAX_PARTIAL_ESCAPE:
        return text, ""
    return text[:match.start()], text[match.start():]


def tail_lines(text: str, count: int, start: int = 0) -> str:
    """The last *count* newline-separated segments of ``text[start:]``."""
    pos = len(text)
    for _ in range(count):
        pos = text.rfind("\n", start, pos)
        if pos < 0:
            return text[start:]
    return text[pos + 1:]


def detect_input_prompt(
    output: str,
    scan_lines: int = DEFAULT_SCAN_LINES,
) -> str | None:
    """Return the prompt text if the tail of *output* is asking for input.

    Only the last *scan_lines* lines are considered. Exclusion patterns
    are checked first and veto any prompt match.
    """
    if not output:
        return None
    lines = output.split("\n")[-scan_lines:]
    while lines and not lines[-1].strip():
        lines.pop()
    if not lines:
        return None

    for line in lines:
        if any(p.search(line) for p in EXCLUSION_PATTERNS):
            return None

    for pattern in INCLUSION_PATTERNS:
        for idx in range(len(lines) - 1, -1, -1):
            if pattern.search(lines[idx]):
                return "\n".join(lines[idx:]).strip()
    return None
