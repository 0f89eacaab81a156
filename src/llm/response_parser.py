"""Response parsing utilities for LLM output.

Classifies agent replies under the turn protocol (diff, sentinel, or a
single tool-call object) and provides the diff/prompt helpers the
pipeline uses around those replies.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional

NO_CHANGES = "NO_CHANGES"
DIFF_PREFIXES = ("diff --git", "---")

_FENCE_PATTERN = re.compile(r"^```[\w-]*\s*\n(.*?)\n?```$", re.DOTALL)
_DIFF_FILE_PATTERN = re.compile(r"^diff --git a/(\S+) b/(\S+)", re.MULTILINE)
_PLUS_FILE_PATTERN = re.compile(r"^\+\+\+ (?:b/)?(\S+)", re.MULTILINE)


def strip_code_fences(text: str) -> str:
    """Remove one enclosing markdown fence, if the whole reply is fenced."""
    cleaned = text.strip()
    match = _FENCE_PATTERN.match(cleaned)
    if match:
        return match.group(1).strip("\n")
    return cleaned


def is_unified_diff(text: Optional[str]) -> bool:
    """Prefix check only; the patch tool validates the full grammar."""
    if not text:
        return False
    return strip_code_fences(text).startswith(DIFF_PREFIXES)


def is_no_changes(text: Optional[str]) -> bool:
    return text is not None and text.strip() == NO_CHANGES


def parse_tool_call(text: str) -> Optional[dict[str, Any]]:
    """Parse a reply as a single ``{"tool": ...}`` object.

    Returns None when the reply is not exactly one JSON object with a
    string ``tool`` field. Arrays (batched calls) are rejected.
    """
    try:
        data = json.loads(strip_code_fences(text))
    except (json.JSONDecodeError, TypeError):
        return None
    if not isinstance(data, dict) or not isinstance(data.get("tool"), str):
        return None
    return data


def diff_files(diff_text: str) -> list[str]:
    """Paths touched by a unified diff, in order of appearance."""
    files: list[str] = []
    for match in _DIFF_FILE_PATTERN.finditer(diff_text):
        if match.group(2) not in files:
            files.append(match.group(2))
    if not files:
        for match in _PLUS_FILE_PATTERN.finditer(diff_text):
            path = match.group(1)
            if path != "/dev/null" and path not in files:
                files.append(path)
    return files


def summarize_diff(diff_text: str) -> str:
    if not diff_text.strip():
        return ""
    files = diff_files(diff_text)
    added = sum(
        1 for line in diff_text.splitlines() if line.startswith("+") and not line.startswith("+++")
    )
    removed = sum(
        1 for line in diff_text.splitlines() if line.startswith("-") and not line.startswith("---")
    )
    return f"{len(files)} file(s) changed (+{added}/-{removed}): {', '.join(files[:10])}"


def limit_prompt_size(text: str, max_chars: int) -> str:
    """Keep the head (three quarters) and tail of an oversized prompt."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    marker = f"\n\n... [truncated {len(text) - max_chars} chars] ...\n\n"
    head = (max_chars * 3) // 4
    tail = max_chars - head
    return text[:head] + marker + text[-tail:]


def chunk_diff(diff_text: str, max_bytes: int) -> list[str]:
    """Split a diff into chunks of at most max_bytes, on file boundaries where possible."""
    if len(diff_text.encode("utf-8")) <= max_bytes:
        return [diff_text] if diff_text else []

    sections = re.split(r"(?m)^(?=diff --git )", diff_text)
    chunks: list[str] = []
    current = ""
    for section in sections:
        if not section:
            continue
        candidate = current + section
        if current and len(candidate.encode("utf-8")) > max_bytes:
            chunks.append(current)
            current = section
        else:
            current = candidate
        while len(current.encode("utf-8")) > max_bytes:
            head = current.encode("utf-8")[:max_bytes].decode("utf-8", errors="ignore") or current[:1]
            chunks.append(head)
            current = current[len(head):]
    if current:
        chunks.append(current)
    return chunks


def normalize_error_signature(error_text: str) -> str:
    """Normalize an error message for deduplication.

    Strips file paths, line numbers, and timestamps so that
    the same logical error produces the same signature.
    """
    sig = error_text.strip()

    # Timestamps first, since :HH:MM:SS overlaps with :N:N
    sig = re.sub(r'\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}[.\d]*\w*', '<TIMESTAMP>', sig)
    sig = re.sub(r'(/[\w./-]+|\w:\\[\w.\\-]+)', '<PATH>', sig)
    sig = re.sub(r'line \d+', 'line <N>', sig, flags=re.IGNORECASE)
    sig = re.sub(r':\d+:\d+', ':<N>:<N>', sig)
    sig = re.sub(r'0x[0-9a-fA-F]+', '<ADDR>', sig)
    sig = re.sub(r'\s+', ' ', sig).strip()

    return sig
