"""
Output Recovery for LLM Responses

This module coerces near-JSON model output into structured values. Free-tier
models wrap answers in reasoning blocks and markdown fences, emit invalid
escape sequences and raw newlines inside strings, leave trailing commas and
comments behind, or get cut off mid-document. Each recovery stage runs only
when the previous one failed, and the cascade never raises: when nothing
parses, the cleaned text is returned for the caller to handle.
"""

import json
import logging
import re
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from ..core.models import DEFAULT_PROJECT_TITLE

logger = logging.getLogger(__name__)


REASONING_PATTERN = re.compile(r'<(think|thinking|reasoning)>[\s\S]*?</\1>', re.IGNORECASE)
FENCE_PATTERN = re.compile(r'```([\w+.#-]*)[ \t]*\n?')
JSON_FENCE_TAGS = frozenset({'', 'json', 'jsonc'})
LEADING_ARRAY_PATTERN = re.compile(r'^[ \t]*\[', re.MULTILINE)
FENCED_CODE_PATTERN = re.compile(r'```[\w+.#-]*[ \t]*\n([\s\S]*?)```')

VALID_ESCAPES = frozenset('"\\/bfnrt')
HEX_DIGITS = frozenset('0123456789abcdefABCDEF')
CONTROL_ESCAPES = {'\n': '\\n', '\r': '\\r', '\t': '\\t'}


class ScanState(Enum):
    """States of the string-aware scanners"""
    OUTSIDE_STRING = "outside_string"
    INSIDE_STRING = "inside_string"
    INSIDE_ESCAPE = "inside_escape"


def _escape_control(ch: str) -> str:
    if ch in CONTROL_ESCAPES:
        return CONTROL_ESCAPES[ch]
    return f'\\u{ord(ch):04x}'


class EscapeRepairScanner:
    """Finite-state scanner that makes string literals in near-JSON text parseable.

    Outside strings every character passes through. Inside a string, raw
    control characters become their escaped forms and a backslash moves the
    scanner to INSIDE_ESCAPE. From there a recognized escape is kept as-is and
    anything else gets its backslash doubled so it reads as a literal
    character. A dangling backslash at the very end is dropped.
    """

    def __init__(self):
        self.state = ScanState.OUTSIDE_STRING

    @property
    def ended_inside_string(self) -> bool:
        return self.state is not ScanState.OUTSIDE_STRING

    def repair(self, text: str) -> str:
        self.state = ScanState.OUTSIDE_STRING
        out: List[str] = []

        for i, ch in enumerate(text):
            if self.state is ScanState.OUTSIDE_STRING:
                if ch == '"':
                    self.state = ScanState.INSIDE_STRING
                out.append(ch)

            elif self.state is ScanState.INSIDE_STRING:
                if ch == '\\':
                    self.state = ScanState.INSIDE_ESCAPE
                elif ch == '"':
                    self.state = ScanState.OUTSIDE_STRING
                    out.append(ch)
                elif ord(ch) < 0x20:
                    out.append(_escape_control(ch))
                else:
                    out.append(ch)

            else:
                if ch in VALID_ESCAPES:
                    out.append('\\' + ch)
                elif ch == 'u' and len(text) >= i + 5 and all(c in HEX_DIGITS for c in text[i + 1:i + 5]):
                    out.append('\\u')
                elif ord(ch) < 0x20:
                    out.append('\\\\' + _escape_control(ch))
                else:
                    out.append('\\\\' + ch)
                self.state = ScanState.INSIDE_STRING

        if self.state is ScanState.INSIDE_ESCAPE:
            self.state = ScanState.INSIDE_STRING
        return ''.join(out)


def repair_escapes(text: str) -> str:
    """Run the escape-repair scanner over text"""
    return EscapeRepairScanner().repair(text)


def strip_reasoning(text: str) -> str:
    """Drop <think>...</think> style sections emitted before the answer"""
    return REASONING_PATTERN.sub('', text)


def strip_comments(text: str) -> str:
    """Remove // and /* */ comments that sit outside string literals"""
    out: List[str] = []
    state = ScanState.OUTSIDE_STRING
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if state is ScanState.OUTSIDE_STRING:
            if ch == '/' and text.startswith('//', i):
                end = text.find('\n', i)
                i = n if end == -1 else end
                continue
            if ch == '/' and text.startswith('/*', i):
                end = text.find('*/', i + 2)
                i = n if end == -1 else end + 2
                continue
            if ch == '"':
                state = ScanState.INSIDE_STRING
        elif state is ScanState.INSIDE_STRING:
            if ch == '\\':
                state = ScanState.INSIDE_ESCAPE
            elif ch == '"':
                state = ScanState.OUTSIDE_STRING
        else:
            state = ScanState.INSIDE_STRING
        out.append(ch)
        i += 1
    return ''.join(out)


def strip_trailing_commas(text: str) -> str:
    """Remove commas that directly precede a closing bracket or brace"""
    out: List[str] = []
    state = ScanState.OUTSIDE_STRING
    n = len(text)
    for i, ch in enumerate(text):
        if state is ScanState.OUTSIDE_STRING:
            if ch == ',':
                j = i + 1
                while j < n and text[j].isspace():
                    j += 1
                if j < n and text[j] in '}]':
                    continue
            elif ch == '"':
                state = ScanState.INSIDE_STRING
        elif state is ScanState.INSIDE_STRING:
            if ch == '\\':
                state = ScanState.INSIDE_ESCAPE
            elif ch == '"':
                state = ScanState.OUTSIDE_STRING
        else:
            state = ScanState.INSIDE_STRING
        out.append(ch)
    return ''.join(out)


def _scan_structure(text: str) -> Tuple[List[str], ScanState, int]:
    """Open-container stack, final scanner state and index of the last structural comma"""
    stack: List[str] = []
    state = ScanState.OUTSIDE_STRING
    last_comma = -1
    for i, ch in enumerate(text):
        if state is ScanState.OUTSIDE_STRING:
            if ch in '{[':
                stack.append(ch)
            elif ch == '}' and stack and stack[-1] == '{':
                stack.pop()
            elif ch == ']' and stack and stack[-1] == '[':
                stack.pop()
            elif ch == ',':
                last_comma = i
            elif ch == '"':
                state = ScanState.INSIDE_STRING
        elif state is ScanState.INSIDE_STRING:
            if ch == '\\':
                state = ScanState.INSIDE_ESCAPE
            elif ch == '"':
                state = ScanState.OUTSIDE_STRING
        else:
            state = ScanState.INSIDE_STRING
    return stack, state, last_comma


def _close_containers(text: str) -> str:
    stack, state, _ = _scan_structure(text)
    if state is not ScanState.OUTSIDE_STRING:
        text += '"'
        stack, _, _ = _scan_structure(text)
    else:
        text = re.sub(r'[,\s]+$', '', text)
        if text.endswith(':'):
            text += ' null'
    return text + ''.join('}' if c == '{' else ']' for c in reversed(stack))


def close_truncated(text: str) -> str:
    """Close a document cut off mid-stream: finish the open string, then every open container"""
    repaired = repair_escapes(text.rstrip())
    return _close_containers(repaired)


def trim_to_last_member(text: str) -> Optional[str]:
    """Cut a truncated document back to its last complete member and close it"""
    repaired = repair_escapes(text.rstrip())
    _, _, last_comma = _scan_structure(repaired)
    if last_comma == -1:
        return None
    return _close_containers(repaired[:last_comma])


_NOT_PARSED = object()


def _try_parse(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, TypeError):
        return _NOT_PARSED


def fenced_json_candidates(text: str) -> List[str]:
    """Bodies of json, jsonc or bare fences that look like a document.

    Code inside a JSON string can carry its own fences, so every later fence
    is tried as the closer, nearest first. A body cut at an inner fence ends
    inside a string and never parses.
    """
    fences = list(FENCE_PATTERN.finditer(text))
    candidates: List[str] = []
    for i, opener in enumerate(fences):
        if opener.group(1).lower() not in JSON_FENCE_TAGS:
            continue
        for closer in fences[i + 1:]:
            body = text[opener.end():closer.start()].strip()
            if body[:1] in ('{', '[') and body not in candidates:
                candidates.append(body)
    return candidates


class OutputRecoveryParser:
    """Cascade of increasingly aggressive heuristics over near-JSON text"""

    def recover(self, raw: str) -> Any:
        """Return the parsed value, or the cleaned text when every stage fails"""
        if raw is None:
            return ''
        if not isinstance(raw, str):
            return raw

        # Stage 1: reasoning sections
        cleaned = strip_reasoning(raw).strip()

        # Stage 2: direct parse
        value = _try_parse(cleaned)
        if value is not _NOT_PARSED:
            return value

        # Stage 3: fenced code blocks
        fenced = fenced_json_candidates(cleaned)
        for body in fenced:
            value = _try_parse(body)
            if value is not _NOT_PARSED:
                logger.debug("🧩 Recovered JSON from fenced block")
                return value

        # Stages 4-6 work on the outer slice of the whole text, then on each fenced body
        document = self._document_slice(cleaned)
        candidates = [document or cleaned] + [body for body in fenced if body != document]

        # Stage 4: outer slice
        if document is not None:
            value = _try_parse(document)
            if value is not _NOT_PARSED:
                logger.debug("🧩 Recovered JSON from outer slice")
                return value

        # Stage 5: escape repair
        for candidate in candidates:
            value = _try_parse(repair_escapes(candidate))
            if value is not _NOT_PARSED:
                logger.debug("🧩 Recovered JSON after escape repair")
                return value

        # Stage 6: trailing commas and comments, then escape repair again
        for candidate in candidates:
            value = _try_parse(repair_escapes(strip_trailing_commas(strip_comments(candidate))))
            if value is not _NOT_PARSED:
                logger.debug("🧩 Recovered JSON after comma/comment cleanup")
                return value

        # Stage 7: truncated input, from the document's first opener to the end
        truncated = self._truncation_source(cleaned)
        if truncated is not None:
            value = _try_parse(close_truncated(truncated))
            if value is not _NOT_PARSED:
                logger.info("🩹 Recovered truncated JSON by closing open containers")
                return value
            trimmed = trim_to_last_member(truncated)
            if trimmed is not None:
                value = _try_parse(trimmed)
                if value is not _NOT_PARSED:
                    logger.info("🩹 Recovered truncated JSON by trimming to the last complete member")
                    return value

        # Stage 8: give up, hand back the cleaned text
        logger.warning(f"⚠️ All recovery stages failed (length={len(cleaned)})")
        return cleaned

    @staticmethod
    def _document_start(text: str) -> int:
        """Index of the opener the document starts at, or -1.

        A '[' only counts when it opens a line ahead of the first '{', so a
        bracket in leading prose never hides the object behind it.
        """
        first_brace = text.find('{')
        array = LEADING_ARRAY_PATTERN.search(text)
        if array and (first_brace == -1 or array.end() - 1 < first_brace):
            return array.end() - 1
        return first_brace

    def _document_slice(self, text: str) -> Optional[str]:
        start = self._document_start(text)
        if start == -1:
            return None
        end = text.rfind(']' if text[start] == '[' else '}')
        if end <= start:
            return None
        return text[start:end + 1]

    def _truncation_source(self, text: str) -> Optional[str]:
        start = self._document_start(text)
        if start == -1:
            return None
        return text[start:]


def _match_balanced(text: str, start: int, string_aware: bool) -> int:
    """Index of the brace closing the one at ``start``, or -1"""
    depth = 0
    state = ScanState.OUTSIDE_STRING
    for i in range(start, len(text)):
        ch = text[i]
        if string_aware and state is ScanState.INSIDE_STRING:
            if ch == '\\':
                state = ScanState.INSIDE_ESCAPE
            elif ch == '"':
                state = ScanState.OUTSIDE_STRING
            continue
        if string_aware and state is ScanState.INSIDE_ESCAPE:
            state = ScanState.INSIDE_STRING
            continue
        if ch == '"' and string_aware:
            state = ScanState.INSIDE_STRING
        elif ch == '{':
            depth += 1
        elif ch == '}':
            depth -= 1
            if depth == 0:
                return i
    return -1


def extract_section(raw: str, key: str = "files") -> Optional[Dict[str, Any]]:
    """Pull one object-valued key straight out of raw text.

    Used when the surrounding document cannot be salvaged but the substructure
    under ``key`` is still well-formed: locate the key, its colon and the
    opening brace, match braces to the close, and parse only that span.
    """
    if not raw:
        return None
    marker = f'"{key}"'
    idx = raw.find(marker)
    while idx != -1:
        after = idx + len(marker)
        colon = raw.find(':', after)
        if colon != -1 and not raw[after:colon].strip():
            brace = raw.find('{', colon)
            if brace != -1 and not raw[colon + 1:brace].strip():
                for string_aware in (True, False):
                    end = _match_balanced(raw, brace, string_aware)
                    if end == -1:
                        continue
                    value = _try_parse(repair_escapes(raw[brace:end + 1]))
                    if isinstance(value, dict) and value:
                        return value
        idx = raw.find(marker, idx + 1)
    return None


def looks_like_file_map(value: Any) -> bool:
    """A bare {"/path": {"code": ...}} document without the artifact wrapper"""
    if not isinstance(value, dict) or not value:
        return False
    keys = list(value.keys())
    return (any(str(k).startswith('/') for k in keys)
            and any(isinstance(value[k], dict) and value[k].get('code') for k in keys))


def parse_project_artifact(text: str, parser: OutputRecoveryParser = None) -> Optional[Dict[str, Any]]:
    """Recover a {projectTitle, explanation, files} document, or None"""
    if not text:
        return None
    parser = parser or OutputRecoveryParser()
    value = parser.recover(text)

    if isinstance(value, dict):
        files = value.get('files')
        if isinstance(files, dict) and files:
            return value
        if looks_like_file_map(value):
            return {'projectTitle': DEFAULT_PROJECT_TITLE, 'explanation': '', 'files': value}

    files = extract_section(strip_reasoning(text), "files")
    if files:
        logger.info(f"🩹 Recovered {len(files)} file(s) from the raw files section")
        return {'projectTitle': DEFAULT_PROJECT_TITLE, 'explanation': '', 'files': files}

    logger.warning(f"❌ Could not recover a project artifact from {len(text)} chars")
    return None


def clean_code_response(text: str) -> str:
    """Reduce a single-file response to raw source: drop reasoning, prose and fences"""
    if not text:
        return ''
    cleaned = strip_reasoning(text).strip()

    blocks = FENCED_CODE_PATTERN.findall(cleaned)
    if cleaned.startswith('```') or len(blocks) == 1:
        if blocks:
            return max(blocks, key=len).strip()
        # Opening fence with no close: the response was truncated
        first_newline = cleaned.find('\n')
        return cleaned[first_newline + 1:].strip() if first_newline != -1 else ''
    return cleaned
