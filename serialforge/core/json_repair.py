"""
Structured-output repair for SerialForge

Generative providers often wrap JSON in prose or markdown fences, or cut it off
mid-object when they hit their output limit. This module is the single parsing
stage for such output: raw text in, parsed structure or None out. Business logic
never does its own bracket fixing.

Extraction order:
1. Direct json.loads
2. Fenced code block (```json / ```)
3. raw_decode starting at the earliest { or [
4. Balanced-bracket slice
5. Prepend { when the text starts with a bare "key":
6. Truncation repair (close strings, drop dangling keys and commas,
   close brackets in nesting order)
"""

import json
import logging
import re
from typing import Any, List, Optional, Tuple

logger = logging.getLogger("serialforge.json")

_CLOSERS = {"{": "}", "[": "]"}
_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)(?:```|$)")
_DANGLING_KEY_RE = re.compile(r',?\s*"(?:[^"\\]|\\.)*"\s*:\s*$')
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")


def parse_json(text: Optional[str]) -> Optional[Any]:
    """Parse possibly-malformed JSON returned by a generative provider.

    Returns the parsed value, or None when every strategy fails. A single
    element array wrapping an object is unwrapped to the object.
    """
    if not text or not text.strip():
        logger.warning("[parse_json] Empty text provided")
        return None

    preview = text[:300] + "..." if len(text) > 300 else text
    logger.debug(f"[parse_json] Attempting to parse text (len={len(text)}): {preview}")

    for method in (
        _parse_direct,
        _parse_code_block,
        _parse_raw_decode,
        _parse_balanced,
        _parse_prepended_brace,
        _parse_repaired,
    ):
        result = method(text)
        if result is not None:
            logger.debug(f"[parse_json] {method.__name__} succeeded")
            return _unwrap(result)

    logger.warning(f"[parse_json] All extraction methods failed for text (len={len(text)})")
    return None


def parse_json_object(text: Optional[str]) -> Optional[dict]:
    """Like parse_json but only accepts an object."""
    result = parse_json(text)
    return result if isinstance(result, dict) else None


def parse_json_list(text: Optional[str], key: Optional[str] = None) -> List[Any]:
    """Parse a JSON array, or the array stored under ``key`` of an object.

    A bare object (including a one-element array that parse_json unwrapped)
    is returned as a single entry. Anything else yields an empty list.
    """
    result = parse_json(text)
    if isinstance(result, dict):
        if key is not None and key in result:
            result = result[key]
        else:
            return [result]
    if isinstance(result, list):
        return result
    return []


def repair_truncated_json(raw: str) -> str:
    """Best-effort completion of JSON that was cut off mid-stream."""
    s = _strip_line_comments(raw.strip())

    _, in_string = _scan(s)
    if in_string:
        s += '"'

    # Peel dangling tokens until the tail is stable
    previous = None
    while previous != s:
        previous = s
        s = s.rstrip()
        s = _DANGLING_KEY_RE.sub("", s)
        s = s.rstrip().rstrip(",")
        stack, _ = _scan(s)
        if stack and stack[-1] == "{":
            s = _strip_dangling_object_key(s)

    s = _TRAILING_COMMA_RE.sub(r"\1", s)

    stack, _ = _scan(s)
    s += "".join(_CLOSERS[opener] for opener in reversed(stack))
    return s


def _unwrap(result: Any) -> Any:
    if isinstance(result, list) and len(result) == 1 and isinstance(result[0], dict):
        return result[0]
    return result


def _parse_direct(text: str) -> Optional[Any]:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return None


def _parse_code_block(text: str) -> Optional[Any]:
    if "```" not in text:
        return None
    match = _FENCE_RE.search(text)
    if not match:
        return None
    body = match.group(1).strip()
    try:
        return json.loads(body)
    except json.JSONDecodeError:
        pass
    try:
        return json.loads(repair_truncated_json(body))
    except json.JSONDecodeError:
        return None


def _parse_raw_decode(text: str) -> Optional[Any]:
    decoder = json.JSONDecoder()
    # Earliest opener first, so an array is not decoded as its first element
    starts = sorted(p for p in (text.find("{"), text.find("[")) if p >= 0)
    for start_idx in starts:
        try:
            result, _ = decoder.raw_decode(text[start_idx:])
            return result
        except json.JSONDecodeError:
            if text[start_idx] == "{":
                # A later [ sits inside this truncated object; leave it to repair
                break
    return None


def _parse_balanced(text: str) -> Optional[Any]:
    start = _first_opener(text)
    if start < 0:
        return None
    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(text)):
        ch = text[i]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
            if depth == 0:
                try:
                    return json.loads(text[start:i + 1])
                except json.JSONDecodeError:
                    return None
    return None


def _parse_prepended_brace(text: str) -> Optional[Any]:
    stripped = text.strip()
    if not (stripped.startswith('"') and '":' in stripped[:50]):
        return None
    wrapped = "{" + stripped
    try:
        return json.loads(repair_truncated_json(wrapped))
    except json.JSONDecodeError:
        return None


def _parse_repaired(text: str) -> Optional[Any]:
    start = _first_opener(text)
    if start < 0:
        return None
    candidate = text[start:]
    try:
        return json.loads(repair_truncated_json(candidate))
    except json.JSONDecodeError as e:
        logger.debug(f"[parse_json] Truncation repair failed: {e}")
        return None


def _first_opener(text: str) -> int:
    positions = [p for p in (text.find("{"), text.find("[")) if p >= 0]
    return min(positions) if positions else -1


def _scan(s: str) -> Tuple[List[str], bool]:
    """Return the stack of unclosed openers and whether a string is open."""
    stack: List[str] = []
    in_string = False
    escape = False
    for ch in s:
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            stack.append(ch)
        elif ch in "}]" and stack:
            stack.pop()
    return stack, in_string


def _strip_line_comments(s: str) -> str:
    out = []
    in_string = False
    escape = False
    i = 0
    while i < len(s):
        ch = s[i]
        if escape:
            escape = False
        elif ch == "\\" and in_string:
            escape = True
        elif ch == '"':
            in_string = not in_string
        elif not in_string and s.startswith("//", i):
            newline = s.find("\n", i)
            if newline < 0:
                break
            i = newline
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _strip_dangling_object_key(s: str) -> str:
    """Drop a bare key with no colon at the end of an open object."""
    match = re.search(r'([{,])\s*"(?:[^"\\]|\\.)*"\s*$', s)
    if not match:
        return s
    return s[:match.start()] + (match.group(1) if match.group(1) == "{" else "")
