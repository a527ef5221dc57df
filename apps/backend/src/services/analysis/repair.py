"""Best-effort repair of truncated or sloppy JSON produced by language models.

Typical defects in a model's JSON block are trailing commas, brackets that
were never closed and strings cut off mid-way when the stream stops. The
repair works on a token list rather than on raw text so that characters
inside string literals are never touched.
"""

from __future__ import annotations

import json
import re
from typing import Any


_PUNCTUATION = frozenset("{}[]:,")
_LITERALS = ("true", "false", "null")
_CLOSERS = {"{": "}", "[": "]"}
_PARTIAL_UNICODE_ESCAPE = re.compile(r"(\\+)u[0-9a-fA-F]{0,3}$")


def _close_string(fragment: str) -> str:
    """Terminate a string literal that was cut off mid-way."""
    match = _PARTIAL_UNICODE_ESCAPE.search(fragment)
    if match and len(match.group(1)) % 2 == 1:
        fragment = fragment[: match.end(1) - 1]
    trailing = len(fragment) - len(fragment.rstrip("\\"))
    if trailing % 2 == 1:
        fragment = fragment[:-1]
    return fragment + '"'


def _complete_word(word: str) -> str | None:
    """Finish a literal or number the stream stopped in the middle of."""
    if word in _LITERALS:
        return word
    for literal in _LITERALS:
        if literal.startswith(word):
            return literal
    trimmed = word.rstrip("+-.eE")
    return trimmed or None


def _tokenize(text: str) -> tuple[list[str], bool]:
    """Split ``text`` into JSON tokens.

    Returns the tokens and whether the final token was a string literal
    that had to be closed artificially.
    """
    tokens: list[str] = []
    i, n = 0, len(text)
    while i < n:
        ch = text[i]
        if ch.isspace():
            i += 1
            continue
        if ch in _PUNCTUATION:
            tokens.append(ch)
            i += 1
            continue
        if ch == '"':
            j = i + 1
            escaped = False
            while j < n:
                c = text[j]
                if escaped:
                    escaped = False
                elif c == "\\":
                    escaped = True
                elif c == '"':
                    break
                j += 1
            if j >= n:
                tokens.append(_close_string(text[i:]))
                return tokens, True
            tokens.append(text[i : j + 1])
            i = j + 1
            continue
        j = i
        while j < n and not text[j].isspace() and text[j] not in _PUNCTUATION and text[j] != '"':
            j += 1
        word = text[i:j]
        if j >= n:
            completed = _complete_word(word)
            if completed is not None:
                tokens.append(completed)
        else:
            tokens.append(word)
        i = j
    return tokens, False


def repair_json(text: str, *, allow_open_string: bool = True) -> str | None:
    """Return a repaired copy of ``text`` or None when it cannot be fixed.

    Fixes applied:
    - commas directly before a closing bracket or at the very end are dropped
    - a key left without a value (``{"a": 1, "b":``) is dropped
    - an unterminated final string is closed, discarding a dangling escape
    - partially streamed literals (``tru``, ``12.``) are completed or trimmed
    - every bracket still open at the end is closed in order

    With ``allow_open_string=False`` the repair gives up when the text ends
    inside a string literal. Mid-stream, a fence marker met inside a string
    is far more likely to be content than the end of the block.
    """
    tokens, closed_string = _tokenize(text)
    if closed_string and not allow_open_string:
        return None

    out: list[str] = []
    is_key: list[bool] = []
    stack: list[str] = []
    for token in tokens:
        if token in ("}", "]"):
            while out and out[-1] == ",":
                out.pop()
                is_key.pop()
            if not stack or stack[-1] != token:
                return None
            stack.pop()
            out.append(token)
            is_key.append(False)
            continue
        if token in _CLOSERS:
            stack.append(_CLOSERS[token])
        key = (
            token.startswith('"')
            and bool(stack)
            and stack[-1] == "}"
            and (not out or out[-1] in ("{", ","))
        )
        out.append(token)
        is_key.append(key)

    # Trim whatever dangles after the last complete value
    while out:
        if out[-1] == ",":
            out.pop()
            is_key.pop()
        elif out[-1] == ":":
            out.pop()
            is_key.pop()
            if out and is_key[-1]:
                out.pop()
                is_key.pop()
        elif is_key[-1]:
            out.pop()
            is_key.pop()
        else:
            break

    if not out:
        return None
    out.extend(reversed(stack))
    return " ".join(out)


def loads_tolerant(text: str, *, allow_open_string: bool = True) -> tuple[Any, bool]:
    """Parse ``text`` strictly, falling back to :func:`repair_json`.

    Returns ``(value, repaired)``. Raises ``ValueError`` when neither the
    strict nor the repaired parse yields a JSON object or array.
    """
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        pass
    else:
        if isinstance(value, dict | list):
            return value, False
        raise ValueError("JSON block does not contain an object or array")

    repaired = repair_json(text, allow_open_string=allow_open_string)
    if repaired is None:
        raise ValueError("JSON block could not be repaired")
    value = json.loads(repaired)
    if not isinstance(value, dict | list):
        raise ValueError("JSON block does not contain an object or array")
    return value, True
