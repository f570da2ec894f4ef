"""Header and BODYSTRUCTURE parsing for IMAP FETCH responses.

Only headers and the MIME structure are fetched when listing messages;
part bodies are pulled later, one at a time, for the parts we keep.
"""

from __future__ import annotations

import email.parser
import re
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from typing import Any
from urllib.parse import unquote

from .models import MimePart

_TOKEN = re.compile(r'\(|\)|"(?:[^"\\]|\\.)*"|[^\s()"]+')
_LITERAL_SUFFIX = re.compile(rb"\{(\d+)\}$")
_ESCAPE = re.compile(r"\\(.)")

# Index of the disposition field in a non-multipart body
_DISPOSITION_INDEX = {"text": 9, "message/rfc822": 11}
_DEFAULT_DISPOSITION_INDEX = 8


# ------------------------------------------------------------------
# Headers
# ------------------------------------------------------------------


def decode_header_value(value: str | None) -> str:
    """Decode RFC 2047 encoded words; fall back to the raw value."""
    if not value:
        return ""
    try:
        return str(make_header(decode_header(value)))
    except (HeaderParseError, LookupError, UnicodeDecodeError):
        return value


def extract_envelope(header_bytes: bytes) -> dict[str, str]:
    """Extract subject, sender, date and Message-ID from raw header bytes."""
    parser = email.parser.BytesHeaderParser()
    headers = parser.parsebytes(header_bytes)

    return {
        "message_id": (headers.get("Message-ID") or "").strip(),
        "subject": decode_header_value(headers.get("Subject")),
        "from": decode_header_value(headers.get("From")),
        "date": (headers.get("Date") or "").strip(),
    }


# ------------------------------------------------------------------
# FETCH response tokenizer
# ------------------------------------------------------------------


def flatten_fetch_data(data: list[Any]) -> str:
    """Join imaplib FETCH data into one string.

    imaplib splits a response at every literal (``{n}``) into a
    ``(head, literal)`` tuple.  Literals are re-inserted as quoted
    strings so the result can be tokenized in one pass.
    """
    chunks: list[str] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, tuple):
            head, literal = item[0], item[1]
            head = _LITERAL_SUFFIX.sub(b"", head)
            chunks.append(head.decode("utf-8", errors="replace"))
            text = literal.decode("utf-8", errors="replace")
            chunks.append('"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"')
        else:
            chunks.append(item.decode("utf-8", errors="replace"))
    return "".join(chunks)


def parse_list(text: str) -> list[Any]:
    """Parse IMAP parenthesized data into nested lists.

    Quoted strings become ``str``, ``NIL`` becomes ``None`` and other
    atoms are kept as ``str``.
    """
    stack: list[list[Any]] = [[]]
    for match in _TOKEN.finditer(text):
        token = match.group()
        if token == "(":
            stack.append([])
        elif token == ")":
            if len(stack) == 1:
                raise ValueError("unbalanced ')' in IMAP response")
            done = stack.pop()
            stack[-1].append(done)
        elif token.startswith('"'):
            stack[-1].append(_ESCAPE.sub(r"\1", token[1:-1]))
        elif token.upper() == "NIL":
            stack[-1].append(None)
        else:
            stack[-1].append(token)
    if len(stack) != 1:
        raise ValueError("unbalanced '(' in IMAP response")
    return stack[0]


def find_item(response: list[Any], name: str) -> Any:
    """Return the value following *name* in a FETCH attribute list."""
    for node in response:
        if isinstance(node, list):
            for i, key in enumerate(node[:-1]):
                if isinstance(key, str) and key.upper() == name:
                    return node[i + 1]
    raise KeyError(name)


# ------------------------------------------------------------------
# BODYSTRUCTURE
# ------------------------------------------------------------------


def _pairs(node: Any) -> dict[str, str]:
    if not isinstance(node, list):
        return {}
    it = iter(node)
    return {str(k).lower(): v for k, v in zip(it, it) if k is not None and isinstance(v, str)}


def _param(params: dict[str, str], name: str) -> str | None:
    """Read a parameter, joining RFC 2231 continuations."""
    if params.get(name):
        return params[name]
    if params.get(f"{name}*"):
        return _decode_rfc2231(params[f"{name}*"], encoded=True)

    segments: list[tuple[int, str, bool]] = []
    prefix = f"{name}*"
    for key, value in params.items():
        if not key.startswith(prefix):
            continue
        index = key[len(prefix):]
        encoded = index.endswith("*")
        index = index.rstrip("*")
        if index.isdigit():
            segments.append((int(index), value, encoded))
    if not segments:
        return None
    segments.sort()
    encoded = segments[0][2]
    return _decode_rfc2231("".join(v for _, v, _ in segments), encoded=encoded)


def _decode_rfc2231(value: str, *, encoded: bool) -> str:
    if not encoded:
        return value
    parts = value.split("'", 2)
    if len(parts) != 3:
        return unquote(value)
    charset = parts[0] or "us-ascii"
    try:
        return unquote(parts[2], encoding=charset, errors="replace")
    except LookupError:
        return unquote(parts[2])


def _leaf(node: list[Any], part_id: str) -> MimePart:
    maintype = str(node[0] or "").lower()
    subtype = str(node[1] or "").lower() if len(node) > 1 else ""
    content_type = f"{maintype}/{subtype}"
    params = _pairs(node[2]) if len(node) > 2 else {}
    encoding = str(node[5] or "7bit").lower() if len(node) > 5 else "7bit"
    size = int(node[6]) if len(node) > 6 and str(node[6]).isdigit() else 0

    index = _DISPOSITION_INDEX.get(content_type, _DISPOSITION_INDEX.get(maintype, _DEFAULT_DISPOSITION_INDEX))
    disposition = None
    disposition_params: dict[str, str] = {}
    if len(node) > index and isinstance(node[index], list) and node[index]:
        disposition = str(node[index][0] or "").lower() or None
        if len(node[index]) > 1:
            disposition_params = _pairs(node[index][1])

    filename = _param(disposition_params, "filename") or _param(params, "name")
    return MimePart(
        part_id=part_id,
        content_type=content_type,
        disposition=disposition,
        filename=filename,
        encoding=encoding,
        charset=params.get("charset"),
        size=size,
    )


def parse_bodystructure(structure: list[Any]) -> tuple[MimePart, ...]:
    """Flatten a parsed BODYSTRUCTURE into leaf parts with IMAP part ids.

    A single-part message has one part, ``"1"``.  Children of a
    multipart are numbered from 1 and nested ids are dot-separated
    (``"2.1"``).  ``message/rfc822`` parts are kept as leaves.
    """
    parts: list[MimePart] = []
    _walk(structure, "", parts)
    return tuple(parts)


def _walk(node: list[Any], prefix: str, parts: list[MimePart]) -> None:
    if node and isinstance(node[0], list):
        index = 1
        for child in node:
            if not isinstance(child, list):
                break
            _walk(child, f"{prefix}.{index}" if prefix else str(index), parts)
            index += 1
        return
    parts.append(_leaf(node, prefix or "1"))


def bodystructure_from_fetch(data: list[Any]) -> tuple[MimePart, ...]:
    """Parse the parts out of a ``UID FETCH <uid> (BODYSTRUCTURE)`` response."""
    response = parse_list(flatten_fetch_data(data))
    return parse_bodystructure(find_item(response, "BODYSTRUCTURE"))
