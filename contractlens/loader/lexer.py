"""Tokenizer for Rust contract sources and rule patterns.

In pattern mode ``$NAME`` is emitted as a METAVAR token; ``...`` is always
emitted as ELLIPSIS. ``>`` is never merged with a following ``>`` or ``=``
so that nested generics (``Vec<Vec<u8>>``) need no token splitting; the
expression parser re-joins adjacent ``>`` tokens into shift/compare
operators.
"""

from __future__ import annotations

from enum import Enum
from typing import NamedTuple

from contractlens.core.errors import ParseError


class TokenKind(str, Enum):
    IDENT = "ident"
    LIFETIME = "lifetime"
    INT = "int"
    FLOAT = "float"
    STR = "str"
    BYTES = "bytes"
    CHAR = "char"
    PUNCT = "punct"
    METAVAR = "metavar"
    ELLIPSIS = "ellipsis"
    UNKNOWN = "unknown"
    EOF = "eof"


class Token(NamedTuple):
    kind: TokenKind
    text: str
    start: int
    end: int


_PUNCT = (
    "..=", "<<=", "...",
    "::", "->", "=>", "==", "!=", "<=", "&&", "||",
    "+=", "-=", "*=", "/=", "%=", "^=", "&=", "|=", "<<", "..",
)
_SINGLE = set("+-*/%^!&|=<>@.,;:#$?~{}[]()")

_INT_SUFFIXES = (
    "u128", "i128", "usize", "isize", "u64", "i64", "u32", "i32", "u16", "i16", "u8", "i8",
)


def _is_ident_start(ch: str) -> bool:
    return ch == "_" or ch.isalpha()


def _is_ident_char(ch: str) -> bool:
    return ch == "_" or ch.isalnum()


def tokenize(text: str, *, pattern_mode: bool = False, file: str = "") -> list[Token]:
    """Split ``text`` into tokens; comments and whitespace are dropped.

    Raises ParseError for unterminated strings or block comments.
    """
    tokens: list[Token] = []
    pos = 0
    n = len(text)

    def fail(message: str, at: int) -> ParseError:
        return ParseError(message, file=file, line=text.count("\n", 0, at) + 1)

    while pos < n:
        ch = text[pos]

        if ch.isspace():
            pos += 1
            continue

        if text.startswith("//", pos):
            newline = text.find("\n", pos)
            pos = n if newline < 0 else newline + 1
            continue

        if text.startswith("/*", pos):
            depth = 0
            scan = pos
            while scan < n:
                if text.startswith("/*", scan):
                    depth += 1
                    scan += 2
                elif text.startswith("*/", scan):
                    depth -= 1
                    scan += 2
                    if depth == 0:
                        break
                else:
                    scan += 1
            if depth != 0:
                raise fail("unterminated block comment", pos)
            pos = scan
            continue

        # Raw / byte string prefixes must be checked before identifiers.
        if ch in "rb":
            string_end = _scan_prefixed_string(text, pos)
            if string_end == -1:
                raise fail("unterminated string literal", pos)
            if string_end is not None:
                kind = TokenKind.BYTES if ch == "b" else TokenKind.STR
                if text.startswith("b'", pos):
                    kind = TokenKind.INT
                tokens.append(Token(kind, text[pos:string_end], pos, string_end))
                pos = string_end
                continue
            if text.startswith("r#", pos) and pos + 2 < n and _is_ident_start(text[pos + 2]):
                end = pos + 2
                while end < n and _is_ident_char(text[end]):
                    end += 1
                tokens.append(Token(TokenKind.IDENT, text[pos + 2:end], pos, end))
                pos = end
                continue

        if _is_ident_start(ch):
            end = pos + 1
            while end < n and _is_ident_char(text[end]):
                end += 1
            tokens.append(Token(TokenKind.IDENT, text[pos:end], pos, end))
            pos = end
            continue

        if ch.isdigit():
            after_dot = bool(tokens) and tokens[-1].text == "." and tokens[-1].end == pos
            end, kind = _scan_number(text, pos, integer_only=after_dot)
            tokens.append(Token(kind, text[pos:end], pos, end))
            pos = end
            continue

        if ch == '"':
            end = _scan_quoted(text, pos + 1, '"')
            if end < 0:
                raise fail("unterminated string literal", pos)
            tokens.append(Token(TokenKind.STR, text[pos:end], pos, end))
            pos = end
            continue

        if ch == "'":
            char_end = _scan_char(text, pos)
            if char_end is not None:
                tokens.append(Token(TokenKind.CHAR, text[pos:char_end], pos, char_end))
                pos = char_end
                continue
            end = pos + 1
            while end < n and _is_ident_char(text[end]):
                end += 1
            tokens.append(Token(TokenKind.LIFETIME, text[pos:end], pos, end))
            pos = end
            continue

        if ch == "$" and pattern_mode and pos + 1 < n and _is_ident_start(text[pos + 1]):
            end = pos + 1
            while end < n and _is_ident_char(text[end]):
                end += 1
            tokens.append(Token(TokenKind.METAVAR, text[pos:end], pos, end))
            pos = end
            continue

        if text.startswith("...", pos):
            tokens.append(Token(TokenKind.ELLIPSIS, "...", pos, pos + 3))
            pos += 3
            continue

        matched = next((p for p in _PUNCT if text.startswith(p, pos)), None)
        if matched:
            tokens.append(Token(TokenKind.PUNCT, matched, pos, pos + len(matched)))
            pos += len(matched)
            continue

        if ch in _SINGLE:
            tokens.append(Token(TokenKind.PUNCT, ch, pos, pos + 1))
            pos += 1
            continue

        tokens.append(Token(TokenKind.UNKNOWN, ch, pos, pos + 1))
        pos += 1

    tokens.append(Token(TokenKind.EOF, "", n, n))
    return tokens


def _scan_quoted(text: str, pos: int, quote: str) -> int:
    """Return the offset after the closing quote, or -1."""
    n = len(text)
    while pos < n:
        ch = text[pos]
        if ch == "\\":
            pos += 2
            continue
        if ch == quote:
            return pos + 1
        pos += 1
    return -1


def _scan_prefixed_string(text: str, pos: int) -> int | None:
    """Scan r"..", r#".."#, b"..", br"..", b'x'. None if not a string here."""
    n = len(text)
    scan = pos
    if text[scan] == "b":
        scan += 1
        if scan < n and text[scan] == "'":
            end = _scan_char(text, scan)
            return end if end is not None else None
        if scan < n and text[scan] == '"':
            return _scan_quoted(text, scan + 1, '"')
    if scan < n and text[scan] == "r":
        scan += 1
        hashes = 0
        while scan < n and text[scan] == "#":
            hashes += 1
            scan += 1
        if scan < n and text[scan] == '"':
            closing = '"' + "#" * hashes
            end = text.find(closing, scan + 1)
            if end < 0:
                return -1
            return end + len(closing)
    return None


def _scan_char(text: str, pos: int) -> int | None:
    """Scan a char literal starting at the quote; None if it is a lifetime."""
    n = len(text)
    if pos + 2 < n and text[pos + 1] == "\\":
        end = text.find("'", pos + 2)
        if end < 0 or end - pos > 12:
            return None
        return end + 1
    if pos + 2 < n and text[pos + 2] == "'":
        return pos + 3
    return None


def _scan_number(text: str, pos: int, *, integer_only: bool) -> tuple[int, TokenKind]:
    n = len(text)
    end = pos
    if text.startswith(("0x", "0o", "0b"), pos):
        end = pos + 2
        while end < n and (text[end].isalnum() or text[end] == "_"):
            end += 1
        return end, TokenKind.INT

    while end < n and (text[end].isdigit() or text[end] == "_"):
        end += 1
    kind = TokenKind.INT
    if integer_only:
        return end, kind

    if end + 1 < n and text[end] == "." and text[end + 1].isdigit():
        kind = TokenKind.FLOAT
        end += 1
        while end < n and (text[end].isdigit() or text[end] == "_"):
            end += 1
    elif end < n and text[end] == "." and not (
        end + 1 < n and (text[end + 1] == "." or _is_ident_start(text[end + 1]))
    ):
        # ``1.`` is a float literal; ``1..2`` and ``1.max(2)`` are not.
        return end + 1, TokenKind.FLOAT

    if end < n and text[end] in "eE":
        exp = end + 1
        if exp < n and text[exp] in "+-":
            exp += 1
        if exp < n and text[exp].isdigit():
            kind = TokenKind.FLOAT
            end = exp
            while end < n and (text[end].isdigit() or text[end] == "_"):
                end += 1

    if end < n and _is_ident_start(text[end]):
        suffix_end = end
        while suffix_end < n and _is_ident_char(text[suffix_end]):
            suffix_end += 1
        suffix = text[end:suffix_end]
        if suffix in _INT_SUFFIXES or suffix in ("f32", "f64"):
            if suffix in ("f32", "f64"):
                kind = TokenKind.FLOAT
            end = suffix_end
    return end, kind


def canonical_int(text: str) -> str:
    """Canonical decimal form of an integer literal (``1_000u64`` -> ``1000``)."""
    body = text.replace("_", "")
    if body.startswith("b'"):
        return str(ord(_unescape(body[2:-1])[:1] or "\0"))
    # Suffixes start with u/i, which are never hex digits.
    for suffix in _INT_SUFFIXES:
        if body.endswith(suffix):
            body = body[: -len(suffix)]
            break
    try:
        if body[:2] in ("0x", "0X"):
            return str(int(body[2:], 16))
        if body[:2] in ("0o", "0O"):
            return str(int(body[2:], 8))
        if body[:2] in ("0b", "0B"):
            return str(int(body[2:], 2))
        return str(int(body))
    except ValueError:
        return text


def canonical_float(text: str) -> str:
    body = text.replace("_", "")
    for suffix in ("f32", "f64"):
        if body.endswith(suffix):
            body = body[: -len(suffix)]
    try:
        return repr(float(body))
    except ValueError:
        return text


_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0", "\\": "\\", "'": "'", '"': '"'}


def _unescape(body: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch != "\\" or i + 1 >= len(body):
            out.append(ch)
            i += 1
            continue
        nxt = body[i + 1]
        if nxt in _ESCAPES:
            out.append(_ESCAPES[nxt])
            i += 2
        elif nxt == "x" and i + 3 < len(body):
            out.append(chr(int(body[i + 2:i + 4], 16)))
            i += 4
        elif nxt == "u" and body[i + 2:i + 3] == "{":
            close = body.find("}", i)
            out.append(chr(int(body[i + 3:close].replace("_", ""), 16)))
            i = close + 1
        elif nxt == "\n":
            # Line continuation: skip the newline and leading whitespace.
            i += 2
            while i < len(body) and body[i] in " \t\n\r":
                i += 1
        else:
            out.append(nxt)
            i += 2
    return "".join(out)


def canonical_string(text: str) -> str:
    """Decoded contents of a (raw, byte or plain) string literal."""
    body = text
    if body.startswith("b"):
        body = body[1:]
    if body.startswith("r"):
        body = body[1:]
        hashes = len(body) - len(body.lstrip("#"))
        return body[hashes + 1: len(body) - hashes - 1]
    return _unescape(body[1:-1])


def canonical_char(text: str) -> str:
    return _unescape(text[1:-1])
