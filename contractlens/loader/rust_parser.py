"""Recursive-descent parser for Rust contract sources.

Produces ``RawNode`` trees with language-agnostic node kinds. The same
parser reads rule patterns (``pattern_mode=True``), where ``$X`` becomes a
``metavar`` node, ``...`` an ``ellipsis`` node, and omitted optional parts
of a function signature become ``wildcard`` nodes.

Unparseable items and statements are skipped up to the next ``;`` or
balanced ``}``; the skipped region becomes an ``error`` node and a
``parse-error`` diagnostic is recorded.
"""

from __future__ import annotations

from contractlens.core.types import Diagnostic, DiagnosticKind
from contractlens.loader.ast import ELLIPSIS, METAVAR, WILDCARD, RawNode
from contractlens.loader.lexer import (
    Token,
    TokenKind,
    canonical_char,
    canonical_float,
    canonical_int,
    canonical_string,
    tokenize,
)


MAX_NESTING = 64

_BINARY_PREC = {
    "||": 3,
    "&&": 4,
    "==": 5, "!=": 5, "<": 5, ">": 5, "<=": 5, ">=": 5,
    "|": 6,
    "^": 7,
    "&": 8,
    "<<": 9, ">>": 9,
    "+": 10, "-": 10,
    "*": 11, "/": 11, "%": 11,
    "as": 12,
    "@": 14,
}
_ASSIGN_OPS = frozenset({"=", "+=", "-=", "*=", "/=", "%=", "^=", "&=", "|=", "<<=", ">>="})
_RANGE_OPS = frozenset({"..", "..="})
_ASSIGN_PREC = 1
_RANGE_PREC = 2

_ITEM_KEYWORDS = frozenset({
    "fn", "struct", "enum", "impl", "trait", "mod", "use", "static",
    "type", "extern", "macro_rules",
})
_QUALIFIERS = frozenset({"async", "const", "unsafe", "extern", "default"})
_TERMINATORS = frozenset({")", "]", "}", ",", ";", "=>"})
_BLOCK_LIKE = frozenset({"if", "match", "loop", "while", "for", "unsafe"})
_CAST_STOP = frozenset({
    ",", ";", "{", "=>", "=", "as", "==", "!=", "<=", "&&", "||", "+", "-", "*", "/", "%",
    "&", "|", "^", "<<", "..", "..=", "?", ".", "else",
} | _ASSIGN_OPS)
_OPEN = {"(": ")", "[": "]", "{": "}"}
_CLOSE = frozenset(_OPEN.values())
_WORDY = frozenset({
    TokenKind.IDENT, TokenKind.INT, TokenKind.FLOAT, TokenKind.LIFETIME, TokenKind.METAVAR,
})


class _Failure(Exception):
    def __init__(self, message: str, token: Token) -> None:
        super().__init__(message)
        self.token = token


def join_tokens(tokens: list[Token]) -> str:
    """Whitespace-normalized text of a token run."""
    parts: list[str] = []
    prev: Token | None = None
    for tok in tokens:
        if prev is not None and prev.kind in _WORDY and tok.kind in _WORDY:
            parts.append(" ")
        parts.append(tok.text)
        prev = tok
    return "".join(parts)


class RustParser:
    """Parser for one source text (or one pattern)."""

    def __init__(self, text: str, *, file: str = "", pattern_mode: bool = False) -> None:
        self.text = text
        self.file = file
        self.pattern_mode = pattern_mode
        self.tokens = tokenize(text, pattern_mode=pattern_mode, file=file)
        self.pos = 0
        self.diagnostics: list[Diagnostic] = []
        self._nesting = 0

    # ── Entry points ─────────────────────────────────────────────────────

    def parse_file(self) -> RawNode:
        items = self._parse_items(closing=None)
        return RawNode("source_file", 0, len(self.text), children=items)

    def parse_pattern(self) -> RawNode:
        """Parse a rule pattern; the root's children are the pattern roots."""
        if self._at_item_start():
            roots = self._parse_items(closing=None)
        else:
            roots = self._parse_statements(closing=None)
            if len(roots) == 1 and roots[0].kind == "expr_stmt":
                roots = [roots[0].children[0]]
        return RawNode("pattern", 0, len(self.text), children=roots)

    # ── Token helpers ────────────────────────────────────────────────────

    def peek(self, offset: int = 0) -> Token:
        index = min(self.pos + offset, len(self.tokens) - 1)
        return self.tokens[index]

    def at(self, text: str, offset: int = 0) -> bool:
        tok = self.peek(offset)
        return tok.text == text and tok.kind in (TokenKind.PUNCT, TokenKind.IDENT)

    def at_kind(self, kind: TokenKind, offset: int = 0) -> bool:
        return self.peek(offset).kind == kind

    def at_eof(self) -> bool:
        return self.peek().kind == TokenKind.EOF

    def advance(self) -> Token:
        tok = self.peek()
        if tok.kind != TokenKind.EOF:
            self.pos += 1
        return tok

    def accept(self, text: str) -> Token | None:
        if self.at(text):
            return self.advance()
        return None

    def expect(self, text: str) -> Token:
        if self.at(text):
            return self.advance()
        raise self.fail(f"expected '{text}'")

    def fail(self, message: str) -> _Failure:
        tok = self.peek()
        found = tok.text or "end of input"
        return _Failure(f"{message}, found '{found}'", tok)

    def _prev_end(self) -> int:
        return self.tokens[self.pos - 1].end if self.pos > 0 else 0

    def _enter(self) -> None:
        self._nesting += 1
        if self._nesting > MAX_NESTING:
            self._nesting -= 1
            raise self.fail("nesting too deep")

    def _leave(self) -> None:
        self._nesting -= 1

    # ── Error recovery ───────────────────────────────────────────────────

    def _guarded(self, parse) -> RawNode | None:
        start = self.pos
        mark = len(self.diagnostics)
        nesting = self._nesting
        try:
            return parse()
        except _Failure as exc:
            self.pos = start
            self._nesting = nesting
            del self.diagnostics[mark:]
            return self._recover(exc)

    def _recover(self, exc: _Failure) -> RawNode:
        line = self.text.count("\n", 0, exc.token.start) + 1
        self.diagnostics.append(
            Diagnostic(
                kind=DiagnosticKind.PARSE_ERROR,
                file=self.file,
                line=line,
                message=f"skipped unparseable region: {exc}",
            )
        )
        first = self.peek()
        depth = 0
        consumed = False
        while not self.at_eof():
            tok = self.peek()
            if tok.kind == TokenKind.PUNCT and tok.text in _OPEN:
                depth += 1
            elif tok.kind == TokenKind.PUNCT and tok.text in _CLOSE:
                if depth == 0:
                    if not consumed:
                        self.advance()
                    break
                depth -= 1
                self.advance()
                consumed = True
                if depth == 0 and tok.text == "}":
                    break
                continue
            elif tok.text == ";" and depth == 0:
                self.advance()
                break
            self.advance()
            consumed = True
        return RawNode("error", first.start, max(first.start, self._prev_end()))

    # ── Items ────────────────────────────────────────────────────────────

    def _at_item_start(self) -> bool:
        tok = self.peek()
        if tok.kind != TokenKind.IDENT and tok.text != "#":
            return False
        if tok.text in ("#", "pub") or tok.text in _ITEM_KEYWORDS:
            return True
        if tok.text == "const":
            return self.peek(1).kind == TokenKind.IDENT
        if tok.text in _QUALIFIERS:
            return self.peek(1).text in ("fn", "impl", "trait", "unsafe", "async", "extern")
        if tok.text == "union":
            return self.peek(1).kind == TokenKind.IDENT and self.peek(2).text in ("{", "<")
        return False

    def _parse_items(self, closing: str | None) -> list[RawNode]:
        items: list[RawNode] = []
        while not self.at_eof() and not (closing and self.at(closing)):
            if self.accept(";"):
                continue
            item = self._guarded(self._parse_item)
            if item is not None:
                items.append(item)
        return items

    def _parse_item(self) -> RawNode:
        if self.at("#") and self.at("!", 1):
            return self._parse_attribute()
        if self.pattern_mode and self.at_kind(TokenKind.ELLIPSIS):
            tok = self.advance()
            return RawNode(ELLIPSIS, tok.start, tok.end)

        attrs = self._parse_outer_attributes()
        start = attrs[0].start if attrs else self.peek().start
        return self._parse_item_after_attributes(start, attrs)

    def _parse_item_after_attributes(self, start: int, attrs: list[RawNode]) -> RawNode:
        attributes = RawNode("attributes", start, attrs[-1].end if attrs else start, children=attrs)
        vis = self._parse_visibility()
        while self._at_qualifier():
            if self.at("extern") and self.at_kind(TokenKind.STR, 1):
                self.advance()
            self.advance()

        tok = self.peek()
        keyword = tok.text if tok.kind == TokenKind.IDENT else ""
        if keyword == "fn":
            return self._parse_function(start, attributes, vis)
        if keyword in ("struct", "union"):
            return self._parse_struct(start, attributes, vis)
        if keyword == "enum":
            return self._parse_enum(start, attributes, vis)
        if keyword == "impl":
            return self._parse_impl(start, attributes)
        if keyword == "trait":
            return self._parse_trait(start, attributes, vis)
        if keyword == "mod":
            return self._parse_mod(start, attributes, vis)
        if keyword in ("const", "static"):
            return self._parse_const(start, attributes, vis)
        if keyword in ("use", "type", "extern"):
            kind = {"use": "use", "type": "type_alias", "extern": "extern_crate"}[keyword]
            self.advance()
            body = self._skip_until({";"})
            self.expect(";")
            return RawNode(kind, start, self._prev_end(), value=join_tokens(body))
        if keyword == "macro_rules" and self.at("!", 1):
            self.advance()
            self.advance()
            name = self.advance()
            self._skip_group()
            self.accept(";")
            return RawNode("macro_rules", start, self._prev_end(), value=name.text)
        if tok.kind == TokenKind.IDENT:
            path = self._parse_path_expr(no_struct=True)
            if path.kind == "macro_call":
                self.accept(";")
                path.start = start
                return path
        raise self.fail("expected item")

    def _at_qualifier(self) -> bool:
        tok = self.peek()
        if tok.kind != TokenKind.IDENT or tok.text not in _QUALIFIERS:
            return False
        nxt = self.peek(1)
        if tok.text == "extern":
            return nxt.kind == TokenKind.STR or nxt.text == "fn"
        return nxt.text in ("fn", "unsafe", "async", "extern", "impl", "trait", "const", "type")

    def _parse_outer_attributes(self) -> list[RawNode]:
        attrs: list[RawNode] = []
        while self.at("#") and self.at("[", 1):
            attrs.append(self._parse_attribute())
        return attrs

    def _parse_attribute(self) -> RawNode:
        start = self.expect("#").start
        inner = bool(self.accept("!"))
        self.expect("[")
        body = self._skip_until({"]"})
        self.expect("]")
        value = join_tokens(body)
        return RawNode("attribute", start, self._prev_end(), value=f"!{value}" if inner else value)

    def _parse_visibility(self) -> RawNode:
        tok = self.peek()
        if self.at("pub"):
            self.advance()
            text = "pub"
            if self.at("(") and self.peek(1).text in ("crate", "super", "self", "in"):
                body = self._skip_group()
                text = "pub" + join_tokens(body)
            return RawNode("visibility", tok.start, self._prev_end(), value=text)
        if self.pattern_mode:
            return RawNode(WILDCARD, tok.start, tok.start)
        return RawNode("visibility", tok.start, tok.start, value="")

    def _parse_name(self) -> RawNode:
        tok = self.peek()
        if tok.kind == TokenKind.METAVAR:
            self.advance()
            return RawNode(METAVAR, tok.start, tok.end, value=tok.text)
        if tok.kind == TokenKind.IDENT:
            self.advance()
            return RawNode("name", tok.start, tok.end, value=tok.text)
        raise self.fail("expected identifier")

    def _parse_function(self, start: int, attributes: RawNode, vis: RawNode) -> RawNode:
        self.expect("fn")
        name = self._parse_name()
        self._skip_generics()
        params = self._parse_parameters()

        here = self._prev_end()
        if self.accept("->"):
            ret_type = self._parse_type({"{", ";", "where"})
            ret = RawNode("return_type", ret_type.start, ret_type.end, children=[ret_type])
        elif self.pattern_mode:
            ret = RawNode(WILDCARD, here, here)
        else:
            ret = RawNode("return_type", here, here)

        self._skip_where({"{", ";"})
        if self.at("{"):
            body = self._parse_block()
        else:
            tok = self.expect(";")
            body = RawNode("empty", tok.start, tok.start)
        return RawNode(
            "function", start, self._prev_end(),
            children=[attributes, vis, name, params, ret, body],
        )

    def _parse_parameters(self) -> RawNode:
        open_tok = self.expect("(")
        params: list[RawNode] = []
        while not self.at(")"):
            params.append(self._parse_parameter())
            if not self.accept(","):
                break
        self.expect(")")
        return RawNode("parameters", open_tok.start, self._prev_end(), children=params)

    def _parse_parameter(self) -> RawNode:
        tok = self.peek()
        if self.pattern_mode and tok.kind == TokenKind.ELLIPSIS:
            self.advance()
            return RawNode(ELLIPSIS, tok.start, tok.end)
        if self.pattern_mode and tok.kind == TokenKind.METAVAR and self.peek(1).text in (",", ")"):
            self.advance()
            return RawNode(METAVAR, tok.start, tok.end, value=tok.text)

        attrs = self._parse_outer_attributes()
        start = attrs[0].start if attrs else self.peek().start

        # self, mut self, &self, &mut self, &'a mut self
        scan = 0
        parts: list[str] = []
        if self.at("&", scan):
            parts.append("&")
            scan += 1
            if self.at_kind(TokenKind.LIFETIME, scan):
                scan += 1
        if self.at("mut", scan):
            parts.append("mut ")
            scan += 1
        if self.at("self", scan):
            for _ in range(scan + 1):
                self.advance()
            if self.accept(":"):
                self._parse_type({",", ")"})
            value = "".join(parts) + "self"
            return RawNode("self_parameter", start, self._prev_end(), value=value)

        attributes = RawNode("attributes", start, attrs[-1].end if attrs else start, children=attrs)
        pattern = self._parse_expr(min_prec=_RANGE_PREC + 1)
        self.expect(":")
        type_node = self._parse_type({",", ")"})
        return RawNode(
            "parameter", start, self._prev_end(),
            children=[attributes, pattern, type_node],
        )

    def _parse_type(self, stop: set[str]) -> RawNode:
        tok = self.peek()
        if (
            self.pattern_mode
            and tok.kind == TokenKind.METAVAR
            and (self.peek(1).text in stop or self.peek(1).kind == TokenKind.EOF)
        ):
            self.advance()
            return RawNode(METAVAR, tok.start, tok.end, value=tok.text)
        body = self._skip_until(stop, angle=True)
        if not body:
            raise self.fail("expected type")
        return RawNode("type", body[0].start, body[-1].end, value=join_tokens(body))

    def _parse_struct(self, start: int, attributes: RawNode, vis: RawNode) -> RawNode:
        self.advance()
        name = self._parse_name()
        self._skip_generics()
        self._skip_where({"{", "(", ";"})
        if self.at("{"):
            fields = self._parse_field_list()
        elif self.at("("):
            fields = self._parse_tuple_fields()
            self._skip_where({";"})
            self.expect(";")
        else:
            tok = self.expect(";")
            fields = RawNode("field_list", tok.start, tok.start)
        return RawNode(
            "struct", start, self._prev_end(),
            children=[attributes, vis, name, fields],
        )

    def _parse_field_list(self) -> RawNode:
        open_tok = self.expect("{")
        fields: list[RawNode] = []
        while not self.at("}"):
            tok = self.peek()
            if self.pattern_mode and tok.kind == TokenKind.ELLIPSIS:
                self.advance()
                fields.append(RawNode(ELLIPSIS, tok.start, tok.end))
            else:
                attrs = self._parse_outer_attributes()
                start = attrs[0].start if attrs else self.peek().start
                attributes = RawNode("attributes", start, attrs[-1].end if attrs else start, children=attrs)
                vis = self._parse_visibility()
                name = self._parse_name()
                self.expect(":")
                type_node = self._parse_type({",", "}"})
                fields.append(
                    RawNode("field", start, self._prev_end(), children=[attributes, vis, name, type_node])
                )
            if not self.accept(","):
                break
        self.expect("}")
        return RawNode("field_list", open_tok.start, self._prev_end(), children=fields)

    def _parse_tuple_fields(self) -> RawNode:
        open_tok = self.expect("(")
        fields: list[RawNode] = []
        position = 0
        while not self.at(")"):
            attrs = self._parse_outer_attributes()
            start = attrs[0].start if attrs else self.peek().start
            attributes = RawNode("attributes", start, attrs[-1].end if attrs else start, children=attrs)
            vis = self._parse_visibility()
            type_node = self._parse_type({",", ")"})
            name = RawNode("name", type_node.start, type_node.start, value=str(position))
            fields.append(
                RawNode("field", start, self._prev_end(), children=[attributes, vis, name, type_node])
            )
            position += 1
            if not self.accept(","):
                break
        self.expect(")")
        return RawNode("field_list", open_tok.start, self._prev_end(), children=fields)

    def _parse_enum(self, start: int, attributes: RawNode, vis: RawNode) -> RawNode:
        self.expect("enum")
        name = self._parse_name()
        self._skip_generics()
        self._skip_where({"{"})
        open_tok = self.expect("{")
        variants: list[RawNode] = []
        while not self.at("}"):
            tok = self.peek()
            if self.pattern_mode and tok.kind == TokenKind.ELLIPSIS:
                self.advance()
                variants.append(RawNode(ELLIPSIS, tok.start, tok.end))
            else:
                attrs = self._parse_outer_attributes()
                vstart = attrs[0].start if attrs else self.peek().start
                vattrs = RawNode("attributes", vstart, attrs[-1].end if attrs else vstart, children=attrs)
                vname = self._parse_name()
                children = [vattrs, vname]
                if self.at("{"):
                    children.append(self._parse_field_list())
                elif self.at("("):
                    children.append(self._parse_tuple_fields())
                if self.accept("="):
                    children.append(self._parse_expr())
                variants.append(RawNode("variant", vstart, self._prev_end(), children=children))
            if not self.accept(","):
                break
        self.expect("}")
        body = RawNode("variants", open_tok.start, self._prev_end(), children=variants)
        return RawNode("enum", start, self._prev_end(), children=[attributes, vis, name, body])

    def _parse_impl(self, start: int, attributes: RawNode) -> RawNode:
        self.expect("impl")
        self._skip_generics()
        first = self._parse_type({"for", "{", "where"})
        if self.accept("for"):
            trait = first
            target = self._parse_type({"{", "where"})
        else:
            target = first
            here = self._prev_end()
            trait = RawNode(WILDCARD if self.pattern_mode else "empty", here, here)
        self._skip_where({"{"})
        self.expect("{")
        items = self._parse_items(closing="}")
        self.expect("}")
        return RawNode(
            "impl", start, self._prev_end(),
            children=[attributes, target, trait, *items],
        )

    def _parse_trait(self, start: int, attributes: RawNode, vis: RawNode) -> RawNode:
        self.expect("trait")
        name = self._parse_name()
        self._skip_generics()
        if self.accept(":"):
            self._skip_until({"{", "where"}, angle=True)
        self._skip_where({"{"})
        self.expect("{")
        items = self._parse_items(closing="}")
        self.expect("}")
        return RawNode("trait", start, self._prev_end(), children=[attributes, vis, name, *items])

    def _parse_mod(self, start: int, attributes: RawNode, vis: RawNode) -> RawNode:
        self.expect("mod")
        name = self._parse_name()
        if self.accept(";"):
            return RawNode("mod", start, self._prev_end(), children=[attributes, vis, name])
        self.expect("{")
        items = self._parse_items(closing="}")
        self.expect("}")
        return RawNode("mod", start, self._prev_end(), children=[attributes, vis, name, *items])

    def _parse_const(self, start: int, attributes: RawNode, vis: RawNode) -> RawNode:
        kind = self.advance().text
        self.accept("mut")
        name = self._parse_name()
        self.expect(":")
        type_node = self._parse_type({"=", ";"})
        if self.accept("="):
            value = self._parse_expr()
        else:
            here = self._prev_end()
            value = RawNode("empty", here, here)
        self.expect(";")
        return RawNode(
            kind, start, self._prev_end(),
            children=[attributes, vis, name, type_node, value],
        )

    # ── Skipping helpers ─────────────────────────────────────────────────

    def _skip_until(self, stop: set[str], *, angle: bool = False) -> list[Token]:
        """Consume tokens until a stop token at bracket depth 0."""
        taken: list[Token] = []
        depth = 0
        while not self.at_eof():
            tok = self.peek()
            is_punct = tok.kind in (TokenKind.PUNCT, TokenKind.IDENT)
            if depth == 0 and is_punct and tok.text in stop:
                break
            if tok.kind == TokenKind.PUNCT:
                if tok.text in _OPEN or (angle and tok.text == "<"):
                    depth += 1
                elif angle and tok.text == "<<":
                    depth += 2
                elif tok.text in _CLOSE or (angle and tok.text == ">"):
                    if depth == 0:
                        break
                    depth -= 1
            taken.append(self.advance())
        return taken

    def _skip_group(self) -> list[Token]:
        """Consume a balanced (), [] or {} group; returns all its tokens."""
        open_tok = self.peek()
        if open_tok.text not in _OPEN:
            raise self.fail("expected delimiter")
        taken: list[Token] = []
        depth = 0
        while not self.at_eof():
            tok = self.advance()
            taken.append(tok)
            if tok.kind == TokenKind.PUNCT and tok.text in _OPEN:
                depth += 1
            elif tok.kind == TokenKind.PUNCT and tok.text in _CLOSE:
                depth -= 1
                if depth == 0:
                    return taken
        raise self.fail("unbalanced delimiter")

    def _skip_generics(self) -> None:
        if not self.at("<"):
            return
        depth = 0
        while not self.at_eof():
            tok = self.advance()
            if tok.text == "<":
                depth += 1
            elif tok.text == "<<":
                depth += 2
            elif tok.text == ">":
                depth -= 1
                if depth == 0:
                    return
        raise self.fail("unbalanced generics")

    def _skip_where(self, stop: set[str]) -> None:
        if self.accept("where"):
            self._skip_until(stop, angle=True)

    # ── Blocks and statements ────────────────────────────────────────────

    def _parse_block(self, value: str | None = None) -> RawNode:
        self._enter()
        try:
            open_tok = self.expect("{")
            statements = self._parse_statements(closing="}")
            self.expect("}")
            return RawNode("block", open_tok.start, self._prev_end(), value=value, children=statements)
        finally:
            self._leave()

    def _parse_statements(self, closing: str | None) -> list[RawNode]:
        statements: list[RawNode] = []
        while not self.at_eof() and not (closing and self.at(closing)):
            if self.accept(";"):
                continue
            stmt = self._guarded(self._parse_statement)
            if stmt is not None:
                statements.append(stmt)
        return statements

    def _at_statement_end(self) -> bool:
        return self.at("}") or self.at_eof()

    def _parse_statement(self) -> RawNode:
        tok = self.peek()
        if self.pattern_mode and tok.kind == TokenKind.ELLIPSIS:
            self.advance()
            self.accept(";")
            return RawNode(ELLIPSIS, tok.start, tok.end)

        if self.at("#") and self.at("!", 1):
            return self._parse_attribute()
        if self.at("#") and self.at("[", 1):
            attrs = self._parse_outer_attributes()
            if self._at_item_start():
                return self._parse_item_after_attributes(attrs[0].start, attrs)
            return self._parse_statement()

        if self._at_item_start():
            return self._parse_item()

        if self.at("let"):
            return self._parse_let()

        start = tok.start
        if tok.kind == TokenKind.IDENT and tok.text in _BLOCK_LIKE or self.at("{") or (
            tok.kind == TokenKind.LIFETIME and self.at(":", 1)
        ):
            expr = self._parse_block_like()
            if not self._at_block_like_continuation():
                self.accept(";")
                return RawNode("expr_stmt", start, self._prev_end(), children=[expr])
            expr = self._continue_expr(expr)
        else:
            expr = self._parse_expr()

        if self.accept(";") or self._at_statement_end():
            return RawNode("expr_stmt", start, self._prev_end(), children=[expr])
        if expr.kind == "macro_call" and self.tokens[self.pos - 1].text == "}":
            return RawNode("expr_stmt", start, self._prev_end(), children=[expr])
        raise self.fail("expected ';'")

    def _at_block_like_continuation(self) -> bool:
        # ``match x { .. }.unwrap()`` and ``if a { b } else { c }?`` keep going.
        return self.at(".") or self.at("?")

    def _parse_let(self) -> RawNode:
        start = self.expect("let").start
        pattern = self._parse_expr(min_prec=_RANGE_PREC + 1)
        here = self._prev_end()
        if self.accept(":"):
            type_node = self._parse_type({"=", ";"})
        else:
            type_node = RawNode("empty", here, here)
        here = self._prev_end()
        if self.accept("="):
            init = self._parse_expr()
        else:
            init = RawNode("empty", here, here)
        children = [pattern, type_node, init]
        if self.accept("else"):
            children.append(self._parse_block())
        self.expect(";")
        return RawNode("let", start, self._prev_end(), children=children)

    # ── Expressions ──────────────────────────────────────────────────────

    def _parse_expr(self, min_prec: int = _ASSIGN_PREC, no_struct: bool = False) -> RawNode:
        self._enter()
        try:
            lhs = self._parse_unary(no_struct)
            return self._parse_binary_rhs(lhs, min_prec, no_struct)
        finally:
            self._leave()

    def _continue_expr(self, expr: RawNode) -> RawNode:
        expr = self._parse_postfix(expr)
        return self._parse_binary_rhs(expr, _ASSIGN_PREC, False)

    def _parse_binary_rhs(self, lhs: RawNode, min_prec: int, no_struct: bool) -> RawNode:
        while True:
            op, width = self._peek_operator()
            if op is None:
                return lhs
            if op in _ASSIGN_OPS:
                prec = _ASSIGN_PREC
            elif op in _RANGE_OPS:
                prec = _RANGE_PREC
            else:
                prec = _BINARY_PREC[op]
            if prec < min_prec:
                return lhs
            for _ in range(width):
                self.advance()

            if op == "as":
                type_node = self._parse_type(_CAST_STOP)
                lhs = RawNode("cast", lhs.start, type_node.end, children=[lhs, type_node])
            elif op in _ASSIGN_OPS:
                rhs = self._parse_expr(prec, no_struct)
                lhs = RawNode("assign", lhs.start, rhs.end, value=op, children=[lhs, rhs])
            elif op in _RANGE_OPS:
                if self._at_expr_terminator(no_struct):
                    here = self._prev_end()
                    rhs = RawNode("empty", here, here)
                else:
                    rhs = self._parse_expr(prec + 1, no_struct)
                lhs = RawNode("range", lhs.start, rhs.end, value=op, children=[lhs, rhs])
            else:
                rhs = self._parse_expr(prec + 1, no_struct)
                lhs = RawNode("binary", lhs.start, rhs.end, value=op, children=[lhs, rhs])

    def _peek_operator(self) -> tuple[str | None, int]:
        tok = self.peek()
        if tok.kind == TokenKind.IDENT:
            return ("as", 1) if tok.text == "as" else (None, 0)
        if tok.kind != TokenKind.PUNCT:
            return None, 0
        if tok.text == ">":
            nxt = self.peek(1)
            if nxt.text == ">" and nxt.start == tok.end:
                third = self.peek(2)
                if third.text == "=" and third.start == nxt.end:
                    return ">>=", 3
                return ">>", 2
            if nxt.text == "=" and nxt.start == tok.end:
                return ">=", 2
            return ">", 1
        if tok.text in _BINARY_PREC or tok.text in _ASSIGN_OPS or tok.text in _RANGE_OPS:
            return tok.text, 1
        return None, 0

    def _at_expr_terminator(self, no_struct: bool) -> bool:
        tok = self.peek()
        if tok.kind == TokenKind.EOF:
            return True
        if tok.kind == TokenKind.PUNCT and tok.text in _TERMINATORS:
            return True
        return no_struct and self.at("{")

    def _parse_unary(self, no_struct: bool) -> RawNode:
        tok = self.peek()
        if tok.kind == TokenKind.PUNCT:
            if tok.text in ("-", "!", "*"):
                self.advance()
                operand = self._parse_unary(no_struct)
                return RawNode("unary", tok.start, operand.end, value=tok.text, children=[operand])
            if tok.text in ("&", "&&"):
                self.advance()
                op = "&"
                if self.accept("mut"):
                    op = "&mut"
                operand = self._parse_unary(no_struct)
                node = RawNode("unary", tok.start, operand.end, value=op, children=[operand])
                if tok.text == "&&":
                    node = RawNode("unary", tok.start, operand.end, value="&", children=[node])
                return node
            if tok.text in _RANGE_OPS:
                self.advance()
                here = tok.start
                if self._at_expr_terminator(no_struct):
                    rhs = RawNode("empty", tok.end, tok.end)
                else:
                    rhs = self._parse_expr(_RANGE_PREC + 1, no_struct)
                return RawNode(
                    "range", here, rhs.end, value=tok.text,
                    children=[RawNode("empty", here, here), rhs],
                )
        return self._parse_postfix(self._parse_primary(no_struct))

    def _parse_postfix(self, expr: RawNode) -> RawNode:
        while True:
            if self.at("?"):
                tok = self.advance()
                expr = RawNode("try", expr.start, tok.end, children=[expr])
            elif self.at("."):
                self.advance()
                tok = self.peek()
                if tok.kind == TokenKind.IDENT and tok.text == "await":
                    self.advance()
                    expr = RawNode("await", expr.start, tok.end, children=[expr])
                    continue
                if tok.kind in (TokenKind.IDENT, TokenKind.INT, TokenKind.METAVAR):
                    self.advance()
                    if tok.kind == TokenKind.METAVAR:
                        name = RawNode(METAVAR, tok.start, tok.end, value=tok.text)
                    else:
                        name = RawNode("name", tok.start, tok.end, value=tok.text)
                else:
                    raise self.fail("expected field or method name")
                if self.at("::") and self.at("<", 1):
                    self.advance()
                    self._skip_generics()
                if self.at("("):
                    args = self._parse_arguments("(", ")")
                    expr = RawNode("method_call", expr.start, args.end, children=[expr, name, args])
                else:
                    expr = RawNode("field_access", expr.start, name.end, children=[expr, name])
            elif self.at("("):
                args = self._parse_arguments("(", ")")
                expr = RawNode("call", expr.start, args.end, children=[expr, args])
            elif self.at("["):
                self.advance()
                index = self._parse_expr()
                self.expect("]")
                expr = RawNode("index", expr.start, self._prev_end(), children=[expr, index])
            else:
                return expr

    def _parse_arguments(self, open_text: str, close_text: str) -> RawNode:
        open_tok = self.expect(open_text)
        args: list[RawNode] = []
        while not self.at(close_text):
            args.append(self._parse_argument())
            if not (self.accept(",") or (open_text == "[" and self.accept(";"))):
                break
        self.expect(close_text)
        return RawNode("arguments", open_tok.start, self._prev_end(), children=args)

    def _parse_argument(self) -> RawNode:
        tok = self.peek()
        if self.pattern_mode and tok.kind == TokenKind.ELLIPSIS and self.peek(1).text in (",", ")", "]", "}"):
            self.advance()
            return RawNode(ELLIPSIS, tok.start, tok.end)
        return self._parse_expr()

    def _parse_primary(self, no_struct: bool) -> RawNode:
        tok = self.peek()
        kind = tok.kind

        if kind == TokenKind.ELLIPSIS and self.pattern_mode:
            self.advance()
            return RawNode(ELLIPSIS, tok.start, tok.end)
        if kind == TokenKind.METAVAR:
            return self._parse_path_expr(no_struct)
        if kind == TokenKind.INT:
            self.advance()
            return RawNode("int_literal", tok.start, tok.end, value=canonical_int(tok.text))
        if kind == TokenKind.FLOAT:
            self.advance()
            return RawNode("float_literal", tok.start, tok.end, value=canonical_float(tok.text))
        if kind == TokenKind.STR:
            self.advance()
            return RawNode("str_literal", tok.start, tok.end, value=canonical_string(tok.text))
        if kind == TokenKind.BYTES:
            self.advance()
            return RawNode("bytes_literal", tok.start, tok.end, value=canonical_string(tok.text))
        if kind == TokenKind.CHAR:
            self.advance()
            return RawNode("char_literal", tok.start, tok.end, value=canonical_char(tok.text))
        if kind == TokenKind.LIFETIME and self.at(":", 1):
            return self._parse_block_like()

        if kind == TokenKind.IDENT:
            text = tok.text
            if text in ("true", "false"):
                self.advance()
                return RawNode("bool_literal", tok.start, tok.end, value=text)
            if text in _BLOCK_LIKE and not (text == "unsafe" and not self.at("{", 1)):
                return self._parse_block_like()
            if text == "async" and (self.at("{", 1) or (self.at("move", 1) and self.at("{", 2))):
                self.advance()
                self.accept("move")
                return self._parse_block(value="async")
            if text == "move" and (self.at("|", 1) or self.at("||", 1)):
                self.advance()
                closure = self._parse_closure()
                closure.value = "move"
                closure.start = tok.start
                return closure
            if text == "return":
                self.advance()
                if self._at_expr_terminator(no_struct):
                    return RawNode("return", tok.start, tok.end)
                value = self._parse_expr(no_struct=no_struct)
                return RawNode("return", tok.start, value.end, children=[value])
            if text in ("break", "continue"):
                self.advance()
                label = None
                if self.at_kind(TokenKind.LIFETIME):
                    label = self.advance().text
                children: list[RawNode] = []
                if text == "break" and not self._at_expr_terminator(no_struct):
                    children.append(self._parse_expr(no_struct=no_struct))
                return RawNode(text, tok.start, self._prev_end(), value=label, children=children)
            if text in ("mut", "ref") and self.peek(1).kind in (TokenKind.IDENT, TokenKind.METAVAR):
                self.advance()
                mode = text
                if text == "ref" and self.accept("mut"):
                    mode = "ref mut"
                inner = self._parse_primary(no_struct)
                return RawNode("binding", tok.start, inner.end, value=mode, children=[inner])
            if text == "let":
                raise self.fail("unexpected 'let'")
            return self._parse_path_expr(no_struct)

        if kind == TokenKind.PUNCT:
            if tok.text == "(":
                return self._parse_paren()
            if tok.text == "[":
                return self._parse_array()
            if tok.text == "{":
                return self._parse_block()
            if tok.text in ("|", "||"):
                return self._parse_closure()
            if tok.text == "<":
                return self._parse_qualified_path()
            if tok.text == "#" and self.at("[", 1):
                self._parse_outer_attributes()
                return self._parse_primary(no_struct)
        raise self.fail("expected expression")

    def _parse_path_expr(self, no_struct: bool) -> RawNode:
        tok = self.advance()
        start = tok.start
        segments = [self._segment(tok)]
        while self.at("::"):
            self.advance()
            if self.at("<"):
                generic_start = self.peek().start
                first = self.pos
                self._skip_generics()
                text = join_tokens(self.tokens[first:self.pos])
                segments.append(RawNode("generic_args", generic_start, self._prev_end(), value=text))
                continue
            nxt = self.peek()
            if nxt.kind not in (TokenKind.IDENT, TokenKind.METAVAR):
                raise self.fail("expected path segment")
            self.advance()
            segments.append(self._segment(nxt))

        if len(segments) == 1:
            head = segments[0]
            if head.kind == "name":
                head = RawNode("ident", head.start, head.end, value=head.value)
        else:
            head = RawNode("path", start, self._prev_end(), children=segments)

        if self.at("!") and self.peek(1).kind == TokenKind.PUNCT and self.peek(1).text in _OPEN:
            return self._parse_macro_call(head)
        if not no_struct and self.at("{") and self._looks_like_struct_literal():
            return self._parse_struct_literal(head)
        return head

    @staticmethod
    def _segment(tok: Token) -> RawNode:
        if tok.kind == TokenKind.METAVAR:
            return RawNode(METAVAR, tok.start, tok.end, value=tok.text)
        return RawNode("name", tok.start, tok.end, value=tok.text)

    def _looks_like_struct_literal(self) -> bool:
        first = self.peek(1)
        second = self.peek(2)
        if first.text == "}" and first.kind == TokenKind.PUNCT:
            return True
        if first.kind == TokenKind.PUNCT and first.text == "..":
            return True
        if first.kind == TokenKind.ELLIPSIS and self.pattern_mode:
            return second.text in ("}", ",")
        if first.kind in (TokenKind.IDENT, TokenKind.METAVAR, TokenKind.INT):
            return second.kind == TokenKind.PUNCT and second.text in (":", ",", "}")
        return False

    def _parse_struct_literal(self, head: RawNode) -> RawNode:
        open_tok = self.expect("{")
        fields: list[RawNode] = []
        while not self.at("}"):
            tok = self.peek()
            if tok.kind == TokenKind.ELLIPSIS and self.pattern_mode:
                self.advance()
                fields.append(RawNode(ELLIPSIS, tok.start, tok.end))
            elif self.at(".."):
                self.advance()
                if self.at("}"):
                    fields.append(RawNode("rest", tok.start, tok.end))
                else:
                    base = self._parse_expr()
                    fields.append(RawNode("struct_base", tok.start, base.end, children=[base]))
            else:
                name = self._parse_name() if tok.kind != TokenKind.INT else self._int_name()
                if self.accept(":"):
                    value = self._parse_expr()
                elif name.kind == METAVAR:
                    value = RawNode(METAVAR, name.start, name.end, value=name.value)
                else:
                    value = RawNode("ident", name.start, name.end, value=name.value)
                fields.append(RawNode("field_init", name.start, value.end, children=[name, value]))
            if not self.accept(","):
                break
        self.expect("}")
        inits = RawNode("field_inits", open_tok.start, self._prev_end(), children=fields)
        return RawNode("struct_literal", head.start, self._prev_end(), children=[head, inits])

    def _int_name(self) -> RawNode:
        tok = self.advance()
        return RawNode("name", tok.start, tok.end, value=tok.text)

    def _parse_macro_call(self, head: RawNode) -> RawNode:
        self.expect("!")
        open_tok = self.peek()
        close_text = _OPEN[open_tok.text]
        start_pos = self.pos
        mark = len(self.diagnostics)
        try:
            args = self._parse_arguments(open_tok.text, close_text)
        except _Failure:
            self.pos = start_pos
            del self.diagnostics[mark:]
            body = self._skip_group()
            args = RawNode(
                "token_tree", open_tok.start, self._prev_end(),
                value=join_tokens(body[1:-1]),
            )
        return RawNode("macro_call", head.start, args.end, children=[head, args])

    def _parse_paren(self) -> RawNode:
        open_tok = self.expect("(")
        if self.accept(")"):
            return RawNode("tuple", open_tok.start, self._prev_end())
        first = self._parse_argument()
        if self.accept(")"):
            # Parentheses are insignificant: ``(a + b)`` normalizes to ``a + b``.
            return first
        items = [first]
        while self.accept(","):
            if self.at(")"):
                break
            items.append(self._parse_argument())
        self.expect(")")
        return RawNode("tuple", open_tok.start, self._prev_end(), children=items)

    def _parse_array(self) -> RawNode:
        open_tok = self.expect("[")
        if self.accept("]"):
            return RawNode("array", open_tok.start, self._prev_end())
        first = self._parse_argument()
        if self.accept(";"):
            count = self._parse_expr()
            self.expect("]")
            return RawNode("array_repeat", open_tok.start, self._prev_end(), children=[first, count])
        items = [first]
        while self.accept(","):
            if self.at("]"):
                break
            items.append(self._parse_argument())
        self.expect("]")
        return RawNode("array", open_tok.start, self._prev_end(), children=items)

    def _parse_closure(self) -> RawNode:
        start = self.peek().start
        params: list[RawNode] = []
        if not self.accept("||"):
            self.expect("|")
            while not self.at("|"):
                param = self._parse_expr(min_prec=_BINARY_PREC["|"] + 1)
                if self.accept(":"):
                    self._parse_type({",", "|"})
                params.append(param)
                if not self.accept(","):
                    break
            self.expect("|")
        param_node = RawNode("closure_params", start, self._prev_end(), children=params)
        if self.accept("->"):
            self._parse_type({"{"})
            body = self._parse_block()
        else:
            body = self._parse_expr()
        return RawNode("closure", start, body.end, children=[param_node, body])

    def _parse_qualified_path(self) -> RawNode:
        start = self.peek().start
        first = self.pos
        self._skip_generics()
        qualifier = RawNode("type", start, self._prev_end(), value=join_tokens(self.tokens[first:self.pos]))
        segments = [qualifier]
        while self.accept("::"):
            tok = self.advance()
            segments.append(self._segment(tok))
        return RawNode("path", start, self._prev_end(), children=segments)

    # ── Block-like expressions ───────────────────────────────────────────

    def _parse_block_like(self) -> RawNode:
        tok = self.peek()
        if tok.kind == TokenKind.LIFETIME:
            self.advance()
            self.expect(":")
            return self._parse_block_like()
        if self.at("{"):
            return self._parse_block()
        if self.at("unsafe"):
            self.advance()
            return self._parse_block(value="unsafe")
        if self.at("if"):
            return self._parse_if()
        if self.at("match"):
            return self._parse_match()
        if self.at("loop"):
            self.advance()
            body = self._parse_block()
            return RawNode("loop", tok.start, body.end, children=[body])
        if self.at("while"):
            self.advance()
            cond = self._parse_condition()
            body = self._parse_block()
            return RawNode("while", tok.start, body.end, children=[cond, body])
        if self.at("for"):
            self.advance()
            pattern = self._parse_expr(min_prec=_RANGE_PREC + 1, no_struct=True)
            self.expect("in")
            iterable = self._parse_expr(no_struct=True)
            body = self._parse_block()
            return RawNode("for", tok.start, body.end, children=[pattern, iterable, body])
        raise self.fail("expected block expression")

    def _parse_condition(self) -> RawNode:
        tok = self.peek()
        if self.accept("let"):
            pattern = self._parse_expr(min_prec=_RANGE_PREC, no_struct=True)
            self.expect("=")
            scrutinee = self._parse_expr(min_prec=_BINARY_PREC["&&"] + 1, no_struct=True)
            cond = RawNode("let_condition", tok.start, scrutinee.end, children=[pattern, scrutinee])
            if self.accept("&&"):
                rest = self._parse_condition()
                return RawNode("binary", cond.start, rest.end, value="&&", children=[cond, rest])
            return cond
        return self._parse_expr(no_struct=True)

    def _parse_if(self) -> RawNode:
        start = self.expect("if").start
        cond = self._parse_condition()
        then = self._parse_block()
        if self.accept("else"):
            otherwise = self._parse_if() if self.at("if") else self._parse_block()
        else:
            here = self._prev_end()
            otherwise = RawNode("empty", here, here)
        return RawNode("if", start, self._prev_end(), children=[cond, then, otherwise])

    def _parse_match(self) -> RawNode:
        start = self.expect("match").start
        scrutinee = self._parse_expr(no_struct=True)
        open_tok = self.expect("{")
        arms: list[RawNode] = []
        while not self.at("}"):
            tok = self.peek()
            if self.pattern_mode and tok.kind == TokenKind.ELLIPSIS and self.peek(1).text in ("}", ","):
                self.advance()
                arms.append(RawNode(ELLIPSIS, tok.start, tok.end))
                self.accept(",")
                continue
            arms.append(self._parse_arm())
        self.expect("}")
        arm_list = RawNode("match_arms", open_tok.start, self._prev_end(), children=arms)
        return RawNode("match", start, self._prev_end(), children=[scrutinee, arm_list])

    def _parse_arm(self) -> RawNode:
        self._parse_outer_attributes()
        start = self.peek().start
        self.accept("|")
        pattern = self._parse_expr(min_prec=_RANGE_PREC, no_struct=False)
        here = self._prev_end()
        guard = RawNode("empty", here, here)
        if self.accept("if"):
            guard = self._parse_expr()
        self.expect("=>")
        if self.at("{"):
            body = self._parse_block()
            body = self._parse_postfix(body) if self.at(".") else body
        else:
            body = self._parse_expr()
        if not self.accept(",") and not self.at("}") and body.kind not in ("block", "if", "match", "loop", "while", "for"):
            raise self.fail("expected ',' after match arm")
        return RawNode("arm", start, self._prev_end(), children=[pattern, guard, body])
