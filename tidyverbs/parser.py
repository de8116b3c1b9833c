from __future__ import annotations

import re
from typing import Any, List, Optional

from tidyverbs.errors import TidyUserError
from tidyverbs.syntax import (
    Assignment,
    Call,
    Identifier,
    Interpolate,
    Literal,
    Node,
    Pair,
    Range,
    TupleForm,
    VectorForm,
)

# =========================
# Fragment language (tokenizer + parser)
# Shared by every verb so the surface syntax stays consistent.
# =========================

_re_ws = re.compile(r"\s+")
_re_ident = re.compile(r"[A-Za-z_.][A-Za-z0-9_.]*")
_re_number = re.compile(r"(?:\d+\.\d*|\d*\.\d+|\d+)(?:[eE][+-]?\d+)?")

KEYWORDS = {"and", "or", "not", "in", "true", "false", "missing", "null", "na", "none"}
_LITERAL_KEYWORDS = {"true": True, "false": False, "missing": None, "null": None, "na": None, "none": None}

OPS_2 = {"==", "!=", ">=", "<=", "=>", "&&", "||"}
OPS_1 = {">", "<", "(", ")", "[", "]", ",", "=", "+", "-", "*", "/", "%", "^", ":", "~", "!", "&", "|"}

_CMP = {"==", "!=", ">=", "<=", ">", "<"}


class _ExprTok:
    __slots__ = ("typ", "val", "pos")

    def __init__(self, typ: str, val: Any, pos: int):
        self.typ = typ
        self.val = val
        self.pos = pos


def _caret(src: str, pos: int) -> str:
    return f"At position {pos}: {src}\n" + (" " * (pos + len("At position : ") + len(str(pos)))) + "^"


def _tokenize(src: str) -> List[_ExprTok]:
    out: List[_ExprTok] = []
    i = 0
    n = len(src)

    while i < n:
        m = _re_ws.match(src, i)
        if m:
            i = m.end()
            continue

        ch = src[i]
        if ch in ("'", '"', "`"):
            q = ch
            j = i + 1
            buf = []
            while j < n:
                c = src[j]
                if c == "\\" and j + 1 < n:
                    buf.append(src[j + 1])
                    j += 2
                    continue
                if c == q:
                    out.append(_ExprTok("NAME" if q == "`" else "STR", "".join(buf), i))
                    i = j + 1
                    break
                buf.append(c)
                j += 1
            else:
                raise TidyUserError(
                    "E_EXPR_PARSE",
                    "Unterminated quoted text in expression.",
                    hint=_caret(src, i),
                    fragment=src,
                )
            continue

        if src.startswith("!!", i):
            out.append(_ExprTok("INTERP", "!!", i))
            i += 2
            continue

        two = src[i: i + 2]
        if two in OPS_2:
            out.append(_ExprTok("OP", two, i))
            i += 2
            continue

        m = _re_number.match(src, i)
        if m and m.group(0) != ".":
            s = m.group(0)
            is_float = any(c in s for c in ".eE")
            out.append(_ExprTok("NUM", float(s) if is_float else int(s), i))
            i = m.end()
            continue

        if ch in OPS_1:
            out.append(_ExprTok("OP", ch, i))
            i += 1
            continue

        m = _re_ident.match(src, i)
        if m:
            s = m.group(0)
            low = s.lower()
            if low in KEYWORDS:
                out.append(_ExprTok("KW", low, i))
            else:
                out.append(_ExprTok("IDENT", s, i))
            i = m.end()
            continue

        raise TidyUserError(
            "E_EXPR_PARSE",
            f"Unexpected character {ch!r} in expression.",
            hint=_caret(src, i),
            fragment=src,
        )

    out.append(_ExprTok("EOF", None, n))
    return out


def parse(src: str, *, allow_assignment: bool = True) -> Node:
    """Parse one fragment string into a syntax tree."""
    if not isinstance(src, str) or not src.strip():
        raise TidyUserError(
            "E_EXPR_PARSE",
            "Expected a non-empty expression string.",
            hint="Example: mutate(data, 'total = price * qty')",
            fragment=repr(src),
        )

    toks = _tokenize(src)
    k = 0

    def _peek(offset: int = 0) -> _ExprTok:
        return toks[min(k + offset, len(toks) - 1)]

    def _is_op(val: str, offset: int = 0) -> bool:
        t = _peek(offset)
        return t.typ == "OP" and t.val == val

    def _is_kw(val: str) -> bool:
        t = _peek()
        return t.typ == "KW" and t.val == val

    def _eat(expected_typ: str, expected_val: Optional[str] = None) -> _ExprTok:
        nonlocal k
        t = toks[k]
        if t.typ != expected_typ:
            raise TidyUserError(
                "E_EXPR_PARSE",
                f"Expected {expected_val or expected_typ} but found {t.val if t.val is not None else t.typ}.",
                hint=_caret(src, t.pos),
                fragment=src,
            )
        if expected_val is not None and t.val != expected_val:
            raise TidyUserError(
                "E_EXPR_PARSE",
                f"Expected '{expected_val}' but found '{t.val}'.",
                hint=_caret(src, t.pos),
                fragment=src,
            )
        k += 1
        return t

    def parse_fragment() -> Node:
        if allow_assignment and _peek().typ in {"IDENT", "NAME", "STR"} and _is_op("=", 1):
            target = _eat(_peek().typ).val
            _eat("OP", "=")
            return Assignment(target, parse_expr())
        return parse_expr()

    def parse_expr() -> Node:
        return parse_pair()

    def parse_pair() -> Node:
        node = parse_or()
        if _is_op("=>") or _is_op("~"):
            _eat("OP")
            node = Pair(node, parse_or())
        return node

    def parse_or() -> Node:
        node = parse_and()
        while _is_op("|") or _is_op("||") or _is_kw("or"):
            _eat(_peek().typ)
            node = Call("|", (node, parse_and()), infix=True)
        return node

    def parse_and() -> Node:
        node = parse_not()
        while _is_op("&") or _is_op("&&") or _is_kw("and"):
            _eat(_peek().typ)
            node = Call("&", (node, parse_not()), infix=True)
        return node

    def parse_not() -> Node:
        if _is_op("!") or _is_kw("not"):
            _eat(_peek().typ)
            return Call("!", (parse_not(),), infix=True)
        return parse_cmp()

    def parse_cmp() -> Node:
        left = parse_range()
        t = _peek()
        if (t.typ == "OP" and t.val in _CMP) or (t.typ == "KW" and t.val == "in"):
            _eat(t.typ)
            return Call(t.val, (left, parse_range()), infix=True)
        return left

    def parse_range() -> Node:
        node = parse_add()
        if _is_op(":"):
            _eat("OP", ":")
            node = Range(node, parse_add())
        return node

    def parse_add() -> Node:
        node = parse_mul()
        while _is_op("+") or _is_op("-"):
            op_tok = _eat("OP")
            node = Call(op_tok.val, (node, parse_mul()), infix=True)
        return node

    def parse_mul() -> Node:
        node = parse_unary()
        while _is_op("*") or _is_op("/") or _is_op("%"):
            op_tok = _eat("OP")
            node = Call(op_tok.val, (node, parse_unary()), infix=True)
        return node

    def parse_unary() -> Node:
        if _is_op("-"):
            _eat("OP", "-")
            inner = parse_unary()
            if isinstance(inner, Literal) and isinstance(inner.value, (int, float)) and not isinstance(inner.value, bool):
                return Literal(-inner.value)
            return Call("-", (inner,), infix=True)
        if _is_op("+"):
            _eat("OP", "+")
            return parse_unary()
        return parse_power()

    def parse_power() -> Node:
        node = parse_postfix()
        if _is_op("^"):
            _eat("OP", "^")
            node = Call("^", (node, parse_unary()), infix=True)
        return node

    def parse_postfix() -> Node:
        t = _peek()
        if t.typ == "IDENT" and _is_op("(", 1):
            _eat("IDENT")
            _eat("OP", "(")
            args, kwargs = parse_args(")")
            _eat("OP", ")")
            return Call(t.val, tuple(args), tuple(kwargs))
        return parse_atom()

    def parse_args(closer: str):
        args: List[Node] = []
        kwargs: List[tuple] = []
        while not _is_op(closer):
            if _peek().typ == "IDENT" and _is_op("=", 1):
                name = _eat("IDENT").val
                _eat("OP", "=")
                kwargs.append((name, parse_expr()))
            else:
                if kwargs:
                    t = _peek()
                    raise TidyUserError(
                        "E_EXPR_PARSE",
                        "Positional argument follows keyword argument.",
                        hint=_caret(src, t.pos),
                        fragment=src,
                    )
                args.append(parse_expr())
            if not _is_op(","):
                break
            _eat("OP", ",")
        return args, kwargs

    def parse_items(closer: str) -> List[Node]:
        items: List[Node] = []
        while not _is_op(closer):
            items.append(parse_expr())
            if not _is_op(","):
                break
            _eat("OP", ",")
        return items

    def parse_atom() -> Node:
        t = _peek()
        if t.typ == "INTERP":
            _eat("INTERP")
            return Interpolate(parse_postfix())
        if t.typ == "OP" and t.val == "(":
            _eat("OP", "(")
            if _is_op(")"):
                _eat("OP", ")")
                return TupleForm(())
            first = parse_expr()
            if _is_op(")"):
                _eat("OP", ")")
                return first
            _eat("OP", ",")
            items = [first] + parse_items(")")
            _eat("OP", ")")
            return TupleForm(tuple(items))
        if t.typ == "OP" and t.val == "[":
            _eat("OP", "[")
            items = parse_items("]")
            _eat("OP", "]")
            return VectorForm(tuple(items))
        if t.typ in {"IDENT", "NAME"}:
            _eat(t.typ)
            return Identifier(t.val)
        if t.typ in {"NUM", "STR"}:
            _eat(t.typ)
            return Literal(t.val)
        if t.typ == "KW" and t.val in _LITERAL_KEYWORDS:
            _eat("KW")
            return Literal(_LITERAL_KEYWORDS[t.val])
        raise TidyUserError(
            "E_EXPR_PARSE",
            f"Unexpected token '{t.val if t.val is not None else 'end of input'}' in expression.",
            hint=_caret(src, t.pos),
            fragment=src,
        )

    node = parse_fragment()
    _eat("EOF")
    return node
