import pytest

from tidyverbs import TidyUserError
from tidyverbs.parser import parse
from tidyverbs.syntax import (
    Assignment,
    Call,
    Identifier,
    Interpolate,
    Literal,
    Pair,
    Range,
    TupleForm,
    VectorForm,
    unparse,
)


def test_assignment_and_precedence():
    """'name = expr' becomes an Assignment; * binds tighter than +."""
    node = parse("total = price + qty * 2")
    assert node == Assignment(
        "total",
        Call("+", (Identifier("price"), Call("*", (Identifier("qty"), Literal(2)), infix=True)), infix=True),
    )


def test_literals_and_keywords():
    assert parse("'abc'") == Literal("abc")
    assert parse("2.5") == Literal(2.5)
    assert parse("1e3") == Literal(1000.0)
    assert parse("true") == Literal(True)
    assert parse("missing") == Literal(None)
    assert parse("-3") == Literal(-3)


def test_backticked_names_are_identifiers():
    assert parse("`first name`") == Identifier("first name")
    assert parse("`n` = n()") == Assignment("n", Call("n"))


def test_calls_with_keyword_arguments():
    node = parse("lag(x, k = 2)")
    assert node == Call("lag", (Identifier("x"),), (("k", Literal(2)),))


def test_positional_after_keyword_is_rejected():
    with pytest.raises(TidyUserError) as ex:
        parse("f(k = 1, x)")
    assert getattr(ex.value, "code", None) == "E_EXPR_PARSE"


def test_logical_words_and_symbols_are_equivalent():
    assert parse("a > 1 and not b") == parse("a > 1 & !b")
    assert parse("a or b") == parse("a | b")


def test_special_forms():
    assert parse("1:n()") == Range(Literal(1), Call("n"))
    assert parse("x > 1 => 'big'") == Pair(Call(">", (Identifier("x"), Literal(1)), infix=True), Literal("big"))
    assert parse("(a, b)") == TupleForm((Identifier("a"), Identifier("b")))
    assert parse("[1, 2]") == VectorForm((Literal(1), Literal(2)))
    assert parse("!!x") == Interpolate(Identifier("x"))
    assert parse("x in [1, 2]") == Call("in", (Identifier("x"), VectorForm((Literal(1), Literal(2)))), infix=True)


def test_unterminated_string_has_caret_hint():
    with pytest.raises(TidyUserError) as ex:
        parse("x == 'abc")
    assert ex.value.code == "E_EXPR_PARSE"
    assert "^" in (ex.value.hint or "")
    assert ex.value.fragment == "x == 'abc"


def test_trailing_garbage_is_rejected():
    with pytest.raises(TidyUserError) as ex:
        parse("x + ")
    assert ex.value.code == "E_EXPR_PARSE"


def test_empty_fragment_is_rejected():
    with pytest.raises(TidyUserError) as ex:
        parse("   ")
    assert ex.value.code == "E_EXPR_PARSE"


@pytest.mark.parametrize(
    "src",
    [
        "x + y * 2",
        "(x + y) * 2",
        "mean(x) - 1",
        "-(a + b)",
        "x > 1 & y <= 2",
        "2 ^ 3 ^ 2",
        "case_when(x > 1 => \"a\", true => \"b\")",
    ],
)
def test_unparse_is_stable(src):
    """unparse gives a canonical form that parses back to the same tree."""
    node = parse(src)
    assert parse(unparse(node)) == node
