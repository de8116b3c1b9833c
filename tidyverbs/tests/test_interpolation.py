import pytest

from tidyverbs import InvalidInterpolation, quote, sym, syms
from tidyverbs.interpolation import capture_env, resolve, resolve_all
from tidyverbs.parser import parse
from tidyverbs.syntax import Call, Identifier, Literal, VectorForm


def _resolved(src, env):
    return resolve(parse(src), env, source=src)


def test_scalar_is_spliced_as_literal():
    r = _resolved("x + !!k", {"k": 3})
    assert r.node == Call("+", (Identifier("x"), Literal(3)), infix=True)


def test_string_is_a_value_but_sym_is_a_column():
    assert _resolved("!!c", {"c": "a"}).node == Literal("a")
    assert _resolved("!!c", {"c": sym("a")}).node == Identifier("a")


def test_interpolated_call_is_evaluated_in_env():
    r = _resolved("x > !!(limit * 2)", {"limit": 5})
    assert r.node == Call(">", (Identifier("x"), Literal(10)), infix=True)

    r = _resolved("x > !!max(vals)", {"vals": [1, 7, 3]})
    assert r.node == Call(">", (Identifier("x"), Literal(7)), infix=True)


def test_quoted_fragment_splices_syntax():
    r = _resolved("!!q * 2", {"q": quote("a + 1")})
    inner = Call("+", (Identifier("a"), Literal(1)), infix=True)
    assert r.node == Call("*", (inner, Literal(2)), infix=True)


def test_top_level_sequence_expands_to_several_fragments():
    frags, any_n, any_rn = resolve_all([(parse("!!cols"), "!!cols")], {"cols": syms("a", "b")})
    assert [f.node for f in frags] == [Identifier("a"), Identifier("b")]
    assert all(f.source == "!!cols" for f in frags)
    assert (any_n, any_rn) == (False, False)


def test_sequence_in_single_position_becomes_a_vector():
    r = _resolved("x in !!allowed", {"allowed": [1, 2]})
    assert r.node == Call("in", (Identifier("x"), VectorForm((Literal(1), Literal(2)))), infix=True)


def test_heterogeneous_sequence_in_single_position_is_rejected():
    with pytest.raises(InvalidInterpolation) as ex:
        _resolved("x in !!allowed", {"allowed": [1, "a"]})
    assert getattr(ex.value, "code", None) == "E_INTERPOLATION"
    assert ex.value.fragment == "x in !!allowed"


def test_sequence_is_flattened_into_collection_calls():
    r = _resolved("c(!!cols, z)", {"cols": syms("a", "b")})
    assert r.node == Call("c", (Identifier("a"), Identifier("b"), Identifier("z")))

    r = _resolved("[!!cols]", {"cols": syms("a", "b")})
    assert r.node == VectorForm((Identifier("a"), Identifier("b")))


def test_unknown_name_is_an_interpolation_error():
    with pytest.raises(InvalidInterpolation) as ex:
        _resolved("x > !!nope", {})
    assert ex.value.code == "E_INTERPOLATION"


def test_unsupported_value_type_is_rejected():
    with pytest.raises(InvalidInterpolation):
        _resolved("x == !!obj", {"obj": object()})


def test_pseudo_function_flags_are_reported():
    r = _resolved("row_number() / n()", {})
    assert r.found_n and r.found_row_number

    r = _resolved("x + 1", {})
    assert not r.found_n and not r.found_row_number


def test_pseudo_function_inside_quoted_fragment_is_seen():
    r = _resolved("!!q", {"q": quote("n()")})
    assert r.found_n


def test_capture_env_sees_caller_locals():
    marker = 41

    def helper():
        return capture_env()

    env = helper()
    assert env["marker"] == 41


def test_sequence_spreads_over_any_call_arguments():
    r = _resolved("coalesce(!!cols, 0)", {"cols": syms("a", "b")})
    assert r.node == Call("coalesce", (Identifier("a"), Identifier("b"), Literal(0)))


def test_across_keeps_an_interpolated_selection_together():
    r = _resolved("across(!!cols, mean)", {"cols": syms("a", "b")})
    assert r.node == Call("across", (VectorForm((Identifier("a"), Identifier("b"))), Identifier("mean")))
