import logging

import pytest

from tidyverbs import NonBooleanPredicate, TidyUserError, UnsupportedExpression, VectorizationRegistry
from tidyverbs.engine.exprs import Apply, Broadcast, Col, First, FuncRef, GroupSize, Lit
from tidyverbs.parser import parse
from tidyverbs.rewriter import N_COLUMN, Assign, Pick, RewriteMode, Rewriter, SortKey


def _rw(*columns, **kw):
    return Rewriter(columns or ("a", "b", "c", "d"), **kw)


def test_element_wise_call_in_transform():
    out = _rw("x").rewrite(parse("x + 1"), RewriteMode.TRANSFORM)
    assert out == [Assign("x + 1", Broadcast("+", None, (Col("x"), Lit(1))))]


def test_aggregates_see_whole_columns():
    rw = _rw("x")
    (a,) = rw.rewrite(parse("m = mean(x)"), RewriteMode.AGGREGATE)
    assert a == Assign("m", Apply("mean", None, (Col("x"),)))

    # The outermost call of a summary is applied once per group.
    (a,) = rw.rewrite(parse("s = mean(x) + 1"), RewriteMode.AGGREGATE)
    assert a.expr == Apply("+", None, (Apply("mean", None, (Col("x"),)), Lit(1)))


def test_n_depends_on_mode():
    rw = _rw("x")
    assert rw.expr(parse("n()"), RewriteMode.AGGREGATE) == GroupSize()
    assert rw.expr(parse("n()"), RewriteMode.TRANSFORM) == Col(N_COLUMN)


def test_registry_membership_controls_vectorization():
    env = {"total": sum}
    plain = _rw("x", env=env).expr(parse("total(x)"), RewriteMode.TRANSFORM, top=True)
    assert isinstance(plain, Broadcast)

    registry = VectorizationRegistry().add("total")
    whole = _rw("x", env=env, registry=registry).expr(parse("total(x)"), RewriteMode.TRANSFORM, top=True)
    assert isinstance(whole, Apply)


def test_unknown_column_suggests_close_match():
    with pytest.raises(TidyUserError) as ex:
        _rw("x").rewrite(parse("y = xx + 1"), RewriteMode.TRANSFORM)
    assert getattr(ex.value, "code", None) == "E_UNKNOWN_COLUMN"
    assert "'x'" in ex.value.hint
    assert "!!xx" in ex.value.hint


def test_unknown_function():
    with pytest.raises(UnsupportedExpression) as ex:
        _rw("x").expr(parse("meen(x)"), RewriteMode.TRANSFORM)
    assert "mean" in ex.value.hint


def test_column_shadows_function_name():
    assert _rw("mean").expr(parse("mean"), RewriteMode.TRANSFORM) == Col("mean")


def test_bare_function_name_becomes_reference():
    e = _rw("x").expr(parse("accumulate(max, x)"), RewriteMode.TRANSFORM, top=True)
    assert e == Apply("accumulate", None, (FuncRef("max", None), Col("x")))


def test_across_names_outputs_column_then_function():
    out = _rw().rewrite(parse("across((a, b), (mean, std))"), RewriteMode.AGGREGATE)
    assert [a.name for a in out] == ["a_mean", "a_std", "b_mean", "b_std"]

    out = _rw("ax", "ay", "b").rewrite(parse("across(starts_with('a'), mean)"), RewriteMode.AGGREGATE)
    assert [a.name for a in out] == ["ax_mean", "ay_mean"]


def test_across_inside_expression_is_unsupported():
    with pytest.raises(UnsupportedExpression):
        _rw().rewrite(parse("across(a, mean) + 1"), RewriteMode.TRANSFORM)


def test_predicate_rejects_obvious_non_conditions():
    rw = _rw("x", "y")
    with pytest.raises(NonBooleanPredicate):
        rw.predicate(parse("x + 1"))
    with pytest.raises(NonBooleanPredicate) as ex:
        rw.predicate(parse("y = 1"))
    assert "y == 1" in ex.value.hint
    with pytest.raises(NonBooleanPredicate):
        rw.predicate(parse("3"))


def test_if_else_and_case_when_shape_errors():
    rw = _rw("x")
    with pytest.raises(UnsupportedExpression):
        rw.expr(parse("if_else(x > 1, 'a')"), RewriteMode.TRANSFORM)
    with pytest.raises(UnsupportedExpression):
        rw.expr(parse("case_when(x > 1, 'a')"), RewriteMode.TRANSFORM)


@pytest.mark.parametrize(
    "fragments, expected",
    [
        (["c", "a"], ["c", "a"]),
        (["-b"], ["a", "c", "d"]),
        (["b:d"], ["b", "c", "d"]),
        (["2", "-1"], ["b"]),
        (["(a, c)"], ["a", "c"]),
        (["ends_with('d')", "a"], ["d", "a"]),
        (["-(a, b)", "a"], ["c", "d", "a"]),
    ],
)
def test_selection_names(fragments, expected):
    out = _rw().selection([parse(f) for f in fragments])
    assert [p.name for p in out] == expected
    assert all(isinstance(p, Pick) for p in out)


def test_selection_with_rename_and_computation():
    out = _rw().selection([parse("z = a"), parse("s = a + b")])
    assert out[0] == Pick("z", "a")
    assert out[1] == Assign("s", Broadcast("+", None, (Col("a"), Col("b"))))


def test_selection_errors_carry_the_fragment():
    with pytest.raises(TidyUserError) as ex:
        _rw().selection([parse("a"), parse("9")], ["a", "9"])
    assert ex.value.code == "E_COLUMN_POSITION"
    assert ex.value.fragment == "9"


def test_order_keys():
    rw = _rw()
    assigns, keys = rw.order_keys([parse("desc(a)"), parse("b"), parse("desc(desc(c))")])
    assert assigns == []
    assert keys == [SortKey("a", True), SortKey("b"), SortKey("c")]

    assigns, keys = rw.order_keys([parse("desc(a + b)"), parse("-d")])
    assert [a.name for a in assigns] == ["__tidyverbs_key1", "__tidyverbs_key2"]
    assert keys == [SortKey("__tidyverbs_key1", True), SortKey("__tidyverbs_key2")]


def test_group_keys_may_compute():
    assigns, keys = _rw().group_keys([parse("a"), parse("k = b * 2"), parse("a")])
    assert keys == ["a", "k"]
    assert [a.name for a in assigns] == ["k"]


def test_earlier_summaries_read_as_scalars():
    rw = _rw("x")
    rw.add_columns("s", summary=True)
    assert rw.expr(parse("s"), RewriteMode.AGGREGATE) == First(Col("s"))
    assert rw.expr(parse("x"), RewriteMode.AGGREGATE) == Col("x")
    assert rw.expr(parse("s"), RewriteMode.TRANSFORM) == Col("s")


def test_registry_membership_is_exact_and_resettable():
    reg = VectorizationRegistry()
    assert "mean" in reg
    assert "Mean" not in reg and "sqrt" not in reg

    other = reg.copy().add("sqrt").discard("mean")
    assert "sqrt" in other and "mean" not in other
    assert "mean" in reg

    other.reset()
    assert "mean" in other and "sqrt" not in other
    with pytest.raises(TypeError):
        reg.add("")


def test_vectorization_decision_is_logged(caplog):
    caplog.set_level(logging.DEBUG, logger="tidyverbs.rewriter")
    _rw("x").rewrite(parse("m = mean(x) + 1"), RewriteMode.TRANSFORM)
    assert "mean(): whole columns (transform)" in caplog.text
    assert "+(): element-wise (transform)" in caplog.text
