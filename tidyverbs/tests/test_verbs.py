import logging

import petl as etl
import pytest

from tidyverbs import (
    GroupedTable,
    MixedSliceSign,
    NonBooleanPredicate,
    Table,
    TidyUserError,
    UnsupportedExpression,
    VectorizationRegistry,
    arrange,
    count,
    distinct,
    drop_na,
    filter,
    glimpse,
    group_by,
    mutate,
    option_context,
    pull,
    quote,
    rename,
    select,
    slice,
    summarize,
    sym,
    syms,
    tally,
    transmute,
    ungroup,
)


def _rows(ds):
    return [tuple(r) for r in ds]


@pytest.fixture
def kv():
    return Table(etl.wrap([("k", "v"), (2, "a"), (1, "b"), (2, "c"), (1, "d")]))


@pytest.fixture
def ab():
    return Table(etl.wrap([("a", "b"), (1, 2), (3, 4)]))


# ---------------- mutate / transmute / select / rename ----------------

def test_mutate_pseudo_functions_are_not_left_behind(ab):
    out = mutate(ab, "r = row_number()", "k = n()")
    assert _rows(out) == [("a", "b", "r", "k"), (1, 2, 1, 2), (3, 4, 2, 2)]


def test_mutate_sees_earlier_assignments(ab):
    out = mutate(ab, "s = a + b", "t = s * 10")
    assert list(pull(out, "t")) == [30, 70]


def test_mutate_keyword_values_are_fragments(ab):
    out = mutate(ab, label="'abc'", double="a * 2")
    assert _rows(out)[1:] == [(1, 2, "abc", 2), (3, 4, "abc", 6)]


def test_mutate_replaces_column_in_place(ab):
    out = mutate(ab, "a = a * 100")
    assert _rows(out) == [("a", "b"), (100, 2), (300, 4)]


def test_mutate_does_not_modify_its_input(ab):
    mutate(ab, "z = 1")
    assert ab.header == ("a", "b")


def test_mutate_grouped_n_and_window(kv):
    out = mutate(group_by(kv, "k"), "size = n()", "pos = row_number()")
    assert isinstance(out, GroupedTable)
    assert _rows(out)[1:] == [(2, "a", 2, 1), (1, "b", 2, 1), (2, "c", 2, 2), (1, "d", 2, 2)]

    out = mutate(group_by(kv, "k"), "prev = lag(v)")
    assert list(pull(out, "prev")) == [None, None, "a", "b"]


def test_case_when_without_fallback_gives_missing():
    d = Table(etl.wrap([("x",), (1,), (10,)]))
    out = mutate(d, "size = case_when(x > 5 => 'big')")
    assert pull(out, "size") == [None, "big"]

    out = mutate(d, "size = case_when(x > 5 => 'big', true => 'small')")
    assert pull(out, "size") == ["small", "big"]


def test_if_else_branches_must_agree():
    d = Table(etl.wrap([("x",), (1,), (10,)]))
    assert pull(mutate(d, "y = if_else(x > 5, 'hi', 'lo')"), "y") == ["lo", "hi"]
    with pytest.raises(TidyUserError) as ex:
        mutate(d, "y = if_else(x > 5, 'hi', 0)")
    assert getattr(ex.value, "code", None) == "E_BRANCH_TYPE"


def test_registry_switches_to_whole_column_calls():
    d = Table(etl.wrap([("values",), (1,), (2,), (3,)]))
    env = {"total": sum}
    with pytest.raises(TidyUserError) as ex:
        mutate(d, "t = total(values)", env=env)
    assert ex.value.code == "E_EVAL_FAILED"

    registry = VectorizationRegistry().add("total")
    out = mutate(d, "t = total(values)", env=env, registry=registry)
    assert pull(out, "t") == [6, 6, 6]


def test_interpolated_columns_become_separate_arguments():
    d = Table(etl.wrap([("a", "b"), (None, 1), (2, 3)]))
    cols = syms("a", "b")
    assert pull(mutate(d, "s = coalesce(!!cols)"), "s") == [1, 2]


def test_aggregate_of_an_empty_table_is_missing():
    empty = Table(etl.wrap([("x",)]))
    out = mutate(empty, "m = maximum(x)")
    assert _rows(out) == [("x", "m")]


def test_unknown_column_error_names_the_fragment():
    d = Table(etl.wrap([("x",), (1,)]))
    with pytest.raises(TidyUserError) as ex:
        mutate(d, "y = xx + 1")
    assert ex.value.code == "E_UNKNOWN_COLUMN"
    assert "'x'" in ex.value.hint
    assert ex.value.fragment == "y = xx + 1"


def test_non_string_fragment_is_rejected(ab):
    with pytest.raises(TidyUserError) as ex:
        mutate(ab, ["a"])
    assert ex.value.code == "E_FRAGMENT_TYPE"


def test_select_forms(ab):
    assert ab.header == ("a", "b")
    assert select(ab, "b", "a").header == ("b", "a")
    assert select(ab, "-a").header == ("b",)
    assert _rows(select(ab, "x = a", "s = a + b")) == [("x", "s"), (1, 3), (3, 7)]


def test_select_can_swap_column_names(ab):
    assert _rows(select(ab, "b = a", "a = b")) == [("b", "a"), (1, 2), (3, 4)]


def test_select_keeps_grouping_columns(kv, caplog):
    caplog.set_level(logging.INFO, logger="tidyverbs")
    out = select(group_by(kv, "k"), "v")
    assert out.header == ("k", "v")
    assert out.group_keys == ("k",)
    assert "adding missing grouping columns" in caplog.text


def test_transmute_keeps_only_named(ab):
    assert _rows(transmute(ab, "w = b", "c = a * 2")) == [("w", "c"), (2, 2), (4, 6)]


def test_rename_renames_group_keys(kv):
    out = rename(group_by(kv, "k"), key="k")
    assert out.header == ("key", "v")
    assert out.group_keys == ("key",)
    assert rename(kv, "value = v").header == ("k", "value")


def test_rename_rejects_expressions(kv):
    with pytest.raises(UnsupportedExpression) as ex:
        rename(kv, "w = v + 1")
    assert ex.value.fragment == "w = v + 1"


# ---------------- summarize ----------------

def test_summarize_by_group(kv):
    d = mutate(kv, "x = k * 10")
    out = summarize(group_by(d, "k"), "size = n()", "s = sum(x)", "m = s / size")
    assert isinstance(out, Table)
    assert _rows(out) == [("k", "size", "s", "m"), (1, 2, 20, 10.0), (2, 2, 40, 20.0)]


def test_summarize_ungrouped_is_one_row(ab):
    out = summarize(ab, "total = sum(a)", "rows = n()")
    assert _rows(out) == [("total", "rows"), (4, 2)]


def test_summarize_peels_last_grouping_level():
    d = Table(etl.wrap([("a", "b", "x"), (1, 1, 5), (1, 2, 6), (2, 1, 7)]))
    out = summarize(group_by(d, "a", "b"), "s = sum(x)")
    assert out.group_keys == ("a",)
    assert _rows(out) == [("a", "b", "s"), (1, 1, 5), (1, 2, 6), (2, 1, 7)]


def test_summarize_across(ab):
    out = summarize(ab, "across((a, b), (minimum, maximum))")
    assert _rows(out) == [("a_minimum", "a_maximum", "b_minimum", "b_maximum"), (1, 3, 2, 4)]


def test_summarize_rejects_per_row_results(ab):
    with pytest.raises(TidyUserError) as ex:
        summarize(ab, "y = lag(a)")
    assert ex.value.code == "E_SUMMARIZE_NOT_SCALAR"
    assert ex.value.fragment == "y = lag(a)"


def test_summarize_counts_rows_of_an_empty_table():
    empty = Table(etl.wrap([("x",)]))
    assert _rows(summarize(empty, "n = n()")) == [("n",), (0,)]
    assert _rows(count(empty)) == [("n",), (0,)]
    assert _rows(tally(empty)) == [("n",), (0,)]
    assert _rows(summarize(group_by(empty, "x"), "n = n()")) == [("x", "n")]


def test_summary_may_hold_a_list():
    d = Table(etl.wrap([("x",), (2,), (1,)]))
    assert pull(summarize(d, "q = quantile(x, [0, 1])"), "q") == [[1, 2]]


# ---------------- filter ----------------

def test_filter_ands_predicates(kv):
    assert _rows(filter(kv, "k > 1", "v != 'a'"))[1:] == [(2, "c")]
    assert _rows(filter(kv, "v in ['a', 'd']"))[1:] == [(2, "a"), (1, "d")]


def test_filter_membership_does_not_depend_on_row_count():
    two = Table(etl.wrap([("x",), (2,), (1,)]))
    assert pull(filter(two, "x in c(1, 2)"), "x") == [2, 1]
    three = Table(etl.wrap([("x",), (2,), (1,), (3,)]))
    assert pull(filter(three, "x in c(1, 2)"), "x") == [2, 1]


def test_filter_drops_rows_where_condition_is_missing():
    d = Table(etl.wrap([("x",), (1,), (None,), (3,)]))
    assert pull(filter(d, "x > 0"), "x") == [1, 3]
    assert pull(filter(d, "is_missing(x)"), "x") == [None]


def test_filter_rejects_non_boolean_conditions(ab):
    with pytest.raises(NonBooleanPredicate):
        filter(ab, "a + 1")
    with pytest.raises(NonBooleanPredicate) as ex:
        filter(ab, "b = 1")
    assert ex.value.fragment == "b = 1"
    with pytest.raises(NonBooleanPredicate) as ex:
        filter(ab, "a")
    assert getattr(ex.value, "code", None) == "E_NON_BOOLEAN_PREDICATE"


def test_filter_with_group_sizes():
    d = Table(etl.wrap([("k",), ("a",), ("b",), ("b",)]))
    assert pull(filter(group_by(d, "k"), "n() > 1"), "k") == ["b", "b"]


def test_filter_interpolates_caller_variables(kv):
    threshold = 1
    assert pull(filter(kv, "k > !!threshold"), "v") == ["a", "c"]

    col = sym("k")
    assert pull(filter(kv, "!!col == 1"), "v") == ["b", "d"]

    cond = quote("v == 'c'")
    assert pull(filter(kv, cond), "k") == [2]


# ---------------- grouping ----------------

def test_group_by_computed_key(kv):
    out = group_by(kv, "big = k > 1")
    assert out.group_keys == ("big",)
    assert out.header == ("k", "v", "big")


def test_group_by_replaces_and_ungroup_clears(kv):
    g = group_by(group_by(kv, "k"), "v")
    assert g.group_keys == ("v",)
    assert isinstance(ungroup(g), Table)
    assert not ungroup(g).is_grouped
    assert not group_by(g).is_grouped


# ---------------- slice / arrange ----------------

def test_slice_positions(kv):
    assert _rows(slice(kv, 1, 3))[1:] == [(2, "a"), (2, "c")]
    assert _rows(slice(kv, -1))[1:] == [(1, "d")]
    assert _rows(slice(kv, "2:n()"))[1:] == [(1, "b"), (2, "c"), (1, "d")]


def test_slice_per_group_in_key_order(kv):
    out = slice(group_by(kv, "k"), 1)
    assert _rows(out)[1:] == [(1, "b"), (2, "a")]
    assert out.group_keys == ("k",)


def test_slice_rejects_mixed_signs(kv):
    with pytest.raises(TidyUserError) as ex:
        slice(kv, 1, -1)
    assert ex.value.code == "E_SLICE_MIXED_SIGN"


def test_slice_rejects_mixed_signs_without_any_group():
    empty = Table(etl.wrap([("k", "v")]))
    with pytest.raises(MixedSliceSign):
        slice(group_by(empty, "k"), 1, -1)


def test_arrange_is_stable(kv):
    assert _rows(arrange(kv, "k"))[1:] == [(1, "b"), (1, "d"), (2, "a"), (2, "c")]
    assert _rows(arrange(kv, "desc(k)"))[1:] == [(2, "a"), (2, "c"), (1, "b"), (1, "d")]
    assert _rows(arrange(kv, "k", "desc(v)"))[1:] == [(1, "d"), (1, "b"), (2, "c"), (2, "a")]


def test_arrange_missing_values_last_both_ways():
    d = Table(etl.wrap([("x",), (None,), (2,), (1,)]))
    assert pull(arrange(d, "x"), "x") == [1, 2, None]
    assert pull(arrange(d, "desc(x)"), "x") == [2, 1, None]


def test_arrange_by_expression_keeps_grouping(kv):
    out = arrange(group_by(kv, "k"), "desc(k * 1)")
    assert out.group_keys == ("k",)
    assert out.header == ("k", "v")
    assert pull(out, "v") == ["a", "c", "b", "d"]


# ---------------- distinct / drop_na ----------------

def test_distinct():
    d = Table(etl.wrap([("a", "b"), (1, "x"), (1, "x"), (2, "y"), (1, "z")]))
    assert _rows(distinct(d))[1:] == [(1, "x"), (2, "y"), (1, "z")]
    # Other columns come from the first row of each combination.
    assert _rows(distinct(d, "a")) == [("a", "b"), (1, "x"), (2, "y")]


def test_distinct_keeps_grouping():
    d = Table(etl.wrap([("k", "v"), (1, "a"), (1, "a"), (2, "b")]))
    out = distinct(group_by(d, "k"))
    assert out.group_keys == ("k",)
    assert _rows(out)[1:] == [(1, "a"), (2, "b")]


def test_distinct_rejects_computed_columns():
    d = Table(etl.wrap([("a",), (1,)]))
    with pytest.raises(UnsupportedExpression):
        distinct(d, "b = a + 1")


def test_drop_na():
    d = Table(etl.wrap([("a", "b"), (1, None), (None, 2), (3, 4)]))
    assert _rows(drop_na(d))[1:] == [(3, 4)]
    assert _rows(drop_na(d, "a"))[1:] == [(1, None), (3, 4)]


def test_drop_na_keeps_grouping():
    d = Table(etl.wrap([("k", "v"), (1, None), (1, "a"), (2, "b")]))
    out = drop_na(group_by(d, "k"), "v")
    assert out.group_keys == ("k",)
    assert _rows(out)[1:] == [(1, "a"), (2, "b")]


# ---------------- pull / count / tally / glimpse ----------------

def test_pull(ab):
    assert pull(ab) == [2, 4]
    assert pull(ab, "a") == [1, 3]
    assert pull(ab, 1) == [1, 3]
    with pytest.raises(TidyUserError) as ex:
        pull(ab, -3)
    assert ex.value.code == "E_COLUMN_POSITION"


def test_count_and_tally():
    d = Table(etl.wrap([("k",), ("a",), ("b",), ("b",)]))
    assert _rows(count(d, "k")) == [("k", "n"), ("a", 1), ("b", 2)]
    assert _rows(count(d, "k", sort=True))[1:] == [("b", 2), ("a", 1)]
    assert _rows(count(d, name="rows")) == [("rows",), (3,)]
    assert _rows(tally(group_by(d, "k"))) == [("k", "n"), ("a", 1), ("b", 2)]


def test_count_keeps_existing_groups():
    d = Table(etl.wrap([("g", "k"), (1, "a"), (1, "a"), (2, "b")]))
    out = count(group_by(d, "g"), "k")
    assert out.group_keys == ("g",)
    assert _rows(out) == [("g", "k", "n"), (1, "a", 2), (2, "b", 1)]


def test_glimpse(kv):
    text = glimpse(group_by(kv, "k"))
    lines = text.splitlines()
    assert lines[0] == "Rows: 4"
    assert lines[1] == "Columns: 2"
    assert lines[2] == "Groups: k [2]"
    assert lines[3].startswith(".k")
    assert "int" in lines[3]


# ---------------- code option ----------------

def test_code_option_logs_the_plan(ab, caplog):
    caplog.set_level(logging.INFO, logger="tidyverbs")
    with option_context(code=True):
        mutate(ab, "c = a + b")
    assert "transform(" in caplog.text
    assert "broadcast('+'" in caplog.text

    caplog.clear()
    mutate(ab, "c = a + b")
    assert "transform(" not in caplog.text
