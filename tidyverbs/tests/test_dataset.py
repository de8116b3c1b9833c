import petl as etl
import pytest

from tidyverbs import GroupedTable, Table, TidyUserError, from_columns, from_records, mutate


def test_from_records_fills_missing_keys():
    t = from_records([{"a": 1, "b": 2}, {"a": 3, "c": 4}])
    assert t.header == ("a", "b", "c")
    assert t.records() == [{"a": 1, "b": 2, "c": None}, {"a": 3, "b": None, "c": 4}]


def test_from_columns_length_mismatch():
    with pytest.raises(TidyUserError) as ex:
        from_columns({"a": [1, 2], "b": [1]})
    assert getattr(ex.value, "code", None) == "E_LENGTH_MISMATCH"


def test_partitions_sorted_with_missing_last():
    t = Table(etl.wrap([("k",), (None,), ("b",), ("a",), ("b",)]))
    g = GroupedTable(t.to_petl(), ["k"])
    assert g.partitions() == [(("a",), [2]), (("b",), [1, 3]), ((None,), [0])]


def test_grouped_table_checks_keys():
    table = etl.wrap([("k",), (1,)])
    with pytest.raises(TidyUserError) as ex:
        GroupedTable(table, ["nope"])
    assert ex.value.code == "E_UNKNOWN_COLUMN"
    with pytest.raises(TidyUserError) as ex:
        GroupedTable(table, [])
    assert ex.value.code == "E_GROUP_KEYS"


def test_verbs_accept_bare_petl_tables():
    out = mutate(etl.wrap([("a",), (1,)]), "b = a + 1")
    assert isinstance(out, Table)
    assert out.records() == [{"a": 1, "b": 2}]


def test_verbs_reject_other_inputs():
    with pytest.raises(TidyUserError) as ex:
        mutate(42, "b = 1")
    assert ex.value.code == "E_DATASET_TYPE"
