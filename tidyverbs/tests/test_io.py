import petl as etl
import pytest

from tidyverbs import Table, TidyUserError, group_by, pull, read_csv, write_csv


def test_read_csv_converts_numbers_and_missing(tmp_path):
    p = tmp_path / "people.csv"
    p.write_text("name,age,score\nada,36,1.5\nbob,NA,\n", encoding="utf-8")

    t = read_csv(str(p))
    assert t.header == ("name", "age", "score")
    assert pull(t, "age") == [36, None]
    assert pull(t, "score") == [1.5, None]
    assert pull(t, "name") == ["ada", "bob"]


def test_read_csv_can_keep_text(tmp_path):
    p = tmp_path / "codes.csv"
    p.write_text("code\n007\n", encoding="utf-8")
    assert pull(read_csv(str(p), numbers=False), "code") == ["007"]


def test_read_tsv_by_extension(tmp_path):
    p = tmp_path / "x.tsv"
    p.write_text("a\tb\n1\t2\n", encoding="utf-8")
    t = read_csv(str(p))
    assert [tuple(r) for r in t] == [("a", "b"), (1, 2)]


def test_read_csv_errors(tmp_path):
    with pytest.raises(TidyUserError) as ex:
        read_csv(str(tmp_path / "missing.csv"))
    assert getattr(ex.value, "code", None) == "E_SOURCE_NOT_FOUND"

    with pytest.raises(TidyUserError) as ex:
        read_csv(str(tmp_path / "data.bin"))
    assert ex.value.code == "E_SOURCE_TYPE_INFER"

    with pytest.raises(TidyUserError) as ex:
        read_csv(str(tmp_path / "data.bin"), type="parquet")
    assert ex.value.code == "E_SOURCE_TYPE_UNSUPPORTED"


def test_write_csv_round_trips_grouped_data(tmp_path):
    t = Table(etl.wrap([("k", "v"), ("a", 1), ("b", 2)]))
    out = tmp_path / "out.csv"
    write_csv(group_by(t, "k"), str(out))
    assert out.read_text(encoding="utf-8").splitlines() == ["k,v", "a,1", "b,2"]
    assert pull(read_csv(str(out)), "v") == [1, 2]


def test_write_csv_errors(tmp_path):
    t = Table(etl.wrap([("k",), ("a",)]))
    with pytest.raises(TidyUserError) as ex:
        write_csv(t, str(tmp_path / "nope" / "out.csv"))
    assert ex.value.code == "E_SINK_DIR_NOT_FOUND"

    with pytest.raises(TidyUserError) as ex:
        write_csv(t, str(tmp_path / "out.json"))
    assert ex.value.code == "E_SINK_TYPE_INFER"
