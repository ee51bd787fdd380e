import json
import logging

from pipelines.snapshot_reader import (
    FileSnapshotRepository,
    InMemorySnapshotRepository,
    SnapshotRef,
    filename_date,
    load_all,
    load_category,
    load_latest,
    newest_first,
)
from snapshot_schema import LISTINGS, RENTALS, SOLD


def test_filename_date():
    assert filename_date("sold-2024-03-01.json").isoformat() == "2024-03-01"
    assert filename_date("sold-initial.json") is None
    assert filename_date("sold-2024-13-40.json") is None


def test_newest_first_prefers_filename_dates():
    refs = [
        SnapshotRef(LISTINGS, "listings-2024-01-01.json", modified_at=500),
        SnapshotRef(LISTINGS, "listings-latest.json", modified_at=900),
        SnapshotRef(LISTINGS, "listings-2024-01-02.json", modified_at=100),
    ]
    names = [ref.name for ref in newest_first(refs)]
    assert names == ["listings-2024-01-02.json", "listings-2024-01-01.json", "listings-latest.json"]


def test_newest_first_falls_back_to_mtime():
    refs = [
        SnapshotRef(RENTALS, "a.json", modified_at=10),
        SnapshotRef(RENTALS, "b.json", modified_at=30),
        SnapshotRef(RENTALS, "c.json", modified_at=20),
    ]
    assert [ref.name for ref in newest_first(refs)] == ["b.json", "c.json", "a.json"]


def test_load_all_skips_corrupt_file(caplog, make_sold):
    repo = InMemorySnapshotRepository()
    for day in range(1, 6):
        name = f"sold-2024-01-0{day}.json"
        if day == 3:
            repo.add(SOLD, name, '[{"address": "broken"')
            continue
        records = [make_sold(f"{day}{i} Oak Road, Dublin 8", f"2024-01-0{day}", 200000 + i) for i in range(10)]
        repo.add(SOLD, name, records)

    with caplog.at_level(logging.WARNING):
        load = load_all(repo, SOLD)

    assert load.records == 40
    assert load.files_found == 5
    assert load.files_skipped == ["sold-2024-01-03.json"]
    assert len(load.files_read) == 4
    assert "sold-2024-01-03.json" in caplog.text


def test_load_latest_ignores_older_snapshot_when_newest_is_corrupt(caplog, make_listing):
    repo = InMemorySnapshotRepository()
    repo.add(LISTINGS, "listings-2024-01-01.json", [make_listing("stale"), make_listing("older")])
    repo.add(LISTINGS, "listings-2024-06-01.json", "not json")

    with caplog.at_level(logging.WARNING):
        load = load_latest(repo, LISTINGS)

    assert load.frame.empty
    assert load.files_read == []
    assert load.files_skipped == ["listings-2024-06-01.json"]
    assert "listings-2024-06-01.json" in caplog.text


def test_load_category_strategy_per_category(make_sold, make_rental):
    repo = InMemorySnapshotRepository()
    repo.add(SOLD, "sold-2024-01-01.json", [make_sold("a")])
    repo.add(SOLD, "sold-2024-02-01.json", [make_sold("b")])
    repo.add(RENTALS, "rentals-2024-01-01.json", [make_rental("x")])
    repo.add(RENTALS, "rentals-2024-02-01.json", [make_rental("y")])

    assert load_category(repo, SOLD).records == 2
    assert load_category(repo, RENTALS).frame["address"].tolist() == ["y"]


def test_missing_category_is_empty():
    load = load_latest(InMemorySnapshotRepository(), LISTINGS)
    assert load.frame.empty
    assert load.files_read == []
    assert load.summary() == {"files_found": 0, "files_read": 0, "files_skipped": 0, "records": 0}


def test_file_repository_reads_directories(tmp_path, make_sold, make_listing):
    sold_dir = tmp_path / "sold"
    sold_dir.mkdir()
    (sold_dir / "sold-2024-01-01.json").write_text(json.dumps([make_sold("1 Elm"), "junk", 5]), encoding="utf-8")
    (sold_dir / "sold-2024-01-02.json").write_text(json.dumps({"not": "an array"}), encoding="utf-8")
    (sold_dir / "notes.txt").write_text("ignored", encoding="utf-8")
    custom = tmp_path / "elsewhere"
    custom.mkdir()
    (custom / "listings-2024-01-01.json").write_text(json.dumps([make_listing("2 Elm")]), encoding="utf-8")

    repo = FileSnapshotRepository(tmp_path, {LISTINGS: custom})
    sold = load_all(repo, SOLD)
    assert sold.files_read == ["sold-2024-01-01.json"]
    assert sold.files_skipped == ["sold-2024-01-02.json"]
    assert sold.frame["address"].tolist() == ["1 Elm"]
    assert load_latest(repo, LISTINGS).frame["address"].tolist() == ["2 Elm"]
    assert repo.list_snapshots(RENTALS) == []
