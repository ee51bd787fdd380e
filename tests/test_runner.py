import os
import sys

import pytest

import runner
from runner import (
    LockHeldError,
    build_config,
    exclusive_lock,
    latest_snapshot_paths,
    load_arguments,
    lock_owner,
    run_pipeline,
)


def test_build_config_applies_overrides():
    args = load_arguments(
        ["--data-dir", "/srv/data", "--skip-migrate", "--geocode-user-agent", "me@example.test", "--no-dated-copy"]
    )
    config = build_config(args)
    assert config["migrate"]["enabled"] is False
    assert config["geocode"]["enabled"] is True
    assert config["geocode"]["cache"] == "/srv/data/geocode_cache.json"
    assert config["consolidate"]["data_dir"] == "/srv/data"
    assert config["consolidate"]["dated_copy"] is False
    assert runner.DEFAULT_CONFIG["geocode"]["enabled"] is False


def test_consolidate_command_flags():
    config = build_config(load_arguments(["--output", "out.json", "--allow-empty", "--strict-monotonic"]))
    command = runner.build_consolidate_command(config["consolidate"])
    assert command[:2] == [sys.executable, "consolidate.py"]
    assert command[command.index("--output") + 1] == "out.json"
    assert "--allow-empty" in command
    assert "--strict-monotonic" in command
    assert "--dated-copy" in command


def test_exclusive_lock(tmp_path):
    lock = tmp_path / "locks" / ".data.json.lock"
    with exclusive_lock(lock):
        assert lock.exists()
        with pytest.raises(LockHeldError):
            with exclusive_lock(lock):
                pass
    assert not lock.exists()


def test_stale_lock_of_dead_process_is_reclaimed(tmp_path, monkeypatch):
    lock = tmp_path / ".data.json.lock"
    lock.write_text("999999\n", encoding="ascii")
    monkeypatch.setattr(runner, "process_alive", lambda pid: False)
    with exclusive_lock(lock):
        assert lock_owner(lock) == os.getpid()
    assert not lock.exists()


def test_lock_of_live_process_names_manual_removal(tmp_path):
    lock = tmp_path / ".data.json.lock"
    lock.write_text(f"{os.getpid()}\n", encoding="ascii")
    with pytest.raises(LockHeldError) as excinfo:
        with exclusive_lock(lock):
            pass
    assert f"process {os.getpid()}" in str(excinfo.value)
    assert "remove it manually" in str(excinfo.value)
    assert lock.exists()


def test_latest_snapshot_paths(tmp_path):
    listings = tmp_path / "listings"
    listings.mkdir()
    for name in ("listings-2024-01-01.json", "listings-2024-03-01.json"):
        (listings / name).write_text("[]", encoding="utf-8")
    paths = latest_snapshot_paths(tmp_path, ["listings", "rentals"])
    assert paths == [listings / "listings-2024-03-01.json"]


def test_run_pipeline_order_and_lock(tmp_path, monkeypatch):
    rentals = tmp_path / "data" / "rentals"
    rentals.mkdir(parents=True)
    (rentals / "rentals-2024-02-01.json").write_text("[]", encoding="utf-8")
    seen = []

    def fake_run(label, command, cwd):
        seen.append((label, (tmp_path / "data" / "consolidated" / ".data.json.lock").exists()))

    monkeypatch.setattr(runner, "run_command", fake_run)
    config = build_config(load_arguments(["--data-dir", "data", "--geocode-user-agent", "ua"]))
    run_pipeline(config, tmp_path)

    assert seen == [
        ("migrate", False),
        ("geocode (rentals-2024-02-01.json)", False),
        ("consolidate", True),
    ]
    assert not (tmp_path / "data" / "consolidated" / ".data.json.lock").exists()


def test_run_pipeline_rejects_unknown_geocode_category(tmp_path, monkeypatch):
    monkeypatch.setattr(runner, "run_command", lambda *args: None)
    config = build_config(load_arguments(["--geocode-user-agent", "ua", "--geocode-categories", "auctions"]))
    with pytest.raises(ValueError):
        run_pipeline(config, tmp_path)


def test_main_reports_failed_step(tmp_path, monkeypatch):
    def failing(label, command, cwd):
        raise RuntimeError(f"{label} command failed with exit code 1")

    monkeypatch.setattr(runner, "run_command", failing)
    assert runner.main(["--lock-file", str(tmp_path / "run.lock")]) == 1
    assert not (tmp_path / "run.lock").exists()
