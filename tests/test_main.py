"""Tests for the tablelog command line."""

import json

import pandas as pd
import pytest

from tablelog.main import cli


@pytest.fixture
def warehouse(tmp_path):
    root = str(tmp_path / "wh")
    assert cli(["-q", "create", root, "events", "id:long:required", "payload:string"]) == 0
    assert cli(["-q", "append", root, "events", "a", "b"]) == 0
    assert cli(["-q", "remove", root, "events", "a"]) == 0
    return root


def test_history(warehouse, capsys):
    capsys.readouterr()
    assert cli(["-q", "history", warehouse, "events"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 3
    assert lines[0].split()[0] == "0"
    assert "schema_change" in lines[0]
    assert "remove_files" in lines[2]


def test_plan_head_and_time_travel(warehouse, capsys):
    capsys.readouterr()
    cli(["-q", "plan", warehouse, "events"])
    assert capsys.readouterr().out.splitlines()[1:] == ["b"]
    cli(["-q", "plan", warehouse, "events", "--version", "1"])
    assert capsys.readouterr().out.splitlines()[1:] == ["a", "b"]


def test_schema(warehouse, capsys):
    capsys.readouterr()
    assert cli(["-q", "schema", warehouse, "events"]) == 0
    out = capsys.readouterr().out
    assert "id  long  required" in out
    assert "payload  string" in out


def test_errors_return_nonzero(warehouse, capsys):
    assert cli(["-q", "plan", warehouse, "events", "--version", "9"]) == 2
    assert cli(["-q", "remove", warehouse, "events", "ghost"]) == 2
    assert cli(["-q", "create", warehouse, "events", "id:long"]) == 2
    assert "error:" in capsys.readouterr().err


def test_invalid_arguments_return_nonzero(warehouse, capsys):
    capsys.readouterr()
    assert cli(["-q", "append", warehouse, "events", "b"]) == 2
    assert "already in version" in capsys.readouterr().err
    assert cli(["-q", "history", warehouse, "bad/name"]) == 2
    assert "Invalid table name" in capsys.readouterr().err


def test_read_commands_do_not_create_warehouse(tmp_path, capsys):
    missing = tmp_path / "nowhere"
    for command in ("history", "plan", "schema"):
        assert cli(["-q", command, str(missing), "events"]) == 2
    assert "does not exist" in capsys.readouterr().err
    assert not missing.exists()


def test_bad_column_spec(tmp_path):
    with pytest.raises(SystemExit):
        cli(["create", str(tmp_path), "t", "id"])


def test_simulate(tmp_path, capsys):
    config = tmp_path / "sim.toml"
    config.write_text(
        "[simulation]\nduration_ms = 2000\nseed = 1\nlatency.fixed_ms = 5.0\n"
        "[workload]\ninter_arrival.distribution = \"fixed\"\ninter_arrival.value = 50.0\n"
    )
    output = tmp_path / "out.parquet"
    assert cli(["-q", "simulate", str(config), "-o", str(output), "--no-progress"]) == 0
    summary = json.loads(capsys.readouterr().out)
    assert summary["total"] > 0
    assert len(pd.read_parquet(output)) == summary["total"]


def test_simulate_invalid_config(tmp_path, capsys):
    config = tmp_path / "bad.toml"
    config.write_text("[simulation]\nduration_ms = -1\n")
    assert cli(["-q", "simulate", str(config)]) == 1
    assert "duration_ms" in capsys.readouterr().err
