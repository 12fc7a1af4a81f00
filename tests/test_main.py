"""Tests for the command line entry point."""
import pytest

from roam_index.config import config
from roam_index.main import main, parse_args


@pytest.fixture
def cli_config(notes_dir, monkeypatch):
    """Point the global config at ``notes_dir`` with an in-memory database."""
    monkeypatch.setattr(config, "directory", notes_dir)
    monkeypatch.setattr(config, "database_path", config.database_path)
    monkeypatch.setattr(config, "in_memory_db", True)
    return config


@pytest.fixture
def notes(write_note):
    return {
        "a": write_note("a.org", "#+title: Alpha\n#+roam_key: cite:alpha\nSee [[file:b.org][B]].\n"),
        "b": write_note("b.org", "#+title: Beta\n"),
    }


def test_parse_args():
    args = parse_args(["--directory", "/tmp/n", "backlinks", "x.org"])
    assert args.directory == "/tmp/n"
    assert args.command == "backlinks"
    assert args.path == "x.org"


def test_build(cli_config, notes, capsys):
    assert main(["build"]) == 0
    assert "files: 2, links: 1, titles: 2, refs: 1, deleted: 0" in capsys.readouterr().out


def test_backlinks(cli_config, notes, capsys):
    assert main(["backlinks", str(notes["b"])]) == 0
    out = capsys.readouterr().out.strip()
    assert out.startswith(f"{notes['a']}:")
    assert out.endswith("See [[file:b.org][B]].")


def test_completions(cli_config, notes, capsys):
    assert main(["completions"]) == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines == [f"Alpha\t{notes['a']}", f"Beta\t{notes['b']}"]


def test_resolve(cli_config, notes, capsys):
    assert main(["resolve", "alpha"]) == 0
    assert capsys.readouterr().out.strip() == str(notes["a"])
    assert main(["resolve", "missing"]) == 1


def test_missing_directory(cli_config, tmp_path, monkeypatch):
    monkeypatch.setattr(config, "directory", tmp_path / "absent")
    assert main(["build"]) == 2


def test_directory_option_updates_config(cli_config, notes, tmp_path, capsys):
    other = tmp_path / "other"
    other.mkdir()
    assert main(["--directory", str(other), "completions"]) == 0
    assert capsys.readouterr().out == ""
    assert config.directory == other


def test_damaged_database_is_recreated(cli_config, notes, tmp_path, monkeypatch, capsys):
    db_path = tmp_path / "db" / "index.db"
    db_path.parent.mkdir()
    db_path.write_bytes(b"this is not a database file\n" * 200)
    monkeypatch.setattr(config, "in_memory_db", False)
    monkeypatch.setattr(config, "database_path", db_path)

    assert main(["build"]) == 0
    assert "files: 2" in capsys.readouterr().out
