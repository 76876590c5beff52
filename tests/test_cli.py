from __future__ import annotations

from pathlib import Path

import pytest

import myousync
from engine.access_gate import UserStore
from engine.sources import SourceStore


@pytest.fixture()
def db_path(monkeypatch, tmp_path: Path) -> Path:
    path = tmp_path / "database" / "myousync.sqlite"
    monkeypatch.setattr(myousync, "DB_PATH", path)
    monkeypatch.setattr(myousync, "setup_logging", lambda _log_dir: None)
    return path


def test_user_add_and_remove(db_path: Path, capsys) -> None:
    assert myousync.main(["user", "add", "alice", "wonderland"]) == 0
    assert "User alice saved" in capsys.readouterr().out
    assert UserStore(str(db_path)).get_password_hash("alice") is not None

    assert myousync.main(["user", "remove", "alice"]) == 0
    assert UserStore(str(db_path)).get_password_hash("alice") is None
    assert myousync.main(["user", "remove", "alice"]) == 1


def test_user_add_requires_password(db_path: Path) -> None:
    assert myousync.main(["user", "add", "alice", ""]) == 2
    with pytest.raises(SystemExit):
        myousync.main(["user", "add", "alice"])


def test_sources_commands(db_path: Path, capsys) -> None:
    assert myousync.main(["sources", "add", "PL1", "Morning Mix"]) == 0
    assert [source.playlist_id for source in SourceStore(str(db_path)).enabled_sources()] == ["PL1"]
    capsys.readouterr()

    assert myousync.main(["sources", "list"]) == 0
    assert capsys.readouterr().out.strip() == "PL1\tMorning Mix\tenabled"

    assert myousync.main(["sources", "remove", "PL1"]) == 0
    assert myousync.main(["sources", "remove", "PL1"]) == 1


def test_sources_add_links_jellyfin_playlist(db_path: Path, capsys) -> None:
    assert myousync.main(["sources", "add", "PL1", "Mix", "--jelly-playlist", "J1"]) == 0
    assert "Playlist PL1 registered (Jellyfin playlist J1)" in capsys.readouterr().out
    assert SourceStore(str(db_path)).enabled_sources()[0].jelly_playlist_id == "J1"

    assert myousync.main(["sources", "list"]) == 0
    assert capsys.readouterr().out.strip() == "PL1\tMix\tenabled\tjellyfin:J1"


def test_run_rejects_invalid_config(db_path: Path, tmp_path: Path) -> None:
    config = tmp_path / "config.json"
    config.write_text('{"workers": {"download": 0}}')
    assert myousync.main(["run", str(config)]) == 2


def test_run_starts_uvicorn_with_config(db_path: Path, monkeypatch, tmp_path: Path) -> None:
    import uvicorn

    config = tmp_path / "config.json"
    config.write_text('{"web": {"port": 4000}}')
    calls = []
    monkeypatch.setattr(uvicorn, "run", lambda app, **kwargs: calls.append((app, kwargs)))
    monkeypatch.setenv("MYOUSYNC_CONFIG", "unset")

    assert myousync.main(["run", str(config), "--host", "127.0.0.1"]) == 0

    assert calls == [("api.main:app", {"host": "127.0.0.1", "port": 4000, "log_level": "info"})]
    assert myousync.os.environ["MYOUSYNC_CONFIG"] == str(config)
