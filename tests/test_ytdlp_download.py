from __future__ import annotations

import os
from pathlib import Path

import pytest
from yt_dlp.utils import DownloadError

import download.ytdlp_client as ytdlp_client
from download.ytdlp_client import YtDlpClient, build_video_url
from engine.errors import DownloadTimeout, FetchFailure


def _client(**kwargs) -> YtDlpClient:
    return YtDlpClient(rate_seconds=0, **kwargs)


def test_build_video_url() -> None:
    assert build_video_url("abc") == "https://www.youtube.com/watch?v=abc"
    assert build_video_url("https://youtu.be/abc") == "https://youtu.be/abc"


def test_options_extract_audio_and_strip_offtopic_segments(tmp_path: Path) -> None:
    hook = lambda _status: None
    opts = _client(audio_format="opus", cookie_file="/tokens/cookies.txt").build_options(str(tmp_path), hook)
    keys = [pp["key"] for pp in opts["postprocessors"]]
    assert keys == ["SponsorBlock", "FFmpegExtractAudio", "ModifyChapters"]
    assert opts["postprocessors"][1]["preferredcodec"] == "opus"
    assert opts["postprocessors"][2]["remove_sponsor_segments"] == ["music_offtopic"]
    assert opts["outtmpl"] == os.path.join(str(tmp_path), "%(id)s.%(ext)s")
    assert opts["progress_hooks"] == [hook]
    assert opts["cookiefile"] == "/tokens/cookies.txt"
    assert opts["noplaylist"] is True


def _fake_ydl(behaviour):
    class FakeYDL:
        def __init__(self, opts) -> None:
            self.opts = opts

        def __enter__(self):
            return self

        def __exit__(self, *exc) -> bool:
            return False

        def extract_info(self, url, download=True):
            return behaviour(self.opts, url)

        def sanitize_info(self, info):
            return dict(info)

    return FakeYDL


def test_download_returns_finished_file_and_info(monkeypatch, tmp_path: Path) -> None:
    def _behaviour(opts, url):
        path = opts["outtmpl"].replace("%(id)s", "abc").replace("%(ext)s", "opus")
        Path(path).write_bytes(b"audio")
        return {"id": "abc", "title": "Song", "requested_downloads": [{"filepath": path}]}

    monkeypatch.setattr(ytdlp_client, "YoutubeDL", _fake_ydl(_behaviour))
    staging = tmp_path / "abc"

    result = _client().download_audio("abc", str(staging))

    assert result.path == str(staging / "abc.opus")
    assert result.info["title"] == "Song"


def test_download_errors_become_fetch_failure(monkeypatch, tmp_path: Path) -> None:
    def _behaviour(opts, url):
        raise DownloadError("ERROR: Video unavailable")

    monkeypatch.setattr(ytdlp_client, "YoutubeDL", _fake_ydl(_behaviour))

    with pytest.raises(FetchFailure) as excinfo:
        _client().download_audio("abc", str(tmp_path / "abc"))
    assert "Video unavailable" in excinfo.value.message
    assert not isinstance(excinfo.value, DownloadTimeout)


def test_missing_output_is_fetch_failure(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(ytdlp_client, "YoutubeDL", _fake_ydl(lambda opts, url: {"id": "abc"}))
    with pytest.raises(FetchFailure):
        _client().download_audio("abc", str(tmp_path / "abc"))


def test_progress_past_deadline_raises_timeout(monkeypatch, tmp_path: Path) -> None:
    def _behaviour(opts, url):
        for hook in opts["progress_hooks"]:
            hook({"status": "downloading"})
        return {"id": "abc"}

    monkeypatch.setattr(ytdlp_client, "YoutubeDL", _fake_ydl(_behaviour))
    client = _client(timeout_seconds=-1)

    with pytest.raises(DownloadTimeout):
        client.download_audio("abc", str(tmp_path / "abc"))
