"""Playlist enumeration through the YouTube Data API with a yt-dlp fallback."""

import json
import logging
import re
from dataclasses import dataclass

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from yt_dlp import YoutubeDL

from engine.errors import DiscoveryFailure
from engine.paths import TOKENS_DIR, resolve_dir

_GOOGLE_AUTH_RETRY = re.compile(r"Refreshing credentials due to a 401 response\. Attempt (\d+)/(\d+)\.")


def _install_google_auth_filter():
    def _rewrite(record):
        msg = record.getMessage()
        match = _GOOGLE_AUTH_RETRY.search(msg)
        if match:
            attempt, total = match.groups()
            record.msg = f"Signing into Google OAuth. Attempt {attempt}/{total}."
            record.args = ()
        return True

    for logger_name in ("google.auth.transport.requests", "google.auth.credentials"):
        logger = logging.getLogger(logger_name)
        if getattr(logger, "_myousync_filter", False):
            continue
        logger.addFilter(_rewrite)
        logger.setLevel(logging.WARNING)
        logger._myousync_filter = True


_install_google_auth_filter()


@dataclass(frozen=True)
class PlaylistEntry:
    video_id: str
    title: str | None = None
    channel: str | None = None


def load_credentials(token_path):
    with open(token_path, "r") as f:
        data = json.load(f)
    return Credentials(
        token=data.get("token"),
        refresh_token=data.get("refresh_token"),
        token_uri=data.get("token_uri"),
        client_id=data.get("client_id"),
        client_secret=data.get("client_secret"),
        scopes=data.get("scopes"),
    )


def youtube_service(creds):
    return build("youtube", "v3", credentials=creds, cache_discovery=False)


def build_youtube_clients(accounts):
    clients = {}
    if not isinstance(accounts, dict):
        return clients
    for name, acc in accounts.items():
        token_path = (acc or {}).get("token")
        if not token_path:
            logging.error("Account %s has no 'token' path configured; skipping", name)
            continue
        try:
            creds = load_credentials(resolve_dir(token_path, TOKENS_DIR))
            if creds and creds.expired and creds.refresh_token:
                creds.refresh(Request())
                logging.info("OAuth refreshed for account=%s", name)
            clients[name] = youtube_service(creds)
        except RefreshError as exc:
            logging.error("OAuth refresh failed for account %s: %s", name, exc)
        except (OSError, ValueError) as exc:
            logging.error("Failed to initialize YouTube client for account %s: %s", name, exc)
    return clients


def get_playlist_videos(youtube, playlist_id):
    videos = []
    page = None
    while True:
        resp = youtube.playlistItems().list(
            part="snippet,contentDetails",
            playlistId=playlist_id,
            maxResults=50,
            pageToken=page,
        ).execute()
        for item in resp.get("items", []):
            snippet = item.get("snippet") or {}
            video_id = (item.get("contentDetails") or {}).get("videoId")
            if not video_id:
                continue
            videos.append(
                PlaylistEntry(
                    video_id=video_id,
                    title=snippet.get("title"),
                    channel=snippet.get("videoOwnerChannelTitle"),
                )
            )
        page = resp.get("nextPageToken")
        if not page:
            break
    return videos


def get_playlist_videos_fallback(playlist_id, *, cookie_file=None, socket_timeout=30):
    playlist_url = f"https://www.youtube.com/playlist?list={playlist_id}"
    opts = {
        "skip_download": True,
        "extract_flat": True,
        "quiet": True,
        "no_warnings": True,
        "socket_timeout": socket_timeout,
    }
    if cookie_file:
        opts["cookiefile"] = cookie_file
    with YoutubeDL(opts) as ydl:
        info = ydl.extract_info(playlist_url, download=False)
    videos = []
    for entry in (info or {}).get("entries") or []:
        if not entry:
            continue
        vid = entry.get("id") or entry.get("url")
        if vid:
            videos.append(
                PlaylistEntry(
                    video_id=vid,
                    title=entry.get("title"),
                    channel=entry.get("channel") or entry.get("uploader"),
                )
            )
    return videos


class PlaylistEnumerator:
    """Lists the entries of a playlist, preferring the authenticated API client."""

    def __init__(self, clients=None, *, cookie_file=None, socket_timeout=30):
        self.clients = clients or {}
        self.cookie_file = cookie_file
        self.socket_timeout = socket_timeout

    def list_entries(self, source):
        client = self.clients.get(source.account) if source.account else None
        if client is None and len(self.clients) == 1 and not source.account:
            client = next(iter(self.clients.values()))
        if client is not None:
            try:
                return get_playlist_videos(client, source.playlist_id)
            except HttpError as exc:
                logging.error("Playlist fetch failed %s: %s", source.playlist_id, exc)
            except RefreshError as exc:
                logging.error("OAuth refresh failed while fetching playlist %s: %s", source.playlist_id, exc)
        try:
            return get_playlist_videos_fallback(
                source.playlist_id,
                cookie_file=self.cookie_file,
                socket_timeout=self.socket_timeout,
            )
        except Exception as exc:
            raise DiscoveryFailure(f"Playlist {source.playlist_id} could not be enumerated: {exc}") from exc
