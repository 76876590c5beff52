import json
import logging
import secrets
import socket
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)

CLIENT_NAME = "myousync"
CLIENT_VERSION = "0.1.0"
AUTH_KEY = "jelly_auth"
DEVICE_KEY = "jelly_device"


class JellyfinError(Exception):
    """Jellyfin rejected a request or could not be reached."""


def build_auth_header(params):
    return "MediaBrowser " + ", ".join(f'{key}="{value}"' for key, value in params)


class JellyfinClient:
    """Minimal Jellyfin REST client: login, audio item listing and playlist updates.

    The access token and device id are kept in ``kv`` (any object with
    ``get_key``/``set_key``/``delete_key``) so restarts reuse the same session.
    """

    def __init__(self, settings, kv, *, timeout_seconds: float = 30) -> None:
        self.settings = settings
        self.kv = kv
        self.timeout_seconds = timeout_seconds
        self._token: str | None = None
        self._session = requests.Session()
        retry = Retry(
            total=3,
            backoff_factor=1.0,
            status_forcelist=(500, 502, 503, 504),
            allowed_methods=frozenset({"GET"}),
        )
        adapter = HTTPAdapter(max_retries=retry)
        self._session.mount("https://", adapter)
        self._session.mount("http://", adapter)

    def _url(self, endpoint: str) -> str:
        return f"{self.settings.server}/{endpoint.lstrip('/')}"

    def _device_id(self) -> str:
        device_id = self.kv.get_key(DEVICE_KEY)
        if not device_id:
            device_id = secrets.token_hex(16)
            self.kv.set_key(DEVICE_KEY, device_id)
        return device_id

    def auth_header(self, token: str | None = None) -> str:
        params = [
            ("Client", CLIENT_NAME),
            ("Device", socket.gethostname() or "myousync-device"),
            ("Version", CLIENT_VERSION),
            ("DeviceId", self._device_id()),
        ]
        if token:
            params.append(("Token", token))
        return build_auth_header(params)

    def _request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        try:
            return self._session.request(method, self._url(endpoint), timeout=self.timeout_seconds, **kwargs)
        except requests.RequestException as exc:
            raise JellyfinError(f"Jellyfin request failed: {exc}") from exc

    def _stored_token(self) -> str | None:
        raw = self.kv.get_key(AUTH_KEY)
        if not raw:
            return None
        try:
            token = json.loads(raw).get("AccessToken")
        except (ValueError, AttributeError):
            logger.debug("Discarding unreadable stored Jellyfin auth")
            self.kv.delete_key(AUTH_KEY)
            return None
        if not token:
            self.kv.delete_key(AUTH_KEY)
            return None
        resp = self._request("GET", "/Users/Me", headers={"Authorization": self.auth_header(token)})
        if resp.status_code == 401:
            logger.debug("Stored Jellyfin token was revoked")
            self.kv.delete_key(AUTH_KEY)
            return None
        if not resp.ok:
            logger.debug("Jellyfin auth check failed: %s %s", resp.status_code, resp.text)
            return None
        return token

    def login(self) -> str:
        """Reuse the stored token when the server still accepts it, otherwise authenticate."""
        token = self._stored_token()
        if token:
            self._token = token
            return token
        resp = self._request(
            "POST",
            "/Users/AuthenticateByName",
            json={"Username": self.settings.user, "Pw": self.settings.password},
            headers={"Authorization": self.auth_header()},
        )
        if not resp.ok:
            raise JellyfinError(f"Auth failed: {resp.text}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise JellyfinError("Failed to parse Jellyfin auth response") from exc
        token = payload.get("AccessToken") if isinstance(payload, dict) else None
        if not token:
            raise JellyfinError("Jellyfin auth response has no AccessToken")
        self.kv.set_key(AUTH_KEY, json.dumps(payload))
        self._token = token
        logger.info("Logged in to Jellyfin as %s", self.settings.user)
        return token

    def _authorized(self) -> dict[str, str]:
        if not self._token:
            self.login()
        return {"Authorization": self.auth_header(self._token)}

    def list_audio_items(self) -> list[dict[str, Any]]:
        """Every audio file of the configured collection, as ``{"Id", "Path"}`` dicts."""
        resp = self._request(
            "GET",
            "/Items",
            params={
                "includeItemTypes": "Audio",
                "fields": "Path",
                "parentId": self.settings.collection,
                "recursive": "true",
                "enableImages": "false",
                "filters": "IsNotFolder",
                "locationType": "FileSystem",
            },
            headers=self._authorized(),
        )
        if not resp.ok:
            raise JellyfinError(f"Listing items failed with HTTP {resp.status_code}: {resp.text}")
        try:
            payload = resp.json()
        except ValueError as exc:
            raise JellyfinError("Failed to parse Jellyfin item listing") from exc
        items = payload.get("Items") if isinstance(payload, dict) else None
        return [item for item in items or [] if isinstance(item, dict) and item.get("Id") and item.get("Path")]

    def update_playlist(self, jelly_playlist_id: str, item_ids: list[str]) -> None:
        resp = self._request(
            "POST",
            f"/Playlists/{jelly_playlist_id}",
            json={"Ids": list(item_ids)},
            headers=self._authorized(),
        )
        if not resp.ok:
            raise JellyfinError(f"Updating playlist {jelly_playlist_id} failed with HTTP {resp.status_code}: {resp.text}")
