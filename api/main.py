#!/usr/bin/env python3
import asyncio
import json
import logging
import mimetypes
import os

import anyio
from fastapi import Body, FastAPI, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from app.jellyfin import build_jellyfin_mirror
from app.musicbrainz import build_recording_matcher
from download.worker import DownloadStage
from download.ytdlp_client import YtDlpClient
from engine.access_gate import AccessGate, UserStore
from engine.change_hub import ChangeHub
from engine.config import SyncSettings, build_settings, load_config
from engine.discovery import DiscoveryStage
from engine.errors import InvalidRequest, NotFound, SyncError, Unauthorized
from engine.logging_utils import log_event, setup_logging
from engine.membership import PlaylistMembership
from engine.models import SearchQuery, TrackMetadata
from engine.orchestrator import Orchestrator
from engine.paths import build_sync_paths, resolve_config_path, resolve_dir, TOKENS_DIR
from engine.record_store import RecordStore
from engine.sources import SourceStore, merge_sources
from engine.youtube import PlaylistEnumerator, build_youtube_clients
from metadata.library import MusicLibrary
from metadata.match_worker import MatchStage

APP_NAME = "myousync"


class LoginRequest(BaseModel):
    username: str
    password: str


class SearchQueryPayload(BaseModel):
    title: str
    artist: str | None = None
    album: str | None = None
    trackid: str | None = None


class TrackMetadataPayload(BaseModel):
    title: str
    artist: list[str] = []
    album: str | None = None
    recording_id: str | None = None


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
            default=str,
        ).encode("utf-8")


app = FastAPI(
    title=APP_NAME,
    description="Playlist to music library sync with live status updates.",
    default_response_class=SafeJSONResponse,
)


def _read_settings(config_path):
    if not os.path.exists(config_path):
        logging.warning("Config not found at %s; using defaults", config_path)
        return SyncSettings()
    return build_settings(load_config(config_path))


def build_services(settings, paths):
    """Create the store, gate, pipeline stages and orchestrator for one process."""
    store = RecordStore(paths.db_path)
    users = UserStore(paths.db_path)
    gate = AccessGate(users, secret=settings.auth_secret, token_ttl_hours=settings.token_ttl_hours)
    library = MusicLibrary(paths.music_dir, paths.temp_dir, file_mode=settings.file_mode, dir_mode=settings.dir_mode)
    sources = SourceStore(paths.db_path)
    membership = PlaylistMembership(paths.db_path)
    cookie_file = resolve_dir(settings.cookie_file, TOKENS_DIR) if settings.cookie_file else None
    downloader = YtDlpClient(
        rate_seconds=settings.ytdlp_rate_seconds,
        timeout_seconds=settings.ytdlp_timeout_seconds,
        socket_timeout=settings.ytdlp_socket_timeout,
        audio_format=settings.audio_format,
        cookie_file=cookie_file,
    )
    enumerator = PlaylistEnumerator(
        build_youtube_clients(settings.accounts),
        cookie_file=cookie_file,
        socket_timeout=settings.ytdlp_socket_timeout,
    )
    def _sources():
        return merge_sources(settings.sources, sources.enabled_sources())

    discovery = DiscoveryStage(store, enumerator, _sources, membership=membership)
    orchestrator = Orchestrator(
        store,
        gate,
        library,
        download_stage=DownloadStage(
            store,
            downloader,
            temp_dir=paths.temp_dir,
            staging_dir=paths.staging_dir,
        ),
        match_stage=MatchStage(
            store,
            build_recording_matcher(settings, paths.musicbrainz_cache),
            library,
        ),
        discovery=discovery,
        jellyfin=build_jellyfin_mirror(settings, store, library, membership, _sources),
        download_workers=settings.download_workers,
        match_workers=settings.match_workers,
        claim_timeout=settings.command_claim_timeout_seconds,
    )
    hub = ChangeHub(store, batch_window=settings.batch_window_ms / 1000.0, max_pending=settings.max_pending)
    return store, gate, library, orchestrator, hub


@app.on_event("startup")
async def startup():
    app.state.config_path = resolve_config_path(os.environ.get("MYOUSYNC_CONFIG"))
    settings = _read_settings(app.state.config_path)
    paths = build_sync_paths(temp_dir=settings.temp_dir, music_dir=settings.music_dir)
    setup_logging(paths.log_dir)
    app.state.settings = settings
    app.state.paths = paths
    (
        app.state.store,
        app.state.gate,
        app.state.library,
        app.state.orchestrator,
        app.state.hub,
    ) = build_services(settings, paths)
    app.state.orchestrator.start(
        discovery_interval_minutes=settings.discovery_interval_minutes,
        sweep_interval_minutes=settings.sweep_interval_minutes,
        run_on_startup=settings.run_on_startup,
        jellyfin_interval_minutes=settings.jellyfin.sync_interval_minutes if settings.jellyfin else None,
    )
    log_event(
        logging.INFO,
        "server_started",
        config=app.state.config_path,
        sources=len(settings.sources),
        download_workers=settings.download_workers,
        match_workers=settings.match_workers,
    )


@app.on_event("shutdown")
async def shutdown():
    hub = getattr(app.state, "hub", None)
    if hub:
        hub.close_all()
    orchestrator = getattr(app.state, "orchestrator", None)
    if orchestrator:
        await anyio.to_thread.run_sync(orchestrator.stop)
    logging.shutdown()


@app.exception_handler(SyncError)
async def sync_error_handler(_request: Request, exc: SyncError):
    body = {"error": exc.message}
    reason = getattr(exc, "reason", None)
    if reason:
        body["reason"] = reason
    if exc.status_code >= 500:
        logging.error("Request failed: %s", exc.message)
    return SafeJSONResponse(body, status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError):
    return SafeJSONResponse({"error": "Invalid request body", "detail": exc.errors()}, status_code=422)


def _bearer_token(request: Request):
    header = request.headers.get("authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def _parse_payload(cls, payload):
    if payload is None:
        return None
    try:
        return cls.from_dict(payload.model_dump())
    except ValueError as exc:
        raise InvalidRequest(str(exc)) from exc


def _iter_file(path, chunk_size=1024 * 1024):
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


@app.post("/login")
async def login(payload: LoginRequest):
    token = await anyio.to_thread.run_sync(app.state.gate.login, payload.username, payload.password)
    return token


@app.post("/login/check")
async def login_check(request: Request):
    token = _bearer_token(request)
    if not await anyio.to_thread.run_sync(app.state.gate.check, token):
        raise Unauthorized("Invalid token")
    return "Ok"


@app.post("/video/{video_id}/query")
async def set_override_query(request: Request, video_id: str, payload: SearchQueryPayload | None = Body(None)):
    query = _parse_payload(SearchQuery, payload)
    item = await anyio.to_thread.run_sync(
        app.state.orchestrator.override_query, _bearer_token(request), video_id, query
    )
    return item.to_dict()


@app.post("/video/{video_id}/result")
async def set_override_result(request: Request, video_id: str, payload: TrackMetadataPayload | None = Body(None)):
    result = _parse_payload(TrackMetadata, payload)
    item = await anyio.to_thread.run_sync(
        app.state.orchestrator.override_result, _bearer_token(request), video_id, result
    )
    return item.to_dict()


@app.post("/video/{video_id}/retry_fetch")
async def retry_fetch(request: Request, video_id: str):
    item = await anyio.to_thread.run_sync(app.state.orchestrator.retry_fetch, _bearer_token(request), video_id)
    return item.to_dict()


@app.post("/video/{video_id}/delete")
async def delete_video(request: Request, video_id: str):
    item, pending = await anyio.to_thread.run_sync(
        app.state.orchestrator.delete, _bearer_token(request), video_id
    )
    return {"item": item.to_dict(), "pending": pending}


@app.post("/reindex")
async def reindex(request: Request, video_ids: list[str] = Body(...)):
    enqueued = await anyio.to_thread.run_sync(app.state.orchestrator.reindex, _bearer_token(request), video_ids)
    return {"enqueued": enqueued}


@app.post("/trigger_sync")
async def trigger_sync(request: Request):
    await anyio.to_thread.run_sync(app.state.orchestrator.trigger_sync, _bearer_token(request))
    return {"status": "started"}


@app.get("/video/{video_id}/preview")
async def preview(video_id: str):
    item = app.state.store.require(video_id)
    path = await anyio.to_thread.run_sync(app.state.library.locate, item)
    if not path or not os.path.isfile(path):
        raise NotFound(f"No audio file for {video_id}", item_id=video_id)
    content_type, _ = mimetypes.guess_type(path)
    return StreamingResponse(_iter_file(path), media_type=content_type or "application/octet-stream")


async def _collect_sender(task):
    """Cancel the delta pump and return the send failure it ended with, if any."""
    task.cancel()
    (outcome,) = await asyncio.gather(task, return_exceptions=True)
    if isinstance(outcome, Exception):
        log_event(logging.WARNING, "live_channel_send_failed", error=str(outcome) or outcome.__class__.__name__)
        return outcome
    return None


@app.websocket("/ws")
async def live_updates(websocket: WebSocket, token: str | None = Query(None)):
    """Snapshot-then-delta channel; any text message is treated as a token."""
    await websocket.accept()
    subscriber = None
    sender = None

    async def _pump(sub):
        while True:
            message = await sub.next_message()
            if message is None:
                return
            await websocket.send_json(message)

    async def _unlock(candidate):
        nonlocal subscriber, sender
        if subscriber is not None:
            return
        if not await anyio.to_thread.run_sync(app.state.gate.check, candidate):
            await websocket.send_json({"type": "unauthorized"})
            return
        subscriber = app.state.hub.attach(asyncio.get_running_loop())
        sender = asyncio.create_task(_pump(subscriber))

    try:
        if token:
            await _unlock(token)
        while True:
            text = await websocket.receive_text()
            await _unlock(text.strip())
    except WebSocketDisconnect:
        logging.info("Live channel disconnected")
    finally:
        if subscriber is not None:
            subscriber.close()
        if sender is not None:
            await _collect_sender(sender)
