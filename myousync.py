#!/usr/bin/env python3
"""Command line entry: run the server, manage users and registered playlists."""

import argparse
import logging
import os
import sys

from engine.access_gate import UserStore
from engine.config import load_config, validate_config
from engine.logging_utils import setup_logging
from engine.paths import DB_PATH, LOG_DIR, ensure_dir, resolve_config_path
from engine.sources import SourceStore


def _db_path():
    ensure_dir(os.path.dirname(str(DB_PATH)))
    return str(DB_PATH)


def cmd_run(args):
    import uvicorn

    config_path = resolve_config_path(args.config)
    host, port = "0.0.0.0", 3001
    if os.path.exists(config_path):
        config = load_config(config_path)
        errors = validate_config(config)
        if errors:
            for error in errors:
                logging.error("Invalid config: %s", error)
            return 2
        web = config.get("web") or {}
        host = web.get("host") or host
        port = web.get("port") or port
    else:
        logging.warning("Config file not found: %s (using defaults)", config_path)
    os.environ["MYOUSYNC_CONFIG"] = config_path
    uvicorn.run("api.main:app", host=args.host or host, port=args.port or port, log_level="info")
    return 0


def cmd_user(args):
    users = UserStore(_db_path())
    if args.action == "add":
        if not args.password:
            logging.error("Password must not be empty")
            return 2
        users.add_user(args.name, args.password)
        print(f"User {args.name} saved")
        return 0
    if users.remove_user(args.name):
        print(f"User {args.name} removed")
        return 0
    logging.error("User not found: %s", args.name)
    return 1


def cmd_sources(args):
    sources = SourceStore(_db_path())
    if args.action == "add":
        sources.add(args.playlist_id, args.name, args.jelly_playlist)
        linked = f" (Jellyfin playlist {args.jelly_playlist})" if args.jelly_playlist else ""
        print(f"Playlist {args.playlist_id} registered{linked}")
        return 0
    if args.action == "remove":
        if sources.remove(args.playlist_id):
            print(f"Playlist {args.playlist_id} removed")
            return 0
        logging.error("Playlist not registered: %s", args.playlist_id)
        return 1
    for row in sources.list():
        state = "enabled" if row["enabled"] else "disabled"
        line = f"{row['playlist_id']}\t{row['name'] or ''}\t{state}"
        if row["jelly_playlist_id"]:
            line += f"\tjellyfin:{row['jelly_playlist_id']}"
        print(line)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="myousync")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start the sync server.")
    run.add_argument("config", nargs="?", help="Config file (default: <config dir>/config.json).")
    run.add_argument("--host")
    run.add_argument("--port", type=int)
    run.set_defaults(func=cmd_run)

    user = sub.add_parser("user", help="Manage login users.")
    user_sub = user.add_subparsers(dest="action", required=True)
    user_add = user_sub.add_parser("add")
    user_add.add_argument("name")
    user_add.add_argument("password")
    user_remove = user_sub.add_parser("remove")
    user_remove.add_argument("name")
    user.set_defaults(func=cmd_user)

    sources = sub.add_parser("sources", help="Manage registered playlists.")
    sources_sub = sources.add_subparsers(dest="action", required=True)
    add = sources_sub.add_parser("add")
    add.add_argument("playlist_id")
    add.add_argument("name", nargs="?")
    add.add_argument("--jelly-playlist", help="Jellyfin playlist id to mirror this playlist into.")
    remove = sources_sub.add_parser("remove")
    remove.add_argument("playlist_id")
    sources_sub.add_parser("list")
    sources.set_defaults(func=cmd_sources)
    return parser


def main(argv=None):
    setup_logging(LOG_DIR)
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
