"""Music library layout: archive moves, deletes and lookup by YouTube id."""

import logging
import os
import threading

from engine.errors import ArchiveFailure
from engine.fileops import AUDIO_EXTENSIONS, atomic_move, find_scratch_file, remove_empty_parents, resolve_collision_path
from engine.logging_utils import log_event
from engine.paths import is_within
from metadata.naming import build_library_relative_path
from metadata.tagger import read_youtube_id

logger = logging.getLogger(__name__)


class MusicLibrary:
    def __init__(self, music_dir, temp_dir, *, file_mode=None, dir_mode=None):
        self.music_dir = os.path.abspath(music_dir)
        self.temp_dir = os.path.abspath(temp_dir)
        self.file_mode = file_mode
        self.dir_mode = dir_mode
        self._index = {}
        self._index_lock = threading.Lock()

    def destination_for(self, result, ext):
        return os.path.join(self.music_dir, build_library_relative_path(result, ext))

    def in_library(self, path):
        return bool(path) and is_within(path, self.music_dir)

    def archive(self, src, result, video_id):
        """Move a tagged file to its library path and return the new location."""
        ext = os.path.splitext(src)[1]
        dest = self.destination_for(result, ext)
        if os.path.abspath(src) == dest:
            return dest
        if os.path.exists(dest):
            if read_youtube_id(dest) == video_id:
                os.remove(dest)
            else:
                dest = resolve_collision_path(dest)
        try:
            atomic_move(src, dest)
        except OSError as exc:
            raise ArchiveFailure(f"Failed to move file into library: {exc}", item_id=video_id) from exc
        self._apply_modes(dest)
        remove_empty_parents(src, [self.music_dir, self.temp_dir])
        with self._index_lock:
            self._index[video_id] = dest
        logger.info("Archived %s to %s", video_id, dest)
        return dest

    def _apply_modes(self, dest):
        """Set the configured permissions on an archived file and its folders below the library root."""
        targets = []
        if self.dir_mode is not None:
            folder = os.path.dirname(dest)
            while folder != self.music_dir and is_within(folder, self.music_dir):
                targets.append((folder, self.dir_mode))
                folder = os.path.dirname(folder)
        if self.file_mode is not None:
            targets.append((dest, self.file_mode))
        for path, mode in targets:
            try:
                os.chmod(path, mode)
            except OSError as exc:
                log_event(logging.WARNING, "chmod_failed", path=path, mode=oct(mode), error=str(exc))

    def remove(self, path, video_id=None):
        if not path or not os.path.exists(path):
            return False
        os.remove(path)
        remove_empty_parents(path, [self.music_dir, self.temp_dir])
        if video_id:
            with self._index_lock:
                self._index.pop(video_id, None)
        logger.info("Removed %s", path)
        return True

    def find_archived(self, video_id):
        """Find a library file whose ``youtube_id`` tag is ``video_id``."""
        with self._index_lock:
            cached = self._index.get(video_id)
        if cached and os.path.exists(cached):
            return cached
        found = None
        for root, _dirs, files in os.walk(self.music_dir):
            for name in files:
                if os.path.splitext(name)[1].lower() not in AUDIO_EXTENSIONS:
                    continue
                path = os.path.join(root, name)
                tagged_id = read_youtube_id(path)
                if not tagged_id:
                    continue
                with self._index_lock:
                    self._index[tagged_id] = path
                if tagged_id == video_id:
                    found = path
        return found

    def locate(self, item):
        """Current audio file for ``item``: recorded path, scratch copy, then library scan."""
        if item.file_path and os.path.exists(item.file_path):
            return item.file_path
        scratch = find_scratch_file(self.temp_dir, item.id)
        if scratch:
            return scratch
        return self.find_archived(item.id)
