import logging
import os

from mutagen import File as MutagenFile
from mutagen import MutagenError
from mutagen.id3 import ID3, ID3NoHeaderError, TALB, TIT2, TPE1, TPE2, TXXX, UFID
from mutagen.mp4 import MP4

from engine.errors import ArchiveFailure

YOUTUBE_ID_KEY = "youtube_id"
MUSICBRAINZ_OWNER = "http://musicbrainz.org"
MP4_TRACKID_KEY = "MusicBrainz Track Id"
VORBIS_TRACKID_KEY = "musicbrainz_trackid"
ARTIST_SEPARATOR = "; "

_MP4_EXTENSIONS = {".m4a", ".mp4", ".m4b"}


def build_tags(result, video_id):
    artists = list(result.artist)
    return {
        "title": result.title,
        "artist": ARTIST_SEPARATOR.join(artists) if artists else None,
        "artists": artists,
        "album": result.album or result.title,
        "album_artist": artists[0] if artists else None,
        "recording_id": result.recording_id,
        "youtube_id": video_id,
    }


def apply_tags(file_path, result, video_id):
    """Write ``result`` into the file's tag container, replacing earlier values.

    Raises ``ArchiveFailure`` for unsupported containers and write errors.
    """
    tags = build_tags(result, video_id)
    ext = os.path.splitext(file_path)[1].lower()
    try:
        if ext == ".mp3":
            _apply_id3_tags(file_path, tags)
        elif ext in _MP4_EXTENSIONS:
            _apply_mp4_tags(file_path, tags)
        else:
            _apply_generic_tags(file_path, tags)
    except ArchiveFailure:
        raise
    except (MutagenError, OSError, KeyError, ValueError, TypeError) as exc:
        raise ArchiveFailure(f"Failed to write tags to {os.path.basename(file_path)}: {exc}", item_id=video_id) from exc
    logging.info("Tagged %s as %s / %s", os.path.basename(file_path), tags.get("artist"), tags.get("title"))


def _apply_id3_tags(file_path, tags):
    try:
        audio = ID3(file_path)
    except ID3NoHeaderError:
        audio = ID3()
    _set_id3_text(audio, "TIT2", tags.get("title"))
    _set_id3_text(audio, "TPE1", tags.get("artist"))
    _set_id3_text(audio, "TALB", tags.get("album"))
    _set_id3_text(audio, "TPE2", tags.get("album_artist"))
    _set_id3_txxx(audio, YOUTUBE_ID_KEY, tags.get("youtube_id"))
    audio.delall(f"UFID:{MUSICBRAINZ_OWNER}")
    if tags.get("recording_id"):
        audio.add(UFID(owner=MUSICBRAINZ_OWNER, data=str(tags["recording_id"]).encode("ascii")))
    audio.save(file_path)


def _apply_mp4_tags(file_path, tags):
    audio = MP4(file_path)
    if audio.tags is None:
        audio.add_tags()
    mp4_tags = audio.tags
    _set_mp4_value(mp4_tags, "\xa9nam", tags.get("title"))
    _set_mp4_value(mp4_tags, "\xa9ART", tags.get("artist"))
    _set_mp4_value(mp4_tags, "\xa9alb", tags.get("album"))
    _set_mp4_value(mp4_tags, "aART", tags.get("album_artist"))
    _set_mp4_freeform(mp4_tags, YOUTUBE_ID_KEY, tags.get("youtube_id"))
    _set_mp4_freeform(mp4_tags, MP4_TRACKID_KEY, tags.get("recording_id"))
    audio.save()


def _apply_generic_tags(file_path, tags):
    audio = MutagenFile(file_path)
    if not audio:
        raise ArchiveFailure(f"Unsupported audio container: {os.path.basename(file_path)}")
    if audio.tags is None:
        audio.add_tags()
    _set_generic(audio.tags, "title", tags.get("title"))
    _set_generic(audio.tags, "artist", tags.get("artists") or None)
    _set_generic(audio.tags, "album", tags.get("album"))
    _set_generic(audio.tags, "albumartist", tags.get("album_artist"))
    _set_generic(audio.tags, YOUTUBE_ID_KEY, tags.get("youtube_id"))
    _set_generic(audio.tags, VORBIS_TRACKID_KEY, tags.get("recording_id"))
    audio.save()


def _set_id3_text(audio, frame_id, value):
    audio.delall(frame_id)
    if value is None or value == "":
        return
    frame_map = {
        "TPE1": TPE1,
        "TALB": TALB,
        "TIT2": TIT2,
        "TPE2": TPE2,
    }
    audio.add(frame_map[frame_id](encoding=3, text=[str(value)]))


def _set_id3_txxx(audio, desc, value):
    audio.delall(f"TXXX:{desc}")
    if value is None or value == "":
        return
    audio.add(TXXX(encoding=3, desc=desc, text=[str(value)]))


def _set_mp4_value(tags, key, value):
    if value is None or value == "":
        tags.pop(key, None)
        return
    tags[key] = [str(value)]


def _set_mp4_freeform(tags, key, value):
    atom = f"----:com.apple.iTunes:{key}"
    if value is None or value == "":
        tags.pop(atom, None)
        return
    tags[atom] = [str(value).encode("utf-8")]


def _set_generic(tags, key, value):
    if value is None or value == "":
        if key in tags:
            del tags[key]
        return
    if isinstance(value, (list, tuple)):
        tags[key] = [str(v) for v in value]
    else:
        tags[key] = [str(value)]


def read_youtube_id(file_path):
    """Return the ``youtube_id`` tag of an audio file, or ``None``."""
    ext = os.path.splitext(file_path)[1].lower()
    try:
        if ext == ".mp3":
            frames = ID3(file_path).getall(f"TXXX:{YOUTUBE_ID_KEY}")
            return str(frames[0].text[0]) if frames and frames[0].text else None
        if ext in _MP4_EXTENSIONS:
            values = (MP4(file_path).tags or {}).get(f"----:com.apple.iTunes:{YOUTUBE_ID_KEY}")
            return bytes(values[0]).decode("utf-8") if values else None
        audio = MutagenFile(file_path)
        if not audio or audio.tags is None:
            return None
        values = audio.tags.get(YOUTUBE_ID_KEY)
        return str(values[0]) if values else None
    except (MutagenError, OSError, ValueError):
        return None
