from app.musicbrainz.cache import MusicBrainzCache
from app.musicbrainz.client import MUSICBRAINZ_USER_AGENT, MusicBrainzClient, MusicBrainzError, build_user_agent
from app.musicbrainz.service import RecordingMatcher, build_search_ladder


def build_recording_matcher(settings, cache_path):
    client = MusicBrainzClient(
        cache=MusicBrainzCache(cache_path),
        timeout_seconds=settings.musicbrainz_timeout_seconds,
        min_interval_seconds=settings.musicbrainz_min_interval_seconds,
        cache_ttl_seconds=settings.musicbrainz_cache_ttl_seconds,
        user_agent=build_user_agent(settings.musicbrainz_contact) if settings.musicbrainz_contact else None,
    )
    return RecordingMatcher(client)


__all__ = [
    "MUSICBRAINZ_USER_AGENT",
    "MusicBrainzCache",
    "MusicBrainzClient",
    "MusicBrainzError",
    "RecordingMatcher",
    "build_recording_matcher",
    "build_search_ladder",
    "build_user_agent",
]
