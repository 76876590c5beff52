from app.jellyfin.client import JellyfinClient, JellyfinError
from app.jellyfin.mirror import JellyfinMirror, rewrite_path


def build_jellyfin_mirror(settings, store, library, membership, sources_provider):
    """Wire the mirror from settings; ``None`` when no Jellyfin server is configured."""
    if settings.jellyfin is None:
        return None
    client = JellyfinClient(settings.jellyfin, membership)
    return JellyfinMirror(store, library, membership, client, sources_provider, settings=settings.jellyfin)


__all__ = [
    "JellyfinClient",
    "JellyfinError",
    "JellyfinMirror",
    "build_jellyfin_mirror",
    "rewrite_path",
]
