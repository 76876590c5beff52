from .config import SyncSettings, build_settings, load_config, validate_config
from .models import FetchStatus, Item, SearchQuery, TrackMetadata
from .paths import SyncPaths
from .record_store import RecordStore

__all__ = [
    "FetchStatus",
    "Item",
    "RecordStore",
    "SearchQuery",
    "SyncPaths",
    "SyncSettings",
    "TrackMetadata",
    "build_settings",
    "load_config",
    "validate_config",
]
