from .library import MusicLibrary
from .match_worker import MatchStage
from .tagger import apply_tags, read_youtube_id

__all__ = ["MatchStage", "MusicLibrary", "apply_tags", "read_youtube_id"]
