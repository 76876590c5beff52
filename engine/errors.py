"""Error taxonomy shared by the pipeline stages, the store and the HTTP surface."""


class SyncError(Exception):
    status_code = 500

    def __init__(self, message, *, item_id=None):
        super().__init__(message)
        self.message = str(message)
        self.item_id = item_id


class DiscoveryFailure(SyncError):
    """Playlist enumeration failed; the cycle is skipped for that source."""


class FetchFailure(SyncError):
    """Audio extraction failed; the item moves to FetchError."""


class DownloadTimeout(FetchFailure):
    pass


class MatchFailure(SyncError):
    """No recording found or the search service failed; the item moves to BrainzError."""


class ArchiveFailure(SyncError):
    """Tag write or library move failed; the file stays where it was."""


class Unauthorized(SyncError):
    status_code = 401

    def __init__(self, message="Unauthorized", *, reason=None):
        super().__init__(message)
        self.reason = reason


class Conflict(SyncError):
    status_code = 409


class ItemBusy(Conflict):
    """A manual command could not claim the item in time."""


class NotFound(SyncError):
    status_code = 404


class StoreInvariantError(SyncError):
    """Raised when a store write would break an invariant that no caller can recover from."""


class InvalidRequest(SyncError):
    status_code = 422
