"""Error taxonomy for the learning engine."""


class VocabSyncError(Exception):
    """Base class for engine errors."""


class StoreUnavailable(VocabSyncError):
    """The local persistence layer is not ready or failed."""


class NotAuthenticated(VocabSyncError):
    """A remote call was attempted without a session."""


class NetworkError(VocabSyncError):
    """A transient failure talking to the remote store."""


class MalformedBackup(VocabSyncError):
    """The JSON backup document is unreadable or invalid."""
