class ChatSyncError(Exception):
    """Base class for errors raised by the sync engine."""


class TransientSyncFailure(ChatSyncError):
    """A remote write or fetch failed and may succeed if retried."""


class SubscriptionFailure(ChatSyncError):
    """The change-feed transport reported an error or a timeout."""


class DataIntegrityAnomaly(ChatSyncError):
    """A pushed payload is missing its id, timestamp or conversation."""


class PersistenceFailure(ChatSyncError):
    """The local key-value store could not be read or written."""


class InvalidConversationKey(ChatSyncError, ValueError):

    def __init__(self, key: str) -> None:
        super().__init__(f"Invalid conversation key: {key!r}")
        self.key = key
