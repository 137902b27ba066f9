"""Error taxonomy shared by the staging, durable-store and pipeline layers."""


class ScrapeVaultError(Exception):
    """Base exception for scrapevault."""


class TransientStoreError(ScrapeVaultError):
    """Raised when a backend is unreachable or busy; the operation may be retried."""


class LockTimeoutError(TransientStoreError):
    """Raised when a session file lock could not be acquired in time."""


class MalformedRecordError(ScrapeVaultError):
    """Raised when a raw record cannot be turned into a committable record."""


class SessionStateError(ScrapeVaultError):
    """Raised for illegal session lifecycle transitions."""


class SessionNotFoundError(ScrapeVaultError):
    """Raised when a session does not exist in the active backend."""


class EnvelopeError(ScrapeVaultError):
    """Raised when the response encryption envelope cannot be built or opened."""
