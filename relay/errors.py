"""Exception hierarchy for the relay core."""


class RelayError(Exception):
    """Base class for all relay errors."""


class PersistenceError(RelayError):
    """A storage write or read failed."""


class ContactNotFoundError(RelayError):
    """The referenced contact does not exist."""


class ProviderError(RelayError):
    """The provider API rejected or failed an outbound call."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MediaError(RelayError):
    """Base class for media resolution failures."""


class MediaNotFoundError(MediaError):
    """The provider has no such media (permanent)."""


class MediaAuthError(MediaError):
    """The tenant credentials were rejected for the media call."""


class MediaTransientError(MediaError):
    """Network failure, timeout or provider-side error; may succeed on redelivery."""


class MediaStorageError(MediaError):
    """The binary could not be written to local storage."""
