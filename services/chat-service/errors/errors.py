class ChatServiceError(Exception):
    """Base class for errors raised inside the chat pipeline."""


class InvalidInput(ChatServiceError, ValueError):
    """Raised when a caller hands the pipeline something it cannot process."""


class ClassifierUnavailable(ChatServiceError):
    """The sentiment provider could not produce a usable result."""


class StorageWriteFailed(ChatServiceError):
    """A write to the chat database did not go through."""


class DispatchFailed(ChatServiceError):
    """The push provider rejected or never received a whole send."""


class TokenInvalid(ChatServiceError):
    """A device token was rejected as malformed or no longer registered."""
