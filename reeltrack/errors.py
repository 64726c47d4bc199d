"""Error types raised by the tracker services."""


class ReelTrackError(Exception):
    """Base class for all tracker errors."""


class AuthError(ReelTrackError):
    """Bad credentials, unknown session, or duplicate username/email."""


class NotFoundError(ReelTrackError):
    """A profile, title or watchlist entry does not exist."""


class ValidationError(ReelTrackError):
    """Malformed input."""


class PersistenceError(ReelTrackError):
    """A read or write against the database failed."""


class StaleDocumentError(PersistenceError):
    """A watchlist write lost a compare-and-swap race."""


class QueryServiceError(ReelTrackError):
    """The content API failed or returned something unusable."""


class OperationInProgressError(ReelTrackError):
    """The same action is already running for this item."""
