"""Error types raised by the store, the archive codec and the lifecycle managers."""


class StickerChartError(Exception):
    """Base class for all sticker chart errors."""


class StorageInitError(StickerChartError):
    """The database could not be opened or its schema could not be created."""


class StorageError(StickerChartError):
    """A database operation failed; the message names the operation."""


class NotFoundError(StickerChartError):
    pass


class DuplicateNameError(StickerChartError):
    pass


class InvalidCodeError(StickerChartError):
    """A verification code is not exactly four digits."""


class InvalidDateError(StickerChartError):
    pass


class InvalidEventTypeError(StickerChartError):
    pass


class AvailabilityExceededError(StickerChartError):
    """Marking the date would exceed the event type's per-day availability."""


class HasOwnedEventTypesError(StickerChartError):
    """The user still owns event types and cannot be deleted."""


class ProtectedUserError(StickerChartError):
    """The built-in Guest and Admin users cannot be deleted."""


class UnknownEventTypeError(StickerChartError):
    pass


class EventTypeInUseError(StickerChartError):
    """Events still reference the event type."""


class BackupError(StickerChartError):
    pass


class RestoreError(StickerChartError):
    pass


class InvalidArchiveError(RestoreError):
    """The file is not a backup archive or lacks ``database.json``."""
