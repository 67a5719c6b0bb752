"""
Errors raised by the reminder core.
"""


class ReminderError(Exception):
    """Base class for reminder errors."""


class ExtractionError(ReminderError):
    """The model call failed or returned an unusable shape."""


class PersistenceError(ReminderError):
    """A store read or write failed."""


class NotFoundError(ReminderError):
    """A queue item or pending selection does not exist for the given key."""
