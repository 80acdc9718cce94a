from __future__ import annotations


class StableStorageError(RuntimeError):
    """Base class for failures of the persistent storage layer."""


class CorruptionError(StableStorageError):
    """
    Persisted bytes could not be interpreted.

    Stored data is only ever written by this package, so a corruption error is
    unrecoverable: callers must not translate it into a business error.
    """


class RecordTooLargeError(StableStorageError):
    """A value does not fit the bounded size of its slot."""


class MemoryFullError(StableStorageError):
    """The stable memory could not be grown any further."""


class StorageUnavailableError(StableStorageError):
    """
    A commit reached the journal but could not be applied to the data file.

    The memory refuses further access; reopening it replays the journal and
    completes the commit.
    """
