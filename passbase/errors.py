"""Exceptions raised by the sync engine and the race finish tracker."""


class PassbaseError(Exception):
    """Base exception for passbase errors."""


class SyncUnavailable(PassbaseError):
    """A Strava sync run could not proceed. Safe to retry the whole run later."""


class TokenUnavailable(SyncUnavailable):
    """No usable Strava credential. The cyclist must reconnect Strava."""


class ActivityFetchFailed(SyncUnavailable):
    """The Strava activities request failed."""


class InvalidTimeFormat(PassbaseError, ValueError):
    """A finish time is not HH:MM:SS or MM:SS."""


class PersistenceFailed(PassbaseError):
    """A storage write failed."""


class UnknownPass(PassbaseError, LookupError):
    """The pass id is not in the catalog."""
