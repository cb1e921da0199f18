"""stravalib client construction shared by the token guard and the fetcher."""

import requests
from stravalib import Client
from stravalib import exc

from passbase.config import DEFAULT_REQUEST_TIMEOUT_S

STRAVA_ACTIVITY_URL = "https://www.strava.com/activities/{id}"

# Errors a Strava call can raise: transport/HTTP (stravalib Faults are
# requests HTTPErrors), stravalib's rate limiter, and malformed payloads.
STRAVA_ERRORS = (
    requests.exceptions.RequestException,
    exc.RateLimitExceeded,
    exc.AuthError,
    KeyError,
    TypeError,
    ValueError,
)


class TimeoutSession(requests.Session):
    """requests Session that applies a default timeout to every request."""

    def __init__(self, timeout: float = DEFAULT_REQUEST_TIMEOUT_S):
        super().__init__()
        self.timeout = timeout

    def request(self, method, url, **kwargs):
        kwargs.setdefault("timeout", self.timeout)
        return super().request(method, url, **kwargs)


def make_client(access_token: str | None = None,
                timeout: float = DEFAULT_REQUEST_TIMEOUT_S) -> Client:
    """Create a stravalib Client with a bounded request timeout.

    No token_expires is passed: refreshes go through TokenGuard so the
    rotated refresh token is always persisted.
    """
    return Client(access_token=access_token,
                  requests_session=TimeoutSession(timeout))
