"""Fetch a cyclist's activities from the Strava API."""

import logging
from datetime import datetime, timedelta, timezone

from passbase.config import DEFAULT_REQUEST_TIMEOUT_S
from passbase.errors import ActivityFetchFailed
from passbase.models import ExternalActivity
from passbase.strava.client import STRAVA_ERRORS, make_client

log = logging.getLogger(__name__)

ACTIVITIES_PATH = "/athlete/activities"
DEFAULT_PER_PAGE = 100
FULL_RESYNC_DAYS = 365


def since_for_full_resync(now: datetime | None = None,
                          days: int = FULL_RESYNC_DAYS) -> int:
    """Epoch seconds `days` before now (one year for a full resync)."""
    now = now or datetime.now(timezone.utc)
    return int((now - timedelta(days=days)).timestamp())


def _latlng(value) -> tuple[float, float] | None:
    """Strava sends [] (or null) when an activity has no GPS point."""
    if not value or len(value) < 2:
        return None
    return float(value[0]), float(value[1])


def parse_activity(raw: dict) -> ExternalActivity:
    """Convert one /athlete/activities item into an ExternalActivity."""
    return ExternalActivity(
        id=str(raw["id"]),
        type=str(raw.get("type") or raw.get("sport_type") or ""),
        start_date=raw.get("start_date") or "",
        start_date_local=raw.get("start_date_local"),
        name=raw.get("name") or "",
        start_latlng=_latlng(raw.get("start_latlng")),
        end_latlng=_latlng(raw.get("end_latlng")),
    )


class ActivityFetcher:

    def __init__(self, client_factory=make_client,
                 timeout: float = DEFAULT_REQUEST_TIMEOUT_S):
        self._client_factory = client_factory
        self.timeout = timeout

    def fetch_activities(self, token: str, since_epoch_s: int | None = None,
                         page: int = 1, per_page: int = DEFAULT_PER_PAGE) -> list[ExternalActivity]:
        """Fetch one page of activities started after since_epoch_s.

        Raises ActivityFetchFailed on any HTTP, transport or payload error; an
        empty list always means Strava returned no activities.
        """
        params = {"page": page, "per_page": per_page}
        if since_epoch_s is not None:
            params["after"] = int(since_epoch_s)

        client = self._client_factory(access_token=token, timeout=self.timeout)
        try:
            payload = client.protocol.get(ACTIVITIES_PATH, **params)
            if not isinstance(payload, list):
                raise ValueError(f"expected a list of activities, got {type(payload).__name__}")
            activities = [parse_activity(raw) for raw in payload]
        except STRAVA_ERRORS as e:
            log.error("Strava activity fetch failed (page %s): %s", page, e)
            raise ActivityFetchFailed(f"Could not fetch Strava activities: {e}") from e

        log.debug("Fetched %d Strava activities (page %s, after %s)",
                  len(activities), page, params.get("after"))
        return activities
