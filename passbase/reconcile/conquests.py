"""Pass conquests: Strava sync of recent rides, plus manual entries.

Manual conquests always win. Strava data never overwrites a pass the cyclist
entered by hand, and an activity already imported is never matched again.
Nothing is deleted; a failed network call aborts the run before any write.
"""

import logging
from datetime import date, datetime, timezone

from passbase.errors import UnknownPass
from passbase.models import ConquestRecord, ExternalActivity, MountainPass, SyncResult
from passbase.reconcile.geo import first_matching_pass
from passbase.strava.activities import DEFAULT_PER_PAGE, FULL_RESYNC_DAYS, since_for_full_resync
from passbase.strava.client import STRAVA_ACTIVITY_URL

log = logging.getLogger(__name__)

# Strava activity types that can conquer a pass
ELIGIBLE_TYPES = {"Ride", "VirtualRide"}


def _local_time(start_date_local: str | None) -> str | None:
    """'2024-06-01T09:12:44Z' -> '09:12'."""
    if not start_date_local:
        return None
    try:
        dt = datetime.fromisoformat(start_date_local.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt.strftime("%H:%M")


def conquest_from_activity(activity: ExternalActivity,
                           mountain_pass: MountainPass) -> ConquestRecord:
    return ConquestRecord(
        pass_id=mountain_pass.id,
        date_completed=activity.start_date.split("T")[0],
        time_completed=_local_time(activity.start_date_local),
        external_activity_id=activity.id,
        external_activity_url=STRAVA_ACTIVITY_URL.format(id=activity.id),
        synced_from_external=True,
        personal_notes=f"Synced from Strava: {activity.name}",
        photos=[],
    )


class ConquestReconciler:
    """Drives TokenGuard -> ActivityFetcher -> geo matching -> batch upsert."""

    def __init__(self, conquests, token_guard, fetcher,
                 lookback_days: int = FULL_RESYNC_DAYS,
                 per_page: int = DEFAULT_PER_PAGE, clock=None):
        self.conquests = conquests
        self.token_guard = token_guard
        self.fetcher = fetcher
        self.lookback_days = lookback_days
        self.per_page = per_page
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def sync(self, cyclist_id, passes: list[MountainPass],
             dry_run: bool = False) -> SyncResult:
        """Import conquests from the last year of Strava rides.

        Raises TokenUnavailable / ActivityFetchFailed (both SyncUnavailable)
        before anything is written, and PersistenceFailed if the batch upsert
        fails. Re-running is safe: activity ids already stored are skipped.
        """
        existing = self.conquests.load(cyclist_id)
        synced_ids = {c.external_activity_id for c in existing if c.external_activity_id}
        manual_passes = {c.pass_id for c in existing if not c.synced_from_external}

        token = self.token_guard.require_access_token(cyclist_id)

        now = self._clock()
        since = since_for_full_resync(now, self.lookback_days)
        activities = self.fetcher.fetch_activities(token, since, page=1, per_page=self.per_page)
        log.info("Cyclist #%s: %d Strava activities since %s, %d already synced",
                 cyclist_id, len(activities),
                 datetime.fromtimestamp(since, timezone.utc).date(), len(synced_ids))

        new_conquests = []
        claimed_this_run = set()
        for activity in activities:
            if activity.id in synced_ids:
                continue
            if activity.type not in ELIGIBLE_TYPES:
                continue

            # First pass in catalog order wins; one activity conquers at most one pass
            mountain_pass = first_matching_pass(activity, passes)
            if mountain_pass is None:
                continue

            if mountain_pass.id in manual_passes:
                log.debug("  SKIP strava:%s -> %s (manual conquest)", activity.id, mountain_pass.id)
                continue
            # Two rides on one pass in the same run: the first in fetch order wins
            if mountain_pass.id in claimed_this_run:
                log.debug("  SKIP strava:%s -> %s (matched earlier this run)", activity.id, mountain_pass.id)
                continue

            conquest = conquest_from_activity(activity, mountain_pass)
            new_conquests.append(conquest)
            synced_ids.add(activity.id)
            claimed_this_run.add(mountain_pass.id)
            log.info("  MATCH strava:%s %s \"%s\" -> %s",
                     activity.id, conquest.date_completed, activity.name, mountain_pass.id)

        if not dry_run:
            self.conquests.commit_sync(cyclist_id, new_conquests, synced_at=now.isoformat())

        return SyncResult(synced_count=len(new_conquests), new_conquests=new_conquests)


def _require_pass(passes: list[MountainPass], pass_id: str):
    if pass_id not in {p.id for p in passes}:
        raise UnknownPass(f"Unknown pass: {pass_id}")


def add_manual_conquest(conquests, passes: list[MountainPass], cyclist_id, pass_id: str,
                        date_completed: str | None = None, time_completed: str | None = None,
                        personal_notes: str | None = None,
                        photos: list[str] | None = None) -> ConquestRecord:
    """Record a conquest by hand. Replaces any conquest of the same pass.

    Sync never overwrites a manual conquest. Raises UnknownPass, or ValueError
    for a date that is not YYYY-MM-DD.
    """
    _require_pass(passes, pass_id)
    date_completed = date_completed or date.today().isoformat()
    date.fromisoformat(date_completed)

    conquest = ConquestRecord(
        pass_id=pass_id,
        date_completed=date_completed,
        time_completed=time_completed,
        synced_from_external=False,
        personal_notes=personal_notes,
        photos=list(photos or []),
    )
    conquests.upsert(cyclist_id, conquest)
    log.info("Cyclist #%s conquered %s on %s (manual)", cyclist_id, pass_id, date_completed)
    return conquest


def set_conquest_photos(conquests, passes: list[MountainPass], cyclist_id, pass_id: str,
                        photos: list[str]) -> ConquestRecord:
    """Replace a conquest's photos; a pass not yet conquered is conquered today."""
    _require_pass(passes, pass_id)
    conquests.update_photos(cyclist_id, pass_id, photos)
    return conquests.get(cyclist_id, pass_id)


def sync_status(cyclists, conquests, cyclist_id) -> dict:
    """Connection and last-sync summary for one cyclist."""
    cred = cyclists.load_credential(cyclist_id)
    last = conquests.last_sync(cyclist_id) or {}
    return {
        "connected": bool(cred and cred.connected),
        "athlete_id": cred.provider_athlete_id if cred else None,
        "last_sync_at": last.get("last_sync_at"),
        "synced_count": last.get("synced_count", 0),
    }


def make_reconciler(config: dict | None, conn, token_guard=None) -> ConquestReconciler:
    """Wire a ConquestReconciler to sqlite storage and the Strava API."""
    from passbase.config import strava_settings, sync_settings
    from passbase.storage import ConquestStore
    from passbase.strava.activities import ActivityFetcher
    from passbase.strava.auth import make_token_guard

    settings = sync_settings(config)
    return ConquestReconciler(
        ConquestStore(conn),
        token_guard or make_token_guard(config, conn),
        ActivityFetcher(timeout=strava_settings(config)["request_timeout_s"]),
        lookback_days=settings["lookback_days"],
        per_page=settings["per_page"],
    )
