"""Strava OAuth token lifecycle for one credential set per cyclist.

The credential lives on the cyclist row and moves through three states:
DISCONNECTED -> CONNECTED (code exchange) -> REFRESHING -> CONNECTED, and back
to DISCONNECTED on disconnect. Refreshes are serialized per cyclist: Strava
rotates the refresh token on every refresh, so two concurrent refreshes would
invalidate each other.
"""

import logging
import threading
import time

from passbase.errors import TokenUnavailable
from passbase.models import CredentialState, CyclistCredential
from passbase.strava.client import STRAVA_ERRORS, make_client

log = logging.getLogger(__name__)

# Refresh when the token expires within this many seconds
REFRESH_BUFFER_S = 300


def _usable(cred: CyclistCredential | None) -> bool:
    return bool(cred and cred.connected and cred.access_token)


class RefreshLocks:
    """Per-cyclist refresh locks, shared by every TokenGuard of one process."""

    def __init__(self):
        self._locks: dict = {}
        self._guard = threading.Lock()
        self._refreshing: set = set()

    def lock_for(self, cyclist_id) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(cyclist_id)
            if lock is None:
                lock = self._locks[cyclist_id] = threading.Lock()
            return lock

    def is_refreshing(self, cyclist_id) -> bool:
        with self._guard:
            return cyclist_id in self._refreshing

    def mark_refreshing(self, cyclist_id, refreshing: bool):
        with self._guard:
            if refreshing:
                self._refreshing.add(cyclist_id)
            else:
                self._refreshing.discard(cyclist_id)


class TokenGuard:
    """Hands out valid Strava access tokens, refreshing them ahead of expiry.

    Args:
        store: Credential owner with load_credential(cyclist_id) and
            save_credential(cyclist_id, cred) (see passbase.storage.CyclistStore).
        settings: Strava app settings from passbase.config.strava_settings.
        client_factory: Builds a stravalib Client; replaced in tests.
        clock: Returns the current epoch seconds.
        locks: RefreshLocks to share with other guards (one per web app).
    """

    def __init__(self, store, settings: dict, client_factory=make_client,
                 clock=time.time, locks: RefreshLocks | None = None):
        self.store = store
        self.settings = settings
        self._client_factory = client_factory
        self._clock = clock
        self.locks = locks or RefreshLocks()

    def _lock_for(self, cyclist_id) -> threading.Lock:
        return self.locks.lock_for(cyclist_id)

    def _client(self):
        return self._client_factory(timeout=self.settings.get("request_timeout_s", 20))

    def _needs_refresh(self, cred: CyclistCredential) -> bool:
        if cred.token_expiry_epoch_s is None:
            return True
        return self._clock() >= cred.token_expiry_epoch_s - REFRESH_BUFFER_S

    def state(self, cyclist_id) -> CredentialState:
        if self.locks.is_refreshing(cyclist_id):
            return CredentialState.REFRESHING
        cred = self.store.load_credential(cyclist_id)
        if cred and cred.connected:
            return CredentialState.CONNECTED
        return CredentialState.DISCONNECTED

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    def authorization_url(self, state: str | None = None) -> str:
        """Build the Strava authorize URL. Obtains no tokens."""
        return self._client().authorization_url(
            client_id=self.settings["client_id"],
            redirect_uri=self.settings["redirect_uri"],
            approval_prompt="force",
            scope=self.settings["scope"],
            state=state,
        )

    def exchange_code(self, cyclist_id, code: str) -> CyclistCredential:
        """Exchange an authorization code and persist the connected credential."""
        try:
            access_info, athlete = self._client().exchange_code_for_token(
                client_id=self.settings["client_id"],
                client_secret=self.settings["client_secret"],
                code=code,
                return_athlete=True,
            )
            cred = CyclistCredential(
                connected=True,
                provider_athlete_id=str(athlete.id) if athlete is not None else None,
                access_token=access_info["access_token"],
                refresh_token=access_info["refresh_token"],
                token_expiry_epoch_s=int(access_info["expires_at"]),
            )
        except STRAVA_ERRORS as e:
            log.error("Strava code exchange failed for cyclist #%s: %s", cyclist_id, e)
            raise TokenUnavailable(f"Strava authorization failed: {e}") from e

        with self._lock_for(cyclist_id):
            self.store.save_credential(cyclist_id, cred)
        log.info("Cyclist #%s connected Strava athlete %s",
                 cyclist_id, cred.provider_athlete_id)
        return cred

    def disconnect(self, cyclist_id):
        """Clear the stored credential. Safe to call when already disconnected."""
        with self._lock_for(cyclist_id):
            self.store.save_credential(cyclist_id, CyclistCredential())
        log.info("Cyclist #%s disconnected Strava", cyclist_id)

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def get_valid_access_token(self, cyclist_id) -> str | None:
        """Return an access token valid for at least REFRESH_BUFFER_S, or None.

        None means "sync unavailable": not connected, or the refresh failed.
        """
        cred = self.store.load_credential(cyclist_id)
        if not _usable(cred):
            return None
        if not self._needs_refresh(cred):
            return cred.access_token

        with self._lock_for(cyclist_id):
            # Another caller may have refreshed while we waited on the lock
            cred = self.store.load_credential(cyclist_id)
            if not _usable(cred):
                return None
            if not self._needs_refresh(cred):
                return cred.access_token
            return self._refresh(cyclist_id, cred)

    def require_access_token(self, cyclist_id) -> str:
        token = self.get_valid_access_token(cyclist_id)
        if token is None:
            raise TokenUnavailable(
                "Strava is not connected or the token could not be refreshed. "
                "Reconnect Strava and try again."
            )
        return token

    def _refresh(self, cyclist_id, cred: CyclistCredential) -> str | None:
        if not cred.refresh_token:
            log.warning("Cyclist #%s has no Strava refresh token", cyclist_id)
            return None

        self.locks.mark_refreshing(cyclist_id, True)
        try:
            try:
                access_info = self._client().refresh_access_token(
                    client_id=self.settings["client_id"],
                    client_secret=self.settings["client_secret"],
                    refresh_token=cred.refresh_token,
                )
                refreshed = CyclistCredential(
                    connected=True,
                    provider_athlete_id=cred.provider_athlete_id,
                    access_token=access_info["access_token"],
                    refresh_token=access_info["refresh_token"],
                    token_expiry_epoch_s=int(access_info["expires_at"]),
                )
            except STRAVA_ERRORS as e:
                log.warning("Strava token refresh failed for cyclist #%s: %s", cyclist_id, e)
                return None

            self.store.save_credential(cyclist_id, refreshed)
            log.debug("Refreshed Strava token for cyclist #%s (expires %s)",
                      cyclist_id, refreshed.token_expiry_epoch_s)
            return refreshed.access_token
        finally:
            self.locks.mark_refreshing(cyclist_id, False)


def make_token_guard(config: dict | None, conn,
                     locks: RefreshLocks | None = None) -> TokenGuard:
    """TokenGuard over the cyclists table of an open connection."""
    from passbase.config import strava_settings
    from passbase.storage import CyclistStore

    return TokenGuard(CyclistStore(conn), strava_settings(config), locks=locks)
