import threading

import pytest
import requests

from conftest import SETTINGS
from passbase.errors import TokenUnavailable
from passbase.models import CredentialState, CyclistCredential
from passbase.storage import CyclistStore
from passbase.strava.auth import REFRESH_BUFFER_S, RefreshLocks, TokenGuard


def connect(conn, cyclist_id, expires_at, refresh_token="r-old"):
    CyclistStore(conn).save_credential(cyclist_id, CyclistCredential(
        connected=True, provider_athlete_id="987", access_token="a-old",
        refresh_token=refresh_token, token_expiry_epoch_s=expires_at,
    ))


@pytest.fixture
def guard(conn, clock, strava_client):
    _, factory = strava_client
    return TokenGuard(CyclistStore(conn), SETTINGS, client_factory=factory, clock=clock)


def test_fresh_token_returned_without_refresh(conn, cyclist_id, clock, guard, strava_client):
    client, _ = strava_client
    connect(conn, cyclist_id, expires_at=clock.now + 3600)

    assert guard.get_valid_access_token(cyclist_id) == "a-old"
    client.refresh_access_token.assert_not_called()


def test_token_expiring_in_200s_is_refreshed(conn, cyclist_id, clock, guard, strava_client):
    client, _ = strava_client
    connect(conn, cyclist_id, expires_at=clock.now + 200)
    client.refresh_access_token.return_value = {
        "access_token": "a-new", "refresh_token": "r-new", "expires_at": clock.now + 21600,
    }

    assert guard.get_valid_access_token(cyclist_id) == "a-new"
    client.refresh_access_token.assert_called_once_with(
        client_id=1234, client_secret="shh", refresh_token="r-old",
    )
    cred = CyclistStore(conn).load_credential(cyclist_id)
    assert cred.access_token == "a-new"
    assert cred.refresh_token == "r-new"
    assert cred.token_expiry_epoch_s == clock.now + 21600
    assert cred.provider_athlete_id == "987"


def test_refresh_buffer_boundary(conn, cyclist_id, clock, guard, strava_client):
    client, _ = strava_client
    connect(conn, cyclist_id, expires_at=clock.now + REFRESH_BUFFER_S + 1)
    assert guard.get_valid_access_token(cyclist_id) == "a-old"
    client.refresh_access_token.assert_not_called()


def test_missing_expiry_forces_refresh(conn, cyclist_id, clock, guard, strava_client):
    client, _ = strava_client
    connect(conn, cyclist_id, expires_at=None)
    client.refresh_access_token.return_value = {
        "access_token": "a-new", "refresh_token": "r-new", "expires_at": clock.now + 21600,
    }
    assert guard.get_valid_access_token(cyclist_id) == "a-new"


def test_refresh_failure_returns_none(conn, cyclist_id, clock, guard, strava_client):
    client, _ = strava_client
    connect(conn, cyclist_id, expires_at=clock.now - 10)
    client.refresh_access_token.side_effect = requests.exceptions.HTTPError("400 Bad Request")

    assert guard.get_valid_access_token(cyclist_id) is None
    # Stored credential untouched
    assert CyclistStore(conn).load_credential(cyclist_id).refresh_token == "r-old"
    assert guard.state(cyclist_id) == CredentialState.CONNECTED


def test_not_connected_returns_none(cyclist_id, guard, strava_client):
    client, _ = strava_client
    assert guard.get_valid_access_token(cyclist_id) is None
    assert guard.get_valid_access_token(9999) is None
    client.refresh_access_token.assert_not_called()


def test_require_access_token_raises(cyclist_id, guard):
    with pytest.raises(TokenUnavailable):
        guard.require_access_token(cyclist_id)


def test_exchange_code_connects(conn, cyclist_id, guard, strava_client):
    client, _ = strava_client
    athlete = type("Athlete", (), {"id": 42})()
    client.exchange_code_for_token.return_value = (
        {"access_token": "a1", "refresh_token": "r1", "expires_at": 1_700_021_600},
        athlete,
    )

    cred = guard.exchange_code(cyclist_id, "the-code")

    assert cred.connected and cred.provider_athlete_id == "42"
    assert guard.state(cyclist_id) == CredentialState.CONNECTED
    stored = CyclistStore(conn).load_credential(cyclist_id)
    assert stored.access_token == "a1"
    assert stored.token_expiry_epoch_s == 1_700_021_600


def test_exchange_code_failure_raises(cyclist_id, guard, strava_client):
    client, _ = strava_client
    client.exchange_code_for_token.side_effect = requests.exceptions.ConnectionError("down")
    with pytest.raises(TokenUnavailable):
        guard.exchange_code(cyclist_id, "bad")
    assert guard.state(cyclist_id) == CredentialState.DISCONNECTED


def test_disconnect_is_idempotent(conn, cyclist_id, clock, guard):
    connect(conn, cyclist_id, expires_at=clock.now + 3600)
    guard.disconnect(cyclist_id)
    guard.disconnect(cyclist_id)

    cred = CyclistStore(conn).load_credential(cyclist_id)
    assert cred == CyclistCredential()
    assert guard.state(cyclist_id) == CredentialState.DISCONNECTED


def test_authorization_url_obtains_no_tokens(guard, strava_client):
    client, _ = strava_client
    client.authorization_url.return_value = "https://www.strava.com/oauth/authorize?x=1"

    assert guard.authorization_url(state="7").startswith("https://www.strava.com/oauth/authorize")
    client.authorization_url.assert_called_once_with(
        client_id=1234,
        redirect_uri="http://localhost:8090/callback",
        approval_prompt="force",
        scope=["activity:read_all", "profile:read_all"],
        state="7",
    )
    client.exchange_code_for_token.assert_not_called()


def test_concurrent_callers_share_one_refresh(conn, cyclist_id, clock, strava_client):
    client, factory = strava_client
    connect(conn, cyclist_id, expires_at=clock.now + 10)
    started = threading.Event()
    release = threading.Event()

    def slow_refresh(**kwargs):
        started.set()
        release.wait(5)
        return {"access_token": "a-new", "refresh_token": "r-new", "expires_at": clock.now + 21600}

    client.refresh_access_token.side_effect = slow_refresh
    locks = RefreshLocks()
    guards = [TokenGuard(CyclistStore(conn), SETTINGS, client_factory=factory,
                         clock=clock, locks=locks) for _ in range(2)]
    results = []

    t1 = threading.Thread(target=lambda: results.append(guards[0].get_valid_access_token(cyclist_id)))
    t1.start()
    assert started.wait(5)
    assert guards[1].state(cyclist_id) == CredentialState.REFRESHING

    t2 = threading.Thread(target=lambda: results.append(guards[1].get_valid_access_token(cyclist_id)))
    t2.start()
    release.set()
    t1.join(5)
    t2.join(5)

    assert results == ["a-new", "a-new"]
    assert client.refresh_access_token.call_count == 1
