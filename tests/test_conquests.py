from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from conftest import PASSES, ride
from passbase.errors import ActivityFetchFailed, PersistenceFailed, TokenUnavailable, UnknownPass
from passbase.models import ConquestRecord
from passbase.reconcile.conquests import (
    ConquestReconciler, add_manual_conquest, set_conquest_photos, sync_status,
)
from passbase.storage import ConquestStore, CyclistStore
from passbase.strava.activities import ActivityFetcher

NOW = datetime(2024, 7, 1, 12, 0, tzinfo=timezone.utc)

ALPE = (45.0914, 6.0669)
VENTOUX = (44.1734, 5.2785)
LONDON = (51.5072, -0.1276)


@pytest.fixture
def token_guard():
    guard = MagicMock(name="TokenGuard")
    guard.require_access_token.return_value = "tok"
    return guard


@pytest.fixture
def reconciler(conn, token_guard, strava_client):
    _, factory = strava_client
    return ConquestReconciler(
        ConquestStore(conn), token_guard, ActivityFetcher(client_factory=factory),
        clock=lambda: NOW,
    )


def strava_returns(strava_client, activities):
    client, _ = strava_client
    client.protocol.get.return_value = activities


def test_matching_ride_creates_synced_conquest(conn, cyclist_id, reconciler, strava_client):
    strava_returns(strava_client, [ride(111, start=ALPE, name="Alpe!")])

    result = reconciler.sync(cyclist_id, PASSES)

    assert result.synced_count == 1
    stored = ConquestStore(conn).get(cyclist_id, "alpe-dhuez")
    assert stored.synced_from_external
    assert stored.external_activity_id == "111"
    assert stored.external_activity_url == "https://www.strava.com/activities/111"
    assert stored.date_completed == "2024-06-01"
    assert stored.time_completed == "09:12"
    assert stored.personal_notes == "Synced from Strava: Alpe!"


def test_fetch_uses_one_year_lookback(cyclist_id, reconciler, strava_client):
    client, _ = strava_client
    strava_returns(strava_client, [])

    reconciler.sync(cyclist_id, PASSES)

    after = client.protocol.get.call_args.kwargs["after"]
    assert after == int(datetime(2023, 7, 2, 12, 0, tzinfo=timezone.utc).timestamp())


def test_second_sync_is_idempotent(conn, cyclist_id, reconciler, strava_client):
    strava_returns(strava_client, [ride(111, start=ALPE), ride(222, end=VENTOUX)])

    first = reconciler.sync(cyclist_id, PASSES)
    before = ConquestStore(conn).load(cyclist_id)
    second = reconciler.sync(cyclist_id, PASSES)

    assert first.synced_count == 2
    assert second.synced_count == 0
    assert ConquestStore(conn).load(cyclist_id) == before


def test_two_rides_on_one_pass_in_one_run_keep_the_first(conn, cyclist_id, reconciler, strava_client):
    strava_returns(strava_client, [ride(111, start=ALPE), ride(112, end=ALPE)])

    result = reconciler.sync(cyclist_id, PASSES)

    assert [c.external_activity_id for c in result.new_conquests] == ["111"]
    assert ConquestStore(conn).get(cyclist_id, "alpe-dhuez").external_activity_id == "111"


def test_newer_ride_replaces_earlier_synced_conquest(conn, cyclist_id, reconciler, strava_client):
    strava_returns(strava_client, [ride(100, start=ALPE)])
    reconciler.sync(cyclist_id, PASSES)

    strava_returns(strava_client, [ride(200, end=ALPE, start_date="2024-06-20T06:00:00Z")])
    result = reconciler.sync(cyclist_id, PASSES)

    assert result.synced_count == 1
    stored = ConquestStore(conn).get(cyclist_id, "alpe-dhuez")
    assert stored.external_activity_id == "200"
    assert stored.date_completed == "2024-06-20"
    assert len(ConquestStore(conn).load(cyclist_id)) == 1


def test_already_synced_activity_is_not_matched_again(conn, cyclist_id, reconciler, strava_client):
    ConquestStore(conn).upsert(cyclist_id, ConquestRecord(
        pass_id="mont-ventoux", date_completed="2024-05-01",
        external_activity_id="111", synced_from_external=True,
    ))
    # Same activity id, now reported at Alpe d'Huez
    strava_returns(strava_client, [ride(111, start=ALPE)])

    result = reconciler.sync(cyclist_id, PASSES)

    assert result.synced_count == 0
    assert ConquestStore(conn).get(cyclist_id, "alpe-dhuez") is None
    assert ConquestStore(conn).get(cyclist_id, "mont-ventoux").external_activity_id == "111"


def test_manual_conquest_is_never_overwritten(conn, cyclist_id, reconciler, strava_client):
    manual = ConquestRecord(pass_id="alpe-dhuez", date_completed="2019-08-15",
                            personal_notes="With dad", photos=["summit.jpg"])
    ConquestStore(conn).upsert(cyclist_id, manual)
    strava_returns(strava_client, [ride(111, start=ALPE)])

    result = reconciler.sync(cyclist_id, PASSES)

    assert result.synced_count == 0
    assert ConquestStore(conn).get(cyclist_id, "alpe-dhuez") == manual


def test_one_activity_conquers_at_most_one_pass(conn, cyclist_id, reconciler, strava_client):
    strava_returns(strava_client, [ride(111, start=ALPE, end=VENTOUX)])

    result = reconciler.sync(cyclist_id, PASSES)

    assert [c.pass_id for c in result.new_conquests] == ["alpe-dhuez"]
    assert ConquestStore(conn).get(cyclist_id, "mont-ventoux") is None


def test_non_ride_and_unmatched_activities_are_ignored(conn, cyclist_id, reconciler, strava_client):
    strava_returns(strava_client, [
        ride(1, start=ALPE, type="Run"),
        ride(2, start=LONDON, end=LONDON),
        ride(3),
        ride(4, start=VENTOUX, type="VirtualRide"),
    ])

    result = reconciler.sync(cyclist_id, PASSES)

    assert [c.external_activity_id for c in result.new_conquests] == ["4"]


def test_no_credential_raises_before_fetching(conn, cyclist_id, token_guard, reconciler, strava_client):
    client, factory = strava_client
    token_guard.require_access_token.side_effect = TokenUnavailable("reconnect")

    with pytest.raises(TokenUnavailable):
        reconciler.sync(cyclist_id, PASSES)

    factory.assert_not_called()
    client.protocol.get.assert_not_called()
    assert ConquestStore(conn).last_sync(cyclist_id) is None


def test_fetch_failure_writes_nothing(conn, cyclist_id, reconciler, strava_client):
    client, _ = strava_client
    client.protocol.get.side_effect = requests.exceptions.ConnectionError("offline")

    with pytest.raises(ActivityFetchFailed):
        reconciler.sync(cyclist_id, PASSES)

    assert ConquestStore(conn).load(cyclist_id) == []
    assert ConquestStore(conn).last_sync(cyclist_id) is None


def test_dry_run_writes_nothing(conn, cyclist_id, reconciler, strava_client):
    strava_returns(strava_client, [ride(111, start=ALPE)])

    result = reconciler.sync(cyclist_id, PASSES, dry_run=True)

    assert result.synced_count == 1
    assert ConquestStore(conn).load(cyclist_id) == []


def test_persistence_failure_propagates(cyclist_id, token_guard, strava_client):
    _, factory = strava_client
    strava_returns(strava_client, [ride(111, start=ALPE)])
    store = MagicMock(name="ConquestStore")
    store.load.return_value = []
    store.commit_sync.side_effect = PersistenceFailed("disk full")
    reconciler = ConquestReconciler(store, token_guard, ActivityFetcher(client_factory=factory),
                                    clock=lambda: NOW)

    with pytest.raises(PersistenceFailed):
        reconciler.sync(cyclist_id, PASSES)


def test_sync_status_reports_last_run(conn, cyclist_id, reconciler, strava_client):
    strava_returns(strava_client, [ride(111, start=ALPE)])
    reconciler.sync(cyclist_id, PASSES)

    status = sync_status(CyclistStore(conn), ConquestStore(conn), cyclist_id)

    assert status["connected"] is False
    assert status["last_sync_at"] == NOW.isoformat()
    assert status["synced_count"] == 1


def test_manual_conquest_replaces_synced_and_blocks_later_sync(conn, cyclist_id, reconciler, strava_client):
    strava_returns(strava_client, [ride(111, start=ALPE)])
    reconciler.sync(cyclist_id, PASSES)

    added = add_manual_conquest(ConquestStore(conn), PASSES, cyclist_id, "alpe-dhuez",
                                date_completed="2019-08-15", personal_notes="With dad")
    strava_returns(strava_client, [ride(222, end=ALPE)])
    result = reconciler.sync(cyclist_id, PASSES)

    assert result.synced_count == 0
    stored = ConquestStore(conn).get(cyclist_id, "alpe-dhuez")
    assert stored == added
    assert not stored.synced_from_external
    assert stored.external_activity_id is None


def test_manual_conquest_defaults_to_today(conn, cyclist_id):
    added = add_manual_conquest(ConquestStore(conn), PASSES, cyclist_id, "mont-ventoux")
    assert added.date_completed == datetime.now().date().isoformat()


def test_manual_conquest_rejects_unknown_pass_and_bad_date(conn, cyclist_id):
    store = ConquestStore(conn)
    with pytest.raises(UnknownPass):
        add_manual_conquest(store, PASSES, cyclist_id, "stelvio-pass")
    with pytest.raises(ValueError):
        add_manual_conquest(store, PASSES, cyclist_id, "alpe-dhuez", date_completed="15/08/2019")
    assert store.load(cyclist_id) == []


def test_set_conquest_photos(conn, cyclist_id):
    store = ConquestStore(conn)
    add_manual_conquest(store, PASSES, cyclist_id, "alpe-dhuez", date_completed="2019-08-15")

    updated = set_conquest_photos(store, PASSES, cyclist_id, "alpe-dhuez", ["a.jpg", "b.jpg"])

    assert updated.photos == ["a.jpg", "b.jpg"]
    assert updated.date_completed == "2019-08-15"
    with pytest.raises(UnknownPass):
        set_conquest_photos(store, PASSES, cyclist_id, "stelvio-pass", ["c.jpg"])
