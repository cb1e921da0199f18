import sqlite3
from unittest.mock import MagicMock

import pytest

from passbase.db import create_schema
from passbase.models import MountainPass
from passbase.storage import CyclistStore, PassStore

SETTINGS = {
    "client_id": 1234,
    "client_secret": "shh",
    "redirect_uri": "http://localhost:8090/callback",
    "scope": ["activity:read_all", "profile:read_all"],
    "request_timeout_s": 5.0,
}

# Catalog order matters: first match wins
PASSES = [
    MountainPass(id="alpe-dhuez", name="Alpe d'Huez", lat=45.0914, lng=6.0669, country="France"),
    MountainPass(id="mont-ventoux", name="Mont Ventoux", lat=44.1734, lng=5.2785, country="France"),
    MountainPass(id="col-du-tourmalet", name="Col du Tourmalet", lat=42.9097, lng=0.1456, country="France"),
]


@pytest.fixture
def conn():
    conn = sqlite3.connect(":memory:", check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    create_schema(conn)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture
def cyclist_id(conn):
    return CyclistStore(conn).add("Marco", "marco@example.com")


@pytest.fixture
def passes(conn):
    PassStore(conn).replace_catalog(PASSES)
    return list(PASSES)


class FakeClock:
    """Epoch-seconds clock the test moves by hand."""

    def __init__(self, now=1_700_000_000):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def strava_client():
    """MagicMock stravalib Client plus a factory that records its calls."""
    client = MagicMock(name="stravalib.Client")
    factory = MagicMock(name="client_factory", return_value=client)
    return client, factory


def ride(activity_id, start=None, end=None, type="Ride", name="Morning Ride",
         start_date="2024-06-01T07:12:44Z", start_date_local="2024-06-01T09:12:44Z"):
    """Raw /athlete/activities item."""
    return {
        "id": activity_id,
        "type": type,
        "name": name,
        "start_date": start_date,
        "start_date_local": start_date_local,
        "start_latlng": list(start) if start else [],
        "end_latlng": list(end) if end else [],
    }
