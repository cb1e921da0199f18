import logging
import sqlite3
from pathlib import Path

log = logging.getLogger(__name__)

SCHEMA_SQL = """\
-- Cyclist profile with the embedded Strava credential
CREATE TABLE IF NOT EXISTS cyclists (
    id                      INTEGER PRIMARY KEY,
    name                    TEXT NOT NULL,
    email                   TEXT UNIQUE,
    strava_connected        BOOLEAN DEFAULT FALSE,
    strava_athlete_id       TEXT,
    strava_access_token     TEXT,
    strava_refresh_token    TEXT,
    strava_token_expiry     INTEGER,
    created_at              TEXT DEFAULT (datetime('now')),
    updated_at              TEXT DEFAULT (datetime('now'))
);

-- Mountain pass catalog (position = catalog order)
CREATE TABLE IF NOT EXISTS passes (
    id                  TEXT PRIMARY KEY,
    position            INTEGER NOT NULL,
    name                TEXT NOT NULL,
    lat                 REAL NOT NULL,
    lng                 REAL NOT NULL,
    country             TEXT,
    region              TEXT,
    max_altitude_m      REAL,
    category            TEXT
);

-- One conquest per (cyclist, pass)
CREATE TABLE IF NOT EXISTS conquered_passes (
    id                      INTEGER PRIMARY KEY,
    cyclist_id              INTEGER NOT NULL REFERENCES cyclists(id) ON DELETE CASCADE,
    pass_id                 TEXT NOT NULL,
    date_completed          TEXT NOT NULL,
    time_completed          TEXT,
    strava_activity_id      TEXT,
    strava_activity_url     TEXT,
    synced_from_strava      BOOLEAN DEFAULT FALSE,
    personal_notes          TEXT,
    photos_json             TEXT DEFAULT '[]',
    created_at              TEXT DEFAULT (datetime('now')),
    updated_at              TEXT DEFAULT (datetime('now')),
    UNIQUE (cyclist_id, pass_id)
);

CREATE TABLE IF NOT EXISTS races (
    id                  TEXT PRIMARY KEY,
    name                TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS race_finishes (
    id                      INTEGER PRIMARY KEY,
    cyclist_id              INTEGER NOT NULL REFERENCES cyclists(id) ON DELETE CASCADE,
    race_id                 TEXT NOT NULL REFERENCES races(id),
    race_name               TEXT,
    year                    INTEGER,
    finish_time             TEXT NOT NULL,
    finish_time_seconds     INTEGER NOT NULL,
    is_pr                   BOOLEAN DEFAULT FALSE,
    date_completed          TEXT,
    notes                   TEXT,
    created_at              TEXT DEFAULT (datetime('now')),
    updated_at              TEXT DEFAULT (datetime('now'))
);

-- Per-cyclist Strava sync bookkeeping
CREATE TABLE IF NOT EXISTS sync_state (
    id                  INTEGER PRIMARY KEY,
    cyclist_id          INTEGER NOT NULL UNIQUE REFERENCES cyclists(id) ON DELETE CASCADE,
    last_sync_at        TEXT,
    metadata_json       TEXT
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_conquered_passes_cyclist ON conquered_passes(cyclist_id);
CREATE INDEX IF NOT EXISTS idx_conquered_passes_strava ON conquered_passes(strava_activity_id);
CREATE INDEX IF NOT EXISTS idx_race_finishes_group ON race_finishes(cyclist_id, race_id, finish_time_seconds);
CREATE INDEX IF NOT EXISTS idx_passes_position ON passes(position);
"""

DEFAULT_DB_PATH = Path.home() / "passbase" / "data" / "passbase.db"


def get_db_path(config=None):
    """Resolve the database path from config or fall back to default."""
    if config and "paths" in config and "db" in config["paths"]:
        return Path(config["paths"]["db"])
    return DEFAULT_DB_PATH


def get_connection(config=None):
    """Return a sqlite3 connection using the configured db path."""
    db_path = get_db_path(config)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def create_schema(conn):
    """Create all tables and indexes on an open connection."""
    conn.executescript(SCHEMA_SQL)


def init_db(config=None):
    """Create all tables and indexes."""
    conn = get_connection(config)
    create_schema(conn)
    conn.close()
    db_path = get_db_path(config)
    log.info("Database initialized at %s", db_path)
    return db_path
