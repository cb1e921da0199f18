"""sqlite repositories for cyclists, the pass catalog, conquests and race finishes.

Writes commit on success and roll back on any sqlite error, which is re-raised
as PersistenceFailed.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone

from passbase.errors import PersistenceFailed
from passbase.models import (
    ConquestRecord, Cyclist, CyclistCredential, MountainPass, RaceFinish,
)

log = logging.getLogger(__name__)


def _write(conn, what: str, fn):
    """Run fn(conn) in a transaction; wrap sqlite errors."""
    try:
        result = fn(conn)
        conn.commit()
        return result
    except sqlite3.Error as e:
        conn.rollback()
        log.error("Failed to %s: %s", what, e)
        raise PersistenceFailed(f"Failed to {what}: {e}") from e


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Cyclists and credentials
# ---------------------------------------------------------------------------

class CyclistStore:

    def __init__(self, conn):
        self.conn = conn

    def add(self, name: str, email: str | None = None) -> int:
        def insert(conn):
            cursor = conn.execute(
                "INSERT INTO cyclists (name, email) VALUES (?, ?)", (name, email)
            )
            return cursor.lastrowid
        return _write(self.conn, "add cyclist", insert)

    def get(self, cyclist_id: int) -> Cyclist | None:
        row = self.conn.execute(
            """SELECT id, name, email, strava_connected, strava_athlete_id,
                      strava_access_token, strava_refresh_token, strava_token_expiry
               FROM cyclists WHERE id = ?""",
            (cyclist_id,),
        ).fetchone()
        if not row:
            return None
        return Cyclist(
            id=row[0], name=row[1], email=row[2],
            credential=_row_to_credential(row[3:]),
        )

    def load_credential(self, cyclist_id: int) -> CyclistCredential | None:
        cyclist = self.get(cyclist_id)
        return cyclist.credential if cyclist else None

    def save_credential(self, cyclist_id: int, cred: CyclistCredential):
        """Apply a credential update to the owning cyclist row in one statement."""
        def update(conn):
            conn.execute(
                """UPDATE cyclists
                   SET strava_connected = ?, strava_athlete_id = ?,
                       strava_access_token = ?, strava_refresh_token = ?,
                       strava_token_expiry = ?, updated_at = datetime('now')
                   WHERE id = ?""",
                (cred.connected, cred.provider_athlete_id, cred.access_token,
                 cred.refresh_token, cred.token_expiry_epoch_s, cyclist_id),
            )
        _write(self.conn, f"save Strava credential for cyclist #{cyclist_id}", update)


def _row_to_credential(cols) -> CyclistCredential:
    connected, athlete_id, access, refresh, expiry = cols
    return CyclistCredential(
        connected=bool(connected),
        provider_athlete_id=athlete_id,
        access_token=access,
        refresh_token=refresh,
        token_expiry_epoch_s=int(expiry) if expiry is not None else None,
    )


# ---------------------------------------------------------------------------
# Pass catalog
# ---------------------------------------------------------------------------

class PassStore:

    def __init__(self, conn):
        self.conn = conn

    def replace_catalog(self, passes: list[MountainPass]) -> int:
        """Upsert every pass, recording its catalog position."""
        def upsert(conn):
            conn.executemany(
                """INSERT INTO passes
                   (id, position, name, lat, lng, country, region, max_altitude_m, category)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       position=excluded.position, name=excluded.name,
                       lat=excluded.lat, lng=excluded.lng,
                       country=excluded.country, region=excluded.region,
                       max_altitude_m=excluded.max_altitude_m,
                       category=excluded.category""",
                [(p.id, i, p.name, p.lat, p.lng, p.country, p.region,
                  p.max_altitude_m, p.category) for i, p in enumerate(passes)],
            )
            return len(passes)
        return _write(self.conn, "load pass catalog", upsert)

    def load_catalog(self) -> list[MountainPass]:
        rows = self.conn.execute(
            """SELECT id, name, lat, lng, country, region, max_altitude_m, category
               FROM passes ORDER BY position, id"""
        ).fetchall()
        return [
            MountainPass(id=r[0], name=r[1], lat=r[2], lng=r[3], country=r[4],
                         region=r[5], max_altitude_m=r[6], category=r[7])
            for r in rows
        ]


# ---------------------------------------------------------------------------
# Conquests
# ---------------------------------------------------------------------------

_CONQUEST_UPSERT_SQL = """\
INSERT INTO conquered_passes
    (cyclist_id, pass_id, date_completed, time_completed, strava_activity_id,
     strava_activity_url, synced_from_strava, personal_notes, photos_json)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(cyclist_id, pass_id) DO UPDATE SET
    date_completed=excluded.date_completed,
    time_completed=excluded.time_completed,
    strava_activity_id=excluded.strava_activity_id,
    strava_activity_url=excluded.strava_activity_url,
    synced_from_strava=excluded.synced_from_strava,
    personal_notes=excluded.personal_notes,
    photos_json=excluded.photos_json,
    updated_at=datetime('now')"""


def _conquest_params(cyclist_id: int, c: ConquestRecord) -> tuple:
    return (cyclist_id, c.pass_id, c.date_completed, c.time_completed,
            c.external_activity_id, c.external_activity_url,
            bool(c.synced_from_external), c.personal_notes,
            json.dumps(list(c.photos or [])))


def _row_to_conquest(r) -> ConquestRecord:
    return ConquestRecord(
        pass_id=r[0],
        date_completed=r[1],
        time_completed=r[2],
        external_activity_id=r[3],
        external_activity_url=r[4],
        synced_from_external=bool(r[5]),
        personal_notes=r[6],
        photos=json.loads(r[7]) if r[7] else [],
    )


class ConquestStore:

    def __init__(self, conn):
        self.conn = conn

    def load(self, cyclist_id: int) -> list[ConquestRecord]:
        rows = self.conn.execute(
            """SELECT pass_id, date_completed, time_completed, strava_activity_id,
                      strava_activity_url, synced_from_strava, personal_notes, photos_json
               FROM conquered_passes WHERE cyclist_id = ? ORDER BY id""",
            (cyclist_id,),
        ).fetchall()
        return [_row_to_conquest(r) for r in rows]

    def get(self, cyclist_id: int, pass_id: str) -> ConquestRecord | None:
        row = self.conn.execute(
            """SELECT pass_id, date_completed, time_completed, strava_activity_id,
                      strava_activity_url, synced_from_strava, personal_notes, photos_json
               FROM conquered_passes WHERE cyclist_id = ? AND pass_id = ?""",
            (cyclist_id, pass_id),
        ).fetchone()
        return _row_to_conquest(row) if row else None

    def upsert(self, cyclist_id: int, conquest: ConquestRecord):
        self.upsert_many(cyclist_id, [conquest])

    def upsert_many(self, cyclist_id: int, conquests: list[ConquestRecord]):
        """Batch upsert keyed on (cyclist_id, pass_id)."""
        def upsert(conn):
            conn.executemany(
                _CONQUEST_UPSERT_SQL,
                [_conquest_params(cyclist_id, c) for c in conquests],
            )
        _write(self.conn, f"save conquests for cyclist #{cyclist_id}", upsert)

    def commit_sync(self, cyclist_id: int, conquests: list[ConquestRecord],
                    synced_at: str | None = None):
        """Upsert synced conquests and record the sync run in one transaction."""
        synced_at = synced_at or _now_iso()

        def save(conn):
            if conquests:
                conn.executemany(
                    _CONQUEST_UPSERT_SQL,
                    [_conquest_params(cyclist_id, c) for c in conquests],
                )
            meta = {"synced_count": len(conquests)}
            conn.execute(
                """INSERT INTO sync_state (cyclist_id, last_sync_at, metadata_json)
                   VALUES (?, ?, ?)
                   ON CONFLICT(cyclist_id)
                   DO UPDATE SET last_sync_at=excluded.last_sync_at,
                                 metadata_json=excluded.metadata_json""",
                (cyclist_id, synced_at, json.dumps(meta)),
            )
        _write(self.conn, f"save synced conquests for cyclist #{cyclist_id}", save)

    def last_sync(self, cyclist_id: int) -> dict | None:
        row = self.conn.execute(
            "SELECT last_sync_at, metadata_json FROM sync_state WHERE cyclist_id = ?",
            (cyclist_id,),
        ).fetchone()
        if not row:
            return None
        meta = json.loads(row[1]) if row[1] else {}
        return {"last_sync_at": row[0], "synced_count": meta.get("synced_count", 0)}

    def remove(self, cyclist_id: int, pass_id: str) -> bool:
        def delete(conn):
            cursor = conn.execute(
                "DELETE FROM conquered_passes WHERE cyclist_id = ? AND pass_id = ?",
                (cyclist_id, pass_id),
            )
            return cursor.rowcount > 0
        return _write(self.conn, f"remove conquest {pass_id}", delete)

    def update_photos(self, cyclist_id: int, pass_id: str, photos: list[str]):
        """Replace the photo list, creating a dated conquest if none exists."""
        existing = self.get(cyclist_id, pass_id)
        if existing is None:
            self.upsert(cyclist_id, ConquestRecord(
                pass_id=pass_id,
                date_completed=datetime.now(timezone.utc).strftime("%Y-%m-%d"),
                photos=list(photos),
            ))
            return

        def update(conn):
            conn.execute(
                """UPDATE conquered_passes
                   SET photos_json = ?, updated_at = datetime('now')
                   WHERE cyclist_id = ? AND pass_id = ?""",
                (json.dumps(list(photos)), cyclist_id, pass_id),
            )
        _write(self.conn, f"update photos for {pass_id}", update)


# ---------------------------------------------------------------------------
# Race finishes
# ---------------------------------------------------------------------------

_FINISH_COLUMNS = """id, cyclist_id, race_id, race_name, year, finish_time_seconds,
                     finish_time, is_pr, date_completed, notes"""


def _row_to_finish(r) -> RaceFinish:
    return RaceFinish(
        id=r[0], cyclist_id=r[1], race_id=r[2], race_name=r[3], year=r[4],
        finish_time_seconds=r[5], finish_time_display=r[6], is_pr=bool(r[7]),
        date_completed=r[8], notes=r[9],
    )


class FinishStore:

    def __init__(self, conn):
        self.conn = conn

    def insert(self, finish: RaceFinish) -> int:
        def insert(conn):
            conn.execute(
                "INSERT OR IGNORE INTO races (id, name) VALUES (?, ?)",
                (finish.race_id, finish.race_name or finish.race_id),
            )
            cursor = conn.execute(
                """INSERT INTO race_finishes
                   (cyclist_id, race_id, race_name, year, finish_time,
                    finish_time_seconds, is_pr, date_completed, notes)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (finish.cyclist_id, finish.race_id, finish.race_name, finish.year,
                 finish.finish_time_display, finish.finish_time_seconds,
                 finish.is_pr, finish.date_completed, finish.notes or ""),
            )
            return cursor.lastrowid
        return _write(self.conn, "add race finish", insert)

    def get(self, finish_id: int) -> RaceFinish | None:
        row = self.conn.execute(
            f"SELECT {_FINISH_COLUMNS} FROM race_finishes WHERE id = ?", (finish_id,)
        ).fetchone()
        return _row_to_finish(row) if row else None

    def update_time(self, finish_id: int, finish_time_display: str, seconds: int,
                    notes: str | None = None):
        def update(conn):
            conn.execute(
                """UPDATE race_finishes
                   SET finish_time = ?, finish_time_seconds = ?, notes = ?,
                       updated_at = datetime('now')
                   WHERE id = ?""",
                (finish_time_display, seconds, notes or "", finish_id),
            )
        _write(self.conn, f"update race finish #{finish_id}", update)

    def delete(self, finish_id: int):
        def delete(conn):
            conn.execute("DELETE FROM race_finishes WHERE id = ?", (finish_id,))
        _write(self.conn, f"delete race finish #{finish_id}", delete)

    def set_pr(self, finish_id: int, is_pr: bool):
        def update(conn):
            conn.execute(
                "UPDATE race_finishes SET is_pr = ? WHERE id = ?", (is_pr, finish_id)
            )
        _write(self.conn, f"set PR flag on finish #{finish_id}", update)

    def group(self, cyclist_id: int, race_id: str) -> list[RaceFinish]:
        """All finishes for (cyclist, race), fastest first.

        Equal times order by earliest date_completed, then lowest id.
        """
        rows = self.conn.execute(
            f"""SELECT {_FINISH_COLUMNS} FROM race_finishes
                WHERE cyclist_id = ? AND race_id = ?
                ORDER BY finish_time_seconds ASC,
                         date_completed IS NULL, date_completed ASC, id ASC""",
            (cyclist_id, race_id),
        ).fetchall()
        return [_row_to_finish(r) for r in rows]

    def for_cyclist(self, cyclist_id: int) -> list[RaceFinish]:
        rows = self.conn.execute(
            f"""SELECT {_FINISH_COLUMNS} FROM race_finishes
                WHERE cyclist_id = ?
                ORDER BY date_completed DESC, id DESC""",
            (cyclist_id,),
        ).fetchall()
        return [_row_to_finish(r) for r in rows]
