"""Race finish times and personal-record (PR) tracking.

is_pr is derived data. After every insert, time edit or delete the whole
(cyclist, race) group is recomputed: the fastest finish is the PR, equal times
go to the earliest date_completed, then the lowest id. Only rows whose flag
changes are written.
"""

import logging
import sqlite3

from passbase.errors import InvalidTimeFormat, PersistenceFailed
from passbase.models import RaceFinish

log = logging.getLogger(__name__)

EMPTY_TIME = "--:--:--"


def parse_time_to_seconds(text: str) -> int:
    """Parse 'HH:MM:SS' or 'MM:SS' into seconds.

    >>> parse_time_to_seconds("1:05:30")
    3930
    >>> parse_time_to_seconds("45:30")
    2730
    """
    if not isinstance(text, str):
        raise InvalidTimeFormat(f"Finish time must be text, got {text!r}")
    parts = text.strip().split(":")
    if len(parts) not in (2, 3) or not all(p.isascii() and p.isdigit() for p in parts):
        raise InvalidTimeFormat(f"Invalid finish time {text!r}: use HH:MM:SS or MM:SS")

    values = [int(p) for p in parts]
    if len(values) == 3:
        hours, minutes, seconds = values
        if minutes >= 60:
            raise InvalidTimeFormat(f"Invalid finish time {text!r}: minutes must be < 60")
    else:
        hours = 0
        minutes, seconds = values
    if seconds >= 60:
        raise InvalidTimeFormat(f"Invalid finish time {text!r}: seconds must be < 60")

    return hours * 3600 + minutes * 60 + seconds


def format_seconds_to_time(seconds: int) -> str:
    """Format seconds as HH:MM:SS (an hour or more) or MM:SS."""
    seconds = int(seconds)
    if seconds < 0:
        raise ValueError(f"Negative duration: {seconds}")
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def is_new_finish_pr(existing: list[RaceFinish], new_time_seconds: int) -> bool:
    """True if the new time beats every existing finish (first finish is always a PR)."""
    return all(f.finish_time_seconds > new_time_seconds for f in existing)


class PRTracker:

    def __init__(self, finishes):
        self.finishes = finishes

    def recompute_group(self, cyclist_id, race_id) -> int:
        """Flag the fastest finish of the group as PR and clear every other flag.

        Returns the number of rows whose flag changed. A failing row write is
        logged and skipped; the next mutation of the group repairs it.
        """
        group = self.finishes.group(cyclist_id, race_id)
        changed = 0
        for i, finish in enumerate(group):
            want = i == 0
            if finish.is_pr == want:
                continue
            try:
                self.finishes.set_pr(finish.id, want)
            except PersistenceFailed as e:
                log.error("PR flag update failed for finish #%s: %s", finish.id, e)
                continue
            changed += 1
        if changed:
            log.debug("Recomputed PR for cyclist #%s race %s: %d flag(s) changed",
                      cyclist_id, race_id, changed)
        return changed

    def _recompute_quietly(self, cyclist_id, race_id):
        """Recompute after a mutation that is already committed; never fail it."""
        try:
            self.recompute_group(cyclist_id, race_id)
        except (PersistenceFailed, sqlite3.Error) as e:
            log.error("PR recompute failed for cyclist #%s race %s: %s", cyclist_id, race_id, e)

    def add_finish(self, cyclist_id, race_id: str, year: int, finish_time: str,
                   date_completed: str | None = None, race_name: str | None = None,
                   notes: str | None = None) -> RaceFinish:
        seconds = parse_time_to_seconds(finish_time)
        existing = self.finishes.group(cyclist_id, race_id)

        finish = RaceFinish(
            cyclist_id=cyclist_id,
            race_id=race_id,
            race_name=race_name,
            year=year,
            finish_time_seconds=seconds,
            finish_time_display=format_seconds_to_time(seconds),
            is_pr=is_new_finish_pr(existing, seconds),
            date_completed=date_completed,
            notes=notes,
        )
        finish.id = self.finishes.insert(finish)
        log.info("Added finish #%s: cyclist #%s %s %s in %s",
                 finish.id, cyclist_id, race_id, year, finish.finish_time_display)

        self._recompute_quietly(cyclist_id, race_id)
        return self.finishes.get(finish.id) or finish

    def update_finish(self, finish_id, finish_time: str,
                      notes: str | None = None) -> RaceFinish | None:
        """Change a finish time. Returns None if the finish does not exist."""
        seconds = parse_time_to_seconds(finish_time)
        current = self.finishes.get(finish_id)
        if current is None:
            return None

        self.finishes.update_time(finish_id, format_seconds_to_time(seconds), seconds,
                                  notes if notes is not None else current.notes)
        self._recompute_quietly(current.cyclist_id, current.race_id)
        return self.finishes.get(finish_id)

    def delete_finish(self, finish_id) -> bool:
        """Delete a finish. Returns False if it did not exist."""
        current = self.finishes.get(finish_id)
        if current is None:
            return False
        self.finishes.delete(finish_id)
        log.info("Deleted finish #%s", finish_id)
        self._recompute_quietly(current.cyclist_id, current.race_id)
        return True

    def finishes_for_cyclist(self, cyclist_id) -> list[RaceFinish]:
        return self.finishes.for_cyclist(cyclist_id)

    def race_stats(self, cyclist_id, race_id) -> dict:
        """Totals for one race: count, best, floored average, year-over-year improvements."""
        finishes = self.finishes.group(cyclist_id, race_id)
        if not finishes:
            return {"total_finishes": 0, "best_time": EMPTY_TIME,
                    "average_time": EMPTY_TIME, "improvements": 0}

        by_year = sorted(finishes, key=lambda f: (f.year or 0, f.date_completed or ""))
        improvements = sum(
            1 for prev, cur in zip(by_year, by_year[1:])
            if cur.finish_time_seconds < prev.finish_time_seconds
        )
        times = [f.finish_time_seconds for f in finishes]
        return {
            "total_finishes": len(finishes),
            "best_time": format_seconds_to_time(min(times)),
            "average_time": format_seconds_to_time(sum(times) // len(times)),
            "improvements": improvements,
        }
