import argparse
import logging
import sys
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from urllib.parse import parse_qs, urlparse

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def _load(args):
    """Load config, configure logging, and open the database."""
    from passbase.config import load_config
    from passbase.db import create_schema, get_connection

    try:
        config = load_config(getattr(args, "config", None))
    except FileNotFoundError:
        config = {}
    level = "DEBUG" if getattr(args, "verbose", False) else (
        (config.get("logging") or {}).get("level", "INFO"))
    logging.basicConfig(level=level, format=LOG_FORMAT)

    conn = get_connection(config)
    create_schema(conn)
    return config, conn


def _require_cyclist(conn, cyclist_id):
    from passbase.storage import CyclistStore

    cyclist = CyclistStore(conn).get(cyclist_id)
    if cyclist is None:
        print(f"Cyclist #{cyclist_id} not found.")
        sys.exit(1)
    return cyclist


def cmd_db_init(args):
    from passbase.db import init_db
    from passbase.config import load_config

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    try:
        config = load_config(args.config)
    except FileNotFoundError:
        config = None
    db_path = init_db(config)
    print(f"Database initialized at {db_path}")


def cmd_catalog_load(args):
    from passbase.catalog import get_catalog_path, load_catalog_file
    from passbase.storage import PassStore

    config, conn = _load(args)
    path = args.path or get_catalog_path(config)
    passes = load_catalog_file(path)
    count = PassStore(conn).replace_catalog(passes)
    conn.close()
    print(f"Loaded {count} passes from {path}")


def cmd_cyclist_add(args):
    from passbase.storage import CyclistStore

    _, conn = _load(args)
    cyclist_id = CyclistStore(conn).add(args.name, args.email)
    conn.close()
    print(f"Cyclist #{cyclist_id} created: {args.name}")


# ---------------------------------------------------------------------------
# Strava connection
# ---------------------------------------------------------------------------

class CallbackHandler(BaseHTTPRequestHandler):
    """Captures the OAuth callback and extracts the authorization code."""

    callback_path = "/callback"
    auth_code = None
    error = None

    def do_GET(self):
        parsed = urlparse(self.path)
        if parsed.path != self.callback_path:
            self.send_response(404)
            self.end_headers()
            return

        params = parse_qs(parsed.query)
        self.send_response(200 if "code" in params else 400)
        self.send_header("Content-Type", "text/html")
        self.end_headers()
        if "code" in params:
            CallbackHandler.auth_code = params["code"][0]
            self.wfile.write(
                b"<html><body><h2>Strava connected!</h2>"
                b"<p>You can close this tab and return to the terminal.</p>"
                b"</body></html>"
            )
        else:
            CallbackHandler.error = params.get("error", ["unknown"])[0]
            self.wfile.write(
                f"<html><body><h2>Error: {CallbackHandler.error}</h2></body></html>".encode()
            )

    def log_message(self, format, *args):
        pass  # Suppress request logging


def cmd_strava_connect(args):
    from passbase.errors import TokenUnavailable
    from passbase.strava.auth import make_token_guard

    config, conn = _load(args)
    _require_cyclist(conn, args.cyclist_id)
    guard = make_token_guard(config, conn)
    if not guard.settings["client_id"] or not guard.settings["client_secret"]:
        print("Error: STRAVA_CLIENT_ID and STRAVA_CLIENT_SECRET must be set.")
        print("Set them as environment variables or in config/config.yaml under strava:")
        sys.exit(1)

    redirect = urlparse(guard.settings["redirect_uri"])
    CallbackHandler.callback_path = redirect.path or "/callback"
    server = HTTPServer((redirect.hostname or "localhost", redirect.port or 8090), CallbackHandler)

    auth_url = guard.authorization_url(state=str(args.cyclist_id))
    print("Opening browser for Strava authorization...")
    print(f"If the browser doesn't open, visit:\n  {auth_url}\n")
    webbrowser.open(auth_url)

    print("Waiting for callback...")
    server.handle_request()
    server.server_close()

    if not CallbackHandler.auth_code:
        print(f"Error: No authorization code received ({CallbackHandler.error or 'no callback'}).")
        sys.exit(1)

    try:
        cred = guard.exchange_code(args.cyclist_id, CallbackHandler.auth_code)
    except TokenUnavailable as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()
    print(f"\nConnected Strava athlete {cred.provider_athlete_id} to cyclist #{args.cyclist_id}.")
    print(f"You can now run: python -m passbase sync {args.cyclist_id}")


def cmd_strava_disconnect(args):
    from passbase.strava.auth import make_token_guard

    config, conn = _load(args)
    _require_cyclist(conn, args.cyclist_id)
    make_token_guard(config, conn).disconnect(args.cyclist_id)
    conn.close()
    print(f"Strava disconnected for cyclist #{args.cyclist_id}.")


def cmd_strava_status(args):
    from passbase.reconcile.conquests import sync_status
    from passbase.storage import ConquestStore, CyclistStore

    _, conn = _load(args)
    _require_cyclist(conn, args.cyclist_id)
    status = sync_status(CyclistStore(conn), ConquestStore(conn), args.cyclist_id)
    conn.close()
    print(f"Cyclist #{args.cyclist_id} Strava status:")
    print(f"  Connected:   {'yes' if status['connected'] else 'no'}")
    print(f"  Athlete:     {status['athlete_id'] or '-'}")
    print(f"  Last sync:   {status['last_sync_at'] or 'never'}")
    print(f"  Last synced: {status['synced_count']}")


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

def cmd_sync(args):
    from passbase.errors import PersistenceFailed, SyncUnavailable
    from passbase.reconcile.conquests import make_reconciler
    from passbase.storage import PassStore

    config, conn = _load(args)
    _require_cyclist(conn, args.cyclist_id)
    passes = PassStore(conn).load_catalog()
    if not passes:
        print("Pass catalog is empty. Run: python -m passbase catalog load")
        sys.exit(1)

    try:
        result = make_reconciler(config, conn).sync(args.cyclist_id, passes, dry_run=args.dry_run)
    except (SyncUnavailable, PersistenceFailed) as e:
        print(f"Strava sync failed: {e}")
        sys.exit(1)
    finally:
        conn.close()
    _print_sync_summary(result, dry_run=args.dry_run)


def _print_sync_summary(result, dry_run: bool = False):
    prefix = "[DRY RUN] " if dry_run else ""
    print(f"\n{prefix}Strava sync complete:")
    print(f"  New conquests: {result.synced_count}")
    for c in result.new_conquests:
        print(f"    {c.date_completed}  {c.pass_id:<20s} strava:{c.external_activity_id}")


# ---------------------------------------------------------------------------
# Manual conquests
# ---------------------------------------------------------------------------

def cmd_conquest_add(args):
    from passbase.errors import UnknownPass
    from passbase.reconcile.conquests import add_manual_conquest
    from passbase.storage import ConquestStore, PassStore

    _, conn = _load(args)
    _require_cyclist(conn, args.cyclist_id)
    try:
        conquest = add_manual_conquest(
            ConquestStore(conn), PassStore(conn).load_catalog(), args.cyclist_id, args.pass_id,
            date_completed=args.date, time_completed=args.time,
            personal_notes=args.notes, photos=args.photo,
        )
    except (UnknownPass, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()
    print(f"Conquered {conquest.pass_id} on {conquest.date_completed}")


def cmd_conquest_remove(args):
    from passbase.storage import ConquestStore

    _, conn = _load(args)
    removed = ConquestStore(conn).remove(args.cyclist_id, args.pass_id)
    conn.close()
    if not removed:
        print(f"No conquest of {args.pass_id} for cyclist #{args.cyclist_id}.")
        sys.exit(1)
    print(f"Removed conquest of {args.pass_id}.")


def cmd_conquest_photos(args):
    from passbase.errors import UnknownPass
    from passbase.reconcile.conquests import set_conquest_photos
    from passbase.storage import ConquestStore, PassStore

    _, conn = _load(args)
    _require_cyclist(conn, args.cyclist_id)
    try:
        conquest = set_conquest_photos(ConquestStore(conn), PassStore(conn).load_catalog(),
                                       args.cyclist_id, args.pass_id, args.photos)
    except UnknownPass as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()
    print(f"{conquest.pass_id}: {len(conquest.photos)} photo(s)")


def cmd_conquest_list(args):
    from passbase.storage import ConquestStore

    _, conn = _load(args)
    conquests = ConquestStore(conn).load(args.cyclist_id)
    conn.close()
    if not conquests:
        print("No conquests.")
        return
    for c in conquests:
        source = f"strava:{c.external_activity_id}" if c.synced_from_external else "manual"
        print(f"  {c.date_completed}  {c.pass_id:<20s} {source}")


# ---------------------------------------------------------------------------
# Race finishes
# ---------------------------------------------------------------------------

def _tracker(conn):
    from passbase.races.finishes import PRTracker
    from passbase.storage import FinishStore

    return PRTracker(FinishStore(conn))


def cmd_finish_add(args):
    from passbase.errors import InvalidTimeFormat

    _, conn = _load(args)
    _require_cyclist(conn, args.cyclist_id)
    try:
        finish = _tracker(conn).add_finish(
            args.cyclist_id, args.race_id, args.year, args.time,
            date_completed=args.date, race_name=args.race_name, notes=args.notes,
        )
    except InvalidTimeFormat as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()
    pr = " (PR!)" if finish.is_pr else ""
    print(f"Finish #{finish.id}: {finish.race_id} {finish.year} in {finish.finish_time_display}{pr}")


def cmd_finish_edit(args):
    from passbase.errors import InvalidTimeFormat

    _, conn = _load(args)
    try:
        finish = _tracker(conn).update_finish(args.finish_id, args.time, notes=args.notes)
    except InvalidTimeFormat as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        conn.close()
    if finish is None:
        print(f"Finish #{args.finish_id} not found.")
        sys.exit(1)
    pr = " (PR)" if finish.is_pr else ""
    print(f"Finish #{finish.id} updated: {finish.finish_time_display}{pr}")


def cmd_finish_delete(args):
    _, conn = _load(args)
    deleted = _tracker(conn).delete_finish(args.finish_id)
    conn.close()
    if not deleted:
        print(f"Finish #{args.finish_id} not found.")
        sys.exit(1)
    print(f"Finish #{args.finish_id} deleted.")


def cmd_finish_list(args):
    _, conn = _load(args)
    finishes = _tracker(conn).finishes_for_cyclist(args.cyclist_id)
    conn.close()
    if not finishes:
        print("No race finishes.")
        return
    for f in finishes:
        pr = "  PR" if f.is_pr else ""
        print(f"  #{f.id:<5d} {f.date_completed or '':10s}  {f.race_name or f.race_id:<30s} "
              f"{f.year or '':<5}  {f.finish_time_display:>9s}{pr}")


def cmd_race_stats(args):
    _, conn = _load(args)
    stats = _tracker(conn).race_stats(args.cyclist_id, args.race_id)
    conn.close()
    print(f"Race {args.race_id}, cyclist #{args.cyclist_id}:")
    print(f"  Finishes:      {stats['total_finishes']}")
    print(f"  Best time:     {stats['best_time']}")
    print(f"  Average time:  {stats['average_time']}")
    print(f"  Improvements:  {stats['improvements']}")


def cmd_serve(args):
    from passbase.web.app import create_app

    config, conn = _load(args)
    conn.close()
    app = create_app(config)
    print(f"Serving on http://{args.host}:{args.port}")
    app.run(host=args.host, port=args.port, debug=args.verbose)


def main():
    parser = argparse.ArgumentParser(prog="passbase", description="Mountain pass conquests and race PRs")
    parser.add_argument("--config", help="Path to config.yaml")
    subparsers = parser.add_subparsers(dest="command")

    db_parser = subparsers.add_parser("db", help="Database operations")
    db_sub = db_parser.add_subparsers(dest="db_command")
    db_init = db_sub.add_parser("init", help="Initialize the database schema")
    db_init.set_defaults(func=cmd_db_init)

    catalog_parser = subparsers.add_parser("catalog", help="Mountain pass catalog")
    catalog_sub = catalog_parser.add_subparsers(dest="catalog_command")
    catalog_load = catalog_sub.add_parser("load", help="Load the pass catalog from YAML")
    catalog_load.add_argument("path", nargs="?", help="Catalog YAML (default: config/passes.yaml)")
    catalog_load.set_defaults(func=cmd_catalog_load)

    cyclist_parser = subparsers.add_parser("cyclist", help="Cyclist profiles")
    cyclist_sub = cyclist_parser.add_subparsers(dest="cyclist_command")
    cyclist_add = cyclist_sub.add_parser("add", help="Create a cyclist")
    cyclist_add.add_argument("name")
    cyclist_add.add_argument("email", nargs="?")
    cyclist_add.set_defaults(func=cmd_cyclist_add)

    strava_parser = subparsers.add_parser("strava", help="Strava connection")
    strava_sub = strava_parser.add_subparsers(dest="strava_command")
    for name, func, help_text in (
        ("connect", cmd_strava_connect, "Authorize Strava in the browser"),
        ("disconnect", cmd_strava_disconnect, "Forget the stored Strava tokens"),
        ("status", cmd_strava_status, "Show connection and last sync"),
    ):
        p = strava_sub.add_parser(name, help=help_text)
        p.add_argument("cyclist_id", type=int)
        p.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
        p.set_defaults(func=func)

    sync_parser = subparsers.add_parser("sync", help="Import pass conquests from Strava rides")
    sync_parser.add_argument("cyclist_id", type=int)
    sync_parser.add_argument("--dry-run", action="store_true", help="Show matches without writing")
    sync_parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    sync_parser.set_defaults(func=cmd_sync)

    conquest_parser = subparsers.add_parser("conquest", help="Manual pass conquests")
    conquest_sub = conquest_parser.add_subparsers(dest="conquest_command")
    conquest_add = conquest_sub.add_parser("add", help="Record a conquest by hand")
    conquest_add.add_argument("cyclist_id", type=int)
    conquest_add.add_argument("pass_id")
    conquest_add.add_argument("--date", help="Date completed (YYYY-MM-DD, default: today)")
    conquest_add.add_argument("--time", help="Time of day (HH:MM)")
    conquest_add.add_argument("--notes")
    conquest_add.add_argument("--photo", action="append", help="Photo URL (repeatable)")
    conquest_add.set_defaults(func=cmd_conquest_add)
    conquest_remove = conquest_sub.add_parser("remove", help="Delete a conquest")
    conquest_remove.add_argument("cyclist_id", type=int)
    conquest_remove.add_argument("pass_id")
    conquest_remove.set_defaults(func=cmd_conquest_remove)
    conquest_photos = conquest_sub.add_parser("photos", help="Replace a conquest's photos")
    conquest_photos.add_argument("cyclist_id", type=int)
    conquest_photos.add_argument("pass_id")
    conquest_photos.add_argument("photos", nargs="*", help="Photo URLs (none clears them)")
    conquest_photos.set_defaults(func=cmd_conquest_photos)
    conquest_list = conquest_sub.add_parser("list", help="List a cyclist's conquests")
    conquest_list.add_argument("cyclist_id", type=int)
    conquest_list.set_defaults(func=cmd_conquest_list)

    finish_parser = subparsers.add_parser("finish", help="Race finish times")
    finish_sub = finish_parser.add_subparsers(dest="finish_command")
    finish_add = finish_sub.add_parser("add", help="Record a race finish")
    finish_add.add_argument("cyclist_id", type=int)
    finish_add.add_argument("race_id")
    finish_add.add_argument("--year", type=int, required=True)
    finish_add.add_argument("--time", required=True, help="HH:MM:SS or MM:SS")
    finish_add.add_argument("--date", help="Date completed (YYYY-MM-DD)")
    finish_add.add_argument("--race-name")
    finish_add.add_argument("--notes")
    finish_add.set_defaults(func=cmd_finish_add)
    finish_edit = finish_sub.add_parser("edit", help="Change a finish time")
    finish_edit.add_argument("finish_id", type=int)
    finish_edit.add_argument("--time", required=True, help="HH:MM:SS or MM:SS")
    finish_edit.add_argument("--notes")
    finish_edit.set_defaults(func=cmd_finish_edit)
    finish_delete = finish_sub.add_parser("delete", help="Delete a finish")
    finish_delete.add_argument("finish_id", type=int)
    finish_delete.set_defaults(func=cmd_finish_delete)
    finish_list = finish_sub.add_parser("list", help="List a cyclist's finishes")
    finish_list.add_argument("cyclist_id", type=int)
    finish_list.set_defaults(func=cmd_finish_list)

    race_parser = subparsers.add_parser("race", help="Race statistics")
    race_sub = race_parser.add_subparsers(dest="race_command")
    race_stats = race_sub.add_parser("stats", help="Best/average time and improvements")
    race_stats.add_argument("cyclist_id", type=int)
    race_stats.add_argument("race_id")
    race_stats.set_defaults(func=cmd_race_stats)

    serve_parser = subparsers.add_parser("serve", help="Run the web app")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=5000)
    serve_parser.add_argument("-v", "--verbose", action="store_true", help="Debug mode")
    serve_parser.set_defaults(func=cmd_serve)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)
    if hasattr(args, "func"):
        args.func(args)
    else:
        subparsers.choices[args.command].print_help()
        sys.exit(1)
