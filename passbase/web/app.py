import logging
from dataclasses import asdict

from flask import Flask, jsonify, redirect, request

from passbase.config import load_config
from passbase.db import create_schema, get_connection
from passbase.errors import (
    ActivityFetchFailed, InvalidTimeFormat, PersistenceFailed, TokenUnavailable, UnknownPass,
)

log = logging.getLogger(__name__)


def create_app(config=None, connection_factory=None):
    """Flask app for Strava connection, sync and race finishes.

    connection_factory returns an open sqlite connection; when given, the app
    does not close the connections it hands out (tests pass a shared one).
    """
    from passbase.strava.auth import RefreshLocks

    app = Flask(__name__)

    if config is None:
        try:
            config = load_config()
        except FileNotFoundError:
            config = {}
    app.config["PASSBASE"] = config

    # One lock registry per process so concurrent requests share refreshes
    refresh_locks = RefreshLocks()
    owns_connections = connection_factory is None

    def get_db():
        return connection_factory() if connection_factory else get_connection(config)

    def release_db(conn):
        if owns_connections:
            conn.close()

    conn = get_db()
    try:
        create_schema(conn)
    finally:
        release_db(conn)

    def error(message, status):
        return jsonify({"ok": False, "error": message}), status

    # ── Helpers ──────────────────────────────────────────────────────

    def _token_guard(conn):
        from passbase.strava.auth import make_token_guard
        return make_token_guard(config, conn, locks=refresh_locks)

    def _tracker(conn):
        from passbase.races.finishes import PRTracker
        from passbase.storage import FinishStore
        return PRTracker(FinishStore(conn))

    def _cyclist_exists(conn, cyclist_id):
        from passbase.storage import CyclistStore
        return CyclistStore(conn).get(cyclist_id) is not None

    # ── Strava connection ────────────────────────────────────────────

    @app.route("/strava/connect/<int:cyclist_id>")
    def strava_connect(cyclist_id):
        conn = get_db()
        try:
            if not _cyclist_exists(conn, cyclist_id):
                return error("cyclist not found", 404)
            url = _token_guard(conn).authorization_url(state=str(cyclist_id))
        finally:
            release_db(conn)
        return redirect(url)

    @app.route("/strava/callback")
    def strava_callback():
        if request.args.get("error"):
            return error(f"Strava authorization denied: {request.args['error']}", 400)
        code = request.args.get("code")
        state = request.args.get("state", "")
        if not code or not state.isdigit():
            return error("code and state required", 400)
        cyclist_id = int(state)

        conn = get_db()
        try:
            if not _cyclist_exists(conn, cyclist_id):
                return error("cyclist not found", 404)
            cred = _token_guard(conn).exchange_code(cyclist_id, code)
        except TokenUnavailable as e:
            return error(str(e), 409)
        except PersistenceFailed as e:
            return error(str(e), 500)
        finally:
            release_db(conn)
        return jsonify({"ok": True, "cyclist_id": cyclist_id,
                        "athlete_id": cred.provider_athlete_id})

    @app.route("/api/cyclists/<int:cyclist_id>/strava", methods=["DELETE"])
    def api_strava_disconnect(cyclist_id):
        conn = get_db()
        try:
            if not _cyclist_exists(conn, cyclist_id):
                return error("cyclist not found", 404)
            _token_guard(conn).disconnect(cyclist_id)
        except PersistenceFailed as e:
            return error(str(e), 500)
        finally:
            release_db(conn)
        return jsonify({"ok": True, "cyclist_id": cyclist_id})

    @app.route("/api/cyclists/<int:cyclist_id>/strava")
    def api_strava_status(cyclist_id):
        from passbase.reconcile.conquests import sync_status
        from passbase.storage import ConquestStore, CyclistStore

        conn = get_db()
        try:
            if not _cyclist_exists(conn, cyclist_id):
                return error("cyclist not found", 404)
            status = sync_status(CyclistStore(conn), ConquestStore(conn), cyclist_id)
            status["state"] = _token_guard(conn).state(cyclist_id).value
        finally:
            release_db(conn)
        return jsonify(status)

    # ── Sync ─────────────────────────────────────────────────────────

    @app.route("/api/cyclists/<int:cyclist_id>/sync", methods=["POST"])
    def api_sync(cyclist_id):
        from passbase.reconcile.conquests import make_reconciler
        from passbase.storage import PassStore

        dry_run = request.args.get("dry_run", "").lower() in ("1", "true", "yes")
        conn = get_db()
        try:
            if not _cyclist_exists(conn, cyclist_id):
                return error("cyclist not found", 404)
            passes = PassStore(conn).load_catalog()
            reconciler = make_reconciler(config, conn, token_guard=_token_guard(conn))
            result = reconciler.sync(cyclist_id, passes, dry_run=dry_run)
        except TokenUnavailable as e:
            return error(str(e), 409)
        except ActivityFetchFailed as e:
            return error(str(e), 502)
        except PersistenceFailed as e:
            return error(str(e), 500)
        finally:
            release_db(conn)

        return jsonify({
            "ok": True,
            "dry_run": dry_run,
            "synced_count": result.synced_count,
            "new_conquests": [asdict(c) for c in result.new_conquests],
        })

    # ── Conquests ────────────────────────────────────────────────────

    @app.route("/api/cyclists/<int:cyclist_id>/conquests")
    def api_conquests(cyclist_id):
        from passbase.storage import ConquestStore

        conn = get_db()
        try:
            conquests = ConquestStore(conn).load(cyclist_id)
        finally:
            release_db(conn)
        return jsonify({"conquests": [asdict(c) for c in conquests]})

    @app.route("/api/cyclists/<int:cyclist_id>/conquests/<pass_id>", methods=["PUT"])
    def api_add_conquest(cyclist_id, pass_id):
        from passbase.reconcile.conquests import add_manual_conquest
        from passbase.storage import ConquestStore, PassStore

        data = request.get_json(silent=True) or {}
        photos = data.get("photos") or []
        if not isinstance(photos, list):
            return error("photos must be a list", 400)

        conn = get_db()
        try:
            if not _cyclist_exists(conn, cyclist_id):
                return error("cyclist not found", 404)
            conquest = add_manual_conquest(
                ConquestStore(conn), PassStore(conn).load_catalog(), cyclist_id, pass_id,
                date_completed=data.get("date_completed"),
                time_completed=data.get("time_completed"),
                personal_notes=data.get("personal_notes"),
                photos=photos,
            )
        except UnknownPass as e:
            return error(str(e), 404)
        except ValueError as e:
            return error(f"invalid date_completed: {e}", 400)
        except PersistenceFailed as e:
            return error(str(e), 500)
        finally:
            release_db(conn)
        return jsonify({"ok": True, "conquest": asdict(conquest)})

    @app.route("/api/cyclists/<int:cyclist_id>/conquests/<pass_id>", methods=["DELETE"])
    def api_remove_conquest(cyclist_id, pass_id):
        from passbase.storage import ConquestStore

        conn = get_db()
        try:
            removed = ConquestStore(conn).remove(cyclist_id, pass_id)
        except PersistenceFailed as e:
            return error(str(e), 500)
        finally:
            release_db(conn)
        if not removed:
            return error("conquest not found", 404)
        return jsonify({"ok": True, "pass_id": pass_id})

    @app.route("/api/cyclists/<int:cyclist_id>/conquests/<pass_id>/photos", methods=["PUT"])
    def api_conquest_photos(cyclist_id, pass_id):
        from passbase.reconcile.conquests import set_conquest_photos
        from passbase.storage import ConquestStore, PassStore

        data = request.get_json(silent=True)
        if not data or not isinstance(data.get("photos"), list):
            return error("photos list required", 400)

        conn = get_db()
        try:
            if not _cyclist_exists(conn, cyclist_id):
                return error("cyclist not found", 404)
            conquest = set_conquest_photos(ConquestStore(conn), PassStore(conn).load_catalog(),
                                           cyclist_id, pass_id, data["photos"])
        except UnknownPass as e:
            return error(str(e), 404)
        except PersistenceFailed as e:
            return error(str(e), 500)
        finally:
            release_db(conn)
        return jsonify({"ok": True, "conquest": asdict(conquest)})

    # ── Race finishes ────────────────────────────────────────────────

    @app.route("/api/cyclists/<int:cyclist_id>/finishes")
    def api_finishes(cyclist_id):
        conn = get_db()
        try:
            finishes = _tracker(conn).finishes_for_cyclist(cyclist_id)
        finally:
            release_db(conn)
        return jsonify({"finishes": [asdict(f) for f in finishes]})

    @app.route("/api/cyclists/<int:cyclist_id>/finishes", methods=["POST"])
    def api_add_finish(cyclist_id):
        data = request.get_json(silent=True)
        if not data:
            return error("JSON body required", 400)
        if not data.get("race_id") or not data.get("finish_time"):
            return error("race_id and finish_time required", 400)

        conn = get_db()
        try:
            if not _cyclist_exists(conn, cyclist_id):
                return error("cyclist not found", 404)
            finish = _tracker(conn).add_finish(
                cyclist_id,
                data["race_id"],
                data.get("year"),
                data["finish_time"],
                date_completed=data.get("date_completed"),
                race_name=data.get("race_name"),
                notes=data.get("notes"),
            )
        except InvalidTimeFormat as e:
            return error(str(e), 400)
        except PersistenceFailed as e:
            return error(str(e), 500)
        finally:
            release_db(conn)
        return jsonify({"ok": True, "finish": asdict(finish)}), 201

    @app.route("/api/finishes/<int:finish_id>", methods=["PUT"])
    def api_update_finish(finish_id):
        data = request.get_json(silent=True)
        if not data or not data.get("finish_time"):
            return error("finish_time required", 400)

        conn = get_db()
        try:
            finish = _tracker(conn).update_finish(
                finish_id, data["finish_time"], notes=data.get("notes"))
        except InvalidTimeFormat as e:
            return error(str(e), 400)
        except PersistenceFailed as e:
            return error(str(e), 500)
        finally:
            release_db(conn)
        if finish is None:
            return error("finish not found", 404)
        return jsonify({"ok": True, "finish": asdict(finish)})

    @app.route("/api/finishes/<int:finish_id>", methods=["DELETE"])
    def api_delete_finish(finish_id):
        conn = get_db()
        try:
            deleted = _tracker(conn).delete_finish(finish_id)
        except PersistenceFailed as e:
            return error(str(e), 500)
        finally:
            release_db(conn)
        if not deleted:
            return error("finish not found", 404)
        return jsonify({"ok": True, "finish_id": finish_id})

    @app.route("/api/cyclists/<int:cyclist_id>/races/<race_id>/stats")
    def api_race_stats(cyclist_id, race_id):
        conn = get_db()
        try:
            stats = _tracker(conn).race_stats(cyclist_id, race_id)
        finally:
            release_db(conn)
        return jsonify(stats)

    return app
