import shutil
from pathlib import Path

import click
from flask import Flask, jsonify, request
from flask_limiter.errors import RateLimitExceeded

from .config import Config
from .errors import AttachmentFailure, InvalidInput, NotFound, SessionClosed
from .extensions import db, migrate, limiter
from .feeds import create_change_bus
from .local_store import LocalStore
from .models import AttachmentBlob, DocumentRecord, LocalPreference
from .rooms import decode_rooms
from .store import DocumentStore
from .tasks import purge_expired_messages
from .routes.messages import messages_bp
from .routes.rooms import rooms_bp
from .routes.users import users_bp
from . import keys


def create_app(config_class: type[Config] = Config) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_class)

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.default_limits = [app.config.get("RATELIMIT_DEFAULT", "1000 per hour")]
    limiter.init_app(app)
    app.extensions["change_bus"] = create_change_bus(app)

    app.register_blueprint(rooms_bp)
    app.register_blueprint(messages_bp)
    app.register_blueprint(users_bp)

    with app.app_context():
        db.create_all()
    Path(app.config["UPLOAD_FOLDER"]).mkdir(parents=True, exist_ok=True)

    @app.errorhandler(RateLimitExceeded)
    def handle_ratelimit(e):  # pragma: no cover - small UX helper
        return jsonify({"error": "rate_limited", "message": "Too many requests, try again shortly."}), 429

    @app.errorhandler(InvalidInput)
    def handle_invalid(e):
        app.logger.info("Rejected input on %s: %s", request.path, e)
        return jsonify({"error": "invalid", "message": str(e)}), 400

    @app.errorhandler(NotFound)
    def handle_not_found(e):
        return jsonify({"error": "not_found", "kind": e.kind}), 404

    @app.errorhandler(AttachmentFailure)
    def handle_attachment_failure(e):
        app.logger.warning("Attachment failure on %s: %s", request.path, e)
        return jsonify({"error": e.reason.value}), 422

    @app.errorhandler(SessionClosed)
    def handle_session_closed(e):
        return jsonify({"error": "session_closed"}), 409

    @app.cli.command("purge-expired")
    def purge_expired():
        """Evict messages older than the retention window."""
        store = DocumentStore(app.extensions["change_bus"], app.logger)
        local_store = LocalStore(logger=app.logger)
        purged = purge_expired_messages(store, local_store, app.config.get("RETENTION_DAYS", 30))
        print(f"Evicted {purged} expired messages")

    @app.cli.command("list-rooms")
    def list_rooms():
        """Print public and private rooms with their message namespaces."""
        store = DocumentStore(app.extensions["change_bus"], app.logger)
        local_store = LocalStore(logger=app.logger)
        archived = set(local_store.archived_room_ids())
        rooms = decode_rooms(store.query(keys.PUBLIC_ROOMS_COLLECTION, sort=keys.CREATED_ON_KEY), app.logger)
        rooms += local_store.private_rooms()
        for room in rooms:
            kind = "private" if room.is_private else "public"
            flag = " archived" if room.id in archived else ""
            print(f"{room.id}\t{room.name}\t{kind}\t{room.messages_id}{flag}")

    @app.cli.command("wipe-data")
    @click.option("--yes", is_flag=True, help="Confirm destructive wipe.")
    def wipe_data(yes: bool):
        """Danger: delete all documents, preferences and attachments."""
        if not yes:
            print("Add --yes to confirm wipe.")
            return
        service = app.extensions.pop("chat_service", None)
        if service is not None:
            service.logout()
        for model in (AttachmentBlob, DocumentRecord, LocalPreference):
            model.query.delete()
        db.session.commit()
        shutil.rmtree(app.config["UPLOAD_FOLDER"], ignore_errors=True)
        Path(app.config["UPLOAD_FOLDER"]).mkdir(parents=True, exist_ok=True)
        print("All data wiped (database and attachment storage).")

    return app
