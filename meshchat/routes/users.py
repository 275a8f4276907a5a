from flask import Blueprint, current_app, jsonify, request

from ..extensions import limiter
from ..feeds import feed_stream, sse_stream
from ..service import get_chat_service

users_bp = Blueprint("users", __name__)


def serialize_user(user):
    return user.to_document() if user is not None else None


@users_bp.route("/api/users")
@limiter.exempt
def list_users():
    users = get_chat_service().all_users.value or []
    return jsonify([user.to_document() for user in users])


@users_bp.route("/api/users/me")
@limiter.exempt
def current_user():
    service = get_chat_service()
    user_id = service.current_user_id
    if not user_id:
        return jsonify({"error": "no_current_user"}), 404
    user = service.users.user(user_id)
    if user is None:
        return jsonify({"id": user_id, "user": None})
    return jsonify({"id": user_id, "user": user.to_document()})


@users_bp.route("/api/users/me", methods=["POST"])
def set_current_user():
    data = request.get_json(silent=True) or {}
    service = get_chat_service()
    if data.get("id"):
        service.set_current_user_id(str(data["id"]))
        current_app.logger.info("Adopted user id %s", data["id"])
        return jsonify({"id": service.current_user_id})
    name = str(data.get("name") or "").strip()
    if not name:
        return jsonify({"error": "missing"}), 400
    user = service.set_current_user(name)
    return jsonify({"id": user.id, "user": user.to_document()})


@users_bp.route("/api/users/<user_id>", methods=["PATCH"])
def update_user(user_id: str):
    data = request.get_json(silent=True) or {}
    fields = {}
    if "name" in data:
        fields["name"] = str(data["name"])
    if "firstName" in data and "lastName" in data:
        fields["first_name"] = str(data["firstName"])
        fields["last_name"] = str(data["lastName"])
    if isinstance(data.get("mentions"), dict):
        fields["mentions"] = data["mentions"]
    user = get_chat_service().update_user(user_id, **fields)
    if user is None:
        return jsonify({"error": "not_found"}), 404
    return jsonify(user.to_document())


@users_bp.route("/api/users/me/subscriptions/<room_id>/toggle", methods=["POST"])
def toggle_subscription(room_id: str):
    user = get_chat_service().toggle_subscription(room_id)
    if user is None:
        return jsonify({"error": "no_current_user"}), 409
    return jsonify(user.to_document())


@users_bp.route("/api/users/me/rooms/<room_id>/read", methods=["POST"])
def mark_room_read(room_id: str):
    user = get_chat_service().mark_room_read(room_id)
    if user is None:
        return jsonify({"error": "no_current_user"}), 409
    return jsonify(user.to_document())


@users_bp.route("/api/users/me/preferences", methods=["GET", "PUT"])
def preferences():
    service = get_chat_service()
    if request.method == "PUT":
        data = request.get_json(silent=True) or {}
        if "acceptLargeImages" not in data:
            return jsonify({"error": "missing"}), 400
        service.set_accept_large_images(bool(data["acceptLargeImages"]))
    return jsonify({"acceptLargeImages": service.users.accept_large_images})


@users_bp.route("/api/users/stream")
@limiter.exempt
def user_stream():
    service = get_chat_service()
    heartbeat = current_app.config.get("FEED_HEARTBEAT_SECONDS", 10)
    return sse_stream(feed_stream(service.current_user, serialize_user, heartbeat=heartbeat))


@users_bp.route("/api/logout", methods=["POST"])
def logout():
    service = current_app.extensions.pop("chat_service", None)
    if service is not None:
        service.logout()
    current_app.logger.info("Chat session closed by request")
    return jsonify({"status": "logged_out"})
