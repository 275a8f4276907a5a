import io

from flask import Blueprint, current_app, jsonify, request, send_file

from ..extensions import limiter
from ..feeds import feed_stream, get_change_bus, sse_stream
from ..service import get_chat_service

rooms_bp = Blueprint("rooms", __name__)

ROOM_FEEDS = ("public", "private", "archived")


def serialize_rooms(rooms):
    return [room.to_document() for room in rooms or []]


def _room_feed(service, kind: str):
    return {
        "public": service.public_rooms,
        "private": service.private_rooms,
        "archived": service.archived_rooms,
    }[kind]


@rooms_bp.route("/api/rooms")
@limiter.exempt
def list_rooms():
    service = get_chat_service()
    return jsonify(
        {
            "public": serialize_rooms(service.public_rooms.value),
            "private": serialize_rooms(service.private_rooms.value),
            "archived": serialize_rooms(service.archived_rooms.value),
        }
    )


@rooms_bp.route("/api/rooms", methods=["POST"])
def create_room():
    data = request.get_json(silent=True) or {}
    name = str(data.get("name") or "").strip()
    if not name:
        return jsonify({"error": "missing_name"}), 400
    service = get_chat_service()
    room = service.create_room(
        name,
        room_id=data.get("id") or None,
        is_private=bool(data.get("isPrivate", False)),
        is_generated=bool(data.get("isGenerated", False)),
    )
    current_app.logger.info("Create room id=%s private=%s", room.id, room.is_private)
    return jsonify(room.to_document()), 201


@rooms_bp.route("/api/rooms/<room_id>")
@limiter.exempt
def get_room(room_id: str):
    room = get_chat_service().read_room_by_id(room_id)
    return jsonify(room.to_document())


@rooms_bp.route("/api/rooms/<room_id>/archive", methods=["POST"])
def archive_room(room_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    archived = service.archive_room(room)
    return jsonify({"id": room.id, "archived": archived, "state": service.archive.state(room.id).value})


@rooms_bp.route("/api/rooms/<room_id>/unarchive", methods=["POST"])
def unarchive_room(room_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    unarchived = service.unarchive_room(room)
    return jsonify({"id": room.id, "unarchived": unarchived, "state": service.archive.state(room.id).value})


@rooms_bp.route("/api/rooms/<room_id>", methods=["DELETE"])
def delete_room(room_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    if room.is_default:
        return jsonify({"error": "forbidden"}), 403
    deleted = service.delete_room(room)
    if not deleted:
        return jsonify({"error": "not_deleted"}), 409
    return jsonify({"id": room.id, "deleted": True})


@rooms_bp.route("/api/rooms/<room_id>/invite")
def room_invite(room_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    if not room.is_private:
        return jsonify({"error": "not_private"}), 400
    return jsonify({"invite": service.private_room_invite(room)})


@rooms_bp.route("/api/rooms/<room_id>/invite.png")
def room_invite_qr(room_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    if not room.is_private:
        return jsonify({"error": "not_private"}), 400
    buf = io.BytesIO(service.private_room_qr_code(room))
    return send_file(buf, mimetype="image/png")


@rooms_bp.route("/api/rooms/join", methods=["POST"])
def join_room():
    data = request.get_json(silent=True) or {}
    invite = data.get("invite")
    if not invite:
        return jsonify({"error": "missing"}), 400
    room = get_chat_service().join_private_room(str(invite))
    if room is None:
        return jsonify({"error": "bad_invite"}), 400
    return jsonify(room.to_document()), 201


@rooms_bp.route("/api/rooms/stream")
@limiter.exempt
def rooms_stream():
    kind = request.args.get("kind", "public")
    if kind not in ROOM_FEEDS:
        return jsonify({"error": "invalid_kind"}), 400
    feed = _room_feed(get_chat_service(), kind)
    heartbeat = current_app.config.get("FEED_HEARTBEAT_SECONDS", 10)
    return sse_stream(feed_stream(feed, serialize_rooms, heartbeat=heartbeat))


@rooms_bp.route("/api/changes/stream")
@limiter.exempt
def changes_stream():
    return sse_stream(get_change_bus().stream())
