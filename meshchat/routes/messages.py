import io

from flask import Blueprint, current_app, jsonify, request, send_file

from ..attachments import FetchCompleted, FetchDeleted
from ..extensions import limiter
from ..feeds import feed_stream, sse_stream
from ..service import get_chat_service

messages_bp = Blueprint("messages", __name__)


def serialize_messages(messages):
    return [message.to_document() for message in messages or []]


@messages_bp.route("/api/rooms/<room_id>/messages")
@limiter.exempt
def list_messages(room_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    retention = request.args.get("retention_days", type=int)
    feed = service.messages_feed(room, retention_days=retention)
    try:
        messages = feed.value
    finally:
        service.release_feed(feed)
    current_app.logger.info("List messages room=%s count=%s", room.id, len(messages))
    return jsonify(serialize_messages(messages))


@messages_bp.route("/api/rooms/<room_id>/messages", methods=["POST"])
@limiter.limit(lambda: current_app.config["RATELIMIT_MESSAGES"])
def post_message(room_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    data = request.get_json(silent=True) or {}
    text = data.get("text")
    if text is None:
        return jsonify({"error": "missing"}), 400
    message = service.create_message(room, text)
    if message is None:
        return jsonify({"error": "no_current_user"}), 409
    return jsonify(message.to_document()), 201


@messages_bp.route("/api/rooms/<room_id>/images", methods=["POST"])
@limiter.limit(lambda: current_app.config["RATELIMIT_MESSAGES"])
def post_image(room_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    file = request.files.get("file")
    if not file:
        return jsonify({"error": "missing_file"}), 400
    if file.mimetype not in current_app.config["ALLOWED_IMAGE_MIMETYPES"]:
        return jsonify({"error": "blocked_mime", "reason": "Unsupported image type"}), 400
    text = request.form.get("text") or None
    message = service.create_image_message(room, file.read(), text=text)
    if message is None:
        return jsonify({"error": "not_found"}), 404
    current_app.logger.info("Image message %s in room %s", message.id, room.id)
    return jsonify(message.to_document()), 201


@messages_bp.route("/api/rooms/<room_id>/messages/<message_id>")
@limiter.exempt
def get_message(room_id: str, message_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    message = service.find_message(room, message_id)
    if message is None:
        return jsonify({"error": "not_found"}), 404
    return jsonify(message.to_document())


@messages_bp.route("/api/rooms/<room_id>/messages/<message_id>", methods=["PUT"])
def edit_message(room_id: str, message_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    message = service.find_message(room, message_id)
    if message is None:
        return jsonify({"error": "not_found"}), 404
    if message.author_id != service.current_user_id:
        return jsonify({"error": "forbidden"}), 403
    data = request.get_json(silent=True) or {}
    updated = service.edit_message(room, message, str(data.get("text") or ""))
    return jsonify(updated.to_document())


@messages_bp.route("/api/rooms/<room_id>/messages/<message_id>", methods=["DELETE"])
def delete_message(room_id: str, message_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    message = service.find_message(room, message_id)
    if message is None:
        return jsonify({"error": "not_found"}), 404
    if message.author_id != service.current_user_id:
        return jsonify({"error": "forbidden"}), 403
    if message.is_image_message:
        updated = service.delete_image_message(room, message)
    else:
        updated = service.delete_text_message(room, message)
    return jsonify(updated.to_document())


@messages_bp.route("/api/rooms/<room_id>/messages/stream")
@limiter.exempt
def messages_stream(room_id: str):
    service = get_chat_service()
    room = service.read_room_by_id(room_id)
    feed = service.messages_feed(room, retention_days=request.args.get("retention_days", type=int))
    heartbeat = current_app.config.get("FEED_HEARTBEAT_SECONDS", 10)
    return sse_stream(
        feed_stream(feed, serialize_messages, heartbeat=heartbeat),
        on_close=lambda: service.release_feed(feed),
    )


@messages_bp.route("/api/attachments/<token_id>")
@limiter.exempt
def download_attachment(token_id: str):
    large = request.args.get("large", "0") in ("1", "true")
    fetcher = get_chat_service().fetch_attachment(token_id, large=large)
    if fetcher is None:
        return jsonify({"error": "large_images_disabled"}), 403
    try:
        for event in fetcher:
            if isinstance(event, FetchDeleted):
                return jsonify({"error": "deleted"}), 410
            if isinstance(event, FetchCompleted):
                buf = io.BytesIO(event.data)
                return send_file(
                    buf,
                    mimetype="image/jpeg",
                    download_name=event.metadata.get("filename") or f"{token_id}.jpg",
                )
    finally:
        fetcher.close()
    return jsonify({"error": "cancelled"}), 409
