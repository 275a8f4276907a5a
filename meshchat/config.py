import os
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent

def _resolve_storage_path(env_var: str, default: Path) -> str:
    raw_value = os.environ.get(env_var)
    if raw_value:
        candidate = Path(os.path.expanduser(raw_value))
        if not candidate.is_absolute():
            candidate = BASE_DIR / candidate
    else:
        candidate = default
    return str(candidate.resolve())


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


class Config:
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "MESHCHAT_DATABASE_URI", "sqlite:///meshchat.db"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    REDIS_URL = os.environ.get("MESHCHAT_REDIS_URL")
    _rl_storage = os.environ.get("MESHCHAT_RATELIMIT_URI")
    if _rl_storage and _rl_storage.strip().startswith("$"):
        _rl_storage = None
    RATELIMIT_STORAGE_URI = _rl_storage or REDIS_URL or "memory://"
    RATELIMIT_ENABLED = _env_flag("MESHCHAT_RATELIMIT_ENABLED", "true")

    # Rate limiting
    RATELIMIT_DEFAULT = "1000 per hour"
    RATELIMIT_STRATEGY = "fixed-window"
    RATELIMIT_MESSAGES = os.environ.get("MESHCHAT_RATELIMIT_MESSAGES", "120 per minute")

    MAX_CONTENT_LENGTH = int(os.environ.get("MESHCHAT_MAX_UPLOAD", 10 * 1024 * 1024))
    _upload_default = BASE_DIR / "meshchat" / "storage"
    UPLOAD_FOLDER = _resolve_storage_path("MESHCHAT_UPLOAD_FOLDER", _upload_default)
    ALLOWED_IMAGE_MIMETYPES = {
        "image/jpeg",
        "image/png",
        "image/webp",
        "image/gif",
    }

    # Chat session
    USERS_COLLECTION = os.environ.get("MESHCHAT_USERS_COLLECTION", "users")
    RETENTION_DAYS = int(os.environ.get("MESHCHAT_RETENTION_DAYS", 30))
    ACCEPT_LARGE_IMAGES = _env_flag("MESHCHAT_ACCEPT_LARGE_IMAGES", "true")
    MESSAGE_CHARACTER_LIMIT = int(os.environ.get("MESHCHAT_MESSAGE_CHARACTER_LIMIT", 2500))
    THUMBNAIL_SIZE = int(os.environ.get("MESHCHAT_THUMBNAIL_SIZE", 282))
    JPEG_QUALITY = int(os.environ.get("MESHCHAT_JPEG_QUALITY", 90))
    PEER_KEY = os.environ.get("MESHCHAT_PEER_KEY", "")
    USER_ID = os.environ.get("MESHCHAT_USER_ID")

    # Feeds
    FEED_QUEUE_SIZE = 100
    FEED_HEARTBEAT_SECONDS = 10
    ATTACHMENT_CHUNK_SIZE = int(os.environ.get("MESHCHAT_ATTACHMENT_CHUNK_SIZE", 64 * 1024))
