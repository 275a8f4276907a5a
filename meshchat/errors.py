from enum import Enum


class ChatError(Exception):
    """Base class for session layer errors."""


class NotFound(ChatError):
    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class SubscriptionNotFound(ChatError):
    def __init__(self, room_id: str):
        super().__init__(f"no subscriptions tracked for room {room_id}")
        self.room_id = room_id


class ConversionConflict(ChatError):
    """A legacy conversion would overwrite an existing user profile."""


class InvalidInput(ChatError):
    pass


class SessionClosed(ChatError):
    def __init__(self):
        super().__init__("chat session has been logged out")


class AttachmentReason(str, Enum):
    THUMBNAIL_CREATE = "thumbnail_create"
    TMP_STORAGE_CREATE = "tmp_storage_create"
    TMP_STORAGE_WRITE = "tmp_storage_write"
    CREATE = "create"
    TMP_STORAGE_CLEANUP = "tmp_storage_cleanup"


class AttachmentFailure(ChatError):
    def __init__(self, reason: AttachmentReason, detail: str = ""):
        message = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(message)
        self.reason = reason
        self.detail = detail
