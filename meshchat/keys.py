# Document keys
DB_ID_KEY = "_id"
ARCHIVED_MESSAGE_KEY = "archivedMessage"
COLLECTION_ID_KEY = "collectionId"
CREATED_BY_KEY = "createdBy"
CREATED_ON_KEY = "createdOn"
FIRST_NAME_KEY = "firstName"
IS_ARCHIVED_KEY = "isArchived"
IS_GENERATED_KEY = "isGenerated"
IS_PRIVATE_KEY = "isPrivate"
LARGE_IMAGE_TOKEN_KEY = "largeImageToken"
LAST_NAME_KEY = "lastName"
MENTIONS_KEY = "mentions"
MESSAGES_ID_KEY = "messagesId"
NAME_KEY = "name"
ROOM_ID_KEY = "roomId"
SUBSCRIPTIONS_KEY = "subscriptions"
TEXT_KEY = "text"
THUMBNAIL_IMAGE_TOKEN_KEY = "thumbnailImageToken"
USER_ID_KEY = "userId"
HAS_BEEN_CONVERTED_KEY = "hasBeenConverted"

# Legacy TAK keys
AUTHOR_CS_KEY = "authorCs"
AUTHOR_ID_KEY = "authorId"
AUTHOR_LOC_KEY = "authorLoc"
AUTHOR_TYPE_KEY = "authorType"
MSG_KEY = "msg"
PARENT_KEY = "parent"
PKS_KEY = "pks"
ROOM_KEY = "room"
SCHVER_KEY = "schver"
TAK_UID_KEY = "takUid"
TIME_MS_KEY = "timeMs"

# Attachment metadata keys
FILENAME_KEY = "filename"
FILEFORMAT_KEY = "fileformat"
FILESIZE_KEY = "filesize"
TIMESTAMP_KEY = "timestamp"
USERNAME_KEY = "username"
JPG_EXT = ".jpg"

# Collections
PUBLIC_ROOMS_COLLECTION = "rooms"
PUBLIC_MESSAGES_COLLECTION = "messages"
COLLECTIONS_COLLECTION = "collections"
DEFAULT_USERS_COLLECTION = "users"

# Default public room
PUBLIC_ROOM_ID = "ChatContact-Ditto"
PUBLIC_ROOM_ALIAS = "public"
PUBLIC_ROOM_NAME = "Public Room"
PUBLIC_MESSAGES_ID = "chat"

CREATED_BY_UNKNOWN = "[unknown]"
UNKNOWN_USER_ID = "unknownUserId"
UNKNOWN_USER_NAME = "UnknownUserName"
NO_NAME = "[no name]"

DELETED_TEXT_MESSAGE = "[text deleted by sender]"
DELETED_IMAGE_MESSAGE = "[image deleted by sender]"

# TAK defaults for outgoing messages
TAK_AUTHOR_LOC = "0.0,0.0,NaN,HAE,NaN,NaN"
TAK_AUTHOR_TYPE = "a-f-G-U-C"
TAK_PARENT = "RootContactGroup"
TAK_ROOM = "ditto"
TAK_SCHEMA_VERSION = 1

# Local preference keys
PREF_USER_ID = "userId"
PREF_ARCHIVED_ROOMS = "archivedRooms"
PREF_PRIVATE_ROOMS = "privateRooms"
PREF_ACCEPT_LARGE_IMAGES = "acceptLargeImages"
