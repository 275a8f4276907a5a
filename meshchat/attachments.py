import contextlib
import logging
import secrets
import shutil
import tempfile
import threading
from io import BytesIO
from pathlib import Path
from typing import NamedTuple, Optional, Union

from PIL import Image

from . import keys
from .errors import AttachmentFailure, AttachmentReason
from .extensions import db
from .models import AttachmentBlob
from .schemas import AttachmentToken

THUMBNAIL = "thumbnail"
LARGE_IMAGE = "largeImage"


class FetchProgress(NamedTuple):
    downloaded: int
    total: int


class FetchCompleted(NamedTuple):
    data: bytes
    metadata: dict


class FetchDeleted(NamedTuple):
    token_id: str


def make_thumbnail(image_bytes: bytes, size: int = 282, quality: int = 90) -> bytes:
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            thumb = img.convert("RGB")
            thumb.thumbnail((size, size))
            buffer = BytesIO()
            thumb.save(buffer, format="JPEG", quality=quality)
    except (OSError, ValueError) as exc:
        raise AttachmentFailure(AttachmentReason.THUMBNAIL_CREATE, str(exc)) from exc
    return buffer.getvalue()


def to_jpeg(image_bytes: bytes, quality: int = 90) -> bytes:
    try:
        with Image.open(BytesIO(image_bytes)) as img:
            buffer = BytesIO()
            img.convert("RGB").save(buffer, format="JPEG", quality=quality)
    except (OSError, ValueError) as exc:
        raise AttachmentFailure(AttachmentReason.TMP_STORAGE_WRITE, str(exc)) from exc
    return buffer.getvalue()


def attachment_filename(user_name: str, kind: str, timestamp: str, ext: str = keys.JPG_EXT) -> str:
    """e.g. John-Doe_thumbnail_2023-05-19T23-19-01Z.jpg"""
    name = (user_name or keys.UNKNOWN_USER_NAME).replace(" ", "-")
    return f"{name}_{kind}_{timestamp.replace(':', '-')}{ext}"


def image_metadata(filename: str, user_id: str, user_name: str, size: int, timestamp: str) -> dict:
    return {
        keys.FILENAME_KEY: filename,
        keys.USER_ID_KEY: user_id,
        keys.USERNAME_KEY: user_name,
        keys.FILEFORMAT_KEY: keys.JPG_EXT,
        keys.FILESIZE_KEY: str(size),
        keys.TIMESTAMP_KEY: timestamp,
    }


@contextlib.contextmanager
def staged_file(data: bytes, filename: str):
    """Write ``data`` to a private temp directory removed when the block exits."""
    try:
        directory = tempfile.mkdtemp(prefix="meshchat-")
    except OSError as exc:
        raise AttachmentFailure(AttachmentReason.TMP_STORAGE_CREATE, str(exc)) from exc
    path = Path(directory) / filename
    try:
        try:
            path.write_bytes(data)
        except OSError as exc:
            raise AttachmentFailure(AttachmentReason.TMP_STORAGE_WRITE, str(exc)) from exc
        yield path
    except BaseException:
        shutil.rmtree(directory, ignore_errors=True)
        raise
    try:
        shutil.rmtree(directory)
    except OSError as exc:
        raise AttachmentFailure(AttachmentReason.TMP_STORAGE_CLEANUP, str(exc)) from exc


class AttachmentFetcher:
    """Iterates fetch events for one attachment.

    The blob is copied chunk by chunk into a staging directory that is
    removed when the iteration completes, is cancelled or is closed.
    """

    def __init__(self, store: "AttachmentStore", token_id: str, path: Optional[Path], metadata: dict, chunk_size: int):
        self.store = store
        self.token_id = token_id
        self.path = path
        self.metadata = metadata
        self.chunk_size = chunk_size
        self.cancelled = False
        self.staging_dir: Optional[str] = None
        self._events = self._run()

    def __iter__(self):
        return self

    def __next__(self):
        return next(self._events)

    def _run(self):
        try:
            if self.path is None or not self.path.is_file():
                yield FetchDeleted(self.token_id)
                return
            total = self.path.stat().st_size
            with tempfile.TemporaryDirectory(prefix="meshchat-fetch-") as staging:
                self.staging_dir = staging
                staged = Path(staging) / self.token_id
                downloaded = 0
                with self.path.open("rb") as src, staged.open("wb") as dst:
                    while not self.cancelled:
                        chunk = src.read(self.chunk_size)
                        if not chunk:
                            break
                        dst.write(chunk)
                        downloaded += len(chunk)
                        yield FetchProgress(downloaded, total)
                if self.cancelled:
                    return
                yield FetchCompleted(staged.read_bytes(), dict(self.metadata))
        finally:
            self.store._fetch_done(self)

    def cancel(self):
        self.cancelled = True
        try:
            self._events.close()
        except ValueError:
            # running on another thread; it stops at the next chunk
            pass
        # closing an unstarted generator skips its finally block
        self.store._fetch_done(self)

    close = cancel


class AttachmentStore:
    def __init__(self, upload_folder: str, chunk_size: int = 64 * 1024, logger: Optional[logging.Logger] = None):
        self.upload_folder = upload_folder
        self.chunk_size = chunk_size
        self.logger = logger or logging.getLogger(__name__)
        self.lock = threading.Lock()
        self._fetches: list[AttachmentFetcher] = []

    def store(self, path: Union[str, Path], metadata: dict) -> AttachmentToken:
        source = Path(path)
        if not source.is_file():
            raise AttachmentFailure(AttachmentReason.CREATE, f"missing source file {source}")
        base_path = Path(self.upload_folder)
        token_id = secrets.token_hex(16)
        stored_path = base_path / token_id
        try:
            base_path.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, stored_path)
        except OSError as exc:
            raise AttachmentFailure(AttachmentReason.CREATE, str(exc)) from exc
        size = stored_path.stat().st_size
        meta = {str(k): str(v) for k, v in metadata.items()}
        db.session.add(AttachmentBlob(token=token_id, stored_path=str(stored_path), meta=meta, size_bytes=size))
        db.session.commit()
        self.logger.info("Stored attachment %s (%s bytes)", token_id, size)
        return AttachmentToken(id=token_id, size=size, metadata=meta)

    def _blob(self, token: Union[AttachmentToken, dict, str]) -> tuple[str, Optional[AttachmentBlob]]:
        if isinstance(token, AttachmentToken):
            token_id = token.id
        elif isinstance(token, dict):
            token_id = str(token.get("id", ""))
        else:
            token_id = str(token)
        return token_id, AttachmentBlob.query.filter_by(token=token_id).first()

    def _safe_path(self, blob: AttachmentBlob) -> Optional[Path]:
        path = Path(blob.stored_path).resolve()
        upload_root = Path(self.upload_folder).resolve()
        if upload_root not in path.parents:
            self.logger.warning("Attachment %s points outside the upload folder", blob.token)
            return None
        return path

    def fetch(self, token: Union[AttachmentToken, dict, str]) -> AttachmentFetcher:
        token_id, blob = self._blob(token)
        path = self._safe_path(blob) if blob else None
        metadata = dict(blob.meta or {}) if blob else {}
        fetcher = AttachmentFetcher(self, token_id, path, metadata, self.chunk_size)
        with self.lock:
            self._fetches.append(fetcher)
        return fetcher

    def _fetch_done(self, fetcher: AttachmentFetcher):
        with self.lock:
            if fetcher in self._fetches:
                self._fetches.remove(fetcher)

    def active_fetches(self) -> list[AttachmentFetcher]:
        with self.lock:
            return list(self._fetches)

    def delete(self, token: Union[AttachmentToken, dict, str]) -> bool:
        token_id, blob = self._blob(token)
        if not blob:
            return False
        path = self._safe_path(blob)
        try:
            if path is not None and path.is_file():
                path.unlink()
        except OSError:
            self.logger.warning("Could not unlink attachment %s", token_id, exc_info=True)
        db.session.delete(blob)
        db.session.commit()
        return True

    def cancel_all(self):
        for fetcher in self.active_fetches():
            fetcher.cancel()
        with self.lock:
            self._fetches.clear()
