import os
from io import BytesIO

import pytest
from PIL import Image

from meshchat.attachments import (
    AttachmentStore,
    FetchCompleted,
    FetchDeleted,
    FetchProgress,
    attachment_filename,
    make_thumbnail,
    staged_file,
)
from meshchat.errors import AttachmentFailure, AttachmentReason


@pytest.fixture
def attachments(app, tmp_path):
    return AttachmentStore(str(tmp_path / "blobs"), chunk_size=4)


def store_bytes(attachments, tmp_path, data=b"0123456789", name="source.bin"):
    source = tmp_path / name
    source.write_bytes(data)
    return attachments.store(source, {"filename": name})


def test_fetch_reports_progress_then_completion(attachments, tmp_path):
    token = store_bytes(attachments, tmp_path)
    assert token.size == 10
    events = list(attachments.fetch(token))
    assert events[:3] == [FetchProgress(4, 10), FetchProgress(8, 10), FetchProgress(10, 10)]
    assert events[-1] == FetchCompleted(b"0123456789", {"filename": "source.bin"})
    assert attachments.active_fetches() == []


def test_fetch_unknown_token_reports_deleted(attachments):
    assert list(attachments.fetch("missing")) == [FetchDeleted("missing")]


def test_fetch_after_delete_reports_deleted(attachments, tmp_path):
    token = store_bytes(attachments, tmp_path)
    assert attachments.delete(token.to_document())
    assert not attachments.delete(token)
    assert list(attachments.fetch(token.id)) == [FetchDeleted(token.id)]


def test_cancel_removes_staging_directory(attachments, tmp_path):
    token = store_bytes(attachments, tmp_path)
    fetcher = attachments.fetch(token)
    assert next(fetcher) == FetchProgress(4, 10)
    staging = fetcher.staging_dir
    assert os.path.isdir(staging)

    fetcher.cancel()
    assert not os.path.exists(staging)
    assert attachments.active_fetches() == []
    with pytest.raises(StopIteration):
        next(fetcher)


def test_cancel_all(attachments, tmp_path):
    token = store_bytes(attachments, tmp_path)
    fetchers = [attachments.fetch(token), attachments.fetch(token)]
    for fetcher in fetchers:
        next(fetcher)
    attachments.cancel_all()
    assert all(f.cancelled for f in fetchers)
    assert attachments.active_fetches() == []


def test_store_missing_source_fails(attachments, tmp_path):
    with pytest.raises(AttachmentFailure) as excinfo:
        attachments.store(tmp_path / "nope.jpg", {})
    assert excinfo.value.reason == AttachmentReason.CREATE


def test_staged_file_is_removed_on_exit():
    with staged_file(b"abc", "thumbnail.jpg") as path:
        assert path.read_bytes() == b"abc"
    assert not path.exists()
    assert not path.parent.exists()


def test_staged_file_is_removed_on_error():
    with pytest.raises(RuntimeError):
        with staged_file(b"abc", "largeImage.jpg") as path:
            raise RuntimeError("boom")
    assert not path.parent.exists()


def test_attachment_filename():
    name = attachment_filename("John Doe", "thumbnail", "2023-05-19T23:19:01Z")
    assert name == "John-Doe_thumbnail_2023-05-19T23-19-01Z.jpg"


def test_thumbnail_fits_bounding_box(png_bytes):
    with Image.open(BytesIO(make_thumbnail(png_bytes))) as thumb:
        assert thumb.format == "JPEG"
        assert max(thumb.size) <= 282


def test_cancel_before_first_chunk_releases_fetch(attachments, tmp_path):
    token = store_bytes(attachments, tmp_path)
    fetcher = attachments.fetch(token)
    assert attachments.active_fetches() == [fetcher]
    fetcher.cancel()
    assert attachments.active_fetches() == []
    assert list(fetcher) == []
