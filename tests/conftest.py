from io import BytesIO

import pytest
from PIL import Image

from meshchat import create_app
from meshchat.config import Config
from meshchat.extensions import db
from meshchat.feeds import InMemoryChangeBus
from meshchat.local_store import LocalStore
from meshchat.service import create_chat_service
from meshchat.store import DocumentStore


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    REDIS_URL = None
    RATELIMIT_ENABLED = False
    RATELIMIT_STORAGE_URI = "memory://"
    USER_ID = None
    ACCEPT_LARGE_IMAGES = True
    ATTACHMENT_CHUNK_SIZE = 1024
    FEED_HEARTBEAT_SECONDS = 1


@pytest.fixture
def app(tmp_path):
    class _Config(TestingConfig):
        UPLOAD_FOLDER = str(tmp_path / "uploads")

    app = create_app(_Config)
    with app.app_context():
        yield app
        service = app.extensions.pop("chat_service", None)
        if service is not None:
            service.logout()
        db.session.remove()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def bus():
    return InMemoryChangeBus()


@pytest.fixture
def store(app, bus):
    store = DocumentStore(bus)
    yield store
    store.close()


@pytest.fixture
def local_store(app):
    local_store = LocalStore()
    yield local_store
    local_store.close()


@pytest.fixture
def service(app):
    service = create_chat_service(app)
    app.extensions["chat_service"] = service
    service.set_current_user("Alice Doe")
    return service


@pytest.fixture
def png_bytes():
    img = Image.new("RGB", (640, 480), (200, 30, 30))
    buf = BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
