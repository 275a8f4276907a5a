from meshchat.config import BASE_DIR, Config, _resolve_storage_path


def test_relative_storage_path_resolves_under_project(monkeypatch):
    monkeypatch.setenv("MESHCHAT_UPLOAD_FOLDER", "data/uploads")
    assert _resolve_storage_path("MESHCHAT_UPLOAD_FOLDER", BASE_DIR) == str((BASE_DIR / "data/uploads").resolve())


def test_config_carries_only_session_settings():
    assert isinstance(Config.RETENTION_DAYS, int)
    assert not hasattr(Config, "SECRET_KEY")
    assert not hasattr(Config, "APP_TITLE")
