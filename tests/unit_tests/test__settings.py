import json
from pathlib import Path

import pydantic
import pytest

from finder_api.config.settings import Settings
from finder_api.storage.local import LocalStorage
from finder_api.storage.registry import build_registry
from finder_api.errors import UnknownStorage


def test_defaults(tmp_path: Path):
    settings = Settings(local_storage=str(tmp_path))

    assert settings.api_path == "/api"
    assert settings.max_upload_size == 100 * 1024 * 1024
    assert settings.storage_keys == ["local"]
    assert settings.cors_allowed_origins == ["*"]
    assert settings.cors_max_age == 3600


def test_config_file_with_overrides(tmp_path: Path):
    config = tmp_path / "config.json"
    config.write_text(
        json.dumps(
            {
                "port": 9000,
                "local_storage": str(tmp_path / "files"),
                "public_links": {"media": "local://public"},
                "cors_allowed_origins": ["http://localhost:3000"],
            }
        )
    )

    settings = Settings.from_config_file(str(config), port=9100, host=None)

    assert settings.port == 9100
    assert settings.host == "127.0.0.1"
    assert settings.public_links == {"media": "local://public"}
    assert settings.cors_allowed_origins == ["http://localhost:3000"]


def test_env_vars(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("MAX_UPLOAD_SIZE", "2048")
    monkeypatch.setenv("API_PATH", "finder/")

    settings = Settings(local_storage=str(tmp_path))

    assert settings.max_upload_size == 2048
    assert settings.api_path == "/finder"


@pytest.mark.parametrize(
    "overrides",
    [
        {"local_storage": ""},
        {"log_level": "LOUD"},
        {"max_upload_size": 0},
        {"public_links": {"media": "elsewhere://x"}},
        {"storages": {"bad key": {"driver": "local", "root": "/tmp"}}},
        {"storages": {"bucket": {"driver": "s3"}}},
    ],
)
def test_invalid_settings(tmp_path: Path, overrides: dict):
    overrides.setdefault("local_storage", str(tmp_path))
    with pytest.raises(pydantic.ValidationError):
        Settings(**overrides)


def test_build_registry(tmp_path: Path):
    settings = Settings(
        local_storage=str(tmp_path / "main"),
        storages={"archive": {"driver": "local", "root": str(tmp_path / "archive")}},
    )

    registry = build_registry(settings)

    assert list(registry) == ["local", "archive"]
    assert registry.default_key == "local"
    assert isinstance(registry.get_storage("archive"), LocalStorage)
    assert (tmp_path / "main").is_dir()
    assert (tmp_path / "archive").is_dir()
    with pytest.raises(UnknownStorage):
        registry.get_storage("nope")
