from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from finder_api.config.settings import Settings
from finder_api.main import create_app


@pytest.fixture
def settings(storage_root: Path) -> Settings:
    (storage_root / "public").mkdir()
    (storage_root / "public" / "logo.txt").write_bytes(b"logo")
    return Settings(
        local_storage=str(storage_root),
        max_upload_size=1024,
        max_extract_size=4096,
        max_extract_entries=50,
        public_links={"media": "local://public"},
    )


@pytest.fixture
def client(settings: Settings) -> TestClient:
    app = create_app(settings=settings)
    with TestClient(app) as client:
        yield client
