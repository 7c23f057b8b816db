import io
import zipfile
from pathlib import Path

from fastapi import status
from fastapi.testclient import TestClient

from tests.consts import TEST_FILE_CONTENT

API = "/api"


def command(client: TestClient, q: str, path: str = "", body=None, **params):
    params = {"q": q, "adapter": "local", "path": path, **params}
    if body is None:
        return client.get(API, params=params)
    return client.post(API, params=params, json=body)


def names(listing: dict) -> list:
    return [node["basename"] for node in listing["files"]]


def test_index_lists_root(client: TestClient):
    response = command(client, "index")

    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["status"] == "ok"
    assert body["error"] is None
    listing = body["data"]
    assert listing["adapter"] == "local"
    assert listing["storages"] == ["local"]
    assert listing["dirname"] == "local://"
    assert names(listing) == ["public", "sub", "a.txt"]

    a_txt = listing["files"][2]
    assert a_txt == {
        "type": "file",
        "path": "local://a.txt",
        "basename": "a.txt",
        "extension": "txt",
        "mime_type": "text/plain",
        "last_modified": a_txt["last_modified"],
        "file_size": 10,
        "url": None,
    }
    assert listing["files"][1]["type"] == "dir"
    assert listing["files"][1]["file_size"] == 0


def test_index_defaults_to_first_storage(client: TestClient):
    response = client.get(API, params={"q": "index"})
    assert response.json()["data"]["adapter"] == "local"


def test_public_link_urls(client: TestClient):
    listing = command(client, "index", path="public").json()["data"]

    assert listing["files"][0]["url"] == "/public/media/logo.txt"
    response = client.get("/public/media/logo.txt")
    assert response.status_code == status.HTTP_200_OK
    assert response.content == b"logo"


def test_subfolders(client: TestClient):
    data = command(client, "subfolders").json()["data"]
    assert data == {
        "folders": [
            {"adapter": "local", "path": "local://public", "basename": "public"},
            {"adapter": "local", "path": "local://sub", "basename": "sub"},
        ]
    }


def test_search(client: TestClient, storage_root: Path):
    (storage_root / "sub" / "Report-A.TXT").write_bytes(b"r")

    listing = command(client, "search", filter="a.t").json()["data"]

    assert sorted(node["path"] for node in listing["files"]) == ["local://a.txt", "local://sub/Report-A.TXT"]


def test_search_with_symlink_loop(client: TestClient, storage_root: Path):
    (storage_root / "sub" / "loop").symlink_to(storage_root)

    response = command(client, "search", filter="a.txt")

    assert response.status_code == status.HTTP_200_OK
    assert [node["path"] for node in response.json()["data"]["files"]] == ["local://a.txt"]


def test_preview_and_download(client: TestClient):
    preview = command(client, "preview", path="a.txt")
    download = command(client, "download", path="a.txt")

    assert preview.content == TEST_FILE_CONTENT
    assert preview.headers["content-type"].startswith("text/plain")
    assert preview.headers["content-disposition"].startswith("inline;")
    assert download.headers["content-disposition"] == "attachment; filename=\"a.txt\"; filename*=UTF-8''a.txt"
    assert download.headers["content-length"] == "10"


def test_upload_with_conflict_naming(client: TestClient, storage_root: Path):
    response = client.post(
        API,
        params={"q": "upload", "adapter": "local", "path": ""},
        files=[("file", ("a.txt", b"second", "text/plain")), ("file", ("new.txt", b"new", "text/plain"))],
    )

    assert response.status_code == status.HTTP_200_OK
    data = response.json()["data"]
    assert [node["basename"] for node in data["uploaded"]] == ["a (1).txt", "new.txt"]
    assert data["failed"] == []
    assert "a (1).txt" in names(data["listing"])
    assert (storage_root / "a.txt").read_bytes() == TEST_FILE_CONTENT
    assert (storage_root / "a (1).txt").read_bytes() == b"second"


def test_upload_with_name_field(client: TestClient, storage_root: Path):
    response = client.post(
        API,
        params={"q": "upload", "adapter": "local", "path": "sub"},
        data={"name": "folder/inner.txt"},
        files={"file": ("blob", b"inner", "text/plain")},
    )

    assert response.status_code == status.HTTP_200_OK
    assert (storage_root / "sub" / "folder" / "inner.txt").read_bytes() == b"inner"


def test_newfolder_and_newfile(client: TestClient, storage_root: Path):
    assert command(client, "newfolder", body={"name": "docs"}).status_code == status.HTTP_200_OK
    listing = command(client, "newfile", path="docs", body={"name": "notes.md"}).json()["data"]

    assert names(listing) == ["notes.md"]
    assert (storage_root / "docs" / "notes.md").read_bytes() == b""


def test_rename(client: TestClient, storage_root: Path):
    listing = command(client, "rename", body={"item": "local://a.txt", "name": "b.txt"}).json()["data"]

    assert "b.txt" in names(listing)
    assert (storage_root / "b.txt").read_bytes() == TEST_FILE_CONTENT


def test_move(client: TestClient, storage_root: Path):
    response = command(client, "move", body={"item": "local://sub", "items": [{"path": "local://a.txt"}]})

    assert response.status_code == status.HTTP_200_OK
    assert (storage_root / "sub" / "a.txt").read_bytes() == TEST_FILE_CONTENT
    assert not (storage_root / "a.txt").exists()


def test_move_folder_together_with_its_own_child(client: TestClient, storage_root: Path):
    (storage_root / "dst").mkdir()
    (storage_root / "sub" / "x.txt").write_bytes(b"x")

    response = command(
        client,
        "move",
        body={"item": "local://dst", "items": [{"path": "local://sub"}, {"path": "local://sub/x.txt"}]},
    )

    assert response.status_code == status.HTTP_200_OK
    assert (storage_root / "dst" / "sub" / "x.txt").read_bytes() == b"x"
    assert not (storage_root / "dst" / "x.txt").exists()
    assert not (storage_root / "sub").exists()


def test_duplicate(client: TestClient, storage_root: Path):
    command(client, "duplicate", body={"items": [{"path": "local://a.txt"}]})
    command(client, "duplicate", body={"items": [{"path": "local://a.txt"}], "item": "local://sub"})

    assert (storage_root / "a (1).txt").read_bytes() == TEST_FILE_CONTENT
    assert (storage_root / "sub" / "a.txt").read_bytes() == TEST_FILE_CONTENT


def test_duplicate_dotted_folder_name(client: TestClient, storage_root: Path):
    (storage_root / "v1.2").mkdir()

    response = command(client, "duplicate", body={"items": [{"path": "local://v1.2"}]})

    assert response.status_code == status.HTTP_200_OK
    assert (storage_root / "v1.2 (1)").is_dir()


def test_delete(client: TestClient, storage_root: Path):
    (storage_root / "sub" / "inner.txt").write_bytes(b"x")

    listing = command(
        client, "delete", body={"items": [{"path": "local://a.txt"}, {"path": "local://sub"}]}
    ).json()["data"]

    assert names(listing) == ["public"]


def test_delete_folder_together_with_its_own_child(client: TestClient, storage_root: Path):
    (storage_root / "sub" / "x.txt").write_bytes(b"x")

    response = command(
        client, "delete", body={"items": [{"path": "local://sub"}, {"path": "local://sub/x.txt"}]}
    )

    assert response.status_code == status.HTTP_200_OK
    assert names(response.json()["data"]) == ["public", "a.txt"]
    assert not (storage_root / "sub").exists()


def test_save(client: TestClient, storage_root: Path):
    node = command(client, "save", path="a.txt", body={"content": "héllo"}).json()["data"]

    assert node["file_size"] == len("héllo".encode("utf-8"))
    assert (storage_root / "a.txt").read_text(encoding="utf-8") == "héllo"


def test_archive_and_unarchive(client: TestClient, storage_root: Path):
    (storage_root / "sub" / "b.txt").write_bytes(b"bee")

    listing = command(
        client, "archive", body={"name": "bundle", "items": [{"path": "local://a.txt"}, {"path": "local://sub"}]}
    ).json()["data"]
    assert "bundle.zip" in names(listing)

    data = command(client, "unarchive", body={"item": "local://bundle.zip"}).json()["data"]
    assert data["destination"] == "local://bundle"
    assert sorted(data["extracted"]) == ["a.txt", "sub/", "sub/b.txt"]
    assert data["skipped"] == []
    assert (storage_root / "bundle" / "sub" / "b.txt").read_bytes() == b"bee"

    # A second extraction lands next to the first one
    data = command(client, "unarchive", body={"item": "local://bundle.zip"}).json()["data"]
    assert data["destination"] == "local://bundle (1)"


def test_unarchive_reports_skipped_entries(client: TestClient, storage_root: Path):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr("../../evil.txt", b"pwned")
        zf.writestr("fine.txt", b"fine")
    (storage_root / "evil.zip").write_bytes(buffer.getvalue())

    data = command(client, "unarchive", body={"item": "local://evil.zip"}).json()["data"]

    assert data["extracted"] == ["fine.txt"]
    assert data["skipped"] == [{"name": "../../evil.txt", "reason": "escapes destination"}]
    assert not (storage_root.parent / "evil.txt").exists()


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == status.HTTP_200_OK
    assert response.json()["storages"] == {"local": "ready"}
    assert response.json()["ready"] is True
