from pathlib import Path

import pytest

from conftest import auth_headers
from inboxhub.core.errors import NotFound
from inboxhub.services import storage_service


@pytest.mark.parametrize("path", [
    "../etc/passwd",
    "2026/../../secret.txt",
    "2026//10/a.png",
    "/etc/passwd",
    "2026/./a.png",
    "..\\windows\\win.ini",
    "a.png\x00.txt",
    "",
])
def test_rejects_unsafe_media_paths(tmp_path, path):
    with pytest.raises(NotFound):
        storage_service.safe_media_path(path, root=tmp_path)


def test_rejects_symlink_escape(tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    root = tmp_path / "uploads"
    root.mkdir()
    (root / "link").symlink_to(outside, target_is_directory=True)

    with pytest.raises(NotFound):
        storage_service.safe_media_path("link/file.txt", root=root)


def test_resolves_inside_root(tmp_path):
    resolved = storage_service.safe_media_path("2026/10/a.png", root=tmp_path)
    assert resolved == tmp_path.resolve() / "2026" / "10" / "a.png"


def test_content_type_for():
    assert storage_service.content_type_for(Path("a.png")) == "image/png"
    assert storage_service.content_type_for(Path("blob.unknownext")) == "application/octet-stream"


def test_file_category():
    assert storage_service.get_file_category("clip.MP4") == "video"
    assert storage_service.get_file_category("notes.txt") == "document"
    assert storage_service.get_file_category("run.exe") == "other"


class TestFilesApi:

    def test_upload_then_serve(self, client, owner):
        response = client.post(
            "/api/upload",
            files={"file": ("photo.png", b"\x89PNG fake image", "image/png")},
            headers=auth_headers(owner),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["size"] == len(b"\x89PNG fake image")
        assert data["url"].endswith(f"/api/media/{data['path']}")

        served = client.get(f"/api/media/{data['path']}")
        assert served.status_code == 200
        assert served.content == b"\x89PNG fake image"
        assert served.headers["content-type"] == "image/png"

    def test_upload_requires_login(self, client):
        response = client.post("/api/upload", files={"file": ("a.png", b"x", "image/png")})
        assert response.status_code == 401

    def test_upload_rejects_disallowed_type(self, client, owner):
        response = client.post(
            "/api/upload",
            files={"file": ("run.exe", b"MZ", "application/octet-stream")},
            headers=auth_headers(owner),
        )
        assert response.status_code == 400

    def test_missing_and_traversal_are_404(self, client):
        assert client.get("/api/media/2026/01/missing.png").status_code == 404
        assert client.get("/api/media/..%2F..%2Fetc%2Fpasswd").status_code == 404
