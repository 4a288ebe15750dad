"""
FlashTune - Library API Tests

End-to-end tests for the /api routes through FastAPI's TestClient with the
lifespan running against temporary cache and volume directories.
Validates:
- Volume connect / status / disconnect / forget
- Download-and-save onto the volume (backend fetch faked)
- Song listing, update and delete (including the MP3 on the volume)
- Playlist CRUD and membership
- Preview reported unavailable without ffplay
"""

import sqlite3

import pytest
from fastapi.testclient import TestClient

from flashtune import config
from flashtune.main import create_app
from flashtune.services import downloader


@pytest.fixture
def client(tmp_path, monkeypatch):
    cache = tmp_path / "cache"
    monkeypatch.setattr(config, "CACHE_DIR", cache)
    monkeypatch.setattr(config, "TEMP_DIR", cache / "tmp")
    monkeypatch.setattr(config, "PREVIEW_DIR", cache / "tmp" / "preview")
    monkeypatch.setattr(config, "DB_LOCAL_PATH", cache / "flashtune.musicdb")
    monkeypatch.setattr(config, "GRANTS_PATH", cache / "grants.json")
    monkeypatch.setattr(config, "TOKEN_CONFIG_PATH", tmp_path / "no-tokens.yaml")
    monkeypatch.setattr(config, "FFPLAY_PATH", str(tmp_path / "no-ffplay"))

    async def fake_fetch(source_url, dest, client=None):
        dest.write_bytes(b"ID3" + source_url.encode())
        return len(source_url) + 3

    monkeypatch.setattr(downloader, "fetch_audio", fake_fetch)

    with TestClient(create_app()) as c:
        yield c


@pytest.fixture
def connected(client, volume):
    response = client.post("/api/usb/connect", json={"path": str(volume)})
    assert response.status_code == 200
    return client


def _download(client, n: int):
    return client.post(
        "/api/downloads",
        json={
            "source_url": f"https://www.youtube.com/watch?v={n}",
            "title": f"Song {n}",
            "artist": f"Artist {n}",
            "duration_ms": 1000 * n,
        },
    )


# ===========================================================================
# Health
# ===========================================================================


class TestHealth:
    def test_api_health(self, client):
        data = client.get("/api/health").json()
        assert data["status"] == "ok"
        assert data["database"] == "ok"

    def test_system_status(self, client):
        data = client.get("/api/system/status").json()
        assert data["database"]["songs"] == 0
        assert data["usb"]["attached"] is False
        assert data["preview_available"] is False
        assert data["auth"]["auth_enabled"] is False


# ===========================================================================
# USB volume
# ===========================================================================


class TestUsb:
    def test_connect_and_status(self, client, volume):
        response = client.post("/api/usb/connect", json={"path": str(volume)})
        assert response.status_code == 200
        data = response.json()
        assert data["attached"] is True
        assert data["volume"] == volume.resolve().as_uri()
        assert data["music_files"] == []
        assert data["storage"]["total"] > 0

    def test_connect_missing_path_is_409(self, client, tmp_path):
        response = client.post("/api/usb/connect", json={"path": str(tmp_path / "nope")})
        assert response.status_code == 409

    def test_connect_without_grant_is_409(self, client):
        assert client.post("/api/usb/connect", json={}).status_code == 409

    def test_disconnect_pushes_database(self, connected, volume):
        _download(connected, 1)
        response = connected.post("/api/usb/disconnect")
        assert response.status_code == 200
        assert response.json()["sync"]["status"] == "synced"
        assert connected.get("/api/usb/status").json()["attached"] is False
        with sqlite3.connect(volume / ".musicdb") as conn:
            assert conn.execute("SELECT COUNT(*) FROM songs").fetchone()[0] == 1

    def test_sync_requires_volume(self, client):
        assert client.post("/api/usb/sync").status_code == 409

    def test_manual_sync(self, connected):
        data = connected.post("/api/usb/sync").json()
        assert data["sync"]["status"] == "synced"
        assert data["warning"] is None

    def test_browse_root(self, connected):
        _download(connected, 1)
        data = connected.get("/api/usb/browse").json()
        names = [e["name"] for e in data["entries"]]
        assert names == ["Music", ".musicdb"]

    def test_browse_traversal_is_400(self, connected, volume):
        uri = volume.resolve().as_uri() + "/../etc"
        assert connected.get("/api/usb/browse", params={"uri": uri}).status_code == 400

    def test_browse_outside_volume_is_400(self, connected, tmp_path):
        (tmp_path / "host").mkdir()
        (tmp_path / "host" / "secret.txt").write_text("x")
        for uri in [(tmp_path / "host").as_uri(), str(tmp_path / "host"), "/etc"]:
            response = connected.get("/api/usb/browse", params={"uri": uri})
            assert response.status_code == 400, uri
            assert "entries" not in response.json()

    def test_forget_permission(self, connected, volume):
        data = connected.delete("/api/usb/permission").json()
        assert data["revoked"] == volume.resolve().as_uri()
        assert connected.post("/api/usb/connect", json={}).status_code == 409


# ===========================================================================
# Downloads and songs
# ===========================================================================


class TestSongs:
    def test_download_saves_song(self, connected, volume):
        response = _download(connected, 1)
        assert response.status_code == 201
        data = response.json()
        assert data["song"]["filename"] == "Artist 1 - Song 1.mp3"
        assert data["warning"] is None
        assert (volume / "Music" / "Artist 1 - Song 1.mp3").read_bytes().startswith(b"ID3")

        status = connected.get("/api/usb/status").json()
        assert status["music_files"] == ["Artist 1 - Song 1.mp3"]

    def test_duplicate_download_is_422(self, connected):
        _download(connected, 1)
        response = _download(connected, 1)
        assert response.status_code == 422
        assert response.json()["detail"] == "Song already exists on drive"

    def test_download_without_volume_is_409(self, client):
        assert _download(client, 1).status_code == 409

    def test_list_get_update(self, connected):
        song_id = _download(connected, 1).json()["song"]["id"]
        _download(connected, 2)

        listing = connected.get("/api/songs").json()
        assert listing["total"] == 2
        assert {s["title"] for s in listing["songs"]} == {"Song 1", "Song 2"}

        response = connected.put(f"/api/songs/{song_id}", json={"album": "Singles"})
        assert response.status_code == 200
        assert response.json()["updated"] is True
        assert connected.get(f"/api/songs/{song_id}").json()["album"] == "Singles"

    def test_missing_song_is_404(self, client):
        assert client.get("/api/songs/999").status_code == 404
        assert client.put("/api/songs/999", json={"title": "x"}).status_code == 404
        assert client.delete("/api/songs/999").status_code == 404

    def test_delete_removes_file(self, connected, volume):
        song_id = _download(connected, 1).json()["song"]["id"]
        response = connected.delete(f"/api/songs/{song_id}")
        assert response.json() == {"deleted": True, "warning": None}
        assert not (volume / "Music" / "Artist 1 - Song 1.mp3").exists()
        assert connected.get("/api/songs").json()["total"] == 0

    def test_delete_keep_file(self, connected, volume):
        song_id = _download(connected, 1).json()["song"]["id"]
        connected.delete(f"/api/songs/{song_id}", params={"delete_file": "false"})
        assert (volume / "Music" / "Artist 1 - Song 1.mp3").exists()

    def test_same_artist_and_title_get_separate_files(self, connected, volume):
        def download(video_id):
            return connected.post(
                "/api/downloads",
                json={
                    "source_url": f"https://www.youtube.com/watch?v={video_id}",
                    "title": "Song",
                    "artist": "Artist",
                },
            ).json()["song"]

        first = download("live")
        second = download("studio")
        assert first["filename"] == "Artist - Song.mp3"
        assert second["filename"] == "Artist - Song (2).mp3"
        assert (volume / "Music" / "Artist - Song.mp3").read_bytes().endswith(b"live")
        assert (volume / "Music" / "Artist - Song (2).mp3").read_bytes().endswith(b"studio")

        connected.delete(f"/api/songs/{first['id']}")
        assert not (volume / "Music" / "Artist - Song.mp3").exists()
        assert (volume / "Music" / "Artist - Song (2).mp3").exists()
        assert connected.get(f"/api/songs/{second['id']}").status_code == 200


# ===========================================================================
# Playlists
# ===========================================================================


class TestPlaylists:
    def test_create_requires_name(self, client):
        assert client.post("/api/playlists", json={"name": "  "}).status_code == 400

    def test_playlist_flow(self, connected):
        s1 = _download(connected, 1).json()["song"]["id"]
        s2 = _download(connected, 2).json()["song"]["id"]

        response = connected.post("/api/playlists", json={"name": "Road Trip"})
        assert response.status_code == 201
        pid = response.json()["playlist"]["id"]

        assert connected.post(f"/api/playlists/{pid}/songs", json={"song_id": s2}).json()["added"]
        assert connected.post(f"/api/playlists/{pid}/songs", json={"song_id": s1}).json()["added"]
        again = connected.post(f"/api/playlists/{pid}/songs", json={"song_id": s1}).json()
        assert again["added"] is False

        songs = connected.get(f"/api/playlists/{pid}/songs").json()["songs"]
        assert [s["id"] for s in songs] == [s2, s1]

        playlists = connected.get("/api/playlists").json()["playlists"]
        assert playlists[0]["song_count"] == 2
        assert connected.get(f"/api/songs/{s1}/playlists").json() == {"playlist_ids": [pid]}

        removed = connected.delete(f"/api/playlists/{pid}/songs/{s2}").json()
        assert removed["removed"] is True

        assert connected.delete(f"/api/playlists/{pid}").json()["deleted"] is True
        assert connected.get(f"/api/playlists/{pid}/songs").status_code == 404

    def test_add_unknown_song_is_404(self, client):
        pid = client.post("/api/playlists", json={"name": "Mix"}).json()["playlist"]["id"]
        response = client.post(f"/api/playlists/{pid}/songs", json={"song_id": 42})
        assert response.status_code == 404

    def test_delete_unknown_playlist_is_404(self, client):
        assert client.delete("/api/playlists/999").status_code == 404


# ===========================================================================
# Preview
# ===========================================================================


class TestPreview:
    def test_preview_unavailable_without_player(self, connected):
        song_id = _download(connected, 1).json()["song"]["id"]
        assert connected.post(f"/api/songs/{song_id}/preview").status_code == 503

    def test_stop_without_player(self, client):
        assert client.delete("/api/preview").json() == {"playing": None}
