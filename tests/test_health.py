import dataclasses

import pytest
from fastapi.testclient import TestClient

from conftest import read_invocations
from errors import ToolUnavailable
from main import create_app


def test_root_lists_endpoints(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "message": "Video download server is running",
        "endpoints": {"health": "/health", "download": "/download"},
    }


def test_root_head(client):
    assert client.head("/").status_code == 200


def test_health_reports_tool_and_temp_dir(client, temp_dir, stub_tool):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["ready"] is True
    assert body["ytdlp"] == {"installed": True, "path": str(stub_tool), "version": "2025.02.19"}
    assert body["ffmpeg"]["available"] is True
    assert body["tempDir"] == {"path": str(temp_dir), "exists": True, "writable": True}
    assert body["jobs"] == {"active": 0, "limit": 4}


def test_health_fails_when_tool_breaks(settings, monkeypatch):
    settings = dataclasses.replace(settings, tool_check_ttl_seconds=0)

    with TestClient(create_app(settings)) as client:
        monkeypatch.setenv("STUB_VERSION_EXIT", "1")
        response = client.get("/health")

    assert response.status_code == 500
    body = response.json()
    assert body["status"] == "error"
    assert body["ready"] is False
    assert body["ytdlp"]["installed"] is False


def test_health_reuses_recent_version_check(client, argv_log):
    for _ in range(3):
        assert client.get("/health").status_code == 200

    calls = [args for args in read_invocations(argv_log) if args == ["--version"]]
    assert len(calls) == 1


def test_health_head_follows_gate(client):
    assert client.head("/health").status_code == 200
    client.app.state.gate.close()
    try:
        assert client.head("/health").status_code == 503
    finally:
        client.app.state.gate.open()


def test_startup_fails_without_downloader(settings, tmp_path):
    settings = dataclasses.replace(settings, ytdlp_path=str(tmp_path / "no-such-yt-dlp"))
    app = create_app(settings)

    with pytest.raises(ToolUnavailable):
        with TestClient(app):
            pass
    assert app.state.gate.is_open is False


def test_startup_fails_when_downloader_does_not_run(settings, monkeypatch):
    monkeypatch.setenv("STUB_VERSION_EXIT", "2")

    with pytest.raises(ToolUnavailable):
        with TestClient(create_app(settings)):
            pass


def test_gate_closes_on_shutdown(settings):
    app = create_app(settings)
    with TestClient(app):
        assert app.state.gate.is_open is True
    assert app.state.gate.is_open is False


def test_startup_sweeps_stale_files(settings, temp_dir):
    temp_dir.mkdir()
    stale = temp_dir / "vid_deadbeef.mp4"
    stale.write_bytes(b"x")
    settings = dataclasses.replace(settings, stale_file_ttl_seconds=-1)

    with TestClient(create_app(settings)):
        assert not stale.exists()
