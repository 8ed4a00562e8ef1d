import asyncio
import dataclasses

import healthcheck


def test_healthy_environment(settings, temp_dir):
    temp_dir.mkdir()

    result = asyncio.run(healthcheck.check_environment(settings))

    assert result["status"] == "healthy"
    assert result["checks"] == {"python": True, "ytdlp": True, "temp": True}
    assert result["ytdlp_version"] == "2025.02.19"


def test_missing_tool_is_unhealthy(settings, temp_dir, tmp_path):
    temp_dir.mkdir()
    settings = dataclasses.replace(settings, ytdlp_path=str(tmp_path / "gone"))

    result = asyncio.run(healthcheck.check_environment(settings))

    assert result["status"] == "unhealthy"
    assert result["checks"]["ytdlp"] is False
    assert "not available" in result["error"]


def test_missing_temp_dir_is_unhealthy(settings):
    result = asyncio.run(healthcheck.check_environment(settings))

    assert result["status"] == "unhealthy"
    assert result["checks"]["temp"] is False


def test_main_exit_code(settings, temp_dir, monkeypatch, capsys):
    temp_dir.mkdir()
    monkeypatch.setenv("YTDLP_PATH", settings.ytdlp_path)
    monkeypatch.setenv("TEMP_DIR", settings.temp_dir)

    assert healthcheck.main() == 0
    assert "healthy" in capsys.readouterr().out
