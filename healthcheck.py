"""Container health probe.

Exits 0 when yt-dlp runs and TEMP_DIR is writable, 1 otherwise.
"""
import asyncio
import json
import platform
import sys

from config import Settings
from downloader import Downloader, temp_dir_status
from errors import ToolUnavailable


async def check_environment(settings: Settings) -> dict:
    checks = {"python": True, "ytdlp": False, "temp": False}
    result = {"status": "healthy", "checks": checks, "python": platform.python_version()}

    try:
        result["ytdlp_version"] = await Downloader(settings).start()
        checks["ytdlp"] = True
    except ToolUnavailable as e:
        result["error"] = f"{e.message}: {e.details}" if e.details else e.message

    temp_dir = temp_dir_status(settings.temp_dir)
    result["temp_dir"] = temp_dir["path"]
    checks["temp"] = temp_dir["writable"]
    if not checks["temp"] and "error" not in result:
        result["error"] = f"Temp directory is not writable: {temp_dir['path']}"

    if not all(checks.values()):
        result["status"] = "unhealthy"
    return result


def main() -> int:
    result = asyncio.run(check_environment(Settings.from_env()))
    print("Health check result:", json.dumps(result))
    return 0 if result["status"] == "healthy" else 1


if __name__ == "__main__":
    sys.exit(main())
