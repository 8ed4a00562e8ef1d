import logging
import os
import tempfile
from dataclasses import dataclass, field

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger("vidrelay")

FORMAT_PRESETS = ("capped", "smallest", "merge")
DELIVERY_MODES = ("stream", "base64")
LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Config: %s=%r is not an integer, using %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Config: %s=%r is not a number, using %s", name, raw, default)
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_choice(name: str, default: str, choices: tuple[str, ...]) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    if raw not in choices:
        logger.warning("Config: %s=%r not in %s, using %s", name, raw, choices, default)
        return default
    return raw


@dataclass(frozen=True)
class Settings:
    host: str = "0.0.0.0"
    port: int = 3001
    allowed_origins: str = "*"
    temp_dir: str = field(default_factory=lambda: os.path.join(tempfile.gettempdir(), "vidrelay"))
    ytdlp_path: str | None = None
    ffmpeg_path: str | None = None
    format_preset: str = "capped"
    max_filesize_mb: int = 50
    delivery_mode: str = "stream"
    probe_enabled: bool = True
    max_concurrent_downloads: int = 4
    queue_timeout_seconds: float = 30.0
    probe_timeout_seconds: float = 30.0
    download_timeout_seconds: float = 600.0
    stale_file_ttl_seconds: int = 60 * 60  # 1 hour
    cleanup_interval_seconds: int = 10 * 60  # scan every 10 minutes
    shutdown_grace_seconds: float = 10.0
    tool_check_ttl_seconds: float = 30.0
    expose_error_details: bool = False
    log_level: str = "INFO"

    @property
    def origins(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @classmethod
    def from_env(cls) -> "Settings":
        # .env is optional; real environment variables win
        load_dotenv(find_dotenv(usecwd=True))
        defaults = cls()
        return cls(
            host=os.getenv("HOST") or defaults.host,
            port=_env_int("PORT", defaults.port),
            allowed_origins=os.getenv("ALLOWED_ORIGINS") or defaults.allowed_origins,
            temp_dir=os.getenv("TEMP_DIR") or defaults.temp_dir,
            ytdlp_path=os.getenv("YTDLP_PATH") or None,
            ffmpeg_path=os.getenv("FFMPEG_PATH") or None,
            format_preset=_env_choice("FORMAT_PRESET", defaults.format_preset, FORMAT_PRESETS),
            max_filesize_mb=max(1, _env_int("MAX_FILESIZE_MB", defaults.max_filesize_mb)),
            delivery_mode=_env_choice("DELIVERY_MODE", defaults.delivery_mode, DELIVERY_MODES),
            probe_enabled=_env_bool("PROBE_ENABLED", defaults.probe_enabled),
            max_concurrent_downloads=max(1, _env_int("MAX_CONCURRENT_DOWNLOADS", defaults.max_concurrent_downloads)),
            queue_timeout_seconds=_env_float("QUEUE_TIMEOUT_SECONDS", defaults.queue_timeout_seconds),
            probe_timeout_seconds=_env_float("PROBE_TIMEOUT_SECONDS", defaults.probe_timeout_seconds),
            download_timeout_seconds=_env_float("DOWNLOAD_TIMEOUT_SECONDS", defaults.download_timeout_seconds),
            stale_file_ttl_seconds=_env_int("STALE_FILE_TTL_SECONDS", defaults.stale_file_ttl_seconds),
            cleanup_interval_seconds=max(1, _env_int("CLEANUP_INTERVAL_SECONDS", defaults.cleanup_interval_seconds)),
            shutdown_grace_seconds=_env_float("SHUTDOWN_GRACE_SECONDS", defaults.shutdown_grace_seconds),
            tool_check_ttl_seconds=_env_float("TOOL_CHECK_TTL_SECONDS", defaults.tool_check_ttl_seconds),
            expose_error_details=_env_bool("EXPOSE_ERROR_DETAILS", defaults.expose_error_details),
            log_level=_env_choice("LOG_LEVEL", defaults.log_level.lower(), LOG_LEVELS).upper(),
        )
