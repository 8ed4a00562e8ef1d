import asyncio
import collections
import contextlib
import glob
import importlib.util
import logging
import os
import re
import shutil
import signal
import sys
import threading
import time
import uuid
from dataclasses import dataclass

import imageio_ffmpeg
from yt_dlp.utils import format_bytes

from config import Settings
from errors import (
    DownloadFailed,
    EmptyArtifact,
    InvalidRequest,
    MissingArtifact,
    ServiceUnavailable,
    ToolUnavailable,
    UnreachableSource,
)

logger = logging.getLogger("vidrelay.downloader")

# Artifacts we create are named vid_<hex>.mp4; the sweeper only touches these.
ARTIFACT_PREFIX = "vid_"
DIAGNOSTIC_TAIL_LINES = 40
STREAM_LINE_LIMIT = 1024 * 1024
_PROGRESS_RE = re.compile(r"(\d+(?:\.\d+)?)%")


def validate_url(value) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequest()
    return value.strip()


def sanitize_filename(title: str | None, ext: str = "mp4") -> str:
    """Create a safe, ASCII filename for Content-Disposition headers."""
    safe_title = re.sub(r'[\\/*?:"<>|]', "", title or "").replace("\n", " ").replace("\r", " ")
    safe_title = safe_title.encode("ascii", "ignore").decode("ascii")
    safe_title = re.sub(r"\s+", " ", safe_title).strip(" .") or "video"
    return f"{safe_title[:120]}.{ext}"


def format_selector(preset: str, max_filesize_mb: int) -> str:
    cap = f"[filesize<{max_filesize_mb}M]"
    if preset == "smallest":
        return "worst[ext=mp4]"
    if preset == "merge":
        # Best-effort audio+video merge under the ceiling; single-file fallbacks stay mp4
        return f"bestvideo{cap}+bestaudio/best[ext=mp4]{cap}/best[ext=mp4]"
    return f"bestvideo[ext=mp4]{cap}+bestaudio[ext=m4a]/best[ext=mp4]{cap}/mp4"


@dataclass
class DownloadOptions:
    max_filesize_mb: int = 50
    format_preset: str = "capped"
    trim_seconds: float | None = None
    height: int | None = None

    @property
    def needs_postprocessing(self) -> bool:
        return bool(self.trim_seconds or self.height)


def postprocess_args(options: DownloadOptions) -> list[str]:
    """ffmpeg output arguments for the trim/scale pass run by yt-dlp."""
    args: list[str] = []
    if options.trim_seconds:
        args += ["-t", f"{options.trim_seconds:g}"]
    if options.height:
        # Keep width divisible by 2 while preserving aspect ratio
        args += [
            "-vf", f"scale=-2:{options.height}",
            "-c:v", "libx264", "-preset", "veryfast", "-crf", "23", "-pix_fmt", "yuv420p",
            "-c:a", "aac", "-b:a", "128k",
            "-movflags", "+faststart",
        ]
    return args


def build_download_args(
    command: list[str],
    url: str,
    output_path: str,
    options: DownloadOptions,
    ffmpeg_exe: str | None = None,
) -> list[str]:
    args = [
        *command,
        "--no-playlist",
        "--newline",
        "-f", format_selector(options.format_preset, options.max_filesize_mb),
        "--merge-output-format", "mp4",
        "--max-filesize", f"{options.max_filesize_mb}M",
        "-o", output_path,
    ]
    if ffmpeg_exe:
        args += ["--ffmpeg-location", ffmpeg_exe]
    pp_args = postprocess_args(options)
    if pp_args:
        args += [
            "--use-postprocessor", "FFmpegCopyStream",
            "--postprocessor-args", "CopyStream:" + " ".join(pp_args),
        ]
    # "--" ends option parsing so a URL starting with "-" stays a URL
    args += ["--", url]
    return args


def resolve_ytdlp_command(settings: Settings) -> list[str] | None:
    if settings.ytdlp_path:
        exe = shutil.which(settings.ytdlp_path)
        return [exe] if exe else None
    exe = shutil.which("yt-dlp") or shutil.which("yt-dlp.exe")
    if exe:
        return [exe]
    # Installed as a library but its console script is not on PATH
    if importlib.util.find_spec("yt_dlp") is not None:
        return [sys.executable, "-m", "yt_dlp"]
    return None


def resolve_ffmpeg(settings: Settings) -> str | None:
    if settings.ffmpeg_path:
        return shutil.which(settings.ffmpeg_path)
    # Prefer bundled imageio-ffmpeg if available
    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError:
        pass
    return shutil.which("ffmpeg") or shutil.which("ffmpeg.exe")


def temp_dir_status(path: str) -> dict:
    exists = os.path.isdir(path)
    return {
        "path": path,
        "exists": exists,
        "writable": exists and os.access(path, os.W_OK),
    }


class Artifact:
    """The file one download job writes. Deleted exactly once via discard()."""

    def __init__(self, directory: str, title: str | None = None):
        self.job_id = uuid.uuid4().hex
        self.directory = directory
        self.name = f"{ARTIFACT_PREFIX}{self.job_id}.mp4"
        self.path = os.path.join(directory, self.name)
        self.title = title
        self.size: int | None = None
        self.stat_result: os.stat_result | None = None
        self._discarded = False
        self._lock = threading.Lock()

    @property
    def download_name(self) -> str:
        return sanitize_filename(self.title) if self.title else self.name

    @property
    def discarded(self) -> bool:
        return self._discarded

    def verify(self) -> int:
        try:
            stat_result = os.stat(self.path)
        except FileNotFoundError:
            raise MissingArtifact() from None
        if stat_result.st_size == 0:
            raise EmptyArtifact()
        self.stat_result = stat_result
        self.size = stat_result.st_size
        return self.size

    def discard(self) -> bool:
        with self._lock:
            if self._discarded:
                return False
            self._discarded = True
        # yt-dlp leaves .part / .fNNN siblings next to the output on failure
        stem = os.path.join(self.directory, f"{ARTIFACT_PREFIX}{self.job_id}")
        for path in glob.glob(glob.escape(stem) + "*"):
            try:
                os.remove(path)
                logger.info("Deleted temp file %s", path)
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning("Error deleting temp file %s", path, exc_info=True)
        return True


class Job:
    """One external process invocation with captured diagnostic output."""

    def __init__(self, argv: list[str], label: str):
        self.id = uuid.uuid4().hex
        self.argv = argv
        self.label = label
        self.process: asyncio.subprocess.Process | None = None
        self.exit_code: int | None = None
        self.timed_out = False
        self.progress = 0.0
        self._stdout: collections.deque[str] = collections.deque(maxlen=DIAGNOSTIC_TAIL_LINES)
        self._stderr: collections.deque[str] = collections.deque(maxlen=DIAGNOSTIC_TAIL_LINES)

    @property
    def stdout_lines(self) -> list[str]:
        return list(self._stdout)

    @property
    def diagnostics(self) -> str:
        return "\n".join(self._stderr) or "\n".join(self._stdout)

    async def run(self, timeout: float | None) -> int:
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
                # own process group so ffmpeg children die with yt-dlp
                start_new_session=os.name == "posix",
            )
        except OSError as e:
            raise ToolUnavailable(details=f"Cannot start {self.argv[0]}: {e.strerror or e}") from e

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    self._pump(self.process.stdout, self._stdout, "stdout"),
                    self._pump(self.process.stderr, self._stderr, "stderr"),
                    self.process.wait(),
                ),
                timeout,
            )
        except asyncio.TimeoutError:
            self.timed_out = True
            logger.warning("[%s] timed out after %ss, killing pid=%s", self.label, timeout, self.process.pid)
            await self.kill()
        except asyncio.CancelledError:
            logger.warning("[%s] cancelled, killing pid=%s", self.label, self.process.pid)
            await self.kill()
            raise
        except BaseException:
            # e.g. ValueError from readline on an over-long line
            logger.warning("[%s] failed, killing pid=%s", self.label, self.process.pid, exc_info=True)
            await self.kill()
            raise
        self.exit_code = self.process.returncode
        return self.exit_code

    async def kill(self) -> None:
        process = self.process
        if process is None or process.returncode is not None:
            return
        try:
            if os.name == "posix":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def _pump(self, stream, sink, name: str) -> None:
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", "replace").rstrip()
            if not text:
                continue
            sink.append(text)
            match = _PROGRESS_RE.search(text)
            if match:
                self.progress = float(match.group(1))
            logger.debug("[%s %s] %s", self.label, name, text)


class Downloader:
    """Runs yt-dlp per request under a bounded number of download slots."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.command: list[str] | None = None
        self.ffmpeg_exe: str | None = None
        self.version: str | None = None
        self._version_checked_at = 0.0
        self._version_lock: asyncio.Lock | None = None
        self._slots: asyncio.Semaphore | None = None
        self._jobs: dict[str, tuple[Job, Artifact | None]] = {}

    @property
    def active_jobs(self) -> int:
        return len(self._jobs)

    async def start(self) -> str:
        """Resolve the external tools and confirm yt-dlp runs. Raises ToolUnavailable."""
        self._slots = asyncio.Semaphore(self.settings.max_concurrent_downloads)
        self.command = resolve_ytdlp_command(self.settings)
        self.ffmpeg_exe = resolve_ffmpeg(self.settings)
        self._version_lock = asyncio.Lock()
        self.version = None
        version = await self.checked_version()
        logger.info("Startup: yt-dlp=%s version=%s", " ".join(self.command), version)
        logger.info("Startup: FFMPEG_EXE=%s available=%s", self.ffmpeg_exe, self.ffmpeg_exe is not None)
        return version

    def _require_command(self) -> list[str]:
        if self.command is None:
            self.command = resolve_ytdlp_command(self.settings)
        if self.command is None:
            raise ToolUnavailable(details="yt-dlp executable not found")
        return self.command

    async def tool_version(self) -> str:
        job = Job([*self._require_command(), "--version"], "version")
        code = await job.run(self.settings.probe_timeout_seconds)
        if job.timed_out or code != 0:
            logger.error("yt-dlp --version failed (exit=%s): %s", code, job.diagnostics)
            raise ToolUnavailable(details=f"yt-dlp --version exited with code {code}")
        lines = job.stdout_lines
        return lines[-1].strip() if lines else "unknown"

    async def checked_version(self) -> str:
        """yt-dlp version, re-running --version at most once per tool_check_ttl_seconds."""
        if self._version_lock is None:
            self._version_lock = asyncio.Lock()
        async with self._version_lock:
            age = time.monotonic() - self._version_checked_at
            if self.version is not None and age < self.settings.tool_check_ttl_seconds:
                return self.version
            try:
                self.version = await self.tool_version()
            except ToolUnavailable:
                self.version = None
                raise
            self._version_checked_at = time.monotonic()
            return self.version

    async def probe_title(self, url: str) -> str | None:
        job = Job([*self._require_command(), "--no-download", "--get-title", "--no-playlist", "--", url], "probe")
        code = await self._run(job, None, self.settings.probe_timeout_seconds)
        if job.timed_out or code != 0:
            # stderr may echo the URL back; log it, never return it
            logger.warning("Error verifying video url=%s exit=%s: %s", url, code, job.diagnostics)
            raise UnreachableSource()
        lines = job.stdout_lines
        title = lines[0].strip() if lines else None
        logger.info("Video title: %s", title)
        return title or None

    async def download(self, url: str, artifact: Artifact, options: DownloadOptions) -> int:
        if options.needs_postprocessing and not self.ffmpeg_exe:
            raise ToolUnavailable("ffmpeg is required to trim or scale video")
        argv = build_download_args(self._require_command(), url, artifact.path, options, self.ffmpeg_exe)
        job = Job(argv, f"download {artifact.job_id[:8]}")
        logger.info("Output path: %s", artifact.path)
        timeout = self.settings.download_timeout_seconds
        code = await self._run(job, artifact, timeout)
        if job.timed_out:
            raise DownloadFailed(code, job.diagnostics, details=f"Download timed out after {timeout:g}s")
        if code != 0:
            logger.warning("Download failed url=%s exit=%s: %s", url, code, job.diagnostics)
            raise DownloadFailed(code, job.diagnostics)
        return code

    async def fetch(self, url: str, options: DownloadOptions) -> Artifact:
        """Probe, download and verify one URL; the returned artifact still has to be delivered."""
        async with self.slot():
            title = await self.probe_title(url) if self.settings.probe_enabled else None
            artifact = Artifact(self.settings.temp_dir, title)
            try:
                await self.download(url, artifact, options)
                size = artifact.verify()
            except BaseException:
                artifact.discard()
                raise
        logger.info("Downloaded %s (%s)", artifact.path, format_bytes(size))
        return artifact

    @contextlib.asynccontextmanager
    async def slot(self):
        if self._slots is None:
            self._slots = asyncio.Semaphore(self.settings.max_concurrent_downloads)
        try:
            await asyncio.wait_for(self._slots.acquire(), self.settings.queue_timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("No download slot free after %ss", self.settings.queue_timeout_seconds)
            raise ServiceUnavailable("Too many downloads in progress, try again later") from None
        try:
            yield
        finally:
            self._slots.release()

    async def shutdown(self) -> None:
        """Kill in-flight jobs and delete whatever they had written."""
        for job, artifact in list(self._jobs.values()):
            logger.info("Shutdown: stopping [%s]", job.label)
            await job.kill()
            if artifact is not None:
                artifact.discard()

    async def _run(self, job: Job, artifact: Artifact | None, timeout: float) -> int:
        self._jobs[job.id] = (job, artifact)
        try:
            return await job.run(timeout)
        finally:
            self._jobs.pop(job.id, None)


def sweep_stale_files(directory: str, ttl_seconds: float, now_ts: float) -> int:
    """Delete our artifacts older than ttl_seconds left behind by crashed jobs."""
    if not os.path.isdir(directory):
        return 0
    removed = 0
    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                if not entry.name.startswith(ARTIFACT_PREFIX):
                    continue
                try:
                    if entry.is_file() and (now_ts - entry.stat().st_mtime) > ttl_seconds:
                        os.remove(entry.path)
                        removed += 1
                except FileNotFoundError:
                    # Entry may have been removed concurrently
                    continue
                except OSError:
                    logger.warning("Sweep: could not delete %s", entry.path, exc_info=True)
    except OSError:
        logger.warning("Sweep: cannot scan %s", directory, exc_info=True)
    if removed:
        logger.info("Sweep: removed %d stale file(s) from %s", removed, directory)
    return removed


async def cleanup_loop(directory: str, ttl_seconds: float, interval_seconds: float) -> None:
    # Periodically scan and delete expired files
    while True:
        await asyncio.sleep(interval_seconds)
        await asyncio.to_thread(sweep_stale_files, directory, ttl_seconds, time.time())
