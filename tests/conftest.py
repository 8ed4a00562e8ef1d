import json
import os
import stat
import sys

import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app

# Stands in for yt-dlp: behaviour is driven by STUB_* environment variables,
# every invocation's argv is appended to STUB_ARGV_LOG as a JSON line.
STUB_SOURCE = """#!{python}
import json, os, sys, time

args = sys.argv[1:]
log_path = os.environ.get("STUB_ARGV_LOG")
if log_path:
    with open(log_path, "a") as f:
        f.write(json.dumps(args) + "\\n")

if "--version" in args:
    print("2025.02.19")
    sys.exit(int(os.environ.get("STUB_VERSION_EXIT", "0")))

url = args[-1]
if "--get-title" in args:
    code = int(os.environ.get("STUB_PROBE_EXIT", "0"))
    if code:
        sys.stderr.write("ERROR: Unsupported URL: " + url + "\\n")
        sys.exit(code)
    print("Stub Video " + url.rsplit("/", 1)[-1])
    sys.exit(0)

out = args[args.index("-o") + 1]
time.sleep(float(os.environ.get("STUB_DELAY", "0")))
print("[download]  50.0% of 1.00KiB at 1.00KiB/s ETA 00:01", flush=True)
size = int(os.environ.get("STUB_BYTES", "1024"))
if size >= 0:
    with open(out, "wb") as f:
        f.write(url[-1].encode("ascii", "replace") * size)
code = int(os.environ.get("STUB_EXIT", "0"))
if code:
    with open(out + ".part", "wb") as f:
        f.write(b"partial")
    sys.stderr.write("ERROR: <script>alert(1)</script> " + url + "\\n")
sys.exit(code)
"""


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def stub_tool(tmp_path):
    path = tmp_path / "yt-dlp-stub"
    path.write_text(STUB_SOURCE.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def argv_log(tmp_path, monkeypatch):
    path = tmp_path / "argv.log"
    monkeypatch.setenv("STUB_ARGV_LOG", str(path))
    for name in ("STUB_BYTES", "STUB_EXIT", "STUB_DELAY", "STUB_PROBE_EXIT", "STUB_VERSION_EXIT"):
        monkeypatch.delenv(name, raising=False)
    return path


@pytest.fixture
def temp_dir(tmp_path):
    return tmp_path / "temp"


@pytest.fixture
def settings(stub_tool, temp_dir, argv_log):
    return Settings(
        temp_dir=str(temp_dir),
        ytdlp_path=str(stub_tool),
        # any executable will do; the stub never runs it
        ffmpeg_path=str(stub_tool),
        queue_timeout_seconds=5,
        probe_timeout_seconds=10,
        download_timeout_seconds=10,
    )


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as c:
        yield c


def read_invocations(path):
    if not os.path.exists(path):
        return []
    with open(path) as f:
        return [json.loads(line) for line in f if line.strip()]


def leftover_files(directory):
    if not os.path.isdir(directory):
        return []
    return sorted(os.listdir(directory))
