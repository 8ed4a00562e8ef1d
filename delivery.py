import base64
import logging

from fastapi.concurrency import run_in_threadpool
from fastapi.responses import FileResponse, JSONResponse, Response

from downloader import Artifact
from errors import DeliveryFailed

logger = logging.getLogger("vidrelay")

VIDEO_MEDIA_TYPE = "video/mp4"


class ArtifactResponse(FileResponse):
    """Streams an artifact from disk and deletes it once the response is over.

    Content-Length comes from the size recorded when the artifact was verified.
    Deletion also runs when sending fails part way, e.g. the client went away.
    """

    def __init__(self, artifact: Artifact):
        super().__init__(
            artifact.path,
            media_type=VIDEO_MEDIA_TYPE,
            filename=artifact.download_name,
            stat_result=artifact.stat_result,
        )
        self.artifact = artifact

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
            logger.info("Streamed %s (%s bytes)", self.artifact.name, self.artifact.size)
        finally:
            await run_in_threadpool(self.artifact.discard)


def _read_base64(path: str) -> str:
    with open(path, "rb") as f:
        return base64.b64encode(f.read()).decode("ascii")


async def encode_artifact(artifact: Artifact) -> dict:
    """Read the whole artifact into a data URI. Memory grows with file size."""
    try:
        encoded = await run_in_threadpool(_read_base64, artifact.path)
    except OSError as e:
        logger.warning("Error reading %s for encoding", artifact.path, exc_info=True)
        raise DeliveryFailed(details=e.strerror or str(e)) from e
    finally:
        await run_in_threadpool(artifact.discard)
    return {
        "status": "ok",
        "message": "Video downloaded successfully",
        "videoUrl": f"data:{VIDEO_MEDIA_TYPE};base64,{encoded}",
        "filename": artifact.download_name,
        "size": artifact.size,
    }


async def deliver(artifact: Artifact, mode: str) -> Response:
    try:
        if mode == "base64":
            return JSONResponse(await encode_artifact(artifact))
        return ArtifactResponse(artifact)
    except BaseException:
        artifact.discard()
        raise
