"""Error taxonomy for the download pipeline.

Every error carries the HTTP status it maps to and a message that is safe to
show to callers. Diagnostic text from child processes stays on the exception
for logging and is never rendered into a response.
"""


class VidrelayError(Exception):
    status_code = 500
    message = "Server error"

    def __init__(self, message: str | None = None, details: str | None = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


class InvalidRequest(VidrelayError):
    status_code = 400
    message = "URL is required"


class UnreachableSource(VidrelayError):
    message = "Invalid or inaccessible video URL"


class DownloadFailed(VidrelayError):
    message = "Download failed"

    def __init__(self, exit_code: int | None, diagnostics: str = "", details: str | None = None):
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        if details is None:
            details = f"Process exited with code {exit_code}" if exit_code is not None else None
        super().__init__(details=details)


class MissingArtifact(VidrelayError):
    message = "Video file not found after download"


class EmptyArtifact(VidrelayError):
    message = "Downloaded video file is empty"


class DeliveryFailed(VidrelayError):
    message = "Failed to deliver video file"


class ToolUnavailable(VidrelayError):
    message = "Downloader is not available on this host"


class ServiceUnavailable(VidrelayError):
    status_code = 503
    message = "Server is not ready"
