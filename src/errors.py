"""
Gateway error classes.

Each class carries the HTTP status the API layer answers with; the exception
handler registered in api.py renders them as ``{"error": message}``.
"""

from typing import Optional


class GatewayError(Exception):
    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class BadRequest(GatewayError):
    """A required request parameter is missing or unusable."""
    status_code = 400


class UpstreamUnavailable(GatewayError):
    """Every client identity or every candidate URL was exhausted."""
    status_code = 504


class UpstreamStatusError(GatewayError):
    """The upstream answered with a non-success status that is passed through."""

    def __init__(self, message: str, status_code: int, detail: Optional[dict] = None):
        super().__init__(message, status_code=status_code)
        self.detail = detail or {}


class ToolMissing(GatewayError):
    """The external media tool (ffmpeg) is not available."""
    status_code = 500


class ProcessFailure(GatewayError):
    """An ffmpeg process exited with a non-zero status.

    Recovered internally by candidate fallback; never rendered to a caller
    because the remux request has already returned its session id.
    """

    def __init__(self, session_id: str, exit_code: Optional[int]):
        super().__init__(f"ffmpeg for session {session_id} exited with code {exit_code}")
        self.session_id = session_id
        self.exit_code = exit_code
