import os
import tempfile
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

# Application version
VERSION = "0.4.0"


class Settings(BaseSettings):
    """
    Gateway configuration loaded from environment variables.
    Utilizes pydantic-settings for validation and type-casting.
    """

    # Server Configuration
    # The desktop shell expects the gateway on this fixed local port
    HOST: str = "127.0.0.1"
    PORT: int = 4137
    LOG_LEVEL: str = "info"
    RELOAD: bool = False

    # Working directory for session output and rewritten proxy manifests
    HLS_ROOT: str = os.path.join(tempfile.gettempdir(), "iptv-hls")
    FFMPEG_BINARY: str = "ffmpeg"

    # Upstream identity
    DEFAULT_USER_AGENT: str = "VLC/3.0.18 LibVLC/3.0.18"
    # Tried in order when fetching a playlist, until one returns 2xx
    PLAYLIST_USER_AGENTS: List[str] = [
        "VLC/3.0.18 LibVLC/3.0.18",
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/117 Safari/537.36",
        "IPTV/1.0",
    ]
    # Some panels reject requests without an Origin/Referer pair
    UPSTREAM_REFERER: Optional[str] = None
    # IPTV panels routinely ship self-signed certificates
    UPSTREAM_VERIFY_TLS: bool = False

    # Timeouts (seconds)
    PLAYLIST_FETCH_TIMEOUT: float = 120.0
    UPSTREAM_TIMEOUT: float = 20.0
    REACHABILITY_TIMEOUT: float = 6.0
    INTERLACE_PROBE_TIMEOUT: float = 3.0
    CODEC_PROBE_TIMEOUT: float = 3.5

    # Playlist ingestion
    PLAYLIST_CACHE_TTL: float = 60.0
    PLAYLIST_MAX_LIMIT: int = 200000
    # Parse the body line by line as it arrives; disable to parse the full body
    PLAYLIST_STREAM_PARSE: bool = True

    # Remux sessions
    # Delay before removing the directory of a session that exited on its own,
    # so an in-flight manifest read can complete
    SESSION_CLEANUP_GRACE: float = 10.0
    # ffmpeg exit status that moves a live session to its next candidate
    REMUX_RETRY_EXIT_CODE: int = 1
    HLS_SEGMENT_DURATION: int = 3
    HLS_LIST_SIZE: int = 6

    # Rewritten third-party manifests are deleted after this many seconds
    HLS_PROXY_RETENTION: float = 300.0

    # Model configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )

    def upstream_headers(self, user_agent: Optional[str] = None) -> dict:
        """Headers sent to IPTV upstreams for one client identity."""
        headers = {
            "User-Agent": user_agent or self.DEFAULT_USER_AGENT,
            "Accept": "*/*",
            "Connection": "keep-alive",
        }
        if self.UPSTREAM_REFERER:
            headers["Origin"] = self.UPSTREAM_REFERER
            headers["Referer"] = self.UPSTREAM_REFERER
        return headers


# Global settings instance
settings = Settings()
