"""
Best-effort stream probing through ffmpeg.

Both probes decode a fraction of a second with a capped analysis window and
are killed by a wall-clock timer, so a slow or endless live stream can never
hold up a remux request. Any failure degrades to "progressive, unknown codec".
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional

from config import settings

logger = logging.getLogger(__name__)

INTERLACE_PATTERN = re.compile(r'top first|bottom first|\btff\b|\bbff\b', re.IGNORECASE)
VIDEO_CODEC_PATTERN = re.compile(r'Stream #\d+:\d+.*?Video:\s*([a-zA-Z0-9_]+)')
AUDIO_CODEC_PATTERN = re.compile(r'Stream #\d+:\d+.*?Audio:\s*([a-zA-Z0-9_]+)')

# Codecs a standard HLS player takes without re-encoding
PASSTHROUGH_VIDEO_CODECS = ("h264", "avc1")
PASSTHROUGH_AUDIO_CODECS = ("aac", "mp4a")


@dataclass
class CodecInfo:
    video: str = ""
    audio: str = ""

    @property
    def needs_video_transcode(self) -> bool:
        # An undetected codec is treated as unsupported
        return self.video not in PASSTHROUGH_VIDEO_CODECS

    @property
    def needs_audio_transcode(self) -> bool:
        return self.audio not in PASSTHROUGH_AUDIO_CODECS


@dataclass
class ProbeResult:
    interlaced: bool = False
    codecs: CodecInfo = field(default_factory=CodecInfo)

    @property
    def force_video_transcode(self) -> bool:
        return self.interlaced or self.codecs.needs_video_transcode


def detect_interlace(stderr: str) -> bool:
    return bool(INTERLACE_PATTERN.search(stderr or ""))


def extract_codecs(stderr: str) -> CodecInfo:
    video = VIDEO_CODEC_PATTERN.search(stderr or "")
    audio = AUDIO_CODEC_PATTERN.search(stderr or "")
    return CodecInfo(
        video=video.group(1).lower() if video else "",
        audio=audio.group(1).lower() if audio else "",
    )


def build_probe_command(ffmpeg_path: str, url: str, analyzeduration: int, probesize: int) -> List[str]:
    headers = settings.upstream_headers()
    user_agent = headers.pop("User-Agent")
    return [
        ffmpeg_path,
        "-hide_banner",
        "-user_agent", user_agent,
        "-headers", "".join(f"{key}: {value}\r\n" for key, value in headers.items()),
        "-analyzeduration", str(analyzeduration),
        "-probesize", str(probesize),
        "-i", url,
        "-t", "0.3",
        "-f", "null",
        "-"
    ]


class MediaProber:
    def __init__(self, ffmpeg_path: Optional[str] = None):
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_BINARY
        self.interlace_timeout = settings.INTERLACE_PROBE_TIMEOUT
        self.codec_timeout = settings.CODEC_PROBE_TIMEOUT

    async def _run(self, cmd: List[str], timeout: float) -> Optional[str]:
        """Run ffmpeg and return its stderr, or None on timeout/missing tool."""
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.warning(f"Probe could not start ffmpeg: {e}")
            return None

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Probe timed out after {timeout}s, killing PID {process.pid}")
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
            return None
        return stderr.decode("utf-8", errors="ignore")

    async def probe_interlace(self, url: str) -> bool:
        cmd = build_probe_command(self.ffmpeg_path, url, 1500000, 2000000)
        try:
            stderr = await self._run(cmd, self.interlace_timeout)
        except Exception as e:
            logger.warning(f"Interlace probe failed for {url}: {e}")
            return False
        return detect_interlace(stderr) if stderr else False

    async def probe_codecs(self, url: str) -> CodecInfo:
        cmd = build_probe_command(self.ffmpeg_path, url, 4000000, 6000000)
        try:
            stderr = await self._run(cmd, self.codec_timeout)
        except Exception as e:
            logger.warning(f"Codec probe failed for {url}: {e}")
            return CodecInfo()
        return extract_codecs(stderr) if stderr else CodecInfo()

    async def probe(self, url: str) -> ProbeResult:
        interlaced = await self.probe_interlace(url)
        codecs = await self.probe_codecs(url)
        return ProbeResult(interlaced=interlaced, codecs=codecs)
