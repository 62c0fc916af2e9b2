"""
HLS publishing: session manifests, segments and rewritten upstream manifests.
"""

import asyncio
import logging
import os
import re
import uuid
from typing import Optional
from urllib.parse import quote, urljoin

import httpx

from config import settings
from errors import UpstreamStatusError, UpstreamUnavailable

logger = logging.getLogger(__name__)

MANIFEST_NAME = "out.m3u8"
PROVISIONAL_MANIFEST_NAME = "out.m3u8.tmp"
PROXIED_MANIFEST_NAME = "proxied.m3u8"

# Served until ffmpeg has published at least one segment
EMPTY_MANIFEST = (
    "#EXTM3U\n"
    "#EXT-X-VERSION:3\n"
    "#EXT-X-TARGETDURATION:6\n"
    "#EXT-X-MEDIA-SEQUENCE:0\n"
)
REQUIRED_TAGS = ("#EXTM3U", "#EXT-X-VERSION", "#EXT-X-TARGETDURATION", "#EXT-X-MEDIA-SEQUENCE")

SEGMENT_LINE_PATTERN = re.compile(r'^out\d+\.ts$')
HAS_EXTINF_PATTERN = re.compile(r'#EXTINF:\d+')


def get_content_type(url: str) -> str:
    """Determine content type based on URL extension"""
    path = url.split("?", 1)[0].lower()
    if path.endswith('.ts'):
        return 'video/mp2t'
    elif path.endswith(('.m3u8', '.m3u8.tmp')):
        return 'application/vnd.apple.mpegurl'
    elif path.endswith('.mp4'):
        return 'video/mp4'
    elif path.endswith('.mkv'):
        return 'video/x-matroska'
    else:
        return 'application/octet-stream'


def rewrite_session_manifest(text: str, session_id: str) -> str:
    """Point bare ``outN.ts`` entries at the segment endpoint.

    Returns the empty manifest while the text has no segments or is missing
    one of the mandatory header tags.
    """
    if not HAS_EXTINF_PATTERN.search(text):
        return EMPTY_MANIFEST

    lines = text.split("\n")
    if not all(any(line.startswith(tag) for line in lines) for tag in REQUIRED_TAGS):
        return EMPTY_MANIFEST

    rewritten = []
    has_segments = False
    for line in lines:
        if SEGMENT_LINE_PATTERN.match(line.strip()):
            has_segments = True
            rewritten.append(f"/hls-live/{session_id}/{line.strip()}")
        else:
            rewritten.append(line)
    return "\n".join(rewritten) if has_segments else EMPTY_MANIFEST


def rewrite_proxy_manifest(text: str, base_url: str) -> str:
    """Route every URI line of an upstream manifest through /proxy."""
    rewritten = []
    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            rewritten.append(line)
            continue
        absolute = urljoin(base_url, stripped)
        rewritten.append(f"/proxy?url={quote(absolute, safe='')}")
    return "\n".join(rewritten)


class HLSPublisher:
    def __init__(self, hls_root: Optional[str] = None, http_client: Optional[httpx.AsyncClient] = None):
        self.hls_root = hls_root or settings.HLS_ROOT
        self.timeout = settings.UPSTREAM_TIMEOUT
        self.retention = settings.HLS_PROXY_RETENTION
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
            verify=settings.UPSTREAM_VERIFY_TLS
        )
        self._background_tasks = set()
        os.makedirs(self.hls_root, exist_ok=True)

    async def close(self):
        for task in list(self._background_tasks):
            task.cancel()
        await self.http_client.aclose()

    def session_dir(self, session_id: str) -> str:
        return os.path.join(self.hls_root, os.path.basename(session_id))

    def read_session_manifest(self, session_id: str) -> str:
        """Current manifest text for a session; never fails."""
        session_dir = self.session_dir(session_id)
        for name in (MANIFEST_NAME, PROVISIONAL_MANIFEST_NAME):
            path = os.path.join(session_dir, name)
            if not os.path.exists(path):
                continue
            try:
                with open(path, 'r', encoding='utf-8') as f:
                    text = f.read()
            except (OSError, UnicodeDecodeError) as e:
                # ffmpeg may be swapping the file in
                logger.debug(f"Error reading manifest for {session_id}: {e}")
                return EMPTY_MANIFEST
            return rewrite_session_manifest(text, session_id)
        return EMPTY_MANIFEST

    def segment_path(self, session_id: str, name: str) -> Optional[str]:
        """Path of a file inside a session directory, or None when missing."""
        safe_name = os.path.basename(name)
        if not safe_name or safe_name != name:
            return None
        path = os.path.join(self.session_dir(session_id), safe_name)
        return path if os.path.isfile(path) else None

    async def publish_proxy_manifest(self, url: str) -> str:
        """Fetch, rewrite and persist an upstream manifest; returns its /hls URL."""
        try:
            response = await self.http_client.get(url, headers=settings.upstream_headers())
        except httpx.TimeoutException:
            raise UpstreamUnavailable("timeout")
        except httpx.HTTPError as e:
            logger.warning(f"hlsProxy fetch failed for {url}: {e!r}")
            raise UpstreamUnavailable("fetch error")

        if not response.is_success:
            raise UpstreamStatusError(f"upstream {response.status_code}", status_code=response.status_code)

        rewritten = rewrite_proxy_manifest(response.text, str(response.url))

        proxy_id = f"px_{uuid.uuid4().hex[:12]}"
        proxy_dir = os.path.join(self.hls_root, proxy_id)
        os.makedirs(proxy_dir, exist_ok=True)
        with open(os.path.join(proxy_dir, PROXIED_MANIFEST_NAME), 'w', encoding='utf-8') as f:
            f.write(rewritten)

        task = asyncio.create_task(self._expire(proxy_dir))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        logger.info(f"Published proxied manifest {proxy_id} for {url}")
        return f"/hls/{proxy_id}/{PROXIED_MANIFEST_NAME}"

    async def _expire(self, proxy_dir: str):
        await asyncio.sleep(self.retention)
        try:
            os.remove(os.path.join(proxy_dir, PROXIED_MANIFEST_NAME))
            os.rmdir(proxy_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to expire proxied manifest in {proxy_dir}: {e}")

    async def open_upstream(self, url: str) -> httpx.Response:
        """Start a streamed GET; the caller closes the response when done."""
        request = self.http_client.build_request("GET", url, headers=settings.upstream_headers())
        try:
            return await self.http_client.send(request, stream=True)
        except httpx.TimeoutException:
            raise UpstreamUnavailable("timeout")
        except httpx.HTTPError as e:
            logger.warning(f"Proxy fetch failed for {url}: {e!r}")
            raise UpstreamUnavailable("fetch error")
