"""
Playlist ingestion for IPTV/Xtream-style M3U playlists.

Parses channel lists incrementally as the body arrives, tolerates the
non-conformant URL-before-#EXTINF ordering some panels emit, and keeps a
process-lifetime cache of the longest list seen for each source URL.
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

import httpx
import m3u8

from config import settings
from errors import UpstreamStatusError, UpstreamUnavailable

logger = logging.getLogger(__name__)

UNNAMED_CHANNEL = "Unnamed"
UNCATEGORIZED_GROUP = "Uncategorized"

LOGO_PATTERNS = (
    re.compile(r'tvg-logo="([^"]*)"', re.IGNORECASE),
    re.compile(r'tvg-logo=([^ ,]+)', re.IGNORECASE),
)
GROUP_PATTERNS = (
    re.compile(r'group-title="([^"]*)"', re.IGNORECASE),
    re.compile(r'group-title=([^,]+)', re.IGNORECASE),
)


@dataclass
class ChannelRecord:
    url: str
    name: str = UNNAMED_CHANNEL
    tvg_logo: str = ""
    group: str = UNCATEGORIZED_GROUP

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class _ChannelMeta:
    name: str
    tvg_logo: str
    group: str


def _match_attribute(line: str, patterns) -> str:
    for pattern in patterns:
        match = pattern.search(line)
        if match:
            return (match.group(1) or "").strip()
    return ""


def _extinf_title(line: str) -> str:
    """Text after the first comma that is not inside a quoted attribute."""
    in_quotes = False
    for index, char in enumerate(line):
        if char == '"':
            in_quotes = not in_quotes
        elif char == ',' and not in_quotes:
            return line[index + 1:].strip()
    return ""


class M3UPlaylistParser:
    """
    Line-at-a-time M3U parser.

    Holds at most one pending #EXTINF and one pending URL, so both
    ``#EXTINF -> URL`` and ``URL -> #EXTINF`` orderings pair correctly.
    """

    def __init__(self):
        self.channels: List[ChannelRecord] = []
        self.last_group = ""
        self._pending_meta: Optional[_ChannelMeta] = None
        self._pending_url = ""

    def __len__(self) -> int:
        return len(self.channels)

    def feed_line(self, raw_line: str):
        line = (raw_line or "").strip()
        if not line:
            return

        if line.startswith("#EXTGRP"):
            group = line.split(":", 1)[1].strip() if ":" in line else ""
            if group:
                self.last_group = group
            return

        if line.startswith("#EXTINF"):
            meta = _ChannelMeta(
                name=_extinf_title(line) or UNNAMED_CHANNEL,
                tvg_logo=_match_attribute(line, LOGO_PATTERNS),
                group=_match_attribute(line, GROUP_PATTERNS) or self.last_group or UNCATEGORIZED_GROUP,
            )
            if self._pending_url:
                # URL arrived before its metadata
                self._emit(self._pending_url, meta)
                self._pending_url = ""
                self._pending_meta = None
            else:
                self._pending_meta = meta
            return

        if line.startswith("#"):
            return

        if self._pending_meta:
            self._emit(line, self._pending_meta)
            self._pending_meta = None
            return

        if self._pending_url:
            # Two bare URLs in a row: the first one never gets metadata
            self._flush_pending_url()
        self._pending_url = line

    def finish(self) -> List[ChannelRecord]:
        """Flush a trailing URL and return the parsed channels."""
        if self._pending_url:
            self._flush_pending_url()
        return self.channels

    def _flush_pending_url(self):
        self.channels.append(ChannelRecord(
            url=self._pending_url,
            group=self.last_group or UNCATEGORIZED_GROUP,
        ))
        self._pending_url = ""

    def _emit(self, url: str, meta: _ChannelMeta):
        self.channels.append(ChannelRecord(
            url=url,
            name=meta.name,
            tvg_logo=meta.tvg_logo,
            group=meta.group or self.last_group or UNCATEGORIZED_GROUP,
        ))


def parse_playlist_text(text: str) -> List[ChannelRecord]:
    """Parse a complete playlist body."""
    parser = M3UPlaylistParser()
    for line in text.splitlines():
        parser.feed_line(line)
    return parser.finish()


def looks_like_manifest(url: str, content_type: str) -> bool:
    return "mpegurl" in (content_type or "").lower() or url.lower().endswith(".m3u8")


def is_media_manifest(body: str) -> bool:
    """True when the body is an HLS media playlist rather than a channel list."""
    if not body.lstrip().startswith("#EXTM3U") or "#EXT-X-TARGETDURATION" not in body:
        return False
    try:
        return m3u8.loads(body).target_duration is not None
    except Exception as e:
        logger.debug(f"Body is not a parseable HLS manifest: {e}")
        return False


@dataclass
class PlaylistCacheEntry:
    fetched_at: float
    channels: List[ChannelRecord]


class PlaylistCache:
    """Source URL -> longest channel list seen, with a freshness window."""

    def __init__(self, ttl: float = settings.PLAYLIST_CACHE_TTL):
        self.ttl = ttl
        self.entries: Dict[str, PlaylistCacheEntry] = {}

    def __len__(self) -> int:
        return len(self.entries)

    def get_fresh(self, url: str) -> Optional[List[ChannelRecord]]:
        entry = self.entries.get(url)
        if entry and (time.monotonic() - entry.fetched_at) < self.ttl:
            return entry.channels
        return None

    def store(self, url: str, channels: List[ChannelRecord]) -> bool:
        """Store unless it would replace a longer list (truncated refetch)."""
        previous = self.entries.get(url)
        if previous and len(channels) < len(previous.channels):
            logger.info(
                f"Keeping cached playlist for {url}: {len(previous.channels)} channels > {len(channels)} refetched")
            return False
        self.entries[url] = PlaylistCacheEntry(fetched_at=time.monotonic(), channels=channels)
        return True

    def clear(self):
        self.entries.clear()


class PlaylistIngestor:
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, cache: Optional[PlaylistCache] = None):
        self.cache = cache or PlaylistCache()
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=10.0,
                read=settings.PLAYLIST_FETCH_TIMEOUT,
                write=10.0,
                pool=10.0
            ),
            follow_redirects=True,
            verify=settings.UPSTREAM_VERIFY_TLS
        )
        self.user_agents = list(settings.PLAYLIST_USER_AGENTS)
        self.fetch_timeout = settings.PLAYLIST_FETCH_TIMEOUT
        self.stream_parse = settings.PLAYLIST_STREAM_PARSE
        # Parsing that outlives the request that released an early response
        self._background_tasks = set()

    async def close(self):
        for task in list(self._background_tasks):
            task.cancel()
        await self.http_client.aclose()

    def clear_cache(self):
        self.cache.clear()

    @staticmethod
    def _limit(channels: List[ChannelRecord], limit: int) -> List[dict]:
        if limit and limit > 0:
            channels = channels[:min(limit, settings.PLAYLIST_MAX_LIMIT)]
        return [channel.to_dict() for channel in channels]

    async def load(self, url: str, limit: int = 0, early: int = 0, debug: bool = False) -> dict:
        """Return ``{channels, cached?, partial?}`` for a playlist URL.

        With ``early`` > 0 the result is released as soon as that many
        channels are parsed; the fetch keeps running in the background only
        to refresh the cache.
        """
        cached = self.cache.get_fresh(url)
        if cached is not None:
            logger.debug(f"Serving {len(cached)} cached channels for {url}")
            return {"channels": self._limit(cached, limit), "cached": True}

        first_result = asyncio.get_running_loop().create_future()
        task = asyncio.create_task(self._ingest(url, max(0, early), debug, first_result))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

        result = await asyncio.shield(first_result)
        response = {"channels": self._limit(result["channels"], limit)}
        if result.get("partial"):
            response["partial"] = True
        return response

    async def _ingest(self, url: str, early: int, debug: bool, first_result: asyncio.Future):
        try:
            for user_agent in self.user_agents:
                try:
                    done = await self._attempt(url, user_agent, early, debug, first_result)
                except (httpx.HTTPError, asyncio.TimeoutError, UnicodeDecodeError) as e:
                    if first_result.done():
                        logger.warning(
                            f"Background playlist parse for {url} aborted, cache not updated: {e!r}")
                        return
                    logger.warning(f"Playlist fetch with '{user_agent}' failed for {url}: {e!r}")
                    continue
                if done:
                    return

            _settle(first_result, exception=UpstreamUnavailable(
                "timeout or no valid response from upstream"))
        except Exception as e:
            logger.error(f"Unexpected error ingesting playlist {url}: {e}")
            _settle(first_result, exception=e)

    async def _attempt(self, url: str, user_agent: str, early: int, debug: bool,
                       first_result: asyncio.Future) -> bool:
        """One fetch with one client identity. Returns False to try the next."""
        request = self.http_client.build_request("GET", url, headers=settings.upstream_headers(user_agent))
        # Bounded until headers arrive; body stalls are left to the client's read timeout
        response = await asyncio.wait_for(
            self.http_client.send(request, stream=True),
            timeout=self.fetch_timeout
        )
        try:
            if not response.is_success:
                if debug:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    _settle(first_result, exception=UpstreamStatusError(
                        f"upstream {response.status_code}",
                        status_code=response.status_code,
                        detail={"ua": user_agent, "body": body[:2000]}
                    ))
                    return True
                logger.info(f"Upstream answered {response.status_code} to '{user_agent}' for {url}")
                return False

            content_type = response.headers.get("content-type", "")
            if looks_like_manifest(url, content_type):
                body = (await response.aread()).decode("utf-8", errors="replace")
                if is_media_manifest(body):
                    channels = [ChannelRecord(url=url, name="Stream")]
                    self.cache.store(url, channels)
                    _settle(first_result, result={"channels": channels})
                    return True
                # A master/channel list served as m3u8: parse what we already hold
                channels = parse_playlist_text(body)
            elif self.stream_parse:
                channels = await self._parse_stream(url, response, early, first_result)
            else:
                body = (await response.aread()).decode("utf-8", errors="replace")
                channels = parse_playlist_text(body)
        finally:
            await response.aclose()

        if first_result.done():
            logger.info(f"Playlist {url}: parsing complete after early response, {len(channels)} channels")
        else:
            logger.info(f"Playlist {url}: {len(channels)} channels")
        self.cache.store(url, channels)
        _settle(first_result, result={"channels": channels})
        return True

    async def _parse_stream(self, url: str, response: httpx.Response, early: int,
                            first_result: asyncio.Future) -> List[ChannelRecord]:
        parser = M3UPlaylistParser()
        async for line in response.aiter_lines():
            parser.feed_line(line)
            if early and not first_result.done() and len(parser) >= early:
                logger.info(f"Playlist {url}: releasing early response with {len(parser)} channels")
                _settle(first_result, result={"channels": list(parser.channels), "partial": True})
        return parser.finish()


def _settle(future: asyncio.Future, result=None, exception: Optional[BaseException] = None):
    if future.done():
        return
    if exception is not None:
        future.set_exception(exception)
    else:
        future.set_result(result)
