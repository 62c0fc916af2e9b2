"""
Candidate URL resolution for Xtream-style stream URLs.

Panels disagree on where they expose the same live stream (bare id, ``.ts``,
``/live/`` or ``/hls/`` roots), so one input URL is expanded into an ordered,
immutable list of variants and the first reachable one is used.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from config import settings

logger = logging.getLogger(__name__)

VOD_EXTENSION_PATTERN = re.compile(r'\.(mp4|mkv|avi|mov|m4v|wmv|mpg|mpeg)(\?|$)', re.IGNORECASE)
VOD_PATH_PATTERN = re.compile(r'/(series|movie)/', re.IGNORECASE)
HAS_EXTENSION_PATTERN = re.compile(r'\.\w+$')
LIVE_EXTENSION_PATTERN = re.compile(r'\.(ts|m3u8)$', re.IGNORECASE)

# Extension guesses, most likely first, for extension-less VOD ids
VOD_EXTENSIONS = {
    "series": (".mkv", ".mp4"),
    "movie": (".mp4", ".mkv"),
}


class StreamKind(str, Enum):
    SERIES = "series"
    MOVIE = "movie"
    LIVE = "live"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CandidatePlan:
    candidates: Tuple[str, ...]
    is_vod: bool


def _path_parts(url: str) -> Tuple[str, List[str], str]:
    parsed = urlsplit(url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Not an absolute URL: {url}")
    host = f"{parsed.scheme}://{parsed.netloc}"
    parts = [part for part in parsed.path.split("/") if part]
    query = f"?{parsed.query}" if parsed.query else ""
    return host, parts, query


def _join(host: str, *segments: str) -> str:
    return "/".join([host] + [segment.strip("/") for segment in segments if segment])


def _live_parts(parts: List[str]) -> Tuple[str, str, str]:
    """(user, password, bare stream id) from the path of a live URL."""
    user, password = parts[0], parts[1]
    if user.lower() == "live" and len(parts) >= 4:
        # Already under /live/: credentials start one segment later
        user, password = parts[1], parts[2]
        stream_id = "/".join(parts[3:])
    else:
        stream_id = "/".join(parts[2:])
    return user, password, LIVE_EXTENSION_PATTERN.sub("", stream_id)


def classify_url(url: str) -> StreamKind:
    """Classify an Xtream URL by its path shape."""
    try:
        _, parts, _ = _path_parts(url)
    except ValueError:
        return StreamKind.UNKNOWN

    first = parts[0].lower() if parts else ""
    if first in ("series", "movie"):
        return StreamKind(first) if len(parts) >= 4 else StreamKind.UNKNOWN
    if len(parts) >= 3:
        return StreamKind.LIVE
    return StreamKind.UNKNOWN


def build_candidate_urls(url: str) -> List[str]:
    """Expand one stream URL into ordered variants, most likely first."""
    kind = classify_url(url)
    if kind == StreamKind.UNKNOWN:
        return [url]

    host, parts, query = _path_parts(url)

    if kind in (StreamKind.SERIES, StreamKind.MOVIE):
        # VOD URLs are usually right as given; only guess a missing extension
        root, user, password = parts[0], parts[1], parts[2]
        tail = "/".join(parts[3:])
        candidates = [url]
        if not HAS_EXTENSION_PATTERN.search(tail):
            for extension in VOD_EXTENSIONS[kind.value]:
                candidates.append(_join(host, root, user, password, tail + extension) + query)
        return candidates

    user, password, stream_id = _live_parts(parts)
    return [
        _join(host, user, password, stream_id) + query,
        _join(host, user, password, stream_id + ".ts") + query,
        _join(host, "live", user, password, stream_id + ".ts") + query,
        _join(host, "live", user, password, stream_id + ".m3u8") + query,
        _join(host, "hls", user, password, stream_id + ".m3u8") + query,
    ]


def looks_like_vod(url: str) -> bool:
    return bool(VOD_PATH_PATTERN.search(url) or VOD_EXTENSION_PATTERN.search(url))


def plan_candidates(url: str, vod_hint: Optional[str] = None) -> CandidatePlan:
    """Build the candidate list for a remux session.

    A ``series``/``movie`` hint on a live-shaped URL puts the matching VOD
    endpoints in front of the live variants.
    """
    candidates = build_candidate_urls(url)
    vod_type = vod_hint if vod_hint in VOD_EXTENSIONS else ""
    by_url = looks_like_vod(url)

    if vod_type and not by_url:
        try:
            host, parts, query = _path_parts(url)
        except ValueError:
            parts = []
        if len(parts) >= 3:
            user, password, stream_id = _live_parts(parts)
            vod_candidates = [
                _join(host, vod_type, user, password, stream_id + extension) + query
                for extension in VOD_EXTENSIONS[vod_type]
            ]
            candidates = vod_candidates + candidates

    return CandidatePlan(candidates=tuple(candidates), is_vod=by_url or bool(vod_type))


class SourceResolver:
    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, timeout: Optional[float] = None):
        self.timeout = timeout if timeout is not None else settings.REACHABILITY_TIMEOUT
        self.http_client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            follow_redirects=True,
            verify=settings.UPSTREAM_VERIFY_TLS
        )

    async def close(self):
        await self.http_client.aclose()

    async def _is_reachable(self, url: str) -> bool:
        # Status only: the body of a live stream never ends
        async with self.http_client.stream("GET", url, headers=settings.upstream_headers()) as response:
            return response.is_success

    async def pick_reachable_url(self, candidates) -> Optional[str]:
        """First candidate answering 2xx within the timeout, in list order."""
        for url in candidates:
            try:
                if await asyncio.wait_for(self._is_reachable(url), timeout=self.timeout):
                    logger.info(f"Reachable candidate: {url}")
                    return url
                logger.debug(f"Candidate not usable: {url}")
            except (httpx.HTTPError, asyncio.TimeoutError) as e:
                logger.debug(f"Candidate {url} failed: {e!r}")
        return None

    async def choose(self, plan: CandidatePlan) -> Tuple[str, int]:
        """Pick the candidate to start with; never fails.

        VOD candidates are not interchangeable mirrors, so the first one is
        used as-is. Live candidates are probed, falling back to the first.
        """
        if plan.is_vod:
            return plan.candidates[0], 0
        picked = await self.pick_reachable_url(plan.candidates)
        if picked is None:
            logger.warning(f"No candidate reachable, falling back to {plan.candidates[0]}")
            return plan.candidates[0], 0
        return picked, plan.candidates.index(picked)
