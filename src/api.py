from fastapi import FastAPI, Query, Request, Response
from fastapi.responses import StreamingResponse, FileResponse, JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager
import logging
import subprocess
from typing import Optional
from pydantic import BaseModel, Field

from config import settings, VERSION
from errors import BadRequest, GatewayError, UpstreamStatusError, UpstreamUnavailable
from hls_publisher import HLSPublisher, get_content_type
from playlist_ingestor import PlaylistIngestor
from remux_session_manager import RemuxSessionManager

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "Access-Control-Allow-Origin": "*"
}


def get_ffmpeg_version() -> Optional[str]:
    """Get the ffmpeg version string"""
    binary = remux_manager.ffmpeg_path or settings.FFMPEG_BINARY
    try:
        result = subprocess.run(
            [binary, '-version'],
            capture_output=True,
            text=True,
            timeout=5
        )
        if result.returncode == 0:
            # First line, e.g. "ffmpeg version 6.1.1"
            return result.stdout.split('\n')[0].strip()
        return None
    except (subprocess.TimeoutExpired, OSError) as e:
        logger.warning(f"Failed to get ffmpeg version: {e}")
        return None


def require_url(url: Optional[str]) -> str:
    if not url or not url.strip():
        raise BadRequest("url missing")
    return url.strip()


playlist_ingestor = PlaylistIngestor()
hls_publisher = HLSPublisher()
remux_manager = RemuxSessionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    logger.info(f"IPTV gateway {VERSION} starting up, HLS root: {settings.HLS_ROOT}")
    if not remux_manager.ffmpeg_path:
        logger.warning("ffmpeg not found on PATH, remux requests will fail")

    yield

    logger.info("IPTV gateway shutting down...")
    await remux_manager.shutdown()
    await hls_publisher.close()
    await playlist_ingestor.close()


app = FastAPI(
    title="IPTV gateway",
    version=VERSION,
    description="Playlist ingestion, upstream proxying and ffmpeg HLS remuxing for an IPTV viewer",
    lifespan=lifespan,
)

# The viewer UI is served from a different origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Rewritten proxy manifests
app.mount("/hls", StaticFiles(directory=settings.HLS_ROOT), name="hls")


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    content = {"error": exc.message}
    if isinstance(exc, UpstreamStatusError):
        content.update(exc.detail)
    return JSONResponse(status_code=exc.status_code, content=content)


class StopSessionRequest(BaseModel):
    """Request body for stopping a remux session"""
    session_id: Optional[str] = Field(None, alias="sessionId")


@app.get("/api/playlist")
async def get_playlist(
    url: Optional[str] = Query(None, description="Playlist URL"),
    limit: int = Query(0, description="Maximum channels returned, 0 for all"),
    early: int = Query(0, description="Respond once this many channels are parsed"),
    debug: bool = Query(False, description="Return upstream status and body on failure")
):
    """Fetch, parse and cache an M3U playlist"""
    url = require_url(url)
    return await playlist_ingestor.load(url, limit=limit, early=early, debug=debug)


@app.get("/proxy")
async def proxy(url: Optional[str] = Query(None, description="Upstream URL")):
    """Byte passthrough for upstream segments and manifests"""
    if not url:
        return Response(content="url missing", status_code=400)

    try:
        upstream = await hls_publisher.open_upstream(url)
    except UpstreamUnavailable as e:
        return Response(content=e.message, status_code=504)

    if not upstream.is_success:
        await upstream.aclose()
        return Response(content="Upstream error", status_code=upstream.status_code)

    async def body():
        try:
            async for chunk in upstream.aiter_bytes():
                yield chunk
        except Exception as e:
            logger.warning(f"Proxy stream for {url} ended with error: {e!r}")
        finally:
            await upstream.aclose()

    media_type = upstream.headers.get("content-type") or get_content_type(url)
    return StreamingResponse(body(), media_type=media_type)


@app.get("/api/hlsProxy")
async def hls_proxy(url: Optional[str] = Query(None, description="Upstream HLS manifest URL")):
    """Rewrite an upstream manifest so every URI goes through /proxy"""
    url = require_url(url)
    m3u8_url = await hls_publisher.publish_proxy_manifest(url)
    return {"m3u8Url": m3u8_url}


@app.get("/hls-live/{session_id}/out.m3u8")
async def get_session_manifest(session_id: str) -> Response:
    """Current manifest of a remux session; empty until segments exist"""
    content = hls_publisher.read_session_manifest(session_id)
    return Response(
        content=content,
        media_type="application/vnd.apple.mpegurl",
        headers=NO_CACHE_HEADERS
    )


@app.get("/hls-live/{session_id}/{segment}")
async def get_session_segment(session_id: str, segment: str):
    """Serve a segment file of a remux session"""
    path = hls_publisher.segment_path(session_id, segment)
    if path is None:
        return Response(content="not found", status_code=404)
    return FileResponse(
        path,
        media_type=get_content_type(path),
        headers={
            "Cache-Control": "no-store",
            "Access-Control-Allow-Origin": "*"
        }
    )


@app.get("/api/remuxHls")
async def remux_hls(
    url: Optional[str] = Query(None, description="Stream URL"),
    vod_hint: Optional[str] = Query(None, alias="vodHint", description="series or movie")
):
    """Start an ffmpeg remux session and return its manifest URL immediately"""
    url = require_url(url)
    session = await remux_manager.start_session(url, vod_hint=vod_hint)
    logger.info(f"Remux session {session.session_id} started for {url}")
    return {"m3u8Url": session.manifest_url, "sessionId": session.session_id}


@app.post("/api/remuxHls/stop")
async def stop_remux(request: Optional[StopSessionRequest] = None):
    """Stop a remux session. Unknown ids are accepted."""
    if request and request.session_id:
        await remux_manager.stop_session(request.session_id)
    return {"ok": True}


@app.post("/api/resetCache")
async def reset_cache():
    """Clear the playlist cache, stop every session and empty the HLS root"""
    playlist_ingestor.clear_cache()
    stopped = await remux_manager.reset()
    return {"ok": True, "stopped": stopped}


@app.get("/health")
async def health_check():
    """Health check endpoint with detailed status"""
    return {
        "status": "healthy",
        "version": VERSION,
        "ffmpeg": get_ffmpeg_version(),
        "active_sessions": len(remux_manager.sessions),
        "sessions": remux_manager.list_sessions(),
        "cached_playlists": len(playlist_ingestor.cache)
    }
