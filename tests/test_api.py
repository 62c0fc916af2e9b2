# Add src to path first
from api import app, require_url
from config import settings
from errors import BadRequest, ToolMissing, UpstreamStatusError, UpstreamUnavailable
from hls_publisher import EMPTY_MANIFEST, HLSPublisher
import gzip
import httpx
import pytest
import shutil
from fastapi.testclient import TestClient
from unittest.mock import Mock, AsyncMock, patch
import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))


FFMPEG_MANIFEST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:3
#EXT-X-MEDIA-SEQUENCE:0
#EXTINF:3.000000,
out0.ts
"""


class TestHelperFunctions:

    def test_require_url(self):
        assert require_url("  http://a/b ") == "http://a/b"
        with pytest.raises(BadRequest):
            require_url(None)
        with pytest.raises(BadRequest):
            require_url("   ")


class TestAPI:
    """Test FastAPI endpoints"""

    @pytest.fixture
    def client(self):
        return TestClient(app)

    @pytest.fixture
    def mock_ingestor(self):
        with patch('api.playlist_ingestor') as mock:
            mock.cache = []
            mock.load = AsyncMock(return_value={
                "channels": [{"name": "Rai 1", "tvg_logo": "", "group": "Italia", "url": "http://a/1"}]
            })
            yield mock

    @pytest.fixture
    def mock_remux_manager(self):
        with patch('api.remux_manager') as mock:
            mock.sessions = {}
            mock.list_sessions = Mock(return_value=[])
            mock.start_session = AsyncMock(return_value=Mock(
                session_id="abc123",
                manifest_url="/hls-live/abc123/out.m3u8"
            ))
            mock.stop_session = AsyncMock(return_value=True)
            mock.reset = AsyncMock(return_value=2)
            yield mock

    @pytest.fixture
    def publisher(self, tmp_path):
        publisher = HLSPublisher(hls_root=str(tmp_path))
        with patch('api.hls_publisher', publisher):
            yield publisher

    def test_playlist_requires_url(self, client, mock_ingestor):
        response = client.get("/api/playlist")
        assert response.status_code == 400
        assert response.json() == {"error": "url missing"}
        mock_ingestor.load.assert_not_called()

    def test_playlist(self, client, mock_ingestor):
        response = client.get("/api/playlist", params={
            "url": "http://panel/get.php", "limit": 5, "early": 10, "debug": "1"
        })
        assert response.status_code == 200
        assert response.json()["channels"][0]["name"] == "Rai 1"
        mock_ingestor.load.assert_awaited_once_with(
            "http://panel/get.php", limit=5, early=10, debug=True)

    def test_playlist_upstream_unavailable(self, client, mock_ingestor):
        mock_ingestor.load.side_effect = UpstreamUnavailable("timeout or no valid response from upstream")
        response = client.get("/api/playlist", params={"url": "http://panel/get.php"})
        assert response.status_code == 504
        assert "error" in response.json()

    def test_playlist_debug_upstream_status(self, client, mock_ingestor):
        mock_ingestor.load.side_effect = UpstreamStatusError(
            "upstream 401", status_code=401, detail={"ua": "VLC/3.0.18 LibVLC/3.0.18", "body": "expired"})
        response = client.get("/api/playlist", params={"url": "http://panel/get.php", "debug": "1"})
        assert response.status_code == 401
        assert response.json() == {
            "error": "upstream 401", "ua": "VLC/3.0.18 LibVLC/3.0.18", "body": "expired"}

    def test_remux(self, client, mock_remux_manager):
        response = client.get("/api/remuxHls", params={"url": "http://panel/u/p/1", "vodHint": "series"})
        assert response.status_code == 200
        assert response.json() == {"m3u8Url": "/hls-live/abc123/out.m3u8", "sessionId": "abc123"}
        mock_remux_manager.start_session.assert_awaited_once_with("http://panel/u/p/1", vod_hint="series")

    def test_remux_requires_url(self, client, mock_remux_manager):
        response = client.get("/api/remuxHls")
        assert response.status_code == 400
        mock_remux_manager.start_session.assert_not_called()

    def test_remux_without_ffmpeg(self, client, mock_remux_manager):
        mock_remux_manager.start_session.side_effect = ToolMissing("ffmpeg not found")
        response = client.get("/api/remuxHls", params={"url": "http://panel/u/p/1"})
        assert response.status_code == 500
        assert response.json() == {"error": "ffmpeg not found"}

    def test_stop_remux(self, client, mock_remux_manager):
        response = client.post("/api/remuxHls/stop", json={"sessionId": "abc123"})
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        mock_remux_manager.stop_session.assert_awaited_once_with("abc123")

    def test_stop_unknown_session_succeeds(self, client, mock_remux_manager):
        mock_remux_manager.stop_session.return_value = False
        response = client.post("/api/remuxHls/stop", json={"sessionId": "gone"})
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_stop_without_session_id(self, client, mock_remux_manager):
        response = client.post("/api/remuxHls/stop", json={})
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        mock_remux_manager.stop_session.assert_not_called()

    def test_reset_cache(self, client, mock_ingestor, mock_remux_manager):
        response = client.post("/api/resetCache")
        assert response.status_code == 200
        assert response.json() == {"ok": True, "stopped": 2}
        mock_ingestor.clear_cache.assert_called_once()
        mock_remux_manager.reset.assert_awaited_once()

    def test_session_manifest_empty_until_segments(self, client, publisher):
        response = client.get("/hls-live/unknown/out.m3u8")
        assert response.status_code == 200
        assert response.text == EMPTY_MANIFEST
        assert response.headers["content-type"] == "application/vnd.apple.mpegurl"
        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["expires"] == "0"

    def test_session_manifest_rewrites_segments(self, client, publisher, tmp_path):
        session_dir = tmp_path / "abc123"
        session_dir.mkdir()
        (session_dir / "out.m3u8").write_text(FFMPEG_MANIFEST)

        response = client.get("/hls-live/abc123/out.m3u8")
        assert response.status_code == 200
        assert "/hls-live/abc123/out0.ts" in response.text
        assert "#EXT-X-MEDIA-SEQUENCE:0" in response.text

    def test_segment(self, client, publisher, tmp_path):
        session_dir = tmp_path / "abc123"
        session_dir.mkdir()
        (session_dir / "out0.ts").write_bytes(b"\x47" * 376)

        response = client.get("/hls-live/abc123/out0.ts")
        assert response.status_code == 200
        assert response.content == b"\x47" * 376
        assert response.headers["content-type"] == "video/mp2t"
        assert response.headers["cache-control"] == "no-store"

    def test_missing_segment(self, client, publisher):
        response = client.get("/hls-live/abc123/out9.ts")
        assert response.status_code == 404

    def test_hls_proxy(self, client):
        with patch('api.hls_publisher') as mock:
            mock.publish_proxy_manifest = AsyncMock(return_value="/hls/px_1/proxied.m3u8")
            response = client.get("/api/hlsProxy", params={"url": "http://cdn/index.m3u8"})
        assert response.status_code == 200
        assert response.json() == {"m3u8Url": "/hls/px_1/proxied.m3u8"}

    def test_hls_proxy_upstream_error(self, client):
        with patch('api.hls_publisher') as mock:
            mock.publish_proxy_manifest = AsyncMock(
                side_effect=UpstreamStatusError("upstream 403", status_code=403))
            response = client.get("/api/hlsProxy", params={"url": "http://cdn/index.m3u8"})
        assert response.status_code == 403
        assert response.json() == {"error": "upstream 403"}

    def test_static_hls_mount(self, client):
        proxy_dir = os.path.join(settings.HLS_ROOT, "px_apitest")
        os.makedirs(proxy_dir, exist_ok=True)
        try:
            with open(os.path.join(proxy_dir, "proxied.m3u8"), "w") as f:
                f.write(EMPTY_MANIFEST)
            response = client.get("/hls/px_apitest/proxied.m3u8")
            assert response.status_code == 200
            assert response.text == EMPTY_MANIFEST
        finally:
            shutil.rmtree(proxy_dir, ignore_errors=True)

    def test_health(self, client, mock_ingestor, mock_remux_manager):
        with patch('api.get_ffmpeg_version', return_value="ffmpeg version 6.1.1"):
            response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["ffmpeg"] == "ffmpeg version 6.1.1"
        assert data["active_sessions"] == 0
        assert data["cached_playlists"] == 0


class TestProxyEndpoint:
    """Test the byte passthrough against a mocked upstream"""

    @pytest.fixture
    def client(self):
        return TestClient(app)

    def use_upstream(self, tmp_path, handler):
        upstream = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return patch('api.hls_publisher', HLSPublisher(hls_root=str(tmp_path), http_client=upstream))

    def test_proxy_requires_url(self, client):
        response = client.get("/proxy")
        assert response.status_code == 400

    def test_proxy_passthrough(self, client, tmp_path):
        def handler(request):
            return httpx.Response(200, content=b"\x47" * 188, headers={"content-type": "video/mp2t"})

        with self.use_upstream(tmp_path, handler):
            response = client.get("/proxy", params={"url": "http://cdn/seg1.ts"})
        assert response.status_code == 200
        assert response.content == b"\x47" * 188
        assert response.headers["content-type"] == "video/mp2t"

    def test_proxy_decodes_gzip_upstream(self, client, tmp_path):
        manifest = b"#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:6\n#EXTINF:6.0,\nseg0.ts\n"

        def handler(request):
            return httpx.Response(
                200,
                headers={"content-type": "application/vnd.apple.mpegurl", "content-encoding": "gzip"},
                stream=httpx.ByteStream(gzip.compress(manifest))
            )

        with self.use_upstream(tmp_path, handler):
            response = client.get("/proxy", params={"url": "http://cdn/variant.m3u8"})
        assert response.status_code == 200
        assert response.content == manifest
        assert response.headers["content-type"] == "application/vnd.apple.mpegurl"

    def test_proxy_upstream_status(self, client, tmp_path):
        with self.use_upstream(tmp_path, lambda request: httpx.Response(404)):
            response = client.get("/proxy", params={"url": "http://cdn/seg1.ts"})
        assert response.status_code == 404
        assert response.text == "Upstream error"

    def test_proxy_timeout(self, client, tmp_path):
        def handler(request):
            raise httpx.ConnectTimeout("too slow")

        with self.use_upstream(tmp_path, handler):
            response = client.get("/proxy", params={"url": "http://cdn/seg1.ts"})
        assert response.status_code == 504
        assert response.text == "timeout"
