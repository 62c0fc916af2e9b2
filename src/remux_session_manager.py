"""
Remux Session Manager.

Owns one ffmpeg process per viewing session, publishing a rolling HLS
manifest into a per-session directory:
- Resilient input flags (reconnect, discontinuity tolerant, subtitle/data dropped)
- Video passthrough unless interlaced or an unsupported codec forces H.264
- Audio always normalised to AAC stereo 48 kHz
- Live sessions fall back to the next candidate URL when ffmpeg exits with the
  retry status, writing into the same directory under the same manifest name
"""

import asyncio
import logging
import os
import shutil
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from config import settings
from errors import ProcessFailure, ToolMissing
from hls_publisher import EMPTY_MANIFEST, MANIFEST_NAME, PROVISIONAL_MANIFEST_NAME
from media_prober import MediaProber
from source_resolver import SourceResolver, plan_candidates

logger = logging.getLogger(__name__)

SEGMENT_TEMPLATE = "out%d.ts"


class SessionState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    RETRYING = "retrying"
    STOPPED = "stopped"


def build_remux_command(
    ffmpeg_path: str,
    url: str,
    session_dir: str,
    transcode_video: bool = False,
    segment_duration: int = settings.HLS_SEGMENT_DURATION,
    list_size: int = settings.HLS_LIST_SIZE,
) -> List[str]:
    """Build the ffmpeg command that remuxes one candidate into rolling HLS."""
    headers = settings.upstream_headers()
    user_agent = headers.pop("User-Agent")

    cmd = [ffmpeg_path, "-hide_banner"]

    # Input: identity and reconnection options must precede -i
    cmd.extend([
        "-user_agent", user_agent,
        "-headers", "".join(f"{key}: {value}\r\n" for key, value in headers.items()),
        "-rw_timeout", "30000000",
        "-reconnect", "1",
        "-reconnect_streamed", "1",
        "-reconnect_on_network_error", "1",
        "-reconnect_delay_max", "4",
        "-analyzeduration", "6000000",
        "-probesize", "8000000",
        "-ignore_unknown",
        "-fflags", "+igndts+genpts+discardcorrupt+nobuffer",
        "-flags", "low_delay",
    ])
    cmd.extend(["-i", url])

    # First video track and optional first audio track only
    cmd.extend(["-sn", "-dn", "-map", "0:v:0", "-map", "0:a:0?"])

    # Audio is always re-encoded for player compatibility
    cmd.extend(["-c:a", "aac", "-ac", "2", "-ar", "48000", "-b:a", "128k"])

    if transcode_video:
        cmd.extend([
            "-vf", "yadif=1:-1:0",
            "-c:v", "libx264",
            "-preset", "veryfast",
            "-tune", "zerolatency",
            "-crf", "23",
            "-g", "50",
            "-keyint_min", "25",
            "-sc_threshold", "0",
        ])
    else:
        cmd.extend(["-c:v", "copy"])

    # Timestamp handling for upstream clock jumps
    cmd.extend([
        "-copyts", "-start_at_zero",
        "-avoid_negative_ts", "make_zero",
        "-max_muxing_queue_size", "4096",
        "-mpegts_flags", "+initial_discontinuity",
        "-muxdelay", "0", "-muxpreload", "0",
    ])

    # Rolling HLS output
    cmd.extend([
        "-f", "hls",
        "-hls_time", str(segment_duration),
        "-hls_list_size", str(list_size),
        "-hls_flags", "delete_segments+append_list+split_by_time+independent_segments",
        "-hls_segment_type", "mpegts",
        "-start_number", "0",
        "-hls_allow_cache", "0",
        "-hls_segment_filename", os.path.join(session_dir, SEGMENT_TEMPLATE),
        os.path.join(session_dir, MANIFEST_NAME),
    ])
    return cmd


@dataclass
class RemuxSession:
    """One viewing session: a cursor over an immutable candidate list."""
    session_id: str
    session_dir: str
    candidates: Tuple[str, ...]
    candidate_index: int = 0
    is_vod: bool = False
    interlaced: bool = False
    force_video_transcode: bool = False
    state: SessionState = SessionState.STARTING
    process: Optional[asyncio.subprocess.Process] = None
    attempts: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_failure: Optional[ProcessFailure] = None

    @property
    def current_url(self) -> str:
        return self.candidates[self.candidate_index]

    @property
    def manifest_url(self) -> str:
        return f"/hls-live/{self.session_id}/{MANIFEST_NAME}"

    def has_untried_candidates(self) -> bool:
        return self.candidate_index < len(self.candidates) - 1

    def should_retry(self, exit_code: Optional[int], retry_exit_code: int) -> bool:
        # VOD candidates are not interchangeable mirrors
        return (
            not self.is_vod
            and exit_code == retry_exit_code
            and self.has_untried_candidates()
        )

    def advance(self) -> str:
        self.candidate_index += 1
        return self.current_url

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "kind": "vod" if self.is_vod else "live",
            "current_url": self.current_url,
            "candidate_index": self.candidate_index,
            "candidate_count": len(self.candidates),
            "interlaced": self.interlaced,
            "transcoding_video": self.force_video_transcode,
            "attempts": self.attempts,
            "last_exit_code": self.last_failure.exit_code if self.last_failure else None,
            "started_at": self.started_at.isoformat(),
            "ffmpeg_pid": self.process.pid if self.process else None,
            "manifest_url": self.manifest_url,
        }


class RemuxSessionManager:
    """
    Registry of active remux sessions, keyed by session id.

    The registry is only mutated here, between suspension points, so request
    handlers and supervisors never need a lock.
    """

    # Patterns to skip in ffmpeg output (progress and reconnection noise)
    SKIP_LOG_PATTERNS = [
        'frame=',
        'fps=',
        'bitrate=',
        'speed=',
        'resumed reading',
        "opening '",
        'muxing overhead',
    ]

    def __init__(
        self,
        hls_root: Optional[str] = None,
        resolver: Optional[SourceResolver] = None,
        prober: Optional[MediaProber] = None,
        ffmpeg_path: Optional[str] = None,
    ):
        self.hls_root = hls_root or settings.HLS_ROOT
        self.ffmpeg_path = ffmpeg_path if ffmpeg_path is not None else shutil.which(settings.FFMPEG_BINARY)
        self.resolver = resolver or SourceResolver()
        self.prober = prober or MediaProber(self.ffmpeg_path)
        self.retry_exit_code = settings.REMUX_RETRY_EXIT_CODE
        self.cleanup_grace = settings.SESSION_CLEANUP_GRACE
        self.sessions: Dict[str, RemuxSession] = {}
        self._supervisors: Dict[str, asyncio.Task] = {}
        self._background_tasks = set()

        os.makedirs(self.hls_root, exist_ok=True)
        logger.info(f"RemuxSessionManager initialized with HLS root: {self.hls_root}")

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    async def start_session(self, url: str, vod_hint: Optional[str] = None) -> RemuxSession:
        """Resolve, probe and spawn; returns as soon as ffmpeg is running."""
        if not self.ffmpeg_path:
            raise ToolMissing("ffmpeg not found")

        session_id = uuid.uuid4().hex[:12]
        session_dir = os.path.join(self.hls_root, session_id)
        self._prepare_directory(session_dir)

        try:
            plan = plan_candidates(url, vod_hint)
            picked, index = await self.resolver.choose(plan)

            logger.info(f"[REMUX {session_id}] Probing {picked}")
            probe = await self.prober.probe(picked)
            logger.info(
                f"[REMUX {session_id}] interlaced={probe.interlaced} "
                f"video={probe.codecs.video or 'unknown'} audio={probe.codecs.audio or 'unknown'} "
                f"transcode_audio={probe.codecs.needs_audio_transcode} "
                f"transcode_video={probe.force_video_transcode}")
        except Exception:
            await self._remove_directory(session_dir)
            raise

        session = RemuxSession(
            session_id=session_id,
            session_dir=session_dir,
            candidates=plan.candidates,
            candidate_index=index,
            is_vod=plan.is_vod,
            interlaced=probe.interlaced,
            force_video_transcode=probe.force_video_transcode,
        )
        self.sessions[session_id] = session

        try:
            await self._spawn(session)
        except (FileNotFoundError, PermissionError) as e:
            self._finish(session)
            await self._remove_directory(session_dir)
            raise ToolMissing(f"ffmpeg could not be started: {e}")

        if session.state != SessionState.STOPPED:
            self._supervisors[session_id] = asyncio.create_task(self._supervise(session))
        return session

    async def stop_session(self, session_id: str) -> bool:
        """Stop a session. Unknown or already stopped ids are not an error."""
        session = self.sessions.get(session_id)
        if session is None:
            logger.debug(f"Stop requested for unknown session {session_id}")
            return False

        self._finish(session)
        self._kill(session.process)
        self._spawn_background(self._remove_directory(session.session_dir))
        logger.info(f"[REMUX {session_id}] Stopped by request")
        return True

    async def reset(self) -> int:
        """Kill every session and empty the HLS root. Returns sessions stopped."""
        stopped = 0
        for session in list(self.sessions.values()):
            self._finish(session)
            self._kill(session.process)
            stopped += 1

        await asyncio.to_thread(self._wipe_root)
        logger.info(f"Reset stopped {stopped} session(s)")
        return stopped

    async def shutdown(self):
        """Stop all sessions at process exit."""
        logger.info("Shutting down RemuxSessionManager...")
        processes = [s.process for s in self.sessions.values() if s.process]
        await self.reset()
        for process in processes:
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning(f"ffmpeg PID {process.pid} did not exit after kill")

        pending = list(self._background_tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self.resolver.close()
        logger.info("RemuxSessionManager shutdown complete")

    def get_session(self, session_id: str) -> Optional[RemuxSession]:
        return self.sessions.get(session_id)

    def list_sessions(self) -> List[dict]:
        return [session.to_dict() for session in self.sessions.values()]

    # ------------------------------------------------------------------
    # Process handling
    # ------------------------------------------------------------------

    async def _launch_process(self, cmd: List[str]) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE
        )

    async def _spawn(self, session: RemuxSession):
        """Start ffmpeg on the session's current candidate."""
        os.makedirs(session.session_dir, exist_ok=True)
        cmd = build_remux_command(
            self.ffmpeg_path,
            session.current_url,
            session.session_dir,
            transcode_video=session.force_video_transcode,
        )
        logger.info(
            f"[REMUX {session.session_id}] Candidate {session.candidate_index + 1}/{len(session.candidates)}: "
            f"{' '.join(cmd)}")

        process = await self._launch_process(cmd)
        session.process = process
        session.attempts += 1

        if session.state == SessionState.STOPPED:
            # Stopped while ffmpeg was starting
            self._kill(process)
            return

        session.state = SessionState.RUNNING
        logger.info(f"[REMUX {session.session_id}] ffmpeg started with PID {process.pid}")
        if process.stderr is not None:
            self._spawn_background(self._log_stderr(session, process))

    async def _supervise(self, session: RemuxSession):
        """Watch ffmpeg exits and drive retry or teardown."""
        sid = session.session_id
        try:
            while True:
                exit_code = await session.process.wait()
                if session.state == SessionState.STOPPED:
                    return

                logger.info(f"[FFMPEG {sid}] Exited with code {exit_code}")
                if exit_code != 0:
                    session.last_failure = ProcessFailure(sid, exit_code)

                if session.should_retry(exit_code, self.retry_exit_code):
                    session.state = SessionState.RETRYING
                    next_url = session.advance()
                    logger.info(f"[REMUX {sid}] Trying fallback URL: {next_url}")
                    try:
                        await self._spawn(session)
                    except (FileNotFoundError, PermissionError) as e:
                        logger.error(f"[REMUX {sid}] Could not restart ffmpeg: {e}")
                        self._finish(session)
                        await self._remove_directory(session.session_dir)
                        return
                    continue

                if exit_code == self.retry_exit_code and not session.is_vod:
                    logger.error(f"[REMUX {sid}] No more fallbacks available")
                    self._finish(session)
                    await self._remove_directory(session.session_dir)
                    return

                if exit_code == self.retry_exit_code:
                    logger.error(f"[REMUX {sid}] VOD error, no fallback is tried for VOD")

                # Leave the directory for an in-flight manifest read
                self._finish(session)
                self._spawn_background(
                    self._remove_directory_later(session.session_dir, self.cleanup_grace))
                return
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error supervising session {sid}: {e}")

    async def _log_stderr(self, session: RemuxSession, process: asyncio.subprocess.Process):
        """Drain ffmpeg stderr, logging errors only."""
        sid = session.session_id
        buf = b""
        try:
            while True:
                chunk = await process.stderr.read(4096)
                if not chunk:
                    break

                buf += chunk.replace(b"\r", b"\n")
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    line_str = line.decode('utf-8', errors='ignore').strip()
                    if not line_str:
                        continue

                    line_lower = line_str.lower()
                    if '403' in line_lower or 'forbidden' in line_lower:
                        logger.error(f"[FFMPEG {sid}] 403 detected: {line_str}")
                        continue

                    is_problem = any(word in line_lower for word in ('error', 'warning', 'failed'))
                    if not is_problem or any(pattern in line_lower for pattern in self.SKIP_LOG_PATTERNS):
                        continue
                    logger.warning(f"[FFMPEG {sid}] {line_str}")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"Error reading ffmpeg stderr for {sid}: {e}")

    @staticmethod
    def _kill(process: Optional[asyncio.subprocess.Process]):
        if process and process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass  # Process already dead

    def _finish(self, session: RemuxSession):
        session.state = SessionState.STOPPED
        self.sessions.pop(session.session_id, None)
        self._supervisors.pop(session.session_id, None)

    # ------------------------------------------------------------------
    # Filesystem
    # ------------------------------------------------------------------

    @staticmethod
    def _prepare_directory(session_dir: str):
        os.makedirs(session_dir, exist_ok=True)
        try:
            # Placeholder so the first poll already sees a valid manifest
            with open(os.path.join(session_dir, PROVISIONAL_MANIFEST_NAME), 'w', encoding='utf-8') as f:
                f.write(EMPTY_MANIFEST)
        except OSError as e:
            logger.warning(f"Failed to write provisional manifest in {session_dir}: {e}")

    async def _remove_directory(self, path: str):
        try:
            await asyncio.to_thread(shutil.rmtree, path)
            logger.info(f"Cleaned up session directory: {path}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove session directory {path}: {e}")

    async def _remove_directory_later(self, path: str, delay: float):
        await asyncio.sleep(delay)
        await self._remove_directory(path)

    def _wipe_root(self):
        try:
            entries = os.listdir(self.hls_root)
        except OSError as e:
            logger.warning(f"Cannot list HLS root {self.hls_root}: {e}")
            return
        for name in entries:
            path = os.path.join(self.hls_root, name)
            try:
                if os.path.isdir(path):
                    shutil.rmtree(path)
                else:
                    os.remove(path)
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")

    def _spawn_background(self, coro):
        """Fire-and-forget; failures are only logged."""
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_done)

    def _background_done(self, task: asyncio.Task):
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"Background task failed: {task.exception()}")
