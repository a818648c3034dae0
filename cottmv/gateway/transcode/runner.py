"""FFmpeg / FFprobe process supervision.

The runner owns exactly one child process per call. Progress comes from FFmpeg's
`-progress pipe:1` stream on stdout; stderr is drained in parallel and only its
tail is kept for error messages. Children run in their own session so the whole
process group can be signalled on cancellation or timeout.
"""

import abc
import asyncio
import json
import os
import signal
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from cottmv.contracts import ProgressEvent, ProgressUpdate
from cottmv.gateway.transcode.keys import partial_path_for
from cottmv.gateway.transcode.profiles import OutputFormat, Quality, format_params, quality_params
from cottmv.gateway.transcode.progress import FFmpegProgressParser, compute_percent

ProgressCallback = Callable[[ProgressEvent], None]

BROWSER_VIDEO_CODECS = {"h264", "vp8", "vp9", "av1"}
BROWSER_AUDIO_CODECS = {"aac", "mp3", "vorbis", "opus"}
BROWSER_CONTAINERS = {"mp4", "webm", "m4v", "mov"}


class ProbeError(Exception):
    """ffprobe could not read the source (missing, corrupt, unsupported, timed out)."""


class TranscodeError(Exception):
    """FFmpeg failed. `stderr` holds the tail of its diagnostic output."""

    def __init__(self, message: str, stderr: str | None = None) -> None:
        super().__init__(message)
        self.stderr = stderr

    def __str__(self) -> str:
        base = super().__str__()
        if not self.stderr:
            return base
        return f"{base}\n{self.stderr}"


class TranscodeTimeout(TranscodeError):
    """The job exceeded its wall-clock budget and was killed."""


class TranscodeCancelled(TranscodeError):
    """The cancel token fired before the process finished."""


@dataclass(frozen=True)
class MediaInfo:
    duration: float
    width: int
    height: int
    video_codec: str
    audio_codec: str
    bitrate: int


@dataclass(frozen=True)
class TranscodeResult:
    output_path: Path
    size_bytes: int
    elapsed_seconds: float


def needs_transcoding(info: MediaInfo, path: Path) -> tuple[bool, str | None]:
    """Whether a browser can play the source as-is. Returns (needed, reason)."""
    if info.video_codec.lower() not in BROWSER_VIDEO_CODECS:
        return True, f"Video codec {info.video_codec!r} is not browser-compatible"
    if info.audio_codec != "none" and info.audio_codec.lower() not in BROWSER_AUDIO_CODECS:
        return True, f"Audio codec {info.audio_codec!r} is not browser-compatible"
    extension = path.suffix.lstrip(".").lower()
    if extension and extension not in BROWSER_CONTAINERS:
        return True, f"Container format {extension!r} may not be browser-compatible"
    return False, None


def _format_eta(elapsed: float, percent: float) -> str | None:
    if percent <= 0 or percent >= 100 or elapsed <= 0:
        return None
    return f"{round(elapsed * (100 - percent) / percent)}s"


def _discard(path: Path) -> None:
    with suppress(FileNotFoundError):
        path.unlink()


class TranscodeRunner(abc.ABC):
    """Probe and transcode contract the coordinator drives."""

    @abc.abstractmethod
    async def probe(self, path: Path) -> MediaInfo:
        """Return stream information for `path` or raise ProbeError."""

    @abc.abstractmethod
    async def transcode(
        self,
        input_path: Path,
        output_path: Path,
        quality: Quality,
        fmt: OutputFormat,
        on_progress: ProgressCallback,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> TranscodeResult:
        """Write exactly one file at `output_path`, or none on failure (raises TranscodeError)."""


class FFmpegRunner(TranscodeRunner):
    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        probe_timeout: float = 30.0,
        kill_grace: float = 5.0,
        loglevel: str = "error",
        stderr_tail_lines: int = 40,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.probe_timeout = probe_timeout
        self.kill_grace = kill_grace
        self.loglevel = loglevel
        self.stderr_tail_lines = stderr_tail_lines

    def build_probe_command(self, path: Path) -> list[str]:
        return [
            self.ffprobe_path,
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]

    def build_transcode_command(
        self, input_path: Path, output_path: Path, quality: Quality, fmt: OutputFormat
    ) -> list[str]:
        fp = format_params(fmt)
        cmd = [self.ffmpeg_path, "-hide_banner", "-nostdin", "-loglevel", self.loglevel, "-y"]
        cmd.extend(["-i", str(input_path)])
        cmd.extend(["-map", "0:v:0", "-map", "0:a:0?"])
        cmd.extend(["-c:v", fp.video_codec, "-c:a", fp.audio_codec, "-pix_fmt", "yuv420p"])

        qp = quality_params(quality)
        if qp is not None:
            w, h = qp.width, qp.height
            cmd.extend(
                [
                    "-vf",
                    f"scale={w}:{h}:force_original_aspect_ratio=decrease,pad={w}:{h}:(ow-iw)/2:(oh-ih)/2",
                    "-b:v",
                    qp.video_bitrate,
                    "-b:a",
                    qp.audio_bitrate,
                ]
            )

        cmd.extend(fp.extra_args)
        cmd.extend(["-f", fp.muxer, "-progress", "pipe:1", "-nostats"])
        cmd.append(str(output_path))
        return cmd

    async def check_installed(self) -> bool:
        try:
            process = await asyncio.create_subprocess_exec(
                self.ffmpeg_path,
                "-version",
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError:
            return False
        return await process.wait() == 0

    async def probe(self, path: Path) -> MediaInfo:
        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_probe_command(path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ProbeError(f"Failed to start ffprobe: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.probe_timeout)
        except TimeoutError:
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise ProbeError(f"ffprobe timed out after {self.probe_timeout}s on {path}") from None

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise ProbeError(f"ffprobe failed with code {process.returncode} on {path}: {detail}")

        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ProbeError(f"Failed to parse ffprobe output for {path}: {e}") from e

        streams = data.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), {})
        audio = next((s for s in streams if s.get("codec_type") == "audio"), {})
        fmt = data.get("format") or {}
        try:
            return MediaInfo(
                duration=float(fmt.get("duration") or 0),
                width=int(video.get("width") or 0),
                height=int(video.get("height") or 0),
                video_codec=video.get("codec_name", "none"),
                audio_codec=audio.get("codec_name", "none"),
                bitrate=int(fmt.get("bit_rate") or 0),
            )
        except (TypeError, ValueError) as e:
            raise ProbeError(f"Unexpected ffprobe output for {path}: {e}") from e

    async def transcode(
        self,
        input_path: Path,
        output_path: Path,
        quality: Quality,
        fmt: OutputFormat,
        on_progress: ProgressCallback,
        cancel_event: asyncio.Event | None = None,
        timeout: float | None = None,
    ) -> TranscodeResult:
        info = await self.probe(input_path)
        partial = partial_path_for(output_path)
        cmd = self.build_transcode_command(input_path, partial, quality, fmt)
        started = time.monotonic()

        logger.info(f"Starting ffmpeg: {input_path.name} -> {output_path.name} ({quality}, {fmt})")
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise TranscodeError(f"Failed to start ffmpeg: {e}") from e

        stderr_tail: deque[str] = deque(maxlen=self.stderr_tail_lines)
        parser = FFmpegProgressParser()

        def emit(percent: float) -> None:
            update = ProgressUpdate(
                percent=round(percent, 1),
                message=f"Transcoding... {percent:.0f}%",
                eta=_format_eta(time.monotonic() - started, percent),
            )
            try:
                on_progress(update)
            except Exception as e:
                logger.warning(f"Progress callback error: {e}")

        async def read_progress() -> None:
            assert process.stdout is not None
            async for raw in process.stdout:
                snapshot = parser.feed(raw.decode("utf-8", errors="replace"))
                if snapshot is None:
                    continue
                if snapshot.ended:
                    emit(100.0)
                elif snapshot.position_seconds is not None:
                    emit(compute_percent(snapshot.position_seconds, info.duration))

        async def read_stderr() -> None:
            assert process.stderr is not None
            async for raw in process.stderr:
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    stderr_tail.append(line)

        io_task = asyncio.gather(read_progress(), read_stderr(), process.wait())
        cancel_task = asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        waiting = {io_task} if cancel_task is None else {io_task, cancel_task}

        try:
            done, _ = await asyncio.wait(waiting, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            if io_task not in done:
                await self._terminate(process)
                await self._drain(io_task)
                _discard(partial)
                if cancel_task is not None and cancel_task in done:
                    raise TranscodeCancelled("Transcode cancelled", stderr=self._tail(stderr_tail))
                raise TranscodeTimeout(f"Transcode timed out after {timeout}s", stderr=self._tail(stderr_tail))
            try:
                io_task.result()
            except Exception as e:
                await self._terminate(process)
                _discard(partial)
                raise TranscodeError(f"Lost contact with ffmpeg: {e}", stderr=self._tail(stderr_tail)) from e
        except asyncio.CancelledError:
            await self._terminate(process)
            io_task.cancel()
            _discard(partial)
            raise
        finally:
            if cancel_task is not None:
                cancel_task.cancel()

        if process.returncode != 0:
            _discard(partial)
            raise TranscodeError(f"ffmpeg exited with code {process.returncode}", stderr=self._tail(stderr_tail))

        size = partial.stat().st_size if partial.exists() else 0
        if size == 0:
            _discard(partial)
            raise TranscodeError("ffmpeg produced no output", stderr=self._tail(stderr_tail))

        partial.replace(output_path)
        elapsed = time.monotonic() - started
        logger.info(f"ffmpeg finished {output_path.name}: {size} bytes in {elapsed:.1f}s")
        return TranscodeResult(output_path=output_path, size_bytes=size, elapsed_seconds=elapsed)

    @staticmethod
    def _tail(lines: deque[str]) -> str | None:
        return "\n".join(lines) if lines else None

    async def _drain(self, io_task: asyncio.Future) -> None:
        try:
            await asyncio.wait_for(io_task, timeout=self.kill_grace)
        except TimeoutError:
            io_task.cancel()
        except Exception as e:
            logger.debug(f"Ignoring reader error after termination: {e}")

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """SIGTERM the process group, wait `kill_grace`, then SIGKILL."""
        if process.returncode is not None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
            return
        except TimeoutError:
            logger.warning(f"ffmpeg (pid {process.pid}) ignored SIGTERM, killing")
        with suppress(ProcessLookupError):
            os.killpg(process.pid, signal.SIGKILL)
        await process.wait()
