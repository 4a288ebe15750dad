"""
FlashTune - Audio Pipeline

Runs the two external processes behind a download:

    yt-dlp (best audio → stdout)  ──pump──▶  ffmpeg (stdin → MP3 on stdout)

The pump copies bytes with ``drain()`` backpressure, so a slow HTTP client
slows ffmpeg, which slows the pump, which stops reading from yt-dlp.

When yt-dlp exits the pump decides how to close ffmpeg's input:

- ``InputClose.END``      yt-dlp exited 0: flush and close stdin so ffmpeg
                          can finish the file.
- ``InputClose.DESTROY``  yt-dlp failed: abort stdin immediately, dropping
                          anything still buffered.

Both stderr streams are collected for error reporting.  Nothing here talks
HTTP; ``services/responder.py`` turns a pipeline into a response.
"""

import asyncio
from enum import Enum

from loguru import logger

from flashtune import config
from flashtune.exceptions import PipelineError, PipelineErrorKind

EXTRACTOR_ARGS = [
    "-f",
    "bestaudio/best",
    "--no-playlist",
    "--no-progress",
    "-o",
    "-",
]

TRANSCODER_ARGS = [
    "-hide_banner",
    "-loglevel",
    "error",
    "-i",
    "pipe:0",
    "-vn",
    "-codec:a",
    "libmp3lame",
    "-q:a",
    "0",
    "-f",
    "mp3",
    "pipe:1",
]

_PUMP_CHUNK_SIZE = 65536


class InputClose(str, Enum):
    END = "end"
    DESTROY = "destroy"


def _terminate(process: asyncio.subprocess.Process | None) -> None:
    """Send the termination signal unless the process has already exited."""
    if process is None or process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        pass


# ---------------------------------------------------------------------------
# Running pipeline
# ---------------------------------------------------------------------------
class AudioPipeline:
    """Live handles for a running extractor → transcoder pair."""

    def __init__(
        self,
        source_url: str,
        extractor: asyncio.subprocess.Process,
        transcoder: asyncio.subprocess.Process,
        extractor_name: str = "yt-dlp",
        transcoder_name: str = "ffmpeg",
    ):
        self.source_url = source_url
        self.extractor = extractor
        self.transcoder = transcoder
        self.extractor_name = extractor_name
        self.transcoder_name = transcoder_name

        self.extractor_stderr = ""
        self.transcoder_stderr = ""
        self.input_close: InputClose | None = None
        self.terminated = False
        self.extractor_abandoned = False

        self._input_open = True
        self._pump_task = asyncio.create_task(self._pump())
        self._stderr_tasks = [
            asyncio.create_task(self._collect_stderr(extractor, "extractor")),
            asyncio.create_task(self._collect_stderr(transcoder, "transcoder")),
        ]

    # ------------------------------------------------------------------
    # Public handles
    # ------------------------------------------------------------------
    @property
    def stdout(self) -> asyncio.StreamReader:
        """Transcoded MP3 bytes."""
        if self.transcoder.stdout is None:
            raise RuntimeError("transcoder was started without a stdout pipe")
        return self.transcoder.stdout

    @property
    def extractor_exit_code(self) -> int | None:
        return self.extractor.returncode

    @property
    def transcoder_exit_code(self) -> int | None:
        return self.transcoder.returncode

    async def wait(self) -> tuple[int, int]:
        """Wait for both processes and all helper tasks; return the exit codes."""
        await asyncio.gather(self._pump_task, *self._stderr_tasks)
        extractor_code = await self.extractor.wait()
        transcoder_code = await self.transcoder.wait()
        return extractor_code, transcoder_code

    def kill(self) -> None:
        """Terminate both processes.  Safe to call more than once."""
        if self.terminated:
            return
        self.terminated = True
        _terminate(self.extractor)
        _terminate(self.transcoder)
        self._close_input(InputClose.DESTROY)

    def release_extractor(self) -> None:
        """
        Terminate the extractor once the transcoder's output has ended.

        Nothing downstream can use its bytes any more.  A no-op when the
        extractor has already exited.
        """
        if self.extractor.returncode is not None:
            return
        self.extractor_abandoned = True
        logger.debug("🔌 {} output ended, stopping {}", self.transcoder_name, self.extractor_name)
        _terminate(self.extractor)

    def failure(self) -> PipelineError | None:
        """
        Classify the finished pipeline.

        The extractor is checked first: when it fails the transcoder usually
        fails too, but only because its input was cut.  An extractor stopped
        by ``release_extractor()`` is not a failure of its own.
        """
        if not self.extractor_abandoned and self.extractor.returncode not in (None, 0):
            return PipelineError(
                PipelineErrorKind.EXTRACTOR_FAILED,
                self.extractor_stderr.strip() or f"{self.extractor_name} download failed",
                stderr=self.extractor_stderr,
                details={"exit_code": self.extractor.returncode},
            )
        if self.transcoder.returncode not in (None, 0):
            return PipelineError(
                PipelineErrorKind.TRANSCODER_FAILED,
                self.transcoder_stderr.strip()
                or f"{self.transcoder_name} transcoding failed",
                stderr=self.transcoder_stderr,
                details={"exit_code": self.transcoder.returncode},
            )
        return None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _close_input(self, mode: InputClose) -> None:
        stdin = self.transcoder.stdin
        if stdin is None or not self._input_open:
            return
        self._input_open = False
        self.input_close = mode
        if mode is InputClose.END:
            stdin.close()
        else:
            stdin.transport.abort()

    async def _pump(self) -> None:
        source = self.extractor.stdout
        sink = self.transcoder.stdin
        if source is None or sink is None:
            raise RuntimeError("pipeline processes were started without pipes")

        try:
            while True:
                chunk = await source.read(_PUMP_CHUNK_SIZE)
                if not chunk:
                    break
                if not self._input_open:
                    # Keep draining so the extractor never blocks on a full pipe
                    continue
                try:
                    sink.write(chunk)
                    await sink.drain()
                except ConnectionError:
                    logger.debug(
                        "🔌 {} stdin closed early for {}",
                        self.transcoder_name,
                        self.source_url,
                    )
                    self._input_open = False

            code = await self.extractor.wait()
            self._close_input(InputClose.END if code == 0 else InputClose.DESTROY)
        except Exception as e:
            logger.error("❌ Pipeline pump failed for {}: {}", self.source_url, e)
            self._close_input(InputClose.DESTROY)
            _terminate(self.extractor)

    async def _collect_stderr(
        self, process: asyncio.subprocess.Process, role: str
    ) -> None:
        stream = process.stderr
        if stream is None:
            return
        name = self.extractor_name if role == "extractor" else self.transcoder_name
        collected = bytearray()
        pending = b""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            collected.extend(chunk)
            text = collected.decode("utf-8", errors="replace")
            if role == "extractor":
                self.extractor_stderr = text
            else:
                self.transcoder_stderr = text

            *lines, pending = (pending + chunk).split(b"\n")
            for line in lines:
                self._log_stderr_line(name, line)
        self._log_stderr_line(name, pending)

    def _log_stderr_line(self, name: str, line: bytes) -> None:
        text = line.decode("utf-8", errors="replace").rstrip()
        if text:
            logger.warning("⚠️  {} stderr: {}", name, text)


# ---------------------------------------------------------------------------
# Spawning
# ---------------------------------------------------------------------------
async def _spawn(
    executable: str,
    args: list[str],
    not_found_kind: PipelineErrorKind,
    *,
    with_stdin: bool,
) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.PIPE if with_stdin else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise PipelineError(
            not_found_kind,
            f"{executable} executable not found on server PATH",
            details={"executable": executable, "error": str(e)},
        ) from e
    except OSError as e:
        raise PipelineError(
            PipelineErrorKind.UNEXPECTED_SPAWN_ERROR,
            f"Failed to start {executable}: {e}",
            details={"executable": executable, "error": str(e)},
        ) from e


async def start_pipeline(
    source_url: str,
    extractor_path: str | None = None,
    transcoder_path: str | None = None,
) -> AudioPipeline:
    """
    Spawn yt-dlp and ffmpeg for *source_url* and connect them.

    Returns as soon as both processes are running; the caller reads
    ``pipeline.stdout``.  Raises ``PipelineError`` when either executable
    cannot be started (the extractor is terminated if only the transcoder
    failed).
    """
    extractor_path = extractor_path or config.YTDLP_PATH
    transcoder_path = transcoder_path or config.FFMPEG_PATH

    extractor = await _spawn(
        extractor_path,
        [*EXTRACTOR_ARGS, "--", source_url],
        PipelineErrorKind.EXTRACTOR_NOT_FOUND,
        with_stdin=False,
    )
    try:
        transcoder = await _spawn(
            transcoder_path,
            TRANSCODER_ARGS,
            PipelineErrorKind.TRANSCODER_NOT_FOUND,
            with_stdin=True,
        )
    except PipelineError:
        _terminate(extractor)
        await extractor.wait()
        raise

    logger.info(
        "🎵 Pipeline started for {} (extractor pid={}, transcoder pid={})",
        source_url,
        extractor.pid,
        transcoder.pid,
    )
    return AudioPipeline(
        source_url,
        extractor,
        transcoder,
        extractor_name=extractor_path,
        transcoder_name=transcoder_path,
    )
