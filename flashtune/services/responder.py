"""
FlashTune - Download Responder

Turns an ``AudioPipeline`` into exactly one HTTP response.

The status line is not committed until ffmpeg produces its first byte.  Up
to that point any failure is reported as JSON ``{"error": ...}`` with 422
(the source could not be downloaded / transcoded) or 500 (the server is
missing a tool).  Once bytes are flowing the response is an ``audio/mpeg``
stream and later failures are only logged.

A client disconnect at any point terminates both processes; after that
every failure path is a no-op.

States::

    idle → processes-spawned → streaming            → done
                             │                      → failed-after-stream-logged
                             → failed-before-stream
                             → client-disconnected  → disconnected-cleanup
"""

import asyncio
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from loguru import logger
from starlette.types import Receive, Scope, Send

from flashtune import config
from flashtune.exceptions import PipelineError, PipelineErrorKind
from flashtune.services.pipeline import AudioPipeline, start_pipeline

AUDIO_MEDIA_TYPE = "audio/mpeg"

# Non-standard "client closed request"; nobody is listening for it anyway
CLIENT_CLOSED_STATUS = 499


class StreamState(str, Enum):
    IDLE = "idle"
    SPAWNED = "processes-spawned"
    STREAMING = "streaming"
    FAILED_BEFORE_STREAM = "failed-before-stream"
    CLIENT_DISCONNECTED = "client-disconnected"
    DONE = "done"
    FAILED_AFTER_STREAM = "failed-after-stream-logged"
    DISCONNECTED_CLEANUP = "disconnected-cleanup"


def error_response(error: PipelineError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content={"error": error.message})


class AudioStreamResponse(StreamingResponse):
    """StreamingResponse that reports an unfinished stream as a disconnect."""

    def __init__(self, responder: "DownloadResponder", pipeline: AudioPipeline, first_chunk: bytes):
        super().__init__(
            responder.iter_audio(pipeline, first_chunk),
            media_type=AUDIO_MEDIA_TYPE,
            headers={"Cache-Control": "no-store"},
        )
        self.responder = responder

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            if not self.responder.finished:
                self.responder.handle_disconnect()


class DownloadResponder:
    """One download request: spawns the pipeline and builds the response."""

    def __init__(
        self,
        source_url: str,
        request: Request | None = None,
        *,
        start: Callable[[str], Awaitable[AudioPipeline]] = start_pipeline,
        chunk_size: int | None = None,
        poll_interval: float | None = None,
    ):
        self.source_url = source_url
        self.request = request
        self._start = start
        self.chunk_size = chunk_size or config.STREAM_CHUNK_SIZE
        self.poll_interval = poll_interval or config.DISCONNECT_POLL_INTERVAL

        self.state = StreamState.IDLE
        self.pipeline: AudioPipeline | None = None
        self.stream_started = False
        self.client_disconnected = False
        self.finished = False
        self.bytes_sent = 0

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def respond(self) -> Response:
        try:
            pipeline = await self._start(self.source_url)
        except PipelineError as e:
            return self._fail_before_stream(e)
        self.pipeline = pipeline
        self.state = StreamState.SPAWNED

        try:
            first = await self._first_chunk(pipeline)
            if not first and not self.client_disconnected:
                # ffmpeg is done without output; yt-dlp has no reader left
                pipeline.release_extractor()
                await self._wait_unless_disconnected(pipeline)
        except asyncio.CancelledError:
            self.handle_disconnect()
            raise
        if self.client_disconnected:
            return Response(status_code=CLIENT_CLOSED_STATUS)

        if not first:
            error = pipeline.failure() or PipelineError(
                PipelineErrorKind.TRANSCODER_FAILED,
                "No audio was produced for this source",
            )
            return self._fail_before_stream(error)

        self.stream_started = True
        self.state = StreamState.STREAMING
        logger.info("📡 Streaming audio for {}", self.source_url)
        return AudioStreamResponse(self, pipeline, first)

    async def iter_audio(self, pipeline: AudioPipeline, first_chunk: bytes) -> AsyncIterator[bytes]:
        """Yield the already-read first chunk, then the rest of ffmpeg's stdout."""
        try:
            self.bytes_sent += len(first_chunk)
            yield first_chunk
            while True:
                chunk = await pipeline.stdout.read(self.chunk_size)
                if not chunk:
                    break
                self.bytes_sent += len(chunk)
                yield chunk
        except (GeneratorExit, asyncio.CancelledError):
            self.handle_disconnect()
            raise

        await pipeline.wait()
        self._finish(pipeline)

    # ------------------------------------------------------------------
    # Failure / disconnect handling
    # ------------------------------------------------------------------
    def handle_disconnect(self) -> None:
        """Terminate the pipeline for a client that went away.  Idempotent."""
        if self.client_disconnected or self.finished:
            return
        self.client_disconnected = True
        self.state = StreamState.CLIENT_DISCONNECTED
        if self.pipeline is not None:
            self.pipeline.kill()
        self.state = StreamState.DISCONNECTED_CLEANUP
        logger.info(
            "🔌 Client disconnected, pipeline terminated for {} ({} bytes sent)",
            self.source_url,
            self.bytes_sent,
        )

    def _fail_before_stream(self, error: PipelineError) -> JSONResponse:
        self.state = StreamState.FAILED_BEFORE_STREAM
        self.finished = True
        log = logger.error if error.is_environment_error else logger.warning
        log(
            "❌ Download failed for {} ({}): {}",
            self.source_url,
            error.kind.value,
            error.message,
        )
        return error_response(error)

    def _finish(self, pipeline: AudioPipeline) -> None:
        if self.client_disconnected:
            return
        self.finished = True
        error = pipeline.failure()
        if error is not None:
            self.state = StreamState.FAILED_AFTER_STREAM
            logger.warning(
                "⚠️  {} after streaming started for {}: {}",
                error.kind.value,
                self.source_url,
                error.message,
            )
            return
        self.state = StreamState.DONE
        logger.success(
            "✅ Download streamed for {} ({} bytes)", self.source_url, self.bytes_sent
        )

    # ------------------------------------------------------------------
    # Racing the pipeline against a disconnect
    # ------------------------------------------------------------------
    async def _race_disconnect(self, work: asyncio.Future) -> bool:
        """
        Wait for *work* unless the client goes away first.

        Returns True when *work* finished.  On a disconnect the pipeline is
        killed and False is returned; *work* is left running.
        """
        request = self.request
        if request is None:
            await work
            return True

        watcher = asyncio.ensure_future(self._watch_disconnect(request))
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            watcher.cancel()

        if work.done():
            return True
        self.handle_disconnect()
        return False

    async def _first_chunk(self, pipeline: AudioPipeline) -> bytes:
        read = asyncio.ensure_future(pipeline.stdout.read(self.chunk_size))
        try:
            finished = await self._race_disconnect(read)
        except asyncio.CancelledError:
            read.cancel()
            raise
        if finished:
            return read.result()
        read.cancel()
        return b""

    async def _wait_unless_disconnected(self, pipeline: AudioPipeline) -> None:
        # Not cancelled on disconnect: the killed processes let it finish
        wait = asyncio.ensure_future(pipeline.wait())
        if await self._race_disconnect(wait):
            wait.result()

    async def _watch_disconnect(self, request: Request) -> None:
        while not await request.is_disconnected():
            await asyncio.sleep(self.poll_interval)
