"""
Chunk Store

Stages raw chunk bytes in a temporary directory and converts audio
chunks to the canonical PCM encoding used for transcription.
"""

import asyncio
import re
from pathlib import Path
from typing import Iterable
from uuid import uuid4

import structlog

from casecoach.config import settings

logger = structlog.get_logger()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class ChunkStorageError(Exception):
    """Raised when chunk bytes cannot be written to disk."""


class FFmpegError(Exception):
    """Raised when an ffmpeg invocation fails."""


async def run_ffmpeg(binary: str, *args: str) -> None:
    """Run ffmpeg with the given arguments, raising FFmpegError on failure."""
    try:
        process = await asyncio.create_subprocess_exec(
            binary,
            "-v",
            "error",
            "-y",
            *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise FFmpegError(f"ffmpeg not runnable: {e}") from e

    _, stderr = await process.communicate()
    if process.returncode != 0:
        message = stderr.decode(errors="replace").strip() or f"exit code {process.returncode}"
        raise FFmpegError(message)


class ChunkStore:
    """
    Stages chunk bytes on arrival.

    Every staged file name carries the (session, question, chunk) triple
    plus a unique token, so two takes of the same question never share a
    file.
    """

    def __init__(
        self,
        temp_dir: Path | None = None,
        ffmpeg_binary: str | None = None,
        sample_rate: int | None = None,
        channels: int | None = None,
        codec: str | None = None,
    ) -> None:
        self.temp_dir = Path(temp_dir or settings.chunk_temp_dir)
        self.ffmpeg_binary = ffmpeg_binary or settings.ffmpeg_binary
        self.sample_rate = sample_rate or settings.transcode_sample_rate
        self.channels = channels or settings.transcode_channels
        self.codec = codec or settings.transcode_codec

    def _chunk_path(
        self,
        session_id: str,
        question_index: int,
        chunk_index: int,
        suffix: str,
    ) -> Path:
        safe_session = _UNSAFE_CHARS.sub("_", session_id)
        token = uuid4().hex[:8]
        name = f"{safe_session}-q{question_index}-chunk{chunk_index}-{token}{suffix}"
        return self.temp_dir / name

    async def _write(self, path: Path, data: bytes) -> None:
        try:
            await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(path.write_bytes, data)
        except OSError as e:
            raise ChunkStorageError(f"Failed to stage chunk at {path}: {e}") from e

    async def stage_audio(
        self,
        session_id: str,
        question_index: int,
        chunk_index: int,
        data: bytes,
    ) -> Path:
        """
        Stage an audio chunk and transcode it to mono PCM WAV.

        Browser MediaRecorder chunks arrive as WebM. If the transcode fails
        the original file is returned instead; downstream stages accept
        either encoding.
        """
        source = self._chunk_path(session_id, question_index, chunk_index, ".webm")
        await self._write(source, data)

        target = source.with_suffix(".wav")
        try:
            await run_ffmpeg(
                self.ffmpeg_binary,
                "-i",
                str(source),
                "-vn",
                "-ac",
                str(self.channels),
                "-ar",
                str(self.sample_rate),
                "-acodec",
                self.codec,
                str(target),
            )
        except FFmpegError as e:
            logger.warning(
                "Audio transcode failed, keeping original encoding",
                session_id=session_id,
                question_index=question_index,
                chunk_index=chunk_index,
                error=str(e),
            )
            await self.discard([target])
            return source

        await self.discard([source])
        return target

    async def stage_video(
        self,
        session_id: str,
        question_index: int,
        chunk_index: int,
        data: bytes,
    ) -> Path:
        """Stage a video chunk verbatim."""
        path = self._chunk_path(session_id, question_index, chunk_index, ".mp4")
        await self._write(path, data)
        return path

    async def discard(self, handles: Iterable[Path]) -> int:
        """
        Best-effort delete of staged files.

        Missing files and permission errors are logged, never raised, and
        do not stop the remaining deletions. Returns the number removed.
        """
        removed = 0
        for handle in handles:
            try:
                await asyncio.to_thread(Path(handle).unlink)
                removed += 1
            except FileNotFoundError:
                logger.debug("Chunk already removed", path=str(handle))
            except OSError as e:
                logger.warning("Failed to discard chunk", path=str(handle), error=str(e))
        return removed
