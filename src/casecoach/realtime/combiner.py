"""
Chunk Combiner

Turns the ordered chunk handles of a question into a single input per
media type for the one-shot processing stage.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Sequence
from uuid import uuid4

import numpy as np
import soundfile as sf
import structlog

from casecoach.config import settings
from .chunk_store import FFmpegError, run_ffmpeg
from .registry import ChunkSnapshot

logger = structlog.get_logger()


class CombineStrategy(str, Enum):
    """How multiple audio chunks become one input."""

    CONCAT = "concat"  # every chunk, in chunk index order
    LAST = "last"  # legacy: only the highest chunk index


class ChunkCombineError(Exception):
    """Raised when audio chunks cannot be concatenated."""


@dataclass
class CombinedMedia:
    """Single audio/video inputs for a processing run."""

    audio: Path | None = None
    video: Path | None = None

    # Files produced by combination, owned by the run
    derived: list[Path] = field(default_factory=list)


class ChunkCombiner:
    """Combines staged chunks for single-shot transcription and analysis."""

    def __init__(
        self,
        temp_dir: Path | None = None,
        strategy: CombineStrategy | str | None = None,
        ffmpeg_binary: str | None = None,
        sample_rate: int | None = None,
    ) -> None:
        self.temp_dir = Path(temp_dir or settings.chunk_temp_dir)
        self.strategy = CombineStrategy(strategy or settings.audio_combine_strategy)
        self.ffmpeg_binary = ffmpeg_binary or settings.ffmpeg_binary
        self.sample_rate = sample_rate or settings.transcode_sample_rate

    async def combine_audio(self, handles: Sequence[Path]) -> Path | None:
        """
        Produce one audio input from handles ordered by chunk index.

        Returns None when no audio is available and the handle itself when
        there is exactly one. Otherwise the result depends on the strategy.
        """
        if not handles:
            return None
        if len(handles) == 1:
            return handles[0]

        if self.strategy == CombineStrategy.LAST:
            logger.debug("Using last audio chunk", chunk_count=len(handles))
            return handles[-1]

        await asyncio.to_thread(self.temp_dir.mkdir, parents=True, exist_ok=True)
        output = self.temp_dir / f"combined-{uuid4().hex}.wav"

        if all(Path(h).suffix.lower() == ".wav" for h in handles):
            try:
                await asyncio.to_thread(self._concat_wav, handles, output)
                return output
            except (RuntimeError, ValueError, OSError) as e:
                logger.warning("WAV concatenation failed, retrying with ffmpeg", error=str(e))

        try:
            await self._concat_ffmpeg(handles, output)
        except FFmpegError as e:
            raise ChunkCombineError(
                f"Failed to combine {len(handles)} audio chunks: {e}"
            ) from e

        return output

    def combine_video(self, handles: Sequence[Path]) -> Path | None:
        """Select the highest chunk index as the representative video."""
        if not handles:
            return None
        return handles[-1]

    async def combine(self, snapshot: ChunkSnapshot) -> CombinedMedia:
        """Combine both media types of a snapshot."""
        audio = await self.combine_audio(snapshot.audio)
        video = self.combine_video(snapshot.video)

        derived = []
        if audio is not None and audio not in snapshot.audio:
            derived.append(audio)

        return CombinedMedia(audio=audio, video=video, derived=derived)

    def _concat_wav(self, handles: Sequence[Path], output: Path) -> None:
        """Concatenate PCM WAV files that share a sample rate."""
        pieces = []
        sample_rate = None

        for handle in handles:
            audio, sr = sf.read(str(handle), dtype="float32")
            if sample_rate is None:
                sample_rate = sr
            elif sr != sample_rate:
                raise ValueError(f"Sample rate mismatch: {sr} != {sample_rate}")

            # Stereo -> mono
            if audio.ndim == 2:
                audio = audio.mean(axis=1)
            pieces.append(audio)

        sf.write(str(output), np.concatenate(pieces), sample_rate, subtype="PCM_16")

    async def _concat_ffmpeg(self, handles: Sequence[Path], output: Path) -> None:
        """Concatenate arbitrary encodings via the ffmpeg concat filter."""
        inputs: list[str] = []
        for handle in handles:
            inputs.extend(["-i", str(handle)])

        streams = "".join(f"[{i}:a]" for i in range(len(handles)))
        await run_ffmpeg(
            self.ffmpeg_binary,
            *inputs,
            "-filter_complex",
            f"{streams}concat=n={len(handles)}:v=0:a=1[out]",
            "-map",
            "[out]",
            "-ac",
            "1",
            "-ar",
            str(self.sample_rate),
            "-acodec",
            "pcm_s16le",
            str(output),
        )
