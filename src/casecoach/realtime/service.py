"""
Realtime Streaming Service

Drives one inbound chunk through the streaming pipeline:

    stage -> record -> (final?) claim -> combine -> process -> persist
          -> notify -> release -> discard

All collaborators are injected; the application builds one service per
process and hands it to request handlers.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Literal

import structlog

from casecoach.core.models import (
    CoachModel,
    ProcessedResult,
    ProcessingStatus,
    QuestionVectorRecord,
)
from casecoach.db.stores import SessionStore, VectorStore
from casecoach.pipeline.processor import QuestionProcessor
from .broadcaster import EventBroadcaster
from .chunk_store import ChunkStore
from .combiner import ChunkCombineError, ChunkCombiner, CombinedMedia
from .protocol import ChunkEnvelope, MediaKind, RealtimeEventType, RecordingPayload
from .registry import ProcessingPermit, RealtimeSessionRegistry

logger = structlog.get_logger()

ALREADY_IN_FLIGHT = "already_in_flight"

# Zoom webhook event -> relayed lifecycle event
RECORDING_EVENTS = {
    "recording.started": RealtimeEventType.RECORDING_STARTED,
    "recording.stopped": RealtimeEventType.RECORDING_STOPPED,
    "recording.completed": RealtimeEventType.RECORDING_COMPLETED,
}


class ChunkAck(CoachModel):
    """Outcome of accepting one chunk."""

    session_id: str
    question_index: int
    chunk_index: int
    kinds: list[MediaKind]

    # False when the question's take was already processing; the chunk's
    # bytes were discarded and it belongs to no take
    accepted: bool = True

    # Set only for final chunks: the run's result, or a marker when a run
    # for the question was already active
    processing: ProcessedResult | Literal["already_in_flight"] | None = None


@dataclass
class _SessionLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class RealtimeStreamingService:
    """Orchestrates chunk acceptance and the single processing run per question."""

    def __init__(
        self,
        registry: RealtimeSessionRegistry,
        store: ChunkStore,
        combiner: ChunkCombiner,
        processor: QuestionProcessor,
        broadcaster: EventBroadcaster,
        session_store: SessionStore | None = None,
        vector_store: VectorStore | None = None,
        timeout: float | None = None,
    ) -> None:
        self.registry = registry
        self.store = store
        self.combiner = combiner
        self.processor = processor
        self.broadcaster = broadcaster
        self.session_store = session_store
        self.vector_store = vector_store
        self.timeout = timeout

        # Serializes the session read-modify-write in _persist
        self._session_locks: dict[str, _SessionLock] = {}

    @asynccontextmanager
    async def _session_locked(self, session_id: str) -> AsyncIterator[None]:
        entry = self._session_locks.setdefault(session_id, _SessionLock())
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._session_locks.pop(session_id, None)

    # ──────────────────────────────────────────────────────────
    # Chunk ingress
    # ──────────────────────────────────────────────────────────

    async def handle_chunk(self, envelope: ChunkEnvelope) -> ChunkAck:
        """
        Accept one chunk and, if it is final, run processing for its question.

        Raises:
            ChunkStorageError: If the chunk bytes could not be staged
        """
        sid, qidx, cidx = envelope.session_id, envelope.question_index, envelope.chunk_index
        handles = {}

        try:
            if envelope.audio_payload is not None:
                handles[MediaKind.AUDIO] = await self.store.stage_audio(
                    sid, qidx, cidx, envelope.audio_payload
                )
            if envelope.video_payload is not None:
                handles[MediaKind.VIDEO] = await self.store.stage_video(
                    sid, qidx, cidx, envelope.video_payload
                )
        except Exception:
            # Nothing was recorded; the partial chunk is ours to clean up
            await self.store.discard(handles.values())
            raise

        state = await self.registry.record_chunk(sid, qidx, cidx, handles, envelope.captured_at)

        if state is None:
            await self.store.discard(handles.values())
            return ChunkAck(
                session_id=sid,
                question_index=qidx,
                chunk_index=cidx,
                kinds=list(handles),
                accepted=False,
                processing=ALREADY_IN_FLIGHT if envelope.is_final else None,
            )

        logger.info(
            "Chunk accepted",
            session_id=sid,
            question_index=qidx,
            chunk_index=cidx,
            kinds=[k.value for k in handles],
            is_final=envelope.is_final,
        )

        ack = ChunkAck(
            session_id=sid,
            question_index=qidx,
            chunk_index=cidx,
            kinds=list(handles),
        )
        if not envelope.is_final:
            return ack

        permit = await self.registry.try_begin_processing(sid, qidx)
        if permit is None:
            ack.processing = ALREADY_IN_FLIGHT
            return ack

        ack.processing = await self._run(permit, envelope.transcript_hint)
        return ack

    # ──────────────────────────────────────────────────────────
    # Processing run
    # ──────────────────────────────────────────────────────────

    async def _run(
        self,
        permit: ProcessingPermit,
        transcript_hint: str | None,
    ) -> ProcessedResult:
        """Execute one processing run under a permit, then release and clean up."""
        sid, qidx = permit.session_id, permit.question_index
        log = logger.bind(session_id=sid, question_index=qidx)
        combined = CombinedMedia()
        announced = False

        try:
            async with permit:
                await self.broadcaster.processing_started(sid, qidx)

                try:
                    snapshot = await self.registry.snapshot_chunk_paths(sid, qidx)
                    combined = await self.combiner.combine(snapshot)
                    result = await self._process(permit, combined, transcript_hint)
                except ChunkCombineError as e:
                    log.error("Chunk combination failed", error=str(e))
                    result = ProcessedResult(question_index=qidx)
                    result.mark_error(str(e))
                except Exception as e:
                    log.error("Processing run failed", error=str(e))
                    result = ProcessedResult(question_index=qidx)
                    result.mark_error(str(e) or type(e).__name__)

                if result.is_complete_record:
                    await self._persist(sid, result)

                if result.status == ProcessingStatus.ERROR:
                    await self.broadcaster.processing_error(
                        sid, qidx, result.error_message or "Processing failed"
                    )
                else:
                    await self.broadcaster.question_processed(sid, qidx, result)
                announced = True

                await permit.complete(result)
        finally:
            evicted = permit.evicted
            if not announced and evicted is not None and evicted.last_result is not None:
                # Released by the permit on the way out of an escaping exception
                log.error("Processing run aborted", error=evicted.last_result.error_message)
                await self.broadcaster.processing_error(
                    sid, qidx, evicted.last_result.error_message or "Processing failed"
                )

            handles = list(combined.derived)
            if evicted is not None:
                handles.extend(evicted.all_paths())
            removed = await self.store.discard(handles)
            log.debug("Chunk files discarded", removed=removed, requested=len(handles))

        return result

    async def _process(
        self,
        permit: ProcessingPermit,
        combined: CombinedMedia,
        transcript_hint: str | None,
    ) -> ProcessedResult:
        # Shared with the processor so fields resolved before a timeout survive it
        result = ProcessedResult(question_index=permit.question_index)
        run = self.processor.process(
            permit.question_index,
            audio=combined.audio,
            video=combined.video,
            transcript_hint=transcript_hint,
            session_id=permit.session_id,
            result=result,
        )
        if self.timeout is None:
            return await run

        try:
            return await asyncio.wait_for(run, timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(
                "Processing timed out",
                session_id=permit.session_id,
                question_index=permit.question_index,
                timeout_seconds=self.timeout,
            )
            result.mark_error(f"Processing timed out after {self.timeout:g} seconds")
            return result

    async def _persist(self, session_id: str, result: ProcessedResult) -> None:
        """Save the vector record and fill the session's question slots."""
        try:
            if self.vector_store is not None:
                await self.vector_store.save_vector_record(
                    QuestionVectorRecord(
                        session_id=session_id,
                        question_index=result.question_index,
                        vector=result.embedding_vector,
                        body_language=result.body_language_features,
                        transcript=result.transcript,
                    )
                )

            if self.session_store is None:
                return

            # Questions of one session finishing together must not overwrite
            # each other's slots
            async with self._session_locked(session_id):
                session = await self.session_store.get_session(session_id)
                if session is None:
                    logger.warning("Processed question for unknown session", session_id=session_id)
                    return

                for question in session.questions:
                    if question.index == result.question_index:
                        question.transcript = result.transcript
                        question.body_language = result.body_language_features
                        question.vector = result.embedding_vector
                await self.session_store.update_session(session)

        except Exception as e:
            # Best-effort: a storage failure never fails the run
            logger.error(
                "Failed to persist processed question",
                session_id=session_id,
                question_index=result.question_index,
                error=str(e),
            )

    # ──────────────────────────────────────────────────────────
    # Recording relay
    # ──────────────────────────────────────────────────────────

    async def relay_recording_event(
        self,
        session_id: str,
        event: str,
        download_url: str | None = None,
    ) -> RealtimeEventType | None:
        """
        Relay a Zoom recording webhook to the session's subscribers.

        Returns the published event type, or None for unhandled events.
        """
        event_type = RECORDING_EVENTS.get(event)
        if event_type is None:
            logger.info("Unhandled Zoom webhook event", session_id=session_id, zoom_event=event)
            return None

        await self.broadcaster.publish(
            session_id,
            event_type,
            RecordingPayload(
                session_id=session_id,
                download_url=download_url if event_type == RealtimeEventType.RECORDING_COMPLETED else None,
            ),
        )
        return event_type
