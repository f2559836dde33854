"""
Realtime Routes

Session creation, chunk upload, status and Zoom relay over HTTP, plus the
WebSocket that subscribes observers to a session's lifecycle events.
"""

from typing import Any
from uuid import uuid4

import structlog
from fastapi import (
    APIRouter,
    Body,
    Depends,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.websockets import WebSocketState
from pydantic import Field, ValidationError

from casecoach.config import settings
from casecoach.core.models import CoachModel, Question, Session
from casecoach.db.stores import SessionStore
from casecoach.realtime import (
    ALREADY_IN_FLIGHT,
    ChunkEnvelope,
    ChunkStorageError,
    EventBroadcaster,
    RealtimeEvent,
    RealtimeEventType,
    RealtimeSessionRegistry,
    RealtimeStreamingService,
)

logger = structlog.get_logger()

router = APIRouter()
ws_router = APIRouter()


# ══════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════


class QuestionSpec(CoachModel):
    """Time range of one question in a new session."""

    index: int = Field(ge=0)
    start_ts: float = Field(default=0.0, ge=0.0)
    end_ts: float = Field(default=0.0, ge=0.0)


class SessionCreateRequest(CoachModel):
    """Body of a session creation request."""

    media_path: str | None = None
    questions: list[QuestionSpec]


# ══════════════════════════════════════════════════════════════
# Dependencies
# ══════════════════════════════════════════════════════════════


def get_service(request: Request) -> RealtimeStreamingService:
    return request.app.state.service


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_broadcaster(request: Request) -> EventBroadcaster:
    return request.app.state.broadcaster


def get_registry(request: Request) -> RealtimeSessionRegistry:
    return request.app.state.registry


async def _require_session(session_store: SessionStore, session_id: str) -> Session:
    session = await session_store.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session


def _first_error(e: ValidationError) -> str:
    error = e.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error['msg']}" if location else error["msg"]


# ══════════════════════════════════════════════════════════════
# Sessions
# ══════════════════════════════════════════════════════════════


@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: dict[str, Any] = Body(...),
    session_store: SessionStore = Depends(get_session_store),
) -> dict[str, Any]:
    """Create a session that will receive streamed chunks."""
    try:
        body = SessionCreateRequest.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid request: questions array is required ({_first_error(e)})",
        )

    session = Session(media_path=body.media_path or "streaming://realtime")
    session.questions = [
        Question(session_id=session.id, index=q.index, start_ts=q.start_ts, end_ts=q.end_ts)
        for q in body.questions
    ]
    await session_store.create_session(session)

    return {
        **session.to_wire(),
        "realtime": True,
        "websocketUrl": f"{settings.public_ws_base_url}/ws/sessions/{session.id}",
    }


@router.post("/sessions/{session_id}/chunk")
async def upload_chunk(
    session_id: str,
    question_index: int | None = Form(None, alias="questionIndex"),
    chunk_index: int | None = Form(None, alias="chunkIndex"),
    timestamp: float | None = Form(None),
    is_last: bool = Form(False, alias="isLast"),
    transcript: str | None = Form(None),
    audio: UploadFile | None = File(None),
    video: UploadFile | None = File(None),
    service: RealtimeStreamingService = Depends(get_service),
    session_store: SessionStore = Depends(get_session_store),
) -> dict[str, Any]:
    """
    Receive one streamed chunk.

    A chunk with ``isLast`` set runs processing for its question inline;
    the result (or ``already_in_flight``) is returned under ``processing``.
    A chunk arriving while its question is processing is refused with
    ``accepted: false`` and its bytes are discarded.
    """
    if question_index is None or chunk_index is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="questionIndex and chunkIndex are required",
        )

    await _require_session(session_store, session_id)

    fields: dict[str, Any] = {
        "session_id": session_id,
        "question_index": question_index,
        "chunk_index": chunk_index,
        "audio_payload": await audio.read() if audio else None,
        "video_payload": await video.read() if video else None,
        "is_final": is_last,
        "transcript_hint": transcript or None,
    }
    if timestamp is not None:
        fields["captured_at"] = timestamp

    try:
        envelope = ChunkEnvelope(**fields)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=_first_error(e))

    try:
        ack = await service.handle_chunk(envelope)
    except ChunkStorageError as e:
        logger.error("Failed to stage chunk", session_id=session_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process chunk",
        )

    message = "Chunk received"
    if not ack.accepted:
        message = "Chunk rejected; question is already being processed"
    elif ack.processing == ALREADY_IN_FLIGHT:
        message = "Chunk received; processing already in flight"
    elif ack.processing is not None:
        message = "Chunk received and question processed"

    return {"success": ack.accepted, "message": message, **ack.to_wire()}


@router.get("/sessions/{session_id}/status")
async def get_session_status(
    session_id: str,
    session_store: SessionStore = Depends(get_session_store),
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
    registry: RealtimeSessionRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Per-question processing status for a session."""
    session = await _require_session(session_store, session_id)

    return {
        "sessionId": session_id,
        "activeConnections": broadcaster.subscriber_count(session_id),
        "questions": [
            {
                "index": q.index,
                "hasTranscript": bool(q.transcript),
                "hasBodyLanguage": q.body_language is not None,
                "hasVector": q.vector is not None,
            }
            for q in session.questions
        ],
        "liveQuestions": {
            str(index): phase.value
            for index, phase in sorted(registry.active_questions(session_id).items())
        },
    }


@router.post("/sessions/{session_id}/zoom-webhook")
async def zoom_webhook(
    session_id: str,
    event: dict[str, Any] = Body(...),
    service: RealtimeStreamingService = Depends(get_service),
) -> dict[str, Any]:
    """Relay Zoom recording events to the session's subscribers."""
    name = event.get("event", "")
    logger.info("Zoom webhook received", session_id=session_id, zoom_event=name)

    download_url = None
    recording_files = ((event.get("payload") or {}).get("object") or {}).get("recording_files") or []
    if recording_files:
        download_url = recording_files[0].get("download_url")

    relayed = await service.relay_recording_event(session_id, name, download_url)
    return {"success": True, "relayed": relayed.value if relayed else None}


@router.get("/stats")
async def get_stats(
    broadcaster: EventBroadcaster = Depends(get_broadcaster),
    registry: RealtimeSessionRegistry = Depends(get_registry),
) -> dict[str, Any]:
    """Registry and broadcaster statistics."""
    return {
        "registry": registry.get_stats(),
        "broadcaster": broadcaster.get_stats(),
    }


# ══════════════════════════════════════════════════════════════
# Event Subscription Endpoint
# ══════════════════════════════════════════════════════════════


@ws_router.websocket("/sessions/{session_id}")
async def session_events_websocket(websocket: WebSocket, session_id: str):
    """
    Subscribe to lifecycle events for a session.

    Read-only apart from control messages: ``ping`` is answered with
    ``pong`` and ``unsubscribe`` closes the subscription.
    """
    broadcaster: EventBroadcaster = websocket.app.state.broadcaster

    await websocket.accept()

    subscriber_id = uuid4()

    async def send_callback(event: RealtimeEvent):
        if websocket.client_state == WebSocketState.CONNECTED:
            await websocket.send_json(event.model_dump(mode="json"))

    await broadcaster.subscribe(subscriber_id, session_id, send_callback)

    await websocket.send_json({
        "type": RealtimeEventType.SUBSCRIPTION_CONFIRMED.value,
        "payload": {
            "sessionId": session_id,
            "subscriberId": str(subscriber_id),
        },
    })

    try:
        while True:
            data = await websocket.receive_json()

            if data.get("type") == "ping":
                await websocket.send_json({"type": RealtimeEventType.PONG.value})

            elif data.get("type") == "unsubscribe":
                break

            else:
                await websocket.send_json({
                    "type": RealtimeEventType.ERROR.value,
                    "payload": {"message": f"Unknown message type: {data.get('type')}"},
                })

    except WebSocketDisconnect:
        pass

    finally:
        await broadcaster.unsubscribe_all(subscriber_id)
        logger.debug("Event subscriber left", subscriber_id=str(subscriber_id), session_id=session_id)
