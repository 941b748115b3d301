"""
server.py — Empathy Voice Engine · FastAPI Control Plane
========================================================
Hosts voice calls and text chats for the browser client.  The browser is a
thin capability host (microphone, SpeechRecognition, speechSynthesis); the
conversation itself runs here, one VoiceConversationOrchestrator per call.

Endpoints
---------
  GET  /health                    Service liveness
  GET  /calls                     List active voice calls
  POST /calls/{session_id}/stop   End a specific call
  GET  /config                    Current runtime config
  PUT  /config                    Deep-merge patch, persisted to VOICECHAT_CONFIG
  POST /speech/transcribe         Hosted speech-to-text (raw audio body)
  WS   /ws/call                   Voice call (browser bridge protocol)
  WS   /ws/chat                   Text chat
  WS   /ws/alerts                 Crisis alert stream (recent alerts replayed)

Concurrency model
-----------------
Every call is a set of asyncio tasks on the server's event loop: one task
pumps the bridge outbox to the socket, the receive loop feeds browser events
into the bridge, and the orchestrator spawns its own turn tasks.  Calls share
only the alert and history stores.  The `active_calls` registry is keyed by
session id and cleaned up when the socket goes away.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Set

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from apps.voicechat.browser_bridge import (
    BrowserBridge,
    PlatformCapabilities,
    create_microphone_access,
    create_recognition_engine,
    create_speech_engine,
)
from apps.voicechat.chat_stream import StreamingChatClient
from apps.voicechat.hosted_speech import HostedSpeechClient, HostedSpeechError
from apps.voicechat.models import CallPhase, ConversationTurn, CrisisAlert, EmotionAnalysis, Notice
from apps.voicechat.orchestrator import CallObserver, VoiceConversationOrchestrator
from apps.voicechat.stores import BearerTokenAuthGate, InMemoryChatHistoryStore, InMemoryCrisisAlertStore
from apps.voicechat.synthesis import SpeechSynthesisAdapter
from apps.voicechat.text_chat import TextChatSession
from config import VoiceChatConfig

load_dotenv()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG if os.getenv("VOICE_DEBUG") else logging.INFO,
    format="%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s – %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger("voicechat.server")

# ---------------------------------------------------------------------------
# Config (from environment)
# ---------------------------------------------------------------------------
CHAT_API_KEY          = os.getenv("CHAT_API_KEY")
HOSTED_SPEECH_API_KEY = os.getenv("HOSTED_SPEECH_API_KEY")
CALL_AUTH_TOKEN       = os.getenv("CALL_AUTH_TOKEN")
CONFIG_PATH           = Path(os.getenv(
    "VOICECHAT_CONFIG", os.path.join(os.path.dirname(__file__), "voicechat_config.json"),
))

HELLO_TIMEOUT_SEC = float(os.getenv("HELLO_TIMEOUT_SEC", "10.0"))

config = VoiceChatConfig.load(CONFIG_PATH)


# ---------------------------------------------------------------------------
# Crisis alert broadcaster
# ---------------------------------------------------------------------------

class AlertBroadcaster:
    """Fan-out hub for crisis alerts to every connected monitoring client."""
    def __init__(self, history_size: int = 500) -> None:
        self._clients: Set[WebSocket] = set()
        self._history: list[dict] = []  # replayed to late-joiners
        self._history_size = history_size

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._clients.add(ws)
        for event in self._history[-self._history_size:]:
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                break

    def disconnect(self, ws: WebSocket) -> None:
        self._clients.discard(ws)

    async def broadcast(self, alert: CrisisAlert) -> None:
        event = {"type": "crisis.alert", **alert.model_dump(mode="json")}
        self._history.append(event)
        if len(self._history) > self._history_size:
            self._history = self._history[-self._history_size:]
        dead: Set[WebSocket] = set()
        for ws in list(self._clients):
            try:
                await ws.send_text(json.dumps(event))
            except Exception:
                dead.add(ws)
        self._clients -= dead


alert_store   = InMemoryCrisisAlertStore()
history_store = InMemoryChatHistoryStore()
auth_gate     = BearerTokenAuthGate(CALL_AUTH_TOKEN)
broadcaster   = AlertBroadcaster()
alert_store.subscribe(broadcaster.broadcast)


# ---------------------------------------------------------------------------
# Active call registry
# ---------------------------------------------------------------------------

@dataclass
class CallRecord:
    session_id:    str
    orchestrator:  VoiceConversationOrchestrator = field(repr=False)
    bridge:        BrowserBridge = field(repr=False)
    user_id:       Optional[str] = None
    started_at:    float = field(default_factory=time.monotonic)
    _start_task:   Optional[asyncio.Task] = field(repr=False, default=None)


# session_id → CallRecord
active_calls: dict[str, CallRecord] = {}


# ---------------------------------------------------------------------------
# Per-call wiring
# ---------------------------------------------------------------------------

class WebSocketCallObserver(CallObserver):
    """Forwards conversation events to the browser as `<prefix>.*` messages."""

    def __init__(self, send: Callable[[dict], None], prefix: str = "call") -> None:
        self._send = send
        self._prefix = prefix

    def on_state(self, snapshot) -> None:
        self._send({"type": f"{self._prefix}.state", **snapshot.model_dump(mode="json")})

    def on_turn(self, turn: ConversationTurn) -> None:
        self._send({"type": f"{self._prefix}.turn", **turn.model_dump(mode="json")})

    def on_partial(self, text: str) -> None:
        self._send({"type": f"{self._prefix}.partial", "text": text})

    def on_emotion(self, emotion: EmotionAnalysis) -> None:
        self._send({"type": f"{self._prefix}.emotion", **emotion.model_dump(mode="json")})

    def on_notice(self, notice: Notice) -> None:
        self._send({"type": f"{self._prefix}.notice", **notice.model_dump(mode="json")})


def _make_chat_client(cfg: VoiceChatConfig) -> StreamingChatClient:
    return StreamingChatClient(
        cfg.chat.url,
        CHAT_API_KEY,
        timeout_sec=cfg.chat.timeout_sec,
        connect_timeout_sec=cfg.chat.connect_timeout_sec,
        history_window=cfg.chat.history_window,
    )


def _make_hosted_client(cfg: VoiceChatConfig) -> Optional[HostedSpeechClient]:
    hosted = cfg.hosted_speech
    if not hosted.enabled or not hosted.base_url:
        return None
    return HostedSpeechClient(hosted.base_url, HOSTED_SPEECH_API_KEY, timeout_sec=hosted.timeout_sec)


async def _pump_outbox(ws: WebSocket, outbox: asyncio.Queue) -> None:
    """Forward queued messages to the socket until cancelled."""
    while True:
        message = await outbox.get()
        await ws.send_json(message)


async def _receive_message(ws: WebSocket) -> Optional[dict]:
    """Next JSON object from the socket; None for frames that are not one."""
    frame = await ws.receive()
    if frame["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(frame.get("code", 1000), frame.get("reason"))
    raw = frame.get("text")
    if raw is None:
        log.debug("event=ws_binary_frame_ignored bytes=%d", len(frame.get("bytes") or b""))
        return None
    try:
        message = json.loads(raw)
    except ValueError:
        log.debug("event=ws_bad_frame chars=%d", len(raw))
        return None
    return message if isinstance(message, dict) else None


async def _await_hello(ws: WebSocket) -> Optional[dict]:
    """Accept the socket and read the hello.  Closes and returns None when refused."""
    await ws.accept()
    try:
        hello = await asyncio.wait_for(_receive_message(ws), timeout=HELLO_TIMEOUT_SEC)
    except asyncio.TimeoutError:
        log.warning("event=timeout scope=ws_hello limit=%.1fs remote=%s", HELLO_TIMEOUT_SEC, ws.client)
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    if not hello or hello.get("type") != "hello":
        log.warning("event=ws_rejected reason=bad_hello remote=%s", ws.client)
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return None

    token = hello.get("token") or ws.query_params.get("token")
    if not auth_gate.authorize(token):
        log.warning("event=ws_rejected reason=unauthorized remote=%s", ws.client)
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    return hello


async def _start_call(record: CallRecord) -> None:
    try:
        await record.orchestrator.start_call()
    except Exception as exc:
        log.error("event=call_start_error session=%s error=%s", record.session_id, exc, exc_info=True)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class CallInfo(BaseModel):
    session_id:    str
    user_id:       Optional[str] = None
    phase:         CallPhase
    is_escalated:  bool
    turn_count:    int
    uptime_sec:    float


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

@asynccontextmanager
async def _lifespan(app: FastAPI):
    log.info("event=server_start max_concurrent=%d config=%s", config.max_concurrent_calls, CONFIG_PATH)
    yield
    log.info("event=server_shutdown ending %d active calls", len(active_calls))
    for record in list(active_calls.values()):
        record.bridge.close()
    close_tasks = [r.orchestrator.aclose() for r in list(active_calls.values())]
    if close_tasks:
        await asyncio.gather(*close_tasks, return_exceptions=True)
    log.info("event=server_stopped")


app = FastAPI(
    title="Empathy Voice Engine",
    version="1.0.0",
    description="Voice and text chat with emotion-aware escalation",
    lifespan=_lifespan,
)

# Allow file:// and any local origin to reach the API (dev only)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health() -> JSONResponse:
    """Liveness probe."""
    limit = config.max_concurrent_calls
    return JSONResponse({
        "status":       "ok",
        "active_calls": len(active_calls),
        "max_calls":    limit,
        "capacity_pct": round(len(active_calls) / limit * 100, 1),
    })


@app.get("/calls", response_model=list[CallInfo])
async def list_calls() -> list[CallInfo]:
    """Returns a snapshot of every active voice call."""
    now = time.monotonic()
    infos = []
    for r in active_calls.values():
        session = r.orchestrator.session
        infos.append(CallInfo(
            session_id=r.session_id,
            user_id=r.user_id,
            phase=r.orchestrator.phase,
            is_escalated=r.orchestrator.is_escalated,
            turn_count=len(session.turns) if session else 0,
            uptime_sec=round(now - r.started_at, 1),
        ))
    return infos


@app.post("/calls/{session_id}/stop", status_code=status.HTTP_202_ACCEPTED)
async def stop_call(session_id: str) -> JSONResponse:
    """End a call from the operator side.  The socket stays open; the browser sees phase idle."""
    record = active_calls.get(session_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"No active call for session '{session_id}'.")

    log.info("event=operator_stop session=%s", session_id)
    record.orchestrator.end_call()
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"status": "stopped", "session_id": session_id},
    )


@app.get("/config")
async def get_config() -> JSONResponse:
    return JSONResponse(config.model_dump(mode="json"))


@app.put("/config")
async def put_config(request: Request) -> JSONResponse:
    """
    Deep-merge a partial config and persist it.  New calls pick it up;
    calls already running keep the config they started with.

        { "conversation": { "debounce_sec": 2.0 } }
    """
    global config
    try:
        patch = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid JSON: {exc}") from exc
    if not isinstance(patch, dict):
        raise HTTPException(status_code=400, detail="Config patch must be a JSON object.")

    try:
        updated = config.merge_patch(patch)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=json.loads(exc.json(include_url=False))) from exc

    try:
        updated.save(CONFIG_PATH)
    except OSError as exc:
        log.error("event=config_save_failed path=%s error=%s", CONFIG_PATH, exc)
        raise HTTPException(status_code=500, detail="Failed to persist config.") from exc

    config = updated
    log.info("event=config_updated keys=%s", sorted(patch))
    return JSONResponse(config.model_dump(mode="json"))


@app.post("/speech/transcribe")
async def transcribe(request: Request, language: str = "en") -> JSONResponse:
    """
    Hosted speech-to-text for browsers without a recognition engine.
    Body is the raw recording; Content-Type is passed through.

        POST /speech/transcribe?language=es   (audio/webm body)
    """
    if not auth_gate.authorize(_bearer_token(request)):
        raise HTTPException(status_code=401, detail="Unauthorized.")

    client = _make_hosted_client(config)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Hosted speech-to-text is not configured.",
        )

    audio = await request.body()
    if not audio:
        await client.aclose()
        raise HTTPException(status_code=400, detail="Empty audio body.")

    content_type = request.headers.get("content-type", "audio/webm")
    try:
        result = await client.speech_to_text(audio, language, content_type=content_type)
    except HostedSpeechError as exc:
        log.warning("event=transcribe_failed error=%s", exc)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    finally:
        await client.aclose()

    return JSONResponse({"text": result.text, "language": result.detected_language})


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip()
    return None


@app.websocket("/ws/call")
async def ws_call(ws: WebSocket) -> None:
    """
    One voice call.  The browser opens with

        {"type": "hello", "token": "...", "sessionId": "...", "userId": "...",
         "language": "en",
         "capabilities": {"recognition": ["webkitSpeechRecognition"],
                          "synthesis": true, "voices": [...]}}

    and receives `call.ready`.  `call.start` / `call.end` drive the call;
    every other message is a bridge event (see apps/voicechat/browser_bridge.py).
    """
    try:
        hello = await _await_hello(ws)
    except WebSocketDisconnect:
        return
    if hello is None:
        return

    if len(active_calls) >= config.max_concurrent_calls:
        log.warning(
            "event=concurrency_limit_reached current=%d max=%d",
            len(active_calls), config.max_concurrent_calls,
        )
        await ws.close(code=status.WS_1013_TRY_AGAIN_LATER)
        return

    session_id = str(hello.get("sessionId") or uuid.uuid4().hex)
    if session_id in active_calls:
        log.warning("event=duplicate_session session=%s", session_id)
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    cfg = config
    user_id = hello.get("userId")
    conversation = cfg.conversation
    if isinstance(hello.get("language"), str) and hello["language"]:
        conversation = conversation.model_copy(update={"language": hello["language"]})

    bridge = BrowserBridge()
    capabilities = PlatformCapabilities.from_hello(hello)
    chat_client = _make_chat_client(cfg)
    hosted = _make_hosted_client(cfg)
    orchestrator = VoiceConversationOrchestrator(
        recognition_engine=create_recognition_engine(capabilities, bridge),
        synthesizer=SpeechSynthesisAdapter(create_speech_engine(capabilities, bridge), cfg.synthesis, hosted),
        chat_client=chat_client,
        microphone=create_microphone_access(bridge, conversation.microphone_timeout_sec),
        config=conversation,
        recognition_tuning=cfg.recognition,
        history_window=cfg.chat.history_window,
        observer=WebSocketCallObserver(bridge.send),
        alert_store=alert_store,
        history_store=history_store,
        session_id=session_id,
        user_id=user_id,
    )
    record = CallRecord(session_id=session_id, orchestrator=orchestrator, bridge=bridge, user_id=user_id)
    active_calls[session_id] = record
    log.info(
        "event=call_connected session=%s recognition=%s synthesis=%s remote=%s",
        session_id, orchestrator.supported, capabilities.synthesis, ws.client,
    )

    sender = asyncio.create_task(_pump_outbox(ws, bridge.outbox), name=f"call_out_{session_id}")
    bridge.send({
        "type":      "call.ready",
        "sessionId": session_id,
        "supported": orchestrator.supported,
        "language":  conversation.language,
    })
    try:
        while True:
            message = await _receive_message(ws)
            if message is None:
                continue
            kind = message.get("type")
            if kind == "call.start":
                if record._start_task is None or record._start_task.done():
                    record._start_task = asyncio.create_task(_start_call(record), name=f"call_start_{session_id}")
            elif kind == "call.end":
                orchestrator.end_call()
            elif not bridge.dispatch(message):
                log.debug("event=ws_unknown_message type=%s", kind)
    except WebSocketDisconnect:
        pass
    finally:
        bridge.close()
        await orchestrator.aclose()
        for task in (sender, record._start_task):
            if task is not None and not task.done():
                task.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        await chat_client.aclose()
        if hosted is not None:
            await hosted.aclose()
        active_calls.pop(session_id, None)
        log.info(
            "event=call_disconnected session=%s duration_sec=%.1f",
            session_id, time.monotonic() - record.started_at,
        )


@app.websocket("/ws/chat")
async def ws_chat(ws: WebSocket) -> None:
    """
    Text chat.  After the hello the client sends
    {"type": "chat.message", "content": "..."} and receives chat.turn,
    chat.partial, chat.emotion and chat.notice events.  Messages sent while
    a reply is still streaming are ignored.
    """
    try:
        hello = await _await_hello(ws)
    except WebSocketDisconnect:
        return
    if hello is None:
        return

    cfg = config
    outbox: asyncio.Queue = asyncio.Queue()
    observer = WebSocketCallObserver(outbox.put_nowait, prefix="chat")
    chat_client = _make_chat_client(cfg)
    session = TextChatSession(
        chat_client,
        welcome=cfg.conversation.welcome_message,
        history_window=cfg.chat.history_window,
        observer=observer,
        history_store=history_store,
        session_id=str(hello.get("sessionId") or uuid.uuid4().hex),
        user_id=hello.get("userId"),
    )
    log.info("event=chat_connected session=%s remote=%s", session.session_id, ws.client)

    sender = asyncio.create_task(_pump_outbox(ws, outbox), name=f"chat_out_{session.session_id}")
    pending: Set[asyncio.Task] = set()
    for turn in session.turns:
        observer.on_turn(turn)
    try:
        while True:
            message = await _receive_message(ws)
            if message is None or message.get("type") != "chat.message":
                continue
            task = asyncio.create_task(session.send_message(str(message.get("content") or "")))
            pending.add(task)
            task.add_done_callback(pending.discard)
    except WebSocketDisconnect:
        pass
    finally:
        for task in [sender, *pending]:
            task.cancel()
        await asyncio.gather(sender, *pending, return_exceptions=True)
        await chat_client.aclose()
        log.info("event=chat_disconnected session=%s turns=%d", session.session_id, len(session.turns))


@app.websocket("/ws/alerts")
async def ws_alerts(ws: WebSocket) -> None:
    """
    Crisis alert stream for the care team dashboard.  Recent alerts are
    replayed on connect, then each new one is pushed as
    {"type": "crisis.alert", "session_id", "user_id", "risk_level",
     "primary_feeling", "trigger_message", "created_at"}.
    """
    token = ws.query_params.get("token")
    if not auth_gate.authorize(token):
        await ws.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await broadcaster.connect(ws)
    log.info("event=ws_alert_client_connected remote=%s", ws.client)
    try:
        while True:
            # Keep the connection alive; we only send, never receive
            await _receive_message(ws)
    except WebSocketDisconnect:
        pass
    finally:
        broadcaster.disconnect(ws)
        log.info("event=ws_alert_client_disconnected remote=%s", ws.client)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
