"""
chat_stream.py — StreamingChatClient
====================================
One HTTP POST per user turn against the chat function; the response is a
`data: <json>` event stream that carries one out-of-band emotion event
followed by chat-completion token deltas, terminated by `data: [DONE]`.

Wire shapes
-----------
    data: {"type":"emotion","emotion":{"emotion":..,"intensity":..,"risk_level":..,"primary_feeling":..}}
    data: {"choices":[{"delta":{"content":"Hi"}}]}
    data: [DONE]

Contract
--------
Exactly one of `on_done` / `on_error` fires per `stream()` call, exactly once.
Nothing is delivered after `on_error`.  Only task cancellation escapes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

log = logging.getLogger("voicechat.chat_stream")

HISTORY_WINDOW = 10
DONE_MARKER = "[DONE]"
DATA_PREFIX = "data: "

RATE_LIMIT_MESSAGE = "Rate limit exceeded. Please wait a moment and try again."
CREDITS_EXHAUSTED_MESSAGE = "AI credits exhausted. Please add credits to continue."
CONNECTION_ERROR_MESSAGE = "Connection error. Please check your connection and try again."
GENERIC_ERROR_MESSAGE = "Something went wrong while getting a response. Please try again."


@dataclass
class StreamCallbacks:
    on_emotion: Optional[Callable[[dict], Any]] = None
    on_delta: Optional[Callable[[str], Any]] = None
    on_done: Optional[Callable[[], Any]] = None
    on_error: Optional[Callable[[str], Any]] = None


class _Completion:
    """Latch that lets exactly one terminal callback through."""

    def __init__(self, callbacks: StreamCallbacks):
        self._callbacks = callbacks
        self.finished = False

    def done(self) -> None:
        if self.finished:
            return
        self.finished = True
        if self._callbacks.on_done:
            self._callbacks.on_done()

    def error(self, message: str) -> None:
        if self.finished:
            return
        self.finished = True
        if self._callbacks.on_error:
            self._callbacks.on_error(message)


def error_message_for(status_code: int, body: bytes) -> str:
    """Map a non-2xx chat response to a short user-facing message."""
    if status_code == 429:
        return RATE_LIMIT_MESSAGE
    if status_code == 402:
        return CREDITS_EXHAUSTED_MESSAGE
    try:
        data = json.loads(body)
    except ValueError:
        data = None
    if isinstance(data, dict) and isinstance(data.get("error"), str) and data["error"]:
        return data["error"]
    return f"Request failed with status {status_code}"


class StreamingChatClient:
    """Async client for the emotion-annotated chat stream."""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_sec: float = 60.0,
        connect_timeout_sec: float = 10.0,
        history_window: int = HISTORY_WINDOW,
    ) -> None:
        self.url = url
        self._api_key = api_key
        self._history_window = history_window
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_sec, connect=connect_timeout_sec),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _payload(
        self,
        message: str,
        history: list[dict],
        session_id: Optional[str],
        user_id: Optional[str],
    ) -> dict:
        window = history[-self._history_window:] if self._history_window else []
        payload: dict[str, Any] = {
            "message": message,
            "conversationHistory": [
                {"role": m["role"], "content": m["content"]} for m in window
            ],
        }
        if session_id:
            payload["sessionId"] = session_id
        if user_id:
            payload["userId"] = user_id
        return payload

    async def stream(
        self,
        message: str,
        history: list[dict],
        callbacks: StreamCallbacks,
        session_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> None:
        completion = _Completion(callbacks)
        payload = self._payload(message, history, session_id, user_id)
        log.info(
            "event=chat_stream_start message_len=%d history=%d",
            len(message), len(payload["conversationHistory"]),
        )
        deltas = 0
        try:
            async with self._client.stream(
                "POST", self.url, json=payload, headers=self._headers(),
            ) as response:
                if not response.is_success:
                    body = await response.aread()
                    reason = error_message_for(response.status_code, body)
                    log.warning(
                        "event=chat_stream_rejected status=%d error=%s",
                        response.status_code, reason,
                    )
                    completion.error(reason)
                    return

                buffer = ""
                async for chunk in response.aiter_text():
                    buffer += chunk
                    buffer, finished, count = self._drain(buffer, callbacks)
                    deltas += count
                    if finished:
                        log.info("event=chat_stream_done deltas=%d", deltas)
                        completion.done()
                        return

                deltas += self._flush(buffer, callbacks)
                log.info("event=chat_stream_closed deltas=%d marker=missing", deltas)
                completion.done()

        except httpx.HTTPError as exc:
            log.warning("event=chat_stream_connection_error error=%s", exc)
            completion.error(CONNECTION_ERROR_MESSAGE)
        except Exception as exc:
            log.error("event=chat_stream_error error=%s", exc, exc_info=True)
            completion.error(GENERIC_ERROR_MESSAGE)

    # -- line protocol ---------------------------------------------------------

    def _drain(self, buffer: str, callbacks: StreamCallbacks) -> tuple[str, bool, int]:
        """Consume every complete line in *buffer*.

        Returns (remaining buffer, saw [DONE], delta count).  A line whose JSON
        does not parse is pushed back and parsing pauses until more data
        arrives.
        """
        deltas = 0
        while "\n" in buffer:
            line, buffer = buffer.split("\n", 1)
            if line.endswith("\r"):
                line = line[:-1]
            if line.startswith(":") or not line.strip():
                continue
            if not line.startswith(DATA_PREFIX):
                continue

            data = line[len(DATA_PREFIX):].strip()
            if data == DONE_MARKER:
                return buffer, True, deltas

            try:
                parsed = json.loads(data)
            except ValueError:
                buffer = line + "\n" + buffer
                break
            if self._dispatch(parsed, callbacks):
                deltas += 1
        return buffer, False, deltas

    def _flush(self, buffer: str, callbacks: StreamCallbacks) -> int:
        """Final pass over whatever the closed connection left behind."""
        deltas = 0
        for raw in buffer.split("\n"):
            line = raw[:-1] if raw.endswith("\r") else raw
            if line.startswith(":") or not line.strip():
                continue
            if not line.startswith(DATA_PREFIX):
                continue
            data = line[len(DATA_PREFIX):].strip()
            if data == DONE_MARKER:
                break
            try:
                parsed = json.loads(data)
            except ValueError:
                log.debug("event=chat_stream_flush_skip line=%.60r", line)
                continue
            if self._dispatch(parsed, callbacks):
                deltas += 1
        return deltas

    @staticmethod
    def _dispatch(parsed: Any, callbacks: StreamCallbacks) -> bool:
        """Route one event.  Returns True when a text delta was delivered."""
        if not isinstance(parsed, dict):
            return False

        if parsed.get("type") == "emotion" and isinstance(parsed.get("emotion"), dict):
            if callbacks.on_emotion:
                callbacks.on_emotion(parsed["emotion"])
            return False

        try:
            content = parsed["choices"][0]["delta"].get("content")
        except (KeyError, IndexError, TypeError, AttributeError):
            return False
        if isinstance(content, str) and content:
            if callbacks.on_delta:
                callbacks.on_delta(content)
            return True
        return False
