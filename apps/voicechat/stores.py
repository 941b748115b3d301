"""
stores.py — narrow interfaces to the persistence and access-control
collaborators, plus the in-memory implementations the server runs with.
"""

from __future__ import annotations

import asyncio
import hmac
import logging
from collections import defaultdict, deque
from typing import Awaitable, Callable, Optional, Protocol

from apps.voicechat.models import ConversationTurn, CrisisAlert

log = logging.getLogger("voicechat.stores")


class ChatHistoryStore(Protocol):
    async def append(self, session_id: str, turn: ConversationTurn) -> None: ...

    async def history(self, session_id: str) -> list[ConversationTurn]: ...


class CrisisAlertStore(Protocol):
    async def create_alert(self, alert: CrisisAlert) -> None: ...


class AuthGate(Protocol):
    def authorize(self, token: Optional[str]) -> bool: ...


class InMemoryChatHistoryStore:
    def __init__(self, max_turns_per_session: int = 500) -> None:
        self._turns: dict[str, deque[ConversationTurn]] = defaultdict(
            lambda: deque(maxlen=max_turns_per_session)
        )

    async def append(self, session_id: str, turn: ConversationTurn) -> None:
        self._turns[session_id].append(turn)

    async def history(self, session_id: str) -> list[ConversationTurn]:
        return list(self._turns.get(session_id, ()))


AlertSubscriber = Callable[[CrisisAlert], Awaitable[None]]


class InMemoryCrisisAlertStore:
    """Keeps recent alerts and fans each new one out to subscribers."""

    def __init__(self, max_alerts: int = 500) -> None:
        self._alerts: deque[CrisisAlert] = deque(maxlen=max_alerts)
        self._subscribers: list[AlertSubscriber] = []

    def subscribe(self, callback: AlertSubscriber) -> None:
        self._subscribers.append(callback)

    @property
    def alerts(self) -> list[CrisisAlert]:
        return list(self._alerts)

    async def create_alert(self, alert: CrisisAlert) -> None:
        self._alerts.append(alert)
        log.warning(
            "event=crisis_alert session=%s risk=%s feeling=%s",
            alert.session_id, alert.risk_level, alert.primary_feeling,
        )
        results = await asyncio.gather(
            *(subscriber(alert) for subscriber in self._subscribers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                log.error("event=crisis_alert_fanout_error error=%s", result)


class BearerTokenAuthGate:
    """Single shared token; no token configured means every caller is allowed."""

    def __init__(self, token: Optional[str]) -> None:
        self._token = token or None

    def authorize(self, token: Optional[str]) -> bool:
        if self._token is None:
            return True
        if not token:
            return False
        return hmac.compare_digest(token, self._token)
