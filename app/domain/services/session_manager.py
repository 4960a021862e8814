"""
Session Manager — ניהול מחזור החיים של כל ה-sessions.

Owns the registry ``session_id → SessionRecord``. The registry is only
mutated under ``self._lock`` (create, stop, clear, disconnect, init failure,
sweep); reads take a snapshot without locking.

Transport events are routed through ``_get_event_handler``; an event for a
session that is gone or closed is a no-op, so late callbacks after a stop
can never resurrect or mutate a torn-down session.
"""
from __future__ import annotations

import asyncio
import shutil
import threading
import time
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from app.core.config import settings
from app.core.exceptions import (
    SessionAlreadyExistsError,
    SessionNotFoundError,
    ValidationException,
)
from app.core.logging import bind_session, get_logger
from app.core.rate_limiter import RateLimiter
from app.core.validation import IdentifierValidator
from app.domain.services.completion import CompletionGateway
from app.domain.services.conversation_history import ConversationHistory
from app.domain.services.file_relay import FileRelay
from app.domain.services.message_pipeline import LibraryLookup, MessagePipeline
from app.domain.services.notification_hub import NotificationHub, SessionEvent
from app.domain.services.order_repository import SqlOrderRepository
from app.domain.services.session_config import SessionConfig
from app.domain.services.transport.base_client import (
    BaseChatClient,
    TransportEvent,
    TransportEventType,
)
from app.domain.services.transport.client_factory import ChatClientFactory, get_chat_client_factory
from app.state_machine.intents import IntentDetector
from app.state_machine.order_flow import OrderStateMachine
from app.state_machine.states import (
    TERMINAL_SESSION_STATES,
    SessionState,
    is_valid_session_transition,
)

logger = get_logger(__name__)

GatewayFactory = Callable[[SessionConfig], CompletionGateway]

REASON_INACTIVE = "inactive"
REASON_MAX_AGE = "max_age"
REASON_NEVER_READY = "never_ready"


def default_gateway_factory(config: SessionConfig) -> CompletionGateway:
    return CompletionGateway(
        ConversationHistory(),
        api_key=config.completion_api_key,
        display_name=config.display_name,
        business_data=config.business_data,
        bot_mode=config.bot_mode,
    )


@dataclass(eq=False)
class SessionRecord:
    """מצב session חי — שייך בלעדית ל-SessionManager"""
    session_id: str
    config: SessionConfig
    client: BaseChatClient
    gateway: CompletionGateway
    created_at: float
    last_activity_at: float
    state: SessionState = SessionState.INITIALIZING
    ready_at: Optional[float] = None
    qr_data_url: Optional[str] = None
    tasks: set[asyncio.Task] = field(default_factory=set)
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def tenant_id(self) -> str:
        return self.config.tenant_id

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    @property
    def closed(self) -> bool:
        return self.state in TERMINAL_SESSION_STATES or self.stop_event.is_set()

    def track(self, coro: Awaitable[Any], name: Optional[str] = None) -> asyncio.Task:
        """Run ``coro`` as a task owned by this session (cancelled on teardown)"""
        task = asyncio.create_task(coro, name=name)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    def status_view(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "tenantId": self.tenant_id,
            "state": self.state.value,
            "exists": True,
            "isReady": self.is_ready,
            "hasQR": self.qr_data_url is not None,
            "botMode": self.config.bot_mode.name.value,
            "createdAt": self.created_at,
            "lastActivityAt": self.last_activity_at,
            "readyAt": self.ready_at,
        }


def missing_session_view(session_id: str) -> dict[str, Any]:
    return {
        "sessionId": session_id,
        "tenantId": None,
        "state": None,
        "exists": False,
        "isReady": False,
        "hasQR": False,
        "createdAt": None,
        "lastActivityAt": None,
    }


class SessionManager:
    """Registry and lifecycle of all tenant sessions"""

    def __init__(
        self,
        *,
        pipeline: Optional[MessagePipeline] = None,
        hub: Optional[NotificationHub] = None,
        rate_limiter: Optional[RateLimiter] = None,
        order_machine: Optional[OrderStateMachine] = None,
        file_relay: Optional[FileRelay] = None,
        intent_detector: Optional[IntentDetector] = None,
        library_lookup: Optional[LibraryLookup] = None,
        client_factory: Optional[ChatClientFactory] = None,
        gateway_factory: Optional[GatewayFactory] = None,
        clock: Callable[[], float] = time.time,
        init_max_retries: int = settings.SESSION_INIT_MAX_RETRIES,
        init_backoff_base_seconds: float = settings.SESSION_INIT_BACKOFF_BASE_SECONDS,
        stop_grace_seconds: float = settings.SESSION_STOP_GRACE_SECONDS,
        inactivity_timeout_seconds: float = settings.SESSION_INACTIVITY_TIMEOUT_SECONDS,
        max_age_seconds: float = settings.SESSION_MAX_AGE_SECONDS,
        ready_grace_seconds: float = settings.SESSION_READY_GRACE_SECONDS,
        sweep_interval_seconds: float = settings.SESSION_SWEEP_INTERVAL_SECONDS,
        cleanup_interval_seconds: float = settings.RATE_LIMIT_CLEANUP_INTERVAL_SECONDS,
        auth_data_dir: str = settings.AUTH_DATA_DIR,
    ) -> None:
        self.hub = hub or NotificationHub()
        self.rate_limiter = rate_limiter or RateLimiter()
        if pipeline is None:
            pipeline = MessagePipeline(
                self.hub,
                self.rate_limiter,
                order_machine or OrderStateMachine(SqlOrderRepository(), intent_detector),
                file_relay or FileRelay(),
                library_lookup=library_lookup,
            )
        self.pipeline = pipeline
        self._client_factory = client_factory or get_chat_client_factory()
        self._gateway_factory = gateway_factory or default_gateway_factory
        self._clock = clock

        self.init_max_retries = max(1, init_max_retries)
        self.init_backoff_base_seconds = init_backoff_base_seconds
        self.stop_grace_seconds = stop_grace_seconds
        self.inactivity_timeout_seconds = inactivity_timeout_seconds
        self.max_age_seconds = max_age_seconds
        self.ready_grace_seconds = ready_grace_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.auth_data_dir = Path(auth_data_dir)

        self._sessions: dict[str, SessionRecord] = {}
        self._lock = asyncio.Lock()
        self._background_tasks: list[asyncio.Task] = []

    # ==================== reads ====================

    def get_record(self, session_id: str) -> Optional[SessionRecord]:
        return self._sessions.get(session_id)

    def get_session(self, session_id: str) -> dict[str, Any]:
        record = self._sessions.get(session_id)
        if record is None:
            return missing_session_view(session_id)
        return record.status_view()

    def list_sessions(self) -> list[dict[str, Any]]:
        return [record.status_view() for record in list(self._sessions.values())]

    def get_qr(self, session_id: str) -> Optional[str]:
        record = self._sessions.get(session_id)
        return record.qr_data_url if record is not None else None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    # ==================== lifecycle ====================

    async def create_session(self, session_id: str, config: SessionConfig) -> SessionRecord:
        """
        Register a session and start its client in the background.

        Raises:
            ValidationException: invalid session id
            SessionAlreadyExistsError: the id is already registered
        """
        if not IdentifierValidator.validate(session_id):
            raise ValidationException(f"Invalid session id: {session_id!r}", field="sessionId")

        async with self._lock:
            if session_id in self._sessions:
                raise SessionAlreadyExistsError(session_id)

            now = self._clock()
            record = SessionRecord(
                session_id=session_id,
                config=config,
                client=self._client_factory(session_id),
                gateway=self._gateway_factory(config),
                created_at=now,
                last_activity_at=now,
            )
            record.client.set_event_handler(partial(self._on_client_event, record))
            self._sessions[session_id] = record

        logger.info(
            "Session created",
            extra_data={
                "session_id": session_id,
                "tenant_id": config.tenant_id,
                "bot_mode": config.bot_mode.name.value,
                "provider": record.client.provider_name,
            },
        )
        record.track(self._run_init(record), name=f"session-init-{session_id}")
        return record

    async def _run_init(self, record: SessionRecord) -> None:
        """
        client.initialize() with linear backoff (base × attempt).

        The wait is on the session's stop event, so a stop requested between
        attempts ends the loop immediately.
        """
        last_error: Optional[BaseException] = None
        with bind_session(record.session_id):
            for attempt in range(1, self.init_max_retries + 1):
                if record.closed:
                    return
                try:
                    await record.client.initialize()
                    logger.info(
                        "Session client initialized",
                        extra_data={"session_id": record.session_id, "attempt": attempt},
                    )
                    return
                except Exception as exc:
                    last_error = exc
                    logger.warning(
                        "Session init attempt failed",
                        extra_data={
                            "session_id": record.session_id,
                            "attempt": attempt,
                            "max_retries": self.init_max_retries,
                            "error": str(exc),
                        },
                    )

                if attempt == self.init_max_retries:
                    break

                delay = self.init_backoff_base_seconds * attempt
                try:
                    await asyncio.wait_for(record.stop_event.wait(), timeout=delay)
                    return
                except asyncio.TimeoutError:
                    continue

            await self._fail_session(record, last_error)

    async def _fail_session(self, record: SessionRecord, error: Optional[BaseException]) -> None:
        async with self._lock:
            if self._sessions.get(record.session_id) is not record:
                return
            del self._sessions[record.session_id]

        message = str(error) if error else "initialization failed"
        logger.error(
            "Session initialization failed, giving up",
            extra_data={
                "session_id": record.session_id,
                "tenant_id": record.tenant_id,
                "attempts": self.init_max_retries,
                "error": message,
            },
        )
        await self._teardown(record, SessionState.FAILED)
        self.hub.publish(record.session_id, SessionEvent.SESSION_FAILED, {"error": message})
        self.hub.publish(record.session_id, SessionEvent.ERROR, {"message": message})

    async def stop_session(self, session_id: str) -> None:
        """
        Raises:
            SessionNotFoundError: no live session with this id
        """
        async with self._lock:
            record = self._sessions.pop(session_id, None)
        if record is None:
            raise SessionNotFoundError(session_id)

        await self._teardown(record, SessionState.STOPPED)
        # זמן לגטוויי לשחרר קבצים לפני שמישהו יוצר session באותו שם
        await asyncio.sleep(self.stop_grace_seconds)
        logger.info("Session stopped", extra_data={"session_id": session_id})
        self.hub.publish(session_id, SessionEvent.SESSION_STOPPED, {})

    async def clear_session(self, session_id: str) -> None:
        """
        Stop (if live), log out and delete stored auth material.

        Raises:
            SessionNotFoundError: neither a live session nor auth material exists
        """
        async with self._lock:
            record = self._sessions.pop(session_id, None)

        auth_dir = self.auth_data_dir / f"session-{session_id}"
        has_auth_data = await asyncio.to_thread(auth_dir.exists)
        if record is None and not has_auth_data:
            raise SessionNotFoundError(session_id)

        if record is not None:
            try:
                await record.client.logout()
            except Exception as exc:
                logger.warning(
                    "Client logout failed during clear",
                    extra_data={"session_id": session_id, "error": str(exc)},
                )
            await self._teardown(record, SessionState.STOPPED)
            await asyncio.sleep(self.stop_grace_seconds)
            self.hub.publish(session_id, SessionEvent.SESSION_STOPPED, {})

        if has_auth_data:
            try:
                await asyncio.to_thread(shutil.rmtree, auth_dir)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning(
                    "Could not delete session auth data",
                    extra_data={"session_id": session_id, "path": str(auth_dir), "error": str(exc)},
                )

        logger.info(
            "Session cleared",
            extra_data={"session_id": session_id, "was_live": record is not None},
        )
        self.hub.publish(session_id, SessionEvent.SESSION_CLEARED, {})

    def _set_state(self, record: SessionRecord, new_state: SessionState) -> bool:
        if record.state == new_state and new_state not in TERMINAL_SESSION_STATES:
            return True
        if not is_valid_session_transition(record.state, new_state):
            logger.warning(
                "Ignoring invalid session transition",
                extra_data={
                    "session_id": record.session_id,
                    "old_state": record.state.value,
                    "new_state": new_state.value,
                },
            )
            return False
        logger.info(
            "Session state transition",
            extra_data={
                "session_id": record.session_id,
                "old_state": record.state.value,
                "new_state": new_state.value,
            },
        )
        record.state = new_state
        return True

    async def _teardown(self, record: SessionRecord, final_state: SessionState) -> None:
        """Close a record that is already out of the registry"""
        self._set_state(record, final_state)
        record.stop_event.set()
        record.qr_data_url = None
        record.client.set_event_handler(None)

        current = asyncio.current_task()
        pending = [t for t in list(record.tasks) if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        try:
            await record.client.destroy()
        except Exception as exc:
            logger.warning(
                "Client destroy failed",
                extra_data={"session_id": record.session_id, "error": str(exc)},
            )

    # ==================== reclamation ====================

    def _reclaim_reason(self, record: SessionRecord, now: float) -> Optional[str]:
        if now - record.last_activity_at > self.inactivity_timeout_seconds:
            return REASON_INACTIVE
        if now - record.created_at > self.max_age_seconds:
            return REASON_MAX_AGE
        if not record.is_ready and now - record.created_at > self.ready_grace_seconds:
            return REASON_NEVER_READY
        return None

    async def sweep_idle_sessions(self, now: Optional[float] = None) -> list[tuple[str, str]]:
        """Reclaim idle, too-old and never-linked sessions. Returns (session_id, reason) pairs."""
        now = self._clock() if now is None else now
        victims: list[tuple[SessionRecord, str]] = []

        async with self._lock:
            for session_id, record in list(self._sessions.items()):
                reason = self._reclaim_reason(record, now)
                if reason is not None:
                    del self._sessions[session_id]
                    victims.append((record, reason))

        for record, reason in victims:
            logger.info(
                "Reclaiming session",
                extra_data={
                    "session_id": record.session_id,
                    "tenant_id": record.tenant_id,
                    "reason": reason,
                    "state": record.state.value,
                },
            )
            await self._teardown(record, SessionState.RECLAIMED)
            self.hub.publish(record.session_id, SessionEvent.SESSION_RECLAIMED, {"reason": reason})

        return [(record.session_id, reason) for record, reason in victims]

    async def run_maintenance(self) -> None:
        """One sweep pass: idle sessions, then order entries nobody came back to."""
        await self.sweep_idle_sessions()
        await self.pipeline.order_machine.evict_stale()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.run_maintenance()
            except Exception as exc:
                logger.error("Session sweep failed", extra_data={"error": str(exc)}, exc_info=True)

    async def _rate_limit_cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            removed = self.rate_limiter.cleanup()
            if removed:
                logger.debug("Rate limiter cleanup", extra_data={"removed": removed})

    async def start(self) -> None:
        if self._background_tasks:
            return
        self._background_tasks = [
            asyncio.create_task(self._sweep_loop(), name="session-sweep"),
            asyncio.create_task(self._rate_limit_cleanup_loop(), name="rate-limit-cleanup"),
        ]
        logger.info(
            "Session manager started",
            extra_data={
                "sweep_interval_seconds": self.sweep_interval_seconds,
                "cleanup_interval_seconds": self.cleanup_interval_seconds,
            },
        )

    async def shutdown(self) -> None:
        for task in self._background_tasks:
            task.cancel()
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)
        self._background_tasks = []

        session_ids = list(self._sessions)
        results = await asyncio.gather(
            *(self.stop_session(sid) for sid in session_ids),
            return_exceptions=True,
        )
        for session_id, result in zip(session_ids, results):
            if isinstance(result, Exception) and not isinstance(result, SessionNotFoundError):
                logger.error(
                    "Failed to stop session on shutdown",
                    extra_data={"session_id": session_id, "error": str(result)},
                )
        logger.info("Session manager shut down", extra_data={"stopped": len(session_ids)})

    # ==================== events ====================

    async def _on_client_event(self, record: SessionRecord, event: TransportEvent) -> None:
        if self._sessions.get(record.session_id) is not record:
            return
        await self._dispatch(record, event)

    async def dispatch_event(self, session_id: str, event: TransportEvent) -> None:
        """Route one transport event. Unknown or closed sessions are ignored."""
        record = self._sessions.get(session_id)
        if record is None:
            logger.debug(
                "Event for unknown session ignored",
                extra_data={"session_id": session_id, "event": event.type.value},
            )
            return
        await self._dispatch(record, event)

    async def _dispatch(self, record: SessionRecord, event: TransportEvent) -> None:
        if record.closed:
            return
        record.last_activity_at = self._clock()
        handler = self._get_event_handler(event.type)
        with bind_session(record.session_id):
            await handler(record, event)

    def _get_event_handler(self, event_type: TransportEventType):
        handlers = {
            TransportEventType.LOADING: self._handle_loading,
            TransportEventType.QR: self._handle_qr,
            TransportEventType.AUTHENTICATED: self._handle_authenticated,
            TransportEventType.AUTH_FAILURE: self._handle_auth_failure,
            TransportEventType.READY: self._handle_ready,
            TransportEventType.MESSAGE: self._handle_message,
            TransportEventType.DISCONNECTED: self._handle_disconnected,
        }
        return handlers[event_type]

    async def _handle_loading(self, record: SessionRecord, event: TransportEvent) -> None:
        self.hub.publish(
            record.session_id,
            SessionEvent.LOADING,
            {"percent": event.data.get("percent"), "message": event.data.get("message")},
        )

    async def _handle_qr(self, record: SessionRecord, event: TransportEvent) -> None:
        data_url = event.data.get("dataUrl")
        if not data_url or not self._set_state(record, SessionState.AWAITING_LINK):
            return
        record.qr_data_url = data_url
        self.hub.publish(record.session_id, SessionEvent.QR, {"dataUrl": data_url})

    async def _handle_authenticated(self, record: SessionRecord, event: TransportEvent) -> None:
        self.hub.publish(record.session_id, SessionEvent.AUTHENTICATED, {})

    async def _handle_auth_failure(self, record: SessionRecord, event: TransportEvent) -> None:
        logger.warning(
            "Session authentication failed",
            extra_data={"session_id": record.session_id, "message": event.data.get("message")},
        )
        self.hub.publish(
            record.session_id,
            SessionEvent.AUTH_FAILURE,
            {"message": event.data.get("message")},
        )

    async def _handle_ready(self, record: SessionRecord, event: TransportEvent) -> None:
        if record.is_ready or not self._set_state(record, SessionState.READY):
            return
        record.qr_data_url = None
        record.ready_at = self._clock()
        self.hub.publish(record.session_id, SessionEvent.READY, {})

    async def _handle_message(self, record: SessionRecord, event: TransportEvent) -> None:
        if event.message is None:
            return
        record.track(
            self.pipeline.handle(record, event.message),
            name=f"session-message-{record.session_id}",
        )

    async def _handle_disconnected(self, record: SessionRecord, event: TransportEvent) -> None:
        async with self._lock:
            if self._sessions.get(record.session_id) is not record:
                return
            del self._sessions[record.session_id]

        reason = event.data.get("reason")
        logger.warning(
            "Session disconnected",
            extra_data={"session_id": record.session_id, "reason": reason},
        )
        await self._teardown(record, SessionState.DISCONNECTED)
        self.hub.publish(record.session_id, SessionEvent.DISCONNECTED, {"reason": reason})


_manager: SessionManager | None = None
_manager_lock = threading.Lock()


def get_session_manager() -> SessionManager:
    """The process-wide manager (created on first use)"""
    global _manager
    if _manager is None:
        with _manager_lock:
            if _manager is None:
                from app.domain.services.tenant_service import lookup_library_file

                _manager = SessionManager(library_lookup=lookup_library_file)
    return _manager


def reset_session_manager(manager: SessionManager | None = None) -> None:
    """החלפת/איפוס ה-manager — לשימוש בבדיקות בלבד."""
    global _manager
    with _manager_lock:
        _manager = manager
