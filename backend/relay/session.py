"""Per-connection session orchestration and the connection registry"""
from __future__ import annotations
import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Set

from .codec import (
    AssistantTurnMessage,
    EndMessage,
    EndedMessage,
    ErrorMessage,
    Event,
    InterruptMessage,
    InterruptedMessage,
    SpeakingFinishedMessage,
    SpeakingStartedMessage,
    SpeakingStoppedMessage,
    StartMessage,
    StartedMessage,
    UserTurnMessage,
    encode,
)
from .config import RelaySettings
from .errors import ProtocolError, ProviderError, ProviderTimeout, RegistryError, RelayError, log_event
from .provider import Provider
from .turns import Dispatch, Phase, Role, Turn, TurnController

logger = logging.getLogger(__name__)

Transmit = Callable[[str], Awaitable[None]]


class Session:
    """One conversation bound to one connection.

    ``handle_inbound`` applies the turn-controller transition before it awaits
    anything, so the next inbound event always sees post-transition state.
    Provider calls run as background tasks; their results are applied under
    the send lock and discarded when their dispatch version is no longer
    current.
    """

    def __init__(
        self,
        id: str,
        transmit: Transmit,
        provider: Provider,
        settings: RelaySettings,
        on_end: Optional[Callable[["Session"], None]] = None,
    ):
        self.id = id
        self.transmit = transmit
        self.provider = provider
        self.settings = settings
        self.on_end = on_end
        self.controller = TurnController()
        self.created_at = time.time()
        self.metrics = {"turns": 0, "replies": 0, "interruptions": 0, "stale_replies": 0, "provider_errors": 0}
        self._send_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._speaking_timer: Optional[asyncio.Task] = None
        self._released = False
        self._handlers = {
            StartMessage: self._on_start,
            UserTurnMessage: self._on_user_turn,
            InterruptMessage: self._on_interrupt,
            SpeakingFinishedMessage: self._on_speaking_finished,
            EndMessage: self._on_end,
        }

    @property
    def phase(self) -> Phase:
        return self.controller.phase

    @property
    def context(self) -> List[Turn]:
        return list(self.controller.context)

    async def _send(self, *events: Event) -> None:
        async with self._send_lock:
            await self._transmit_locked(*events)

    async def _transmit_locked(self, *events: Event) -> None:
        for event in events:
            await self.transmit(encode(event))

    async def report_error(self, exc: RelayError) -> None:
        log_event("error", session_id=self.id, code=exc.code, recoverable=exc.recoverable, message=exc.message)
        await self._send(ErrorMessage.from_exception(exc))

    async def handle_inbound(self, event: Event) -> None:
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"No handler for inbound event {type(event).__name__}")
        try:
            await handler(event)
        except ProtocolError as e:
            log_event("protocol_error", session_id=self.id, phase=self.phase.value, event_type=type(event).__name__)
            await self.report_error(e)

    async def _on_start(self, event: StartMessage) -> None:
        opening = self.settings.relay_opening_turn or None
        self.controller.start(opening)
        log_event("session_started", session_id=self.id, seeded=bool(opening))
        await self._send(StartedMessage(message=self.settings.relay_started_message))

    async def _on_user_turn(self, event: UserTurnMessage) -> None:
        turn = Turn(
            role=Role.USER,
            content=(event.text or "").strip(),
            audio=event.audio,
            mime_type=event.mime_type,
        )
        dispatch = self.controller.user_turn(turn)
        self._cancel_speaking_timer()
        self.metrics["turns"] += 1
        if dispatch.interrupted:
            self.metrics["interruptions"] += 1
            log_event("interrupted", session_id=self.id, reason="user_turn", version=dispatch.version)
            await self._send(InterruptedMessage(message="Assistant interrupted by new user input"))
            self.controller.acknowledge_interrupt()
        self._spawn(self._run_dispatch(dispatch))

    async def _on_interrupt(self, event: InterruptMessage) -> None:
        was_speaking = self.controller.interrupt()
        self._cancel_speaking_timer()
        if was_speaking:
            self.metrics["interruptions"] += 1
        log_event("interrupted", session_id=self.id, reason="explicit", was_speaking=was_speaking)
        await self._send(InterruptedMessage(message="Assistant stopped, ready for new input"))
        self.controller.acknowledge_interrupt()

    async def _on_speaking_finished(self, event: SpeakingFinishedMessage) -> None:
        if not self.controller.finish_speaking():
            # late or duplicate acknowledgment
            log_event("speaking_ack_ignored", session_id=self.id, phase=self.phase.value)
            return
        self._cancel_speaking_timer()
        await self._send(SpeakingStoppedMessage())

    async def _on_end(self, event: EndMessage) -> None:
        self.controller.end()
        self._cancel_background()
        self._release()
        log_event("session_end", session_id=self.id, reason="client", **self.metrics)
        await self._send(EndedMessage(message="Conversation ended successfully"))

    async def on_close(self) -> None:
        """Transport is gone: end without sending anything and leave the registry."""
        if self.controller.phase != Phase.ENDED:
            self.controller.end()
            log_event("session_end", session_id=self.id, reason="transport_closed", **self.metrics)
        self._cancel_background()
        self._release()

    async def shutdown(self, reason: str = "server_shutdown") -> None:
        if self.controller.phase == Phase.ENDED:
            return
        self.controller.end()
        self._cancel_background()
        self._release()
        log_event("session_end", session_id=self.id, reason=reason, **self.metrics)
        await self._send(EndedMessage(message="Server is shutting down. Please reconnect later."))

    async def _run_dispatch(self, dispatch: Dispatch) -> None:
        log_event(
            "dispatch",
            session_id=self.id,
            provider=self.provider.name,
            version=dispatch.version,
            context_turns=len(dispatch.context),
            interrupted=dispatch.interrupted,
        )
        timeout_s = self.settings.relay_provider_timeout_s
        start = time.perf_counter()
        try:
            reply = await asyncio.wait_for(self.provider.submit_turn(dispatch.context, dispatch.turn), timeout=timeout_s)
        except asyncio.TimeoutError:
            await self._provider_failed(dispatch.version, ProviderTimeout(f"No reply from provider within {timeout_s}s"))
            return
        except ProviderError as e:
            await self._provider_failed(dispatch.version, e)
            return
        except Exception as e:
            logger.exception(f"Provider {self.provider.name} raised unexpectedly for session {self.id}")
            await self._provider_failed(dispatch.version, ProviderError(f"Provider error: {e}"))
            return
        latency_ms = round((time.perf_counter() - start) * 1000.0, 2)

        # frames are built before the reply enters the context
        try:
            frames = [
                encode(AssistantTurnMessage(text=reply.text, latency_ms=latency_ms)),
                encode(SpeakingStartedMessage()),
            ]
        except ValueError as e:
            await self._provider_failed(dispatch.version, ProviderError(f"Provider reply could not be sent: {e}"))
            return

        async with self._send_lock:
            accepted = self.controller.accept_reply(dispatch.version, reply.text, latency_ms)
            if accepted is None:
                self.metrics["stale_replies"] += 1
                log_event("stale_reply", session_id=self.id, version=dispatch.version, current=self.controller.version)
                return
            self.metrics["replies"] += 1
            if self.settings.relay_log_latency:
                log_event("latency", session_id=self.id, version=dispatch.version, latency_ms=latency_ms)
            for raw in frames:
                await self.transmit(raw)
        if self.settings.relay_speaking_policy == "estimate":
            delay_ms = self.settings.speaking_duration_ms(reply.text)
            self._speaking_timer = self._spawn(self._finish_speaking_after(dispatch.version, delay_ms))

    async def _provider_failed(self, version: int, exc: ProviderError) -> None:
        async with self._send_lock:
            if not self.controller.fail(version):
                log_event("stale_provider_error", session_id=self.id, version=version, code=exc.code)
                return
            self.metrics["provider_errors"] += 1
            log_event("provider_error", session_id=self.id, version=version, code=exc.code, message=exc.message)
            await self._transmit_locked(ErrorMessage.from_exception(exc))

    async def _finish_speaking_after(self, version: int, delay_ms: int) -> None:
        await asyncio.sleep(delay_ms / 1000.0)
        async with self._send_lock:
            if not self.controller.active or not self.controller.finish_speaking(version):
                return
            await self._transmit_locked(SpeakingStoppedMessage())

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task is self._speaking_timer:
            self._speaking_timer = None
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task failed for session {self.id}: {task.exception()!r}")

    def _cancel_speaking_timer(self) -> None:
        if self._speaking_timer is not None and not self._speaking_timer.done():
            self._speaking_timer.cancel()
        self._speaking_timer = None

    def _cancel_background(self) -> None:
        self._cancel_speaking_timer()
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        if self.on_end is not None:
            self.on_end(self)


SessionFactory = Callable[..., Session]


class SessionRegistry:
    """Connection id -> Session. An entry lives from connect until ``end`` or close."""

    def __init__(self, session_factory: SessionFactory):
        self._factory = session_factory
        self._sessions: Dict[str, Session] = {}

    def create(self, connection_id: str, transmit: Transmit) -> Session:
        if connection_id in self._sessions:
            raise RegistryError(f"Connection {connection_id} already has a live session")
        session = self._factory(connection_id, transmit, on_end=self._session_ended)
        self._sessions[connection_id] = session
        log_event("session_open", session_id=connection_id, active_sessions=len(self._sessions))
        return session

    def _session_ended(self, session: Session) -> None:
        if self._sessions.get(session.id) is session:
            self.remove(session.id)

    def get(self, connection_id: str) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def remove(self, connection_id: str) -> Optional[Session]:
        session = self._sessions.pop(connection_id, None)
        if session is not None:
            log_event("session_close", session_id=connection_id, active_sessions=len(self._sessions))
        return session

    def all(self) -> List[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._sessions

    async def close_all(self, reason: str = "server_shutdown") -> None:
        sessions = self.all()
        logger.info(f"Closing {len(sessions)} active sessions ({reason})")
        for session in sessions:
            try:
                await session.shutdown(reason)
            except Exception as e:
                logger.warning(f"Failed to shut down session {session.id}: {e}")
            self.remove(session.id)
