"""Turn-taking state machine for one conversation.

The controller is synchronous and does no I/O. The session applies a
transition, then performs whatever sends or provider calls it implies.

Each provider dispatch is tagged with ``version``. Any transition that
supersedes the in-flight turn (interruption, explicit interrupt, end) bumps
the version, so a reply carrying an older tag is stale and must be dropped.
"""
from __future__ import annotations
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from .errors import ProtocolError


class Phase(str, Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"
    SPEAKING = "SPEAKING"
    ENDED = "ENDED"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    role: Role
    content: str
    timestamp: float = field(default_factory=time.time)
    latency_ms: Optional[float] = None
    # Opaque audio payload; only user turns carry it
    audio: Optional[bytes] = field(default=None, repr=False)
    mime_type: Optional[str] = None


@dataclass(frozen=True)
class Dispatch:
    """A user turn accepted for the provider, with the history it follows."""
    version: int
    context: Tuple[Turn, ...]
    turn: Turn
    interrupted: bool = False


class TurnController:
    def __init__(self):
        self.phase = Phase.IDLE
        self.context: List[Turn] = []
        self.pending_interrupt = False
        self.version = 0
        # True once the reply for the current version was delivered
        self.reply_delivered = False

    @property
    def active(self) -> bool:
        return self.phase in (Phase.LISTENING, Phase.SPEAKING)

    def is_current(self, version: int) -> bool:
        return self.phase == Phase.SPEAKING and version == self.version

    def _require_active(self, what: str) -> None:
        if self.phase == Phase.ENDED:
            raise ProtocolError(f"Conversation has ended; '{what}' not accepted")
        if self.phase == Phase.IDLE:
            raise ProtocolError(f"Conversation not started; send 'start' before '{what}'")

    def start(self, opening: Optional[str] = None) -> None:
        if self.phase != Phase.IDLE:
            raise ProtocolError(f"Cannot start in phase {self.phase.value}")
        self.context = []
        if opening:
            self.context.append(Turn(role=Role.ASSISTANT, content=opening))
        self.phase = Phase.LISTENING

    def user_turn(self, turn: Turn) -> Dispatch:
        """Accept a user turn; interrupts the assistant first when it is speaking."""
        self._require_active("user_turn")
        interrupted = False
        if self.phase == Phase.SPEAKING:
            self._supersede()
            self.pending_interrupt = True
            interrupted = True
        history = tuple(self.context)
        self.context.append(turn)
        self.version += 1
        self.reply_delivered = False
        self.phase = Phase.SPEAKING
        return Dispatch(version=self.version, context=history, turn=turn, interrupted=interrupted)

    def interrupt(self) -> bool:
        """Explicit stop; returns whether an assistant turn was cut off."""
        self._require_active("interrupt")
        was_speaking = self.phase == Phase.SPEAKING
        self._supersede()
        self.pending_interrupt = True
        return was_speaking

    def acknowledge_interrupt(self) -> None:
        self.pending_interrupt = False

    def accept_reply(self, version: int, text: str, latency_ms: float) -> Optional[Turn]:
        """Record the provider's reply, or return None when it is stale."""
        if not self.is_current(version) or self.reply_delivered:
            return None
        reply = Turn(role=Role.ASSISTANT, content=text, latency_ms=latency_ms)
        self.context.append(reply)
        self.reply_delivered = True
        return reply

    def fail(self, version: int) -> bool:
        """Provider failed for ``version``; False when that turn was already superseded."""
        if not self.is_current(version):
            return False
        self.phase = Phase.LISTENING
        self.reply_delivered = False
        return True

    def finish_speaking(self, version: Optional[int] = None) -> bool:
        """Playback of the delivered reply completed.

        Returns False (no transition) when there is nothing to finish: the
        assistant is listening already, the reply has not arrived yet, or the
        timer belongs to a superseded turn.
        """
        self._require_active("speaking_finished")
        if self.phase != Phase.SPEAKING or not self.reply_delivered:
            return False
        if version is not None and version != self.version:
            return False
        self.phase = Phase.LISTENING
        self.reply_delivered = False
        return True

    def end(self) -> None:
        if self.phase == Phase.ENDED:
            raise ProtocolError("Conversation has already ended")
        self.version += 1
        self.context.clear()
        self.pending_interrupt = False
        self.reply_delivered = False
        self.phase = Phase.ENDED

    def _supersede(self) -> None:
        self.version += 1
        self.reply_delivered = False
        self.phase = Phase.LISTENING
