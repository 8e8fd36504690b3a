"""
WhatsApp session state machine.

`transition` is a pure function: given the current session snapshot and one
input event it returns the next snapshot plus the side effects the caller
(SessionManager) must carry out. Nothing here touches the browser, the
filesystem or the event loop, so every transition can be exercised with
synthetic events.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from .qr_broadcast import QrPayload

NAVIGATION_ERROR = "NAVIGATION_ERROR"


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    AWAITING_QR_SCAN = "awaiting_qr_scan"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    DISCONNECTED = "disconnected"
    FAILED = "failed"


class EventKind(str, Enum):
    START = "start"
    QR = "qr"
    AUTHENTICATED = "authenticated"
    READY = "ready"
    AUTH_FAILURE = "auth_failure"
    INIT_FAILED = "init_failed"
    DISCONNECTED = "disconnected"
    TRANSPORT_DROPPED = "transport_dropped"
    SHUTDOWN = "shutdown"


class Effect(str, Enum):
    PUBLISH_QR = "publish_qr"
    CLEAR_QR = "clear_qr"
    BACKUP_SESSION = "backup_session"
    TEARDOWN = "teardown"
    SCHEDULE_RETRY = "schedule_retry"
    REINITIALIZE = "reinitialize"
    TERMINATE = "terminate"


@dataclass(frozen=True)
class SessionEvent:
    kind: EventKind
    reason: Optional[str] = None
    qr: Optional[QrPayload] = None


@dataclass(frozen=True)
class Session:
    state: SessionState = SessionState.UNINITIALIZED
    retry_count: int = 0
    last_error: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.state is SessionState.READY


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 5
    base_delay: float = 5.0
    max_delay: float = 60.0
    exponential: bool = True
    reconnect_on_disconnect: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        if not self.exponential:
            return min(self.base_delay, self.max_delay)
        return min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)


Transition = Tuple[Session, Tuple[Effect, ...]]


def _failed_attempt(session: Session, reason: Optional[str], policy: RetryPolicy) -> Transition:
    retry_count = session.retry_count + 1
    if retry_count < policy.max_retries:
        state = session.state
        if state in (SessionState.FAILED, SessionState.READY):
            state = SessionState.DISCONNECTED
        return replace(session, state=state, retry_count=retry_count, last_error=reason), (Effect.TEARDOWN, Effect.SCHEDULE_RETRY)
    return replace(session, state=SessionState.FAILED, retry_count=retry_count, last_error=reason), (Effect.TEARDOWN,)


def transition(session: Session, event: SessionEvent, policy: RetryPolicy) -> Transition:
    kind = event.kind

    if kind is EventKind.START:
        if session.state is SessionState.FAILED:
            # operator re-invocation gets a fresh retry budget
            return Session(state=SessionState.UNINITIALIZED, retry_count=0, last_error=session.last_error), ()
        return session, ()

    if kind is EventKind.QR:
        return replace(session, state=SessionState.AWAITING_QR_SCAN), (Effect.PUBLISH_QR,)

    if kind is EventKind.AUTHENTICATED:
        return replace(session, state=SessionState.AUTHENTICATED), (Effect.CLEAR_QR, Effect.BACKUP_SESSION)

    if kind is EventKind.READY:
        return replace(session, state=SessionState.READY, retry_count=0, last_error=None), ()

    if kind in (EventKind.AUTH_FAILURE, EventKind.INIT_FAILED):
        return _failed_attempt(session, event.reason, policy)

    if kind is EventKind.DISCONNECTED:
        was_ready = session.state is SessionState.READY
        nxt = replace(session, state=SessionState.DISCONNECTED, last_error=event.reason)
        if event.reason == NAVIGATION_ERROR:
            return nxt, (Effect.TEARDOWN, Effect.TERMINATE)
        if was_ready and policy.reconnect_on_disconnect:
            return nxt, (Effect.REINITIALIZE,)
        return nxt, (Effect.TEARDOWN,)

    if kind is EventKind.TRANSPORT_DROPPED:
        # later drops from sends queued on the same dead client are already covered by the first
        if session.state is not SessionState.READY:
            return session, ()
        return replace(session, state=SessionState.DISCONNECTED, last_error=event.reason), (Effect.REINITIALIZE,)

    if kind is EventKind.SHUTDOWN:
        return replace(session, state=SessionState.UNINITIALIZED), ()

    raise ValueError(f"unknown session event {kind!r}")
