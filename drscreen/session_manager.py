import asyncio
import contextlib
import logging
import os
from typing import Any, Awaitable, Callable, Dict, Optional

from .chromium import ExecutableLocator
from .config import Settings
from .dispatcher import DEFAULT_BODY, FileInput, MessageDispatcher, OutboundMessage
from .errors import UnrecoverableNavigationFault
from .qr_broadcast import QrBroadcaster
from .session_state import Effect, EventKind, Session, SessionEvent, SessionState, transition
from .storage import Storage
from .utils import json_log
from .wa_web import WhatsAppWebClient

EventHandler = Callable[[SessionEvent], Awaitable[None]]
ClientFactory = Callable[[Settings, str, EventHandler], Any]

# states in which a live client is already paired or pairing
_ACTIVE_STATES = (SessionState.AWAITING_QR_SCAN, SessionState.AUTHENTICATED, SessionState.READY)


def _exit_process(code: int):
    logging.shutdown()
    os._exit(code)


class SessionManager:
    """
    Owns the one WhatsApp Web client for the process.

    Lifecycle: construct at startup, `initialize()` once, hand the instance to the
    HTTP layer, `shutdown()` on exit. Client events and explicit calls all go
    through `handle_event`, which applies the pure `transition` and then runs the
    resulting effects. Transitions happen between awaits on one event loop, so
    there is no lock; concurrent senders see whichever readiness was written last.
    """

    def __init__(
        self,
        settings: Settings,
        client_factory: Optional[ClientFactory] = None,
        locator: Optional[ExecutableLocator] = None,
        qr: Optional[QrBroadcaster] = None,
        storage: Optional[Storage] = None,
        exit_process: Callable[[int], None] = _exit_process,
    ):
        self.settings = settings
        self.policy = settings.retry_policy()
        self.client_factory = client_factory or self._default_client_factory
        self.locator = locator or ExecutableLocator(override=settings.executable_path)
        self.qr = qr or QrBroadcaster()
        self.storage = storage
        self.exit_process = exit_process
        self.dispatcher = MessageDispatcher(self)
        self._session = Session()
        self._client = None
        self._generation = 0
        self._attempt_task: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None

    def _default_client_factory(self, settings: Settings, executable_path: str, on_event: EventHandler):
        return WhatsAppWebClient(settings, executable_path, on_event, storage=self.storage)

    @property
    def session(self) -> Session:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def is_ready(self) -> bool:
        return self._session.ready

    @property
    def retry_count(self) -> int:
        return self._session.retry_count

    @property
    def client(self):
        return self._client

    @property
    def starting(self) -> bool:
        return self._attempt_task is not None

    @property
    def retry_pending(self) -> bool:
        return self._retry_task is not None and not self._retry_task.done()

    def get_status(self) -> Dict[str, Any]:
        return {
            "ready": self.is_ready,
            "retryCount": self._session.retry_count,
            "maxRetries": self.policy.max_retries,
        }

    async def initialize(self):
        if self.starting or self.retry_pending or self._session.state in _ACTIVE_STATES:
            json_log("wa_initialize_skipped", state=self._session.state.value, starting=self.starting,
                     retry_pending=self.retry_pending)
            return
        await self.handle_event(SessionEvent(EventKind.START))
        await self._attempt()

    async def send_message(self, phone: str, body: Optional[str] = DEFAULT_BODY, file_input: Optional[FileInput] = None,
                           filename: Optional[str] = None) -> OutboundMessage:
        return await self.dispatcher.send(phone, body, file_input, filename)

    async def shutdown(self) -> int:
        """Tear the client down. Returns the process exit code: 0 on clean teardown, 1 otherwise."""
        json_log("wa_shutdown", state=self._session.state.value, starting=self.starting)
        if self.retry_pending:
            self._retry_task.cancel()
        self._retry_task = None
        await self._cancel_attempt()
        ok = await self._teardown()
        await self.handle_event(SessionEvent(EventKind.SHUTDOWN))
        return 0 if ok else 1

    async def handle_event(self, event: SessionEvent):
        previous = self._session
        self._session, effects = transition(previous, event, self.policy)
        json_log(
            "wa_event",
            kind=event.kind.value,
            reason=event.reason,
            previous=previous.state.value,
            state=self._session.state.value,
            retry_count=self._session.retry_count,
        )
        for effect in effects:
            await self._run_effect(effect, event)

    def _client_events(self, generation: int) -> EventHandler:
        async def on_event(event: SessionEvent):
            if generation != self._generation or self._client is None:
                json_log("wa_stale_event", kind=event.kind.value, reason=event.reason)
                return
            await self.handle_event(event)

        return on_event

    async def _attempt(self):
        task = asyncio.current_task()
        self._attempt_task = task
        json_log("wa_initializing", attempt=self._session.retry_count + 1, max_retries=self.policy.max_retries)
        client = None
        error = None
        try:
            executable = self.locator.locate()
            json_log("wa_chromium", path=executable)
            self._generation += 1
            client = self.client_factory(self.settings, executable, self._client_events(self._generation))
            self._client = client
            await client.start()
        except Exception as e:
            error = e
        finally:
            if self._attempt_task is task:
                self._attempt_task = None
        if error is None:
            return
        if client is not None and self._client is not client:
            # torn down while starting; whoever did that owns the session now
            json_log("wa_stale_start_error", error=str(error), error_type=type(error).__name__)
            return
        json_log("wa_initialize_error", error=str(error), error_type=type(error).__name__)
        await self.handle_event(SessionEvent(EventKind.INIT_FAILED, reason=str(error)))

    async def _cancel_attempt(self):
        task = self._attempt_task
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self._attempt_task = None

    async def _retry_after(self, delay: float):
        await asyncio.sleep(delay)
        self._retry_task = None
        await self._attempt()

    async def _teardown(self) -> bool:
        self.qr.clear()
        client, self._client = self._client, None
        if client is None:
            return True
        try:
            await client.stop()
            return True
        except Exception as e:
            json_log("wa_teardown_error", error=str(e))
            return False

    async def _run_effect(self, effect: Effect, event: SessionEvent):
        if effect is Effect.PUBLISH_QR:
            if event.qr is not None:
                self.qr.publish(event.qr)
                json_log("wa_qr", hint="Scan the QR code from /ui to log in")
        elif effect is Effect.CLEAR_QR:
            self.qr.clear()
        elif effect is Effect.BACKUP_SESSION:
            self._backup_session()
        elif effect is Effect.TEARDOWN:
            await self._teardown()
        elif effect is Effect.SCHEDULE_RETRY:
            delay = self.policy.delay_for(self._session.retry_count)
            json_log("wa_retry_scheduled", attempt=self._session.retry_count, max_retries=self.policy.max_retries, delay=delay)
            self._retry_task = asyncio.create_task(self._retry_after(delay))
        elif effect is Effect.REINITIALIZE:
            await self._teardown()
            await self.initialize()
        elif effect is Effect.TERMINATE:
            fault = UnrecoverableNavigationFault(event.reason or "navigation error")
            json_log("wa_fatal", error=str(fault))
            self.exit_process(1)

    def _backup_session(self):
        if self.storage is None:
            return
        try:
            backup = self.storage.create_session_backup(self.settings.profile_dir)
            pruned = self.storage.prune_session_backups(max_keep=5)
            if backup:
                json_log("wa_session_backup", path=str(backup), pruned=pruned)
        except OSError as e:
            json_log("wa_session_backup_failed", error=str(e))
