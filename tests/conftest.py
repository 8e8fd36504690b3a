import asyncio
import os
from pathlib import Path

import pytest

from drscreen.chromium import ExecutableLocator
from drscreen.config import Settings
from drscreen.session_manager import SessionManager
from drscreen.session_state import EventKind, SessionEvent
from drscreen.storage import Storage


class FakeClient:
    """Stands in for WhatsAppWebClient: records calls, emits events on demand."""

    def __init__(self, settings, executable_path, on_event, start_error=None, send_error=None, stop_error=None):
        self.settings = settings
        self.executable_path = executable_path
        self.on_event = on_event
        self.start_error = start_error
        self.send_error = send_error
        self.stop_error = stop_error
        self.gate = None  # asyncio.Event that start() waits on when set
        self.send_gate = None  # same, for send_text and send_media
        self.started = False
        self.stopped = False
        self.texts = []
        self.media = []

    async def start(self):
        self.started = True
        if self.gate is not None:
            await self.gate.wait()
        if self.start_error:
            raise self.start_error

    async def stop(self):
        self.stopped = True
        if self.stop_error:
            raise self.stop_error

    async def emit(self, kind, reason=None, qr=None):
        await self.on_event(SessionEvent(kind, reason=reason, qr=qr))

    async def send_text(self, chat_id, text):
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_error:
            raise self.send_error
        self.texts.append((chat_id, text))

    async def send_media(self, chat_id, attachment, caption=None):
        if self.send_gate is not None:
            await self.send_gate.wait()
        if self.send_error:
            raise self.send_error
        self.media.append((chat_id, attachment, caption))


class ClientFactory:
    def __init__(self):
        self.instances = []
        self.start_error = None
        self.send_error = None
        self.stop_error = None
        self.gate = None  # handed to every client built from now on

    def __call__(self, settings, executable_path, on_event):
        client = FakeClient(settings, executable_path, on_event, start_error=self.start_error,
                            send_error=self.send_error, stop_error=self.stop_error)
        client.gate = self.gate
        self.instances.append(client)
        return client

    @property
    def last(self) -> FakeClient:
        return self.instances[-1]


class ExitRecorder:
    def __init__(self):
        self.codes = []

    def __call__(self, code):
        self.codes.append(code)


@pytest.fixture
def settings(tmp_path) -> Settings:
    storage_dir = tmp_path / "storage"
    return Settings(
        storage_dir=storage_dir,
        database_path=storage_dir / "app.db",
        session_data_path=tmp_path / "sessions",
        retry_base_delay=0,
        retry_max_delay=0,
        salt_rounds=4,
        pdf_template_path=tmp_path / "no-template.pdf",
        secret_key="test-secret",
    )


@pytest.fixture
def storage(settings) -> Storage:
    s = Storage(base=settings.storage_dir)
    s.ensure_layout()
    return s


@pytest.fixture
def chromium(tmp_path) -> Path:
    exe = tmp_path / "bin" / "chromium"
    exe.parent.mkdir(parents=True)
    exe.write_text("#!/bin/sh\n")
    os.chmod(exe, 0o755)
    return exe


@pytest.fixture
def locator(chromium) -> ExecutableLocator:
    return ExecutableLocator(candidates=[str(chromium)], patterns=[], env={})


@pytest.fixture
def factory() -> ClientFactory:
    return ClientFactory()


@pytest.fixture
def exit_recorder() -> ExitRecorder:
    return ExitRecorder()


@pytest.fixture
def manager(settings, factory, locator, storage, exit_recorder) -> SessionManager:
    return SessionManager(settings, client_factory=factory, locator=locator, storage=storage,
                          exit_process=exit_recorder)


async def bring_up(manager: SessionManager) -> FakeClient:
    """Initialize and walk the fake client through pairing to READY."""
    await manager.initialize()
    client = manager.client
    await client.emit(EventKind.AUTHENTICATED)
    await client.emit(EventKind.READY)
    return client


@pytest.fixture
def ready_manager(manager) -> SessionManager:
    asyncio.run(bring_up(manager))
    assert manager.is_ready
    return manager
