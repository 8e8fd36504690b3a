import asyncio
import base64
import contextlib
import time
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable, Optional
from urllib.parse import quote

from playwright.async_api import BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PWTimeoutError

from .chromium import LAUNCH_ARGS
from .config import Settings
from .errors import AuthFailure, InvalidRecipient, TransportDropped, is_transport_dropped
from .qr_broadcast import QrPayload
from .session_state import NAVIGATION_ERROR, EventKind, SessionEvent
from .utils import json_log, phone_from_jid

if TYPE_CHECKING:
    from .dispatcher import Attachment
    from .storage import Storage

WHATSAPP_WEB_URL = "https://web.whatsapp.com/"

# WhatsApp Web selectors; these drift with WhatsApp releases, so several are tried.
QR_CONTAINER = "div[data-ref]"
CHAT_LIST = "#pane-side, [data-testid='chat-list']"
LOADING = "progress, [data-testid='startup-progress-bar']"
COMPOSER = "footer div[contenteditable='true'][role='textbox']"
TEXTBOX = "div[contenteditable='true'][role='textbox']"
INVALID_CHAT_POPUP = "div[data-animate-modal-popup='true']"
ATTACH_BUTTON = "[data-testid='attach-menu-plus'], [data-icon='plus'], [data-testid='clip'], [data-icon='clip'], [title='Attach']"
DOCUMENT_INPUT = "input[type='file'][accept='*']"
ANY_FILE_INPUT = "input[type='file']"
SEND_BUTTON = "[data-testid='send'], [aria-label='Send'], span[data-icon='send'], span[data-icon='wds-ic-send-filled']"

EventHandler = Callable[[SessionEvent], Awaitable[None]]


class WhatsAppWebClient:
    """
    Playwright automation for WhatsApp Web
    - Persistent profile so a paired session survives restarts
    - QR capture from the login canvas
    - Session events (qr, authenticated, ready, auth_failure, disconnected) pushed to `on_event`
    - Text and document sends through the chat UI
    """

    def __init__(
        self,
        settings: Settings,
        executable_path: str,
        on_event: EventHandler,
        storage: Optional["Storage"] = None,
        poll_interval: float = 1.0,
    ):
        self.settings = settings
        self.executable_path = executable_path
        self.on_event = on_event
        self.storage = storage
        self.poll_interval = poll_interval
        self.playwright: Optional[Playwright] = None
        self.ctx: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._stop = asyncio.Event()
        # the chat UI can only drive one send at a time
        self._send_lock = asyncio.Lock()
        self._authenticated = False
        self._ready = False
        self._gone = False

    async def start(self):
        profile = self.settings.profile_dir
        profile.mkdir(parents=True, exist_ok=True)
        if self.storage is not None:
            try:
                if self.storage.restore_session_if_empty(profile):
                    json_log("wa_session_restored", profile=str(profile))
            except OSError as e:
                json_log("wa_session_restore_failed", error=str(e))

        timeout_ms = int(self.settings.connect_timeout * 1000)
        json_log("wa_launching", executable=self.executable_path, headless=self.settings.headless)
        self.playwright = await async_playwright().start()
        try:
            self.ctx = await self.playwright.chromium.launch_persistent_context(
                user_data_dir=str(profile),
                executable_path=self.executable_path,
                headless=self.settings.headless,
                args=LAUNCH_ARGS,
                timeout=timeout_ms,
                viewport={"width": 1280, "height": 900},
            )
        except Exception:
            await self.playwright.stop()
            self.playwright = None
            raise

        pages = self.ctx.pages
        self.page = pages[0] if pages else await self.ctx.new_page()
        self.page.set_default_timeout(timeout_ms)
        self.page.on("crash", self._on_crash)
        self.ctx.on("close", self._on_close)

        try:
            await self.page.goto(WHATSAPP_WEB_URL, timeout=timeout_ms, wait_until="domcontentloaded")
        except PlaywrightError as e:
            # the watcher's login deadline still applies if the page never shows up
            json_log("wa_goto_failed", error=str(e))

        self._watch_task = asyncio.create_task(self._watch())

    async def stop(self):
        self._stop.set()
        task = self._watch_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        ctx, self.ctx = self.ctx, None
        pw, self.playwright = self.playwright, None
        self.page = None
        try:
            if ctx is not None:
                await ctx.close()
        finally:
            if pw is not None:
                await pw.stop()
        json_log("wa_client_stopped")

    # --- events ---

    async def _emit(self, event: SessionEvent):
        await self.on_event(event)

    async def _disconnect(self, reason: str):
        if self._gone or self._stop.is_set():
            return
        self._gone = True
        await self._emit(SessionEvent(EventKind.DISCONNECTED, reason=reason))

    async def _on_crash(self, page: Page):
        json_log("wa_page_crashed")
        await self._disconnect(NAVIGATION_ERROR)

    async def _on_close(self, ctx: BrowserContext):
        await self._disconnect("CONTEXT_CLOSED")

    async def _read_phase(self) -> Optional[str]:
        page = self.page
        if page is None:
            return None
        if await page.locator(CHAT_LIST).count():
            return "chats"
        if await page.locator(QR_CONTAINER).count():
            return "qr"
        if await page.locator(LOADING).count():
            return "loading"
        return None

    async def _read_qr(self) -> Optional[QrPayload]:
        container = self.page.locator(QR_CONTAINER).first
        ref = await container.get_attribute("data-ref")
        if not ref:
            return None
        image = ""
        canvas = container.locator("canvas")
        if await canvas.count():
            image = await canvas.first.evaluate("(c) => c.toDataURL('image/png')") or ""
        if not image.startswith("data:image/png;base64,"):
            png = await container.screenshot()
            image = "data:image/png;base64," + base64.b64encode(png).decode("ascii")
        return QrPayload(token=ref, image=image)

    async def _watch(self):
        deadline = time.monotonic() + self.settings.connect_timeout
        last_ref = None
        while not self._stop.is_set():
            try:
                phase = await self._read_phase()
                if phase == "chats":
                    if not self._authenticated:
                        self._authenticated = True
                        await self._emit(SessionEvent(EventKind.AUTHENTICATED))
                    if not self._ready:
                        self._ready = True
                        await self._emit(SessionEvent(EventKind.READY))
                elif phase == "loading":
                    if not self._authenticated:
                        self._authenticated = True
                        await self._emit(SessionEvent(EventKind.AUTHENTICATED))
                elif phase == "qr":
                    if self._ready:
                        # logged out from the phone
                        await self._disconnect("LOGOUT")
                        return
                    deadline = time.monotonic() + self.settings.connect_timeout
                    qr = await self._read_qr()
                    if qr is not None and qr.token != last_ref:
                        last_ref = qr.token
                        await self._emit(SessionEvent(EventKind.QR, qr=qr))
                if not self._ready and phase != "qr" and time.monotonic() > deadline:
                    failure = AuthFailure("WhatsApp Web did not finish logging in within %ss" % int(self.settings.connect_timeout))
                    await self._emit(SessionEvent(EventKind.AUTH_FAILURE, reason=str(failure)))
                    return
            except PlaywrightError as e:
                if self._stop.is_set() or self._gone:
                    return
                if self.page is None or self.page.is_closed():
                    await self._disconnect("PAGE_CLOSED")
                    return
                # page is mid-navigation; look again on the next tick
                json_log("wa_watch_error", error=str(e))
            await asyncio.sleep(self.poll_interval)

    # --- sending ---

    @contextlib.asynccontextmanager
    async def _transport(self) -> AsyncIterator[Page]:
        async with self._send_lock:
            page = self.page
            if page is None or page.is_closed() or self._gone:
                raise TransportDropped("WhatsApp page is not connected")
            try:
                yield page
            except PlaywrightError as e:
                if self._gone or page.is_closed() or is_transport_dropped(e):
                    raise TransportDropped(str(e)) from e
                raise

    async def _open_chat(self, page: Page, chat_id: str):
        phone = phone_from_jid(chat_id)
        await page.goto(f"{WHATSAPP_WEB_URL}send?phone={quote(phone)}", wait_until="domcontentloaded")
        try:
            await page.wait_for_selector(COMPOSER, state="visible")
        except PWTimeoutError:
            if await page.locator(INVALID_CHAT_POPUP).count():
                raise InvalidRecipient(f"{phone} is not on WhatsApp")
            raise

    async def send_text(self, chat_id: str, text: str):
        async with self._transport() as page:
            await self._open_chat(page, chat_id)
            composer = page.locator(COMPOSER).last
            await composer.click()
            await composer.fill(text)
            await page.keyboard.press("Enter")
            await asyncio.sleep(1.0)

    async def send_media(self, chat_id: str, attachment: "Attachment", caption: Optional[str] = None):
        async with self._transport() as page:
            await self._open_chat(page, chat_id)
            await page.locator(ATTACH_BUTTON).first.click()
            inputs = page.locator(DOCUMENT_INPUT)
            if not await inputs.count():
                inputs = page.locator(ANY_FILE_INPUT)
            await inputs.first.set_input_files(
                {"name": attachment.filename, "mimeType": attachment.mimetype, "buffer": attachment.data}
            )
            send_btn = page.locator(SEND_BUTTON).last
            await send_btn.wait_for(state="visible")
            if caption:
                # the media preview's caption box is the newest textbox on the page
                await page.locator(TEXTBOX).last.fill(caption)
            await send_btn.click()
            await asyncio.sleep(2.0)
