import asyncio
import contextlib
import io
import logging
import sys
from typing import Any, Dict, Optional, TextIO

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field
from starlette.middleware.sessions import SessionMiddleware

from .auth import api_login_required
from .config import Settings
from .db import Database
from .errors import InvalidRecipient, NotReady
from .mailer import Mailer, render_findings_email
from .pdf_form import render_screening_form
from .session_manager import SessionManager
from .storage import Storage
from .utils import json_log

APP_TITLE = "DR Screening Clinic"
VERSION = "1.0.0"


def _utf8_stream_for_stdout() -> TextIO:
    # Force a UTF-8 text stream for logging to avoid 'charmap' errors on Windows consoles
    if hasattr(sys.stdout, "buffer"):
        return io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace", line_buffering=True)
    return sys.stdout


def configure_logging(level: int = logging.INFO):
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(_utf8_stream_for_stdout())],
        force=True,  # override any existing handlers (e.g., added by uvicorn)
    )


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: Dict[str, Any]):
    exc = context.get("exception")
    json_log("unhandled_async_error", message=context.get("message"), error=repr(exc) if exc else None)


class AppState:
    """Everything the routes need, built once per process and hung off app.state."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        db: Optional[Database] = None,
        storage: Optional[Storage] = None,
        manager: Optional[SessionManager] = None,
        mailer: Optional[Mailer] = None,
    ):
        self.settings = settings or Settings.from_env()
        self.storage = storage or Storage(base=self.settings.storage_dir)
        self.db = db or Database(self.settings.database_path)
        self.manager = manager or SessionManager(self.settings, storage=self.storage)
        self.mailer = mailer or Mailer(self.settings)
        self.init_task: Optional[asyncio.Task] = None
        self.exit_code = 0


def get_state(request: Request) -> AppState:
    return request.app.state.clinic


# --- request models ---

class WhatsAppMessageIn(BaseModel):
    phoneNumber: Optional[str] = None
    message: Optional[str] = None


class EmailMessageBody(BaseModel):
    greet: Optional[str] = None
    drr: Optional[str] = None
    drl: Optional[str] = None
    mer: Optional[str] = None
    mel: Optional[str] = None
    octr: Optional[str] = None
    octl: Optional[str] = None


class EmailTemplateData(BaseModel):
    name: str = ""
    message: EmailMessageBody = Field(default_factory=EmailMessageBody)


class SendEmailIn(BaseModel):
    recipient: str
    subject: str
    templateData: EmailTemplateData


class ScreeningReportIn(BaseModel):
    name: str
    registrationNo: str = ""
    age: Optional[str] = None
    sex: Optional[str] = None
    contactNo: str
    diabetesType: Optional[str] = None
    insulin: Optional[Any] = None
    noOfOHA: Optional[str] = None
    hba1c: Optional[str] = None
    bcvar: Optional[str] = None
    bcval: Optional[str] = None
    iopr: Optional[str] = None
    iopl: Optional[str] = None
    drr: Optional[str] = None
    drl: Optional[str] = None
    mer: Optional[str] = None
    mel: Optional[str] = None
    octr: Optional[str] = None
    octl: Optional[str] = None
    treatmentAdvice: Optional[str] = None
    followUp: Optional[str] = None


def send_error_status(exc: Exception) -> int:
    if isinstance(exc, NotReady):
        return 503
    if isinstance(exc, InvalidRecipient):
        return 400
    return 500


async def send_screening_report(state: AppState, report: Dict[str, Any]) -> str:
    """Render the screening form, keep a copy in storage and send it over WhatsApp."""
    pdf_bytes = render_screening_form(report, state.settings.pdf_template_path)
    pdf_path = state.storage.pdf_output_path(report.get("registrationNo") or "patient")
    pdf_path.write_bytes(pdf_bytes)
    json_log("pdf_generated", path=str(pdf_path), size=len(pdf_bytes))
    phone = f"{state.settings.default_country_code}{str(report.get('contactNo') or '').strip()}"
    await state.manager.send_message(phone, f"{report.get('name')}'s DM Screening Report", pdf_path)
    return str(pdf_path)


def create_app(state: Optional[AppState] = None, start_whatsapp: bool = True) -> FastAPI:
    state = state or AppState()
    app = FastAPI(title=APP_TITLE, version=VERSION)
    app.state.clinic = state
    app.add_middleware(SessionMiddleware, secret_key=state.settings.secret_key)

    @app.on_event("startup")
    async def on_startup():
        state.storage.ensure_layout()
        state.db.init()
        asyncio.get_running_loop().set_exception_handler(_log_loop_exception)
        json_log("startup", version=VERSION)
        if start_whatsapp:
            # the browser takes a while to come up; don't hold the server on it
            state.init_task = asyncio.create_task(state.manager.initialize())

    @app.on_event("shutdown")
    async def on_shutdown():
        json_log("shutdown")
        task = state.init_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        state.exit_code = await state.manager.shutdown()

    @app.get("/get-qr-code")
    async def get_qr_code(st: AppState = Depends(get_state), user=Depends(api_login_required)):
        image = st.manager.qr.image
        if image:
            return JSONResponse({"success": True, "qrCodeUrl": image})
        return JSONResponse({"success": False, "message": "QR code not generated yet."})

    @app.get("/whatsapp/status")
    async def whatsapp_status(st: AppState = Depends(get_state), user=Depends(api_login_required)):
        status = st.manager.get_status()
        status["state"] = st.manager.state.value
        return JSONResponse(status)

    @app.get("/settings")
    async def settings_get(st: AppState = Depends(get_state), user=Depends(api_login_required)):
        return JSONResponse(st.settings.to_json())

    @app.post("/whatsapp/initialize")
    async def whatsapp_initialize(st: AppState = Depends(get_state), user=Depends(api_login_required)):
        await st.manager.initialize()
        return JSONResponse({"ok": True, **st.manager.get_status()})

    @app.post("/whatsapp-message")
    async def whatsapp_message(body: WhatsAppMessageIn, st: AppState = Depends(get_state), user=Depends(api_login_required)):
        if not body.phoneNumber or not body.message:
            return JSONResponse({"error": "Phone number and message are required."}, status_code=400)
        try:
            await st.manager.send_message(body.phoneNumber, body.message)
        except Exception as e:
            json_log("whatsapp_message_failed", error=str(e), error_type=type(e).__name__)
            status = send_error_status(e)
            if status == 503:
                return JSONResponse({"error": str(e)}, status_code=status)
            return JSONResponse({"error": "Failed to send the message. Please try again later."}, status_code=status)
        return JSONResponse({"message": "Message sent successfully!"})

    @app.post("/generate-pdf")
    async def generate_pdf(body: ScreeningReportIn, st: AppState = Depends(get_state), user=Depends(api_login_required)):
        try:
            await send_screening_report(st, body.model_dump())
        except (NotReady, InvalidRecipient) as e:
            return PlainTextResponse(str(e), status_code=send_error_status(e))
        except Exception as e:
            json_log("generate_pdf_failed", error=str(e), error_type=type(e).__name__)
            return PlainTextResponse("An error occurred while generating or sending the PDF.", status_code=500)
        return PlainTextResponse("PDF generated and sent via WhatsApp")

    @app.post("/send-email")
    async def send_email(body: SendEmailIn, st: AppState = Depends(get_state), user=Depends(api_login_required)):
        html_body = render_findings_email(body.templateData.model_dump())
        result = await asyncio.to_thread(st.mailer.send_email, body.recipient, body.subject, html_body)
        return JSONResponse(result, status_code=200 if result.get("success") else 500)

    # Attach web pages last so the API paths above take precedence
    from .webui import router as web_router  # local import
    app.include_router(web_router)

    return app
