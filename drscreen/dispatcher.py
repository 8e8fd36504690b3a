import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional, Union

from .errors import AttachmentReadError, InvalidRecipient, NotReady, is_transport_dropped
from .session_state import EventKind, SessionEvent
from .utils import json_log, to_chat_jid

if TYPE_CHECKING:
    from .session_manager import SessionManager

DEFAULT_BODY = "Your Report"
DEFAULT_FILENAME = "file.pdf"
BYTES_MEDIA_TYPE = "application/pdf"

FileInput = Union[bytes, bytearray, str, Path]


@dataclass(frozen=True)
class Attachment:
    data: bytes
    mimetype: str
    filename: str


@dataclass(frozen=True)
class OutboundMessage:
    chat_id: str
    body: str
    attachment: Optional[Attachment] = None


def guess_media_type(path: Path) -> str:
    ctype = mimetypes.guess_type(str(path))[0]
    if ctype:
        return ctype
    ext = path.suffix.lstrip(".").lower()
    return f"application/{ext}" if ext else "application/octet-stream"


def build_attachment(file_input: FileInput, filename: Optional[str] = None) -> Attachment:
    if isinstance(file_input, (bytes, bytearray)):
        return Attachment(data=bytes(file_input), mimetype=BYTES_MEDIA_TYPE, filename=filename or DEFAULT_FILENAME)
    if isinstance(file_input, (str, Path)):
        path = Path(file_input)
        try:
            data = path.read_bytes()
        except OSError as e:
            raise AttachmentReadError(str(path), e.strerror or str(e)) from e
        return Attachment(data=data, mimetype=guess_media_type(path), filename=filename or path.name or DEFAULT_FILENAME)
    raise TypeError("Invalid file input: must be bytes or a file path")


def build_message(phone: str, body: Optional[str] = DEFAULT_BODY, file_input: Optional[FileInput] = None,
                  filename: Optional[str] = None) -> OutboundMessage:
    if not isinstance(phone, str) or not phone.strip():
        raise InvalidRecipient("recipient phone number is required")
    attachment = build_attachment(file_input, filename) if file_input is not None else None
    return OutboundMessage(chat_id=to_chat_jid(phone), body=DEFAULT_BODY if body is None else body, attachment=attachment)


class MessageDispatcher:
    """
    Readiness-gated outbound send through the manager's current client.

    A send that fails because the browser session silently went away flips the
    session to not-ready and re-runs initialize before the error reaches the caller.
    """

    def __init__(self, manager: "SessionManager"):
        self.manager = manager

    async def send(self, phone: str, body: Optional[str] = DEFAULT_BODY, file_input: Optional[FileInput] = None,
                   filename: Optional[str] = None) -> OutboundMessage:
        client = self.manager.client
        if not self.manager.is_ready or client is None:
            raise NotReady()
        message = build_message(phone, body, file_input, filename)
        try:
            if message.attachment is not None:
                await client.send_media(message.chat_id, message.attachment, caption=message.body)
                json_log("wa_file_sent", chat_id=message.chat_id, filename=message.attachment.filename,
                         mimetype=message.attachment.mimetype, size=len(message.attachment.data))
            else:
                await client.send_text(message.chat_id, message.body)
                json_log("wa_message_sent", chat_id=message.chat_id)
        except Exception as e:
            json_log("wa_send_error", chat_id=message.chat_id, error=str(e))
            if is_transport_dropped(e):
                json_log("wa_transport_dropped", chat_id=message.chat_id)
                await self.manager.handle_event(SessionEvent(EventKind.TRANSPORT_DROPPED, reason=str(e)))
            raise
        return message
