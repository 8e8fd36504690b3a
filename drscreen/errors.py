from typing import Iterable, Optional

# Substrings (lowercased) of transport errors that mean the browser session went away underneath us.
DROPPED_SESSION_MARKERS = (
    "evaluation failed",
    "not connected",
    "target closed",
    "target page, context or browser has been closed",
    "execution context was destroyed",
    "browser has been closed",
)


class WhatsAppError(Exception):
    """Base class for WhatsApp session errors."""


class ExecutableNotFound(WhatsAppError):
    def __init__(self, tried: Iterable[str]):
        self.tried = list(tried)
        super().__init__("Chromium executable not found (tried: %s)" % ", ".join(self.tried) if self.tried else "Chromium executable not found")


class NotReady(WhatsAppError):
    def __init__(self, message: str = "WhatsApp client is not ready yet!"):
        super().__init__(message)


class AttachmentReadError(WhatsAppError):
    def __init__(self, path: str, reason: Optional[str] = None):
        self.path = path
        super().__init__(f"Could not read attachment {path}: {reason}" if reason else f"Could not read attachment {path}")


class TransportDropped(WhatsAppError):
    """The automation transport lost its page/browser while sending."""


class AuthFailure(WhatsAppError):
    pass


class UnrecoverableNavigationFault(WhatsAppError):
    pass


class InvalidRecipient(ValueError):
    pass


def is_transport_dropped(exc: BaseException) -> bool:
    if isinstance(exc, TransportDropped):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in DROPPED_SESSION_MARKERS)
