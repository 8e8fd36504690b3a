import logging
from dataclasses import dataclass
from typing import Callable, List, Optional

logger = logging.getLogger("drscreen")


@dataclass(frozen=True)
class QrPayload:
    token: str  # opaque pairing reference from WhatsApp Web
    image: str  # data:image/png;base64,...


QrListener = Callable[[Optional[QrPayload]], None]


class QrBroadcaster:
    """
    Latest-value topic for the login QR code.

    The session manager is the only publisher. Readers either poll `latest`
    or subscribe to be told when the code changes (None means cleared).
    Nothing is queued; a late reader only ever sees the current code.
    """

    def __init__(self):
        self._latest: Optional[QrPayload] = None
        self._listeners: List[QrListener] = []

    @property
    def latest(self) -> Optional[QrPayload]:
        return self._latest

    @property
    def image(self) -> Optional[str]:
        return self._latest.image if self._latest else None

    def publish(self, payload: QrPayload):
        self._latest = payload
        self._notify(payload)

    def clear(self):
        if self._latest is None:
            return
        self._latest = None
        self._notify(None)

    def subscribe(self, listener: QrListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, payload: Optional[QrPayload]):
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                logger.exception("qr listener failed")
