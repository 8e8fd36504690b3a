import json
import logging
import random
from datetime import datetime
from typing import Optional

CHAT_SUFFIX = "@c.us"

logger = logging.getLogger("drscreen")


def json_log(event: str, **kwargs):
    """
    Emit an ASCII-only JSON log line so consoles with legacy codepages don't crash
    when messages contain emojis or non-ASCII characters.
    """
    payload = {"ts": datetime.utcnow().isoformat() + "Z", "event": event, **kwargs}
    logger.info(json.dumps(payload, ensure_ascii=True, default=str))


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    Strip formatting from a phone number: spaces, dashes, parentheses and a leading '+'.
    Returns None for empty input.
    """
    if phone is None:
        return None
    s = str(phone).strip()
    if not s:
        return None
    cleaned = s.replace(" ", "").replace("-", "").replace("(", "").replace(")", "")
    return cleaned.lstrip("+") or None


def to_chat_jid(phone: str) -> str:
    """
    Convert '919999999999' to '919999999999@c.us'.
    If value already looks like a JID with '@', return as-is.
    """
    s = str(phone).strip()
    if "@" in s:
        return s
    return f"{normalize_phone(s) or s}{CHAT_SUFFIX}"


def phone_from_jid(chat_id: str) -> str:
    return chat_id.split("@", 1)[0]


def generate_reg_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    return f"{now:%Y%m%d}-{random.randint(1000, 9999)}"
