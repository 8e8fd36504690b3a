import dataclasses
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .session_state import RetryPolicy


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    storage_dir: Path = Path("storage")
    database_path: Path = Path("storage/app.db")
    # WhatsApp session
    session_data_path: Path = Path("sessions")
    client_id: str = "client-1"
    executable_path: Optional[str] = None  # PUPPETEER_EXECUTABLE_PATH override
    headless: bool = True
    connect_timeout: float = 120.0
    max_retries: int = 5
    retry_base_delay: float = 5.0
    retry_max_delay: float = 60.0
    retry_backoff: str = "exponential"  # or "fixed"
    reconnect_on_disconnect: bool = True
    # Clinic
    default_country_code: str = "91"
    pdf_template_path: Path = Path("templates/DM screening Form.pdf")
    # Web
    secret_key: str = "change-me"
    salt_rounds: int = 10
    host: str = "127.0.0.1"
    port: int = 3000
    # Mail
    smtp_host: str = ""
    smtp_port: int = 465
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_sender: str = ""
    smtp_ssl: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        storage_dir = Path(os.getenv("STORAGE_DIR", "storage"))
        return cls(
            storage_dir=storage_dir,
            database_path=Path(os.getenv("DATABASE_PATH", str(storage_dir / "app.db"))),
            session_data_path=Path(os.getenv("SESSION_DATA_PATH", "sessions")),
            client_id=os.getenv("WA_CLIENT_ID", "client-1"),
            executable_path=os.getenv("PUPPETEER_EXECUTABLE_PATH") or None,
            headless=_env_bool("WA_HEADLESS", True),
            connect_timeout=float(os.getenv("WA_CONNECT_TIMEOUT", "120")),
            max_retries=int(os.getenv("WA_MAX_RETRIES", "5")),
            retry_base_delay=float(os.getenv("WA_RETRY_BASE_DELAY", "5")),
            retry_max_delay=float(os.getenv("WA_RETRY_MAX_DELAY", "60")),
            retry_backoff=os.getenv("WA_RETRY_BACKOFF", "exponential").strip().lower(),
            reconnect_on_disconnect=_env_bool("WA_RECONNECT_ON_DISCONNECT", True),
            default_country_code=os.getenv("DEFAULT_COUNTRY_CODE", "91"),
            pdf_template_path=Path(os.getenv("PDF_TEMPLATE_PATH", "templates/DM screening Form.pdf")),
            secret_key=os.getenv("SECRET_KEY", "change-me"),
            salt_rounds=int(os.getenv("SALT_ROUNDS", "10")),
            host=os.getenv("HOST", "127.0.0.1"),
            port=int(os.getenv("PORT", "3000")),
            smtp_host=os.getenv("SMTP_HOST", ""),
            smtp_port=int(os.getenv("SMTP_PORT", "465")),
            smtp_user=os.getenv("SMTP_USER", ""),
            smtp_password=os.getenv("SMTP_PASSWORD", ""),
            smtp_sender=os.getenv("SMTP_SENDER", "") or os.getenv("SMTP_USER", ""),
            smtp_ssl=_env_bool("SMTP_SSL", True),
        )

    @property
    def profile_dir(self) -> Path:
        # same layout as whatsapp-web.js LocalAuth: <dataPath>/session-<clientId>
        return self.session_data_path / f"session-{self.client_id}"

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            exponential=self.retry_backoff != "fixed",
            reconnect_on_disconnect=self.reconnect_on_disconnect,
        )

    def to_json(self) -> Dict[str, Any]:
        data = dataclasses.asdict(self)
        for key in ("smtp_password", "secret_key"):
            if data.get(key):
                data[key] = "(set)"
        return {k: (str(v) if isinstance(v, Path) else v) for k, v in data.items()}
