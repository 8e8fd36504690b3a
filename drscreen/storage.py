import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Optional

# A profile smaller than this has never held a logged-in session
EMPTY_PROFILE_BYTES = 50 * 1024


def dir_size_bytes(path: Path) -> int:
    total = 0
    if not path.exists():
        return 0
    for root, dirs, files in os.walk(path):
        for f in files:
            try:
                total += (Path(root) / f).stat().st_size
            except OSError:
                continue
    return total


class Storage:
    def __init__(self, base: Path = Path("storage")):
        self.base = base

    @property
    def pdf_dir(self) -> Path:
        return self.base / "pdf"

    @property
    def session_backup_dir(self) -> Path:
        return self.base / "session_backups"

    def ensure_layout(self):
        for p in [
            self.base,
            self.pdf_dir,
            self.session_backup_dir,
            self.base / "tmp",
        ]:
            p.mkdir(parents=True, exist_ok=True)

    def pdf_output_path(self, reg: str, suggest_name: Optional[str] = None) -> Path:
        ts = datetime.utcnow().strftime("%Y%m%d")
        safe_reg = "".join(ch for ch in str(reg) if ch.isalnum() or ch in "-_") or "patient"
        name = suggest_name or f"{ts}_{safe_reg}_DM-Screening-Form.pdf"
        path = self.pdf_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    # --- WhatsApp browser profile backups ---

    def list_session_backups(self) -> List[Path]:
        if not self.session_backup_dir.exists():
            return []
        items = [p for p in self.session_backup_dir.glob("session_*") if p.is_dir()]
        items.sort(key=lambda p: p.name, reverse=True)
        return items

    def prune_session_backups(self, max_keep: int = 5) -> int:
        """
        Keep only newest max_keep session backups.
        """
        removed = 0
        for p in self.list_session_backups()[max_keep:]:
            shutil.rmtree(p, ignore_errors=True)
            removed += 1
        return removed

    def create_session_backup(self, profile_dir: Path, label: Optional[str] = None) -> Optional[Path]:
        """
        Copy the persistent browser profile to a timestamped backup folder.
        """
        if not profile_dir.exists():
            return None
        ts = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        name = f"session_{ts}" + (f"_{label}" if label else "")
        dest = self.session_backup_dir / name
        self.session_backup_dir.mkdir(parents=True, exist_ok=True)
        if dest.exists():
            shutil.rmtree(dest, ignore_errors=True)
        # chromium keeps lock sockets in the profile; they cannot be copied
        shutil.copytree(profile_dir, dest, ignore=shutil.ignore_patterns("Singleton*"))
        return dest

    def restore_latest_session_backup(self, profile_dir: Path) -> bool:
        """
        Restore the most recent session backup into the persistent browser profile dir.
        """
        items = self.list_session_backups()
        if not items:
            return False
        if profile_dir.exists():
            shutil.rmtree(profile_dir, ignore_errors=True)
        profile_dir.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(items[0], profile_dir)
        return True

    def restore_session_if_empty(self, profile_dir: Path) -> bool:
        if dir_size_bytes(profile_dir) >= EMPTY_PROFILE_BYTES:
            return False
        return self.restore_latest_session_backup(profile_dir)
