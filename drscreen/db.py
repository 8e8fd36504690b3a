import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

DB_PATH = Path("storage/app.db")

# Screening findings recorded on every visit, in form order
CLINICAL_FIELDS = [
    "dtype", "ddur", "insulin", "oha", "hba1c", "treatment",
    "bcvar", "bcval", "iopr", "iopl", "drr", "drl",
    "mer", "mel", "octr", "octl", "advice", "fllwp",
]
PATIENT_FIELDS = ["name", "reg", "age", "sex", "contact", "beneficiary"] + CLINICAL_FIELDS
LIST_FIELDS = ("treatment", "advice")
DEFAULT_NOTES = "No notes"


def _now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def as_list(value: Any) -> List[str]:
    if value is None or value == "":
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v) != ""]
    return [str(value)]


def _encode(field: str, value: Any) -> Any:
    if field in LIST_FIELDS:
        return json.dumps(as_list(value))
    return value


def _decode_row(row: sqlite3.Row) -> Dict[str, Any]:
    data = dict(row)
    for field in LIST_FIELDS:
        if field in data and isinstance(data[field], str):
            try:
                data[field] = json.loads(data[field])
            except ValueError:
                data[field] = as_list(data[field])
    return data


class Database:
    def __init__(self, path: Path = DB_PATH):
        self.path = path

    def init(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        clinical_cols = ",\n".join(f"{f} TEXT" for f in CLINICAL_FIELDS)
        with self._conn() as con:
            cur = con.cursor()
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS details (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    reg TEXT NOT NULL UNIQUE,
                    age TEXT,
                    sex TEXT,
                    contact TEXT,
                    beneficiary TEXT,
                    {clinical_cols},
                    created_at TEXT
                )
                """
            )
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS patient_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    reg TEXT NOT NULL,
                    {clinical_cols},
                    notes TEXT,
                    created_at TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    email TEXT NOT NULL UNIQUE,
                    password TEXT NOT NULL,
                    created_at TEXT
                )
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_patient_log_reg ON patient_log(reg)")
            con.commit()

    @contextmanager
    def _conn(self):
        con = sqlite3.connect(self.path)
        con.row_factory = sqlite3.Row
        try:
            yield con
        finally:
            con.close()

    # --- patients ---

    def create_patient(self, det: Dict[str, Any]):
        values = [_encode(f, det.get(f)) for f in PATIENT_FIELDS]
        cols = ", ".join(PATIENT_FIELDS + ["created_at"])
        marks = ", ".join("?" for _ in range(len(PATIENT_FIELDS) + 1))
        with self._conn() as con:
            con.execute(f"INSERT INTO details ({cols}) VALUES ({marks})", values + [_now()])
            con.commit()

    def list_patients(self, query: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM details"
        params: Iterable[Any] = ()
        if query:
            like = f"%{query.strip()}%"
            sql += " WHERE name LIKE ? OR reg LIKE ? OR contact LIKE ?"
            params = (like, like, like)
        sql += " ORDER BY id DESC"
        with self._conn() as con:
            rows = con.execute(sql, tuple(params)).fetchall()
            return [_decode_row(r) for r in rows]

    def get_patient(self, reg: str) -> Optional[Dict[str, Any]]:
        with self._conn() as con:
            row = con.execute("SELECT * FROM details WHERE reg = ?", (reg,)).fetchone()
            return _decode_row(row) if row else None

    def delete_patient(self, reg: str) -> bool:
        with self._conn() as con:
            con.execute("DELETE FROM patient_log WHERE reg = ?", (reg,))
            cur = con.execute("DELETE FROM details WHERE reg = ?", (reg,))
            con.commit()
            return cur.rowcount > 0

    # --- visit log ---

    def create_log(self, reg: str, findings: Dict[str, Any], notes: str = DEFAULT_NOTES) -> int:
        values = [_encode(f, findings.get(f)) for f in CLINICAL_FIELDS]
        cols = ", ".join(["reg"] + CLINICAL_FIELDS + ["notes", "created_at"])
        marks = ", ".join("?" for _ in range(len(CLINICAL_FIELDS) + 3))
        with self._conn() as con:
            cur = con.execute(f"INSERT INTO patient_log ({cols}) VALUES ({marks})", [reg] + values + [notes, _now()])
            con.commit()
            return int(cur.lastrowid)

    def load_log(self, reg: str) -> List[Dict[str, Any]]:
        with self._conn() as con:
            rows = con.execute(
                "SELECT * FROM patient_log WHERE reg = ? ORDER BY created_at DESC, id DESC", (reg,)
            ).fetchall()
            return [_decode_row(r) for r in rows]

    # --- users ---

    def get_user(self, email: str) -> Optional[Dict[str, Any]]:
        with self._conn() as con:
            row = con.execute("SELECT id, email, password, created_at FROM users WHERE email = ?", (email,)).fetchone()
            return dict(row) if row else None

    def create_user(self, email: str, password_hash: str) -> Dict[str, Any]:
        with self._conn() as con:
            cur = con.execute(
                "INSERT INTO users (email, password, created_at) VALUES (?, ?, ?)", (email, password_hash, _now())
            )
            con.commit()
            return {"id": int(cur.lastrowid), "email": email}