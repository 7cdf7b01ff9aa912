import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional


DB_PATH = Path("storage/app.db")


class Database:
    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or os.getenv("DB_PATH") or DB_PATH)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.init()

    def init(self):
        with self._conn() as con:
            cur = con.cursor()
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS session_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event TEXT,
                    detail TEXT,
                    created_at TEXT
                )
                """
            )
            con.commit()

    @contextmanager
    def _conn(self):
        con = sqlite3.connect(self.path)
        try:
            yield con
        finally:
            con.close()

    def get_setting(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._conn() as con:
            cur = con.cursor()
            row = cur.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
            if not row:
                return default
            return row[0]

    def set_setting(self, key: str, value: str):
        with self._conn() as con:
            cur = con.cursor()
            cur.execute("INSERT INTO settings(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value=excluded.value", (key, value))
            con.commit()

    def record_event(self, event: str, detail: Optional[str] = None, keep: int = 500):
        """
        Append a session lifecycle event and drop everything older than the newest `keep` rows.
        """
        with self._conn() as con:
            cur = con.cursor()
            cur.execute(
                "INSERT INTO session_events (event, detail, created_at) VALUES (?, ?, ?)",
                (event, detail, datetime.utcnow().isoformat() + "Z"),
            )
            cur.execute(
                "DELETE FROM session_events WHERE id NOT IN (SELECT id FROM session_events ORDER BY id DESC LIMIT ?)",
                (keep,),
            )
            con.commit()

    def recent_events(self, limit: int = 10) -> List[Dict[str, Any]]:
        with self._conn() as con:
            cur = con.cursor()
            rows = cur.execute(
                "SELECT id, event, detail, created_at FROM session_events ORDER BY id DESC LIMIT ?",
                (limit,),
            ).fetchall()
            return [{"id": r[0], "event": r[1], "detail": r[2], "created_at": r[3]} for r in rows]


def get_setting(key: str, default: Optional[str] = None, db: Optional[Database] = None) -> Optional[str]:
    # Prefer DB settings if available, fall back to environment variables
    db = db or Database()
    return db.get_setting(key, None) or os.getenv(key) or default
