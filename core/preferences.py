import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger(__name__)

_UNSET = object()


@dataclass
class Preference:
    model: Optional[str] = None
    system: Optional[str] = None


class PreferenceStore:
    """Per-user model and system-prompt overrides."""

    def __init__(self, db_path: str = "db.sqlite"):
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._init_db()

    def _init_db(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                  id TEXT PRIMARY KEY,
                  model TEXT,
                  system TEXT
                )
                """
            )

    def get(self, user_id: str) -> Preference:
        row = self.conn.execute(
            "SELECT model, system FROM users WHERE id=?",
            (str(user_id),),
        ).fetchone()
        if not row:
            return Preference()
        return Preference(model=row["model"] or None, system=row["system"] or None)

    def set(self, user_id: str, *, model=_UNSET, system=_UNSET) -> None:
        columns = {}
        if model is not _UNSET:
            columns["model"] = model
        if system is not _UNSET:
            columns["system"] = system
        if not columns:
            return
        names = ", ".join(columns)
        placeholders = ", ".join("?" for _ in columns)
        updates = ", ".join(f"{name}=excluded.{name}" for name in columns)
        with self.conn:
            self.conn.execute(
                f"INSERT INTO users(id, {names}) VALUES(?, {placeholders}) "
                f"ON CONFLICT(id) DO UPDATE SET {updates}",
                (str(user_id), *columns.values()),
            )
        log.info("stored preferences for %s: %s", user_id, ", ".join(columns))

    def delete(self, user_id: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM users WHERE id=?", (str(user_id),))

    def close(self) -> None:
        self.conn.close()
