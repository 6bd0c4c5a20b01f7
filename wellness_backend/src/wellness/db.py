from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Any, Dict, Generator, Iterable, List, Optional, Sequence

from .errors import StorageError
from .models import ClaimKind, MessageIDs, Ring, RingRecord, TodoCategory, TodoEntry, empty_message_ids
from .repositories import Storage, _history_entry, category_ref
from .utils import format_datetime, parse_datetime, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Tables:
    categories: str = "todo_categories"
    entries: str = "todo_entries"
    rings: str = "rings"
    ring_records: str = "ring_records"


_T = _Tables()

_SCHEMA = [
    f"""
    CREATE TABLE IF NOT EXISTS {_T.categories} (
        id TEXT PRIMARY KEY,
        app_id TEXT NOT NULL,
        org_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        color TEXT NULL,
        reminder_type TEXT NULL,
        date_created TEXT NOT NULL,
        date_updated TEXT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {_T.entries} (
        id TEXT PRIMARY KEY,
        app_id TEXT NOT NULL,
        org_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NULL,
        category_id TEXT NULL,
        category TEXT NULL,
        work_days TEXT NOT NULL DEFAULT '[]',
        location TEXT NULL,
        completed INTEGER NOT NULL DEFAULT 0,
        has_due_time INTEGER NOT NULL DEFAULT 0,
        due_date_time TEXT NULL,
        reminder_type TEXT NOT NULL DEFAULT 'none',
        reminder_date_time TEXT NULL,
        task_time TEXT NULL,
        message_ids TEXT NOT NULL DEFAULT '{{}}',
        recurrence_type TEXT NULL,
        recurrence_id TEXT NULL,
        date_created TEXT NOT NULL,
        date_updated TEXT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {_T.rings} (
        id TEXT PRIMARY KEY,
        app_id TEXT NOT NULL,
        org_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        history TEXT NOT NULL DEFAULT '[]',
        date_created TEXT NOT NULL,
        date_updated TEXT NULL
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS {_T.ring_records} (
        id TEXT PRIMARY KEY,
        app_id TEXT NOT NULL,
        org_id TEXT NOT NULL,
        user_id TEXT NOT NULL,
        ring_id TEXT NOT NULL,
        value REAL NOT NULL,
        date_created TEXT NOT NULL,
        date_updated TEXT NULL
    )
    """,
    f"CREATE INDEX IF NOT EXISTS idx_{_T.categories}_owner ON {_T.categories}(org_id, app_id, user_id)",
    f"CREATE INDEX IF NOT EXISTS idx_{_T.entries}_owner ON {_T.entries}(org_id, app_id, user_id, category_id)",
    f"CREATE INDEX IF NOT EXISTS idx_{_T.entries}_due ON {_T.entries}(due_date_time)",
    f"CREATE INDEX IF NOT EXISTS idx_{_T.entries}_reminder ON {_T.entries}(reminder_date_time)",
    f"CREATE INDEX IF NOT EXISTS idx_{_T.rings}_owner ON {_T.rings}(org_id, app_id, user_id)",
    f"CREATE INDEX IF NOT EXISTS idx_{_T.ring_records}_owner ON {_T.ring_records}(org_id, app_id, user_id, ring_id)",
]

_OWNER_SQL = "app_id = ? AND org_id = ? AND user_id = ?"


def _dumps(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _loads(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


class SQLiteStorage(Storage):
    """
    SQLite implementation of the document collections.

    Nested document parts (category ref, location, message ids, ring history)
    are kept as JSON text; datetimes as fixed-width ISO strings in naive UTC.
    One connection per transaction, opened with BEGIN IMMEDIATE so claims and
    multi-collection updates are serialized against other writers.
    """

    def __init__(self, db_path: str) -> None:
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._db_path = db_path
        self._lock = RLock()
        self._tx_conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, isolation_level=None, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as exc:
            logger.error("error aborting a transaction - %s", exc)

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        with self._lock:
            if self._tx_conn is not None:
                # Nested: join the outer transaction
                yield
                return

            try:
                conn = self._connect()
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StorageError("starting a transaction", exc) from exc

            self._tx_conn = conn
            try:
                yield
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                self._rollback(conn)
                raise StorageError("performing a transaction", exc) from exc
            except BaseException:
                self._rollback(conn)
                raise
            finally:
                self._tx_conn = None
                conn.close()

    @contextmanager
    def _conn(self) -> Generator[sqlite3.Connection, None, None]:
        with self.transaction():
            assert self._tx_conn is not None
            yield self._tx_conn

    def _init_db(self) -> None:
        with self._conn() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        logger.info("sqlite storage initialized: %s", self._db_path)

    # Row mapping

    @staticmethod
    def _row_to_category(row: sqlite3.Row) -> TodoCategory:
        return {
            "id": row["id"],
            "app_id": row["app_id"],
            "org_id": row["org_id"],
            "user_id": row["user_id"],
            "name": row["name"],
            "color": row["color"],
            "reminder_type": row["reminder_type"],
            "date_created": parse_datetime(row["date_created"]),  # type: ignore[typeddict-item]
            "date_updated": parse_datetime(row["date_updated"]),
        }

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> TodoEntry:
        message_ids = empty_message_ids()
        message_ids.update(_loads(row["message_ids"]) or {})  # type: ignore[typeddict-item]
        return {
            "id": row["id"],
            "app_id": row["app_id"],
            "org_id": row["org_id"],
            "user_id": row["user_id"],
            "title": row["title"],
            "description": row["description"],
            "category": _loads(row["category"]),
            "work_days": _loads(row["work_days"]) or [],
            "location": _loads(row["location"]),
            "completed": bool(row["completed"]),
            "has_due_time": bool(row["has_due_time"]),
            "due_date_time": parse_datetime(row["due_date_time"]),
            "reminder_type": row["reminder_type"],
            "reminder_date_time": parse_datetime(row["reminder_date_time"]),
            "task_time": parse_datetime(row["task_time"]),
            "message_ids": message_ids,
            "recurrence_type": row["recurrence_type"],
            "recurrence_id": row["recurrence_id"],
            "date_created": parse_datetime(row["date_created"]),  # type: ignore[typeddict-item]
            "date_updated": parse_datetime(row["date_updated"]),
        }

    @staticmethod
    def _entry_params(entry: TodoEntry) -> Dict[str, Any]:
        category = entry.get("category")
        return {
            "title": entry["title"],
            "description": entry.get("description"),
            "category_id": category["id"] if category else None,
            "category": _dumps(category),
            "work_days": json.dumps(list(entry.get("work_days") or [])),
            "location": _dumps(entry.get("location")),
            "completed": 1 if entry["completed"] else 0,
            "has_due_time": 1 if entry["has_due_time"] else 0,
            "due_date_time": format_datetime(entry.get("due_date_time")),
            "reminder_type": entry.get("reminder_type") or "none",
            "reminder_date_time": format_datetime(entry.get("reminder_date_time")),
            "recurrence_type": entry.get("recurrence_type"),
            "recurrence_id": entry.get("recurrence_id"),
            "message_ids": json.dumps(dict(entry.get("message_ids") or empty_message_ids())),
        }

    # Todo categories

    def get_todo_categories(self, app_id: str, org_id: str, user_id: str) -> List[TodoCategory]:
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_T.categories} WHERE {_OWNER_SQL} ORDER BY name ASC", (app_id, org_id, user_id)
            ).fetchall()
            return [self._row_to_category(r) for r in rows]

    def get_todo_category(self, app_id: str, org_id: str, user_id: str, category_id: str) -> Optional[TodoCategory]:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT * FROM {_T.categories} WHERE {_OWNER_SQL} AND id = ?", (app_id, org_id, user_id, category_id)
            ).fetchone()
            return self._row_to_category(row) if row else None

    def create_todo_category(self, app_id: str, org_id: str, user_id: str, data: Dict[str, Any]) -> TodoCategory:
        category_id = str(uuid.uuid4())
        with self._conn() as conn:
            conn.execute(
                f"""
                INSERT INTO {_T.categories} (id, app_id, org_id, user_id, name, color, reminder_type, date_created)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    category_id, app_id, org_id, user_id, data["name"], data.get("color"),
                    data.get("reminder_type"), format_datetime(utc_now()),
                ),
            )
        created = self.get_todo_category(app_id, org_id, user_id, category_id)
        assert created is not None
        return created

    def update_todo_category(
        self, app_id: str, org_id: str, user_id: str, category_id: str, data: Dict[str, Any]
    ) -> Optional[TodoCategory]:
        with self._conn() as conn:
            current = self.get_todo_category(app_id, org_id, user_id, category_id)
            if current is None:
                return None
            current["name"] = data.get("name", current["name"])
            current["color"] = data.get("color", current["color"])
            current["reminder_type"] = data.get("reminder_type", current["reminder_type"])
            conn.execute(
                f"""
                UPDATE {_T.categories} SET name = ?, color = ?, reminder_type = ?, date_updated = ?
                WHERE {_OWNER_SQL} AND id = ?
                """,
                (
                    current["name"], current["color"], current["reminder_type"], format_datetime(utc_now()),
                    app_id, org_id, user_id, category_id,
                ),
            )
            conn.execute(
                f"UPDATE {_T.entries} SET category = ? WHERE {_OWNER_SQL} AND category_id = ?",
                (json.dumps(category_ref(current)), app_id, org_id, user_id, category_id),
            )
        return self.get_todo_category(app_id, org_id, user_id, category_id)

    def delete_todo_category(self, app_id: str, org_id: str, user_id: str, category_id: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                f"DELETE FROM {_T.categories} WHERE {_OWNER_SQL} AND id = ?", (app_id, org_id, user_id, category_id)
            )
            if cur.rowcount == 0:
                return False
            conn.execute(
                f"UPDATE {_T.entries} SET category = NULL, category_id = NULL WHERE {_OWNER_SQL} AND category_id = ?",
                (app_id, org_id, user_id, category_id),
            )
            return True

    # Todo entries

    def get_todo_entries(self, app_id: str, org_id: str, user_id: str) -> List[TodoEntry]:
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_T.entries} WHERE {_OWNER_SQL} ORDER BY date_created ASC", (app_id, org_id, user_id)
            ).fetchall()
            return [self._row_to_entry(r) for r in rows]

    def get_todo_entry(self, app_id: str, org_id: str, user_id: str, entry_id: str) -> Optional[TodoEntry]:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT * FROM {_T.entries} WHERE {_OWNER_SQL} AND id = ?", (app_id, org_id, user_id, entry_id)
            ).fetchone()
            return self._row_to_entry(row) if row else None

    def _get_entry_by_id(self, conn: sqlite3.Connection, entry_id: str) -> Optional[TodoEntry]:
        row = conn.execute(f"SELECT * FROM {_T.entries} WHERE id = ?", (entry_id,)).fetchone()
        return self._row_to_entry(row) if row else None

    def create_todo_entry(self, entry: TodoEntry) -> TodoEntry:
        params = self._entry_params(entry)
        params.update(
            {
                "id": entry.get("id") or str(uuid.uuid4()),
                "app_id": entry["app_id"],
                "org_id": entry["org_id"],
                "user_id": entry["user_id"],
                "task_time": format_datetime(entry.get("task_time")),
                "date_created": format_datetime(entry.get("date_created") or utc_now()),
            }
        )
        columns = list(params.keys())
        with self._conn() as conn:
            conn.execute(
                f"INSERT INTO {_T.entries} ({', '.join(columns)}) VALUES ({_placeholders(columns)})",
                [params[c] for c in columns],
            )
            created = self._get_entry_by_id(conn, params["id"])
            assert created is not None
            return created

    def update_todo_entry(self, entry: TodoEntry) -> Optional[TodoEntry]:
        params = self._entry_params(entry)
        params["date_updated"] = format_datetime(utc_now())
        assignments = ", ".join(f"{c} = ?" for c in params)
        with self._conn() as conn:
            cur = conn.execute(
                f"UPDATE {_T.entries} SET {assignments} WHERE {_OWNER_SQL} AND id = ?",
                [*params.values(), entry["app_id"], entry["org_id"], entry["user_id"], entry["id"]],
            )
            if cur.rowcount == 0:
                return None
            return self._get_entry_by_id(conn, entry["id"])

    def delete_todo_entry(self, app_id: str, org_id: str, user_id: str, entry_id: str) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                f"DELETE FROM {_T.entries} WHERE {_OWNER_SQL} AND id = ?", (app_id, org_id, user_id, entry_id)
            )
            return cur.rowcount > 0

    def get_completed_todo_entries(self, app_id: str, org_id: str, user_id: str) -> List[TodoEntry]:
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT * FROM {_T.entries} WHERE {_OWNER_SQL} AND completed = 1 ORDER BY date_created ASC",
                (app_id, org_id, user_id),
            ).fetchall()
            return [self._row_to_entry(r) for r in rows]

    def delete_completed_todo_entries(self, app_id: str, org_id: str, user_id: str) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                f"DELETE FROM {_T.entries} WHERE {_OWNER_SQL} AND completed = 1", (app_id, org_id, user_id)
            )
            return cur.rowcount

    def update_message_ids(self, entry_id: str, message_ids: MessageIDs) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                f"UPDATE {_T.entries} SET message_ids = ?, date_updated = ? WHERE id = ?",
                (json.dumps(dict(message_ids)), format_datetime(utc_now()), entry_id),
            )
            return cur.rowcount > 0

    def claim_due_entries(
        self, kind: ClaimKind, window_start: datetime, window_end: datetime, claimed_at: datetime
    ) -> List[TodoEntry]:
        field = kind.timestamp_field
        start = format_datetime(window_start)
        clauses = ["completed = 0", f"{field} >= ?", f"{field} < ?", "(task_time IS NULL OR task_time < ?)"]
        if kind is ClaimKind.DUE:
            clauses.append("has_due_time = 1")
        where_sql = " AND ".join(clauses)

        claimed: List[TodoEntry] = []
        with self._conn() as conn:
            rows = conn.execute(
                f"SELECT id FROM {_T.entries} WHERE {where_sql} ORDER BY {field} ASC, id ASC",
                (start, format_datetime(window_end), start),
            ).fetchall()
            for row in rows:
                cur = conn.execute(
                    f"UPDATE {_T.entries} SET task_time = ? WHERE id = ? AND (task_time IS NULL OR task_time < ?)",
                    (format_datetime(claimed_at), row["id"], start),
                )
                if cur.rowcount != 1:
                    continue
                entry = self._get_entry_by_id(conn, row["id"])
                if entry is not None:
                    claimed.append(entry)
        return claimed

    def scan_entries_for_migration(self) -> List[TodoEntry]:
        with self._conn() as conn:
            rows = conn.execute(f"SELECT * FROM {_T.entries} ORDER BY date_created ASC").fetchall()
            return [self._row_to_entry(r) for r in rows]

    # Account scoped deletion

    def _delete_for_accounts(self, table: str, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        accounts = list(account_ids)
        if not accounts:
            return 0
        with self._conn() as conn:
            cur = conn.execute(
                f"DELETE FROM {table} WHERE app_id = ? AND org_id = ? AND user_id IN ({_placeholders(accounts)})",
                [app_id, org_id, *accounts],
            )
            return cur.rowcount

    def delete_todo_categories_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        return self._delete_for_accounts(_T.categories, app_id, org_id, account_ids)

    def delete_todo_entries_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        return self._delete_for_accounts(_T.entries, app_id, org_id, account_ids)

    def delete_rings_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        return self._delete_for_accounts(_T.rings, app_id, org_id, account_ids)

    def delete_ring_records_for_accounts(self, app_id: str, org_id: str, account_ids: Iterable[str]) -> int:
        return self._delete_for_accounts(_T.ring_records, app_id, org_id, account_ids)

    # Rings

    @staticmethod
    def _row_to_ring(row: sqlite3.Row) -> Ring:
        history = _loads(row["history"]) or []
        for item in history:
            item["date_created"] = parse_datetime(item.get("date_created"))
            item["date_updated"] = parse_datetime(item.get("date_updated"))
        return {
            "id": row["id"],
            "app_id": row["app_id"],
            "org_id": row["org_id"],
            "user_id": row["user_id"],
            "history": history,
            "date_created": parse_datetime(row["date_created"]),  # type: ignore[typeddict-item]
            "date_updated": parse_datetime(row["date_updated"]),
        }

    @staticmethod
    def _row_to_ring_record(row: sqlite3.Row) -> RingRecord:
        return {
            "id": row["id"],
            "app_id": row["app_id"],
            "org_id": row["org_id"],
            "user_id": row["user_id"],
            "ring_id": row["ring_id"],
            "value": float(row["value"]),
            "date_created": parse_datetime(row["date_created"]),  # type: ignore[typeddict-item]
            "date_updated": parse_datetime(row["date_updated"]),
        }

    def create_ring(self, app_id: str, org_id: str, user_id: str, history: List[Dict[str, Any]]) -> Ring:
        now = utc_now()
        ring_id = str(uuid.uuid4())
        stored_history = []
        for item in history:
            entry = dict(_history_entry(item, now))
            entry["date_created"] = format_datetime(entry["date_created"])
            stored_history.append(entry)
        with self._conn() as conn:
            conn.execute(
                f"INSERT INTO {_T.rings} (id, app_id, org_id, user_id, history, date_created) VALUES (?, ?, ?, ?, ?, ?)",
                (ring_id, app_id, org_id, user_id, json.dumps(stored_history), format_datetime(now)),
            )
            row = conn.execute(f"SELECT * FROM {_T.rings} WHERE id = ?", (ring_id,)).fetchone()
            return self._row_to_ring(row)

    def get_rings(self, app_id: str, org_id: str, user_id: str) -> List[Ring]:
        with self._conn() as conn:
            rows = conn.execute(f"SELECT * FROM {_T.rings} WHERE {_OWNER_SQL}", (app_id, org_id, user_id)).fetchall()
            return [self._row_to_ring(r) for r in rows]

    def create_ring_record(self, app_id: str, org_id: str, user_id: str, ring_id: str, value: float) -> RingRecord:
        record_id = str(uuid.uuid4())
        with self._conn() as conn:
            conn.execute(
                f"""
                INSERT INTO {_T.ring_records} (id, app_id, org_id, user_id, ring_id, value, date_created)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (record_id, app_id, org_id, user_id, ring_id, float(value), format_datetime(utc_now())),
            )
            row = conn.execute(f"SELECT * FROM {_T.ring_records} WHERE id = ?", (record_id,)).fetchone()
            return self._row_to_ring_record(row)

    def get_ring_records(self, app_id: str, org_id: str, user_id: str, ring_id: Optional[str] = None) -> List[RingRecord]:
        sql = f"SELECT * FROM {_T.ring_records} WHERE {_OWNER_SQL}"
        params: list = [app_id, org_id, user_id]
        if ring_id is not None:
            sql += " AND ring_id = ?"
            params.append(ring_id)
        with self._conn() as conn:
            rows = conn.execute(f"{sql} ORDER BY date_created DESC", params).fetchall()
            return [self._row_to_ring_record(r) for r in rows]
