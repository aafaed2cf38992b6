import json
import sqlite3
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

SQLITE_BUSY_TIMEOUT_MS = 5000
SQLITE_CONNECT_TIMEOUT_SECONDS = SQLITE_BUSY_TIMEOUT_MS / 1000


CREATE_TABLE_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value_json TEXT NOT NULL,
        expires_at REAL,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        channel TEXT NOT NULL,
        external_id TEXT NOT NULL,
        direction TEXT NOT NULL,
        text TEXT,
        meta_json TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS leads (
        lead_id INTEGER PRIMARY KEY AUTOINCREMENT,
        channel TEXT NOT NULL,
        external_id TEXT NOT NULL,
        phone TEXT,
        score INTEGER NOT NULL DEFAULT 0,
        tier TEXT NOT NULL DEFAULT 'cold',
        status TEXT NOT NULL DEFAULT 'new',
        message_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(channel, external_id)
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS bookings (
        id TEXT PRIMARY KEY,
        channel TEXT NOT NULL,
        external_id TEXT NOT NULL,
        property TEXT NOT NULL,
        name TEXT NOT NULL,
        phone TEXT NOT NULL,
        email TEXT NOT NULL,
        date TEXT NOT NULL,
        time TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'confirmed',
        calendar_event_id TEXT,
        calendar_link TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    );
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        channel TEXT NOT NULL,
        message_id TEXT NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(channel, message_id)
    );
    """,
]

CREATE_INDEX_STATEMENTS = [
    "CREATE INDEX IF NOT EXISTS idx_messages_identity ON messages(channel, external_id, id);",
    "CREATE INDEX IF NOT EXISTS idx_leads_updated_at ON leads(updated_at);",
    "CREATE INDEX IF NOT EXISTS idx_bookings_identity ON bookings(channel, external_id);",
    "CREATE INDEX IF NOT EXISTS idx_bookings_phone ON bookings(phone);",
    "CREATE INDEX IF NOT EXISTS idx_kv_store_expires_at ON kv_store(expires_at);",
    "CREATE INDEX IF NOT EXISTS idx_processed_messages_created_at ON processed_messages(created_at);",
]

BOOKING_COLUMNS = (
    "id",
    "channel",
    "external_id",
    "property",
    "name",
    "phone",
    "email",
    "date",
    "time",
    "status",
    "calendar_event_id",
    "calendar_link",
    "created_at",
    "updated_at",
)
BOOKING_UPDATABLE_COLUMNS = {"date", "time", "status", "calendar_event_id", "calendar_link", "updated_at"}


def _apply_pragmas(conn: sqlite3.Connection) -> None:
    conn.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS};")
    conn.execute("PRAGMA journal_mode = WAL;")
    conn.execute("PRAGMA synchronous = NORMAL;")


def init_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        _apply_pragmas(conn)
        for stmt in CREATE_TABLE_STATEMENTS:
            conn.execute(stmt)
        for stmt in CREATE_INDEX_STATEMENTS:
            conn.execute(stmt)
        conn.commit()


def get_connection(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(
        db_path,
        check_same_thread=False,
        timeout=SQLITE_CONNECT_TIMEOUT_SECONDS,
    )
    _apply_pragmas(conn)
    conn.row_factory = sqlite3.Row
    return conn


def kv_get(conn: sqlite3.Connection, key: str, now: Optional[float] = None) -> Optional[Dict[str, Any]]:
    current = time.time() if now is None else now
    row = conn.execute(
        """
        SELECT value_json
        FROM kv_store
        WHERE key = ?
          AND (expires_at IS NULL OR expires_at > ?)
        LIMIT 1
        """,
        (key, current),
    ).fetchone()
    if not row:
        return None
    try:
        payload = json.loads(row["value_json"] or "{}")
    except json.JSONDecodeError:
        return None
    return payload if isinstance(payload, dict) else None


def kv_set(
    conn: sqlite3.Connection,
    key: str,
    value: Dict[str, Any],
    ttl_seconds: Optional[int] = None,
    now: Optional[float] = None,
) -> None:
    current = time.time() if now is None else now
    expires_at = current + ttl_seconds if ttl_seconds else None
    conn.execute(
        """
        INSERT INTO kv_store (key, value_json, expires_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            value_json = excluded.value_json,
            expires_at = excluded.expires_at,
            updated_at = CURRENT_TIMESTAMP
        """,
        (key, json.dumps(value, ensure_ascii=False), expires_at),
    )
    conn.commit()


def purge_expired_kv(conn: sqlite3.Connection, now: Optional[float] = None) -> int:
    current = time.time() if now is None else now
    cursor = conn.execute(
        "DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at <= ?",
        (current,),
    )
    conn.commit()
    return int(cursor.rowcount or 0)


def claim_message_id(conn: sqlite3.Connection, channel: str, message_id: str) -> bool:
    """Record a provider delivery id; False means it was already seen."""
    try:
        conn.execute(
            "INSERT INTO processed_messages (channel, message_id) VALUES (?, ?)",
            (channel, message_id),
        )
        conn.commit()
        return True
    except sqlite3.IntegrityError:
        return False


def purge_processed_messages(conn: sqlite3.Connection, older_than_days: int = 7) -> int:
    cursor = conn.execute(
        "DELETE FROM processed_messages WHERE created_at < datetime('now', ?)",
        (f"-{max(1, int(older_than_days))} days",),
    )
    conn.commit()
    return int(cursor.rowcount or 0)


def log_message(
    conn: sqlite3.Connection,
    channel: str,
    external_id: str,
    direction: str,
    text: str,
    meta: Optional[Dict[str, Any]] = None,
) -> None:
    meta_json = json.dumps(meta or {}, ensure_ascii=False)
    conn.execute(
        """
        INSERT INTO messages (channel, external_id, direction, text, meta_json)
        VALUES (?, ?, ?, ?, ?)
        """,
        (channel, external_id, direction, text, meta_json),
    )
    conn.commit()


def list_recent_messages(
    conn: sqlite3.Connection,
    channel: str,
    external_id: str,
    limit: int = 8,
) -> List[Dict[str, Any]]:
    cursor = conn.execute(
        """
        SELECT id, direction, text, meta_json, created_at
        FROM messages
        WHERE channel = ? AND external_id = ?
        ORDER BY id DESC
        LIMIT ?
        """,
        (channel, external_id, limit),
    )
    rows: List[Dict[str, Any]] = []
    for row in cursor.fetchall():
        item = dict(row)
        item["meta"] = json.loads(item.pop("meta_json") or "{}")
        rows.append(item)
    rows.reverse()
    return rows


def list_inbound_messages(
    conn: sqlite3.Connection,
    channel: str,
    external_id: str,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Inbound messages oldest first; with ``limit`` only the latest ``limit`` rows."""
    if limit is None:
        cursor = conn.execute(
            """
            SELECT text, created_at
            FROM messages
            WHERE channel = ? AND external_id = ? AND direction = 'inbound'
            ORDER BY id ASC
            """,
            (channel, external_id),
        )
        rows = cursor.fetchall()
    else:
        cursor = conn.execute(
            """
            SELECT text, created_at
            FROM messages
            WHERE channel = ? AND external_id = ? AND direction = 'inbound'
            ORDER BY id DESC
            LIMIT ?
            """,
            (channel, external_id, max(0, int(limit))),
        )
        rows = list(reversed(cursor.fetchall()))
    return [{"text": row["text"] or "", "time": row["created_at"]} for row in rows]


def count_inbound_messages(conn: sqlite3.Connection, channel: str, external_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS total FROM messages WHERE channel = ? AND external_id = ? AND direction = 'inbound'",
        (channel, external_id),
    ).fetchone()
    return int(row["total"]) if row else 0


def upsert_lead(
    conn: sqlite3.Connection,
    channel: str,
    external_id: str,
    score: int,
    tier: str,
    message_count: int,
    phone: Optional[str] = None,
) -> None:
    conn.execute(
        """
        INSERT INTO leads (channel, external_id, phone, score, tier, message_count)
        VALUES (?, ?, ?, ?, ?, ?)
        ON CONFLICT(channel, external_id) DO UPDATE SET
            phone = COALESCE(excluded.phone, leads.phone),
            score = excluded.score,
            tier = excluded.tier,
            message_count = excluded.message_count,
            updated_at = CURRENT_TIMESTAMP
        """,
        (channel, external_id, phone, score, tier, message_count),
    )
    conn.commit()


def update_lead_status(
    conn: sqlite3.Connection,
    channel: str,
    external_id: str,
    status: str,
    phone: Optional[str] = None,
) -> None:
    conn.execute(
        """
        UPDATE leads
        SET status = ?,
            phone = COALESCE(?, phone),
            updated_at = CURRENT_TIMESTAMP
        WHERE channel = ? AND external_id = ?
        """,
        (status, phone, channel, external_id),
    )
    conn.commit()


def get_lead(conn: sqlite3.Connection, channel: str, external_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        "SELECT * FROM leads WHERE channel = ? AND external_id = ?",
        (channel, external_id),
    ).fetchone()
    return dict(row) if row else None


def list_recent_leads(conn: sqlite3.Connection, limit: int = 100) -> List[Dict[str, Any]]:
    cursor = conn.execute(
        """
        SELECT lead_id, channel, external_id, phone, score, tier, status,
               message_count, created_at, updated_at
        FROM leads
        ORDER BY updated_at DESC, lead_id DESC
        LIMIT ?
        """,
        (limit,),
    )
    return [dict(row) for row in cursor.fetchall()]


def insert_booking(conn: sqlite3.Connection, record: Dict[str, Any]) -> None:
    columns = [column for column in BOOKING_COLUMNS if record.get(column) is not None]
    placeholders = ", ".join("?" for _ in columns)
    conn.execute(
        f"INSERT INTO bookings ({', '.join(columns)}) VALUES ({placeholders})",
        tuple(record[column] for column in columns),
    )
    conn.commit()


def update_booking(conn: sqlite3.Connection, booking_id: str, fields: Dict[str, Any]) -> None:
    unknown = set(fields) - BOOKING_UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"Cannot update booking columns: {', '.join(sorted(unknown))}")
    if not fields:
        return
    assignments = ", ".join(f"{column} = ?" for column in fields)
    conn.execute(
        f"UPDATE bookings SET {assignments} WHERE id = ?",
        (*fields.values(), booking_id),
    )
    conn.commit()


def get_booking(conn: sqlite3.Connection, booking_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
    return dict(row) if row else None


def list_bookings(
    conn: sqlite3.Connection,
    limit: int = 100,
    statuses: Optional[List[str]] = None,
) -> List[Dict[str, Any]]:
    if statuses:
        placeholders = ", ".join("?" for _ in statuses)
        cursor = conn.execute(
            f"""
            SELECT * FROM bookings
            WHERE status IN ({placeholders})
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (*statuses, limit),
        )
    else:
        cursor = conn.execute(
            "SELECT * FROM bookings ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (limit,),
        )
    return [dict(row) for row in cursor.fetchall()]
