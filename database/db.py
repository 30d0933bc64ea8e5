import hashlib
import hmac
import secrets
import sqlite3
from typing import Any, Literal

from backend.config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DB_PATH,
)


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000

LogType = Literal["departure", "return", "change"]
LeaderRole = Literal["admin", "leader"]


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM leaders
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO leaders (username, display_name, password_hash, role)
        VALUES (?, ?, ?, 'admin')
        """,
        (username, username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS activities (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (event_id) REFERENCES events(id) ON DELETE CASCADE
    )
    """)

    # current_activity_id NULL = not at any activity
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS participants (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id INTEGER NOT NULL,
        name TEXT NOT NULL,
        qr_code TEXT NOT NULL,
        current_activity_id INTEGER,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (event_id) REFERENCES events(id) ON DELETE CASCADE,
        FOREIGN KEY (current_activity_id) REFERENCES activities(id) ON DELETE SET NULL,
        UNIQUE(event_id, qr_code)
    )
    """)

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS leaders (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        display_name TEXT,
        password_hash TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'leader',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    # Append-only movement log
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS activity_logs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_id INTEGER NOT NULL,
        participant_id INTEGER NOT NULL,
        activity_id INTEGER NOT NULL,
        from_activity_id INTEGER,
        leader_id INTEGER NOT NULL,
        type TEXT NOT NULL CHECK (type IN ('departure', 'return', 'change')),
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (event_id) REFERENCES events(id) ON DELETE CASCADE,
        FOREIGN KEY (participant_id) REFERENCES participants(id) ON DELETE CASCADE
    )
    """)

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_activity_logs_participant ON activity_logs(participant_id, id)"
    )

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Events
# -----------------------------
def add_event(name: str) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("INSERT INTO events (name) VALUES (?)", (name,))
    event_id = cur.lastrowid
    conn.commit()
    conn.close()
    return event_id


def get_all_events():
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, name, created_at
        FROM events
        ORDER BY created_at DESC, id DESC
    """)
    rows = cur.fetchall()
    conn.close()
    return [{"id": r[0], "name": r[1], "created_at": r[2]} for r in rows]


def get_event_by_id(event_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT id, name, created_at FROM events WHERE id = ?", (event_id,))
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    return {"id": row[0], "name": row[1], "created_at": row[2]}


# -----------------------------
# Activities
# -----------------------------
def _activity_from_row(row) -> dict:
    return {"id": row[0], "event_id": row[1], "name": row[2]}


def add_activity(event_id: int, name: str) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO activities (event_id, name)
        VALUES (?, ?)
    """, (event_id, name))
    activity_id = cur.lastrowid
    conn.commit()
    conn.close()
    return activity_id


def get_activities_by_event(event_id: int) -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, event_id, name
        FROM activities
        WHERE event_id = ?
        ORDER BY name COLLATE NOCASE, id
    """, (event_id,))
    rows = cur.fetchall()
    conn.close()
    return [_activity_from_row(r) for r in rows]


def get_activity_by_id(activity_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, event_id, name
        FROM activities
        WHERE id = ?
    """, (activity_id,))
    row = cur.fetchone()
    conn.close()
    return _activity_from_row(row) if row else None


# -----------------------------
# Participants
# -----------------------------
def _participant_from_row(row) -> dict:
    return {
        "id": row[0],
        "event_id": row[1],
        "name": row[2],
        "qr_code": row[3],
        "current_activity_id": row[4],
    }


def add_participant(event_id: int, name: str, qr_code: str) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO participants (event_id, name, qr_code)
        VALUES (?, ?, ?)
    """, (event_id, name, qr_code))
    participant_id = cur.lastrowid
    conn.commit()
    conn.close()
    return participant_id


def get_participants_by_event(event_id: int) -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, event_id, name, qr_code, current_activity_id
        FROM participants
        WHERE event_id = ?
        ORDER BY name COLLATE NOCASE, id
    """, (event_id,))
    rows = cur.fetchall()
    conn.close()
    return [_participant_from_row(r) for r in rows]


def get_participant_by_id(participant_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, event_id, name, qr_code, current_activity_id
        FROM participants
        WHERE id = ?
    """, (participant_id,))
    row = cur.fetchone()
    conn.close()
    return _participant_from_row(row) if row else None


def get_participant_by_qr_code(qr_code: str, event_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, event_id, name, qr_code, current_activity_id
        FROM participants
        WHERE qr_code = ? AND event_id = ?
    """, (qr_code, event_id))
    row = cur.fetchone()
    conn.close()
    return _participant_from_row(row) if row else None


def get_participant_current_activity(participant_id: int) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT a.id, a.event_id, a.name
        FROM participants p
        JOIN activities a ON a.id = p.current_activity_id
        WHERE p.id = ?
    """, (participant_id,))
    row = cur.fetchone()
    conn.close()
    return _activity_from_row(row) if row else None


def update_participant_location(
    event_id: int,
    participant_id: int,
    activity_id: int | None,
    *,
    check_expected: bool = False,
    expected_activity_id: int | None = None,
) -> bool:
    """
    Overwrite `participants.current_activity_id`.

    With `check_expected`, the row is only updated while it still points at
    `expected_activity_id` (compare-and-swap). Returns whether a row changed.
    """
    conn = connect_db()
    cur = conn.cursor()
    if check_expected:
        cur.execute("""
            UPDATE participants
            SET current_activity_id = ?
            WHERE id = ? AND event_id = ? AND current_activity_id IS ?
        """, (activity_id, participant_id, event_id, expected_activity_id))
    else:
        cur.execute("""
            UPDATE participants
            SET current_activity_id = ?
            WHERE id = ? AND event_id = ?
        """, (activity_id, participant_id, event_id))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


# -----------------------------
# Leaders
# -----------------------------
def create_leader(
    username: str,
    password: str,
    *,
    display_name: str | None = None,
    role: LeaderRole = "leader",
) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO leaders (username, display_name, password_hash, role)
        VALUES (?, ?, ?, ?)
        """,
        (clean_username, (display_name or clean_username).strip(), _hash_password(clean_password), role),
    )
    leader_id = cur.lastrowid
    conn.commit()
    conn.close()
    return leader_id


def verify_leader_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, display_name, password_hash, role
        FROM leaders
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    leader_id, saved_username, display_name, password_hash, role = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {
        "id": leader_id,
        "username": saved_username,
        "display_name": display_name,
        "role": role,
    }


# -----------------------------
# Activity logs
# -----------------------------
_ACTIVITY_LOG_COLUMNS = """
    l.id,
    l.event_id,
    l.participant_id,
    l.activity_id,
    l.from_activity_id,
    l.leader_id,
    l.type,
    l.created_at
"""


def _activity_log_from_row(row) -> dict[str, Any]:
    return {
        "id": row[0],
        "event_id": row[1],
        "participant_id": row[2],
        "activity_id": row[3],
        "from_activity_id": row[4],
        "leader_id": row[5],
        "type": row[6],
        "created_at": row[7],
    }


def create_activity_log(
    *,
    event_id: int,
    participant_id: int,
    activity_id: int,
    leader_id: int,
    log_type: LogType,
    from_activity_id: int | None = None,
) -> dict[str, Any]:
    """
    Append a single movement record and return it.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO activity_logs (
                event_id,
                participant_id,
                activity_id,
                from_activity_id,
                leader_id,
                type
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (event_id, participant_id, activity_id, from_activity_id, leader_id, log_type),
        )
        log_id = int(cur.lastrowid)
        conn.commit()
        cur.execute(
            f"SELECT {_ACTIVITY_LOG_COLUMNS} FROM activity_logs l WHERE l.id = ?",
            (log_id,),
        )
        return _activity_log_from_row(cur.fetchone())
    finally:
        conn.close()


def get_activity_logs(
    *,
    event_id: int | None = None,
    participant_id: int | None = None,
    activity_id: int | None = None,
    leader_id: int | None = None,
    log_type: LogType | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[dict[str, Any]]:
    """
    Movement history, newest first.
    """
    where_sql, params = _build_activity_logs_where_clause(
        event_id=event_id,
        participant_id=participant_id,
        activity_id=activity_id,
        leader_id=leader_id,
        log_type=log_type,
    )

    safe_limit = max(1, min(int(limit), 500))
    safe_offset = max(0, int(offset))

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_ACTIVITY_LOG_COLUMNS}
        FROM activity_logs l
        WHERE {where_sql}
        ORDER BY l.created_at DESC, l.id DESC
        LIMIT ?
        OFFSET ?
        """,
        [*params, safe_limit, safe_offset],
    )
    rows = cur.fetchall()
    conn.close()
    return [_activity_log_from_row(r) for r in rows]


def get_activity_logs_total(
    *,
    event_id: int | None = None,
    participant_id: int | None = None,
    activity_id: int | None = None,
    leader_id: int | None = None,
    log_type: LogType | None = None,
) -> int:
    where_sql, params = _build_activity_logs_where_clause(
        event_id=event_id,
        participant_id=participant_id,
        activity_id=activity_id,
        leader_id=leader_id,
        log_type=log_type,
    )

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT COUNT(1)
        FROM activity_logs l
        WHERE {where_sql}
        """,
        params,
    )
    row = cur.fetchone()
    conn.close()
    return int(row[0] or 0) if row else 0


def _build_activity_logs_where_clause(
    *,
    event_id: int | None = None,
    participant_id: int | None = None,
    activity_id: int | None = None,
    leader_id: int | None = None,
    log_type: LogType | None = None,
) -> tuple[str, list[Any]]:
    where = ["1=1"]
    params: list[Any] = []

    if event_id is not None:
        where.append("l.event_id = ?")
        params.append(event_id)
    if participant_id is not None:
        where.append("l.participant_id = ?")
        params.append(participant_id)
    if activity_id is not None:
        where.append("(l.activity_id = ? OR l.from_activity_id = ?)")
        params.extend([activity_id, activity_id])
    if leader_id is not None:
        where.append("l.leader_id = ?")
        params.append(leader_id)
    if log_type is not None:
        where.append("l.type = ?")
        params.append(log_type)

    return " AND ".join(where), params


# -----------------------------
# Maintenance
# -----------------------------
def clear_activity_logs():
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='activity_logs'")
    if not cur.fetchone():
        conn.close()
        return False
    cur.execute("DELETE FROM activity_logs")
    cur.execute("UPDATE participants SET current_activity_id = NULL")
    conn.commit()
    conn.close()
    return True


def clear_all_tables():
    conn = connect_db()
    cur = conn.cursor()
    # children first
    cur.execute("DELETE FROM activity_logs")
    cur.execute("DELETE FROM participants")
    cur.execute("DELETE FROM activities")
    cur.execute("DELETE FROM events")
    cur.execute("DELETE FROM leaders WHERE role != 'admin'")
    conn.commit()
    conn.close()
