import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone

import structlog

from db_models import Contact, LinkPrecedence
from errors import IntegrityViolation, StoreUnavailable

logger = structlog.get_logger()


SCHEMA = '''
    CREATE TABLE IF NOT EXISTS Contact (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        phoneNumber TEXT,
        email TEXT,
        linkedId INTEGER,
        linkPrecedence TEXT NOT NULL CHECK(linkPrecedence IN ('secondary', 'primary')),
        createdAt DATETIME NOT NULL,
        updatedAt DATETIME NOT NULL,
        deletedAt DATETIME,
        FOREIGN KEY (linkedId) REFERENCES Contact (id)
    );
    CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact (email);
    CREATE INDEX IF NOT EXISTS idx_contact_phone ON Contact (phoneNumber);
    CREATE INDEX IF NOT EXISTS idx_contact_linked ON Contact (linkedId);
'''


def utc_now():
    return datetime.now(timezone.utc)


def _to_contact(row) -> Contact:
    return Contact(**dict(row))


class ContactTransaction:
    """Store operations bound to one open transaction."""

    def __init__(self, conn: sqlite3.Connection, clock):
        self._conn = conn
        self._clock = clock

    def _now(self) -> str:
        return self._clock().isoformat(timespec="microseconds")

    def find_matching(self, email: str = None, phone: str = None) -> list[Contact]:
        # NULL never equals NULL, so an absent identifier matches nothing
        rows = self._conn.execute("""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND (email = ? OR phoneNumber = ?)
            ORDER BY createdAt ASC, id ASC
        """, (email, phone)).fetchall()
        return [_to_contact(row) for row in rows]

    def get(self, contact_id: int):
        row = self._conn.execute(
            "SELECT * FROM Contact WHERE id = ? AND deletedAt IS NULL", (contact_id,)
        ).fetchone()
        return _to_contact(row) if row else None

    def create(self, email: str = None, phone: str = None,
               precedence: LinkPrecedence = LinkPrecedence.PRIMARY, linked_id: int = None) -> Contact:
        now = self._now()
        cursor = self._conn.execute("""
            INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (phone, email, linked_id, LinkPrecedence(precedence).value, now, now))
        return self.get(cursor.lastrowid)

    def update(self, contact_id: int, precedence: LinkPrecedence, linked_id: int = None):
        self._conn.execute("""
            UPDATE Contact
            SET linkPrecedence = ?, linkedId = ?, updatedAt = ?
            WHERE id = ?
        """, (LinkPrecedence(precedence).value, linked_id, self._now(), contact_id))

    def find_group(self, primary_id: int) -> list[Contact]:
        rows = self._conn.execute("""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND (id = ? OR linkedId = ?)
            ORDER BY CASE WHEN id = ? THEN 0 ELSE 1 END, createdAt ASC, id ASC
        """, (primary_id, primary_id, primary_id)).fetchall()
        return [_to_contact(row) for row in rows]

    def soft_delete(self, contact_id: int):
        now = self._now()
        self._conn.execute(
            "UPDATE Contact SET deletedAt = ?, updatedAt = ? WHERE id = ?",
            (now, now, contact_id),
        )


class ContactStore:
    """sqlite-backed Contact table.

    The database runs in WAL mode, so readers never wait on a writer. Each
    unit of work gets its own connection. ``transaction()`` begins deferred
    and takes no lock until it writes; ``transaction(immediate=True)``
    reserves the write lock up front, waiting up to ``timeout`` seconds.
    """

    def __init__(self, path: str, timeout: float = 30.0, clock=utc_now):
        self.path = path
        self.timeout = timeout
        self.clock = clock

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=self.timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_schema(self):
        try:
            conn = self._connect()
            try:
                # persistent for the database file
                conn.execute("PRAGMA journal_mode = WAL")
                conn.executescript(SCHEMA)
            finally:
                conn.close()
        except sqlite3.Error as exc:
            logger.error("Failed to initialize contact store", path=self.path, error=str(exc))
            raise StoreUnavailable(f"Cannot initialize contact store: {exc}") from exc

    @contextmanager
    def transaction(self, immediate: bool = False):
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            logger.error("Failed to connect to contact store", path=self.path, error=str(exc))
            raise StoreUnavailable(f"Cannot connect to contact store: {exc}") from exc

        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN DEFERRED")
            try:
                yield ContactTransaction(conn, self.clock)
            except BaseException:
                # sqlite may already have rolled back on SQLITE_FULL / IOERR
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as exc:
            raise IntegrityViolation(f"Contact store rejected write: {exc}") from exc
        except sqlite3.Error as exc:
            logger.error("Contact store operation failed", path=self.path, error=str(exc))
            raise StoreUnavailable(f"Contact store operation failed: {exc}") from exc
        finally:
            conn.close()
