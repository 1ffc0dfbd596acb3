"""Authorization directory: delegation grants from the relay to clients.

A grant says that an issuer (the relay's identity) permits a receiver key,
or everyone, to use a named capability. The relay only ever asks one
question of a directory: which grants has this issuer made?
"""

import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

from config import RAGENT_CAPABILITY, RAGENT_EVERYONE_KEY
from .identity import fmt_key, unfmt_key

EVERYONE_KEY = unfmt_key(RAGENT_EVERYONE_KEY)


class GrantState(Enum):
    """Validity state of a grant."""
    VALID = "valid"
    EXPIRED = "expired"
    REVOKED = "revoked"
    UNKNOWN = "unknown"


class GrantDirectoryError(Exception):
    """Raised when the directory cannot answer a query."""


@dataclass(frozen=True)
class Grant:
    """A delegation from issuer to receiver for one capability."""
    issuer_vk: bytes
    receiver_vk: bytes
    capability: str
    state: GrantState = GrantState.VALID
    grant_id: Optional[int] = None
    created_at: Optional[float] = None
    expires_at: Optional[float] = None

    @property
    def is_wildcard(self) -> bool:
        return self.receiver_vk == EVERYONE_KEY

    def to_dict(self) -> dict:
        return {
            "id": self.grant_id,
            "issuer": fmt_key(self.issuer_vk),
            "receiver": "everyone" if self.is_wildcard else fmt_key(self.receiver_vk),
            "capability": self.capability,
            "state": self.state.value,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
        }


def is_admitted(
    grants: Iterable[Grant],
    client_vk: bytes,
    capability: str = RAGENT_CAPABILITY,
) -> bool:
    """Return True if any valid grant for *capability* covers *client_vk*.

    Any-match: grant order does not matter, and a grant to the wildcard
    key covers every client.
    """
    client_vk = bytes(client_vk)
    for grant in grants:
        if grant.state != GrantState.VALID:
            continue
        if grant.capability != capability:
            continue
        if grant.receiver_vk == client_vk or grant.receiver_vk == EVERYONE_KEY:
            return True
    return False


class GrantDirectory(ABC):
    """Source of delegation grants."""

    @abstractmethod
    def find_grants_from(self, issuer_vk: bytes) -> List[Grant]:
        """Return all grants made by *issuer_vk*, with their current state."""


class MemoryGrantDirectory(GrantDirectory):
    """In-process grant directory."""

    def __init__(self, grants: Optional[Iterable[Grant]] = None):
        self._grants: List[Grant] = list(grants or [])
        self._lock = threading.Lock()

    def add(self, grant: Grant) -> None:
        with self._lock:
            self._grants.append(grant)

    def find_grants_from(self, issuer_vk: bytes) -> List[Grant]:
        issuer_vk = bytes(issuer_vk)
        with self._lock:
            return [g for g in self._grants if g.issuer_vk == issuer_vk]


GRANTS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS relay_grants (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    issuer_vk TEXT NOT NULL,
    receiver_vk TEXT NOT NULL,
    capability TEXT NOT NULL,
    created_at REAL NOT NULL,
    expires_at REAL,
    revoked_at REAL
);
CREATE INDEX IF NOT EXISTS idx_relay_grants_issuer ON relay_grants(issuer_vk);
"""


class SQLiteGrantDirectory(GrantDirectory):
    """Grant directory stored in a SQLite database.

    Grant state is derived at query time: a revoked grant is REVOKED, one
    past its expiry is EXPIRED, anything else is VALID.
    """

    def __init__(self, db_path: str):
        self.db_path = Path(db_path).expanduser() if db_path != ":memory:" else db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def initialize(self) -> None:
        """Open the database and create the schema."""
        if self._conn is not None:
            return
        try:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            # Queries run from executor threads; access is serialized by _lock
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.executescript(GRANTS_TABLE_SQL)
            conn.commit()
        except (sqlite3.Error, OSError) as e:
            raise GrantDirectoryError(f"Cannot open grant database {self.db_path}: {e}") from e
        self._conn = conn

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.initialize()
        return self._conn

    @staticmethod
    def _state(row: sqlite3.Row, now: float) -> GrantState:
        if row["revoked_at"] is not None:
            return GrantState.REVOKED
        if row["expires_at"] is not None and row["expires_at"] <= now:
            return GrantState.EXPIRED
        return GrantState.VALID

    def _row_to_grant(self, row: sqlite3.Row, now: float) -> Grant:
        return Grant(
            issuer_vk=unfmt_key(row["issuer_vk"]),
            receiver_vk=unfmt_key(row["receiver_vk"]),
            capability=row["capability"],
            state=self._state(row, now),
            grant_id=row["id"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
        )

    def _query(self, sql: str, params: tuple = ()) -> List[Grant]:
        now = time.time()
        with self._lock:
            try:
                rows = self._connection().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise GrantDirectoryError(f"Grant query failed: {e}") from e
        return [self._row_to_grant(row, now) for row in rows]

    def find_grants_from(self, issuer_vk: bytes) -> List[Grant]:
        return self._query("""
            SELECT id, issuer_vk, receiver_vk, capability, created_at, expires_at, revoked_at
            FROM relay_grants
            WHERE issuer_vk = ?
            ORDER BY id
        """, (fmt_key(issuer_vk),))

    def list_grants(self) -> List[Grant]:
        return self._query("""
            SELECT id, issuer_vk, receiver_vk, capability, created_at, expires_at, revoked_at
            FROM relay_grants
            ORDER BY id
        """)

    def add_grant(
        self,
        issuer_vk: bytes,
        receiver_vk: bytes,
        capability: str = RAGENT_CAPABILITY,
        ttl: Optional[float] = None,
    ) -> int:
        """Record a grant and return its id. *ttl* is in seconds."""
        now = time.time()
        expires_at = now + ttl if ttl is not None else None
        with self._lock:
            try:
                conn = self._connection()
                cursor = conn.execute("""
                    INSERT INTO relay_grants (issuer_vk, receiver_vk, capability, created_at, expires_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (fmt_key(issuer_vk), fmt_key(receiver_vk), capability, now, expires_at))
                conn.commit()
            except sqlite3.Error as e:
                raise GrantDirectoryError(f"Cannot add grant: {e}") from e
        return cursor.lastrowid

    def revoke_grant(self, grant_id: int) -> bool:
        """Revoke a grant. Returns False if no such unrevoked grant exists."""
        with self._lock:
            try:
                conn = self._connection()
                cursor = conn.execute("""
                    UPDATE relay_grants
                    SET revoked_at = ?
                    WHERE id = ? AND revoked_at IS NULL
                """, (time.time(), grant_id))
                conn.commit()
            except sqlite3.Error as e:
                raise GrantDirectoryError(f"Cannot revoke grant {grant_id}: {e}") from e
        return cursor.rowcount > 0
