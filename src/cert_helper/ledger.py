"""
Serial counter and issuance ledger of one CA level.

Both live in a single SQLite file (CA/ca.db, CA/intermediate/ca.db):

    counter(id=1, next_serial)      the persisted serial counter
    ledger(seq, serial, node, ...)  append-only record of issued certificates

An issuance reads the counter, signs with that serial, appends the ledger row
and advances the counter inside one BEGIN IMMEDIATE transaction, so two
signers (threads or processes) can never interleave read-increment-write.
The counter is the source of truth and is never recomputed from the ledger.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from cryptography import x509

from . import dn
from .pem import fingerprint
from .utils.files import ensure_dir

LOGGER = logging.getLogger(__name__)

DB_NAME = "ca.db"
BUSY_TIMEOUT = 30.0


@dataclass(frozen=True)
class LedgerEntry:
    """One issued certificate as recorded in the ledger."""
    seq: int
    serial: int
    node: Optional[str]
    subject: str
    request_digest: Optional[str]
    fingerprint: str
    not_before: str
    not_after: str
    issued_at: str


class Issuance:
    """
    Handle passed to the caller of IssuanceLedger.issue().

    Attributes:
        serial (int): Serial number reserved for this issuance.
    """

    def __init__(self, serial: int):
        self.serial = serial
        self._row: Optional[tuple] = None

    def record(self, cert: x509.Certificate, node: Optional[str] = None,
               request_digest: Optional[str] = None) -> None:
        """Describe the certificate signed with this serial; required before commit."""
        if cert.serial_number != self.serial:
            raise ValueError(f"Certificate serial {cert.serial_number} does not match reserved serial {self.serial}")
        self._row = (
            self.serial,
            node,
            dn.name_str(cert.subject),
            request_digest,
            fingerprint(cert),
            cert.not_valid_before_utc.isoformat(),
            cert.not_valid_after_utc.isoformat(),
            datetime.now(timezone.utc).isoformat(),
        )


class IssuanceLedger:
    """
    Transactional serial counter + append-only ledger.

    Args:
        path (Path): SQLite database file.
        first_serial (int, optional): Counter value for a new database. Defaults to 1.
    """

    def __init__(self, path: Path, first_serial: int = 1):
        self.path = Path(path)
        self.first_serial = first_serial
        self._lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE.
        return sqlite3.connect(self.path, timeout=BUSY_TIMEOUT, isolation_level=None)

    def initialize(self) -> None:
        """Create the database, tables and counter row if they do not exist yet."""
        ensure_dir(self.path.parent)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS counter(
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    next_serial INTEGER NOT NULL        -- serial handed to the next issuance
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS ledger(
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    serial INTEGER NOT NULL UNIQUE,
                    node TEXT,                          -- path-safe node name (NULL for CA certificates)
                    subject TEXT NOT NULL,
                    request_digest TEXT,                -- SHA-256 of the signed CSR (DER)
                    fingerprint TEXT NOT NULL,          -- SHA-256 of the issued certificate (DER)
                    not_before TEXT NOT NULL,
                    not_after TEXT NOT NULL,
                    issued_at TEXT NOT NULL
                )
            """)
            conn.execute("INSERT OR IGNORE INTO counter(id, next_serial) VALUES (1, ?)", (self.first_serial,))
            conn.execute("COMMIT")
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def issue(self) -> Iterator[Issuance]:
        """
        Reserve the next serial for one certificate.

        Usage:
            with ledger.issue() as issuance:
                cert = builder.serial_number(issuance.serial).sign(...)
                issuance.record(cert, node="db1.example.com")

        The counter advances and the ledger row is appended on normal exit,
        atomically. If the block raises, nothing is persisted.

        Raises:
            RuntimeError: If the block exits without calling record().
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT next_serial FROM counter WHERE id = 1").fetchone()
                if row is None:
                    raise RuntimeError(f"Ledger is not initialized: {self.path}")
                issuance = Issuance(int(row[0]))
                yield issuance
                if issuance._row is None:
                    raise RuntimeError(f"Serial {issuance.serial} was reserved but no certificate was recorded")
                conn.execute(
                    "INSERT INTO ledger(serial, node, subject, request_digest, fingerprint, "
                    "not_before, not_after, issued_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    issuance._row,
                )
                conn.execute("UPDATE counter SET next_serial = ? WHERE id = 1", (issuance.serial + 1,))
                conn.execute("COMMIT")
                LOGGER.debug("Recorded serial %d in %s", issuance.serial, self.path)
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    def next_serial(self) -> int:
        """Current value of the persisted counter."""
        conn = self._connect()
        try:
            return int(conn.execute("SELECT next_serial FROM counter WHERE id = 1").fetchone()[0])
        finally:
            conn.close()

    def entries(self) -> list[LedgerEntry]:
        """All ledger rows in issuance order."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT seq, serial, node, subject, request_digest, fingerprint, "
                "not_before, not_after, issued_at FROM ledger ORDER BY seq"
            ).fetchall()
        finally:
            conn.close()
        return [LedgerEntry(*r) for r in rows]

    def issued_digests(self) -> set[str]:
        """Request digests that already have a certificate."""
        return {e.request_digest for e in self.entries() if e.request_digest}
