"""Append-only, hash-chained settlement ledger backed by SQLite.

The ledger is the source of truth for every settlement.  The case row in
``settlement_cases`` is a projection of it; ``replay_status`` derives the
authoritative status from the entries alone.

Design:
- Append-only: only ``append()`` writes; no update, no delete.
- Hash-chained per settlement: each entry seals the previous entry's hash.
- Strictly increasing timestamps and sequence numbers per settlement.
- Sealed after a terminal entry (SETTLED, FAILED, CANCELLED).  The only
  entry accepted afterwards is an AMBIGUOUS_RESOLVED that restates the
  sealed status, used to reconcile a case row that drifted from it.
- Read-last-then-insert runs inside one ``BEGIN IMMEDIATE`` transaction so
  concurrent writers cannot fork the chain.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager
from datetime import datetime, timedelta
from pathlib import Path

from aurumshield.core.hasher import compute_entry_hash
from aurumshield.core.settlement_store import CREATE_SETTLEMENT_CASES
from aurumshield.models.settlement import (
    TERMINAL_STATUSES,
    LedgerEntry,
    LedgerEntrySnapshot,
    LedgerEntryType,
    SettlementStatus,
    UserRole,
)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_LEDGER = """
CREATE TABLE IF NOT EXISTS ledger_entries (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    settlement_id       TEXT NOT NULL REFERENCES settlement_cases(id),
    sequence            INTEGER NOT NULL,
    type                TEXT NOT NULL,
    actor               TEXT NOT NULL,
    actor_user_id       TEXT NOT NULL DEFAULT '',
    actor_role          TEXT NOT NULL,
    timestamp_utc       TEXT NOT NULL,
    from_status         TEXT,
    to_status           TEXT,
    detail              TEXT NOT NULL DEFAULT '',
    snapshot_json       TEXT NOT NULL,
    metadata_json       TEXT NOT NULL DEFAULT '{}',
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE,
    UNIQUE (settlement_id, sequence)
);
"""

_CREATE_IDX_SETTLEMENT = """
CREATE INDEX IF NOT EXISTS idx_ledger_settlement ON ledger_entries(settlement_id, sequence);
"""

_MIN_TICK = timedelta(microseconds=1)


class LedgerIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class LedgerSealedError(RuntimeError):
    """Raised when appending to a settlement whose ledger reached a terminal entry."""

    def __init__(self, settlement_id: str, terminal_status: SettlementStatus) -> None:
        self.settlement_id = settlement_id
        self.terminal_status = terminal_status
        super().__init__(
            f"Ledger for {settlement_id} is sealed at {terminal_status.value}; "
            "no further entries may be appended."
        )


def replay_status(entries: list[LedgerEntry]) -> SettlementStatus:
    """Derive a settlement's status from its ledger alone.

    The status is the ``to_status`` of the last entry that carries one; a
    ledger with no such entry is DRAFT.
    """
    for entry in reversed(entries):
        if entry.to_status is not None:
            return entry.to_status
    return SettlementStatus.DRAFT


def _restates_sealed_status(entry: LedgerEntry, sealed: SettlementStatus) -> bool:
    return (
        entry.type == LedgerEntryType.AMBIGUOUS_RESOLVED
        and entry.from_status == sealed
        and entry.to_status == sealed
    )


class SettlementLedger:
    """Append-only, hash-chained ledger of settlement lifecycle events.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Shared with ``SettlementStore``
        so entries can reference their case row.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False, isolation_level=None
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute(CREATE_SETTLEMENT_CASES)
            conn.execute(_CREATE_LEDGER)
            conn.execute(_CREATE_IDX_SETTLEMENT)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Seal and append an entry.

        Assigns ``sequence``, ``previous_entry_hash`` and ``entry_hash``, and
        bumps the timestamp by one microsecond if the clock did not advance
        past the previous entry.  Returns the sealed entry.

        Raises
        ------
        LedgerSealedError
            If the settlement already has a terminal entry and ``entry`` is
            not a reconciliation of it.
        """
        with self._transaction() as conn:
            terminal = conn.execute(
                "SELECT to_status FROM ledger_entries "
                "WHERE settlement_id = ? AND to_status IN (?, ?, ?) LIMIT 1",
                (entry.settlement_id, *(s.value for s in sorted(TERMINAL_STATUSES))),
            ).fetchone()
            if terminal is not None and not _restates_sealed_status(
                entry, SettlementStatus(terminal[0])
            ):
                raise LedgerSealedError(entry.settlement_id, SettlementStatus(terminal[0]))

            last = conn.execute(
                "SELECT sequence, timestamp_utc, entry_hash FROM ledger_entries "
                "WHERE settlement_id = ? ORDER BY sequence DESC LIMIT 1",
                (entry.settlement_id,),
            ).fetchone()

            sequence = 1
            previous_hash = ""
            timestamp = entry.timestamp
            if last is not None:
                sequence = last[0] + 1
                previous_hash = last[2]
                last_ts = datetime.fromisoformat(last[1])
                if timestamp <= last_ts:
                    timestamp = last_ts + _MIN_TICK

            unsealed = entry.model_copy(
                update={
                    "sequence": sequence,
                    "timestamp": timestamp,
                    "previous_entry_hash": previous_hash,
                    "entry_hash": "",
                }
            )
            entry_hash = compute_entry_hash(unsealed.model_dump(mode="json"))
            sealed = unsealed.model_copy(update={"entry_hash": entry_hash})
            self._insert(conn, sealed)
        return sealed

    @staticmethod
    def _insert(conn: sqlite3.Connection, entry: LedgerEntry) -> None:
        conn.execute(
            """
            INSERT INTO ledger_entries
                (entry_id, settlement_id, sequence, type, actor, actor_user_id,
                 actor_role, timestamp_utc, from_status, to_status, detail,
                 snapshot_json, metadata_json, previous_entry_hash, entry_hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry.entry_id,
                entry.settlement_id,
                entry.sequence,
                entry.type.value,
                entry.actor,
                entry.actor_user_id,
                entry.actor_role.value,
                entry.timestamp.isoformat(),
                entry.from_status.value if entry.from_status else None,
                entry.to_status.value if entry.to_status else None,
                entry.detail,
                json.dumps(entry.snapshot.model_dump(mode="json")),
                json.dumps(entry.metadata),
                entry.previous_entry_hash,
                entry.entry_hash,
            ),
        )

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_entries(self, settlement_id: str) -> list[LedgerEntry]:
        """Return all entries for a settlement in append order."""
        return self.get_entries_since(settlement_id, 0)

    def get_entries_since(self, settlement_id: str, sequence: int) -> list[LedgerEntry]:
        """Return entries with a sequence number strictly greater than ``sequence``."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM ledger_entries WHERE settlement_id = ? AND sequence > ? "
                "ORDER BY sequence ASC",
                (settlement_id, sequence),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_latest(self, settlement_id: str) -> LedgerEntry | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM ledger_entries WHERE settlement_id = ? "
                "ORDER BY sequence DESC LIMIT 1",
                (settlement_id,),
            ).fetchone()
        return self._row_to_entry(row) if row else None

    def get_all_settlement_ids(self) -> list[str]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT settlement_id FROM ledger_entries "
                "GROUP BY settlement_id ORDER BY MIN(id) ASC"
            ).fetchall()
        return [row[0] for row in rows]

    def current_status(self, settlement_id: str) -> SettlementStatus:
        return replay_status(self.get_entries(settlement_id))

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, settlement_id: str) -> bool:
        """Verify the hash chain for one settlement.

        Walks all entries in order, recomputes each entry_hash, and checks
        the previous_entry_hash links and sequence numbering.

        Returns True if the chain is valid, raises LedgerIntegrityError otherwise.
        """
        prev_hash = ""
        for expected_seq, entry in enumerate(self.get_entries(settlement_id), start=1):
            if entry.sequence != expected_seq:
                raise LedgerIntegrityError(
                    f"Sequence gap at entry {entry.entry_id}: "
                    f"expected {expected_seq}, got {entry.sequence}"
                )
            if entry.previous_entry_hash != prev_hash:
                raise LedgerIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise LedgerIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, "
                    f"got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        (
            _id,
            entry_id,
            settlement_id,
            sequence,
            type_,
            actor,
            actor_user_id,
            actor_role,
            timestamp_utc,
            from_status,
            to_status,
            detail,
            snapshot_json,
            metadata_json,
            previous_entry_hash,
            entry_hash,
        ) = row
        return LedgerEntry(
            entry_id=entry_id,
            settlement_id=settlement_id,
            sequence=sequence,
            type=LedgerEntryType(type_),
            actor=actor,
            actor_user_id=actor_user_id,
            actor_role=UserRole(actor_role),
            timestamp=datetime.fromisoformat(timestamp_utc),
            from_status=SettlementStatus(from_status) if from_status else None,
            to_status=SettlementStatus(to_status) if to_status else None,
            detail=detail,
            snapshot=LedgerEntrySnapshot.model_validate(json.loads(snapshot_json)),
            metadata=json.loads(metadata_json),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
