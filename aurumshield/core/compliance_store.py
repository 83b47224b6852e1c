"""Compliance case persistence with optimistic concurrency.

Writers (provider webhooks, user actions, reviewers) are independent and
must not block on each other, so status changes are compare-and-swap:

1. Application layer: ``target`` must be in ``ALLOWED_TRANSITIONS[expected]``.
2. Persistence layer: ``UPDATE ... WHERE id = ? AND status = ?``.  Zero rows
   means another writer moved the case first.

Both failures raise ``StateTransitionConflictError``; callers re-fetch and
reconcile rather than retry with the same expected status.  Every
successful transition writes its audit event in the same transaction.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from aurumshield.models.compliance import (
    ComplianceCase,
    ComplianceCaseStatus,
    ComplianceEvent,
    ComplianceTier,
    ConflictReason,
    EntityType,
    EventActor,
    is_valid_transition,
)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_CASES = """
CREATE TABLE IF NOT EXISTS compliance_cases (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL UNIQUE,
    org_id              TEXT,
    status              TEXT NOT NULL,
    tier                TEXT NOT NULL,
    entity_type         TEXT NOT NULL,
    provider_inquiry_id TEXT,
    jurisdiction        TEXT NOT NULL DEFAULT '',
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);
"""

_CREATE_EVENTS = """
CREATE TABLE IF NOT EXISTS compliance_events (
    seq          INTEGER PRIMARY KEY AUTOINCREMENT,
    id           TEXT NOT NULL UNIQUE,
    case_id      TEXT NOT NULL REFERENCES compliance_cases(id),
    actor        TEXT NOT NULL,
    action       TEXT NOT NULL,
    details_json TEXT NOT NULL DEFAULT '{}',
    created_at   TEXT NOT NULL
);
"""

_CREATE_IDX_EVENTS = """
CREATE INDEX IF NOT EXISTS idx_compliance_events_case ON compliance_events(case_id, seq);
"""

_CASE_COLUMNS = (
    "id, user_id, org_id, status, tier, entity_type, provider_inquiry_id, "
    "jurisdiction, created_at, updated_at"
)


class StateTransitionConflictError(RuntimeError):
    """A compliance transition was invalid or lost a concurrent race.

    Carries everything a caller needs to reconcile: the case, the status it
    expected, the target, and why the transition was refused.
    """

    def __init__(
        self,
        case_id: str,
        expected: ComplianceCaseStatus,
        target: ComplianceCaseStatus,
        reason: ConflictReason,
    ) -> None:
        self.case_id = case_id
        self.expected = expected
        self.target = target
        self.reason = reason
        super().__init__(
            f"{reason.value}: case {case_id} {expected.value} -> {target.value}"
        )


class ComplianceCaseNotFoundError(KeyError):
    """Raised when a compliance case id or user id has no stored case."""


class ComplianceStore:
    """SQLite store for compliance cases and their append-only events.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
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
            conn.execute(_CREATE_CASES)
            conn.execute(_CREATE_EVENTS)
            conn.execute(_CREATE_IDX_EVENTS)

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
    # Cases
    # ------------------------------------------------------------------

    def upsert_case(self, case: ComplianceCase) -> tuple[ComplianceCase, bool]:
        """Create the user's case, or return the one that already exists.

        Returns ``(case, created)``.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO compliance_cases ({_CASE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(user_id) DO NOTHING",
                (
                    case.id,
                    case.user_id,
                    case.org_id,
                    case.status.value,
                    case.tier.value,
                    case.entity_type.value,
                    case.provider_inquiry_id,
                    case.jurisdiction,
                    case.created_at.isoformat(),
                    case.updated_at.isoformat(),
                ),
            )
            created = cursor.rowcount == 1
            row = conn.execute(
                f"SELECT {_CASE_COLUMNS} FROM compliance_cases WHERE user_id = ?",
                (case.user_id,),
            ).fetchone()
            stored = self._row_to_case(row)
            if created:
                self._insert_event(
                    conn,
                    ComplianceEvent(
                        case_id=stored.id,
                        actor=EventActor.USER,
                        action="CASE_OPENED",
                        details={"entity_type": stored.entity_type.value},
                    ),
                )
        return stored, created

    def get_case(self, case_id: str) -> ComplianceCase:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_CASE_COLUMNS} FROM compliance_cases WHERE id = ?",
                (case_id,),
            ).fetchone()
        if row is None:
            raise ComplianceCaseNotFoundError(case_id)
        return self._row_to_case(row)

    def get_case_by_user(self, user_id: str) -> ComplianceCase | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_CASE_COLUMNS} FROM compliance_cases WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        return self._row_to_case(row) if row else None

    def update_status(
        self,
        case_id: str,
        target: ComplianceCaseStatus,
        expected_current: ComplianceCaseStatus,
        tier: ComplianceTier | None = None,
        *,
        actor: EventActor = EventActor.SYSTEM,
        action: str = "",
        details: dict[str, Any] | None = None,
    ) -> ComplianceCase:
        """Compare-and-swap a case from ``expected_current`` to ``target``.

        Raises
        ------
        StateTransitionConflictError
            ``INVALID_TRANSITION`` if the edge is not in the graph;
            ``CONCURRENT_CONFLICT`` if the stored status has moved on.
        ComplianceCaseNotFoundError
            If the case does not exist.
        """
        if not is_valid_transition(expected_current, target):
            raise StateTransitionConflictError(
                case_id, expected_current, target, ConflictReason.INVALID_TRANSITION
            )

        now = datetime.now(timezone.utc).isoformat()
        with self._transaction() as conn:
            if tier is None:
                cursor = conn.execute(
                    "UPDATE compliance_cases SET status = ?, updated_at = ? "
                    "WHERE id = ? AND status = ?",
                    (target.value, now, case_id, expected_current.value),
                )
            else:
                cursor = conn.execute(
                    "UPDATE compliance_cases SET status = ?, tier = ?, updated_at = ? "
                    "WHERE id = ? AND status = ?",
                    (target.value, tier.value, now, case_id, expected_current.value),
                )
            if cursor.rowcount == 0:
                exists = conn.execute(
                    "SELECT 1 FROM compliance_cases WHERE id = ?", (case_id,)
                ).fetchone()
                if exists is None:
                    raise ComplianceCaseNotFoundError(case_id)
                raise StateTransitionConflictError(
                    case_id, expected_current, target, ConflictReason.CONCURRENT_CONFLICT
                )

            event_details = {"from": expected_current.value, "to": target.value}
            if tier is not None:
                event_details["tier"] = tier.value
            event_details.update(details or {})
            self._insert_event(
                conn,
                ComplianceEvent(
                    case_id=case_id,
                    actor=actor,
                    action=action or f"STATUS_{target.value}",
                    details=event_details,
                ),
            )
            row = conn.execute(
                f"SELECT {_CASE_COLUMNS} FROM compliance_cases WHERE id = ?",
                (case_id,),
            ).fetchone()
        return self._row_to_case(row)

    def set_provider_inquiry(self, case_id: str, inquiry_id: str) -> ComplianceCase:
        """Attach the provider's inquiry reference without changing status."""
        now = datetime.now(timezone.utc).isoformat()
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE compliance_cases SET provider_inquiry_id = ?, updated_at = ? "
                "WHERE id = ?",
                (inquiry_id, now, case_id),
            )
            if cursor.rowcount == 0:
                raise ComplianceCaseNotFoundError(case_id)
            self._insert_event(
                conn,
                ComplianceEvent(
                    case_id=case_id,
                    actor=EventActor.SYSTEM,
                    action="PROVIDER_INQUIRY_LINKED",
                    details={"provider_inquiry_id": inquiry_id},
                ),
            )
        return self.get_case(case_id)

    # ------------------------------------------------------------------
    # Events (append-only)
    # ------------------------------------------------------------------

    def append_event(self, event: ComplianceEvent) -> ComplianceEvent:
        with self._transaction() as conn:
            self._insert_event(conn, event)
        return event

    def get_events(self, case_id: str) -> list[ComplianceEvent]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT id, case_id, actor, action, details_json, created_at "
                "FROM compliance_events WHERE case_id = ? ORDER BY seq ASC",
                (case_id,),
            ).fetchall()
        return [
            ComplianceEvent(
                id=id_,
                case_id=cid,
                actor=EventActor(actor),
                action=action,
                details=json.loads(details_json),
                created_at=datetime.fromisoformat(created_at),
            )
            for id_, cid, actor, action, details_json, created_at in rows
        ]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_event(conn: sqlite3.Connection, event: ComplianceEvent) -> None:
        conn.execute(
            "INSERT INTO compliance_events (id, case_id, actor, action, details_json, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                event.id,
                event.case_id,
                event.actor.value,
                event.action,
                json.dumps(event.details, sort_keys=True),
                event.created_at.isoformat(),
            ),
        )

    @staticmethod
    def _row_to_case(row: tuple) -> ComplianceCase:
        (
            id_,
            user_id,
            org_id,
            status,
            tier,
            entity_type,
            provider_inquiry_id,
            jurisdiction,
            created_at,
            updated_at,
        ) = row
        return ComplianceCase(
            id=id_,
            user_id=user_id,
            org_id=org_id,
            status=ComplianceCaseStatus(status),
            tier=ComplianceTier(tier),
            entity_type=EntityType(entity_type),
            provider_inquiry_id=provider_inquiry_id,
            jurisdiction=jurisdiction,
            created_at=datetime.fromisoformat(created_at),
            updated_at=datetime.fromisoformat(updated_at),
        )
