"""SQLite persistence for settlement cases.

A case row is the projection of its ledger.  Updates are compare-and-swap on
the stored status so a writer holding a stale view never overwrites a newer
one, and terminal rows are never rewritten.
"""

from __future__ import annotations

import sqlite3
from contextlib import closing
from datetime import datetime
from pathlib import Path

from aurumshield.models.settlement import (
    TERMINAL_STATUSES,
    SettlementCase,
    SettlementStatus,
)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

CREATE_SETTLEMENT_CASES = """
CREATE TABLE IF NOT EXISTS settlement_cases (
    id                   TEXT PRIMARY KEY,
    order_id             TEXT NOT NULL UNIQUE,
    buyer_org_id         TEXT NOT NULL,
    seller_org_id        TEXT NOT NULL,
    buyer_user_id        TEXT NOT NULL DEFAULT '',
    seller_user_id       TEXT NOT NULL DEFAULT '',
    seller_account_id    TEXT NOT NULL DEFAULT '',
    counterparty_id      TEXT NOT NULL,
    corridor_id          TEXT NOT NULL,
    hub_id               TEXT NOT NULL,
    vault_hub_id         TEXT NOT NULL DEFAULT '',
    weight_oz            REAL NOT NULL,
    price_per_oz_locked  REAL NOT NULL,
    notional_usd         REAL NOT NULL,
    currency             TEXT NOT NULL DEFAULT 'USD',
    rail                 TEXT,
    status               TEXT NOT NULL,
    funds_confirmed      INTEGER NOT NULL DEFAULT 0,
    gold_allocated       INTEGER NOT NULL DEFAULT 0,
    verification_cleared INTEGER NOT NULL DEFAULT 0,
    opened_at            TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);
"""

_COLUMNS = (
    "id, order_id, buyer_org_id, seller_org_id, buyer_user_id, seller_user_id, "
    "seller_account_id, counterparty_id, corridor_id, hub_id, vault_hub_id, "
    "weight_oz, price_per_oz_locked, notional_usd, currency, rail, status, "
    "funds_confirmed, gold_allocated, verification_cleared, opened_at, updated_at"
)


class SettlementNotFoundError(KeyError):
    """Raised when a settlement id has no stored case."""


class SettlementStore:
    """Settlement case table.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file shared with ``SettlementLedger``.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    def _init_schema(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute(CREATE_SETTLEMENT_CASES)
            conn.commit()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, case: SettlementCase) -> SettlementCase:
        """Insert a new case.  Raises ``sqlite3.IntegrityError`` on duplicates."""
        with closing(self._connect()) as conn:
            conn.execute(
                f"INSERT INTO settlement_cases ({_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._to_row(case),
            )
            conn.commit()
        return case

    def compare_and_swap(
        self, case: SettlementCase, expected_status: SettlementStatus
    ) -> bool:
        """Persist ``case`` only if the stored status still equals ``expected_status``.

        Returns False when another writer moved the case first, or when the
        stored case is already terminal.
        """
        if expected_status in TERMINAL_STATUSES:
            return False
        return self._update_if(case, expected_status)

    def reconcile(self, case: SettlementCase, expected_status: SettlementStatus) -> bool:
        """Rewrite the row to match its ledger, even from a terminal status.

        Reserved for operator reconciliation of AMBIGUOUS_STATE; every other
        writer goes through ``compare_and_swap``.
        """
        return self._update_if(case, expected_status)

    def _update_if(self, case: SettlementCase, expected_status: SettlementStatus) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute(
                """
                UPDATE settlement_cases
                   SET status = ?, rail = ?, funds_confirmed = ?, gold_allocated = ?,
                       verification_cleared = ?, updated_at = ?
                 WHERE id = ? AND status = ?
                """,
                (
                    case.status.value,
                    case.rail,
                    int(case.funds_confirmed),
                    int(case.gold_allocated),
                    int(case.verification_cleared),
                    case.updated_at.isoformat(),
                    case.id,
                    expected_status.value,
                ),
            )
            conn.commit()
            return cursor.rowcount == 1

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, settlement_id: str) -> SettlementCase:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM settlement_cases WHERE id = ?",
                (settlement_id,),
            ).fetchone()
        if row is None:
            raise SettlementNotFoundError(settlement_id)
        return self._row_to_case(row)

    def find_by_order(self, order_id: str) -> SettlementCase | None:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM settlement_cases WHERE order_id = ?",
                (order_id,),
            ).fetchone()
        return self._row_to_case(row) if row else None

    def list_cases(self, status: SettlementStatus | None = None) -> list[SettlementCase]:
        query = f"SELECT {_COLUMNS} FROM settlement_cases"
        params: tuple = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        with closing(self._connect()) as conn:
            rows = conn.execute(query + " ORDER BY opened_at ASC", params).fetchall()
        return [self._row_to_case(row) for row in rows]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_row(case: SettlementCase) -> tuple:
        return (
            case.id,
            case.order_id,
            case.buyer_org_id,
            case.seller_org_id,
            case.buyer_user_id,
            case.seller_user_id,
            case.seller_account_id,
            case.counterparty_id,
            case.corridor_id,
            case.hub_id,
            case.vault_hub_id,
            case.weight_oz,
            case.price_per_oz_locked,
            case.notional_usd,
            case.currency,
            case.rail,
            case.status.value,
            int(case.funds_confirmed),
            int(case.gold_allocated),
            int(case.verification_cleared),
            case.opened_at.isoformat(),
            case.updated_at.isoformat(),
        )

    @staticmethod
    def _row_to_case(row: tuple) -> SettlementCase:
        (
            id_,
            order_id,
            buyer_org_id,
            seller_org_id,
            buyer_user_id,
            seller_user_id,
            seller_account_id,
            counterparty_id,
            corridor_id,
            hub_id,
            vault_hub_id,
            weight_oz,
            price_per_oz_locked,
            notional_usd,
            currency,
            rail,
            status,
            funds_confirmed,
            gold_allocated,
            verification_cleared,
            opened_at,
            updated_at,
        ) = row
        return SettlementCase(
            id=id_,
            order_id=order_id,
            buyer_org_id=buyer_org_id,
            seller_org_id=seller_org_id,
            buyer_user_id=buyer_user_id,
            seller_user_id=seller_user_id,
            seller_account_id=seller_account_id,
            counterparty_id=counterparty_id,
            corridor_id=corridor_id,
            hub_id=hub_id,
            vault_hub_id=vault_hub_id,
            weight_oz=weight_oz,
            price_per_oz_locked=price_per_oz_locked,
            notional_usd=notional_usd,
            currency=currency,
            rail=rail,
            status=SettlementStatus(status),
            funds_confirmed=bool(funds_confirmed),
            gold_allocated=bool(gold_allocated),
            verification_cleared=bool(verification_cleared),
            opened_at=datetime.fromisoformat(opened_at),
            updated_at=datetime.fromisoformat(updated_at),
        )
