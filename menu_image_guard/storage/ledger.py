"""
Global spend ledger for image generation.

One shared record of how many images were generated and what they cost,
plus the admission holds of generations still in flight.

Lifecycle of one generation against the ledger:

1. ``try_reserve`` - atomic admission. Reads spend and holds, rejects if
   one more unit would exceed the cap, otherwise commits a hold.
2. ``settle`` - after the image was generated and stored, converts the
   hold into spend (``units_generated += 1``, ``total_spent += unit_cost``).
3. ``release`` - when generation or upload fails, drops the hold. Nothing
   is charged.

Because admission and the hold happen in one transaction, two concurrent
callers can never both claim the last unit of headroom, and failed
generations never touch the spend counters.
"""

import logging
import sqlite3
import threading
from datetime import datetime
from decimal import Decimal

from menu_image_guard.core.errors import LedgerError
from menu_image_guard.core.pricing import to_money

from .db import DEFAULT_DB_PATH, get_connection
from .models import LedgerState
from .repository import LEDGER_ROW_ID

logger = logging.getLogger(__name__)


class SqliteSpendLedger:
    """Spend ledger stored as the single row of ``spend_ledger``.

    Every operation runs inside ``BEGIN IMMEDIATE``, which takes the
    database write lock before reading, so read-modify-write sequences
    from concurrent threads or processes are serialized. A writer that
    cannot get the lock within the connection timeout fails with
    LedgerError.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout

    def try_reserve(self, unit_cost: Decimal, cap: Decimal) -> bool:
        """Atomically admit one generation if it fits under ``cap``.

        Args:
            unit_cost: Price of the image about to be generated
            cap: Global spend cap

        Returns:
            True if a hold was committed, False if the cap would be exceeded

        Raises:
            LedgerError: If the ledger could not be read or written
        """
        unit_cost = to_money(unit_cost)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            state = self._read(conn)
            projected = state.total_spent + state.reserved_amount + unit_cost
            if projected > cap:
                conn.rollback()
                logger.warning(
                    "Image generation budget cap reached: $%.2f spent, $%.2f held / $%.2f",
                    state.total_spent, state.reserved_amount, cap
                )
                return False
            conn.execute(
                "UPDATE spend_ledger SET reserved_units = ?, reserved_amount = ?, last_updated = ? WHERE id = ?",
                (
                    state.reserved_units + 1,
                    str(state.reserved_amount + unit_cost),
                    datetime.now().isoformat(),
                    LEDGER_ROW_ID
                )
            )
            conn.commit()
            return True
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerError(f"Ledger reservation failed: {e}") from e
        finally:
            conn.close()

    def settle(self, unit_cost: Decimal) -> None:
        """Convert one hold into spend.

        Raises:
            LedgerError: If the ledger could not be updated
        """
        unit_cost = to_money(unit_cost)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            state = self._read(conn)
            conn.execute(
                """
                UPDATE spend_ledger
                SET units_generated = ?, total_spent = ?,
                    reserved_units = ?, reserved_amount = ?, last_updated = ?
                WHERE id = ?
                """,
                (
                    state.units_generated + 1,
                    str(state.total_spent + unit_cost),
                    max(state.reserved_units - 1, 0),
                    str(max(state.reserved_amount - unit_cost, Decimal("0"))),
                    datetime.now().isoformat(),
                    LEDGER_ROW_ID
                )
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerError(f"Ledger charge failed: {e}") from e
        finally:
            conn.close()
        logger.info("Image generation cost tracked: +$%.2f", unit_cost)

    def release(self, unit_cost: Decimal) -> None:
        """Drop one hold without charging.

        Raises:
            LedgerError: If the ledger could not be updated
        """
        unit_cost = to_money(unit_cost)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            state = self._read(conn)
            conn.execute(
                "UPDATE spend_ledger SET reserved_units = ?, reserved_amount = ?, last_updated = ? WHERE id = ?",
                (
                    max(state.reserved_units - 1, 0),
                    str(max(state.reserved_amount - unit_cost, Decimal("0"))),
                    datetime.now().isoformat(),
                    LEDGER_ROW_ID
                )
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerError(f"Ledger release failed: {e}") from e
        finally:
            conn.close()

    def clear_reservations(self) -> int:
        """Drop every hold, returning how many were cleared.

        Holds leak only when a process dies mid-generation; run this while
        no generation is in flight.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            state = self._read(conn)
            conn.execute(
                "UPDATE spend_ledger SET reserved_units = 0, reserved_amount = '0', last_updated = ? WHERE id = ?",
                (datetime.now().isoformat(), LEDGER_ROW_ID)
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise LedgerError(f"Clearing ledger holds failed: {e}") from e
        finally:
            conn.close()
        return state.reserved_units

    def snapshot(self) -> LedgerState:
        """Read the current ledger state.

        Raises:
            LedgerError: If the ledger could not be read
        """
        conn = self._connect()
        try:
            return self._read(conn)
        except sqlite3.Error as e:
            raise LedgerError(f"Ledger read failed: {e}") from e
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            raise LedgerError(f"Ledger unavailable: {e}") from e

    @staticmethod
    def _read(conn: sqlite3.Connection) -> LedgerState:
        row = conn.execute(
            """
            SELECT units_generated, total_spent, reserved_units, reserved_amount, last_updated
            FROM spend_ledger WHERE id = ?
            """,
            (LEDGER_ROW_ID,)
        ).fetchone()
        if row is None:
            raise sqlite3.OperationalError("spend_ledger row missing; run initialize_schema")
        return LedgerState(
            units_generated=row[0],
            total_spent=to_money(row[1]),
            reserved_units=row[2],
            reserved_amount=to_money(row[3]),
            last_updated=datetime.fromisoformat(row[4]) if row[4] else None
        )


class InMemorySpendLedger:
    """Process-local spend ledger guarded by a lock.

    Same contract as SqliteSpendLedger; used by tests and by embedders
    that have no database.
    """

    def __init__(self, units_generated: int = 0, total_spent: Decimal = Decimal("0")):
        self._lock = threading.Lock()
        self._units_generated = units_generated
        self._total_spent = to_money(total_spent)
        self._reserved_units = 0
        self._reserved_amount = to_money(0)
        self._last_updated = None

    def try_reserve(self, unit_cost: Decimal, cap: Decimal) -> bool:
        unit_cost = to_money(unit_cost)
        with self._lock:
            projected = self._total_spent + self._reserved_amount + unit_cost
            if projected > cap:
                logger.warning(
                    "Image generation budget cap reached: $%.2f spent, $%.2f held / $%.2f",
                    self._total_spent, self._reserved_amount, cap
                )
                return False
            self._reserved_units += 1
            self._reserved_amount += unit_cost
            self._last_updated = datetime.now()
            return True

    def settle(self, unit_cost: Decimal) -> None:
        unit_cost = to_money(unit_cost)
        with self._lock:
            self._units_generated += 1
            self._total_spent += unit_cost
            self._reserved_units = max(self._reserved_units - 1, 0)
            self._reserved_amount = max(self._reserved_amount - unit_cost, Decimal("0"))
            self._last_updated = datetime.now()
        logger.info("Image generation cost tracked: +$%.2f", unit_cost)

    def release(self, unit_cost: Decimal) -> None:
        unit_cost = to_money(unit_cost)
        with self._lock:
            self._reserved_units = max(self._reserved_units - 1, 0)
            self._reserved_amount = max(self._reserved_amount - unit_cost, Decimal("0"))
            self._last_updated = datetime.now()

    def clear_reservations(self) -> int:
        with self._lock:
            cleared = self._reserved_units
            self._reserved_units = 0
            self._reserved_amount = to_money(0)
            return cleared

    def snapshot(self) -> LedgerState:
        with self._lock:
            return LedgerState(
                units_generated=self._units_generated,
                total_spent=self._total_spent,
                reserved_units=self._reserved_units,
                reserved_amount=self._reserved_amount,
                last_updated=self._last_updated
            )
