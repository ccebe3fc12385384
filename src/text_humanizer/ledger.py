import logging
import sqlite3
from dataclasses import dataclass
from uuid import uuid4

from text_humanizer.config import settings
from text_humanizer.db import _conn, _now

logger = logging.getLogger(__name__)

USAGE = "usage"
REFUND = "refund"
GRANT = "grant"


class LedgerError(RuntimeError):
    pass


class InsufficientCredits(LedgerError):
    def __init__(self, user_id: str, requested: int, available: int) -> None:
        super().__init__(f"Insufficient credits: requested {requested}, available {available}")
        self.user_id = user_id
        self.requested = requested
        self.available = available


class UnknownUser(LedgerError):
    pass


@dataclass(frozen=True)
class CreditBalance:
    user_id: str
    credits_remaining: int
    plan_type: str


@dataclass
class CreditReservation:
    reference: str
    user_id: str
    amount: int
    state: str = "held"


class CreditLedger:
    """Prepaid credit balances backed by an append-only transaction log."""

    def ensure_user(self, user_id: str) -> None:
        ts = _now()
        with _conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO users (user_id, credits_remaining, plan_type, created_at, last_seen_at)
                VALUES (?, 0, ?, ?, ?)
                ON CONFLICT(user_id) DO NOTHING
                """,
                (user_id, settings.default_plan_type, ts, ts),
            )
            created = cur.rowcount == 1
            if not created:
                conn.execute("UPDATE users SET last_seen_at=? WHERE user_id=?", (ts, user_id))
            elif settings.signup_credits > 0:
                conn.execute(
                    "UPDATE users SET credits_remaining = credits_remaining + ? WHERE user_id=?",
                    (settings.signup_credits, user_id),
                )
                conn.execute(
                    """
                    INSERT INTO credit_transactions (user_id, amount, description, transaction_type, created_at)
                    VALUES (?, ?, 'Signup credits', ?, ?)
                    """,
                    (user_id, settings.signup_credits, GRANT, ts),
                )
            conn.commit()

    def get_balance(self, user_id: str) -> CreditBalance:
        with _conn() as conn:
            row = conn.execute(
                "SELECT credits_remaining, plan_type FROM users WHERE user_id=?",
                (user_id,),
            ).fetchone()
        if not row:
            return CreditBalance(user_id=user_id, credits_remaining=0, plan_type=settings.default_plan_type)
        return CreditBalance(user_id=user_id, credits_remaining=int(row["credits_remaining"]), plan_type=row["plan_type"])

    def debit(self, user_id: str, amount: int, description: str, reference: str | None = None) -> int:
        """Charge ``amount`` credits and return the new balance.

        A repeated ``reference`` charges nothing and returns the current balance.
        """
        if amount < 0:
            raise ValueError("amount must be >= 0")

        with _conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO credit_transactions (user_id, amount, description, transaction_type, reference, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(reference, transaction_type) DO NOTHING
                """,
                (user_id, -amount, description, USAGE, reference, _now()),
            )
            if cur.rowcount != 1:
                logger.info("Debit %s for user %s already applied", reference, user_id)
                return self._balance_in(conn, user_id)

            cur = conn.execute(
                """
                UPDATE users
                SET credits_remaining = credits_remaining - ?, last_seen_at=?
                WHERE user_id=? AND credits_remaining >= ?
                """,
                (amount, _now(), user_id, amount),
            )
            if cur.rowcount != 1:
                row = conn.execute("SELECT credits_remaining FROM users WHERE user_id=?", (user_id,)).fetchone()
                if not row:
                    raise UnknownUser(f"User not found: {user_id}")
                raise InsufficientCredits(user_id, amount, int(row["credits_remaining"]))

            balance = self._balance_in(conn, user_id)
            conn.commit()

        logger.info("Debited %s credits from user %s (%s)", amount, user_id, description)
        return balance

    def _balance_in(self, conn, user_id: str) -> int:
        row = conn.execute("SELECT credits_remaining FROM users WHERE user_id=?", (user_id,)).fetchone()
        if not row:
            raise UnknownUser(f"User not found: {user_id}")
        return int(row["credits_remaining"])

    def refund(self, user_id: str, amount: int, description: str, reference: str) -> bool:
        """Returns whether the refund was applied; each reference is refunded at most once."""
        if not reference:
            raise ValueError("refund requires a reference")
        if amount <= 0:
            return False

        try:
            with _conn() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO credit_transactions (user_id, amount, description, transaction_type, reference, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(reference, transaction_type) DO NOTHING
                    """,
                    (user_id, amount, description, REFUND, reference, _now()),
                )
                if cur.rowcount != 1:
                    logger.info("Refund %s for user %s already applied", reference, user_id)
                    return False
                conn.execute(
                    "UPDATE users SET credits_remaining = credits_remaining + ?, last_seen_at=? WHERE user_id=?",
                    (amount, _now(), user_id),
                )
                conn.commit()
        except sqlite3.Error:
            logger.exception("Refund of %s credits for user %s failed (ref=%s)", amount, user_id, reference)
            return False

        logger.info("Refunded %s credits to user %s (%s)", amount, user_id, description)
        return True

    def reserve(self, user_id: str, amount: int, description: str) -> CreditReservation:
        reservation = CreditReservation(reference=f"rsv_{uuid4().hex}", user_id=user_id, amount=amount)
        self.debit(user_id, amount, description, reference=reservation.reference)
        return reservation

    def commit(self, reservation: CreditReservation) -> None:
        if reservation.state == "released":
            raise ValueError(f"reservation {reservation.reference} was already released")
        reservation.state = "committed"

    def release(self, reservation: CreditReservation, description: str) -> bool:
        if reservation.state == "committed":
            raise ValueError(f"reservation {reservation.reference} was already committed")
        applied = self.refund(reservation.user_id, reservation.amount, description, reference=reservation.reference)
        if applied:
            reservation.state = "released"
        return applied

    def grant(self, user_id: str, amount: int, note: str, plan_type: str | None = None) -> int:
        if amount <= 0:
            raise ValueError("amount must be > 0")
        self.ensure_user(user_id)
        with _conn() as conn:
            conn.execute(
                "UPDATE users SET credits_remaining = credits_remaining + ?, last_seen_at=? WHERE user_id=?",
                (amount, _now(), user_id),
            )
            if plan_type:
                conn.execute("UPDATE users SET plan_type=? WHERE user_id=?", (plan_type, user_id))
            conn.execute(
                """
                INSERT INTO credit_transactions (user_id, amount, description, transaction_type, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (user_id, amount, note, GRANT, _now()),
            )
            conn.commit()
        return self.get_balance(user_id).credits_remaining

    def list_transactions(self, user_id: str, limit: int = 20) -> list[dict]:
        with _conn() as conn:
            rows = conn.execute(
                "SELECT * FROM credit_transactions WHERE user_id=? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    def reconcile(self, user_id: str) -> dict:
        with _conn() as conn:
            user = conn.execute("SELECT credits_remaining FROM users WHERE user_id=?", (user_id,)).fetchone()
            total = conn.execute(
                "SELECT COALESCE(SUM(amount), 0) total FROM credit_transactions WHERE user_id=?",
                (user_id,),
            ).fetchone()["total"]
        cached = int(user["credits_remaining"]) if user else 0
        return {
            "user_id": user_id,
            "credits_remaining": cached,
            "ledger_total": int(total),
            "drift": cached - int(total),
        }

    def list_drifted_users(self) -> list[dict]:
        with _conn() as conn:
            rows = conn.execute("SELECT user_id FROM users ORDER BY user_id").fetchall()
        report = [self.reconcile(r["user_id"]) for r in rows]
        return [r for r in report if r["drift"] != 0]
