"""Deposit records and their status transitions.

A deposit moves one way only::

    pending -> awaiting_verification -> paid | rejected
    pending -> paid | expired | failed | cancelled

Every transition is a conditional UPDATE on the current status, so replaying
an approval, a webhook or a double tapped button can never credit the same
deposit twice.
"""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from . import database
from .database import Database

LOGGER = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_AWAITING_VERIFICATION = "awaiting_verification"
STATUS_PAID = "paid"
STATUS_REJECTED = "rejected"
STATUS_EXPIRED = "expired"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

METHOD_STATIC_QRIS = "static_qris"
METHOD_PAKASIR = "pakasir"
METHOD_MIDTRANS = "midtrans"


@dataclass
class Transition:
    """Result of an attempted status change.

    ``deposit`` is the row as it looks after the attempt, so callers can
    report the current status when ``ok`` is false.
    """

    ok: bool
    deposit: Optional[Dict[str, Any]]

    @property
    def status(self) -> Optional[str]:
        return self.deposit["status"] if self.deposit else None


def unique_amount(amount: int, rng: Optional[random.Random] = None) -> int:
    """Add a three digit code so static QRIS transfers can be told apart."""

    rng = rng or random
    return amount + rng.randint(100, 999)


def create_deposit(
    db: Database,
    user_id: int,
    amount: int,
    *,
    method: str = METHOD_STATIC_QRIS,
    code: Optional[str] = None,
    now: Optional[float] = None,
    rng: Optional[random.Random] = None,
) -> Dict[str, Any]:
    """Insert a pending deposit and return its row."""

    now = now if now is not None else time.time()
    code = code or f"DEP{int(now * 1000)}{user_id}"
    payable = unique_amount(amount, rng) if method == METHOD_STATIC_QRIS else amount
    with db.transaction() as cur:
        cur.execute(
            "INSERT INTO pending_deposits (unique_code, user_id, amount, original_amount, timestamp, status, payment_method)"
            " VALUES (?, ?, ?, ?, ?, ?, ?)",
            (code, user_id, payable, amount, int(now * 1000), STATUS_PENDING, method),
        )
        cur.execute("SELECT * FROM pending_deposits WHERE unique_code = ?", (code,))
        row = database.fetch_one(cur)
    LOGGER.info("deposit %s created for user %s: %s via %s", code, user_id, payable, method)
    return row or {}


def get_deposit(db: Database, code: str) -> Optional[Dict[str, Any]]:
    with db.transaction() as cur:
        cur.execute("SELECT * FROM pending_deposits WHERE unique_code = ?", (code,))
        return database.fetch_one(cur)


def awaiting_verification(db: Database, limit: int = 20) -> List[Dict[str, Any]]:
    """Deposits with an uploaded proof that no admin has handled yet, oldest first."""

    with db.transaction() as cur:
        cur.execute(
            "SELECT * FROM pending_deposits WHERE status = ? ORDER BY timestamp LIMIT ?",
            (STATUS_AWAITING_VERIFICATION, limit),
        )
        return database.fetch_all(cur)


def set_message_id(db: Database, code: str, message_id: int) -> None:
    with db.transaction() as cur:
        cur.execute("UPDATE pending_deposits SET qr_message_id = ? WHERE unique_code = ?", (message_id, code))


def _transition(cur, code: str, new_status: str, allowed: Sequence[str], extra: Optional[Dict[str, Any]] = None) -> bool:
    assignments = ["status = ?"]
    params: list = [new_status]
    for column, value in (extra or {}).items():
        assignments.append(f"{column} = ?")
        params.append(value)
    placeholders = ",".join("?" for _ in allowed)
    params.extend([code, *allowed])
    cur.execute(
        f"UPDATE pending_deposits SET {', '.join(assignments)} WHERE unique_code = ? AND status IN ({placeholders})",
        params,
    )
    return cur.rowcount > 0


def _current(cur, code: str) -> Optional[Dict[str, Any]]:
    cur.execute("SELECT * FROM pending_deposits WHERE unique_code = ?", (code,))
    return database.fetch_one(cur)


def attach_proof(db: Database, code: str, user_id: int, file_id: str) -> Transition:
    """Store the payment proof and queue the deposit for admin review."""

    with db.transaction() as cur:
        cur.execute("SELECT user_id FROM pending_deposits WHERE unique_code = ?", (code,))
        row = cur.fetchone()
        if row is None or int(row["user_id"]) != int(user_id):
            return Transition(False, _current(cur, code))
        ok = _transition(cur, code, STATUS_AWAITING_VERIFICATION, (STATUS_PENDING,), {"proof_image_id": file_id})
        return Transition(ok, _current(cur, code))


def _credit(
    db: Database,
    code: str,
    allowed: Sequence[str],
    *,
    admin_id: Optional[int] = None,
    notes: Optional[str] = None,
    reference: Optional[str] = None,
) -> Transition:
    extra: Dict[str, Any] = {}
    if admin_id is not None:
        extra["admin_approved_by"] = admin_id
        extra["admin_approved_at"] = datetime.utcnow().isoformat()
    if notes:
        extra["admin_notes"] = notes
    with db.transaction() as cur:
        if not _transition(cur, code, STATUS_PAID, allowed, extra):
            return Transition(False, _current(cur, code))
        deposit = _current(cur, code)
        cur.execute("UPDATE users SET saldo = saldo + ? WHERE user_id = ?", (deposit["amount"], deposit["user_id"]))
        if cur.rowcount == 0:
            raise LookupError(f"user {deposit['user_id']} for deposit {code} does not exist")
        cur.execute("SELECT username FROM users WHERE user_id = ?", (deposit["user_id"],))
        user = cur.fetchone()
        cur.execute(
            "INSERT INTO topup_log (user_id, username, amount, reference) VALUES (?, ?, ?, ?)",
            (deposit["user_id"], user["username"] if user else None, deposit["amount"], reference or code),
        )
    LOGGER.info("deposit %s paid: %s credited to %s", code, deposit["amount"], deposit["user_id"])
    return Transition(True, deposit)


def approve_deposit(db: Database, code: str, admin_id: int) -> Transition:
    """Admin approval: mark paid, credit the balance and log the top-up atomically."""

    return _credit(db, code, (STATUS_PENDING, STATUS_AWAITING_VERIFICATION), admin_id=admin_id, notes="approved")


def reject_deposit(db: Database, code: str, admin_id: int, reason: str = "Ditolak oleh admin") -> Transition:
    with db.transaction() as cur:
        ok = _transition(
            cur,
            code,
            STATUS_REJECTED,
            (STATUS_PENDING, STATUS_AWAITING_VERIFICATION),
            {
                "admin_approved_by": admin_id,
                "admin_approved_at": datetime.utcnow().isoformat(),
                "admin_notes": reason,
            },
        )
        return Transition(ok, _current(cur, code))


def mark_gateway_paid(db: Database, code: str, reference: Optional[str] = None) -> Transition:
    """A payment gateway confirmed the transfer."""

    return _credit(db, code, (STATUS_PENDING,), reference=reference)


def close_deposit(db: Database, code: str, status: str) -> Transition:
    """Move a pending deposit to ``expired``, ``failed`` or ``cancelled``."""

    if status not in (STATUS_EXPIRED, STATUS_FAILED, STATUS_CANCELLED):
        raise ValueError(f"{status!r} is not a closing status")
    with db.transaction() as cur:
        ok = _transition(cur, code, status, (STATUS_PENDING,))
        return Transition(ok, _current(cur, code))
