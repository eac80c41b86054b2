"""Row level queries shared by the chat handlers, the webhooks and the worker."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from . import database
from .database import Database
from .pricing import LEVEL_SILVER, ROLE_RESELLER

LOGGER = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLE_OWNER = "owner"
ADMIN_ROLES = (ROLE_ADMIN, ROLE_OWNER)

SERVER_TEXT_FIELDS = ("nama_server", "auth", "domain")
SERVER_NUMBER_FIELDS = ("quota", "iplimit", "batas_create_akun", "harga")


# ----------------------------------------------------------------------
# users
# ----------------------------------------------------------------------
def get_user(db: Database, user_id: int) -> Optional[Dict[str, Any]]:
    with db.transaction() as cur:
        cur.execute("SELECT * FROM users WHERE user_id = ?", (user_id,))
        return database.fetch_one(cur)


def ensure_user(db: Database, user_id: int, username: Optional[str] = None, first_name: Optional[str] = None) -> Dict[str, Any]:
    """Return the user row, registering the user on first contact."""

    with db.transaction() as cur:
        cur.execute("SELECT * FROM users WHERE user_id = ?", (user_id,))
        row = database.fetch_one(cur)
        if row:
            if username and row.get("username") != username:
                cur.execute("UPDATE users SET username = ? WHERE user_id = ?", (username, user_id))
                row["username"] = username
            return row
        cur.execute(
            "INSERT INTO users (user_id, username, first_name) VALUES (?, ?, ?)",
            (user_id, username, first_name),
        )
        cur.execute("SELECT * FROM users WHERE user_id = ?", (user_id,))
        row = database.fetch_one(cur) or {}
    LOGGER.info("registered new user %s", user_id)
    return row


def all_user_ids(db: Database) -> List[int]:
    with db.transaction() as cur:
        cur.execute("SELECT user_id FROM users ORDER BY id")
        return [int(row["user_id"]) for row in database.fetch_all(cur)]


def has_admin_role(db: Database, user_id: int) -> bool:
    user = get_user(db, user_id)
    return bool(user) and user.get("role") in ADMIN_ROLES


def add_balance(db: Database, user_id: int, amount: int) -> bool:
    with db.transaction() as cur:
        cur.execute("UPDATE users SET saldo = saldo + ? WHERE user_id = ?", (amount, user_id))
        return cur.rowcount > 0


def promote_to_reseller(db: Database, user_id: int) -> bool:
    with db.transaction() as cur:
        cur.execute(
            "UPDATE users SET role = ?, reseller_level = ? WHERE user_id = ?",
            (ROLE_RESELLER, LEVEL_SILVER, user_id),
        )
        return cur.rowcount > 0


def downgrade_reseller(db: Database, user_id: int) -> bool:
    with db.transaction() as cur:
        cur.execute(
            "UPDATE users SET role = ?, reseller_level = ? WHERE user_id = ? AND role = ?",
            (ROLE_USER, LEVEL_SILVER, user_id, ROLE_RESELLER),
        )
        return cur.rowcount > 0


def set_reseller_level(db: Database, user_id: int, level: str) -> bool:
    """Change a reseller's level; plain users are left untouched."""

    with db.transaction() as cur:
        cur.execute(
            "UPDATE users SET reseller_level = ? WHERE user_id = ? AND role = ?",
            (level, user_id, ROLE_RESELLER),
        )
        return cur.rowcount > 0


def reset_commission(db: Database, user_id: int) -> int:
    """Forget a reseller's sales history and drop them back to silver."""

    with db.transaction() as cur:
        cur.execute("DELETE FROM reseller_sales WHERE reseller_id = ?", (user_id,))
        removed = cur.rowcount
        cur.execute(
            "UPDATE users SET reseller_level = ? WHERE user_id = ? AND role = ?",
            (LEVEL_SILVER, user_id, ROLE_RESELLER),
        )
    return removed


def total_commission(cur, user_id: int) -> int:
    cur.execute("SELECT COALESCE(SUM(komisi), 0) AS total FROM reseller_sales WHERE reseller_id = ?", (user_id,))
    return int(cur.fetchone()["total"])


def upgrade_to_reseller(db: Database, user_id: int, cost: int) -> bool:
    """Charge ``cost`` and turn a plain user into a silver reseller."""

    with db.transaction() as cur:
        cur.execute(
            "UPDATE users SET saldo = saldo - ?, role = ?, reseller_level = ?"
            " WHERE user_id = ? AND role = ? AND saldo >= ?",
            (cost, ROLE_RESELLER, LEVEL_SILVER, user_id, ROLE_USER, cost),
        )
        if cur.rowcount == 0:
            return False
        cur.execute("SELECT username FROM users WHERE user_id = ?", (user_id,))
        row = cur.fetchone()
        cur.execute(
            "INSERT INTO reseller_upgrade_log (user_id, username, amount, level) VALUES (?, ?, ?, ?)",
            (user_id, row["username"] if row else None, cost, LEVEL_SILVER),
        )
    return True


# ----------------------------------------------------------------------
# servers
# ----------------------------------------------------------------------
def list_servers(db: Database) -> List[Dict[str, Any]]:
    with db.transaction() as cur:
        cur.execute("SELECT * FROM servers ORDER BY id")
        return database.fetch_all(cur)


def get_server(db: Database, server_id: int) -> Optional[Dict[str, Any]]:
    with db.transaction() as cur:
        cur.execute("SELECT * FROM servers WHERE id = ?", (server_id,))
        return database.fetch_one(cur)


def add_server(db: Database, values: Dict[str, Any]) -> int:
    with db.transaction() as cur:
        cur.execute(
            "INSERT INTO servers (domain, auth, nama_server, quota, iplimit, batas_create_akun, harga, lokasi)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                values["domain"],
                values["auth"],
                values["nama_server"],
                int(values["quota"]),
                int(values["iplimit"]),
                int(values["batas_create_akun"]),
                float(values["harga"]),
                values.get("lokasi"),
            ),
        )
        return int(cur.lastrowid)


def update_server_field(db: Database, server_id: int, column: str, value: Any) -> bool:
    if column not in SERVER_TEXT_FIELDS + SERVER_NUMBER_FIELDS:
        raise ValueError(f"column {column!r} cannot be edited")
    with db.transaction() as cur:
        cur.execute(f"UPDATE servers SET {column} = ? WHERE id = ?", (value, server_id))
        return cur.rowcount > 0


def delete_server(db: Database, server_id: int) -> bool:
    with db.transaction() as cur:
        cur.execute("DELETE FROM servers WHERE id = ?", (server_id,))
        return cur.rowcount > 0


def server_is_full(server: Dict[str, Any]) -> bool:
    limit = int(server.get("batas_create_akun") or 0)
    return limit > 0 and int(server.get("total_create_akun") or 0) >= limit


# ----------------------------------------------------------------------
# active accounts
# ----------------------------------------------------------------------
def active_protocols(db: Database, username: str, protocols: Sequence[str]) -> List[str]:
    """Return the subset of ``protocols`` under which ``username`` is active."""

    placeholders = ",".join("?" for _ in protocols)
    with db.transaction() as cur:
        cur.execute(
            f"SELECT jenis FROM active_accounts WHERE username = ? AND jenis IN ({placeholders})",
            (username, *protocols),
        )
        found = {row["jenis"] for row in database.fetch_all(cur)}
    return [p for p in protocols if p in found]


# ----------------------------------------------------------------------
# tracked accounts (expiry worker)
# ----------------------------------------------------------------------
def accounts_expiring_between(db: Database, start: datetime, end: datetime, flag: str) -> List[Dict[str, Any]]:
    if flag not in ("expiry_warning_3d_sent", "expiry_warning_1d_sent"):
        raise ValueError(flag)
    with db.transaction() as cur:
        cur.execute(
            f"SELECT * FROM accounts WHERE status = 'active' AND {flag} = 0"
            " AND expired_at IS NOT NULL AND expired_at > ? AND expired_at <= ?",
            (start.isoformat(), end.isoformat()),
        )
        return database.fetch_all(cur)


def accounts_newly_expired(db: Database, now: datetime) -> List[Dict[str, Any]]:
    with db.transaction() as cur:
        cur.execute(
            "SELECT * FROM accounts WHERE status = 'active' AND expired_notified = 0"
            " AND expired_at IS NOT NULL AND expired_at <= ?",
            (now.isoformat(),),
        )
        return database.fetch_all(cur)


def accounts_expired_before(db: Database, cutoff: datetime) -> List[Dict[str, Any]]:
    with db.transaction() as cur:
        cur.execute(
            "SELECT * FROM accounts WHERE expired_at IS NOT NULL AND expired_at <= ?",
            (cutoff.isoformat(),),
        )
        return database.fetch_all(cur)


def mark_account_flag(db: Database, account_id: int, flag: str) -> None:
    if flag not in ("expiry_warning_3d_sent", "expiry_warning_1d_sent", "expired_notified"):
        raise ValueError(flag)
    with db.transaction() as cur:
        cur.execute(f"UPDATE accounts SET {flag} = 1 WHERE id = ?", (account_id,))


def delete_accounts(db: Database, accounts: Sequence[Dict[str, Any]]) -> int:
    """Remove tracked accounts together with their active-account markers."""

    removed = 0
    with db.transaction() as cur:
        for account in accounts:
            cur.execute("DELETE FROM accounts WHERE id = ?", (account["id"],))
            removed += cur.rowcount
            cur.execute("SELECT COUNT(*) FROM accounts WHERE username = ? AND protocol = ?", (account["username"], account["protocol"]))
            if cur.fetchone()[0] == 0:
                cur.execute(
                    "DELETE FROM active_accounts WHERE username = ? AND jenis = ?",
                    (account["username"], account["protocol"]),
                )
    return removed


def get_account(db: Database, account_id: int) -> Optional[Dict[str, Any]]:
    with db.transaction() as cur:
        cur.execute("SELECT * FROM accounts WHERE id = ?", (account_id,))
        return database.fetch_one(cur)


def list_accounts(db: Database, owner_id: Optional[int] = None) -> List[Dict[str, Any]]:
    """Active tracked accounts, soonest expiry first; every owner's when ``owner_id`` is ``None``."""

    query = "SELECT * FROM accounts WHERE status = 'active'"
    params: tuple = ()
    if owner_id is not None:
        query += " AND owner_user_id = ?"
        params = (owner_id,)
    with db.transaction() as cur:
        cur.execute(query + " ORDER BY expired_at IS NULL, expired_at, id", params)
        return database.fetch_all(cur)


# ----------------------------------------------------------------------
# reports
# ----------------------------------------------------------------------
def commission_summary(db: Database, reseller_id: int) -> Dict[str, int]:
    with db.transaction() as cur:
        cur.execute(
            "SELECT COUNT(*) AS sales, COALESCE(SUM(komisi), 0) AS total FROM reseller_sales WHERE reseller_id = ?",
            (reseller_id,),
        )
        row = cur.fetchone()
    return {"sales": int(row["sales"]), "total": int(row["total"])}


def recent_sales(db: Database, reseller_id: int, limit: int = 10) -> List[Dict[str, Any]]:
    with db.transaction() as cur:
        cur.execute(
            "SELECT * FROM reseller_sales WHERE reseller_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
            (reseller_id, limit),
        )
        return database.fetch_all(cur)


def top_resellers(db: Database, since: Optional[datetime] = None, limit: int = 10) -> List[Dict[str, Any]]:
    """Resellers ranked by commission earned, optionally only since ``since``."""

    where = ""
    params: List[Any] = []
    if since is not None:
        where = " WHERE s.created_at >= ?"
        params.append(since.strftime("%Y-%m-%d %H:%M:%S"))
    params.append(limit)
    with db.transaction() as cur:
        cur.execute(
            "SELECT s.reseller_id, u.username, COUNT(*) AS sales, SUM(s.komisi) AS total"
            " FROM reseller_sales s LEFT JOIN users u ON u.user_id = s.reseller_id"
            f"{where} GROUP BY s.reseller_id ORDER BY total DESC, s.reseller_id LIMIT ?",
            params,
        )
        return database.fetch_all(cur)


def store_stats(db: Database) -> Dict[str, int]:
    with db.transaction() as cur:
        cur.execute(
            "SELECT COUNT(*) AS users,"
            " COALESCE(SUM(CASE WHEN role = ? THEN 1 ELSE 0 END), 0) AS resellers,"
            " COALESCE(SUM(saldo), 0) AS saldo FROM users",
            (ROLE_RESELLER,),
        )
        stats = dict(cur.fetchone())
        cur.execute("SELECT COUNT(*) FROM servers")
        stats["servers"] = cur.fetchone()[0]
        cur.execute("SELECT COUNT(*) FROM invoice_log")
        stats["invoices"] = cur.fetchone()[0]
        cur.execute("SELECT COALESCE(SUM(komisi), 0) FROM reseller_sales")
        stats["commission"] = cur.fetchone()[0]
    return {key: int(value or 0) for key, value in stats.items()}


def list_users(db: Database, role: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
    """Most recently registered users, optionally of one role."""

    query = "SELECT * FROM users"
    params: List[Any] = []
    if role is not None:
        query += " WHERE role = ?"
        params.append(role)
    params.append(limit)
    with db.transaction() as cur:
        cur.execute(query + " ORDER BY id DESC LIMIT ?", params)
        return database.fetch_all(cur)


def recent_topups(db: Database, limit: int = 10) -> List[Dict[str, Any]]:
    with db.transaction() as cur:
        cur.execute("SELECT * FROM topup_log ORDER BY id DESC LIMIT ?", (limit,))
        return database.fetch_all(cur)
