"""Buying and renewing accounts.

The purchase commit reserves the buyer's money with a conditional debit,
asks the provisioner for the account and then records the sale. When the
provisioner fails, the reserved amount is refunded before the failure is
reported, so a failed purchase never costs the buyer anything.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from . import pricing, repository
from .database import Database
from .pricing import Quote
from .provisioning import BUNDLE_PROTOCOLS, ProtocolProvisioner, ProvisionRequest, ProvisionResult, default_expiry

LOGGER = logging.getLogger(__name__)

ACTION_CREATE = "create"
ACTION_RENEW = "renew"

STATUS_OK = "ok"
STATUS_INSUFFICIENT = "insufficient"
STATUS_DUPLICATE = "duplicate"
STATUS_FAILED = "failed"
STATUS_NOT_FOUND = "not_found"
STATUS_SERVER_FULL = "server_full"

# Formats helper scripts have been seen to print besides ISO.
EXPIRY_FORMATS = ("%d %b, %Y", "%d %b %Y", "%Y-%m-%d %H:%M:%S", "%d-%m-%Y", "%d/%m/%Y")


@dataclass
class PurchaseRequest:
    buyer_id: int
    action: str
    protocol: str
    username: str
    days: int
    server_id: int
    password: Optional[str] = None


@dataclass
class PurchaseOutcome:
    status: str
    quote: Optional[Quote] = None
    balance: Optional[int] = None
    buyer: Dict[str, Any] = field(default_factory=dict)
    server: Dict[str, Any] = field(default_factory=dict)
    result: Optional[ProvisionResult] = None
    level_change: Optional[Tuple[str, str]] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


def account_protocols(protocol: str) -> Tuple[str, ...]:
    """Protocols an account occupies; the bundle spans three."""

    return BUNDLE_PROTOCOLS if protocol == pricing.BUNDLE_PROTOCOL else (protocol,)


def missing_for_renewal(db: Database, username: str, protocol: str) -> List[str]:
    """Protocols under which ``username`` must exist for a renewal but does not."""

    wanted = account_protocols(protocol)
    found = set(repository.active_protocols(db, username, wanted))
    return [p for p in wanted if p not in found]


def check_username(db: Database, action: str, protocol: str, username: str) -> Optional[str]:
    """Return an error message when ``username`` cannot be used, else ``None``."""

    if action == ACTION_CREATE:
        taken = repository.active_protocols(db, username, account_protocols(protocol))
        if taken:
            return "❌ Username sudah digunakan. Silakan masukkan username lain."
        return None
    missing = missing_for_renewal(db, username, protocol)
    if not missing:
        return None
    if protocol == pricing.BUNDLE_PROTOCOL:
        names = ", ".join(p.upper() for p in missing)
        return f"❌ Akun 3IN1 tidak lengkap. Username tidak ditemukan di: {names}"
    return f"❌ Akun {protocol.upper()} dengan username tersebut tidak ditemukan."


def quote_for(db: Database, buyer_id: int, server_id: int, protocol: str, days: int) -> Tuple[Optional[Dict], Optional[Dict], Optional[Quote]]:
    buyer = repository.get_user(db, buyer_id)
    server = repository.get_server(db, server_id)
    if not buyer or not server:
        return buyer, server, None
    return buyer, server, pricing.quote(float(server["harga"]), days, protocol, buyer.get("role"), buyer.get("reseller_level"))


def normalize_expiry(value: Optional[str], days: int) -> str:
    """Return ``value`` as an ISO timestamp, or ``days`` from now if it cannot be read.

    The expiry worker compares these strings, so anything stored here must be ISO.
    """
    if value:
        text = str(value).strip()
        try:
            return datetime.fromisoformat(text).isoformat(timespec="seconds")
        except ValueError:
            pass
        for fmt in EXPIRY_FORMATS:
            try:
                return datetime.strptime(text, fmt).isoformat(timespec="seconds")
            except ValueError:
                continue
        LOGGER.warning("unreadable expiry %r, assuming %s days from now", value, days)
    return datetime.fromisoformat(default_expiry(days)).isoformat(timespec="seconds")


def _refund(db: Database, buyer_id: int, amount: int) -> None:
    with db.transaction() as cur:
        cur.execute("UPDATE users SET saldo = saldo + ? WHERE user_id = ?", (amount, buyer_id))
    LOGGER.info("refunded %s to %s", amount, buyer_id)


def _balance(db: Database, buyer_id: int) -> int:
    user = repository.get_user(db, buyer_id)
    return int(user["saldo"]) if user else 0


def commit_purchase(db: Database, provisioner: ProtocolProvisioner, request: PurchaseRequest) -> PurchaseOutcome:
    """Charge the buyer, provision the account and record the sale.

    Parameters
    ----------
    db : Database
        Live database
    provisioner : ProtocolProvisioner
        Creates or renews the account on the server
    request : PurchaseRequest
        What is being bought

    Returns
    -------
    PurchaseOutcome
        ``status`` is ``ok`` on success. Any other status means no money
        changed hands.
    """
    buyer, server, quote = quote_for(db, request.buyer_id, request.server_id, request.protocol, request.days)
    if quote is None:
        return PurchaseOutcome(STATUS_NOT_FOUND, buyer=buyer or {}, server=server or {}, error="Server atau pengguna tidak ditemukan.")
    if request.action == ACTION_CREATE and repository.server_is_full(server):
        return PurchaseOutcome(STATUS_SERVER_FULL, quote=quote, buyer=buyer, server=server)

    with db.transaction() as cur:
        cur.execute(
            "UPDATE users SET saldo = saldo - ? WHERE user_id = ? AND saldo >= ?",
            (quote.total, request.buyer_id, quote.total),
        )
        reserved = cur.rowcount > 0
    if not reserved:
        return PurchaseOutcome(STATUS_INSUFFICIENT, quote=quote, balance=_balance(db, request.buyer_id), buyer=buyer, server=server)

    provision_request = ProvisionRequest(
        action=request.action,
        protocol=request.protocol,
        username=request.username,
        days=request.days,
        server=server,
        password=request.password,
    )
    try:
        result = provisioner.run(provision_request)
    except Exception:
        _refund(db, request.buyer_id, quote.total)
        raise

    if not result.ok:
        _refund(db, request.buyer_id, quote.total)
        status = STATUS_DUPLICATE if result.duplicate_username else STATUS_FAILED
        return PurchaseOutcome(status, quote=quote, balance=_balance(db, request.buyer_id), buyer=buyer, server=server, result=result, error=result.error)

    level_change = _record_sale(db, request, buyer, server, quote, result)
    return PurchaseOutcome(
        STATUS_OK,
        quote=quote,
        balance=_balance(db, request.buyer_id),
        buyer=buyer,
        server=server,
        result=result,
        level_change=level_change,
    )


def _record_sale(
    db: Database,
    request: PurchaseRequest,
    buyer: Dict[str, Any],
    server: Dict[str, Any],
    quote: Quote,
    result: ProvisionResult,
) -> Optional[Tuple[str, str]]:
    expires_at = normalize_expiry(result.expires_at, request.days)
    level_change: Optional[Tuple[str, str]] = None
    with db.transaction() as cur:
        if request.action == ACTION_CREATE:
            cur.execute("UPDATE servers SET total_create_akun = total_create_akun + 1 WHERE id = ?", (server["id"],))
        cur.execute(
            "INSERT INTO invoice_log (user_id, username, layanan, akun, hari, harga, komisi) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (request.buyer_id, buyer.get("username"), request.protocol, request.username, request.days, quote.total, quote.commission),
        )
        for protocol in account_protocols(request.protocol):
            if request.action == ACTION_CREATE:
                cur.execute("INSERT OR IGNORE INTO active_accounts (username, jenis) VALUES (?, ?)", (request.username, protocol))
            cur.execute(
                "INSERT INTO accounts (username, protocol, server, owner_user_id, expired_at, details)"
                " VALUES (?, ?, ?, ?, ?, ?)"
                " ON CONFLICT(username, server, protocol) DO UPDATE SET"
                " expired_at = excluded.expired_at, status = 'active', details = excluded.details,"
                " expiry_warning_3d_sent = 0, expiry_warning_1d_sent = 0, expired_notified = 0",
                (request.username, protocol, server["domain"], request.buyer_id, expires_at, json.dumps(result.details)),
            )
        if quote.commission > 0:
            cur.execute("UPDATE users SET saldo = saldo + ? WHERE user_id = ?", (quote.commission, request.buyer_id))
            cur.execute(
                "INSERT INTO reseller_sales (reseller_id, buyer_id, akun_type, username, komisi) VALUES (?, ?, ?, ?, ?)",
                (request.buyer_id, request.buyer_id, request.protocol, request.username, quote.commission),
            )
            new_level = pricing.level_for_commission(repository.total_commission(cur, request.buyer_id))
            old_level = buyer.get("reseller_level") or pricing.LEVEL_SILVER
            if new_level != old_level:
                cur.execute("UPDATE users SET reseller_level = ? WHERE user_id = ?", (new_level, request.buyer_id))
                level_change = (old_level, new_level)
    LOGGER.info(
        "%s %s %s for %s: total %s commission %s",
        request.action,
        request.protocol,
        request.username,
        request.buyer_id,
        quote.total,
        quote.commission,
    )
    return level_change
