"""Free trial accounts.

Trials are rationed per calendar day. A slot is taken with a conditional
update before the server is contacted and handed back if provisioning
fails, so failed attempts never count against the daily allowance.
"""
from __future__ import annotations

import logging
import random
import string
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, Optional, Tuple

from . import repository
from .database import Database
from .pricing import ROLE_RESELLER
from .provisioning import ACTION_TRIAL, PROTOCOLS, ProtocolProvisioner, ProvisionRequest, ProvisionResult

LOGGER = logging.getLogger(__name__)

TRIAL_MINUTES = 60
TRIAL_PROTOCOLS = PROTOCOLS
# Daily allowance per role; admins and owners are not limited.
TRIAL_LIMITS = {repository.ROLE_USER: 1, ROLE_RESELLER: 10}

STATUS_OK = "ok"
STATUS_LIMIT = "limit"
STATUS_FAILED = "failed"
STATUS_NOT_FOUND = "not_found"


@dataclass
class TrialOutcome:
    status: str
    role: str = repository.ROLE_USER
    count: int = 0
    limit: Optional[int] = None
    server: Dict[str, Any] = field(default_factory=dict)
    result: Optional[ProvisionResult] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_OK


def trial_limit(role: Optional[str]) -> Optional[int]:
    """Trials allowed per day for ``role``; ``None`` means unlimited."""

    if role in repository.ADMIN_ROLES:
        return None
    return TRIAL_LIMITS.get(role or repository.ROLE_USER, TRIAL_LIMITS[repository.ROLE_USER])


def trial_username() -> str:
    return "trial" + "".join(random.choices(string.digits, k=5))


def trial_password() -> str:
    return "".join(random.choices(string.ascii_lowercase + string.digits, k=8))


def reserve_slot(db: Database, user_id: int, limit: Optional[int], today: str) -> Tuple[bool, int]:
    """Count one trial for today if the allowance permits.

    Returns whether a slot was taken and the user's count for today.
    """
    with db.transaction() as cur:
        cur.execute(
            "UPDATE users SET trial_count_today = 0, last_trial_date = ?"
            " WHERE user_id = ? AND (last_trial_date IS NULL OR last_trial_date != ?)",
            (today, user_id, today),
        )
        if limit is None:
            cur.execute("UPDATE users SET trial_count_today = trial_count_today + 1 WHERE user_id = ?", (user_id,))
        else:
            cur.execute(
                "UPDATE users SET trial_count_today = trial_count_today + 1 WHERE user_id = ? AND trial_count_today < ?",
                (user_id, limit),
            )
        taken = cur.rowcount > 0
        cur.execute("SELECT trial_count_today FROM users WHERE user_id = ?", (user_id,))
        row = cur.fetchone()
    return taken, int(row["trial_count_today"]) if row else 0


def release_slot(db: Database, user_id: int, today: str) -> None:
    with db.transaction() as cur:
        cur.execute(
            "UPDATE users SET trial_count_today = MAX(trial_count_today - 1, 0) WHERE user_id = ? AND last_trial_date = ?",
            (user_id, today),
        )


def reset_trials(db: Database) -> int:
    """Give every user their full allowance back; returns the rows touched."""

    with db.transaction() as cur:
        cur.execute("UPDATE users SET trial_count_today = 0 WHERE trial_count_today > 0")
        reset = cur.rowcount
    LOGGER.info("reset trial counters for %s users", reset)
    return reset


def commit_trial(
    db: Database,
    provisioner: ProtocolProvisioner,
    user_id: int,
    protocol: str,
    server_id: int,
    *,
    unlimited: bool = False,
    today: Optional[date] = None,
    username_factory: Callable[[], str] = trial_username,
) -> TrialOutcome:
    """Take a trial slot, create the account and log it.

    ``unlimited`` lifts the daily allowance for configured admins whose
    stored role is still ``user``.
    """
    if protocol not in TRIAL_PROTOCOLS:
        raise ValueError(f"no trials for {protocol!r}")
    user = repository.get_user(db, user_id)
    server = repository.get_server(db, server_id)
    if not user or not server:
        return TrialOutcome(STATUS_NOT_FOUND, error="Server tidak ditemukan.")

    role = repository.ROLE_ADMIN if unlimited else (user.get("role") or repository.ROLE_USER)
    limit = trial_limit(role)
    day = (today or date.today()).isoformat()
    taken, count = reserve_slot(db, user_id, limit, day)
    if not taken:
        return TrialOutcome(STATUS_LIMIT, role=role, count=count, limit=limit, server=server)

    request = ProvisionRequest(
        action=ACTION_TRIAL,
        protocol=protocol,
        username=username_factory(),
        days=0,
        server=server,
        password=trial_password() if protocol == "ssh" else None,
        minutes=TRIAL_MINUTES,
    )
    try:
        result = provisioner.run(request)
    except Exception:
        release_slot(db, user_id, day)
        raise
    if not result.ok:
        release_slot(db, user_id, day)
        return TrialOutcome(STATUS_FAILED, role=role, count=count - 1, limit=limit, server=server, result=result, error=result.error)

    with db.transaction() as cur:
        cur.execute(
            "INSERT INTO trial_logs (user_id, username, jenis) VALUES (?, ?, ?)",
            (user_id, result.username, protocol),
        )
    LOGGER.info("trial %s %s for %s (%s of %s)", protocol, result.username, user_id, count, limit or "unlimited")
    if request.password and "password" not in result.details:
        result.details["password"] = request.password
    return TrialOutcome(STATUS_OK, role=role, count=count, limit=limit, server=server, result=result)
