"""Background worker that watches account expiry dates."""
from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from . import repository
from .database import Database
from .telegram import TelegramAPIError, TelegramBot

LOGGER = logging.getLogger(__name__)

WARNINGS = (
    # (flag, days before expiry)
    ("expiry_warning_3d_sent", 3),
    ("expiry_warning_1d_sent", 1),
)
DELETE_AFTER = timedelta(days=3)


class ExpirationWorker(threading.Thread):
    """Polling worker that warns owners before expiry and cleans up old accounts."""

    def __init__(
        self,
        *,
        db: Database,
        telegram_bot: TelegramBot,
        admin_ids: Iterable[int],
        interval: float = 3600,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        super().__init__(daemon=True, name="expiration-worker")
        self.db = db
        self.telegram_bot = telegram_bot
        self.admin_ids = list(admin_ids)
        self.interval = interval
        self.clock = clock
        self._halt = threading.Event()

    def stop(self) -> None:
        self._halt.set()

    def run(self) -> None:  # pragma: no cover - background thread
        LOGGER.info("expiration worker started")
        while not self._halt.is_set():
            try:
                self.tick()
            except Exception as exc:
                LOGGER.exception("expiration worker tick failed: %s", exc)
            self._halt.wait(self.interval)
        LOGGER.info("expiration worker stopped")

    def tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = now or self.clock()
        tally = {"warned": 0, "expired": 0, "deleted": 0}

        # Windows: (now, now+1d] and (now+1d, now+3d].
        lower = now + timedelta(days=1)
        for flag, days in WARNINGS:
            start = now if days == 1 else lower
            for account in repository.accounts_expiring_between(self.db, start, now + timedelta(days=days), flag):
                self._send(account["owner_user_id"], self._warning_text(account, days))
                repository.mark_account_flag(self.db, account["id"], flag)
                tally["warned"] += 1

        for account in repository.accounts_newly_expired(self.db, now):
            self._send(
                account["owner_user_id"],
                f"⛔ Akun {account['protocol'].upper()} {account['username']} di {account['server']} telah kedaluwarsa.",
            )
            repository.mark_account_flag(self.db, account["id"], "expired_notified")
            tally["expired"] += 1

        stale = repository.accounts_expired_before(self.db, now - DELETE_AFTER)
        if stale:
            tally["deleted"] = repository.delete_accounts(self.db, stale)
            LOGGER.info("removed %s accounts expired for more than %s", tally["deleted"], DELETE_AFTER)
            self._summarize(stale)
        return tally

    def _warning_text(self, account: Dict, days: int) -> str:
        return (
            f"⚠️ Akun {account['protocol'].upper()} {account['username']} di {account['server']} "
            f"akan kedaluwarsa dalam {days} hari ({account['expired_at']}).\n"
            "Perpanjang sekarang agar layanan tidak terputus."
        )

    def _summarize(self, accounts: List[Dict]) -> None:
        lines = [f"- {a['protocol'].upper()} {a['username']} ({a['server']})" for a in accounts]
        text = f"🧹 {len(accounts)} akun kedaluwarsa dihapus:\n" + "\n".join(lines)
        for admin_id in self.admin_ids:
            self._send(admin_id, text)

    def _send(self, chat_id: int, text: str) -> None:
        try:
            self.telegram_bot.send_message(int(chat_id), text)
        except TelegramAPIError as exc:
            LOGGER.warning("could not send expiry message to %s: %s", chat_id, exc)
